# core/secrets.py
"""
Payment configuration.

The platform PromptPay ID and slip API credentials are loaded here once per
request and handed to the encoder/verifier as a PaymentConfig, so nothing in
core/promptpay.py or core/slip_verify.py reads the environment.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Any, Optional
import logging
import os
import time

from google.api_core.exceptions import GoogleAPIError
from google.cloud import secretmanager

logger = logging.getLogger("secrets")

DEFAULT_SLIP_API_URL = "https://api.slipok.com/api/line/apikey/14821"

# secret resource name -> (expire_epoch, value)
_secret_cache: Dict[str, tuple] = {}
_SECRET_TTL_SEC = int(os.environ.get("SECRET_TTL_SEC", "300"))


@dataclass(frozen=True)
class PaymentConfig:
    promptpay_id: Optional[str]
    slip_api_url: str
    slip_api_key: Optional[str] = None


def _lookup(settings: Dict[str, Any], path: str) -> Optional[Any]:
    if not settings or not path:
        return None
    if "." not in path:
        return settings.get(path)
    cur: Any = settings
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
        if cur is None:
            return None
    return cur


def access_secret(resource_name: str) -> Optional[str]:
    """Read a Secret Manager secret (latest version unless one is named), cached per process."""
    now = time.time()
    cached = _secret_cache.get(resource_name)
    if cached and cached[0] > now:
        return cached[1]
    name = resource_name if "/versions/" in resource_name else f"{resource_name}/versions/latest"
    try:
        sm = secretmanager.SecretManagerServiceClient()
        resp = sm.access_secret_version(request={"name": name})
    except GoogleAPIError as e:
        logger.error("secret manager lookup failed name=%s err=%s", resource_name, e)
        return None
    val = resp.payload.data.decode("utf-8")
    _secret_cache[resource_name] = (now + _SECRET_TTL_SEC, val)
    return val


def resolve_secret(settings: Dict[str, Any], direct_key: str, sm_key: str) -> Optional[str]:
    """Resolve a secret either from plain settings[direct_key] or Secret Manager reference in settings[sm_key]."""
    val = _lookup(settings, direct_key)
    if val:
        return val
    sm_res = _lookup(settings, sm_key)
    if not sm_res:
        return None
    return access_secret(sm_res)


def load_platform_config() -> PaymentConfig:
    env = {
        "promptpay_id": os.environ.get("PLATFORM_PROMPTPAY_ID", "").strip(),
        "slip_api_key": os.environ.get("SLIPOK_API_KEY", "").strip(),
        "slip_api_key_secret": os.environ.get("SLIPOK_API_KEY_SECRET", "").strip(),
    }
    return PaymentConfig(
        promptpay_id=env["promptpay_id"] or None,
        slip_api_url=os.environ.get("SLIPOK_API_URL", DEFAULT_SLIP_API_URL),
        slip_api_key=resolve_secret(env, "slip_api_key", "slip_api_key_secret"),
    )


def load_merchant_config(merchant: Dict[str, Any], settings: Optional[Dict[str, Any]] = None) -> PaymentConfig:
    """Merchant's own PromptPay ID; slip API credentials from merchant settings or the platform."""
    platform = load_platform_config()
    settings = settings or {}
    return PaymentConfig(
        promptpay_id=merchant.get("promptpay_id") or None,
        slip_api_url=_lookup(settings, "slip_api_url") or platform.slip_api_url,
        slip_api_key=resolve_secret(settings, "slip_api_key", "slip_api_key_secret") or platform.slip_api_key,
    )


def _reset_cache_for_tests() -> None:
    _secret_cache.clear()
