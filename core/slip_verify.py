# core/slip_verify.py
"""
Payment slip verification.

- verify_slip(): send a slip image to the slip-verification provider (SlipOK API)
- parse_receipt(): provider 'data' object -> ReceiptRecord (schema check at the boundary)
- validate_receipt(): does a ReceiptRecord satisfy an order? -> Verdict

validate_receipt is a pure decision; marking orders paid and rejecting reused
slips is done by dao.mark_order_paid().
"""
from __future__ import annotations
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Union
import base64
import logging
import re

import requests
from pydantic import BaseModel, ConfigDict, ValidationError

from core.utils import BANGKOK_TZ, log_ctx, now_utc, parse_iso

logger = logging.getLogger("slip-verify")

AMOUNT_TOLERANCE = Decimal("0.01")
CLOCK_SKEW_GRACE = timedelta(minutes=5)
RECEIPT_MAX_AGE = timedelta(hours=24)

_DATA_URI_RE = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")
_NON_DIGIT_RE = re.compile(r"[^0-9]+")


class MalformedReceipt(ValueError):
    """Provider returned a receipt we cannot trust field-by-field."""


class SlipServiceError(RuntimeError):
    """Slip-verification provider rejected the request or is unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class SenderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    account: str = ""
    name: str = ""


class ReceiptRecord(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    amount: float
    receiver_account: str
    transaction_datetime: str
    transaction_id: str
    receiver_name: Optional[str] = None
    sender: Optional[SenderInfo] = None

    def to_firestore(self) -> Dict[str, Any]:
        return self.model_dump()


class MismatchReason(str, Enum):
    EMPTY_RECEIPT = "empty_receipt"
    MALFORMED_RECEIPT = "malformed_receipt"
    AMOUNT_MISMATCH = "amount_mismatch"
    RECEIVER_MISMATCH = "receiver_mismatch"
    PREMATURE_TRANSACTION = "premature_transaction"
    EXPIRED_RECEIPT = "expired_receipt"


class Verdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    reason: Optional[MismatchReason] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls) -> "Verdict":
        return cls(valid=True)

    @classmethod
    def reject(cls, reason: MismatchReason, message: str) -> "Verdict":
        return cls(valid=False, reason=reason, message=message)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"valid": self.valid}
        if self.reason is not None:
            out["reason"] = self.reason.value
        if self.message:
            out["message"] = self.message
        return out


# ---------- boundary parsing ----------

def _first(*values: Any) -> Any:
    for v in values:
        if v not in (None, ""):
            return v
    return None

def _account_text(v: Any) -> Optional[str]:
    # some providers nest the account as {"value": "...", "type": "..."}
    if isinstance(v, dict):
        v = _first(v.get("value"), v.get("account"), v.get("proxy"))
    return str(v) if v not in (None, "") else None

def _trans_datetime(data: Dict[str, Any]) -> Optional[str]:
    full = _first(data.get("transactionDateTime"), data.get("transTimestamp"))
    if full:
        return str(full)
    d = data.get("transDate")
    t = data.get("transTime")
    if not d:
        return None
    d = str(d)
    # SlipOK style: transDate=YYYYMMDD, transTime=HH:MM:SS (Bangkok local time)
    if re.fullmatch(r"[0-9]{8}", d):
        d = f"{d[0:4]}-{d[4:6]}-{d[6:8]}"
    return f"{d}T{t}" if t and "T" not in d else d

def parse_receipt(data: Optional[Dict[str, Any]]) -> ReceiptRecord:
    """Map the provider's 'data' object onto ReceiptRecord or raise MalformedReceipt."""
    if not data or not isinstance(data, dict):
        raise MalformedReceipt("receipt data is empty")

    receiver = data.get("receiver") or {}
    sender = data.get("sender") or {}
    if not isinstance(receiver, dict):
        receiver = {}
    if not isinstance(sender, dict):
        sender = {}

    raw_amount = _first(data.get("amount"), data.get("value"))
    if raw_amount is None:
        raise MalformedReceipt("receipt has no amount")
    try:
        dec = Decimal(str(raw_amount).replace(",", ""))
    except (InvalidOperation, ValueError):
        raise MalformedReceipt(f"receipt amount is not a number: {raw_amount!r}") from None
    if not dec.is_finite():
        raise MalformedReceipt(f"receipt amount is not a finite number: {raw_amount!r}")
    amount = float(dec)

    fields = {
        "amount": amount,
        "receiver_account": _account_text(_first(receiver.get("account"), data.get("receiverAccount"))),
        "receiver_name": _first(receiver.get("displayName"), receiver.get("name"), data.get("receiverName")),
        "transaction_datetime": _trans_datetime(data),
        "transaction_id": _first(data.get("transRef"), data.get("transactionId")),
    }
    missing = [k for k in ("receiver_account", "transaction_datetime", "transaction_id") if not fields[k]]
    if missing:
        raise MalformedReceipt(f"receipt is missing {', '.join(missing)}")
    fields["transaction_id"] = str(fields["transaction_id"])
    if fields["receiver_name"] is not None:
        fields["receiver_name"] = str(fields["receiver_name"])
    if sender:
        fields["sender"] = SenderInfo(
            account=_account_text(sender.get("account")) or "",
            name=str(_first(sender.get("displayName"), sender.get("name")) or ""),
        )
    try:
        return ReceiptRecord(**fields)
    except ValidationError as e:
        raise MalformedReceipt(str(e)) from e


# ---------- provider call ----------

def _encode_image(image: Union[bytes, str]) -> str:
    if isinstance(image, bytes):
        return base64.b64encode(image).decode("ascii")
    return _DATA_URI_RE.sub("", image.strip())

def verify_slip(image: Union[bytes, str], api_url: str, api_key: Optional[str] = None, timeout: int = 20) -> ReceiptRecord:
    """
    POST the slip image to the verification provider and return the parsed receipt.
    Raises SlipServiceError on transport/provider failure, MalformedReceipt on bad data.
    """
    if not api_url:
        raise SlipServiceError("slip verification API is not configured")
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["x-authorization"] = api_key
    body = {"data": _encode_image(image), "log": True}

    try:
        r = requests.post(api_url, json=body, headers=headers, timeout=timeout)
    except requests.RequestException as e:
        logger.error("slip verify transport error: %s", e)
        raise SlipServiceError(f"slip verification request failed: {e}") from e

    try:
        result = r.json()
    except ValueError:
        result = {}
    if not isinstance(result, dict):
        result = {}

    if not r.ok:
        msg = result.get("message") or f"slip verification failed: {r.status_code} {r.reason}"
        logger.warning("slip verify rejected %s", log_ctx(status=r.status_code, code=result.get("code"), message=msg))
        raise SlipServiceError(msg, status_code=r.status_code, code=str(result.get("code") or "") or None)

    if result.get("success") is False or not result.get("data"):
        msg = result.get("message") or "slip could not be verified"
        raise SlipServiceError(msg, status_code=r.status_code, code=str(result.get("code") or "") or None)

    receipt = parse_receipt(result["data"])
    logger.info("slip verified %s", log_ctx(trans_ref=receipt.transaction_id, amount=receipt.amount))
    return receipt


# ---------- reconciliation ----------

def normalize_account(value: str) -> str:
    """Digits only, minus one leading '66' country code or '0' local prefix."""
    digits = _NON_DIGIT_RE.sub("", value or "")
    if digits.startswith("66"):
        return digits[2:]
    if digits.startswith("0"):
        return digits[1:]
    return digits

def _to_decimal(v: Union[int, float, Decimal, str]) -> Decimal:
    return v if isinstance(v, Decimal) else Decimal(str(v))

def validate_receipt(
    receipt: Union[ReceiptRecord, Dict[str, Any], None],
    expected_amount: Union[int, float, Decimal],
    expected_receiver_id: str,
    order_created_at: Union[str, datetime],
    now: Optional[datetime] = None,
) -> Verdict:
    """Check a receipt against an order. First failing check decides the verdict."""
    if not receipt:
        return Verdict.reject(MismatchReason.EMPTY_RECEIPT, "ไม่พบข้อมูลสลิป กรุณาอัปโหลดใหม่อีกครั้ง")
    if isinstance(receipt, dict):
        try:
            receipt = parse_receipt(receipt)
        except MalformedReceipt as e:
            return Verdict.reject(MismatchReason.MALFORMED_RECEIPT, f"อ่านข้อมูลสลิปไม่ได้ ({e})")

    created = parse_iso(order_created_at)
    if created is None:
        raise ValueError(f"order_created_at is not a valid timestamp: {order_created_at!r}")

    # 1) amount, one satang tolerance
    if abs(_to_decimal(receipt.amount) - _to_decimal(expected_amount)) > AMOUNT_TOLERANCE:
        return Verdict.reject(
            MismatchReason.AMOUNT_MISMATCH,
            f"ยอดเงินไม่ตรง: สลิป ฿{receipt.amount} ยอดคำสั่งซื้อ ฿{expected_amount}",
        )

    # 2) receiver
    if normalize_account(receipt.receiver_account) != normalize_account(expected_receiver_id):
        return Verdict.reject(
            MismatchReason.RECEIVER_MISMATCH,
            f"บัญชีผู้รับไม่ตรง: สลิป {receipt.receiver_account} ที่ถูกต้อง {expected_receiver_id}",
        )

    # bank slips print Bangkok local time without an offset
    tx_time = parse_iso(receipt.transaction_datetime, naive_tz=BANGKOK_TZ)
    if tx_time is None:
        return Verdict.reject(MismatchReason.MALFORMED_RECEIPT, "อ่านเวลาโอนเงินบนสลิปไม่ได้ กรุณาอัปโหลดภาพที่ชัดเจนกว่านี้")

    # 3) paid before the order existed
    if tx_time < created - CLOCK_SKEW_GRACE:
        return Verdict.reject(MismatchReason.PREMATURE_TRANSACTION, "เวลาโอนเงินเกิดขึ้นก่อนการสร้างคำสั่งซื้อ")

    # 4) stale slip
    current = parse_iso(now) if now is not None else now_utc()
    if current - tx_time > RECEIPT_MAX_AGE:
        return Verdict.reject(MismatchReason.EXPIRED_RECEIPT, "สลิปหมดอายุแล้ว (เกิน 24 ชั่วโมง)")

    return Verdict.ok()
