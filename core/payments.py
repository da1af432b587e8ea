# core/payments.py
"""
Checkout / slip upload flows.

checkout -> PromptPay payload shown as QR -> payer uploads slip ->
verify_slip (provider) -> validate_receipt -> dao.mark_*_paid
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging

import dao
from core.media import store_slip
from core.promptpay import PromptPayError, format_amount, generate_payload
from core.secrets import PaymentConfig, load_merchant_config, load_platform_config
from core.slip_verify import MalformedReceipt, MismatchReason, Verdict, validate_receipt, verify_slip
from core.utils import log_ctx

logger = logging.getLogger("payments")


class PaymentConfigError(RuntimeError):
    """Receiving PromptPay account or slip API is not configured."""


def _owned_pending(doc: Optional[Dict[str, Any]], owner_key: str, owner_id: str, kind: str) -> Dict[str, Any]:
    if not doc or doc.get(owner_key) != owner_id:
        raise dao.PaymentStateError(f"{kind}_not_found")
    if doc.get("status") != dao.ORDER_PENDING:
        raise dao.PaymentStateError(f"{kind}_not_pending", f"status is {doc.get('status')}")
    return doc


def _merchant_config(merchant_id: str) -> PaymentConfig:
    merchant = dao.get_merchant(merchant_id) or {}
    cfg = load_merchant_config(merchant, dao.get_merchant_settings(merchant_id))
    if not cfg.promptpay_id:
        raise PaymentConfigError("merchant has no PromptPay ID")
    return cfg


# ---------- orders ----------

def checkout(customer_id: str, coupon_id: str, quantity: int) -> Dict[str, Any]:
    """Create a pending order and the PromptPay payload the customer pays against."""
    order = dao.create_order(customer_id, coupon_id, quantity)
    try:
        payload = generate_payload(order["promptpay_id"], order["purchase_price"])
    except PromptPayError:
        # merchant's PromptPay id is unusable; give the stock back
        logger.exception("payload failed, cancelling %s", log_ctx(order_id=order["_id"], merchant_id=order.get("merchant_id")))
        try:
            dao.cancel_order(order["_id"], customer_id)
        except Exception:
            logger.exception("cancel after payload failure failed %s", log_ctx(order_id=order["_id"]))
        raise
    return {
        "order_id": order["_id"],
        "amount": order["purchase_price"],
        "promptpay_payload": payload,
    }


def order_payload(customer_id: str, order_id: str) -> Dict[str, Any]:
    """Re-derive the QR payload for a pending order (resume payment)."""
    order = _owned_pending(dao.get_order(order_id), "customer_id", customer_id, "order")
    cfg = _merchant_config(order["merchant_id"])
    return {
        "order_id": order_id,
        "amount": order["purchase_price"],
        "promptpay_payload": generate_payload(cfg.promptpay_id, order["purchase_price"]),
    }


def _reconcile(
    kind: str,
    doc: Dict[str, Any],
    amount: float,
    cfg: PaymentConfig,
    image: bytes,
    content_type: Optional[str],
    mark_paid: Callable[[str, Dict[str, Any], Optional[Dict[str, Any]]], Dict[str, Any]],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    slip = store_slip(kind, doc["_id"], image, content_type)
    try:
        receipt = verify_slip(image, cfg.slip_api_url, cfg.slip_api_key)
    except MalformedReceipt as e:
        verdict = Verdict.reject(MismatchReason.MALFORMED_RECEIPT, f"อ่านข้อมูลสลิปไม่ได้ ({e})")
        logger.info("slip rejected %s", log_ctx(kind=kind, id=doc["_id"], reason=verdict.reason.value))
        return {"success": False, "verdict": verdict.to_dict()}

    verdict = validate_receipt(receipt, amount, cfg.promptpay_id, doc["created_at"], now=now)
    if not verdict.valid:
        logger.info("slip rejected %s", log_ctx(kind=kind, id=doc["_id"], reason=verdict.reason.value, trans_ref=receipt.transaction_id))
        return {"success": False, "verdict": verdict.to_dict()}

    paid = mark_paid(doc["_id"], receipt.to_firestore(), slip)
    return {"success": True, "verdict": verdict.to_dict(), "doc": paid}


def submit_slip(customer_id: str, order_id: str, image: bytes, content_type: Optional[str] = None,
                now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Verify an uploaded slip against the customer's pending order and mark it paid.
    Returns {"success": bool, "verdict": {...}, "redemption_code"?: str}.
    Raises dao.PaymentStateError / SlipServiceError / PaymentConfigError.
    """
    order = _owned_pending(dao.get_order(order_id), "customer_id", customer_id, "order")
    cfg = _merchant_config(order["merchant_id"])
    result = _reconcile("orders", order, order["purchase_price"], cfg, image, content_type, dao.mark_order_paid, now)
    if result.pop("doc", None) is not None:
        result["redemption_code"] = order.get("redemption_code")
    return result


# ---------- merchant recharges ----------

def _platform_config() -> PaymentConfig:
    cfg = load_platform_config()
    if not cfg.promptpay_id:
        raise PaymentConfigError("PLATFORM_PROMPTPAY_ID not configured")
    return cfg


def start_recharge(merchant_id: str, amount: float) -> Dict[str, Any]:
    """Create a pending recharge paid to the platform PromptPay ID."""
    format_amount(amount)  # InvalidAmount before anything is written
    cfg = _platform_config()
    recharge = dao.create_recharge(merchant_id, amount)
    return {
        "recharge_id": recharge["_id"],
        "amount": recharge["amount"],
        "promptpay_payload": generate_payload(cfg.promptpay_id, recharge["amount"]),
    }


def submit_recharge_slip(merchant_id: str, recharge_id: str, image: bytes, content_type: Optional[str] = None,
                         now: Optional[datetime] = None) -> Dict[str, Any]:
    recharge = _owned_pending(dao.get_recharge(recharge_id), "merchant_id", merchant_id, "recharge")
    cfg = _platform_config()
    result = _reconcile("recharges", recharge, recharge["amount"], cfg, image, content_type, dao.mark_recharge_paid, now)
    result.pop("doc", None)
    return result
