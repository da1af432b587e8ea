# dao.py — Firestore data access layer (no Flask routes)
# Used by core/payments.py

from __future__ import annotations
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import logging
import uuid

from firebase_admin import firestore as fb
from google.cloud import firestore

from firestore_client import get_db

logger = logging.getLogger("dao")

ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_CANCELLED = "cancelled"

# ---------- errors ----------

class DaoError(ValueError):
    """Domain error raised from a store operation. `code` is a stable machine key."""

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code


class CheckoutError(DaoError):
    pass


class PaymentStateError(DaoError):
    pass

# ---------- helpers ----------

def ts_now():
    return fb.SERVER_TIMESTAMP


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _snap_dict(snap) -> Optional[Dict[str, Any]]:
    if not snap.exists:
        return None
    d = snap.to_dict() or {}
    d["_id"] = snap.id
    return d


def _money(v: Any) -> float:
    return float(Decimal(str(v)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _redemption_code() -> str:
    return uuid.uuid4().hex[:10].upper()


# ---------- merchants / coupons ----------

def get_merchant(merchant_id: str) -> Optional[Dict[str, Any]]:
    db = get_db()
    return _snap_dict(db.collection("merchants").document(merchant_id).get())


def get_merchant_settings(merchant_id: str) -> Dict[str, Any]:
    """Return merchants/{id}/settings/default as a dict ({} if missing)."""
    db = get_db()
    snap = (
        db.collection("merchants").document(merchant_id)
          .collection("settings").document("default")
          .get()
    )
    return snap.to_dict() if snap.exists else {}


def get_coupon(coupon_id: str) -> Optional[Dict[str, Any]]:
    db = get_db()
    return _snap_dict(db.collection("coupons").document(coupon_id).get())


# ---------- orders ----------

def get_order(order_id: str) -> Optional[Dict[str, Any]]:
    db = get_db()
    return _snap_dict(db.collection("orders").document(order_id).get())


@firestore.transactional
def _create_order_txn(transaction, db, customer_id: str, coupon_id: str, quantity: int) -> Dict[str, Any]:
    coupon_ref = db.collection("coupons").document(coupon_id)
    coupon = _snap_dict(coupon_ref.get(transaction=transaction))
    if not coupon:
        raise CheckoutError("coupon_not_found")
    merchant_id = coupon.get("merchant_id")
    merchant = _snap_dict(db.collection("merchants").document(merchant_id).get(transaction=transaction)) if merchant_id else None
    if not merchant:
        raise CheckoutError("merchant_not_found")
    if merchant.get("is_suspended"):
        raise CheckoutError("merchant_suspended")
    if not merchant.get("promptpay_id"):
        raise CheckoutError("merchant_no_promptpay")

    stock = int(coupon.get("stock_quantity") or 0)
    if stock < quantity:
        raise CheckoutError("out_of_stock", f"only {stock} left")

    order_ref = db.collection("orders").document()
    order: Dict[str, Any] = {
        "customer_id": customer_id,
        "coupon_id": coupon_id,
        "merchant_id": merchant_id,
        "quantity": quantity,
        "purchase_price": _money(Decimal(str(coupon.get("selling_price") or 0)) * quantity),
        "status": ORDER_PENDING,
        "payment_method": "promptpay",
        "redemption_code": _redemption_code(),
        "created_at": _now(),
    }
    transaction.update(coupon_ref, {"stock_quantity": stock - quantity})
    transaction.set(order_ref, order)
    order["_id"] = order_ref.id
    order["promptpay_id"] = merchant["promptpay_id"]
    return order


def create_order(customer_id: str, coupon_id: str, quantity: int) -> Dict[str, Any]:
    """Create a pending order and take the stock in one transaction.
    Returns the order dict plus the merchant's promptpay_id.
    """
    if quantity <= 0:
        raise CheckoutError("invalid_quantity")
    db = get_db()
    order = _create_order_txn(db.transaction(), db, customer_id, coupon_id, quantity)
    logger.info("order created id=%s coupon=%s qty=%s amount=%s", order["_id"], coupon_id, quantity, order["purchase_price"])
    return order


@firestore.transactional
def _mark_paid_txn(transaction, db, collection: str, doc_id: str, receipt: Dict[str, Any], slip: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    ref = db.collection(collection).document(doc_id)
    used_ref = db.collection("used_slips").document(str(receipt["transaction_id"]))
    doc = _snap_dict(ref.get(transaction=transaction))
    used = used_ref.get(transaction=transaction)
    if not doc:
        raise PaymentStateError(f"{collection[:-1]}_not_found")
    if doc.get("status") != ORDER_PENDING:
        raise PaymentStateError(f"{collection[:-1]}_not_pending", f"status is {doc.get('status')}")
    if used.exists:
        raise PaymentStateError("slip_already_used")

    update: Dict[str, Any] = {
        "status": ORDER_PAID,
        "paid_at": ts_now(),
        "receipt": receipt,
    }
    if slip:
        update["slip"] = slip
    transaction.update(ref, update)
    transaction.set(used_ref, {"collection": collection, "doc_id": doc_id, "used_at": ts_now()})
    if collection == "recharges" and doc.get("merchant_id"):
        mref = db.collection("merchants").document(doc["merchant_id"])
        transaction.update(mref, {"balance": firestore.Increment(float(doc.get("amount") or 0))})
    doc.update({"status": ORDER_PAID})
    return doc


def mark_order_paid(order_id: str, receipt: Dict[str, Any], slip: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """pending -> paid, consuming the slip's transaction id so it cannot pay twice."""
    db = get_db()
    doc = _mark_paid_txn(db.transaction(), db, "orders", order_id, receipt, slip)
    logger.info("order paid id=%s trans_ref=%s", order_id, receipt.get("transaction_id"))
    return doc


@firestore.transactional
def _cancel_order_txn(transaction, db, order_id: str, customer_id: str) -> Dict[str, Any]:
    ref = db.collection("orders").document(order_id)
    order = _snap_dict(ref.get(transaction=transaction))
    if not order or order.get("customer_id") != customer_id:
        raise PaymentStateError("order_not_found")
    if order.get("status") != ORDER_PENDING:
        raise PaymentStateError("order_not_pending", f"status is {order.get('status')}")
    transaction.update(ref, {"status": ORDER_CANCELLED, "cancelled_at": ts_now()})
    if order.get("coupon_id"):
        cref = db.collection("coupons").document(order["coupon_id"])
        transaction.update(cref, {"stock_quantity": firestore.Increment(int(order.get("quantity") or 0))})
    order["status"] = ORDER_CANCELLED
    return order


def cancel_order(order_id: str, customer_id: str) -> Dict[str, Any]:
    """pending -> cancelled and give the stock back."""
    db = get_db()
    order = _cancel_order_txn(db.transaction(), db, order_id, customer_id)
    logger.info("order cancelled id=%s", order_id)
    return order


# ---------- merchant recharges (credit top-up paid to the platform) ----------

def create_recharge(merchant_id: str, amount: float) -> Dict[str, Any]:
    db = get_db()
    ref = db.collection("recharges").document()
    doc: Dict[str, Any] = {
        "merchant_id": merchant_id,
        "amount": _money(amount),
        "status": ORDER_PENDING,
        "created_at": _now(),
    }
    ref.set(doc, merge=False)
    doc["_id"] = ref.id
    logger.info("recharge created id=%s merchant=%s amount=%s", ref.id, merchant_id, doc["amount"])
    return doc


def get_recharge(recharge_id: str) -> Optional[Dict[str, Any]]:
    db = get_db()
    return _snap_dict(db.collection("recharges").document(recharge_id).get())


def mark_recharge_paid(recharge_id: str, receipt: Dict[str, Any], slip: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """pending -> paid and credit merchants/{id}.balance."""
    db = get_db()
    doc = _mark_paid_txn(db.transaction(), db, "recharges", recharge_id, receipt, slip)
    logger.info("recharge paid id=%s trans_ref=%s", recharge_id, receipt.get("transaction_id"))
    return doc


def get_merchant_id_by_owner(owner_uid: str) -> Optional[str]:
    """Map an authenticated user uid -> merchantId (merchants.owner_uid)."""
    db = get_db()
    q = db.collection("merchants").where("owner_uid", "==", owner_uid).limit(1)
    docs = list(q.stream())
    if not docs:
        return None
    return docs[0].id
