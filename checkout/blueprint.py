# checkout/blueprint.py — customer checkout + slip upload, merchant recharge
from flask import Blueprint, request, jsonify, g, Response
from functools import wraps
from typing import Optional
import logging

from firebase_admin import auth as fb_auth

import dao
from firestore_client import init_firebase
from core import payments
from core.promptpay import PromptPayError, InvalidAmount, InvalidPhoneLength, InvalidPayeeId, build_qr_png
from core.slip_verify import SlipServiceError
from core.utils import log_ctx

logger = logging.getLogger("checkout")

checkout_bp = Blueprint("checkout", __name__)

_PROMPTPAY_ERROR_CODES = {
    InvalidAmount: "invalid_amount",
    InvalidPhoneLength: "invalid_phone_length",
    InvalidPayeeId: "invalid_payee_id",
}

_STATE_STATUS = {
    "coupon_not_found": 404,
    "merchant_not_found": 404,
    "order_not_found": 404,
    "recharge_not_found": 404,
    "merchant_suspended": 403,
    "merchant_no_promptpay": 400,
    "invalid_quantity": 400,
    "out_of_stock": 409,
    "order_not_pending": 409,
    "recharge_not_pending": 409,
    "slip_already_used": 409,
}


def _err(code: str, status: int, message: Optional[str] = None, **extra):
    body = {"ok": False, "error": code}
    if message:
        body["message"] = message
    body.update(extra)
    return jsonify(body), status


# ---------- auth (Firebase ID token) ----------

def _bearer_token() -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth.split(" ", 1)[1].strip() or None
    return None


def require_user(view):
    """Verify the Firebase ID token and put the uid on g.uid."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        token = _bearer_token()
        if not token:
            return _err("missing_id_token", 401)
        init_firebase()
        try:
            claims = fb_auth.verify_id_token(token)
        except (ValueError, fb_auth.InvalidIdTokenError, fb_auth.ExpiredIdTokenError,
                fb_auth.RevokedIdTokenError, fb_auth.CertificateFetchError) as e:
            logger.info("id token rejected: %s", e)
            return _err("invalid_id_token", 401)
        g.uid = claims.get("uid") or claims.get("sub")
        return view(*args, **kwargs)
    return wrapper


def require_merchant(view):
    """require_user + resolve g.merchant_id from merchants.owner_uid."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        merchant_id = dao.get_merchant_id_by_owner(g.uid)
        if not merchant_id:
            return _err("merchant_not_found", 403)
        g.merchant_id = merchant_id
        return view(*args, **kwargs)
    return require_user(wrapper)


# ---------- error mapping ----------

@checkout_bp.errorhandler(PromptPayError)
def _on_promptpay_error(e):
    return _err(_PROMPTPAY_ERROR_CODES.get(type(e), "invalid_promptpay_input"), 400, str(e))


@checkout_bp.errorhandler(dao.DaoError)
def _on_state_error(e):
    return _err(e.code, _STATE_STATUS.get(e.code, 400), str(e))


@checkout_bp.errorhandler(SlipServiceError)
def _on_slip_service_error(e):
    logger.warning("slip service error %s", log_ctx(status=e.status_code, code=e.code, message=str(e)))
    return _err("slip_service_error", 502, str(e), provider_code=e.code)


@checkout_bp.errorhandler(payments.PaymentConfigError)
def _on_config_error(e):
    logger.error("payment config error: %s", e)
    return _err("payment_not_configured", 500, str(e))


def _slip_response(result: dict):
    if result["success"]:
        return jsonify({"ok": True, **{k: v for k, v in result.items() if k != "success"}}), 200
    verdict = result["verdict"]
    return _err(verdict.get("reason", "slip_rejected"), 422, verdict.get("message"), verdict=verdict)


def _read_upload():
    f = request.files.get("file")
    if not f:
        return None, None
    return f.read(), f.mimetype


# ---------- customer ----------

@checkout_bp.post("/api/checkout")
@require_user
def api_checkout():
    data = request.get_json(silent=True) or {}
    coupon_id = data.get("couponId") or data.get("coupon_id")
    try:
        quantity = int(data.get("quantity") or 0)
    except (TypeError, ValueError):
        quantity = 0
    if not coupon_id or quantity <= 0:
        return _err("invalid_params", 400, "couponId and a positive quantity are required")
    out = payments.checkout(g.uid, coupon_id, quantity)
    logger.info("checkout %s", log_ctx(customer=g.uid, order_id=out["order_id"], amount=out["amount"]))
    return jsonify({"ok": True, **out}), 201


@checkout_bp.get("/api/orders/<order_id>/payload")
@require_user
def api_order_payload(order_id):
    return jsonify({"ok": True, **payments.order_payload(g.uid, order_id)}), 200


@checkout_bp.get("/api/orders/<order_id>/qr.png")
@require_user
def api_order_qr(order_id):
    out = payments.order_payload(g.uid, order_id)
    png = build_qr_png(out["promptpay_payload"])
    return Response(png, mimetype="image/png", headers={"Cache-Control": "no-store"})


@checkout_bp.post("/api/orders/<order_id>/cancel")
@require_user
def api_order_cancel(order_id):
    order = dao.cancel_order(order_id, g.uid)
    return jsonify({"ok": True, "order_id": order_id, "status": order["status"]}), 200


@checkout_bp.post("/api/verify-payment")
@require_user
def api_verify_payment():
    order_id = (request.form.get("orderId") or "").strip()
    content, ctype = _read_upload()
    if not order_id or not content:
        return _err("invalid_params", 400, "orderId and file are required")
    result = payments.submit_slip(g.uid, order_id, content, ctype)
    return _slip_response(result)


# ---------- merchant ----------

@checkout_bp.post("/api/merchant/recharge")
@require_merchant
def api_merchant_recharge():
    data = request.get_json(silent=True) or {}
    amount = data.get("amount")
    if amount is None:
        return _err("invalid_params", 400, "amount is required")
    out = payments.start_recharge(g.merchant_id, amount)
    return jsonify({"ok": True, **out}), 201


@checkout_bp.post("/api/merchant/verify-recharge")
@require_merchant
def api_merchant_verify_recharge():
    recharge_id = (request.form.get("rechargeId") or "").strip()
    content, ctype = _read_upload()
    if not recharge_id or not content:
        return _err("invalid_params", 400, "rechargeId and file are required")
    result = payments.submit_recharge_slip(g.merchant_id, recharge_id, content, ctype)
    return _slip_response(result)
