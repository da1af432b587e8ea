import io
from unittest.mock import MagicMock

import pytest

import dao
from core import payments
from core.promptpay import InvalidPhoneLength, generate_payload
from core.slip_verify import SlipServiceError


@pytest.fixture()
def fake_payments(monkeypatch):
    fakes = {name: MagicMock() for name in (
        "checkout", "order_payload", "submit_slip", "start_recharge", "submit_recharge_slip",
    )}
    for name, fake in fakes.items():
        monkeypatch.setattr(payments, name, fake)
    return fakes


def test_healthz(client):
    assert client.get("/healthz").get_json() == {"status": "ok"}


class TestAuth:
    def test_missing_token(self, client, fake_payments):
        resp = client.post("/api/checkout", json={"couponId": "c-1", "quantity": 1})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "missing_id_token"
        fake_payments["checkout"].assert_not_called()

    def test_invalid_token(self, client, fake_payments):
        resp = client.post("/api/checkout", json={"couponId": "c-1", "quantity": 1},
                           headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "invalid_id_token"


class TestCheckoutRoute:
    def test_created(self, client, auth_headers, fake_payments):
        fake_payments["checkout"].return_value = {"order_id": "ord-1", "amount": 150.0, "promptpay_payload": "0002..."}
        resp = client.post("/api/checkout", json={"couponId": "c-1", "quantity": 2}, headers=auth_headers)
        assert resp.status_code == 201
        assert resp.get_json() == {"ok": True, "order_id": "ord-1", "amount": 150.0, "promptpay_payload": "0002..."}
        fake_payments["checkout"].assert_called_once_with("cust-1", "c-1", 2)

    @pytest.mark.parametrize("body", [{}, {"couponId": "c-1"}, {"couponId": "c-1", "quantity": 0}, {"couponId": "c-1", "quantity": "x"}])
    def test_invalid_params(self, client, auth_headers, fake_payments, body):
        resp = client.post("/api/checkout", json=body, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "invalid_params"

    @pytest.mark.parametrize("code,status", [
        ("coupon_not_found", 404), ("merchant_suspended", 403), ("out_of_stock", 409), ("merchant_no_promptpay", 400),
    ])
    def test_checkout_errors(self, client, auth_headers, fake_payments, code, status):
        fake_payments["checkout"].side_effect = dao.CheckoutError(code)
        resp = client.post("/api/checkout", json={"couponId": "c-1", "quantity": 1}, headers=auth_headers)
        assert resp.status_code == status
        assert resp.get_json()["error"] == code

    def test_bad_merchant_phone(self, client, auth_headers, fake_payments):
        fake_payments["checkout"].side_effect = InvalidPhoneLength("phone number must have 10 digits")
        resp = client.post("/api/checkout", json={"couponId": "c-1", "quantity": 1}, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "invalid_phone_length"


class TestOrderRoutes:
    def test_payload(self, client, auth_headers, fake_payments):
        fake_payments["order_payload"].return_value = {"order_id": "ord-1", "amount": 150.0, "promptpay_payload": "x"}
        resp = client.get("/api/orders/ord-1/payload", headers=auth_headers)
        assert resp.status_code == 200
        fake_payments["order_payload"].assert_called_once_with("cust-1", "ord-1")

    def test_qr_png(self, client, auth_headers, fake_payments):
        fake_payments["order_payload"].return_value = {
            "order_id": "ord-1", "amount": 150.0, "promptpay_payload": generate_payload("0812345678", 150),
        }
        resp = client.get("/api/orders/ord-1/qr.png", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.mimetype == "image/png"
        assert resp.data[:4] == b"\x89PNG"

    def test_not_found(self, client, auth_headers, fake_payments):
        fake_payments["order_payload"].side_effect = dao.PaymentStateError("order_not_found")
        resp = client.get("/api/orders/ord-x/payload", headers=auth_headers)
        assert resp.status_code == 404

    def test_cancel(self, client, auth_headers, monkeypatch):
        cancel = MagicMock(return_value={"_id": "ord-1", "status": dao.ORDER_CANCELLED})
        monkeypatch.setattr(dao, "cancel_order", cancel)
        resp = client.post("/api/orders/ord-1/cancel", headers=auth_headers)
        assert resp.get_json() == {"ok": True, "order_id": "ord-1", "status": "cancelled"}
        cancel.assert_called_once_with("ord-1", "cust-1")


def _upload(order_id="ord-1", with_file=True):
    data = {"orderId": order_id}
    if with_file:
        data["file"] = (io.BytesIO(b"fake-image"), "slip.png", "image/png")
    return data


class TestVerifyPayment:
    def test_paid(self, client, auth_headers, fake_payments):
        fake_payments["submit_slip"].return_value = {"success": True, "verdict": {"valid": True}, "redemption_code": "ABC"}
        resp = client.post("/api/verify-payment", data=_upload(), headers=auth_headers, content_type="multipart/form-data")
        assert resp.status_code == 200
        assert resp.get_json() == {"ok": True, "verdict": {"valid": True}, "redemption_code": "ABC"}
        args = fake_payments["submit_slip"].call_args.args
        assert args[:3] == ("cust-1", "ord-1", b"fake-image")
        assert args[3] == "image/png"

    def test_rejected_slip(self, client, auth_headers, fake_payments):
        verdict = {"valid": False, "reason": "expired_receipt", "message": "สลิปหมดอายุแล้ว (เกิน 24 ชั่วโมง)"}
        fake_payments["submit_slip"].return_value = {"success": False, "verdict": verdict}
        resp = client.post("/api/verify-payment", data=_upload(), headers=auth_headers, content_type="multipart/form-data")
        assert resp.status_code == 422
        body = resp.get_json()
        assert body["error"] == "expired_receipt"
        assert body["verdict"] == verdict

    def test_missing_file(self, client, auth_headers, fake_payments):
        resp = client.post("/api/verify-payment", data=_upload(with_file=False), headers=auth_headers,
                           content_type="multipart/form-data")
        assert resp.status_code == 400
        fake_payments["submit_slip"].assert_not_called()

    def test_provider_failure(self, client, auth_headers, fake_payments):
        fake_payments["submit_slip"].side_effect = SlipServiceError("quota exceeded", status_code=401, code="1005")
        resp = client.post("/api/verify-payment", data=_upload(), headers=auth_headers, content_type="multipart/form-data")
        assert resp.status_code == 502
        assert resp.get_json()["provider_code"] == "1005"

    def test_slip_reused(self, client, auth_headers, fake_payments):
        fake_payments["submit_slip"].side_effect = dao.PaymentStateError("slip_already_used")
        resp = client.post("/api/verify-payment", data=_upload(), headers=auth_headers, content_type="multipart/form-data")
        assert resp.status_code == 409

    def test_not_configured(self, client, auth_headers, fake_payments):
        fake_payments["submit_slip"].side_effect = payments.PaymentConfigError("merchant has no PromptPay ID")
        resp = client.post("/api/verify-payment", data=_upload(), headers=auth_headers, content_type="multipart/form-data")
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "payment_not_configured"


class TestMerchantRecharge:
    @pytest.fixture(autouse=True)
    def _merchant(self, monkeypatch):
        monkeypatch.setattr(dao, "get_merchant_id_by_owner", MagicMock(return_value="m-1"))

    def test_start(self, client, auth_headers, fake_payments):
        fake_payments["start_recharge"].return_value = {"recharge_id": "rc-1", "amount": 500.0, "promptpay_payload": "x"}
        resp = client.post("/api/merchant/recharge", json={"amount": 500}, headers=auth_headers)
        assert resp.status_code == 201
        fake_payments["start_recharge"].assert_called_once_with("m-1", 500)

    def test_missing_amount(self, client, auth_headers, fake_payments):
        resp = client.post("/api/merchant/recharge", json={}, headers=auth_headers)
        assert resp.status_code == 400

    def test_not_a_merchant(self, client, auth_headers, fake_payments, monkeypatch):
        monkeypatch.setattr(dao, "get_merchant_id_by_owner", MagicMock(return_value=None))
        resp = client.post("/api/merchant/recharge", json={"amount": 500}, headers=auth_headers)
        assert resp.status_code == 403

    def test_verify(self, client, auth_headers, fake_payments):
        fake_payments["submit_recharge_slip"].return_value = {"success": True, "verdict": {"valid": True}}
        data = {"rechargeId": "rc-1", "file": (io.BytesIO(b"img"), "slip.jpg", "image/jpeg")}
        resp = client.post("/api/merchant/verify-recharge", data=data, headers=auth_headers,
                           content_type="multipart/form-data")
        assert resp.status_code == 200
        assert fake_payments["submit_recharge_slip"].call_args.args[:2] == ("m-1", "rc-1")
