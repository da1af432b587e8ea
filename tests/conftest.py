from datetime import datetime, timezone, timedelta

import pytest

from core.slip_verify import ReceiptRecord, SenderInfo


ORDER_CREATED_AT = datetime(2026, 1, 10, 3, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def order_created_at():
    return ORDER_CREATED_AT


@pytest.fixture()
def make_receipt():
    def _make(amount=150.00, receiver="0812345678", minutes_after_order=1, transaction_id="TXN-0001"):
        tx = ORDER_CREATED_AT + timedelta(minutes=minutes_after_order)
        return ReceiptRecord(
            amount=amount,
            receiver_account=receiver,
            transaction_datetime=tx.isoformat(),
            transaction_id=transaction_id,
            sender=SenderInfo(account="xxx-x-x1234-x", name="Somchai"),
        )
    return _make


@pytest.fixture(autouse=True)
def _payment_env(monkeypatch):
    monkeypatch.setenv("SLIPOK_API_URL", "https://slip.example.test/verify")
    monkeypatch.setenv("SLIPOK_API_KEY", "test-key")
    monkeypatch.setenv("PLATFORM_PROMPTPAY_ID", "0899999999")
    monkeypatch.delenv("SLIPOK_API_KEY_SECRET", raising=False)
    monkeypatch.delenv("SLIP_BUCKET", raising=False)
    yield


def _fake_verify_id_token(token):
    if token != "good":
        raise ValueError("bad token")
    return {"uid": "cust-1"}


@pytest.fixture()
def app(monkeypatch):
    import checkout.blueprint as bp
    from app import create_app

    monkeypatch.setattr(bp, "init_firebase", lambda: None)
    monkeypatch.setattr(bp.fb_auth, "verify_id_token", _fake_verify_id_token)
    flask_app = create_app()
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def auth_headers():
    return {"Authorization": "Bearer good"}
