from unittest.mock import MagicMock

import pytest

import dao


def _snap(doc_id, data):
    snap = MagicMock()
    snap.id = doc_id
    snap.exists = data is not None
    snap.to_dict.return_value = data
    return snap


@pytest.fixture()
def db(monkeypatch):
    fake = MagicMock()
    monkeypatch.setattr(dao, "get_db", lambda: fake)
    return fake


def test_get_order(db):
    db.collection.return_value.document.return_value.get.return_value = _snap("ord-1", {"status": "pending"})
    assert dao.get_order("ord-1") == {"_id": "ord-1", "status": "pending"}
    db.collection.assert_called_with("orders")


def test_get_order_missing(db):
    db.collection.return_value.document.return_value.get.return_value = _snap("ord-1", None)
    assert dao.get_order("ord-1") is None


def test_merchant_settings_missing_is_empty(db):
    (db.collection.return_value.document.return_value
       .collection.return_value.document.return_value.get.return_value) = _snap("default", None)
    assert dao.get_merchant_settings("m-1") == {}


def test_get_merchant_id_by_owner(db):
    q = db.collection.return_value.where.return_value.limit.return_value
    q.stream.return_value = iter([_snap("m-1", {"owner_uid": "u-1"})])
    assert dao.get_merchant_id_by_owner("u-1") == "m-1"
    db.collection.return_value.where.assert_called_once_with("owner_uid", "==", "u-1")


def test_create_order_rejects_non_positive_quantity(db):
    with pytest.raises(dao.CheckoutError) as ei:
        dao.create_order("cust-1", "c-1", 0)
    assert ei.value.code == "invalid_quantity"
    db.transaction.assert_not_called()


def test_create_recharge_rounds_amount(db):
    ref = db.collection.return_value.document.return_value
    ref.id = "rc-1"
    doc = dao.create_recharge("m-1", 99.999)
    assert doc["_id"] == "rc-1"
    assert doc["amount"] == 100.0
    assert doc["status"] == dao.ORDER_PENDING
    ref.set.assert_called_once()


def test_money_rounds_half_up():
    assert dao._money("10.005") == 10.01
    assert dao._money(3) == 3.0
