import logging

import httpx
import pytest

from conftest import CHECKOUT, KEY_ID, KEY_SECRET, add_cart_line, add_menu_item, auth, fail_on, put_settings
from config import Config, get_config
from database import CART_ITEMS, ORDERS, ORDER_ITEMS
from errors import UpstreamFailure
from payments import PaymentGateway, sign, to_minor_units

import main


@pytest.fixture
def online_order(client, mongo):
    item_id = add_menu_item(mongo, "Chicken Biryani", 150)
    put_settings(mongo, delivery_charge=50, min_order_price=100)
    add_cart_line(mongo, "user-1", item_id, 2)
    resp = client.post("/api/order", json=dict(CHECKOUT, payment_method="online"), headers=auth())
    assert resp.status_code == 200
    return resp.json()["order"]["id"]


def test_gateway_order_uses_persisted_total(client, gateway, online_order):
    resp = client.post(
        "/api/payment-order", json={"orderId": online_order, "amount": 1}, headers=auth()
    )

    assert resp.status_code == 200
    assert resp.json() == {"orderId": "order_gw_1", "amount": 35000, "currency": "INR", "keyId": KEY_ID}
    sent = gateway.bodies()[0]
    assert sent["amount"] == 35000
    assert len(sent["receipt"]) <= 40
    assert gateway.requests[0].headers["authorization"].startswith("Basic ")


def test_other_users_order_is_not_found(client, gateway, online_order):
    resp = client.post("/api/payment-order", json={"orderId": online_order}, headers=auth("user-2"))

    assert resp.status_code == 404
    assert gateway.requests == []


def test_unknown_order(client):
    resp = client.post("/api/payment-order", json={"orderId": "missing"}, headers=auth())
    assert resp.status_code == 404


def test_payment_requires_auth(client, online_order):
    assert client.post("/api/payment-order", json={"orderId": online_order}).status_code == 401


def test_dismissed_widget_removes_order(client, mongo, online_order):
    client.post("/api/payment-order", json={"orderId": online_order}, headers=auth())

    resp = client.post(f"/api/payment-order/{online_order}/dismiss", headers=auth())

    assert resp.status_code == 200
    assert client.get(f"/api/orders/{online_order}", headers=auth()).status_code == 404
    assert mongo[ORDER_ITEMS].count_documents({}) == 0
    assert mongo[CART_ITEMS].find_one({"user_id": "user-1"})["quantity"] == 2


def test_gateway_error_removes_order(client, mongo, gateway, online_order):
    gateway.handler = lambda request: httpx.Response(502, text="bad gateway")

    resp = client.post("/api/payment-order", json={"orderId": online_order}, headers=auth())

    assert resp.status_code == 500
    assert resp.json() == {"error": "Payment gateway error, please try again"}
    assert mongo[ORDERS].count_documents({}) == 0


def test_gateway_timeout_is_a_gateway_error(client, mongo, gateway, online_order):
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    gateway.handler = slow

    resp = client.post("/api/payment-order", json={"orderId": online_order}, headers=auth())

    assert resp.status_code == 500
    assert mongo[ORDERS].count_documents({}) == 0


def test_gateway_amount_mismatch_is_rejected(client, mongo, gateway, online_order):
    gateway.handler = lambda request: httpx.Response(200, json={"id": "order_x", "amount": 100, "currency": "INR"})

    resp = client.post("/api/payment-order", json={"orderId": online_order}, headers=auth())

    assert resp.status_code == 500
    assert mongo[ORDERS].count_documents({}) == 0


def test_missing_credentials_are_a_configuration_error(client, mongo, online_order):
    bare = Config(jwt_secret="test-secret")
    main.app.dependency_overrides[get_config] = lambda: bare
    main.app.dependency_overrides[main.get_payment_gateway] = lambda: PaymentGateway(bare)

    resp = client.post("/api/payment-order", json={"orderId": online_order}, headers=auth())

    assert resp.status_code == 500
    assert resp.json() == {"error": "Payment gateway key ID not configured"}
    assert mongo[ORDERS].count_documents({}) == 0


def test_confirm_marks_order_paid(client, mongo, online_order):
    client.post("/api/payment-order", json={"orderId": online_order}, headers=auth())
    payload = {
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": sign("order_gw_1", "pay_1", KEY_SECRET),
    }

    resp = client.post(f"/api/payment-order/{online_order}/confirm", json=payload, headers=auth())

    assert resp.status_code == 200
    assert resp.json()["payment_status"] == "paid"
    assert mongo[ORDERS].find_one({})["gateway_payment_id"] == "pay_1"


def test_confirm_rejects_bad_signature(client, mongo, online_order):
    client.post("/api/payment-order", json={"orderId": online_order}, headers=auth())
    payload = {"razorpay_payment_id": "pay_1", "razorpay_signature": "forged"}

    resp = client.post(f"/api/payment-order/{online_order}/confirm", json=payload, headers=auth())

    assert resp.status_code == 400
    assert mongo[ORDERS].find_one({})["payment_status"] == "pending"


def test_paid_order_cannot_be_dismissed(client, mongo, online_order):
    client.post("/api/payment-order", json={"orderId": online_order}, headers=auth())
    payload = {"razorpay_payment_id": "pay_1", "razorpay_signature": sign("order_gw_1", "pay_1", KEY_SECRET)}
    client.post(f"/api/payment-order/{online_order}/confirm", json=payload, headers=auth())

    resp = client.post(f"/api/payment-order/{online_order}/dismiss", headers=auth())

    assert resp.status_code == 400
    assert mongo[ORDERS].count_documents({}) == 1


def test_cash_order_has_no_gateway_leg(client, mongo):
    item_id = add_menu_item(mongo, "Chicken Biryani", 150)
    add_cart_line(mongo, "user-1", item_id, 2)
    order_id = client.post("/api/order", json=CHECKOUT, headers=auth()).json()["order"]["id"]

    resp = client.post("/api/payment-order", json={"orderId": order_id}, headers=auth())

    assert resp.status_code == 400


def test_minor_units():
    assert to_minor_units(350) == 35000
    assert to_minor_units(19.99) == 1999
    assert to_minor_units(0.005) == 1


def start_payment(client, order_id):
    resp = client.post("/api/payment-order", json={"orderId": order_id}, headers=auth())
    assert resp.status_code == 200


@pytest.mark.parametrize("collection,method", [(ORDERS, "delete_one"), (ORDER_ITEMS, "delete_many")])
def test_failed_dismiss_does_not_refill_cart(client, mongo, online_order, monkeypatch, collection, method):
    start_payment(client, online_order)
    fail_on(monkeypatch, collection, method)

    resp = client.post(f"/api/payment-order/{online_order}/dismiss", headers=auth())

    assert resp.status_code == 500
    assert mongo[CART_ITEMS].count_documents({"user_id": "user-1"}) == 0


def test_gateway_error_with_stuck_order_keeps_cart_empty(client, mongo, gateway, online_order, monkeypatch, caplog):
    gateway.handler = lambda request: httpx.Response(502, text="bad gateway")
    fail_on(monkeypatch, ORDERS, "delete_one")

    with caplog.at_level(logging.ERROR, logger="api.orders"):
        resp = client.post("/api/payment-order", json={"orderId": online_order}, headers=auth())

    assert resp.status_code == 500
    assert mongo[ORDERS].count_documents({}) == 1
    assert mongo[CART_ITEMS].count_documents({"user_id": "user-1"}) == 0
    assert "RECONCILE: could not remove order" in caplog.text


@pytest.mark.parametrize("status", ["confirmed", "preparing"])
def test_dismiss_refuses_orders_already_in_progress(client, mongo, online_order, status):
    start_payment(client, online_order)
    mongo[ORDERS].update_one({}, {"$set": {"status": status}})

    resp = client.post(f"/api/payment-order/{online_order}/dismiss", headers=auth())

    assert resp.status_code == 400
    assert resp.json()["status"] == status
    assert mongo[ORDERS].count_documents({}) == 1
    assert mongo[ORDER_ITEMS].count_documents({}) == 1
    assert mongo[CART_ITEMS].count_documents({}) == 0


def test_failed_paid_update_is_logged_for_reconciliation(client, mongo, online_order, monkeypatch, caplog):
    start_payment(client, online_order)
    fail_on(monkeypatch, ORDERS, "update_one")
    payload = {"razorpay_payment_id": "pay_1", "razorpay_signature": sign("order_gw_1", "pay_1", KEY_SECRET)}

    with caplog.at_level(logging.ERROR, logger="api.payments"):
        resp = client.post(f"/api/payment-order/{online_order}/confirm", json=payload, headers=auth())

    assert resp.status_code == 500
    assert mongo[ORDERS].find_one({})["payment_status"] == "pending"
    assert any(
        r.levelno == logging.ERROR and r.getMessage().startswith("RECONCILE: payment pay_1 captured")
        for r in caplog.records
    )


def gateway_created(request):
    return httpx.Response(200, json={"id": "order_gw_9", "amount": 35000, "currency": "INR"})


def test_gateway_client_is_closed_after_each_call(config, tracked_clients):
    created = tracked_clients(gateway_created)

    assert PaymentGateway(config).create_order(35000, "INR", "order_1").id == "order_gw_9"
    assert [c.is_closed for c in created] == [True]


def test_gateway_client_is_closed_after_timeout(config, tracked_clients):
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    created = tracked_clients(slow)

    with pytest.raises(UpstreamFailure):
        PaymentGateway(config).create_order(35000, "INR", "order_1")
    assert [c.is_closed for c in created] == [True]
