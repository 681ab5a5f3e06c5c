"""Shared fixtures: an in-memory Mongo, fake gateway/SMS transports and tokens."""
import json
from datetime import datetime

import httpx
import jwt
import mongomock
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError

import main
from config import Config, get_config
from database import CART_ITEMS, MENU_ITEMS, SETTINGS, ensure_indexes, get_db
from notifications import Notifier
from payments import PaymentGateway
from settings_resolver import SettingsResolver

JWT_SECRET = "test-secret"
KEY_ID = "rzp_test_key"
KEY_SECRET = "rzp_test_secret"
NOON = datetime(2024, 5, 1, 12, 0)


class Clock:
    """Settable wall clock for open-hours checks."""

    def __init__(self, moment=NOON):
        self.moment = moment

    def __call__(self):
        return self.moment

    def set(self, hour, minute=0):
        self.moment = self.moment.replace(hour=hour, minute=minute)


class FakeProvider:
    """Records requests and answers through a swappable handler."""

    def __init__(self, handler):
        self.requests = []
        self.handler = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))

    def bodies(self):
        return [json.loads(r.content) for r in self.requests]


def _gateway_ok(request):
    body = json.loads(request.content)
    return httpx.Response(
        200, json={"id": "order_gw_1", "amount": body["amount"], "currency": body["currency"], "status": "created"}
    )


def _sms_ok(request):
    return httpx.Response(201, json={"sid": "SM123"})



@pytest.fixture
def tracked_clients(monkeypatch):
    """Swap ``httpx.Client`` for one that records instances and fakes the network."""
    created = []
    real_client = httpx.Client

    def install(handler):
        class TrackedClient(real_client):
            def __init__(self, **kwargs):
                super().__init__(transport=httpx.MockTransport(handler), **kwargs)
                created.append(self)

        monkeypatch.setattr(httpx, "Client", TrackedClient)
        return created

    return install


@pytest.fixture
def mongo():
    database = mongomock.MongoClient().db
    ensure_indexes(database)
    return database


@pytest.fixture
def config():
    return Config(
        jwt_secret=JWT_SECRET,
        payment_key_id=KEY_ID,
        payment_key_secret=KEY_SECRET,
        payment_api_base="https://gateway.test",
        notify_account_sid="AC_test",
        notify_auth_token="token",
        notify_from_number="+15550000000",
        notify_admin_phone="+919000000000",
        notify_api_base="https://sms.test",
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def resolver(mongo, clock):
    return SettingsResolver(mongo, clock=clock)


@pytest.fixture
def gateway():
    return FakeProvider(_gateway_ok)


@pytest.fixture
def sms():
    return FakeProvider(_sms_ok)


@pytest.fixture
def client(mongo, config, resolver, gateway, sms):
    app = main.app
    app.dependency_overrides[get_db] = lambda: mongo
    app.dependency_overrides[get_config] = lambda: config
    app.dependency_overrides[main.get_settings_resolver] = lambda: resolver
    app.dependency_overrides[main.get_payment_gateway] = lambda: PaymentGateway(config, client=gateway.client())
    app.dependency_overrides[main.get_notifier] = lambda: Notifier(config, client=sms.client())
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def token_for(user_id, role=None, secret=JWT_SECRET):
    claims = {"sub": user_id}
    if role:
        claims["role"] = role
    return jwt.encode(claims, secret, algorithm="HS256")


def auth(user_id="user-1", role=None):
    return {"Authorization": f"Bearer {token_for(user_id, role)}"}


def add_menu_item(db, name, price, is_available=True, **extra):
    doc = {"name": name, "price": price, "is_available": is_available, **extra}
    return str(db[MENU_ITEMS].insert_one(doc).inserted_id)


def add_cart_line(db, user_id, menu_item_id, quantity):
    db[CART_ITEMS].insert_one({"user_id": user_id, "menu_item_id": menu_item_id, "quantity": quantity})


def put_settings(db, **values):
    for key, value in values.items():
        db[SETTINGS].update_one(
            {"setting_key": key}, {"$set": {"setting_value": str(value)}}, upsert=True
        )


CHECKOUT = {
    "delivery_address": "12 Park Street, Kolkata",
    "delivery_phone": "+91 98765-43210",
    "delivery_notes": "Ring the bell",
    "payment_method": "cash",
}


def fail_on(monkeypatch, collection_name, method):
    """Make one mongomock collection method raise for ``collection_name``."""
    original = getattr(mongomock.collection.Collection, method)

    def boom(self, *args, **kwargs):
        if self.name == collection_name:
            raise PyMongoError("write failed")
        return original(self, *args, **kwargs)

    monkeypatch.setattr(mongomock.collection.Collection, method, boom)
