from datetime import datetime

from conftest import auth, put_settings
from settings_resolver import SettingsResolver, build_settings, compute_is_open


def at(hour, minute=0):
    return datetime(2024, 5, 1, hour, minute)


def test_open_window_is_inclusive():
    assert compute_is_open("10:00", "22:00", at(10, 0))
    assert compute_is_open("10:00", "22:00", at(22, 0))
    assert not compute_is_open("10:00", "22:00", at(22, 1))
    assert not compute_is_open("10:00", "22:00", at(9, 59))


def test_overnight_window_never_opens():
    assert not compute_is_open("22:00", "02:00", at(23, 0))
    assert not compute_is_open("22:00", "02:00", at(1, 0))


def test_defaults_for_missing_or_bad_values():
    settings = build_settings({"min_order_price": "abc"}, at(12))
    assert settings.open_time == "10:00"
    assert settings.close_time == "22:00"
    assert settings.min_order_price == 100
    assert settings.delivery_charge == 50
    assert settings.is_open


def test_is_open_follows_the_clock(mongo, resolver, clock):
    assert resolver.get_settings().is_open
    clock.set(23, 0)
    assert not resolver.get_settings().is_open


def test_snapshot_is_kept_until_notified(mongo, clock):
    resolver = SettingsResolver(mongo, clock=clock)
    put_settings(mongo, delivery_charge=30)
    assert resolver.get_settings().delivery_charge == 30

    put_settings(mongo, delivery_charge=40)
    assert resolver.get_settings().delivery_charge == 30
    assert resolver.notify_changed().delivery_charge == 40
    assert resolver.get_settings().delivery_charge == 40


def test_listeners_receive_fresh_snapshot(mongo, resolver):
    seen = []

    def broken(_):
        raise RuntimeError("listener bug")

    resolver.subscribe(broken)
    resolver.subscribe(seen.append)
    resolver.update_settings({"min_order_price": 250})

    assert [s.min_order_price for s in seen] == [250]

    resolver.unsubscribe(seen.append)
    resolver.update_settings({"min_order_price": 300})
    assert len(seen) == 1


def test_settings_endpoint(client, mongo):
    put_settings(mongo, open_time="09:00", close_time="23:00", delivery_charge=40)

    body = client.get("/api/settings").json()

    assert body["open_time"] == "09:00"
    assert body["delivery_charge"] == 40
    assert body["isOpen"] is True


def test_admin_update_propagates(client, resolver):
    seen = []
    resolver.subscribe(seen.append)

    resp = client.put("/api/admin/settings", json={"min_order_price": 150, "is_open": False}, headers=auth("boss", "admin"))

    assert resp.status_code == 200
    assert resp.json()["min_order_price"] == 150
    assert resp.json()["isOpen"] is False
    assert seen and seen[0].manually_closed


def test_settings_update_requires_admin(client):
    resp = client.put("/api/admin/settings", json={"min_order_price": 1}, headers=auth())
    assert resp.status_code == 403


def test_settings_update_rejects_bad_time(client):
    resp = client.put("/api/admin/settings", json={"open_time": "25:00"}, headers=auth("boss", "admin"))
    assert resp.status_code == 400
