"""
Restaurant settings read model

Settings are stored as ``setting_key``/``setting_value`` rows. The resolver
turns them into an immutable ``RestaurantSettings`` snapshot and swaps the
whole snapshot whenever it is told the rows changed. Consumers never mutate
the snapshot; they either read the current one or register a listener.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import SETTINGS
from errors import UpstreamFailure

logger = logging.getLogger("api.settings")

DEFAULT_OPEN_TIME = "10:00"
DEFAULT_CLOSE_TIME = "22:00"
DEFAULT_MIN_ORDER_PRICE = 100.0
DEFAULT_DELIVERY_CHARGE = 50.0

Clock = Callable[[], datetime]
Listener = Callable[["RestaurantSettings"], None]


class RestaurantSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    open_time: str = DEFAULT_OPEN_TIME
    close_time: str = DEFAULT_CLOSE_TIME
    min_order_price: float = DEFAULT_MIN_ORDER_PRICE
    delivery_charge: float = DEFAULT_DELIVERY_CHARGE
    whatsapp_number: Optional[str] = None
    contact_phone: Optional[str] = None
    manually_closed: bool = False
    is_open: bool = True

    def public(self) -> dict:
        data = self.model_dump(exclude={"is_open", "manually_closed"})
        data["isOpen"] = self.is_open
        return data


def current_hhmm(moment: datetime) -> str:
    return moment.strftime("%H:%M")


def compute_is_open(open_time: str, close_time: str, moment: datetime) -> bool:
    """Inclusive HH:MM window check.

    Plain string comparison: a window that wraps past midnight
    (e.g. 22:00-02:00) is never open.
    """
    now = current_hhmm(moment)
    return open_time <= now <= close_time


def _parse_price(raw: Optional[str], default: float) -> float:
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return value if value >= 0 else default


def build_settings(rows: Dict[str, str], moment: datetime) -> RestaurantSettings:
    open_time = rows.get("open_time") or DEFAULT_OPEN_TIME
    close_time = rows.get("close_time") or DEFAULT_CLOSE_TIME
    manually_closed = str(rows.get("is_open", "")).lower() == "false"
    return RestaurantSettings(
        open_time=open_time,
        close_time=close_time,
        min_order_price=_parse_price(rows.get("min_order_price"), DEFAULT_MIN_ORDER_PRICE),
        delivery_charge=_parse_price(rows.get("delivery_charge"), DEFAULT_DELIVERY_CHARGE),
        whatsapp_number=rows.get("whatsapp_number"),
        contact_phone=rows.get("contact_phone"),
        manually_closed=manually_closed,
        is_open=(not manually_closed) and compute_is_open(open_time, close_time, moment),
    )


class SettingsResolver:
    def __init__(self, db: Database, clock: Clock = datetime.now):
        self.db = db
        self.clock = clock
        self._rows: Optional[Dict[str, str]] = None
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._watcher: Optional[threading.Thread] = None

    def _fetch_rows(self) -> Dict[str, str]:
        try:
            docs = list(self.db[SETTINGS].find({}))
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to load settings: {exc}") from exc
        return {d["setting_key"]: str(d.get("setting_value", "")) for d in docs if "setting_key" in d}

    def refresh(self) -> RestaurantSettings:
        """Re-read every settings row and replace the snapshot."""
        rows = self._fetch_rows()
        with self._lock:
            self._rows = rows
        return build_settings(rows, self.clock())

    def get_settings(self) -> RestaurantSettings:
        with self._lock:
            rows = self._rows
        if rows is None:
            return self.refresh()
        # is_open depends on the clock, so it is derived on every read
        return build_settings(rows, self.clock())

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def notify_changed(self) -> RestaurantSettings:
        """Change-feed entry point: full re-fetch, then fan out to listeners."""
        snapshot = self.refresh()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("settings listener %r failed", listener)
        return snapshot

    def update_settings(self, values: Dict[str, object]) -> RestaurantSettings:
        """Upsert the given keys (admin) and publish the change."""
        try:
            for key, value in values.items():
                if isinstance(value, bool):
                    value = "true" if value else "false"
                self.db[SETTINGS].update_one(
                    {"setting_key": key},
                    {"$set": {"setting_key": key, "setting_value": str(value)}},
                    upsert=True,
                )
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to save settings: {exc}") from exc
        logger.info("settings updated: %s", ", ".join(sorted(values)))
        return self.notify_changed()

    def start_change_feed(self) -> None:
        """Follow the settings collection's change stream in a daemon thread.

        Needs a replica set; without one the watcher logs and exits and
        updates made through ``update_settings`` still propagate in-process.
        """
        if self._watcher is not None:
            return

        def _run():
            try:
                with self.db[SETTINGS].watch() as stream:
                    for _change in stream:
                        self.notify_changed()
            except (PyMongoError, UpstreamFailure) as exc:
                logger.warning("settings change feed stopped: %s", exc)

        self._watcher = threading.Thread(target=_run, name="settings-change-feed", daemon=True)
        self._watcher.start()
