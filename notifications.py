"""SMS notifications for new orders and status changes.

Delivery is best-effort: callers schedule these as background tasks and a
failed send is logged, never raised back into the request.
"""

import logging
from contextlib import contextmanager
from typing import Optional

import httpx

from config import Config
from errors import ConfigurationError, UpstreamFailure

logger = logging.getLogger("api.notify")

STATUS_MESSAGES = {
    "confirmed": "Your order has been confirmed and is being prepared!",
    "preparing": "Your order is now being prepared.",
    "out_for_delivery": "Your order is out for delivery!",
    "delivered": "Your order has been delivered. Enjoy your meal!",
    "cancelled": "Your order has been cancelled.",
}


def short_id(order_id: str) -> str:
    return order_id[:8]


def status_message(order_id: str, status: str) -> str:
    text = STATUS_MESSAGES.get(status, f"Status updated to: {status}")
    return f"Order #{short_id(order_id)}: {text}"


def new_order_message(order_id: str, amount: float, phone: str, address: str) -> str:
    return (
        f"New Order #{short_id(order_id)}!\n"
        f"Amount: ₹{amount:g}\n"
        f"Phone: {phone}\n"
        f"Address: {address[:50]}"
    )


class Notifier:
    def __init__(self, config: Config, client: Optional[httpx.Client] = None):
        self.config = config
        self._client = client

    @contextmanager
    def _http(self):
        if self._client is not None:
            yield self._client
            return
        with httpx.Client(timeout=10.0) as client:
            yield client

    def send(self, to: str, body: str) -> str:
        """Post one SMS; returns the provider's message id."""
        cfg = self.config
        if not (cfg.notify_account_sid and cfg.notify_auth_token and cfg.notify_from_number):
            raise ConfigurationError("SMS provider credentials are not configured")
        url = f"{cfg.notify_api_base}/2010-04-01/Accounts/{cfg.notify_account_sid}/Messages.json"
        try:
            with self._http() as client:
                resp = client.post(
                    url,
                    auth=(cfg.notify_account_sid, cfg.notify_auth_token),
                    data={"To": to, "From": cfg.notify_from_number, "Body": body},
                )
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"SMS provider unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise UpstreamFailure(f"SMS provider error {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json().get("sid", "")
        except ValueError:
            return ""

    def _send_safely(self, to: str, body: str, what: str) -> bool:
        try:
            sid = self.send(to, body)
        except ConfigurationError as exc:
            logging.getLogger("api.config").warning("%s notification skipped: %s", what, exc.message)
            return False
        except UpstreamFailure as exc:
            logger.warning("%s notification failed: %s", what, exc.message)
            return False
        logger.info("%s notification sent (%s)", what, sid)
        return True

    def notify_new_order(self, order_id: str, amount: float, phone: str, address: str) -> bool:
        admin_phone = self.config.notify_admin_phone
        if not admin_phone:
            logging.getLogger("api.config").warning("new order notification skipped: NOTIFY_ADMIN_PHONE not set")
            return False
        return self._send_safely(admin_phone, new_order_message(order_id, amount, phone, address), "new order")

    def notify_status(self, order_id: str, status: str, phone: Optional[str]) -> bool:
        if not phone:
            return False
        return self._send_safely(phone, status_message(order_id, status), "order status")
