"""
Online payment capture

An online order is charged through a Razorpay-compatible gateway. The
gateway order is always minted for the persisted ``total_amount`` of the
internal order; the client only ever sends the internal order id.
If the gateway cannot be reached, or the customer closes the payment
widget, the pending internal order is removed again and its lines go back
into the customer's cart.
"""

import hashlib
import hmac
import logging
from contextlib import contextmanager
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import httpx
from pydantic import ValidationError as SchemaError
from pymongo.database import Database
from pymongo.errors import PyMongoError

from cart import CartRepository
from config import Config
from database import ORDERS, update_document
from errors import (
    BusinessRuleViolation,
    ConfigurationError,
    NotFoundError,
    UpstreamFailure,
    ValidationError,
)
from orders import OrderRepository
from schemas import GatewayOrder, Order, OrderStatus

logger = logging.getLogger("api.payments")

GATEWAY_ERROR = "Payment gateway error, please try again"
RECEIPT_MAX = 40
# only an order nobody has acted on yet may be thrown away
ABANDONABLE = {"status": OrderStatus.pending.value, "payment_status": "pending"}


def to_minor_units(amount: float) -> int:
    """Rupees to paise, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def sign(gateway_order_id: str, payment_id: str, secret: str) -> str:
    body = f"{gateway_order_id}|{payment_id}"
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def verify_signature(gateway_order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    return hmac.compare_digest(sign(gateway_order_id, payment_id, secret), signature)


class PaymentGateway:
    def __init__(self, config: Config, client: Optional[httpx.Client] = None):
        self.config = config
        self._client = client

    @contextmanager
    def _http(self):
        if self._client is not None:
            yield self._client
            return
        with httpx.Client(timeout=self.config.payment_timeout) as client:
            yield client

    def _credentials(self):
        if not self.config.payment_key_id:
            raise ConfigurationError("Payment gateway key ID not configured")
        if not self.config.payment_key_secret:
            raise ConfigurationError("Payment gateway secret key not configured")
        return self.config.payment_key_id, self.config.payment_key_secret

    def create_order(self, amount: int, currency: str, receipt: str) -> GatewayOrder:
        """Mint a gateway order for ``amount`` minor units."""
        auth = self._credentials()
        body = {"amount": amount, "currency": currency, "receipt": receipt[:RECEIPT_MAX]}
        try:
            with self._http() as client:
                resp = client.post(
                    f"{self.config.payment_api_base}/v1/orders",
                    json=body,
                    auth=auth,
                    timeout=self.config.payment_timeout,
                )
        except httpx.TimeoutException as exc:
            raise UpstreamFailure(f"payment gateway timed out: {exc}", GATEWAY_ERROR) from exc
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"payment gateway unreachable: {exc}", GATEWAY_ERROR) from exc
        if resp.status_code >= 400:
            raise UpstreamFailure(
                f"payment gateway error {resp.status_code}: {resp.text[:200]}", GATEWAY_ERROR
            )
        try:
            gateway_order = GatewayOrder.model_validate(resp.json())
        except (ValueError, SchemaError) as exc:
            raise UpstreamFailure(f"unexpected payment gateway response: {exc}", GATEWAY_ERROR) from exc
        if gateway_order.amount != amount:
            raise UpstreamFailure(
                f"payment gateway order {gateway_order.id} is for {gateway_order.amount}, expected {amount}",
                GATEWAY_ERROR,
            )
        logger.info("gateway order %s created for %s %s", gateway_order.id, amount, currency)
        return gateway_order


class PaymentService:
    def __init__(self, db: Database, gateway: PaymentGateway, config: Config):
        self.db = db
        self.gateway = gateway
        self.config = config
        self.orders = OrderRepository(db)
        self.carts = CartRepository(db)

    def _owned_online_order(self, user_id: str, order_id: str) -> Order:
        order = self.orders.get(order_id, user_id=user_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.payment_method != "online":
            raise BusinessRuleViolation("Order is not an online-payment order")
        return order

    def _restore_cart(self, order: Order) -> None:
        try:
            self.carts.restore_lines(order.user_id, [(l.menu_item_id, l.quantity) for l in order.items])
        except UpstreamFailure as exc:
            logger.error("could not restore cart for order %s: %s", order.id, exc.message)

    def _abandon(self, order: Order, reason: str) -> None:
        """Remove the pending order; only then put its lines back in the cart."""
        if self.orders.compensate(order.id, reason, extra_filter=ABANDONABLE):
            self._restore_cart(order)

    def create_gateway_order(self, user_id: str, order_id: str) -> dict:
        order = self._owned_online_order(user_id, order_id)
        if order.payment_status == "paid":
            raise BusinessRuleViolation("Order is already paid")
        if order.status == OrderStatus.cancelled:
            raise BusinessRuleViolation("Order has been cancelled")

        amount = to_minor_units(order.total_amount)
        currency = self.config.payment_currency
        try:
            gateway_order = self.gateway.create_order(amount, currency, receipt=f"order_{order.id}")
            saved = update_document(self.db, ORDERS, order.id, {"gateway_order_id": gateway_order.id})
            if not saved:
                raise UpstreamFailure(f"order {order.id} vanished before gateway order was stored")
        except (ConfigurationError, UpstreamFailure) as exc:
            self._abandon(order, f"gateway order failure ({exc.message})")
            raise
        except PyMongoError as exc:
            self._abandon(order, "gateway order id not stored")
            raise UpstreamFailure(f"failed to store gateway order for {order.id}: {exc}") from exc

        return {
            "orderId": gateway_order.id,
            "amount": gateway_order.amount,
            "currency": gateway_order.currency,
            "keyId": self.config.payment_key_id,
        }

    def confirm_payment(self, user_id: str, order_id: str, payment_id: Optional[str], signature: Optional[str]) -> Order:
        """Success leg of the payment widget."""
        order = self._owned_online_order(user_id, order_id)
        if order.payment_status == "paid":
            return order
        if not order.gateway_order_id:
            raise BusinessRuleViolation("Payment has not been started for this order")
        if not payment_id or not signature:
            raise ValidationError("Payment id and signature are required")
        if not self.config.payment_key_secret:
            raise ConfigurationError("Payment gateway secret key not configured")
        if not verify_signature(order.gateway_order_id, payment_id, signature, self.config.payment_key_secret):
            logger.warning("invalid payment signature for order %s", order.id)
            raise ValidationError("Invalid payment signature")

        try:
            saved = update_document(
                self.db, ORDERS, order.id,
                {"payment_status": "paid", "gateway_payment_id": payment_id},
                extra_filter={"payment_status": "pending"},
            )
        except PyMongoError as exc:
            saved = False
            logger.error("payment update error for order %s: %s", order.id, exc)
        if not saved:
            logger.error(
                "RECONCILE: payment %s captured for order %s but payment_status is not paid",
                payment_id, order.id,
            )
            raise UpstreamFailure(f"could not mark order {order.id} paid")
        logger.info("order %s paid (%s)", order.id, payment_id)
        return self.orders.get(order.id)

    def dismiss_payment(self, user_id: str, order_id: str) -> None:
        """The customer closed the widget without paying."""
        order = self._owned_online_order(user_id, order_id)
        if order.payment_status == "paid":
            raise BusinessRuleViolation("Order is already paid")
        if order.status != OrderStatus.pending:
            raise BusinessRuleViolation(
                f"Order can no longer be dismissed (status: {order.status.value})",
                details={"status": order.status.value},
            )
        if not self.orders.delete(order.id, extra_filter=ABANDONABLE):
            current = self.orders.get(order.id, with_items=False)
            status = current.status.value if current else "deleted"
            raise BusinessRuleViolation(
                f"Order can no longer be dismissed (status: {status})",
                details={"status": status},
            )
        self._restore_cart(order)
        logger.info("order %s removed after payment was dismissed", order.id)
