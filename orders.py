"""
Order placement

The only path from a cart to a persisted order. Prices, availability and
the delivery charge are read from the database at the moment of placement;
nothing the client believes about its cart is trusted.
"""

import logging
import threading
import weakref
from typing import List, Optional

from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

from cart import CartRepository
from database import (
    CART_ITEMS,
    ORDERS,
    ORDER_ITEMS,
    create_document,
    create_documents,
    delete_document,
    delete_documents,
    get_document_by_id,
    get_documents,
)
from errors import BusinessRuleViolation, NotFoundError, UpstreamFailure, ValidationError
from schemas import Order, OrderCreate, OrderLine, OrderStatus
from settings_resolver import SettingsResolver
from validators import normalize_phone, validate_checkout

logger = logging.getLogger("api.orders")

# entries vanish once no request holds the user's lock
_user_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
_user_locks_guard = threading.Lock()


def user_lock(user_id: str) -> threading.Lock:
    """Per-user lock so two checkouts by one user cannot consume the same cart."""
    with _user_locks_guard:
        lock = _user_locks.get(user_id)
        if lock is None:
            lock = threading.Lock()
            _user_locks[user_id] = lock
        return lock


def format_amount(amount: float) -> str:
    if float(amount).is_integer():
        return str(int(amount))
    return f"{amount:.2f}"


class PlacedOrder(BaseModel):
    order: Order
    total_amount: float
    subtotal: float
    delivery_charge: float


class OrderRepository:
    def __init__(self, db: Database):
        self.db = db

    def get(self, order_id: str, user_id: Optional[str] = None, with_items: bool = True) -> Optional[Order]:
        """Load an order; with ``user_id`` only the owner's order is returned."""
        owner = {"user_id": user_id} if user_id is not None else None
        try:
            doc = get_document_by_id(self.db, ORDERS, order_id, extra_filter=owner)
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to load order {order_id}: {exc}") from exc
        if not doc:
            return None
        order = Order.model_validate(doc)
        if with_items:
            order.items = self.lines(order.id)
        return order

    def lines(self, order_id: str) -> List[OrderLine]:
        try:
            docs = get_documents(self.db, ORDER_ITEMS, {"order_id": order_id})
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to load items of order {order_id}: {exc}") from exc
        return [OrderLine.model_validate(d) for d in docs]

    def find(self, filter_dict: dict) -> List[Order]:
        try:
            docs = get_documents(self.db, ORDERS, filter_dict, sort=[("created_at", -1)])
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to list orders: {exc}") from exc
        orders = [Order.model_validate(d) for d in docs]
        for order in orders:
            order.items = self.lines(order.id)
        return orders

    def delete(self, order_id: str, extra_filter: Optional[dict] = None) -> bool:
        """Remove an order, then its line items.

        With ``extra_filter`` the order is only removed while it still
        matches; returns False (and touches no lines) when it does not.
        """
        try:
            if not delete_document(self.db, ORDERS, order_id, extra_filter=extra_filter):
                return False
            delete_documents(self.db, ORDER_ITEMS, {"order_id": order_id})
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to delete order {order_id}: {exc}") from exc
        return True

    def compensate(self, order_id: str, reason: str, extra_filter: Optional[dict] = None) -> bool:
        """Best-effort removal of a half-created order; True once it is gone."""
        try:
            removed = self.delete(order_id, extra_filter)
        except UpstreamFailure as exc:
            logger.error(
                "RECONCILE: could not remove order %s after %s; manual cleanup needed: %s",
                order_id, reason, exc.message,
            )
            return False
        if not removed:
            logger.warning("order %s not removed after %s: it changed meanwhile", order_id, reason)
            return False
        logger.warning("order %s removed after %s", order_id, reason)
        return True


class OrderPlacementService:
    def __init__(self, db: Database, settings: SettingsResolver):
        self.db = db
        self.settings = settings
        self.carts = CartRepository(db)
        self.orders = OrderRepository(db)

    def place_order(self, user_id: str, payload: OrderCreate) -> PlacedOrder:
        errors = validate_checkout(
            payload.delivery_address,
            payload.delivery_phone,
            payload.delivery_notes,
            payload.payment_method,
        )
        if errors:
            logger.info("checkout rejected for %s: %s", user_id, errors)
            raise ValidationError(", ".join(errors))

        with user_lock(user_id):
            return self._place(user_id, payload)

    def _place(self, user_id: str, payload: OrderCreate) -> PlacedOrder:
        try:
            rows = list(self.db[CART_ITEMS].find({"user_id": user_id}))
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to fetch cart for {user_id}: {exc}",
                                  public_message="Failed to fetch cart items") from exc
        if not rows:
            raise BusinessRuleViolation("Cart is empty")

        menu = self.carts.get_menu_items(r["menu_item_id"] for r in rows)
        unavailable = []
        for row in rows:
            item = menu.get(row["menu_item_id"])
            if item is None:
                unavailable.append("Unknown item")
            elif not item.is_available:
                unavailable.append(item.name)
        if unavailable:
            raise BusinessRuleViolation(
                "Some items in your cart are no longer available: " + ", ".join(unavailable),
                details={"unavailable_items": unavailable},
            )

        subtotal = round(sum(menu[r["menu_item_id"]].price * r["quantity"] for r in rows), 2)
        logger.info("server-calculated subtotal for %s: %s", user_id, subtotal)

        settings = self.settings.refresh()
        if subtotal < settings.min_order_price:
            shortfall = round(settings.min_order_price - subtotal, 2)
            raise BusinessRuleViolation(
                f"Minimum order amount is ₹{format_amount(settings.min_order_price)}. "
                f"Add ₹{format_amount(shortfall)} more",
                details={"shortfall": shortfall},
            )
        if not settings.is_open:
            raise BusinessRuleViolation("Restaurant is currently closed")

        delivery_charge = settings.delivery_charge
        verified_total = round(subtotal + delivery_charge, 2)

        order_doc = {
            "user_id": user_id,
            "total_amount": verified_total,
            "delivery_address": payload.delivery_address.strip(),
            "delivery_phone": normalize_phone(payload.delivery_phone),
            "delivery_notes": (payload.delivery_notes or "").strip() or None,
            "payment_method": payload.payment_method,
            "status": OrderStatus.pending.value,
            "payment_status": "pending",
            "gateway_order_id": None,
            "gateway_payment_id": None,
        }
        try:
            order_id = create_document(self.db, ORDERS, order_doc)
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to insert order for {user_id}: {exc}",
                                  public_message="Failed to create order") from exc
        logger.info("order %s created for %s, total %s", order_id, user_id, verified_total)

        line_docs = []
        for row in rows:
            item = menu[row["menu_item_id"]]
            line_docs.append({
                "order_id": order_id,
                "menu_item_id": item.id,
                "name": item.name,
                "quantity": row["quantity"],
                "unit_price": item.price,
                "total_price": round(item.price * row["quantity"], 2),
            })
        try:
            create_documents(self.db, ORDER_ITEMS, line_docs)
        except PyMongoError as exc:
            self.orders.compensate(order_id, "line item insert failure")
            raise UpstreamFailure(f"failed to insert items of order {order_id}: {exc}",
                                  public_message="Failed to create order items") from exc

        # only the lines that were priced; anything added meanwhile stays in the cart
        try:
            delete_documents(self.db, CART_ITEMS, {"_id": {"$in": [r["_id"] for r in rows]}, "user_id": user_id})
        except PyMongoError as exc:
            self.orders.compensate(order_id, "cart clear failure")
            raise UpstreamFailure(f"failed to clear cart after order {order_id}: {exc}",
                                  public_message="Failed to create order") from exc

        order = self.orders.get(order_id)
        return PlacedOrder(
            order=order,
            total_amount=verified_total,
            subtotal=subtotal,
            delivery_charge=delivery_charge,
        )

    def list_orders(self, user_id: str) -> List[Order]:
        return self.orders.find({"user_id": user_id})

    def get_order(self, user_id: str, order_id: str) -> Order:
        order = self.orders.get(order_id, user_id=user_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order
