"""
Order lifecycle

    pending -> confirmed -> preparing -> out_for_delivery -> delivered
        \\          \\            \\               \\
         +----------+------------+---------------+--> cancelled

Customers may cancel only while an order is pending or confirmed.
Everything else is an admin action. Every status write is a
compare-and-set on the status the decision was made against, so a
concurrent change makes the write miss instead of overwriting it.
"""

import logging
from typing import List, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import ORDERS, update_document
from errors import BusinessRuleViolation, ConflictError, NotFoundError, UpstreamFailure
from orders import OrderRepository
from schemas import Order, OrderStatus

logger = logging.getLogger("api.lifecycle")

SEQUENCE = [
    OrderStatus.pending,
    OrderStatus.confirmed,
    OrderStatus.preparing,
    OrderStatus.out_for_delivery,
    OrderStatus.delivered,
]
TERMINAL_STATUSES = frozenset({OrderStatus.delivered, OrderStatus.cancelled})
CANCELLABLE_STATUSES = frozenset({OrderStatus.pending, OrderStatus.confirmed})


def can_cancel(status: OrderStatus) -> bool:
    return OrderStatus(status) in CANCELLABLE_STATUSES


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Admin transitions: forward along the sequence, or cancel while not terminal."""
    current, target = OrderStatus(current), OrderStatus(target)
    if current in TERMINAL_STATUSES or current == target:
        return False
    if target == OrderStatus.cancelled:
        return True
    return SEQUENCE.index(target) > SEQUENCE.index(current)


def allowed_transitions(current: OrderStatus) -> List[OrderStatus]:
    return [s for s in OrderStatus if can_transition(current, s)]


class OrderLifecycle:
    def __init__(self, db: Database):
        self.db = db
        self.orders = OrderRepository(db)

    def _compare_and_set(self, order: Order, allowed_from, target: OrderStatus) -> bool:
        try:
            return update_document(
                self.db, ORDERS, order.id,
                {"status": target.value},
                extra_filter={"status": {"$in": [s.value for s in allowed_from]}},
            )
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to set order {order.id} to {target.value}: {exc}",
                                  public_message="Failed to update order") from exc

    def cancel(self, user_id: str, order_id: str) -> Order:
        """Customer cancellation; refused once preparation has started."""
        order = self.orders.get(order_id, user_id=user_id)
        if order is None:
            raise NotFoundError("Order not found")
        if not can_cancel(order.status):
            raise BusinessRuleViolation(
                f"Order can no longer be cancelled (status: {order.status.value})",
                details={"status": order.status.value},
            )
        if not self._compare_and_set(order, CANCELLABLE_STATUSES, OrderStatus.cancelled):
            current = self.orders.get(order_id, with_items=False)
            status = current.status.value if current else "unknown"
            raise BusinessRuleViolation(
                f"Order can no longer be cancelled (status: {status})",
                details={"status": status},
            )
        logger.info("order %s cancelled by customer %s", order.id, user_id)
        return self.orders.get(order.id)

    def advance(self, order_id: str, target: OrderStatus) -> Order:
        """Admin status change."""
        target = OrderStatus(target)
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if not can_transition(order.status, target):
            raise BusinessRuleViolation(
                f"Cannot move order from {order.status.value} to {target.value}",
                details={"allowed": [s.value for s in allowed_transitions(order.status)]},
            )
        if not self._compare_and_set(order, [order.status], target):
            raise ConflictError("Order status changed, reload and try again")
        logger.info("order %s moved %s -> %s", order.id, order.status.value, target.value)
        return self.orders.get(order.id)

    def list_all(self, status: Optional[OrderStatus] = None) -> List[Order]:
        filt = {"status": OrderStatus(status).value} if status else {}
        return self.orders.find(filt)
