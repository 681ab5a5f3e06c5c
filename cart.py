"""
Cart store

``CartRepository`` is the durable copy of a user's cart (the ``cart_items``
collection). ``CartStore`` is the working view a request or client holds:
it applies each change in memory first, persists it, and puts the previous
snapshot back if persisting fails. Prices shown here are whatever the menu
said when the cart was loaded; order placement re-prices from scratch.
"""

import logging
from typing import Callable, Iterable, List, Optional, Tuple

from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import CART_ITEMS, MENU_ITEMS, now, serialize_doc, to_object_id
from errors import AuthorizationError, BusinessRuleViolation, NotFoundError, UpstreamFailure
from schemas import CartItem, MenuItem

logger = logging.getLogger("api.cart")


class CartView(BaseModel):
    items: List[CartItem]
    item_count: int
    total: float


class CartResult(BaseModel):
    ok: bool
    error: Optional[str] = None
    message: Optional[str] = None


# ------------- Durable store -------------

class CartRepository:
    def __init__(self, db: Database):
        self.db = db

    def get_menu_item(self, menu_item_id: str) -> Optional[MenuItem]:
        oid = to_object_id(menu_item_id)
        if oid is None:
            return None
        try:
            doc = self.db[MENU_ITEMS].find_one({"_id": oid})
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to load menu item {menu_item_id}: {exc}") from exc
        return MenuItem.model_validate(serialize_doc(doc)) if doc else None

    def get_menu_items(self, menu_item_ids: Iterable[str]) -> dict:
        oids = [oid for oid in (to_object_id(i) for i in menu_item_ids) if oid is not None]
        if not oids:
            return {}
        try:
            docs = list(self.db[MENU_ITEMS].find({"_id": {"$in": oids}}))
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to load menu items: {exc}") from exc
        items = [MenuItem.model_validate(serialize_doc(d)) for d in docs]
        return {item.id: item for item in items}

    def list_lines(self, user_id: str) -> List[CartItem]:
        """Cart lines joined with their live menu items.

        Lines whose menu item no longer exists are left out.
        """
        try:
            rows = list(self.db[CART_ITEMS].find({"user_id": user_id}))
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to fetch cart for {user_id}: {exc}") from exc
        menu = self.get_menu_items(r["menu_item_id"] for r in rows)
        lines = []
        for row in rows:
            item = menu.get(row["menu_item_id"])
            if item is None:
                continue
            lines.append(CartItem(id=str(row["_id"]), menu_item=item, quantity=row["quantity"]))
        return lines

    def insert_line(self, user_id: str, menu_item_id: str, quantity: int) -> str:
        try:
            result = self.db[CART_ITEMS].insert_one({
                "user_id": user_id,
                "menu_item_id": menu_item_id,
                "quantity": quantity,
                "created_at": now(),
                "updated_at": now(),
            })
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to add cart line: {exc}") from exc
        return str(result.inserted_id)

    def set_quantity(self, user_id: str, menu_item_id: str, quantity: int) -> None:
        try:
            result = self.db[CART_ITEMS].update_one(
                {"user_id": user_id, "menu_item_id": menu_item_id},
                {"$set": {"quantity": quantity, "updated_at": now()}},
            )
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to update cart line: {exc}") from exc
        if result.matched_count == 0:
            raise UpstreamFailure(f"cart line {menu_item_id} vanished for {user_id}")

    def delete_line(self, user_id: str, menu_item_id: str) -> None:
        try:
            self.db[CART_ITEMS].delete_one({"user_id": user_id, "menu_item_id": menu_item_id})
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to delete cart line: {exc}") from exc

    def clear(self, user_id: str) -> int:
        try:
            result = self.db[CART_ITEMS].delete_many({"user_id": user_id})
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to clear cart for {user_id}: {exc}") from exc
        return result.deleted_count

    def restore_lines(self, user_id: str, lines: Iterable[Tuple[str, int]]) -> None:
        """Put ``(menu_item_id, quantity)`` pairs back, merging with existing lines."""
        try:
            for menu_item_id, quantity in lines:
                self.db[CART_ITEMS].update_one(
                    {"user_id": user_id, "menu_item_id": menu_item_id},
                    {
                        "$inc": {"quantity": quantity},
                        "$set": {"updated_at": now()},
                        "$setOnInsert": {"created_at": now()},
                    },
                    upsert=True,
                )
        except PyMongoError as exc:
            raise UpstreamFailure(f"failed to restore cart for {user_id}: {exc}") from exc


# ------------- Working view -------------

def optimistic_apply(
    store: "CartStore",
    mutate: Callable[[List[CartItem]], List[CartItem]],
    persist: Callable[[], None],
    error_message: str,
    success_message: Optional[str] = None,
) -> CartResult:
    """Apply ``mutate`` to the in-memory lines, then ``persist``.

    On a persistence failure the previous lines are restored and a failed
    result is returned; nothing is half-applied.
    """
    snapshot = list(store.items)
    store.items = mutate(list(snapshot))
    try:
        persist()
    except UpstreamFailure as exc:
        store.items = snapshot
        logger.warning("cart change rolled back for %s: %s", store.user_id, exc.message)
        return CartResult(ok=False, error=error_message)
    return CartResult(ok=True, message=success_message)


class CartStore:
    def __init__(self, repo: CartRepository, user_id: Optional[str]):
        self.repo = repo
        self.user_id = user_id
        self.items: List[CartItem] = []

    def _require_user(self, message: str) -> str:
        if not self.user_id:
            raise AuthorizationError(message)
        return self.user_id

    def _find(self, menu_item_id: str) -> Optional[CartItem]:
        for line in self.items:
            if line.menu_item.id == menu_item_id:
                return line
        return None

    def load(self) -> "CartStore":
        if self.user_id:
            self.items = self.repo.list_lines(self.user_id)
        else:
            self.items = []
        return self

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.items)

    @property
    def total(self) -> float:
        return round(sum(line.line_total for line in self.items), 2)

    def view(self) -> CartView:
        return CartView(items=list(self.items), item_count=self.item_count, total=self.total)

    def add_item(self, menu_item: MenuItem, quantity: int = 1) -> CartResult:
        user_id = self._require_user("Please sign in to add items to cart")
        if quantity < 1:
            raise BusinessRuleViolation("Quantity must be at least 1")
        if not menu_item.is_available:
            raise BusinessRuleViolation(f"{menu_item.name} is currently unavailable")

        existing = self._find(menu_item.id)
        if existing is not None:
            return self.update_quantity(menu_item.id, existing.quantity + quantity)

        def mutate(lines):
            return lines + [CartItem(menu_item=menu_item, quantity=quantity)]

        def persist():
            line_id = self.repo.insert_line(user_id, menu_item.id, quantity)
            self._find(menu_item.id).id = line_id

        return optimistic_apply(
            self, mutate, persist, "Failed to add item to cart", f"{menu_item.name} added to cart"
        )

    def update_quantity(self, menu_item_id: str, quantity: int) -> CartResult:
        user_id = self._require_user("Please sign in to update your cart")
        if quantity <= 0:
            return self.remove_item(menu_item_id)
        if self._find(menu_item_id) is None:
            raise NotFoundError("Item is not in your cart")

        def mutate(lines):
            return [
                line.model_copy(update={"quantity": quantity}) if line.menu_item.id == menu_item_id else line
                for line in lines
            ]

        return optimistic_apply(
            self,
            mutate,
            lambda: self.repo.set_quantity(user_id, menu_item_id, quantity),
            "Failed to update quantity",
        )

    def remove_item(self, menu_item_id: str) -> CartResult:
        user_id = self._require_user("Please sign in to update your cart")
        line = self._find(menu_item_id)
        if line is None:
            raise NotFoundError("Item is not in your cart")
        return optimistic_apply(
            self,
            lambda lines: [l for l in lines if l.menu_item.id != menu_item_id],
            lambda: self.repo.delete_line(user_id, menu_item_id),
            "Failed to remove item",
            f"{line.menu_item.name} removed from cart",
        )

    def clear_cart(self) -> CartResult:
        user_id = self._require_user("Please sign in to update your cart")
        return optimistic_apply(
            self, lambda lines: [], lambda: self.repo.clear(user_id), "Failed to clear cart"
        )
