import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pymongo.database import Database

from auth import CurrentUser, get_current_user, require_admin
from cart import CartRepository, CartStore
from config import Config, get_config
from database import MENU_ITEMS, db as default_db, ensure_indexes, get_db, get_documents
from errors import NotFoundError, UpstreamFailure, ValidationError, register_exception_handlers
from lifecycle import OrderLifecycle
from logging_config import configure_logging
from notifications import Notifier
from orders import OrderPlacementService, PlacedOrder
from payments import PaymentGateway, PaymentService
from schemas import (
    CartAdd,
    CartUpdate,
    OrderCreate,
    OrderStatus,
    OrderStatusUpdate,
    PaymentConfirm,
    PaymentOrderCreate,
    SettingsUpdate,
)
from settings_resolver import SettingsResolver

logger = logging.getLogger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = Config.from_env()
    configure_logging(config.log_level, config.log_json)
    if default_db is not None:
        ensure_indexes(default_db)
        if config.settings_change_feed:
            resolver = SettingsResolver(default_db)
            app.state.settings_resolver = resolver
            resolver.start_change_feed()
    logger.info("ordering API started")
    yield


app = FastAPI(title="Restaurant Ordering API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# -----------------------------
# Dependencies
# -----------------------------

def get_settings_resolver(request: Request, db: Database = Depends(get_db)) -> SettingsResolver:
    """One resolver per app so listeners and the cached snapshot are shared."""
    resolver = getattr(request.app.state, "settings_resolver", None)
    if resolver is None or resolver.db is not db:
        resolver = SettingsResolver(db)
        request.app.state.settings_resolver = resolver
    return resolver

def get_notifier(config: Config = Depends(get_config)) -> Notifier:
    return Notifier(config)

def get_payment_gateway(config: Config = Depends(get_config)) -> PaymentGateway:
    return PaymentGateway(config)

def get_cart_store(user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)) -> CartStore:
    return CartStore(CartRepository(db), user.id).load()

def _cart_response(store: CartStore, result) -> dict:
    if not result.ok:
        raise UpstreamFailure(f"cart change failed for {store.user_id}", public_message=result.error)
    return {"cart": store.view(), "message": result.message}

# -----------------------------
# Health
# -----------------------------

@app.get("/")
def root():
    return {"message": "Restaurant ordering API running"}

# -----------------------------
# Menu & settings
# -----------------------------

@app.get("/api/menu")
def list_menu(category: Optional[str] = None, db: Database = Depends(get_db)):
    filt = {"is_available": True}
    if category:
        filt["category"] = category
    items = get_documents(db, MENU_ITEMS, filt, sort=[("name", 1)])
    return {"items": items}

@app.get("/api/settings")
def read_settings(resolver: SettingsResolver = Depends(get_settings_resolver)):
    return resolver.get_settings().public()

@app.put("/api/admin/settings")
def write_settings(
    payload: SettingsUpdate,
    admin: CurrentUser = Depends(require_admin),
    resolver: SettingsResolver = Depends(get_settings_resolver),
):
    values = payload.model_dump(exclude_none=True)
    if not values:
        raise ValidationError("No settings to update")
    return resolver.update_settings(values).public()

# -----------------------------
# Cart Endpoints
# -----------------------------

@app.get("/api/cart")
def read_cart(store: CartStore = Depends(get_cart_store)):
    return {"cart": store.view()}

@app.post("/api/cart/items")
def add_cart_item(payload: CartAdd, store: CartStore = Depends(get_cart_store)):
    menu_item = store.repo.get_menu_item(payload.menu_item_id)
    if menu_item is None:
        raise NotFoundError("Menu item not found")
    return _cart_response(store, store.add_item(menu_item, payload.quantity))

@app.patch("/api/cart/items/{menu_item_id}")
def update_cart_item(menu_item_id: str, payload: CartUpdate, store: CartStore = Depends(get_cart_store)):
    return _cart_response(store, store.update_quantity(menu_item_id, payload.quantity))

@app.delete("/api/cart/items/{menu_item_id}")
def remove_cart_item(menu_item_id: str, store: CartStore = Depends(get_cart_store)):
    return _cart_response(store, store.remove_item(menu_item_id))

@app.delete("/api/cart")
def clear_cart(store: CartStore = Depends(get_cart_store)):
    return _cart_response(store, store.clear_cart())

# -----------------------------
# Order Endpoints
# -----------------------------

@app.post("/api/order", response_model=PlacedOrder)
def create_order(
    payload: OrderCreate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
    resolver: SettingsResolver = Depends(get_settings_resolver),
    notifier: Notifier = Depends(get_notifier),
):
    placed = OrderPlacementService(db, resolver).place_order(user.id, payload)
    order = placed.order
    background_tasks.add_task(
        notifier.notify_new_order, order.id, order.total_amount, order.delivery_phone, order.delivery_address
    )
    return placed

@app.get("/api/orders")
def list_orders(
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
    resolver: SettingsResolver = Depends(get_settings_resolver),
):
    return {"orders": OrderPlacementService(db, resolver).list_orders(user.id)}

@app.get("/api/orders/{order_id}")
def get_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
    resolver: SettingsResolver = Depends(get_settings_resolver),
):
    return OrderPlacementService(db, resolver).get_order(user.id, order_id)

@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return OrderLifecycle(db).cancel(user.id, order_id)

# -----------------------------
# Payment Endpoints
# -----------------------------

@app.post("/api/payment-order")
def create_payment_order(
    payload: PaymentOrderCreate,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
    config: Config = Depends(get_config),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return PaymentService(db, gateway, config).create_gateway_order(user.id, payload.orderId)

@app.post("/api/payment-order/{order_id}/confirm")
def confirm_payment(
    order_id: str,
    payload: PaymentConfirm,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
    config: Config = Depends(get_config),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    service = PaymentService(db, gateway, config)
    return service.confirm_payment(user.id, order_id, payload.razorpay_payment_id, payload.razorpay_signature)

@app.post("/api/payment-order/{order_id}/dismiss")
def dismiss_payment(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
    config: Config = Depends(get_config),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    PaymentService(db, gateway, config).dismiss_payment(user.id, order_id)
    return {"success": True}

# -----------------------------
# Admin order management
# -----------------------------

@app.get("/api/admin/orders")
def admin_orders(
    status: Optional[OrderStatus] = None,
    admin: CurrentUser = Depends(require_admin),
    db: Database = Depends(get_db),
):
    return {"orders": OrderLifecycle(db).list_all(status)}

@app.patch("/api/admin/orders/{order_id}/status")
def set_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    background_tasks: BackgroundTasks,
    admin: CurrentUser = Depends(require_admin),
    db: Database = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    order = OrderLifecycle(db).advance(order_id, payload.status)
    background_tasks.add_task(notifier.notify_status, order.id, order.status.value, order.delivery_phone)
    return order


if __name__ == "__main__":
    import os
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
