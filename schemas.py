"""
Database Schemas for the ordering service

Each model mirrors a MongoDB document (or the slice of it this service
reads). Documents coming out of the database are validated through these
models before any business logic touches them.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field

# -----------------------------
# Enumerations
# -----------------------------

class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    preparing = "preparing"
    out_for_delivery = "out_for_delivery"
    delivered = "delivered"
    cancelled = "cancelled"

PaymentMethod = Literal["cash", "online"]
PaymentStatus = Literal["pending", "paid"]

# -----------------------------
# Core Collections
# -----------------------------

class MenuItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = Field(..., description="Dish name")
    price: float = Field(..., ge=0, description="Price in local currency")
    original_price: Optional[float] = Field(None, ge=0, description="Pre-discount price")
    is_available: bool = Field(True, description="Whether this item is currently available")
    preparation_time: Optional[int] = Field(None, ge=0, description="Minutes to prepare")
    description: Optional[str] = None
    image_url: Optional[str] = None

class CartLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    user_id: str
    menu_item_id: str
    quantity: int = Field(..., ge=1)

class CartItem(BaseModel):
    """A cart line joined with the menu item it points at."""
    id: Optional[str] = None
    menu_item: MenuItem
    quantity: int = Field(..., ge=1)

    @property
    def line_total(self) -> float:
        return self.menu_item.price * self.quantity

class OrderLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    order_id: str
    menu_item_id: str
    name: str = Field(..., description="Item name at the time of order")
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0, description="Unit price at the time of order")
    total_price: float = Field(..., ge=0)

class Order(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    total_amount: float = Field(..., ge=0)
    delivery_address: str
    delivery_phone: str
    delivery_notes: Optional[str] = None
    payment_method: PaymentMethod
    status: OrderStatus = OrderStatus.pending
    payment_status: PaymentStatus = "pending"
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderLine] = Field(default_factory=list)

class GatewayOrder(BaseModel):
    """The payment gateway's answer to an order-creation request."""
    model_config = ConfigDict(extra="ignore")

    id: str
    amount: int = Field(..., ge=0, description="Amount in minor currency units")
    currency: str

# -----------------------------
# Request bodies
# -----------------------------

class CartAdd(BaseModel):
    menu_item_id: str
    quantity: int = Field(1, ge=1)

class CartUpdate(BaseModel):
    quantity: int

class OrderCreate(BaseModel):
    # Field rules live in validators.py so every rule failure is reported
    # with its own message rather than a schema error.
    delivery_address: Optional[str] = None
    delivery_phone: Optional[str] = None
    delivery_notes: Optional[str] = None
    payment_method: Optional[str] = None

class PaymentOrderCreate(BaseModel):
    orderId: str

class PaymentConfirm(BaseModel):
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None

class OrderStatusUpdate(BaseModel):
    status: OrderStatus

class SettingsUpdate(BaseModel):
    open_time: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    close_time: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    min_order_price: Optional[float] = Field(None, ge=0)
    delivery_charge: Optional[float] = Field(None, ge=0)
    whatsapp_number: Optional[str] = None
    contact_phone: Optional[str] = None
    is_open: Optional[bool] = None
