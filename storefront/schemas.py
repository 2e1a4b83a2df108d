from pydantic import AfterValidator, BaseModel, Field
from pydantic.alias_generators import to_camel
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional
from datetime import datetime
from enum import Enum

from .clock import as_utc


# Define order status enum
class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    READY_FOR_PICKUP = "readyForPickup"
    PICKED_UP = "pickedUp"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


# Strictly forward path of the normal update flow
LINEAR_STATUSES = [
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.READY_FOR_PICKUP.value,
    OrderStatus.PICKED_UP.value,
]

TERMINAL_STATUSES = {OrderStatus.PICKED_UP.value, OrderStatus.CANCELLED.value}

STATUS_LABELS = {
    "pending": "Pending",
    "confirmed": "Confirmed",
    "readyForPickup": "Ready for Pickup",
    "pickedUp": "Picked up",
    "cancelled": "Cancelled",
}

UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class CamelModel(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
    }


# -----------------------------
# Orders
# -----------------------------

class OrderItemCreate(CamelModel):
    product_id: int = Field(..., gt=0, description="Product ID")
    quantity: int = Field(..., gt=0, description="Product quantity")


class OrderCreate(CamelModel):
    """Schema for creating an order - user_id is taken from the session."""
    cart_items: List[OrderItemCreate] = Field(..., min_length=1, description="List of order items")
    payment_method: Optional[str] = Field(None, max_length=50)
    address: Optional[str] = None
    notes: Optional[str] = None


class OrderItemOut(CamelModel):
    product_id: int
    title: str
    unit_price: float
    quantity: int


class OrderOut(CamelModel):
    id: int
    user_id: str
    user_name: Optional[str] = None
    cart_items: List[OrderItemOut] = Field(
        default_factory=list, validation_alias="items", serialization_alias="cartItems"
    )
    order_status: OrderStatus
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    payment_proof: Optional[str] = None
    total_amount: float
    address: Optional[str] = None
    notes: Optional[str] = None
    order_date: UtcDatetime
    order_update_date: UtcDatetime
    confirmation_date: Optional[UtcDatetime] = None
    payment_deadline: Optional[UtcDatetime] = None
    is_archived: bool
    cancellation_reason: Optional[str] = None


class OrderStatusUpdate(CamelModel):
    # plain string so unknown values reach the state machine instead of a 422
    order_status: str = Field(..., min_length=1)


class OrderResponse(CamelModel):
    success: bool = True
    message: Optional[str] = None
    data: OrderOut


class OrderListResponse(CamelModel):
    success: bool = True
    data: List[OrderOut]


class MessageResponse(CamelModel):
    success: bool = True
    message: str


class DeadlineOut(CamelModel):
    order_id: int
    title: str
    deadline: UtcDatetime
    status: OrderStatus
    total_amount: float
    cart_items: List[OrderItemOut] = []


class DeadlineListResponse(CamelModel):
    success: bool = True
    data: List[DeadlineOut]


# -----------------------------
# Products
# -----------------------------

class ProductCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=50)
    image: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    total_stock: int = Field(..., ge=0)


class ProductUpdate(CamelModel):
    holder_id: Optional[str] = None
    holder_name: Optional[str] = None
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=50)
    image: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    total_stock: Optional[int] = Field(None, ge=0)


class LockRequest(CamelModel):
    holder_id: Optional[str] = None
    holder_name: Optional[str] = None


class UnlockRequest(CamelModel):
    holder_id: Optional[str] = None


class ProductOut(CamelModel):
    id: int
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    image: Optional[str] = None
    price: float
    total_stock: int
    is_archived: bool
    is_locked: bool
    locked_by: Optional[str] = None
    locked_by_name: Optional[str] = None
    locked_at: Optional[UtcDatetime] = None
    lock_expiry: Optional[UtcDatetime] = None


class ProductResponse(CamelModel):
    success: bool = True
    message: Optional[str] = None
    data: ProductOut


class ProductListResponse(CamelModel):
    success: bool = True
    data: List[ProductOut]


# -----------------------------
# Activity logs
# -----------------------------

class ActivityLogOut(CamelModel):
    id: int
    entity_type: str
    entity_id: int
    entity_title: str
    actor_id: str
    actor_name: str
    action: str
    changes: Dict[str, Any] = {}
    timestamp: UtcDatetime


class ActivityLogListResponse(CamelModel):
    success: bool = True
    data: List[ActivityLogOut]
    total: int
    skip: int
    limit: int


# -----------------------------
# Calendar
# -----------------------------

class CalendarCredentialsIn(CamelModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    calendar_id: Optional[str] = None


class CalendarSyncResult(CamelModel):
    total_orders: int
    success_count: int
    fail_count: int


class CalendarSyncResponse(CamelModel):
    success: bool = True
    message: str
    data: CalendarSyncResult


# -----------------------------
# Reports
# -----------------------------

class ReportGroupBy(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class SalesBucket(CamelModel):
    label: str
    total_sales: float
    order_count: int
    total_items: int
    avg_order_value: float
    first_order_date: UtcDatetime


class SalesSummary(CamelModel):
    total_sales: float
    order_count: int
    total_items: int
    avg_order_value: float


class TopProduct(CamelModel):
    product_id: int
    title: str
    quantity: int
    revenue: float


class SalesReport(CamelModel):
    group_by: ReportGroupBy
    start_date: UtcDatetime
    end_date: UtcDatetime
    summary: SalesSummary
    trend: List[SalesBucket]
    top_products: List[TopProduct]


class SalesReportResponse(CamelModel):
    success: bool = True
    data: SalesReport
