"""
Pydantic Order Models

The Order aggregate: frozen item snapshots, totals computed once at checkout,
payment/shipping sub-records and an append-only status history.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Literal, List
from pydantic import BaseModel, Field, computed_field

from .common import Currency, StatusHistoryEntry, utcnow
from .products import ProductKind


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_FAILED = "payment_failed"
    PAID = "paid"
    READY_FOR_SHIPPING = "ready_for_shipping"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


PaymentMethod = Literal["expresspay", "mobile_money", "hubtel", "bank_transfer", "western_union"]

SUPPORTED_PAYMENT_METHODS = ("expresspay", "mobile_money", "hubtel", "bank_transfer", "western_union")

ShippingMethod = Literal["standard", "express", "pickup"]


# ==================== Nested Types ====================

class DigitalDelivery(BaseModel):
    """Access-granting record for a digital order item."""
    delivery_status: Literal["pending", "delivered", "failed"] = "pending"
    download_link: Optional[str] = None
    download_count: int = 0
    download_limit: int = 0  # 0 = unlimited
    access_expiration: Optional[datetime] = None


class OrderItem(BaseModel):
    """Snapshot of a product at purchase time."""
    product_id: str
    name: str
    sku: str
    unit_price: Decimal
    quantity: int = Field(gt=0)
    kind: ProductKind
    digital_delivery: Optional[DigitalDelivery] = None

    @property
    def is_physical(self) -> bool:
        return self.kind in ("physical", "both")

    @property
    def is_digital(self) -> bool:
        return self.kind in ("digital", "both")

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class AddressObject(BaseModel):
    street: str
    city: str
    state: str
    postal_code: str
    country: str = "Ghana"


class ShippingDetails(BaseModel):
    """Required iff the order contains physical items."""
    address: AddressObject
    contact_phone: str
    shipping_method: ShippingMethod = "standard"
    shipping_cost: Decimal = Decimal("0.00")
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    shipped_date: Optional[datetime] = None
    delivered_date: Optional[datetime] = None


class BillingAddress(BaseModel):
    same_as_shipping: bool = True
    address: Optional[AddressObject] = None


class CustomerInfo(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None
    student_id: Optional[str] = None


class OrderPayment(BaseModel):
    """Payment sub-record mirrored from the active transaction."""
    method: PaymentMethod
    amount: Decimal
    currency: Currency = "GHS"
    status: Literal["pending", "completed", "failed", "refunded", "partially_refunded"] = "pending"
    transaction_id: Optional[str] = None
    payment_date: Optional[datetime] = None


# ==================== Aggregate ====================

class Order(BaseModel):
    """
    Order aggregate.

    Invariants:
    - items_count == len(items); kind flags follow the item kinds
    - totals are set once at creation and only touched by refund bookkeeping
    - status_history is append-only
    """
    order_id: str
    order_number: str
    user_id: str
    customer_info: CustomerInfo
    items: List[OrderItem]
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    total_amount: Decimal
    currency: Currency = "GHS"
    status: OrderStatus = OrderStatus.PENDING
    status_history: List[StatusHistoryEntry] = []
    payment: OrderPayment
    shipping: Optional[ShippingDetails] = None
    billing_address: BillingAddress = Field(default_factory=BillingAddress)
    notes: Optional[str] = None
    stock_reserved: bool = False
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def items_count(self) -> int:
        return len(self.items)

    @computed_field
    @property
    def has_digital_items(self) -> bool:
        return any(item.is_digital for item in self.items)

    @computed_field
    @property
    def has_physical_items(self) -> bool:
        return any(item.is_physical for item in self.items)

    def record_status(self, status: OrderStatus, note: Optional[str], actor: Optional[str]) -> None:
        """Append a history entry and set the current status."""
        self.status_history.append(
            StatusHistoryEntry(status=status.value, note=note, actor=actor)
        )
        self.status = status
        self.updated_at = utcnow()


# ==================== Requests ====================

class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)


class CreateOrderRequest(BaseModel):
    """Checkout payload from the storefront."""
    items: List[OrderItemRequest] = Field(min_length=1)
    payment_method: PaymentMethod
    customer_info: CustomerInfo
    shipping: Optional[ShippingDetails] = None
    billing_address: Optional[BillingAddress] = None
    notes: Optional[str] = None
    currency: Optional[Currency] = None


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
    note: Optional[str] = None


class BulkStatusUpdateRequest(BaseModel):
    """Admin dashboard: move several orders to one status."""
    order_ids: List[str] = Field(min_length=1)
    status: OrderStatus
    note: Optional[str] = None


class CancelOrderRequest(BaseModel):
    reason: str = Field(min_length=1)


class TrackingRequest(BaseModel):
    tracking_number: str = Field(min_length=1)
    carrier: str = Field(min_length=1)
    estimated_delivery: Optional[datetime] = None
