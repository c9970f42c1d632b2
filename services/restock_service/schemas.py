"""Request, response and result models for the Restock Service."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from .models import PRODUCT_SCOPE


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Dates are stored as naive UTC, like every other timestamp column."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class StockKey(BaseModel):
    """A bare product key or a product+variant key."""
    product_id: str
    variant_id: Optional[str] = None

    class Config:
        frozen = True

    @field_validator("variant_id", mode="before")
    @classmethod
    def _blank_variant_is_product_scope(cls, value):
        return value or None

    @classmethod
    def from_storage(cls, product_id: str, variant_key: str) -> "StockKey":
        return cls(product_id=product_id, variant_id=variant_key or None)

    @property
    def variant_key(self) -> str:
        """Value stored in the non-null variant_key columns."""
        return self.variant_id or PRODUCT_SCOPE

    def __str__(self) -> str:
        if self.variant_id:
            return f"{self.product_id}/{self.variant_id}"
        return self.product_id


class ErrorKind(str, Enum):
    """Why an operation was rejected."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    DELIVERY = "delivery"


class OperationResult(BaseModel):
    """Outcome returned across every public component boundary."""
    success: bool
    message: str
    error: Optional[ErrorKind] = None


# Stock Ledger
class StockItem(BaseModel):
    """A quantity of one product or variant."""
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(gt=0)

    @property
    def key(self) -> StockKey:
        return StockKey(product_id=self.product_id, variant_id=self.variant_id)


class StockInfo(BaseModel):
    """Availability of one requested item."""
    product_id: str
    variant_id: Optional[str] = None
    requested: int
    current_stock: int
    available: bool


class InventoryResult(OperationResult):
    """Result of a batch reserve or restore."""
    errors: List[str] = Field(default_factory=list)
    unavailable: List[StockInfo] = Field(default_factory=list)
    updated_items: List[StockItem] = Field(default_factory=list)


class StockChange(OperationResult):
    """Before/after pair of a single stock mutation."""
    previous_stock: int = 0
    new_stock: int = 0


class VariantRequest(BaseModel):
    """Variant of a catalog product."""
    id: str
    sku: Optional[str] = None
    price: Optional[float] = None
    sale_price: Optional[float] = None
    quantity: int = Field(default=0, ge=0)


class ProductRequest(BaseModel):
    """Request to register a product (and its variants) with the ledger."""
    id: str
    name: str
    name_en: Optional[str] = None
    price: float
    sale_price: Optional[float] = None
    quantity: int = Field(default=0, ge=0)
    variants: List[VariantRequest] = Field(default_factory=list)


class StockLevel(BaseModel):
    """Current stock of one key."""
    product_id: str
    variant_id: Optional[str] = None
    sku: Optional[str] = None
    quantity_available: int
    is_active: bool


class SetStockRequest(BaseModel):
    """Administrative stock overwrite."""
    variant_id: Optional[str] = None
    new_stock: int = Field(ge=0)


# Waitlist Registry
class SubscribeOutcome(str, Enum):
    """What subscribe did with the triple."""
    CREATED = "created"
    REACTIVATED = "reactivated"
    REJECTED = "rejected"


class SubscribeRequest(BaseModel):
    """Waitlist subscribe/unsubscribe request."""
    email: str
    product_id: str
    variant_id: Optional[str] = None
    user_id: Optional[str] = None


class SubscribeResult(OperationResult):
    """Result of a waitlist subscribe."""
    outcome: SubscribeOutcome = SubscribeOutcome.REJECTED
    subscription_id: Optional[UUID] = None


class SubscriberInfo(BaseModel):
    """Active subscriber of a key, in notification order."""
    id: UUID
    email: str
    user_id: Optional[str] = None
    created_at: datetime


class CustomerSubscription(BaseModel):
    """Active subscription of one customer with display data."""
    id: UUID
    product_id: str
    product_name: str
    product_name_en: Optional[str] = None
    variant_id: Optional[str] = None
    variant_sku: Optional[str] = None
    expected_restock_date: Optional[datetime] = None
    created_at: datetime


class ProductSubscriptionCount(BaseModel):
    product_id: str
    product_name: str
    count: int


class VariantSubscriptionCount(BaseModel):
    variant_id: str
    variant_sku: str
    count: int


class WaitlistAnalytics(BaseModel):
    """Waitlist totals for the admin dashboard."""
    total_subscriptions: int
    active_subscriptions: int
    subscriptions_by_product: List[ProductSubscriptionCount]
    subscriptions_by_variant: List[VariantSubscriptionCount]


# Backorder Ledger
class BackorderItemRequest(BaseModel):
    """One requested line of a backorder."""
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(gt=0)
    size: str
    color: Optional[str] = None
    price: float = Field(ge=0)

    @property
    def key(self) -> StockKey:
        return StockKey(product_id=self.product_id, variant_id=self.variant_id)


class BackorderRequest(BaseModel):
    """Request to accept a backorder."""
    user_id: str
    customer_email: Optional[str] = None
    items: List[BackorderItemRequest] = Field(min_length=1)
    total_amount: float = Field(ge=0)
    currency: str = "EUR"
    shipping_address: Optional[Dict[str, Any]] = None
    expected_fulfillment_date: Optional[datetime] = None

    @field_validator("expected_fulfillment_date")
    @classmethod
    def _store_as_naive_utc(cls, value):
        return to_utc_naive(value)


class BackorderResult(OperationResult):
    """Result of a backorder creation."""
    order_id: Optional[UUID] = None
    backorder_priority: Optional[int] = None
    current_stock: Optional[int] = None


class BackorderLine(BaseModel):
    """Line item of a backorder."""
    id: UUID
    product_id: str
    product_name: str
    variant_id: Optional[str] = None
    quantity: int
    size: str
    color: Optional[str] = None
    price: float

    @property
    def key(self) -> StockKey:
        return StockKey(product_id=self.product_id, variant_id=self.variant_id)


class BackorderInfo(BaseModel):
    """Backorder detail."""
    id: UUID
    user_id: str
    customer_email: Optional[str] = None
    status: str
    total_amount: float
    currency: str
    backorder_priority: int
    expected_fulfillment_date: Optional[datetime] = None
    created_at: datetime
    items: List[BackorderLine]

    @property
    def order_number(self) -> str:
        return self.id.hex[-8:].upper()


class CancelResult(OperationResult):
    """Result of a backorder cancellation."""
    current_status: Optional[str] = None


class FulfillRequest(BaseModel):
    """Manual allocation of available units to pending backorders."""
    product_id: str
    variant_id: Optional[str] = None
    available_quantity: int = Field(gt=0)


class FulfillmentResult(OperationResult):
    """Orders moved to processing by one allocation walk."""
    fulfilled_orders: List[UUID] = Field(default_factory=list)
    remaining_quantity: int = 0


class PendingAllocation(BaseModel):
    product_id: str
    product_name: str
    variant_id: Optional[str] = None
    pending_quantity: int
    available_stock: int


class AllocationSummary(BaseModel):
    """Outstanding backorder demand per key."""
    total_pending_backorders: int
    total_pending_quantity: int
    pending_allocation: List[PendingAllocation]


# Restock Scheduler
class RestockScheduleRequest(BaseModel):
    """Set or update an expected restock date."""
    product_id: str
    variant_id: Optional[str] = None
    expected_date: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def key(self) -> StockKey:
        return StockKey(product_id=self.product_id, variant_id=self.variant_id)


class BulkRestockResult(OperationResult):
    updated_count: int = 0
    errors: List[str] = Field(default_factory=list)


class ExpiredRestock(BaseModel):
    """A schedule whose expected date passed without stock arriving."""
    product_id: str
    variant_id: Optional[str] = None
    missed_date: datetime

    @property
    def key(self) -> StockKey:
        return StockKey(product_id=self.product_id, variant_id=self.variant_id)


class SweepResult(OperationResult):
    expired_count: int = 0
    expired: List[ExpiredRestock] = Field(default_factory=list)


class UpcomingRestock(BaseModel):
    product_id: str
    product_name: str
    variant_id: Optional[str] = None
    expected_date: datetime
    waitlist_count: int
    backorder_count: int
    notes: Optional[str] = None


class RestockHistoryEntry(BaseModel):
    """Schedule state of one key, with the missed dates recorded in its notes."""
    product_id: str
    variant_id: Optional[str] = None
    expected_date: Optional[datetime] = None
    actual_date: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


# Notification Dispatcher
class RestockNotificationData(BaseModel):
    """Content of a back-in-stock message for one item."""
    email: str
    product_id: str
    product_name: str
    product_name_en: Optional[str] = None
    variant_id: Optional[str] = None
    variant_sku: Optional[str] = None
    current_price: float
    currency: str = "EUR"
    purchase_url: str
    unsubscribe_url: str

    @property
    def key(self) -> StockKey:
        return StockKey(product_id=self.product_id, variant_id=self.variant_id)


class DelayNotificationData(BaseModel):
    """Content of a backorder delay message."""
    email: str
    product_name: str
    order_number: str
    original_date: Optional[datetime] = None
    new_date: Optional[datetime] = None
    cancellation_url: str


class FulfillmentNotificationData(BaseModel):
    """Content of a backorder shipped message."""
    email: str
    order_number: str
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class NotificationResult(OperationResult):
    notification_ids: List[UUID] = Field(default_factory=list)


class NotificationAnalytics(BaseModel):
    total_sent: int
    open_rate: float
    click_rate: float
    conversion_rate: float


# Coordinator
class InventoryIncrease(BaseModel):
    """A before/after stock pair fed to reconciliation."""
    product_id: str
    variant_id: Optional[str] = None
    previous_stock: int
    new_stock: int
    update_type: str = "manual"  # manual, automatic, restock

    @property
    def key(self) -> StockKey:
        return StockKey(product_id=self.product_id, variant_id=self.variant_id)


class ReconciliationSummary(OperationResult):
    backorders_fulfilled: int = 0
    notifications_sent: int = 0  # waitlist messages
    fulfillment_notifications_sent: int = 0
    remaining_quantity: int = 0
    fulfilled_orders: List[UUID] = Field(default_factory=list)


class StockUpdateResult(ReconciliationSummary):
    previous_stock: int = 0
    new_stock: int = 0


class ExpiryResult(OperationResult):
    expired_count: int = 0
    notifications_sent: int = 0


class MonitoringStats(BaseModel):
    total_backorders: int
    pending_backorders: int
    total_waitlist_subscriptions: int
    active_waitlist_subscriptions: int
    out_of_stock_records: int
    pending_outbox_events: int = 0
