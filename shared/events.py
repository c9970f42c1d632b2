"""Event definitions and base classes for restock reconciliation."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types emitted and consumed by the restock services."""

    # Stock events
    STOCK_UPDATED = "stock.updated"
    STOCK_RECEIVED = "stock.received"

    # Waitlist events
    WAITLIST_SUBSCRIBED = "waitlist.subscribed"
    WAITLIST_UNSUBSCRIBED = "waitlist.unsubscribed"

    # Backorder events
    BACKORDER_CREATED = "backorder.created"
    BACKORDER_CANCELLED = "backorder.cancelled"
    BACKORDER_FULFILLED = "backorder.fulfilled"

    # Restock schedule events
    RESTOCK_SCHEDULED = "restock.scheduled"
    RESTOCK_CLEARED = "restock.cleared"
    RESTOCK_EXPIRED = "restock.expired"

    # Notification events
    NOTIFICATION_SENT = "notification.sent"
    NOTIFICATION_FAILED = "notification.failed"

    # Coordinator events
    RECONCILIATION_COMPLETED = "reconciliation.completed"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: str  # product key, order id or subscription id
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    correlation_id: UUID = Field(default_factory=uuid4)  # For tracing across services
    causation_id: Optional[UUID] = None  # ID of event that caused this one
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Stock Events
class StockUpdatedEvent(BaseEvent):
    """Event emitted when an administrator overwrites a stock count."""
    event_type: EventType = EventType.STOCK_UPDATED
    product_id: str
    variant_id: Optional[str] = None
    previous_stock: int
    new_stock: int


class StockReceivedEvent(BaseEvent):
    """Event published by warehouse/supplier integrations when units arrive."""
    event_type: EventType = EventType.STOCK_RECEIVED
    product_id: str
    variant_id: Optional[str] = None
    quantity: int


# Waitlist Events
class WaitlistSubscribedEvent(BaseEvent):
    """Event emitted when a subscription is created or reactivated."""
    event_type: EventType = EventType.WAITLIST_SUBSCRIBED
    subscription_id: UUID
    email: str
    product_id: str
    variant_id: Optional[str] = None
    reactivated: bool = False


class WaitlistUnsubscribedEvent(BaseEvent):
    """Event emitted when a subscription is deactivated."""
    event_type: EventType = EventType.WAITLIST_UNSUBSCRIBED
    subscription_id: UUID
    email: str
    product_id: str
    variant_id: Optional[str] = None


# Backorder Events
class BackorderCreatedEvent(BaseEvent):
    """Event emitted when a backorder is accepted."""
    event_type: EventType = EventType.BACKORDER_CREATED
    order_id: UUID
    user_id: str
    backorder_priority: int
    items: list[Dict[str, Any]]  # [{"product_id": str, "variant_id": str | None, "quantity": int}]
    total_amount: float


class BackorderCancelledEvent(BaseEvent):
    """Event emitted when a pending backorder is cancelled."""
    event_type: EventType = EventType.BACKORDER_CANCELLED
    order_id: UUID
    backorder_priority: int


class BackorderFulfilledEvent(BaseEvent):
    """Event emitted when restocked units are allocated to a backorder."""
    event_type: EventType = EventType.BACKORDER_FULFILLED
    order_id: UUID
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    backorder_priority: int


# Restock Schedule Events
class RestockScheduledEvent(BaseEvent):
    """Event emitted when an expected restock date is set."""
    event_type: EventType = EventType.RESTOCK_SCHEDULED
    product_id: str
    variant_id: Optional[str] = None
    expected_date: Optional[datetime] = None


class RestockClearedEvent(BaseEvent):
    """Event emitted when stock arrives for a scheduled key."""
    event_type: EventType = EventType.RESTOCK_CLEARED
    product_id: str
    variant_id: Optional[str] = None
    actual_date: datetime


class RestockExpiredEvent(BaseEvent):
    """Event emitted when an expected restock date passes without stock."""
    event_type: EventType = EventType.RESTOCK_EXPIRED
    product_id: str
    variant_id: Optional[str] = None
    missed_date: datetime


# Notification Events
class NotificationSentEvent(BaseEvent):
    """Event emitted when notification is sent."""
    event_type: EventType = EventType.NOTIFICATION_SENT
    notification_type: str  # restock, consolidated, delay, fulfillment
    recipient: str
    subject: str


class NotificationFailedEvent(BaseEvent):
    """Event emitted when notification fails."""
    event_type: EventType = EventType.NOTIFICATION_FAILED
    notification_type: str
    recipient: str
    reason: str


# Coordinator Events
class ReconciliationCompletedEvent(BaseEvent):
    """Event emitted after a stock increase has been reconciled."""
    event_type: EventType = EventType.RECONCILIATION_COMPLETED
    product_id: str
    variant_id: Optional[str] = None
    restocked_quantity: int
    backorders_fulfilled: int
    remaining_quantity: int


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.STOCK_UPDATED: StockUpdatedEvent,
    EventType.STOCK_RECEIVED: StockReceivedEvent,

    EventType.WAITLIST_SUBSCRIBED: WaitlistSubscribedEvent,
    EventType.WAITLIST_UNSUBSCRIBED: WaitlistUnsubscribedEvent,

    EventType.BACKORDER_CREATED: BackorderCreatedEvent,
    EventType.BACKORDER_CANCELLED: BackorderCancelledEvent,
    EventType.BACKORDER_FULFILLED: BackorderFulfilledEvent,

    EventType.RESTOCK_SCHEDULED: RestockScheduledEvent,
    EventType.RESTOCK_CLEARED: RestockClearedEvent,
    EventType.RESTOCK_EXPIRED: RestockExpiredEvent,

    EventType.NOTIFICATION_SENT: NotificationSentEvent,
    EventType.NOTIFICATION_FAILED: NotificationFailedEvent,

    EventType.RECONCILIATION_COMPLETED: ReconciliationCompletedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
