"""Database models for Restock Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from shared.database import Base

# Storage value of variant_key for the bare product scope
PRODUCT_SCOPE = ""


class BackorderStatus(str, Enum):
    """Backorder lifecycle status."""
    PENDING = "pending"
    PROCESSING = "processing"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class NotificationType(str, Enum):
    """Kinds of outbound customer messages."""
    RESTOCK = "restock"
    CONSOLIDATED = "consolidated"
    DELAY = "delay"
    FULFILLMENT = "fulfillment"


class Product(Base):
    """Catalog projection the engine needs for names and prices."""

    __tablename__ = "products"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    name_en = Column(String(255), nullable=True)
    price = Column(Float, nullable=False)
    sale_price = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class StockRecord(Base):
    """Available units for a product or one of its variants."""

    __tablename__ = "stock_records"

    id = Column(Uuid, primary_key=True, default=uuid4)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False)
    variant_key = Column(String(64), nullable=False, default=PRODUCT_SCOPE)
    sku = Column(String(100), nullable=True)
    price = Column(Float, nullable=True)
    sale_price = Column(Float, nullable=True)

    quantity_available = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship(Product, lazy="joined")

    __table_args__ = (
        UniqueConstraint("product_id", "variant_key", name="uq_stock_records_key"),
        CheckConstraint("quantity_available >= 0", name="ck_stock_records_non_negative"),
    )


class WaitlistSubscription(Base):
    """Standing request to be told when a key is purchasable again."""

    __tablename__ = "waitlist_subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(String(255), nullable=False)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False)
    variant_key = Column(String(64), nullable=False, default=PRODUCT_SCOPE)
    user_id = Column(String(64), nullable=True)  # lookup only
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship(Product, lazy="joined")

    __table_args__ = (
        UniqueConstraint("email", "product_id", "variant_key", name="uq_waitlist_triple"),
        Index("ix_waitlist_key_active_created", "product_id", "variant_key", "is_active", "created_at"),
        Index("ix_waitlist_email", "email"),
    )


class BackorderOrder(Base):
    """Accepted order for stock that is not yet available."""

    __tablename__ = "backorder_orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    customer_email = Column(String(255), nullable=True)
    status = Column(String(20), default=BackorderStatus.PENDING.value, nullable=False, index=True)

    total_amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)
    shipping_address = Column(JSON, nullable=True)

    # FIFO ticket; unique so a lost race surfaces as an IntegrityError
    backorder_priority = Column(Integer, nullable=False, unique=True)
    expected_fulfillment_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship(
        "BackorderLineItem",
        back_populates="order",
        order_by="BackorderLineItem.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_backorders_status_priority", "status", "backorder_priority"),
    )


class BackorderLineItem(Base):
    """One product/variant line of a backorder."""

    __tablename__ = "backorder_line_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("backorder_orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    product_id = Column(String(64), ForeignKey("products.id"), nullable=False)
    variant_key = Column(String(64), nullable=False, default=PRODUCT_SCOPE)
    quantity = Column(Integer, nullable=False)
    size = Column(String(50), nullable=False)
    color = Column(String(50), nullable=True)
    price = Column(Float, nullable=False)

    order = relationship(BackorderOrder, back_populates="items")
    product = relationship(Product, lazy="joined")

    __table_args__ = (
        Index("ix_backorder_items_key", "product_id", "variant_key"),
        CheckConstraint("quantity > 0", name="ck_backorder_items_positive"),
    )


class RestockSchedule(Base):
    """Expected availability date for an out-of-stock key."""

    __tablename__ = "restock_schedules"

    id = Column(Uuid, primary_key=True, default=uuid4)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False)
    variant_key = Column(String(64), nullable=False, default=PRODUCT_SCOPE)

    expected_date = Column(DateTime, nullable=True)
    actual_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship(Product, lazy="joined")

    __table_args__ = (
        UniqueConstraint("product_id", "variant_key", name="uq_restock_schedules_key"),
        Index("ix_restock_schedules_expected", "expected_date"),
    )


class RestockNotification(Base):
    """Funnel tracking for a delivered restock message."""

    __tablename__ = "restock_notifications"

    id = Column(Uuid, primary_key=True, default=uuid4)
    subscription_id = Column(Uuid, ForeignKey("waitlist_subscriptions.id"), nullable=False, index=True)
    notification_type = Column(String(20), nullable=False, default=NotificationType.RESTOCK.value)

    sent_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    email_opened = Column(Boolean, nullable=False, default=False)
    link_clicked = Column(Boolean, nullable=False, default=False)
    purchase_completed = Column(Boolean, nullable=False, default=False)
