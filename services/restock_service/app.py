"""Restock Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from shared.config import Settings
from shared.database import Database
from shared.events import EventType, StockReceivedEvent
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher

from .backorders import BackorderLedger
from .coordinator import InventoryReconciliationCoordinator
from .notifications import EmailTransport, LoggingEmailTransport, NotificationDispatcher
from .restock_scheduler import RestockScheduler
from .schemas import (
    AllocationSummary,
    BackorderInfo,
    BackorderRequest,
    BackorderResult,
    BulkRestockResult,
    CancelResult,
    CustomerSubscription,
    ErrorKind,
    ExpiryResult,
    FulfillmentResult,
    FulfillRequest,
    InventoryResult,
    MonitoringStats,
    NotificationAnalytics,
    OperationResult,
    ProductRequest,
    ReconciliationSummary,
    RestockHistoryEntry,
    RestockScheduleRequest,
    SetStockRequest,
    StockInfo,
    StockItem,
    StockKey,
    StockLevel,
    StockUpdateResult,
    SubscribeRequest,
    SubscribeResult,
    SubscriberInfo,
    UpcomingRestock,
    WaitlistAnalytics,
)
from .stock_ledger import StockLedger
from .sweeper import ExpiryMonitor
from .waitlist import WaitlistRegistry

# Settings
settings = Settings(
    service_name="restock-service",
    service_port=8007,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class RestockEngine:
    """The reconciliation components, wired to one database."""

    def __init__(self, session_factory, settings: Settings, transport: Optional[EmailTransport] = None):
        self.settings = settings
        self.stock_ledger = StockLedger(session_factory)
        self.waitlist = WaitlistRegistry(session_factory)
        self.backorders = BackorderLedger(
            session_factory, deduct_fulfilled_stock=settings.deduct_fulfilled_backorders
        )
        self.scheduler = RestockScheduler(session_factory)
        self.dispatcher = NotificationDispatcher(
            session_factory,
            transport or LoggingEmailTransport(settings.email_from_address, settings.email_from_name),
            settings,
        )
        self.coordinator = InventoryReconciliationCoordinator(
            session_factory,
            stock_ledger=self.stock_ledger,
            waitlist=self.waitlist,
            backorders=self.backorders,
            scheduler=self.scheduler,
            dispatcher=self.dispatcher,
        )


# Database, message broker and components
database = Database(settings.database_url)
message_broker = MessageBroker(settings.rabbitmq_url)
engine = RestockEngine(database.session_factory, settings)
outbox_publisher: Optional[OutboxPublisher] = None
expiry_monitor: Optional[ExpiryMonitor] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher, expiry_monitor

    # Startup
    logger.info("Starting Restock Service...")

    await database.create_tables()
    await message_broker.connect()

    outbox_publisher = OutboxPublisher(
        session_factory=database.session_factory,
        message_broker=message_broker,
    )
    await outbox_publisher.start()

    expiry_monitor = ExpiryMonitor(engine.coordinator, settings.expiry_sweep_interval_seconds)
    await expiry_monitor.start()

    await subscribe_to_events()

    logger.info("Restock Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Restock Service...")
    if expiry_monitor:
        await expiry_monitor.stop()
    if outbox_publisher:
        await outbox_publisher.stop()
    await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Restock Service", lifespan=lifespan)


def get_engine() -> RestockEngine:
    return engine


STATUS_CODES = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UNAVAILABLE: 503,
    ErrorKind.DELIVERY: 502,
}


def raise_for_result(result: OperationResult):
    """Turn a rejected operation into an HTTP error carrying the whole result."""
    if not result.success:
        raise HTTPException(
            status_code=STATUS_CODES.get(result.error, 400),
            detail=result.model_dump(mode="json"),
        )


# Request/Response models
class ItemsRequest(BaseModel):
    """Batch of stock items."""
    items: List[StockItem] = Field(min_length=1)


class AvailabilityResponse(BaseModel):
    available: bool
    items: List[StockInfo]


class BulkRestockRequest(BaseModel):
    updates: List[RestockScheduleRequest] = Field(min_length=1)


class ProductSubscribersResponse(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    count: int
    subscribers: List[SubscriberInfo]


# Inventory
@app.post("/products", response_model=OperationResult, status_code=201)
async def register_product(request: ProductRequest, engine: RestockEngine = Depends(get_engine)):
    """Register a product and its variants with the stock ledger."""
    result = await engine.stock_ledger.register(request)
    raise_for_result(result)
    return result


@app.post("/inventory/check", response_model=AvailabilityResponse)
async def check_inventory(request: ItemsRequest, engine: RestockEngine = Depends(get_engine)):
    infos = await engine.stock_ledger.check_availability(request.items)
    return AvailabilityResponse(available=all(info.available for info in infos), items=infos)


@app.post("/inventory/reserve", response_model=InventoryResult)
async def reserve_inventory(request: ItemsRequest, engine: RestockEngine = Depends(get_engine)):
    """Reserve every item or none of them."""
    result = await engine.stock_ledger.reserve(request.items)
    raise_for_result(result)
    return result


@app.post("/inventory/restore", response_model=InventoryResult)
async def restore_inventory(request: ItemsRequest, engine: RestockEngine = Depends(get_engine)):
    result = await engine.stock_ledger.restore(request.items)
    raise_for_result(result)
    return result


@app.get("/inventory/low-stock", response_model=List[StockLevel])
async def low_stock(threshold: Optional[int] = None, engine: RestockEngine = Depends(get_engine)):
    return await engine.stock_ledger.low_stock_alerts(
        threshold if threshold is not None else settings.low_stock_threshold
    )


@app.get("/inventory/{product_id}/stock", response_model=StockLevel)
async def get_stock(product_id: str, variant_id: Optional[str] = None,
                    engine: RestockEngine = Depends(get_engine)):
    level = await engine.stock_ledger.get_stock(StockKey(product_id=product_id, variant_id=variant_id))
    if not level:
        raise HTTPException(status_code=404, detail="Stock record not found")
    return level


@app.put("/inventory/{product_id}/stock", response_model=StockUpdateResult)
async def set_stock(product_id: str, request: SetStockRequest, engine: RestockEngine = Depends(get_engine)):
    """Overwrite a stock count and reconcile the increase, if any."""
    result = await engine.coordinator.set_stock(
        StockKey(product_id=product_id, variant_id=request.variant_id), request.new_stock
    )
    raise_for_result(result)
    return result


@app.post("/inventory/{product_id}/trigger-restock", response_model=ReconciliationSummary)
async def trigger_restock(product_id: str, variant_id: Optional[str] = None,
                          engine: RestockEngine = Depends(get_engine)):
    result = await engine.coordinator.trigger_restock(StockKey(product_id=product_id, variant_id=variant_id))
    raise_for_result(result)
    return result


# Waitlist
@app.post("/waitlist/subscribe", response_model=SubscribeResult)
async def subscribe(request: SubscribeRequest, engine: RestockEngine = Depends(get_engine)):
    result = await engine.waitlist.subscribe(
        request.email,
        StockKey(product_id=request.product_id, variant_id=request.variant_id),
        user_id=request.user_id,
    )
    raise_for_result(result)
    return result


@app.post("/waitlist/unsubscribe", response_model=OperationResult)
async def unsubscribe(request: SubscribeRequest, engine: RestockEngine = Depends(get_engine)):
    result = await engine.waitlist.unsubscribe(
        request.email, StockKey(product_id=request.product_id, variant_id=request.variant_id)
    )
    raise_for_result(result)
    return result


@app.get("/waitlist/subscriptions", response_model=List[CustomerSubscription])
async def customer_subscriptions(email: str, engine: RestockEngine = Depends(get_engine)):
    return await engine.waitlist.list_for_customer(email)


@app.get("/waitlist/status")
async def subscription_status(email: str, product_id: str, variant_id: Optional[str] = None,
                              engine: RestockEngine = Depends(get_engine)):
    subscribed = await engine.waitlist.is_subscribed(
        email, StockKey(product_id=product_id, variant_id=variant_id)
    )
    return {"subscribed": subscribed}


@app.get("/waitlist/analytics", response_model=WaitlistAnalytics)
async def waitlist_analytics(engine: RestockEngine = Depends(get_engine)):
    return await engine.waitlist.analytics()


@app.get("/waitlist/products/{product_id}", response_model=ProductSubscribersResponse)
async def product_subscribers(product_id: str, variant_id: Optional[str] = None,
                              engine: RestockEngine = Depends(get_engine)):
    subscribers = await engine.waitlist.list_for_product(StockKey(product_id=product_id, variant_id=variant_id))
    return ProductSubscribersResponse(
        product_id=product_id,
        variant_id=variant_id,
        count=len(subscribers),
        subscribers=subscribers,
    )


# Backorders
@app.post("/backorders", response_model=BackorderResult, status_code=201)
async def create_backorder(request: BackorderRequest, engine: RestockEngine = Depends(get_engine)):
    result = await engine.backorders.create(request)
    raise_for_result(result)
    return result


@app.get("/backorders", response_model=List[BackorderInfo])
async def customer_backorders(user_id: str, engine: RestockEngine = Depends(get_engine)):
    return await engine.backorders.list_for_customer(user_id)


@app.get("/backorders/pending", response_model=List[BackorderInfo])
async def pending_backorders(product_id: Optional[str] = None, variant_id: Optional[str] = None,
                             engine: RestockEngine = Depends(get_engine)):
    if variant_id and not product_id:
        raise HTTPException(status_code=400, detail="variant_id requires product_id")
    key = StockKey(product_id=product_id, variant_id=variant_id) if product_id else None
    return await engine.backorders.list_pending(key)


@app.get("/backorders/summary", response_model=AllocationSummary)
async def allocation_summary(engine: RestockEngine = Depends(get_engine)):
    return await engine.backorders.allocation_summary()


@app.post("/backorders/fulfill", response_model=FulfillmentResult)
async def fulfill_backorders(request: FulfillRequest, engine: RestockEngine = Depends(get_engine)):
    """Manually allocate available units to pending backorders."""
    result = await engine.backorders.fulfill(
        StockKey(product_id=request.product_id, variant_id=request.variant_id),
        request.available_quantity,
    )
    raise_for_result(result)
    return result


@app.get("/backorders/{order_id}", response_model=BackorderInfo)
async def get_backorder(order_id: UUID, engine: RestockEngine = Depends(get_engine)):
    order = await engine.backorders.get_status(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.post("/backorders/{order_id}/cancel", response_model=CancelResult)
async def cancel_backorder(order_id: UUID, engine: RestockEngine = Depends(get_engine)):
    result = await engine.backorders.cancel(order_id)
    raise_for_result(result)
    return result


# Restock dates
@app.get("/restock-dates", response_model=List[UpcomingRestock])
async def upcoming_restocks(engine: RestockEngine = Depends(get_engine)):
    return await engine.scheduler.upcoming()


@app.put("/restock-dates", response_model=OperationResult)
async def set_restock_date(request: RestockScheduleRequest, engine: RestockEngine = Depends(get_engine)):
    result = await engine.scheduler.set_expected(request.key, request.expected_date, request.notes)
    raise_for_result(result)
    return result


@app.put("/restock-dates/bulk", response_model=BulkRestockResult)
async def bulk_set_restock_dates(request: BulkRestockRequest, engine: RestockEngine = Depends(get_engine)):
    result = await engine.scheduler.bulk_set(request.updates)
    raise_for_result(result)
    return result


@app.post("/restock-dates/expired", response_model=ExpiryResult)
async def process_expired_restocks(engine: RestockEngine = Depends(get_engine)):
    """Sweep missed restock dates and send delay notifications."""
    result = await engine.coordinator.process_expired_restocks()
    raise_for_result(result)
    return result


@app.get("/restock-dates/{product_id}/history", response_model=List[RestockHistoryEntry])
async def restock_history(product_id: str, variant_id: Optional[str] = None,
                          engine: RestockEngine = Depends(get_engine)):
    return await engine.scheduler.history(StockKey(product_id=product_id, variant_id=variant_id))


@app.get("/restock-dates/{product_id}")
async def get_restock_date(product_id: str, variant_id: Optional[str] = None,
                           engine: RestockEngine = Depends(get_engine)):
    expected = await engine.scheduler.get_expected(StockKey(product_id=product_id, variant_id=variant_id))
    return {"product_id": product_id, "variant_id": variant_id, "expected_date": expected}


# Notifications
@app.post("/notifications/track/{notification_id}/{action}", response_model=OperationResult)
async def track_notification(notification_id: UUID, action: str, engine: RestockEngine = Depends(get_engine)):
    result = await engine.dispatcher.track(notification_id, action)
    raise_for_result(result)
    return result


@app.get("/notifications/analytics", response_model=NotificationAnalytics)
async def notification_analytics(engine: RestockEngine = Depends(get_engine)):
    return await engine.dispatcher.analytics()


@app.get("/notifications/reservations/{token}")
async def verify_reservation(token: str, engine: RestockEngine = Depends(get_engine)):
    """Check an advisory purchase-link token."""
    subscription_id = engine.dispatcher.verify_reservation_token(token)
    return {"valid": subscription_id is not None, "subscription_id": subscription_id}


# Monitoring
@app.get("/monitoring/stats", response_model=MonitoringStats)
async def monitoring_stats(engine: RestockEngine = Depends(get_engine)):
    return await engine.coordinator.monitoring_stats()


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "restock-service"}


# Event Handlers
async def subscribe_to_events():
    """Subscribe to warehouse restock deliveries."""

    async def handle_stock_received(event: StockReceivedEvent):
        """Book the delivery and reconcile it against backorders and the waitlist."""
        await engine.coordinator.handle_stock_received(event)

    await message_broker.subscribe_to_event(
        EventType.STOCK_RECEIVED,
        "restock_service_stock_received",
        handle_stock_received,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
