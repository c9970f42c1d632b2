"""Analytics Service FastAPI application."""
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from pydantic import BaseModel
from redis import asyncio as aioredis

from shared.config import Settings
from shared.events import (
    BackorderCancelledEvent,
    BackorderCreatedEvent,
    BackorderFulfilledEvent,
    BaseEvent,
    EventType,
    NotificationFailedEvent,
    NotificationSentEvent,
    ReconciliationCompletedEvent,
    RestockExpiredEvent,
    WaitlistSubscribedEvent,
    WaitlistUnsubscribedEvent,
)
from shared.message_broker import MessageBroker

# Settings
settings = Settings(
    service_name="analytics-service",
    service_port=8006,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Message broker and Redis
message_broker = MessageBroker(settings.rabbitmq_url)
redis_client: Optional[aioredis.Redis] = None

RECENT_BACKORDERS_KEY = "backorders:recent"
TIMELINE_KEY = "events:timeline"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global redis_client

    # Startup
    logger.info("Starting Analytics Service...")

    redis_client = await aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True
    )

    await message_broker.connect()
    await subscribe_to_events()

    logger.info("Analytics Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Analytics Service...")
    await message_broker.disconnect()
    if redis_client:
        await redis_client.close()


app = FastAPI(title="Analytics Service", lifespan=lifespan)


# Response models
class MetricsResponse(BaseModel):
    """Restock funnel metrics."""
    backorders_created: int
    backorders_fulfilled: int
    backorders_cancelled: int
    backordered_units: int
    restocked_units: int
    waitlist_subscriptions: int
    waitlist_unsubscriptions: int
    notifications_sent: int
    notifications_failed: int
    restocks_expired: int
    fulfillment_rate: float
    notification_failure_rate: float


class EventStatsResponse(BaseModel):
    """Event statistics response."""
    event_type: str
    count: int


async def _counter(name: str) -> int:
    return int(await redis_client.get(f"metrics:{name}") or 0)


def _percentage(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole > 0 else 0.0


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "analytics-service"}


@app.get("/metrics", response_model=MetricsResponse)
async def get_metrics():
    """Get real-time restock funnel metrics."""
    names = [
        "backorders_created", "backorders_fulfilled", "backorders_cancelled", "backordered_units",
        "restocked_units", "waitlist_subscriptions", "waitlist_unsubscriptions",
        "notifications_sent", "notifications_failed", "restocks_expired",
    ]
    values = {name: (await _counter(name) if redis_client else 0) for name in names}

    return MetricsResponse(
        **values,
        fulfillment_rate=_percentage(values["backorders_fulfilled"], values["backorders_created"]),
        notification_failure_rate=_percentage(
            values["notifications_failed"],
            values["notifications_sent"] + values["notifications_failed"],
        ),
    )


@app.get("/events/stats")
async def get_event_stats():
    """Get event type statistics."""
    if not redis_client:
        return []

    stats = []
    for event_type in EventType:
        count = int(await redis_client.get(f"events:count:{event_type.value}") or 0)
        if count > 0:
            stats.append(EventStatsResponse(event_type=event_type.value, count=count))

    return stats


@app.get("/backorders/recent")
async def get_recent_backorders():
    """Get the most recently created backorders."""
    if not redis_client:
        return []

    recent = await redis_client.zrevrange(RECENT_BACKORDERS_KEY, 0, 9, withscores=True)

    backorders = []
    for backorder_data, timestamp in recent:
        backorder_info = json.loads(backorder_data)
        backorder_info["timestamp"] = datetime.fromtimestamp(timestamp).isoformat()
        backorders.append(backorder_info)

    return backorders


# Analytics Logic
async def track_event(event: BaseEvent):
    """Count the event and keep it on the timeline."""
    if not redis_client:
        return

    await redis_client.incr(f"events:count:{event.event_type.value}")

    event_data = {
        "event_id": str(event.event_id),
        "event_type": event.event_type.value,
        "aggregate_id": event.aggregate_id,
        "correlation_id": str(event.correlation_id),
        "timestamp": event.timestamp.isoformat(),
    }

    await redis_client.zadd(TIMELINE_KEY, {json.dumps(event_data): event.timestamp.timestamp()})

    # Keep only last 1000 events
    await redis_client.zremrangebyrank(TIMELINE_KEY, 0, -1001)


async def update_backorder_created_metrics(event: BackorderCreatedEvent):
    await redis_client.incr("metrics:backorders_created")
    await redis_client.incrby(
        "metrics:backordered_units", sum(item.get("quantity", 0) for item in event.items)
    )

    backorder_data = {
        "order_id": str(event.order_id),
        "user_id": event.user_id,
        "backorder_priority": event.backorder_priority,
        "total_amount": event.total_amount,
        "items_count": len(event.items),
    }
    await redis_client.zadd(RECENT_BACKORDERS_KEY, {json.dumps(backorder_data): event.timestamp.timestamp()})

    # Keep only last 100 backorders
    await redis_client.zremrangebyrank(RECENT_BACKORDERS_KEY, 0, -101)


async def update_backorder_fulfilled_metrics(event: BackorderFulfilledEvent):
    await redis_client.incr("metrics:backorders_fulfilled")


async def update_backorder_cancelled_metrics(event: BackorderCancelledEvent):
    await redis_client.incr("metrics:backorders_cancelled")


async def update_waitlist_metrics(event: BaseEvent):
    if isinstance(event, WaitlistSubscribedEvent):
        await redis_client.incr("metrics:waitlist_subscriptions")
    elif isinstance(event, WaitlistUnsubscribedEvent):
        await redis_client.incr("metrics:waitlist_unsubscriptions")


async def update_notification_metrics(event: BaseEvent):
    if isinstance(event, NotificationSentEvent):
        await redis_client.incr("metrics:notifications_sent")
        await redis_client.incr(f"metrics:notifications_sent:{event.notification_type}")
    elif isinstance(event, NotificationFailedEvent):
        await redis_client.incr("metrics:notifications_failed")


async def update_restock_expired_metrics(event: RestockExpiredEvent):
    await redis_client.incr("metrics:restocks_expired")


async def update_reconciliation_metrics(event: ReconciliationCompletedEvent):
    await redis_client.incrby("metrics:restocked_units", event.restocked_quantity)


METRIC_UPDATERS = {
    EventType.BACKORDER_CREATED: update_backorder_created_metrics,
    EventType.BACKORDER_FULFILLED: update_backorder_fulfilled_metrics,
    EventType.BACKORDER_CANCELLED: update_backorder_cancelled_metrics,
    EventType.WAITLIST_SUBSCRIBED: update_waitlist_metrics,
    EventType.WAITLIST_UNSUBSCRIBED: update_waitlist_metrics,
    EventType.NOTIFICATION_SENT: update_notification_metrics,
    EventType.NOTIFICATION_FAILED: update_notification_metrics,
    EventType.RESTOCK_EXPIRED: update_restock_expired_metrics,
    EventType.RECONCILIATION_COMPLETED: update_reconciliation_metrics,
}


async def record_event(event: BaseEvent):
    """Track any restock-engine event and update its funnel counters."""
    if not redis_client:
        return

    await track_event(event)

    updater = METRIC_UPDATERS.get(event.event_type)
    if updater:
        await updater(event)

    logger.info(f"Analytics: {event.event_type.value} {event.aggregate_id}")


# Event Handlers
async def subscribe_to_events():
    """Subscribe to the restock engine's event families."""
    for family in ("backorder", "waitlist", "notification", "restock", "reconciliation", "stock"):
        await message_broker.subscribe_to_pattern(
            f"{family}.*",
            f"analytics_service_{family}",
            record_event,
        )

    logger.info("Subscribed to analytics events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
