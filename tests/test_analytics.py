from collections import defaultdict
from datetime import datetime
from uuid import uuid4

import httpx
import pytest

from services.analytics_service import app as analytics_app
from shared.events import (
    BackorderCreatedEvent,
    BackorderFulfilledEvent,
    NotificationFailedEvent,
    NotificationSentEvent,
    ReconciliationCompletedEvent,
)


class FakeRedis:
    """The handful of counter and sorted-set commands the analytics service uses."""

    def __init__(self):
        self.values = defaultdict(int)
        self.sorted_sets = defaultdict(dict)

    async def get(self, key):
        return str(self.values[key]) if key in self.values else None

    async def incr(self, key):
        self.values[key] += 1

    async def incrby(self, key, amount):
        self.values[key] += amount

    async def zadd(self, key, mapping):
        self.sorted_sets[key].update(mapping)

    def _ranked(self, key):
        return sorted(self.sorted_sets[key].items(), key=lambda member: member[1])

    async def zrevrange(self, key, start, end, withscores=False):
        ranked = list(reversed(self._ranked(key)))[start:end + 1]
        return ranked if withscores else [member for member, _ in ranked]

    async def zremrangebyrank(self, key, start, end):
        ranked = self._ranked(key)
        if end < 0:
            end += len(ranked)
        for member, _ in ranked[start:end + 1]:
            del self.sorted_sets[key][member]


@pytest.fixture
def redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(analytics_app, "redis_client", fake)
    return fake


@pytest.fixture
async def client(redis):
    transport = httpx.ASGITransport(app=analytics_app.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def _created(priority: int, quantity: int) -> BackorderCreatedEvent:
    order_id = uuid4()
    return BackorderCreatedEvent(
        aggregate_id=str(order_id),
        order_id=order_id,
        user_id="user-1",
        backorder_priority=priority,
        items=[{"product_id": "jacket", "variant_id": "jacket-m", "quantity": quantity}],
        total_amount=199.0 * quantity,
        timestamp=datetime(2024, 6, 1, 12, priority),
    )


async def test_funnel_metrics(client):
    first, second = _created(1, 2), _created(2, 3)
    for event in (first, second):
        await analytics_app.record_event(event)
    await analytics_app.record_event(BackorderFulfilledEvent(
        aggregate_id=str(first.order_id), order_id=first.order_id, product_id="jacket",
        variant_id="jacket-m", quantity=2, backorder_priority=1,
    ))
    await analytics_app.record_event(ReconciliationCompletedEvent(
        aggregate_id="jacket/jacket-m", product_id="jacket", variant_id="jacket-m",
        restocked_quantity=4, backorders_fulfilled=1, remaining_quantity=2,
    ))
    for _ in range(3):
        await analytics_app.record_event(NotificationSentEvent(
            aggregate_id="n", notification_type="restock", recipient="a@x.com", subject="Back in stock",
        ))
    await analytics_app.record_event(NotificationFailedEvent(
        aggregate_id="n", notification_type="restock", recipient="b@x.com", reason="bounced",
    ))

    metrics = (await client.get("/metrics")).json()

    assert metrics["backorders_created"] == 2
    assert metrics["backordered_units"] == 5
    assert metrics["backorders_fulfilled"] == 1
    assert metrics["restocked_units"] == 4
    assert metrics["fulfillment_rate"] == 50.0
    assert metrics["notifications_sent"] == 3
    assert metrics["notification_failure_rate"] == 25.0


async def test_recent_backorders_newest_first(client):
    for priority in (1, 2, 3):
        await analytics_app.record_event(_created(priority, 1))

    recent = (await client.get("/backorders/recent")).json()

    assert [entry["backorder_priority"] for entry in recent] == [3, 2, 1]


async def test_event_stats_count_by_type(client):
    await analytics_app.record_event(_created(1, 1))

    stats = (await client.get("/events/stats")).json()

    assert stats == [{"event_type": "backorder.created", "count": 1}]


async def test_timeline_keeps_each_event(redis):
    for minute in range(3):
        await analytics_app.track_event(_created(minute, 1))

    assert len(redis.sorted_sets[analytics_app.TIMELINE_KEY]) == 3


async def test_metrics_without_redis(monkeypatch):
    monkeypatch.setattr(analytics_app, "redis_client", None)
    transport = httpx.ASGITransport(app=analytics_app.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        metrics = (await client.get("/metrics")).json()

    assert metrics["backorders_created"] == 0
    assert metrics["fulfillment_rate"] == 0.0
