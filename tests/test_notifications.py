import time
from urllib.parse import parse_qs, urlparse
from uuid import uuid4

from services.restock_service.notifications import make_reservation_token, verify_reservation_token
from services.restock_service.schemas import (
    DelayNotificationData,
    ErrorKind,
    FulfillmentNotificationData,
)

from .conftest import BOOTS_42, JACKET_M, SCARF


def _purchase_link(text: str) -> str:
    line = next(line for line in text.splitlines() if line.startswith("Order now: "))
    return line[len("Order now: "):]


async def test_reservation_token_round_trip_and_expiry():
    subscription_id = uuid4()
    now = time.time()
    token = make_reservation_token("secret", subscription_id, window_minutes=30, now=now)

    assert verify_reservation_token("secret", token, now=now + 29 * 60) == subscription_id
    assert verify_reservation_token("secret", token, now=now + 31 * 60) is None
    assert verify_reservation_token("other-secret", token, now=now) is None
    assert verify_reservation_token("secret", "garbage") is None


async def test_send_restock_embeds_token_and_tracking(catalog, transport):
    subscribed = await catalog.waitlist.subscribe("a@x.com", JACKET_M)
    data = await catalog.dispatcher.build_restock_data("a@x.com", JACKET_M)

    result = await catalog.dispatcher.send_restock(subscribed.subscription_id, data)

    assert result.success
    assert len(result.notification_ids) == 1
    message = transport.to("a@x.com")[0]
    assert "Wool Jacket (JKT-M)" in message["subject"]
    query = parse_qs(urlparse(_purchase_link(message["text"])).query)
    assert query["variant"] == ["jacket-m"]
    assert query["notification"] == [str(result.notification_ids[0])]
    assert catalog.dispatcher.verify_reservation_token(query["reservation"][0]) == subscribed.subscription_id
    assert "waitlist/unsubscribe" in message["text"]


async def test_send_restock_requires_active_subscription(catalog, transport):
    subscribed = await catalog.waitlist.subscribe("a@x.com", JACKET_M)
    await catalog.waitlist.unsubscribe("a@x.com", JACKET_M)
    data = await catalog.dispatcher.build_restock_data("a@x.com", JACKET_M)

    result = await catalog.dispatcher.send_restock(subscribed.subscription_id, data)

    assert result.error == ErrorKind.NOT_FOUND
    assert transport.sent == []


async def test_failed_delivery_leaves_no_tracking_record(catalog, transport):
    transport.deliver = False
    subscribed = await catalog.waitlist.subscribe("a@x.com", JACKET_M)
    data = await catalog.dispatcher.build_restock_data("a@x.com", JACKET_M)

    result = await catalog.dispatcher.send_restock(subscribed.subscription_id, data)

    assert result.error == ErrorKind.DELIVERY
    assert (await catalog.dispatcher.analytics()).total_sent == 0


async def test_consolidated_with_no_items_is_a_no_op(catalog, transport):
    result = await catalog.dispatcher.send_consolidated("a@x.com", [])

    assert result.success
    assert result.message == "No notifications to send"
    assert transport.sent == []


async def test_consolidated_with_one_item_sends_single_restock(catalog, transport):
    await catalog.waitlist.subscribe("a@x.com", SCARF)
    data = await catalog.dispatcher.build_restock_data("a@x.com", SCARF)

    result = await catalog.dispatcher.send_consolidated("a@x.com", [data])

    assert result.success
    assert transport.to("a@x.com")[0]["subject"] == "Back in stock: Cashmere Scarf"


async def test_consolidated_sends_one_message_for_many_items(catalog, transport):
    await catalog.waitlist.subscribe("b@x.com", JACKET_M)
    await catalog.waitlist.subscribe("b@x.com", BOOTS_42)
    items = [
        await catalog.dispatcher.build_restock_data("b@x.com", JACKET_M),
        await catalog.dispatcher.build_restock_data("b@x.com", BOOTS_42),
    ]

    result = await catalog.dispatcher.send_consolidated("b@x.com", items)

    assert result.success
    assert len(result.notification_ids) == 2
    messages = transport.to("b@x.com")
    assert len(messages) == 1
    assert messages[0]["subject"] == "2 items on your waitlist are back in stock"
    assert "Wool Jacket (JKT-M)" in messages[0]["text"]
    assert "Leather Boots (BT-42) - 125.00 EUR" in messages[0]["text"]


async def test_consolidated_with_one_active_item_sends_single_restock(catalog, transport):
    await catalog.waitlist.subscribe("b@x.com", JACKET_M)
    await catalog.waitlist.subscribe("b@x.com", BOOTS_42)
    items = [
        await catalog.dispatcher.build_restock_data("b@x.com", JACKET_M),
        await catalog.dispatcher.build_restock_data("b@x.com", BOOTS_42),
    ]
    await catalog.waitlist.unsubscribe("b@x.com", JACKET_M)

    result = await catalog.dispatcher.send_consolidated("b@x.com", items)

    assert result.success
    messages = transport.to("b@x.com")
    assert len(messages) == 1
    assert messages[0]["subject"] == "Back in stock: Leather Boots (BT-42)"


async def test_build_restock_data_prefers_sale_price(catalog):
    data = await catalog.dispatcher.build_restock_data("a@x.com", SCARF)

    assert data.current_price == 29.0
    assert data.purchase_url == "https://shop.test/products/scarf"


async def test_delay_and_fulfillment_messages(catalog, transport):
    delay = await catalog.dispatcher.send_delay(DelayNotificationData(
        email="Late@X.com",
        product_name="Wool Jacket",
        order_number="AB12CD34",
        cancellation_url="https://shop.test/orders/1/cancel",
    ))
    fulfillment = await catalog.dispatcher.send_fulfillment(FulfillmentNotificationData(
        email="late@x.com", order_number="AB12CD34", tracking_number="DHL123",
    ))

    assert delay.success and fulfillment.success
    delay_message, fulfillment_message = transport.to("late@x.com")
    assert "https://shop.test/orders/1/cancel" in delay_message["text"]
    assert "expected on unknown" in delay_message["text"]
    assert "Tracking number: DHL123" in fulfillment_message["text"]


async def test_tracking_is_idempotent_and_feeds_analytics(catalog):
    ids = []
    for email in ("a@x.com", "b@x.com", "c@x.com", "d@x.com"):
        subscribed = await catalog.waitlist.subscribe(email, JACKET_M)
        data = await catalog.dispatcher.build_restock_data(email, JACKET_M)
        ids.extend((await catalog.dispatcher.send_restock(subscribed.subscription_id, data)).notification_ids)

    for _ in range(3):
        assert (await catalog.dispatcher.track_open(ids[0])).success
    await catalog.dispatcher.track_open(ids[1])
    await catalog.dispatcher.track_click(ids[0])
    await catalog.dispatcher.track_purchase(ids[0])

    analytics = await catalog.dispatcher.analytics()

    assert analytics.total_sent == 4
    assert analytics.open_rate == 50.0
    assert analytics.click_rate == 25.0
    assert analytics.conversion_rate == 25.0


async def test_track_unknown_notification_or_action(catalog):
    assert (await catalog.dispatcher.track(uuid4(), "open")).error == ErrorKind.NOT_FOUND
    assert (await catalog.dispatcher.track(uuid4(), "forward")).error == ErrorKind.VALIDATION


async def test_analytics_without_notifications(catalog):
    analytics = await catalog.dispatcher.analytics()

    assert (analytics.total_sent, analytics.open_rate, analytics.click_rate, analytics.conversion_rate) == (
        0, 0.0, 0.0, 0.0
    )
