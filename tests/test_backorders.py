import asyncio
from datetime import datetime
from uuid import uuid4

from services.restock_service.backorders import BackorderLedger
from services.restock_service.models import BackorderStatus
from services.restock_service.schemas import (
    BackorderItemRequest,
    BackorderRequest,
    ErrorKind,
    StockItem,
    StockKey,
)

from .conftest import BOOTS_42, JACKET_L, JACKET_M, backorder_request


async def test_priorities_increase_in_creation_order(catalog):
    results = [await catalog.backorders.create(backorder_request(JACKET_M, 1, user_id=f"u{i}")) for i in range(4)]

    priorities = [result.backorder_priority for result in results]
    assert priorities == sorted(priorities)
    assert len(set(priorities)) == 4

    pending = await catalog.backorders.list_pending(JACKET_M)
    assert [order.id for order in pending] == [result.order_id for result in results]


async def test_concurrent_creation_assigns_unique_priorities(catalog):
    results = await asyncio.gather(*[
        catalog.backorders.create(backorder_request(BOOTS_42, 1, user_id=f"u{i}")) for i in range(8)
    ])

    assert all(result.success for result in results)
    priorities = sorted(result.backorder_priority for result in results)
    assert priorities == list(range(priorities[0], priorities[0] + 8))


async def test_in_stock_item_cannot_be_backordered(catalog):
    result = await catalog.backorders.create(backorder_request(JACKET_L, 2))

    assert not result.success
    assert result.error == ErrorKind.CONFLICT
    assert result.current_stock == 3
    assert "cannot be backordered" in result.message


async def test_more_than_stock_can_be_backordered(catalog):
    result = await catalog.backorders.create(backorder_request(JACKET_L, 5))

    assert result.success


async def test_unknown_product_or_variant_is_rejected(catalog):
    no_product = await catalog.backorders.create(backorder_request(StockKey(product_id="nope"), 1))
    no_variant = await catalog.backorders.create(
        backorder_request(StockKey(product_id="jacket", variant_id="jacket-xs"), 1)
    )

    assert no_product.error == ErrorKind.NOT_FOUND
    assert no_variant.error == ErrorKind.NOT_FOUND


async def test_invalid_contact_email_is_rejected(catalog):
    result = await catalog.backorders.create(backorder_request(JACKET_M, 1, email="nope"))

    assert result.error == ErrorKind.VALIDATION


async def test_cancel_only_touches_the_cancelled_order(catalog):
    first = await catalog.backorders.create(backorder_request(JACKET_M, 2, user_id="a"))
    second = await catalog.backorders.create(backorder_request(JACKET_M, 3, user_id="b"))
    before = await catalog.backorders.get_status(second.order_id)

    result = await catalog.backorders.cancel(first.order_id)

    assert result.success
    assert (await catalog.backorders.get_status(first.order_id)).status == BackorderStatus.CANCELLED.value
    after = await catalog.backorders.get_status(second.order_id)
    assert after == before


async def test_cancel_rejects_non_pending_and_unknown(catalog):
    created = await catalog.backorders.create(backorder_request(JACKET_M, 1))
    await catalog.backorders.cancel(created.order_id)

    again = await catalog.backorders.cancel(created.order_id)
    assert again.error == ErrorKind.CONFLICT
    assert again.message == "Order cannot be cancelled in current status"
    assert again.current_status == BackorderStatus.CANCELLED.value

    missing = await catalog.backorders.cancel(uuid4())
    assert missing.error == ErrorKind.NOT_FOUND


async def test_fulfill_is_strict_fifo(catalog):
    big = await catalog.backorders.create(backorder_request(JACKET_M, 5, user_id="big"))
    small = await catalog.backorders.create(backorder_request(JACKET_M, 1, user_id="small"))
    await catalog.stock_ledger.set_stock(JACKET_M, 4)

    result = await catalog.backorders.fulfill(JACKET_M, 4)

    # The early large order blocks the later small one
    assert result.fulfilled_orders == []
    assert result.remaining_quantity == 4
    assert (await catalog.backorders.get_status(small.order_id)).status == BackorderStatus.PENDING.value
    assert (await catalog.backorders.get_status(big.order_id)).status == BackorderStatus.PENDING.value


async def test_fulfill_deducts_allocated_units(catalog):
    first = await catalog.backorders.create(backorder_request(JACKET_M, 2, user_id="a"))
    second = await catalog.backorders.create(backorder_request(JACKET_M, 3, user_id="b"))
    await catalog.stock_ledger.set_stock(JACKET_M, 4)

    result = await catalog.backorders.fulfill(JACKET_M, 4)

    assert result.fulfilled_orders == [first.order_id]
    assert result.remaining_quantity == 2
    assert (await catalog.backorders.get_status(second.order_id)).status == BackorderStatus.PENDING.value
    assert (await catalog.stock_ledger.get_stock(JACKET_M)).quantity_available == 2


async def test_fulfill_without_deduction_leaves_stock(catalog, session_factory):
    ledger = BackorderLedger(session_factory, deduct_fulfilled_stock=False)
    order = await ledger.create(backorder_request(JACKET_M, 2))
    await catalog.stock_ledger.set_stock(JACKET_M, 2)

    result = await ledger.fulfill(JACKET_M, 2)

    assert result.fulfilled_orders == [order.order_id]
    assert result.remaining_quantity == 0
    assert (await catalog.stock_ledger.get_stock(JACKET_M)).quantity_available == 2


async def test_fulfill_stops_when_stock_was_taken_concurrently(catalog):
    order = await catalog.backorders.create(backorder_request(JACKET_M, 2))
    await catalog.stock_ledger.set_stock(JACKET_M, 2)
    # A checkout grabs the units between the restock and the allocation walk
    assert (await catalog.stock_ledger.reserve([StockItem(product_id="jacket", variant_id="jacket-m", quantity=1)])).success

    result = await catalog.backorders.fulfill(JACKET_M, 2)

    assert result.fulfilled_orders == []
    assert result.remaining_quantity == 0
    assert (await catalog.backorders.get_status(order.order_id)).status == BackorderStatus.PENDING.value
    assert (await catalog.stock_ledger.get_stock(JACKET_M)).quantity_available == 1


async def test_cancel_racing_allocation_has_one_winner(catalog):
    order = await catalog.backorders.create(backorder_request(JACKET_M, 1))
    await catalog.stock_ledger.set_stock(JACKET_M, 1)

    cancel, fulfill = await asyncio.gather(
        catalog.backorders.cancel(order.order_id),
        catalog.backorders.fulfill(JACKET_M, 1),
    )

    status = (await catalog.backorders.get_status(order.order_id)).status
    if cancel.success:
        assert status == BackorderStatus.CANCELLED.value
        assert fulfill.fulfilled_orders == []
        assert (await catalog.stock_ledger.get_stock(JACKET_M)).quantity_available == 1
    else:
        assert status == BackorderStatus.PROCESSING.value
        assert cancel.current_status == BackorderStatus.PROCESSING.value
        assert fulfill.fulfilled_orders == [order.order_id]


async def test_multi_line_order_demand_is_summed_per_key(catalog):
    request = BackorderRequest(
        user_id="u1",
        customer_email="u1@example.com",
        items=[
            BackorderItemRequest(product_id="jacket", variant_id="jacket-m", quantity=1, size="M", color="navy", price=199.0),
            BackorderItemRequest(product_id="jacket", variant_id="jacket-m", quantity=2, size="M", color="grey", price=199.0),
        ],
        total_amount=597.0,
    )
    order = await catalog.backorders.create(request)
    await catalog.stock_ledger.set_stock(JACKET_M, 2)

    short = await catalog.backorders.fulfill(JACKET_M, 2)
    assert short.fulfilled_orders == []

    await catalog.stock_ledger.set_stock(JACKET_M, 3)
    enough = await catalog.backorders.fulfill(JACKET_M, 3)
    assert enough.fulfilled_orders == [order.order_id]
    assert enough.remaining_quantity == 0


async def test_list_for_customer_newest_first(catalog):
    first = await catalog.backorders.create(backorder_request(JACKET_M, 1, user_id="same"))
    second = await catalog.backorders.create(backorder_request(BOOTS_42, 1, user_id="same"))
    await catalog.backorders.create(backorder_request(BOOTS_42, 1, user_id="other"))

    orders = await catalog.backorders.list_for_customer("same")

    assert [order.id for order in orders] == [second.order_id, first.order_id]
    assert orders[0].order_number == second.order_id.hex[-8:].upper()


async def test_allocation_summary(catalog):
    await catalog.backorders.create(backorder_request(JACKET_M, 2, user_id="a"))
    await catalog.backorders.create(backorder_request(JACKET_M, 3, user_id="b"))
    cancelled = await catalog.backorders.create(backorder_request(BOOTS_42, 1, user_id="c"))
    await catalog.backorders.cancel(cancelled.order_id)

    summary = await catalog.backorders.allocation_summary()

    assert summary.total_pending_backorders == 2
    assert summary.total_pending_quantity == 5
    assert len(summary.pending_allocation) == 1
    allocation = summary.pending_allocation[0]
    assert (allocation.product_id, allocation.variant_id, allocation.pending_quantity) == ("jacket", "jacket-m", 5)
    assert allocation.available_stock == 0


async def test_expected_fulfillment_date_is_stored_as_utc(catalog):
    request = BackorderRequest(**{
        **backorder_request(JACKET_M, 1).model_dump(),
        "expected_fulfillment_date": "2026-12-01T12:00:00+02:00",
    })

    created = await catalog.backorders.create(request)

    order = await catalog.backorders.get_status(created.order_id)
    assert order.expected_fulfillment_date == datetime(2026, 12, 1, 10, 0)
