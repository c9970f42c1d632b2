import asyncio

from sqlalchemy import select

from services.restock_service.schemas import ErrorKind, ProductRequest, StockItem, StockKey
from shared.outbox import OutboxMessage

from .conftest import JACKET_L, JACKET_M, SCARF


async def test_register_rejects_duplicate_product(catalog):
    result = await catalog.stock_ledger.register(ProductRequest(id="scarf", name="Other", price=1.0))

    assert not result.success
    assert result.error == ErrorKind.CONFLICT


async def test_check_availability_reports_each_item(catalog):
    infos = await catalog.stock_ledger.check_availability([
        StockItem(product_id="scarf", quantity=4),
        StockItem(product_id="jacket", variant_id="jacket-m", quantity=1),
        StockItem(product_id="unknown", quantity=1),
    ])

    assert [info.available for info in infos] == [True, False, False]
    assert [info.current_stock for info in infos] == [10, 0, 0]


async def test_reserve_is_all_or_nothing(catalog):
    result = await catalog.stock_ledger.reserve([
        StockItem(product_id="scarf", quantity=2),
        StockItem(product_id="jacket", variant_id="jacket-l", quantity=5),
    ])

    assert not result.success
    assert result.error == ErrorKind.CONFLICT
    assert result.errors == ["Insufficient stock for product jacket variant jacket-l: 3 available"]
    assert result.unavailable[0].current_stock == 3

    # The scarf decrement was rolled back with the failed jacket line
    assert (await catalog.stock_ledger.get_stock(SCARF)).quantity_available == 10
    assert (await catalog.stock_ledger.get_stock(JACKET_L)).quantity_available == 3


async def test_reserve_and_restore(catalog):
    reserved = await catalog.stock_ledger.reserve([StockItem(product_id="scarf", quantity=4)])
    assert reserved.success
    assert (await catalog.stock_ledger.get_stock(SCARF)).quantity_available == 6

    restored = await catalog.stock_ledger.restore([StockItem(product_id="scarf", quantity=4)])
    assert restored.success
    assert (await catalog.stock_ledger.get_stock(SCARF)).quantity_available == 10


async def test_restore_unknown_key_fails_whole_batch(catalog):
    result = await catalog.stock_ledger.restore([
        StockItem(product_id="scarf", quantity=1),
        StockItem(product_id="jacket", variant_id="jacket-xxl", quantity=1),
    ])

    assert not result.success
    assert result.error == ErrorKind.NOT_FOUND
    assert (await catalog.stock_ledger.get_stock(SCARF)).quantity_available == 10


async def test_concurrent_reserves_never_oversell(catalog):
    results = await asyncio.gather(*[
        catalog.stock_ledger.reserve([StockItem(product_id="scarf", quantity=3)])
        for _ in range(6)
    ])

    succeeded = [result for result in results if result.success]
    assert len(succeeded) == 3
    assert (await catalog.stock_ledger.get_stock(SCARF)).quantity_available == 1


async def test_set_stock_returns_previous_and_writes_event(catalog, session_factory):
    change = await catalog.stock_ledger.set_stock(JACKET_M, 7)

    assert change.success
    assert (change.previous_stock, change.new_stock) == (0, 7)

    async with session_factory() as session:
        result = await session.execute(
            select(OutboxMessage).where(OutboxMessage.event_type == "stock.updated")
        )
        messages = result.scalars().all()
    assert len(messages) == 1
    assert messages[0].aggregate_id == "jacket/jacket-m"


async def test_set_stock_rejects_negative_and_unknown(catalog):
    negative = await catalog.stock_ledger.set_stock(JACKET_M, -1)
    unknown = await catalog.stock_ledger.set_stock(StockKey(product_id="nope"), 1)

    assert negative.error == ErrorKind.VALIDATION
    assert unknown.error == ErrorKind.NOT_FOUND


async def test_increment_reports_previous_count(catalog):
    change = await catalog.stock_ledger.increment(JACKET_L, 4)

    assert change.success
    assert (change.previous_stock, change.new_stock) == (3, 7)


async def test_low_stock_alerts_lowest_first(catalog):
    levels = await catalog.stock_ledger.low_stock_alerts(threshold=3)

    quantities = [level.quantity_available for level in levels]
    assert quantities == sorted(quantities)
    assert len(levels) == 5
    assert all(level.product_id != "scarf" for level in levels)
