"""Authoritative available-unit counts per product/variant."""
import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.events import StockUpdatedEvent
from shared.outbox import save_event_to_outbox

from .models import Product, StockRecord
from .schemas import (
    ErrorKind,
    InventoryResult,
    OperationResult,
    ProductRequest,
    StockChange,
    StockInfo,
    StockItem,
    StockKey,
    StockLevel,
)

logger = logging.getLogger(__name__)


def _key_filter(key: StockKey):
    return (
        StockRecord.product_id == key.product_id,
        StockRecord.variant_key == key.variant_key,
    )


async def get_stock_record(
    session: AsyncSession, key: StockKey, for_update: bool = False
) -> Optional[StockRecord]:
    """Fetch the stock record of a key inside the caller's transaction."""
    query = select(StockRecord).where(*_key_filter(key))
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


def _level(record: StockRecord) -> StockLevel:
    key = StockKey.from_storage(record.product_id, record.variant_key)
    return StockLevel(
        product_id=key.product_id,
        variant_id=key.variant_id,
        sku=record.sku,
        quantity_available=record.quantity_available,
        is_active=record.is_active,
    )


class StockLedger:
    """Atomic reserve/restore/overwrite of stock records."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def register(self, request: ProductRequest) -> OperationResult:
        """Create a product with its bare-product record and one record per variant."""
        async with self.session_factory() as session:
            try:
                if await session.get(Product, request.id):
                    return OperationResult(
                        success=False,
                        error=ErrorKind.CONFLICT,
                        message=f"Product {request.id} already exists",
                    )

                session.add(Product(
                    id=request.id,
                    name=request.name,
                    name_en=request.name_en,
                    price=request.price,
                    sale_price=request.sale_price,
                ))
                session.add(StockRecord(
                    product_id=request.id,
                    variant_key=StockKey(product_id=request.id).variant_key,
                    quantity_available=request.quantity,
                ))
                for variant in request.variants:
                    session.add(StockRecord(
                        product_id=request.id,
                        variant_key=variant.id,
                        sku=variant.sku,
                        price=variant.price,
                        sale_price=variant.sale_price,
                        quantity_available=variant.quantity,
                    ))

                await session.commit()

            except SQLAlchemyError as e:
                logger.error(f"Error registering product {request.id}: {str(e)}", exc_info=True)
                await session.rollback()
                return OperationResult(
                    success=False, error=ErrorKind.UNAVAILABLE, message="Failed to register product"
                )

        logger.info(f"Registered product {request.id} with {len(request.variants)} variants")
        return OperationResult(success=True, message="Product registered")

    async def check_availability(self, items: List[StockItem]) -> List[StockInfo]:
        """Read-only availability of each item; missing records count as zero stock."""
        async with self.session_factory() as session:
            infos = []
            for item in items:
                record = await get_stock_record(session, item.key)
                current_stock = record.quantity_available if record else 0
                infos.append(StockInfo(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    requested=item.quantity,
                    current_stock=current_stock,
                    available=bool(record and record.is_active and current_stock >= item.quantity),
                ))
            return infos

    async def reserve(self, items: List[StockItem]) -> InventoryResult:
        """
        Decrement stock for every item, or for none of them.

        Each decrement is a conditional UPDATE guarded by
        ``quantity_available >= quantity``, so two concurrent batches can
        never both take the last unit; a guard miss rolls back the batch.
        """
        async with self.session_factory() as session:
            try:
                failed: List[StockItem] = []
                for item in items:
                    result = await session.execute(
                        update(StockRecord)
                        .where(
                            *_key_filter(item.key),
                            StockRecord.is_active.is_(True),
                            StockRecord.quantity_available >= item.quantity,
                        )
                        .values(quantity_available=StockRecord.quantity_available - item.quantity)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        failed.append(item)

                if failed:
                    await session.rollback()
                else:
                    await session.commit()

            except SQLAlchemyError as e:
                logger.error(f"Error reserving inventory: {str(e)}", exc_info=True)
                await session.rollback()
                return InventoryResult(
                    success=False,
                    error=ErrorKind.UNAVAILABLE,
                    message="Failed to reserve inventory",
                    errors=[str(e)],
                )

        if failed:
            unavailable = await self.check_availability(failed)
            errors = [
                f"Insufficient stock for product {info.product_id}"
                f"{f' variant {info.variant_id}' if info.variant_id else ''}: "
                f"{info.current_stock} available"
                for info in unavailable
            ]
            logger.warning(f"Reservation rejected: {errors}")
            return InventoryResult(
                success=False,
                error=ErrorKind.CONFLICT,
                message="Insufficient inventory",
                errors=errors,
                unavailable=unavailable,
            )

        logger.info(f"Reserved {len(items)} line items")
        return InventoryResult(success=True, message="Inventory reserved", updated_items=items)

    async def restore(self, items: List[StockItem]) -> InventoryResult:
        """Increment stock for every item (cancellations); unknown keys fail the batch."""
        async with self.session_factory() as session:
            try:
                missing: List[StockItem] = []
                for item in items:
                    result = await session.execute(
                        update(StockRecord)
                        .where(*_key_filter(item.key))
                        .values(quantity_available=StockRecord.quantity_available + item.quantity)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        missing.append(item)

                if missing:
                    await session.rollback()
                    errors = [f"Stock record not found for {item.key}" for item in missing]
                    logger.warning(f"Restore rejected: {errors}")
                    return InventoryResult(
                        success=False,
                        error=ErrorKind.NOT_FOUND,
                        message="Failed to restore inventory",
                        errors=errors,
                    )

                await session.commit()

            except SQLAlchemyError as e:
                logger.error(f"Error restoring inventory: {str(e)}", exc_info=True)
                await session.rollback()
                return InventoryResult(
                    success=False,
                    error=ErrorKind.UNAVAILABLE,
                    message="Failed to restore inventory",
                    errors=[str(e)],
                )

        logger.info(f"Restored {len(items)} line items")
        return InventoryResult(success=True, message="Inventory restored", updated_items=items)

    async def set_stock(self, key: StockKey, new_value: int) -> StockChange:
        """
        Overwrite the count of a key.

        The returned previous/new pair must be handed to the coordinator so
        that an increase is reconciled.
        """
        if new_value < 0:
            return StockChange(
                success=False, error=ErrorKind.VALIDATION, message="Stock cannot be negative"
            )

        async with self.session_factory() as session:
            try:
                record = await get_stock_record(session, key, for_update=True)
                if not record:
                    return StockChange(
                        success=False,
                        error=ErrorKind.NOT_FOUND,
                        message=f"Stock record not found for {key}",
                    )

                previous = record.quantity_available
                record.quantity_available = new_value

                await save_event_to_outbox(session, StockUpdatedEvent(
                    aggregate_id=str(key),
                    product_id=key.product_id,
                    variant_id=key.variant_id,
                    previous_stock=previous,
                    new_stock=new_value,
                ))
                await session.commit()

            except SQLAlchemyError as e:
                logger.error(f"Error setting stock for {key}: {str(e)}", exc_info=True)
                await session.rollback()
                return StockChange(
                    success=False, error=ErrorKind.UNAVAILABLE, message="Failed to update stock"
                )

        logger.info(f"Stock for {key} set from {previous} to {new_value}")
        return StockChange(
            success=True, message="Stock updated", previous_stock=previous, new_stock=new_value
        )

    async def increment(self, key: StockKey, quantity: int) -> StockChange:
        """Add received units to a key (restock import path)."""
        if quantity <= 0:
            return StockChange(
                success=False, error=ErrorKind.VALIDATION, message="Quantity must be positive"
            )

        async with self.session_factory() as session:
            try:
                # Write first so the read below sees our own locked row
                result = await session.execute(
                    update(StockRecord)
                    .where(*_key_filter(key))
                    .values(quantity_available=StockRecord.quantity_available + quantity)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return StockChange(
                        success=False,
                        error=ErrorKind.NOT_FOUND,
                        message=f"Stock record not found for {key}",
                    )

                record = await get_stock_record(session, key)
                new_value = record.quantity_available
                await session.commit()

            except SQLAlchemyError as e:
                logger.error(f"Error receiving stock for {key}: {str(e)}", exc_info=True)
                await session.rollback()
                return StockChange(
                    success=False, error=ErrorKind.UNAVAILABLE, message="Failed to receive stock"
                )

        logger.info(f"Received {quantity} units for {key}, now {new_value}")
        return StockChange(
            success=True,
            message="Stock received",
            previous_stock=new_value - quantity,
            new_stock=new_value,
        )

    async def get_stock(self, key: StockKey) -> Optional[StockLevel]:
        async with self.session_factory() as session:
            record = await get_stock_record(session, key)
            return _level(record) if record else None

    async def low_stock_alerts(self, threshold: int = 5) -> List[StockLevel]:
        """Active records at or below the threshold, lowest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(StockRecord)
                .where(
                    StockRecord.is_active.is_(True),
                    StockRecord.quantity_available <= threshold,
                )
                .order_by(StockRecord.quantity_available, StockRecord.product_id)
            )
            return [_level(record) for record in result.scalars().all()]
