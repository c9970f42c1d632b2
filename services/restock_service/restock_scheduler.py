"""Expected restock dates per product/variant and their expiry sweep."""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shared.events import RestockClearedEvent, RestockExpiredEvent, RestockScheduledEvent
from shared.outbox import save_event_to_outbox

from .models import (
    BackorderLineItem,
    BackorderOrder,
    BackorderStatus,
    Product,
    RestockSchedule,
    WaitlistSubscription,
)
from .schemas import (
    BulkRestockResult,
    ErrorKind,
    ExpiredRestock,
    OperationResult,
    RestockHistoryEntry,
    RestockScheduleRequest,
    StockKey,
    SweepResult,
    UpcomingRestock,
    to_utc_naive,
)
from .stock_ledger import get_stock_record

logger = logging.getLogger(__name__)


def expiry_note(missed_date: datetime) -> str:
    return f"Previous expected date {missed_date.strftime('%Y-%m-%d')} has passed"


class RestockScheduler:
    """Admin-maintained expected availability dates."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _find(self, session, key: StockKey) -> Optional[RestockSchedule]:
        result = await session.execute(
            select(RestockSchedule).where(
                RestockSchedule.product_id == key.product_id,
                RestockSchedule.variant_key == key.variant_key,
            )
        )
        return result.scalar_one_or_none()

    async def set_expected(
        self,
        key: StockKey,
        expected_date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> OperationResult:
        """Create or update the schedule of a key; a date must lie in the future."""
        expected_date = to_utc_naive(expected_date)
        if expected_date is not None and expected_date <= datetime.utcnow():
            return OperationResult(
                success=False,
                error=ErrorKind.VALIDATION,
                message="Expected restock date must be in the future",
            )

        async with self.session_factory() as session:
            try:
                if not await session.get(Product, key.product_id):
                    return OperationResult(
                        success=False, error=ErrorKind.NOT_FOUND, message="Product not found"
                    )
                if key.variant_id and not await get_stock_record(session, key):
                    return OperationResult(
                        success=False, error=ErrorKind.NOT_FOUND, message="Product variant not found"
                    )

                schedule = await self._find(session, key)
                if schedule:
                    schedule.expected_date = expected_date
                    schedule.notes = notes
                    schedule.updated_at = datetime.utcnow()
                else:
                    session.add(RestockSchedule(
                        product_id=key.product_id,
                        variant_key=key.variant_key,
                        expected_date=expected_date,
                        notes=notes,
                    ))

                await save_event_to_outbox(session, RestockScheduledEvent(
                    aggregate_id=str(key),
                    product_id=key.product_id,
                    variant_id=key.variant_id,
                    expected_date=expected_date,
                ))
                await session.commit()

            except IntegrityError:
                await session.rollback()
                return OperationResult(
                    success=False,
                    error=ErrorKind.CONFLICT,
                    message="Restock schedule was created concurrently, retry the update",
                )
            except SQLAlchemyError as e:
                logger.error(f"Error setting restock date for {key}: {str(e)}", exc_info=True)
                await session.rollback()
                return OperationResult(
                    success=False, error=ErrorKind.UNAVAILABLE, message="Failed to update restock date"
                )

        logger.info(f"Expected restock date for {key} set to {expected_date}")
        return OperationResult(success=True, message="Restock date updated successfully")

    async def get_expected(self, key: StockKey) -> Optional[datetime]:
        async with self.session_factory() as session:
            schedule = await self._find(session, key)
            return schedule.expected_date if schedule else None

    async def history(self, key: StockKey) -> List[RestockHistoryEntry]:
        """Schedule rows of a key, most recently updated first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(RestockSchedule)
                .where(
                    RestockSchedule.product_id == key.product_id,
                    RestockSchedule.variant_key == key.variant_key,
                )
                .order_by(RestockSchedule.updated_at.desc())
            )
            return [
                RestockHistoryEntry(
                    product_id=key.product_id,
                    variant_id=key.variant_id,
                    expected_date=schedule.expected_date,
                    actual_date=schedule.actual_date,
                    notes=schedule.notes,
                    created_at=schedule.created_at,
                    updated_at=schedule.updated_at,
                )
                for schedule in result.scalars().all()
            ]

    async def clear(self, key: StockKey) -> OperationResult:
        """Record that stock arrived: ``actual_date = now``, no expected date."""
        async with self.session_factory() as session:
            try:
                schedule = await self._find(session, key)
                if not schedule:
                    return OperationResult(success=True, message="No restock schedule to clear")

                now = datetime.utcnow()
                schedule.actual_date = now
                schedule.expected_date = None
                schedule.updated_at = now

                await save_event_to_outbox(session, RestockClearedEvent(
                    aggregate_id=str(key),
                    product_id=key.product_id,
                    variant_id=key.variant_id,
                    actual_date=now,
                ))
                await session.commit()

            except SQLAlchemyError as e:
                logger.error(f"Error clearing restock date for {key}: {str(e)}", exc_info=True)
                await session.rollback()
                return OperationResult(
                    success=False, error=ErrorKind.UNAVAILABLE, message="Failed to clear restock date"
                )

        logger.info(f"Cleared restock schedule for {key}")
        return OperationResult(success=True, message="Restock date cleared")

    async def sweep_expired(self) -> SweepResult:
        """
        Null out every expected date that has passed and note the miss.

        Each row is released with an UPDATE guarded on the date it was read
        with, so overlapping sweeps report a missed date only once.
        """
        now = datetime.utcnow()
        expired: List[ExpiredRestock] = []

        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    select(RestockSchedule.id, RestockSchedule.product_id, RestockSchedule.variant_key,
                           RestockSchedule.expected_date, RestockSchedule.notes)
                    .where(
                        RestockSchedule.expected_date.is_not(None),
                        RestockSchedule.expected_date < now,
                    )
                    .order_by(RestockSchedule.expected_date)
                )

                for schedule_id, product_id, variant_key, missed_date, notes in result.all():
                    note = expiry_note(missed_date)
                    released = await session.execute(
                        update(RestockSchedule)
                        .where(
                            RestockSchedule.id == schedule_id,
                            RestockSchedule.expected_date == missed_date,
                        )
                        .values(
                            expected_date=None,
                            notes=f"{notes}\n{note}" if notes else note,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if released.rowcount != 1:
                        continue

                    key = StockKey.from_storage(product_id, variant_key)
                    await save_event_to_outbox(session, RestockExpiredEvent(
                        aggregate_id=str(key),
                        product_id=key.product_id,
                        variant_id=key.variant_id,
                        missed_date=missed_date,
                    ))
                    expired.append(ExpiredRestock(
                        product_id=key.product_id,
                        variant_id=key.variant_id,
                        missed_date=missed_date,
                    ))

                await session.commit()

            except SQLAlchemyError as e:
                logger.error(f"Error sweeping expired restock dates: {str(e)}", exc_info=True)
                await session.rollback()
                return SweepResult(
                    success=False, error=ErrorKind.UNAVAILABLE, message="Failed to sweep restock dates"
                )

        if expired:
            logger.info(f"Expired {len(expired)} restock dates")
        return SweepResult(
            success=True,
            message=f"Expired {len(expired)} restock dates",
            expired_count=len(expired),
            expired=expired,
        )

    async def upcoming(self) -> List[UpcomingRestock]:
        """Future expected dates, soonest first, with the demand waiting on them."""
        waitlist_count = (
            select(func.count(WaitlistSubscription.id))
            .where(
                WaitlistSubscription.product_id == RestockSchedule.product_id,
                WaitlistSubscription.variant_key == RestockSchedule.variant_key,
                WaitlistSubscription.is_active.is_(True),
            )
            .correlate(RestockSchedule)
            .scalar_subquery()
        )
        backorder_count = (
            select(func.count(func.distinct(BackorderOrder.id)))
            .join(BackorderLineItem, BackorderLineItem.order_id == BackorderOrder.id)
            .where(
                BackorderOrder.status == BackorderStatus.PENDING.value,
                BackorderLineItem.product_id == RestockSchedule.product_id,
                BackorderLineItem.variant_key == RestockSchedule.variant_key,
            )
            .correlate(RestockSchedule)
            .scalar_subquery()
        )

        async with self.session_factory() as session:
            result = await session.execute(
                select(RestockSchedule, Product.name, waitlist_count, backorder_count)
                .join(Product, Product.id == RestockSchedule.product_id)
                .where(RestockSchedule.expected_date >= datetime.utcnow())
                .order_by(RestockSchedule.expected_date)
            )

            upcoming = []
            for schedule, product_name, waiting, backordered in result.all():
                key = StockKey.from_storage(schedule.product_id, schedule.variant_key)
                upcoming.append(UpcomingRestock(
                    product_id=key.product_id,
                    product_name=product_name,
                    variant_id=key.variant_id,
                    expected_date=schedule.expected_date,
                    waitlist_count=waiting or 0,
                    backorder_count=backordered or 0,
                    notes=schedule.notes,
                ))
            return upcoming

    async def bulk_set(self, requests: List[RestockScheduleRequest]) -> BulkRestockResult:
        """Apply several schedule updates; each one succeeds or fails on its own."""
        updated = 0
        errors = []
        for request in requests:
            result = await self.set_expected(request.key, request.expected_date, request.notes)
            if result.success:
                updated += 1
            else:
                errors.append(f"{request.key}: {result.message}")

        if errors:
            logger.warning(f"Bulk restock update rejected {len(errors)} entries: {errors}")

        return BulkRestockResult(
            success=not errors,
            error=ErrorKind.VALIDATION if errors else None,
            message=f"Updated {updated} restock dates",
            updated_count=updated,
            errors=errors,
        )
