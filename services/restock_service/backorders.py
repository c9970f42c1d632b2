"""Backorder ledger: FIFO tickets, cancellation and allocation of restocked units."""
import logging
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from shared.events import BackorderCancelledEvent, BackorderCreatedEvent, BackorderFulfilledEvent
from shared.outbox import save_event_to_outbox

from .models import BackorderLineItem, BackorderOrder, BackorderStatus, Product, StockRecord
from .schemas import (
    AllocationSummary,
    BackorderInfo,
    BackorderLine,
    BackorderRequest,
    BackorderResult,
    CancelResult,
    ErrorKind,
    FulfillmentResult,
    PendingAllocation,
    StockKey,
)
from .stock_ledger import get_stock_record
from .waitlist import is_valid_email, normalize_email

logger = logging.getLogger(__name__)

MAX_PRIORITY_ATTEMPTS = 10


class PriorityTaken(Exception):
    """Another transaction committed the priority this one computed."""


class _Allocation(str, Enum):
    ALLOCATED = "allocated"
    SKIPPED = "skipped"  # no longer pending
    BLOCKED = "blocked"  # stock guard failed


def to_backorder_info(order: BackorderOrder) -> BackorderInfo:
    lines = []
    for item in order.items:
        key = StockKey.from_storage(item.product_id, item.variant_key)
        lines.append(BackorderLine(
            id=item.id,
            product_id=key.product_id,
            product_name=item.product.name,
            variant_id=key.variant_id,
            quantity=item.quantity,
            size=item.size,
            color=item.color,
            price=item.price,
        ))

    return BackorderInfo(
        id=order.id,
        user_id=order.user_id,
        customer_email=order.customer_email,
        status=order.status,
        total_amount=order.total_amount,
        currency=order.currency,
        backorder_priority=order.backorder_priority,
        expected_fulfillment_date=order.expected_fulfillment_date,
        created_at=order.created_at,
        items=lines,
    )


def demand_for(order: BackorderInfo, key: StockKey) -> int:
    """Units an order needs of one key; an order may carry several lines (sizes) of it."""
    return sum(line.quantity for line in order.items if line.key == key)


class BackorderLedger:
    """Create, cancel, list and fulfill backorders."""

    def __init__(self, session_factory, deduct_fulfilled_stock: bool = True):
        """
        Args:
            session_factory: Async session factory for database access
            deduct_fulfilled_stock: Whether allocating a backorder also takes
                its units out of the purchasable stock count
        """
        self.session_factory = session_factory
        self.deduct_fulfilled_stock = deduct_fulfilled_stock

    async def create(self, request: BackorderRequest) -> BackorderResult:
        """
        Accept a backorder for items that are not currently purchasable.

        The FIFO priority is ``1 + max(existing)``, computed and inserted in
        one transaction. ``backorder_priority`` is unique, so a concurrent
        creation that computed the same value fails on insert and is retried
        with a fresh maximum.
        """
        if request.customer_email and not is_valid_email(normalize_email(request.customer_email)):
            return BackorderResult(
                success=False, error=ErrorKind.VALIDATION, message="Invalid email format"
            )

        try:
            return await self._insert_backorder(request)
        except PriorityTaken:
            logger.error(f"Could not assign a backorder priority after {MAX_PRIORITY_ATTEMPTS} attempts")
        except SQLAlchemyError as e:
            logger.error(f"Error creating backorder: {str(e)}", exc_info=True)

        return BackorderResult(
            success=False, error=ErrorKind.UNAVAILABLE, message="Failed to create backorder"
        )

    @retry(
        retry=retry_if_exception_type(PriorityTaken),
        stop=stop_after_attempt(MAX_PRIORITY_ATTEMPTS),
        wait=wait_random_exponential(multiplier=0.01, max=0.25),
        reraise=True,
    )
    async def _insert_backorder(self, request: BackorderRequest) -> BackorderResult:
        async with self.session_factory() as session:
            for item in request.items:
                key = item.key
                if not await session.get(Product, key.product_id):
                    return BackorderResult(
                        success=False,
                        error=ErrorKind.NOT_FOUND,
                        message=f"Product {key.product_id} not found",
                    )

                record = await get_stock_record(session, key)
                if not record:
                    return BackorderResult(
                        success=False,
                        error=ErrorKind.NOT_FOUND,
                        message=f"Product variant {key.variant_id} not found",
                    )

                if record.quantity_available >= item.quantity:
                    label = record.sku or key.product_id
                    return BackorderResult(
                        success=False,
                        error=ErrorKind.CONFLICT,
                        message=f"Product {label} is in stock and cannot be backordered",
                        current_stock=record.quantity_available,
                    )

            last_priority = await session.scalar(select(func.max(BackorderOrder.backorder_priority)))
            priority = (last_priority or 0) + 1

            order = BackorderOrder(
                user_id=request.user_id,
                customer_email=normalize_email(request.customer_email) if request.customer_email else None,
                status=BackorderStatus.PENDING.value,
                total_amount=request.total_amount,
                currency=request.currency,
                shipping_address=request.shipping_address,
                backorder_priority=priority,
                expected_fulfillment_date=request.expected_fulfillment_date,
                items=[
                    BackorderLineItem(
                        position=position,
                        product_id=item.product_id,
                        variant_key=item.key.variant_key,
                        quantity=item.quantity,
                        size=item.size,
                        color=item.color,
                        price=item.price,
                    )
                    for position, item in enumerate(request.items)
                ],
            )
            session.add(order)

            try:
                await session.flush()
                await save_event_to_outbox(session, BackorderCreatedEvent(
                    aggregate_id=str(order.id),
                    order_id=order.id,
                    user_id=order.user_id,
                    backorder_priority=priority,
                    items=[
                        {"product_id": item.product_id, "variant_id": item.variant_id, "quantity": item.quantity}
                        for item in request.items
                    ],
                    total_amount=order.total_amount,
                ))
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"Backorder priority {priority} taken concurrently, retrying")
                raise PriorityTaken(priority)

        logger.info(f"Created backorder {order.id} with priority {priority}")
        return BackorderResult(
            success=True,
            order_id=order.id,
            backorder_priority=priority,
            message="Backorder created successfully",
        )

    async def cancel(self, order_id: UUID) -> CancelResult:
        """
        Cancel a pending backorder.

        The status-guarded UPDATE only matches while the row is still
        pending, so a cancel racing an allocation either wins outright or
        is rejected with the status it lost to. No stock is restored: none
        was reserved for a backorder.
        """
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(BackorderOrder)
                    .where(
                        BackorderOrder.id == order_id,
                        BackorderOrder.status == BackorderStatus.PENDING.value,
                    )
                    .values(status=BackorderStatus.CANCELLED.value, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )

                if result.rowcount != 1:
                    await session.rollback()
                    order = await session.get(BackorderOrder, order_id)
                    if not order:
                        return CancelResult(
                            success=False, error=ErrorKind.NOT_FOUND, message="Order not found"
                        )
                    logger.warning(f"Rejected cancel of backorder {order_id} in status {order.status}")
                    return CancelResult(
                        success=False,
                        error=ErrorKind.CONFLICT,
                        message="Order cannot be cancelled in current status",
                        current_status=order.status,
                    )

                priority = await session.scalar(
                    select(BackorderOrder.backorder_priority).where(BackorderOrder.id == order_id)
                )
                await save_event_to_outbox(session, BackorderCancelledEvent(
                    aggregate_id=str(order_id),
                    order_id=order_id,
                    backorder_priority=priority,
                ))
                await session.commit()

            except SQLAlchemyError as e:
                logger.error(f"Error cancelling backorder {order_id}: {str(e)}", exc_info=True)
                await session.rollback()
                return CancelResult(
                    success=False, error=ErrorKind.UNAVAILABLE, message="Failed to cancel backorder"
                )

        logger.info(f"Cancelled backorder {order_id}")
        return CancelResult(
            success=True,
            message="Backorder cancelled successfully",
            current_status=BackorderStatus.CANCELLED.value,
        )

    async def list_pending(self, key: Optional[StockKey] = None) -> List[BackorderInfo]:
        """Pending backorders in FIFO order, optionally only those with a line for ``key``."""
        query = select(BackorderOrder).where(BackorderOrder.status == BackorderStatus.PENDING.value)

        if key is not None:
            query = query.where(
                BackorderOrder.items.any(
                    (BackorderLineItem.product_id == key.product_id)
                    & (BackorderLineItem.variant_key == key.variant_key)
                )
            )

        async with self.session_factory() as session:
            result = await session.execute(query.order_by(BackorderOrder.backorder_priority))
            return [to_backorder_info(order) for order in result.scalars().all()]

    async def get_status(self, order_id: UUID) -> Optional[BackorderInfo]:
        async with self.session_factory() as session:
            order = await session.get(BackorderOrder, order_id)
            return to_backorder_info(order) if order else None

    async def list_for_customer(self, user_id: str) -> List[BackorderInfo]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BackorderOrder)
                .where(BackorderOrder.user_id == user_id)
                .order_by(BackorderOrder.created_at.desc(), BackorderOrder.backorder_priority.desc())
            )
            return [to_backorder_info(order) for order in result.scalars().all()]

    async def fulfill(self, key: StockKey, quantity: int) -> FulfillmentResult:
        """
        Allocate ``quantity`` newly available units of ``key`` in strict FIFO order.

        Walks pending backorders by ascending priority. An order whose demand
        for the key fits in what is left moves to processing; the first
        order that does not fit stops the walk. Lines are never split and
        later, smaller orders never jump the queue.
        """
        pending = await self.list_pending(key)

        remaining = quantity
        fulfilled: List[UUID] = []

        for order in pending:
            if remaining <= 0:
                break

            needed = demand_for(order, key)
            if needed == 0:
                continue
            if needed > remaining:
                logger.info(
                    f"Backorder {order.id} needs {needed} of {key}, only {remaining} left; stopping"
                )
                break

            try:
                outcome = await self._allocate(order, key, needed)
            except SQLAlchemyError as e:
                logger.error(f"Error allocating backorder {order.id}: {str(e)}", exc_info=True)
                return FulfillmentResult(
                    success=False,
                    error=ErrorKind.UNAVAILABLE,
                    message=f"Allocation interrupted after {len(fulfilled)} backorders",
                    fulfilled_orders=fulfilled,
                    remaining_quantity=remaining,
                )

            if outcome == _Allocation.SKIPPED:
                continue
            if outcome == _Allocation.BLOCKED:
                logger.info(f"Stock for backorder {order.id} no longer available; stopping")
                # The head of the queue is still waiting, so nothing is left to offer
                remaining = 0
                break

            fulfilled.append(order.id)
            remaining -= needed

        logger.info(f"Fulfilled {len(fulfilled)} backorders for {key}, {remaining} units remaining")
        return FulfillmentResult(
            success=True,
            message=f"Fulfilled {len(fulfilled)} backorders",
            fulfilled_orders=fulfilled,
            remaining_quantity=remaining,
        )

    async def _allocate(self, order: BackorderInfo, key: StockKey, needed: int) -> _Allocation:
        """Move one order to processing and, if configured, take its units out of stock."""
        demands: Dict[StockKey, int] = {key: needed}
        if self.deduct_fulfilled_stock:
            # Every line of the order is allocated together
            for line in order.items:
                if line.key != key:
                    demands[line.key] = demands.get(line.key, 0) + line.quantity

        async with self.session_factory() as session:
            result = await session.execute(
                update(BackorderOrder)
                .where(
                    BackorderOrder.id == order.id,
                    BackorderOrder.status == BackorderStatus.PENDING.value,
                )
                .values(status=BackorderStatus.PROCESSING.value, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                logger.info(f"Backorder {order.id} left pending state during allocation; skipping")
                return _Allocation.SKIPPED

            if self.deduct_fulfilled_stock:
                for demand_key, demand in demands.items():
                    result = await session.execute(
                        update(StockRecord)
                        .where(
                            StockRecord.product_id == demand_key.product_id,
                            StockRecord.variant_key == demand_key.variant_key,
                            StockRecord.quantity_available >= demand,
                        )
                        .values(quantity_available=StockRecord.quantity_available - demand)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        await session.rollback()
                        return _Allocation.BLOCKED

            await save_event_to_outbox(session, BackorderFulfilledEvent(
                aggregate_id=str(order.id),
                order_id=order.id,
                product_id=key.product_id,
                variant_id=key.variant_id,
                quantity=needed,
                backorder_priority=order.backorder_priority,
            ))
            await session.commit()

        logger.info(f"Backorder {order.id} (priority {order.backorder_priority}) moved to processing")
        return _Allocation.ALLOCATED

    async def allocation_summary(self) -> AllocationSummary:
        """Outstanding pending demand per key against current stock."""
        pending = await self.list_pending()

        quantities: Dict[StockKey, int] = defaultdict(int)
        names: Dict[StockKey, str] = {}
        for order in pending:
            for line in order.items:
                quantities[line.key] += line.quantity
                names[line.key] = line.product_name

        allocations = []
        async with self.session_factory() as session:
            for key, pending_quantity in quantities.items():
                record = await get_stock_record(session, key)
                allocations.append(PendingAllocation(
                    product_id=key.product_id,
                    product_name=names[key],
                    variant_id=key.variant_id,
                    pending_quantity=pending_quantity,
                    available_stock=record.quantity_available if record else 0,
                ))

        return AllocationSummary(
            total_pending_backorders=len(pending),
            total_pending_quantity=sum(quantities.values()),
            pending_allocation=allocations,
        )

