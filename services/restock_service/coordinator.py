"""
Inventory reconciliation.

Reacts to a stock increase in a fixed order:
1. Clear the key's expected restock date
2. Allocate the new units to pending backorders (strict FIFO)
3. Tell each allocated backorder holder their order is on its way
4. Tell waitlist subscribers about whatever was left over

Stock has already physically changed when this runs, so every step is
isolated: a failure is logged and the remaining steps still run.
Allocation always completes before any waitlist message goes out, so a
unit taken by a backorder is never advertised as purchasable.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from shared.events import ReconciliationCompletedEvent, StockReceivedEvent
from shared.outbox import OutboxMessage, OutboxStatus, save_event_to_outbox

from .backorders import BackorderLedger
from .models import BackorderOrder, BackorderStatus, StockRecord, WaitlistSubscription
from .notifications import NotificationDispatcher
from .restock_scheduler import RestockScheduler
from .schemas import (
    DelayNotificationData,
    ErrorKind,
    ExpiryResult,
    FulfillmentNotificationData,
    InventoryIncrease,
    MonitoringStats,
    ReconciliationSummary,
    RestockNotificationData,
    StockKey,
    StockUpdateResult,
)
from .stock_ledger import StockLedger
from .waitlist import WaitlistRegistry

logger = logging.getLogger(__name__)


class InventoryReconciliationCoordinator:
    """Allocates stock increases to backorders, then notifies the waitlist."""

    def __init__(
        self,
        session_factory,
        stock_ledger: StockLedger,
        waitlist: WaitlistRegistry,
        backorders: BackorderLedger,
        scheduler: RestockScheduler,
        dispatcher: NotificationDispatcher,
    ):
        self.session_factory = session_factory
        self.stock_ledger = stock_ledger
        self.waitlist = waitlist
        self.backorders = backorders
        self.scheduler = scheduler
        self.dispatcher = dispatcher

    async def on_inventory_increase(self, change: InventoryIncrease) -> ReconciliationSummary:
        """Reconcile one before/after pair; decreases are ignored."""
        return await self.reconcile_batch([change])

    async def reconcile_batch(self, changes: List[InventoryIncrease]) -> ReconciliationSummary:
        """
        Reconcile several increases, then notify the waitlist once.

        Waitlist messages are grouped by recipient across the whole batch,
        so a subscriber waiting on several restocked keys receives a single
        consolidated message.
        """
        remaining: Dict[StockKey, int] = defaultdict(int)
        restocked: Dict[StockKey, int] = defaultdict(int)
        fulfilled_orders: List[UUID] = []
        fulfillment_sent = 0

        for change in changes:
            if change.new_stock <= change.previous_stock:
                continue

            delta = change.new_stock - change.previous_stock
            key = change.key
            logger.info(f"Reconciling {change.update_type} increase of {delta} for {key}")

            await self._clear_schedule(key)
            orders, left = await self._allocate(key, delta)
            fulfillment_sent += await self._notify_fulfilled(orders)

            fulfilled_orders.extend(orders)
            remaining[key] += left
            restocked[key] += delta

        if not restocked:
            return ReconciliationSummary(success=True, message="No stock increase to reconcile")

        notifications_sent = await self._notify_waitlist(remaining)

        for key, quantity in restocked.items():
            await self._record_completion(key, quantity, remaining[key], fulfilled_orders)

        summary = ReconciliationSummary(
            success=True,
            message=(
                f"Fulfilled {len(fulfilled_orders)} backorders, "
                f"sent {notifications_sent} waitlist notifications"
            ),
            backorders_fulfilled=len(fulfilled_orders),
            notifications_sent=notifications_sent,
            fulfillment_notifications_sent=fulfillment_sent,
            remaining_quantity=sum(remaining.values()),
            fulfilled_orders=fulfilled_orders,
        )
        logger.info(f"Reconciliation finished: {summary.message}")
        return summary

    async def _clear_schedule(self, key: StockKey):
        try:
            result = await self.scheduler.clear(key)
            if not result.success:
                logger.warning(f"Could not clear restock date for {key}: {result.message}")
        except Exception as e:
            logger.error(f"Error clearing restock date for {key}: {str(e)}", exc_info=True)

    async def _allocate(self, key: StockKey, quantity: int) -> Tuple[List[UUID], int]:
        try:
            result = await self.backorders.fulfill(key, quantity)
        except Exception as e:
            logger.error(f"Error allocating {key} to backorders: {str(e)}", exc_info=True)
            # Nothing is known to be allocated; do not advertise the units either
            return [], 0

        if not result.success:
            logger.warning(f"Backorder allocation for {key} incomplete: {result.message}")
            if not result.fulfilled_orders:
                return [], 0
        return result.fulfilled_orders, result.remaining_quantity

    async def _notify_fulfilled(self, order_ids: List[UUID]) -> int:
        sent = 0
        for order_id in order_ids:
            try:
                order = await self.backorders.get_status(order_id)
                if not order or not order.customer_email:
                    logger.warning(f"No contact address for backorder {order_id}; skipping fulfillment email")
                    continue

                result = await self.dispatcher.send_fulfillment(FulfillmentNotificationData(
                    email=order.customer_email,
                    order_number=order.order_number,
                ))
                if result.success:
                    sent += 1
            except Exception as e:
                logger.error(f"Error notifying backorder {order_id}: {str(e)}", exc_info=True)
        return sent

    async def _notify_waitlist(self, remaining: Dict[StockKey, int]) -> int:
        grouped: Dict[str, List[Tuple[UUID, RestockNotificationData]]] = defaultdict(list)

        for key, quantity in remaining.items():
            if quantity <= 0:
                logger.info(f"All new units of {key} went to backorders; waitlist not notified")
                continue

            try:
                subscribers = await self.waitlist.list_for_product(key)
                if not subscribers:
                    continue

                base = await self.dispatcher.build_restock_data(subscribers[0].email, key)
                if not base:
                    logger.warning(f"Product {key.product_id} vanished before notifying its waitlist")
                    continue

                for subscriber in subscribers:
                    grouped[subscriber.email].append((subscriber.id, base.model_copy(update={
                        "email": subscriber.email,
                        "unsubscribe_url": self.dispatcher.unsubscribe_url(subscriber.email, key),
                    })))
            except Exception as e:
                logger.error(f"Error loading waitlist for {key}: {str(e)}", exc_info=True)

        sent = 0
        for email, entries in grouped.items():
            try:
                if len(entries) == 1:
                    subscription_id, data = entries[0]
                    result = await self.dispatcher.send_restock(subscription_id, data)
                else:
                    result = await self.dispatcher.send_consolidated(email, [data for _, data in entries])

                if result.success:
                    sent += 1
                else:
                    logger.warning(f"Waitlist notification to {email} failed: {result.message}")
            except Exception as e:
                logger.error(f"Error notifying {email}: {str(e)}", exc_info=True)
        return sent

    async def _record_completion(self, key: StockKey, restocked: int, remaining: int,
                                 fulfilled_orders: List[UUID]):
        try:
            async with self.session_factory() as session:
                await save_event_to_outbox(session, ReconciliationCompletedEvent(
                    aggregate_id=str(key),
                    product_id=key.product_id,
                    variant_id=key.variant_id,
                    restocked_quantity=restocked,
                    backorders_fulfilled=len(fulfilled_orders),
                    remaining_quantity=remaining,
                ))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error recording reconciliation of {key}: {str(e)}", exc_info=True)

    async def set_stock(self, key: StockKey, new_value: int) -> StockUpdateResult:
        """Admin overwrite followed by reconciliation of any increase."""
        change = await self.stock_ledger.set_stock(key, new_value)
        if not change.success:
            return StockUpdateResult(success=False, error=change.error, message=change.message)

        summary = await self.on_inventory_increase(InventoryIncrease(
            product_id=key.product_id,
            variant_id=key.variant_id,
            previous_stock=change.previous_stock,
            new_stock=change.new_stock,
            update_type="manual",
        ))

        return StockUpdateResult(
            success=True,
            message="Stock updated successfully",
            previous_stock=change.previous_stock,
            new_stock=change.new_stock,
            backorders_fulfilled=summary.backorders_fulfilled,
            notifications_sent=summary.notifications_sent,
            fulfillment_notifications_sent=summary.fulfillment_notifications_sent,
            remaining_quantity=summary.remaining_quantity,
            fulfilled_orders=summary.fulfilled_orders,
        )

    async def trigger_restock(self, key: StockKey) -> ReconciliationSummary:
        """Re-run reconciliation treating the whole current stock as new arrivals."""
        level = await self.stock_ledger.get_stock(key)
        if not level:
            return ReconciliationSummary(
                success=False, error=ErrorKind.NOT_FOUND, message=f"Stock record not found for {key}"
            )
        if level.quantity_available <= 0:
            return ReconciliationSummary(success=True, message="No stock available to reconcile")

        return await self.on_inventory_increase(InventoryIncrease(
            product_id=key.product_id,
            variant_id=key.variant_id,
            previous_stock=0,
            new_stock=level.quantity_available,
            update_type="restock",
        ))

    async def handle_stock_received(self, event: StockReceivedEvent):
        """
        Book a warehouse delivery and reconcile it.

        Raises on a failed booking so the broker retries and eventually
        dead-letters the message.
        """
        key = StockKey(product_id=event.product_id, variant_id=event.variant_id)
        change = await self.stock_ledger.increment(key, event.quantity)
        if not change.success:
            raise RuntimeError(f"Could not book received stock for {key}: {change.message}")

        await self.on_inventory_increase(InventoryIncrease(
            product_id=key.product_id,
            variant_id=key.variant_id,
            previous_stock=change.previous_stock,
            new_stock=change.new_stock,
            update_type="automatic",
        ))

    async def process_expired_restocks(self) -> ExpiryResult:
        """Sweep missed restock dates and warn the backorder holders waiting on them."""
        sweep = await self.scheduler.sweep_expired()
        if not sweep.success:
            return ExpiryResult(success=False, error=sweep.error, message=sweep.message)

        sent = 0
        for expired in sweep.expired:
            try:
                pending = await self.backorders.list_pending(expired.key)
            except SQLAlchemyError as e:
                logger.error(f"Error listing backorders for {expired.key}: {str(e)}", exc_info=True)
                continue

            for order in pending:
                if not order.customer_email:
                    continue
                line = next(line for line in order.items if line.key == expired.key)
                result = await self.dispatcher.send_delay(DelayNotificationData(
                    email=order.customer_email,
                    product_name=line.product_name,
                    order_number=order.order_number,
                    original_date=expired.missed_date,
                    cancellation_url=self.dispatcher.cancellation_url(order.id),
                ))
                if result.success:
                    sent += 1

        logger.info(f"Processed {sweep.expired_count} expired restock dates, sent {sent} delay notifications")
        return ExpiryResult(
            success=True,
            message=f"Processed {sweep.expired_count} expired restock dates",
            expired_count=sweep.expired_count,
            notifications_sent=sent,
        )

    async def monitoring_stats(self) -> MonitoringStats:
        async with self.session_factory() as session:
            total_backorders = await session.scalar(select(func.count(BackorderOrder.id)))
            pending_backorders = await session.scalar(
                select(func.count(BackorderOrder.id)).where(
                    BackorderOrder.status == BackorderStatus.PENDING.value
                )
            )
            total_subscriptions = await session.scalar(select(func.count(WaitlistSubscription.id)))
            active_subscriptions = await session.scalar(
                select(func.count(WaitlistSubscription.id)).where(WaitlistSubscription.is_active.is_(True))
            )
            out_of_stock = await session.scalar(
                select(func.count(StockRecord.id)).where(
                    StockRecord.is_active.is_(True),
                    StockRecord.quantity_available <= 0,
                )
            )
            pending_events = await session.scalar(
                select(func.count(OutboxMessage.id)).where(OutboxMessage.status == OutboxStatus.PENDING.value)
            )

        return MonitoringStats(
            total_backorders=total_backorders or 0,
            pending_backorders=pending_backorders or 0,
            total_waitlist_subscriptions=total_subscriptions or 0,
            active_waitlist_subscriptions=active_subscriptions or 0,
            out_of_stock_records=out_of_stock or 0,
            pending_outbox_events=pending_events or 0,
        )
