"""Durable waitlist subscriptions keyed by (email, product, variant)."""
import logging
import re
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shared.events import WaitlistSubscribedEvent, WaitlistUnsubscribedEvent
from shared.outbox import save_event_to_outbox

from .models import PRODUCT_SCOPE, Product, RestockSchedule, StockRecord, WaitlistSubscription
from .schemas import (
    CustomerSubscription,
    ErrorKind,
    OperationResult,
    ProductSubscriptionCount,
    StockKey,
    SubscribeOutcome,
    SubscribeResult,
    SubscriberInfo,
    VariantSubscriptionCount,
    WaitlistAnalytics,
)
from .stock_ledger import get_stock_record

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


class WaitlistRegistry:
    """Subscribe, unsubscribe and list waitlist subscriptions."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _find(self, session, email: str, key: StockKey) -> Optional[WaitlistSubscription]:
        result = await session.execute(
            select(WaitlistSubscription).where(
                WaitlistSubscription.email == email,
                WaitlistSubscription.product_id == key.product_id,
                WaitlistSubscription.variant_key == key.variant_key,
            )
        )
        return result.scalar_one_or_none()

    async def subscribe(
        self, email: str, key: StockKey, user_id: Optional[str] = None
    ) -> SubscribeResult:
        """
        Subscribe an email to a key.

        An active row for the triple rejects the call, an inactive row is
        reactivated in place, so the triple never has more than one row.
        """
        email = normalize_email(email)
        if not is_valid_email(email):
            return SubscribeResult(
                success=False, error=ErrorKind.VALIDATION, message="Invalid email format"
            )

        async with self.session_factory() as session:
            try:
                existing = await self._find(session, email, key)

                if existing and existing.is_active:
                    return SubscribeResult(
                        success=False,
                        error=ErrorKind.CONFLICT,
                        message="Already subscribed to this product waitlist",
                        subscription_id=existing.id,
                    )

                if existing:
                    subscription_id = existing.id
                    result = await session.execute(
                        update(WaitlistSubscription)
                        .where(
                            WaitlistSubscription.id == existing.id,
                            WaitlistSubscription.is_active.is_(False),
                        )
                        .values(
                            is_active=True,
                            user_id=existing.user_id or user_id,
                            updated_at=datetime.utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        await session.rollback()
                        return SubscribeResult(
                            success=False,
                            error=ErrorKind.CONFLICT,
                            message="Already subscribed to this product waitlist",
                            subscription_id=subscription_id,
                        )
                    await save_event_to_outbox(session, self._subscribed_event(existing, key, True))
                    await session.commit()

                    logger.info(f"Reactivated waitlist subscription {existing.id} for {key}")
                    return SubscribeResult(
                        success=True,
                        outcome=SubscribeOutcome.REACTIVATED,
                        subscription_id=existing.id,
                        message="Waitlist subscription reactivated",
                    )

                if not await session.get(Product, key.product_id):
                    return SubscribeResult(
                        success=False, error=ErrorKind.NOT_FOUND, message="Product not found"
                    )
                if key.variant_id and not await get_stock_record(session, key):
                    return SubscribeResult(
                        success=False, error=ErrorKind.NOT_FOUND, message="Product variant not found"
                    )

                subscription = WaitlistSubscription(
                    email=email,
                    product_id=key.product_id,
                    variant_key=key.variant_key,
                    user_id=user_id,
                    is_active=True,
                )
                session.add(subscription)
                await session.flush()
                await save_event_to_outbox(session, self._subscribed_event(subscription, key, False))
                await session.commit()

            except IntegrityError:
                # A concurrent subscribe inserted the same triple first
                await session.rollback()
                logger.info(f"Concurrent subscribe for {email} on {key} lost the insert race")
                return SubscribeResult(
                    success=False,
                    error=ErrorKind.CONFLICT,
                    message="Already subscribed to this product waitlist",
                )
            except SQLAlchemyError as e:
                logger.error(f"Error subscribing {email} to {key}: {str(e)}", exc_info=True)
                await session.rollback()
                return SubscribeResult(
                    success=False, error=ErrorKind.UNAVAILABLE, message="Failed to subscribe to waitlist"
                )

        logger.info(f"Created waitlist subscription {subscription.id} for {key}")
        return SubscribeResult(
            success=True,
            outcome=SubscribeOutcome.CREATED,
            subscription_id=subscription.id,
            message="Successfully subscribed to waitlist",
        )

    @staticmethod
    def _subscribed_event(subscription: WaitlistSubscription, key: StockKey, reactivated: bool):
        return WaitlistSubscribedEvent(
            aggregate_id=str(subscription.id),
            subscription_id=subscription.id,
            email=subscription.email,
            product_id=key.product_id,
            variant_id=key.variant_id,
            reactivated=reactivated,
        )

    async def unsubscribe(self, email: str, key: StockKey) -> OperationResult:
        """Soft-deactivate the subscription; rows are kept for analytics."""
        email = normalize_email(email)
        async with self.session_factory() as session:
            try:
                subscription = await self._find(session, email, key)
                if not subscription:
                    return OperationResult(
                        success=False, error=ErrorKind.NOT_FOUND, message="Subscription not found"
                    )

                subscription_id = subscription.id
                result = await session.execute(
                    update(WaitlistSubscription)
                    .where(WaitlistSubscription.id == subscription_id, WaitlistSubscription.is_active.is_(True))
                    .values(is_active=False, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    logger.info(f"Waitlist subscription {subscription_id} already inactive")
                    return OperationResult(success=True, message="Successfully unsubscribed from waitlist")

                await save_event_to_outbox(session, WaitlistUnsubscribedEvent(
                    aggregate_id=str(subscription_id),
                    subscription_id=subscription_id,
                    email=email,
                    product_id=key.product_id,
                    variant_id=key.variant_id,
                ))
                await session.commit()

            except SQLAlchemyError as e:
                logger.error(f"Error unsubscribing {email} from {key}: {str(e)}", exc_info=True)
                await session.rollback()
                return OperationResult(
                    success=False, error=ErrorKind.UNAVAILABLE, message="Failed to unsubscribe from waitlist"
                )

        logger.info(f"Deactivated waitlist subscription {subscription_id}")
        return OperationResult(success=True, message="Successfully unsubscribed from waitlist")

    async def is_subscribed(self, email: str, key: StockKey) -> bool:
        async with self.session_factory() as session:
            subscription = await self._find(session, normalize_email(email), key)
            return bool(subscription and subscription.is_active)

    async def list_for_customer(self, email: str) -> List[CustomerSubscription]:
        """Active subscriptions of an email, newest first, with expected restock dates."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(WaitlistSubscription, RestockSchedule.expected_date, StockRecord.sku)
                .outerjoin(
                    RestockSchedule,
                    (RestockSchedule.product_id == WaitlistSubscription.product_id)
                    & (RestockSchedule.variant_key == WaitlistSubscription.variant_key),
                )
                .outerjoin(
                    StockRecord,
                    (StockRecord.product_id == WaitlistSubscription.product_id)
                    & (StockRecord.variant_key == WaitlistSubscription.variant_key),
                )
                .where(
                    WaitlistSubscription.email == normalize_email(email),
                    WaitlistSubscription.is_active.is_(True),
                )
                .order_by(WaitlistSubscription.created_at.desc())
            )

            subscriptions = []
            for subscription, expected_date, sku in result.all():
                key = StockKey.from_storage(subscription.product_id, subscription.variant_key)
                subscriptions.append(CustomerSubscription(
                    id=subscription.id,
                    product_id=key.product_id,
                    product_name=subscription.product.name,
                    product_name_en=subscription.product.name_en,
                    variant_id=key.variant_id,
                    variant_sku=sku if key.variant_id else None,
                    expected_restock_date=expected_date,
                    created_at=subscription.created_at,
                ))
            return subscriptions

    async def list_for_product(self, key: StockKey) -> List[SubscriberInfo]:
        """Active subscribers of a key, oldest first (notification order)."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(WaitlistSubscription)
                .where(
                    WaitlistSubscription.product_id == key.product_id,
                    WaitlistSubscription.variant_key == key.variant_key,
                    WaitlistSubscription.is_active.is_(True),
                )
                .order_by(WaitlistSubscription.created_at, WaitlistSubscription.id)
            )
            return [
                SubscriberInfo(
                    id=subscription.id,
                    email=subscription.email,
                    user_id=subscription.user_id,
                    created_at=subscription.created_at,
                )
                for subscription in result.scalars().all()
            ]

    async def analytics(self) -> WaitlistAnalytics:
        async with self.session_factory() as session:
            total = await session.scalar(select(func.count(WaitlistSubscription.id)))
            active = await session.scalar(
                select(func.count(WaitlistSubscription.id)).where(WaitlistSubscription.is_active.is_(True))
            )

            subscription_count = func.count(WaitlistSubscription.id).label("subscription_count")

            by_product = await session.execute(
                select(WaitlistSubscription.product_id, Product.name, subscription_count)
                .join(Product, Product.id == WaitlistSubscription.product_id)
                .where(WaitlistSubscription.is_active.is_(True))
                .group_by(WaitlistSubscription.product_id, Product.name)
                .order_by(subscription_count.desc())
            )

            by_variant = await session.execute(
                select(WaitlistSubscription.variant_key, StockRecord.sku, subscription_count)
                .outerjoin(
                    StockRecord,
                    (StockRecord.product_id == WaitlistSubscription.product_id)
                    & (StockRecord.variant_key == WaitlistSubscription.variant_key),
                )
                .where(
                    WaitlistSubscription.is_active.is_(True),
                    WaitlistSubscription.variant_key != PRODUCT_SCOPE,
                )
                .group_by(WaitlistSubscription.variant_key, StockRecord.sku)
                .order_by(subscription_count.desc())
            )

            return WaitlistAnalytics(
                total_subscriptions=total or 0,
                active_subscriptions=active or 0,
                subscriptions_by_product=[
                    ProductSubscriptionCount(product_id=product_id, product_name=name, count=count)
                    for product_id, name, count in by_product.all()
                ],
                subscriptions_by_variant=[
                    VariantSubscriptionCount(
                        variant_id=variant_key, variant_sku=sku or "Unknown Variant", count=count
                    )
                    for variant_key, sku, count in by_variant.all()
                ],
            )
