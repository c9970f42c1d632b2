"""Restock, delay and fulfillment messages plus their funnel tracking."""
import hashlib
import hmac
import logging
import time
from html import escape
from typing import List, Optional, Protocol, Sequence
from urllib.parse import quote, urlencode
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from shared.config import Settings
from shared.events import NotificationFailedEvent, NotificationSentEvent
from shared.outbox import save_event_to_outbox

from .models import NotificationType, Product, RestockNotification, WaitlistSubscription
from .schemas import (
    DelayNotificationData,
    ErrorKind,
    FulfillmentNotificationData,
    NotificationAnalytics,
    NotificationResult,
    OperationResult,
    RestockNotificationData,
    StockKey,
)
from .stock_ledger import get_stock_record
from .waitlist import normalize_email

logger = logging.getLogger(__name__)

TRACKING_ACTIONS = ("open", "click", "purchase")


class EmailTransport(Protocol):
    """Outbound email capability the dispatcher depends on."""

    async def send(self, recipient: str, subject: str, html: str, text: str) -> bool:
        ...


class LoggingEmailTransport:
    """
    Default transport: writes the message to the log and reports delivery.

    In a real deployment this would be SES, SendGrid or an SMTP relay.
    """

    def __init__(self, from_address: str, from_name: str):
        self.from_address = from_address
        self.from_name = from_name

    async def send(self, recipient: str, subject: str, html: str, text: str) -> bool:
        logger.info(f"[EMAIL] From: {self.from_name} <{self.from_address}>")
        logger.info(f"[EMAIL] To: {recipient}")
        logger.info(f"[EMAIL] Subject: {subject}")
        logger.info(f"[EMAIL] Body: {text}")
        logger.info("-" * 60)
        return True


class EmailTemplate(BaseModel):
    """Rendered message."""
    notification_type: NotificationType
    subject: str
    html_content: str
    text_content: str


# Reservation tokens
def make_reservation_token(secret: str, subscription_id: UUID, window_minutes: int,
                           now: Optional[float] = None) -> str:
    """
    Sign an advisory purchase-link hold for one subscription.

    The token only proves the link was issued by us and is still inside
    its window; no stock is held for it.
    """
    expires_at = int((now if now is not None else time.time()) + window_minutes * 60)
    payload = f"{subscription_id}.{expires_at}"
    signature = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return f"{payload}.{signature}"


def verify_reservation_token(secret: str, token: str, now: Optional[float] = None) -> Optional[UUID]:
    """Subscription id of a valid, unexpired token, else None."""
    try:
        subscription_id, expires_at, signature = token.split(".")
        expected = hmac.new(
            secret.encode(), f"{subscription_id}.{expires_at}".encode(), hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(signature, expected):
            return None
        if int(expires_at) < (now if now is not None else time.time()):
            return None
        return UUID(subscription_id)
    except ValueError:
        return None


# Templates
def _with_params(url: str, **params) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


def _price(amount: float, currency: str) -> str:
    return f"{amount:,.2f} {currency}"


def _display_name(data: RestockNotificationData) -> str:
    if data.variant_sku:
        return f"{data.product_name} ({data.variant_sku})"
    return data.product_name


def restock_template(data: RestockNotificationData, purchase_url: str) -> EmailTemplate:
    name = _display_name(data)
    price = _price(data.current_price, data.currency)

    html = f"""
    <h2>Good news!</h2>
    <p><strong>{escape(name)}</strong>, which you asked us to watch, is available again.</p>
    <p>Price: {escape(price)}</p>
    <p><a href="{escape(purchase_url)}">Order now</a> before it sells out again.</p>
    <p><small><a href="{escape(data.unsubscribe_url)}">Unsubscribe from this notification</a></small></p>
    """
    text = (
        f"Good news! {name} is available again.\n\n"
        f"Price: {price}\n"
        f"Order now: {purchase_url}\n\n"
        f"Unsubscribe: {data.unsubscribe_url}\n"
    )

    return EmailTemplate(
        notification_type=NotificationType.RESTOCK,
        subject=f"Back in stock: {name}",
        html_content=html,
        text_content=text,
    )


def consolidated_template(items: Sequence[RestockNotificationData],
                          purchase_urls: Sequence[str]) -> EmailTemplate:
    rows_html = "".join(
        f'<li><a href="{escape(url)}">{escape(_display_name(item))}</a>'
        f" - {escape(_price(item.current_price, item.currency))}"
        f' (<a href="{escape(item.unsubscribe_url)}">unsubscribe</a>)</li>'
        for item, url in zip(items, purchase_urls)
    )
    rows_text = "\n".join(
        f"- {_display_name(item)} - {_price(item.current_price, item.currency)}: {url}"
        for item, url in zip(items, purchase_urls)
    )

    html = f"""
    <h2>Good news!</h2>
    <p>{len(items)} items you are waiting for are available again:</p>
    <ul>{rows_html}</ul>
    """
    text = f"Good news! {len(items)} items you are waiting for are available again:\n\n{rows_text}\n"

    return EmailTemplate(
        notification_type=NotificationType.CONSOLIDATED,
        subject=f"{len(items)} items on your waitlist are back in stock",
        html_content=html,
        text_content=text,
    )


def delay_template(data: DelayNotificationData) -> EmailTemplate:
    original = data.original_date.strftime("%Y-%m-%d") if data.original_date else "unknown"
    new_date = data.new_date.strftime("%Y-%m-%d") if data.new_date else "to be confirmed"

    html = f"""
    <h2>Your backorder {escape(data.order_number)} is delayed</h2>
    <p>The restock of <strong>{escape(data.product_name)}</strong> expected on {original}
    did not arrive. New expected date: {new_date}.</p>
    <p>Your order keeps its place in the queue. If you no longer want to wait you can
    <a href="{escape(data.cancellation_url)}">cancel the backorder</a>.</p>
    """
    text = (
        f"Your backorder {data.order_number} is delayed.\n\n"
        f"The restock of {data.product_name} expected on {original} did not arrive. "
        f"New expected date: {new_date}.\n\n"
        f"Cancel the backorder: {data.cancellation_url}\n"
    )

    return EmailTemplate(
        notification_type=NotificationType.DELAY,
        subject=f"Delay on backorder {data.order_number}",
        html_content=html,
        text_content=text,
    )


def fulfillment_template(data: FulfillmentNotificationData) -> EmailTemplate:
    delivery = data.estimated_delivery.strftime("%Y-%m-%d") if data.estimated_delivery else "TBD"
    tracking_html = (
        f"<p>Tracking number: <strong>{escape(data.tracking_number)}</strong></p>"
        if data.tracking_number else ""
    )
    tracking_text = f"Tracking number: {data.tracking_number}\n" if data.tracking_number else ""

    html = f"""
    <h2>Your backorder is on its way!</h2>
    <p>The items of order {escape(data.order_number)} are back in stock and your order is being prepared.</p>
    {tracking_html}
    <p>Estimated delivery: {delivery}</p>
    """
    text = (
        f"Your backorder {data.order_number} is on its way!\n\n"
        f"{tracking_text}"
        f"Estimated delivery: {delivery}\n"
    )

    return EmailTemplate(
        notification_type=NotificationType.FULFILLMENT,
        subject=f"Your backorder {data.order_number} is being fulfilled",
        html_content=html,
        text_content=text,
    )


class NotificationDispatcher:
    """Render, send and track customer messages."""

    def __init__(self, session_factory, transport: EmailTransport, settings: Settings):
        self.session_factory = session_factory
        self.transport = transport
        self.settings = settings

    # Links
    def product_url(self, key: StockKey) -> str:
        url = f"{self.settings.public_base_url}/products/{quote(key.product_id)}"
        if key.variant_id:
            url = _with_params(url, variant=key.variant_id)
        return url

    def unsubscribe_url(self, email: str, key: StockKey) -> str:
        params = {"email": email, "productId": key.product_id}
        if key.variant_id:
            params["variantId"] = key.variant_id
        return f"{self.settings.public_base_url}/waitlist/unsubscribe?{urlencode(params)}"

    def cancellation_url(self, order_id: UUID) -> str:
        return f"{self.settings.public_base_url}/orders/{order_id}/cancel"

    def make_reservation_token(self, subscription_id: UUID) -> str:
        return make_reservation_token(
            self.settings.reservation_secret, subscription_id, self.settings.reservation_window_minutes
        )

    def verify_reservation_token(self, token: str) -> Optional[UUID]:
        return verify_reservation_token(self.settings.reservation_secret, token)

    def _tracked_purchase_url(self, data: RestockNotificationData,
                              subscription_id: UUID, notification_id: UUID) -> str:
        return _with_params(
            data.purchase_url,
            reservation=self.make_reservation_token(subscription_id),
            notification=str(notification_id),
        )

    async def build_restock_data(self, email: str, key: StockKey) -> Optional[RestockNotificationData]:
        """Message content for a key from the current catalog and stock record."""
        async with self.session_factory() as session:
            product = await session.get(Product, key.product_id)
            if not product:
                return None
            record = await get_stock_record(session, key)

        price = product.sale_price or product.price
        if record and key.variant_id:
            price = record.sale_price or record.price or price

        return RestockNotificationData(
            email=email,
            product_id=key.product_id,
            product_name=product.name,
            product_name_en=product.name_en,
            variant_id=key.variant_id,
            variant_sku=record.sku if record and key.variant_id else None,
            current_price=price,
            currency=self.settings.currency,
            purchase_url=self.product_url(key),
            unsubscribe_url=self.unsubscribe_url(email, key),
        )

    async def _deliver(self, recipient: str, template: EmailTemplate) -> bool:
        try:
            return await self.transport.send(
                recipient, template.subject, template.html_content, template.text_content
            )
        except Exception as e:
            logger.error(f"Email transport error for {recipient}: {str(e)}", exc_info=True)
            return False

    async def _record_failure(self, recipient: str, template: EmailTemplate) -> NotificationResult:
        logger.warning(f"Failed to deliver {template.notification_type.value} notification to {recipient}")
        try:
            async with self.session_factory() as session:
                await save_event_to_outbox(session, NotificationFailedEvent(
                    aggregate_id=recipient,
                    notification_type=template.notification_type.value,
                    recipient=recipient,
                    reason="Email transport did not accept the message",
                ))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error recording failed notification: {str(e)}", exc_info=True)

        return NotificationResult(
            success=False, error=ErrorKind.DELIVERY, message="Failed to send notification"
        )

    @staticmethod
    def _sent_event(recipient: str, template: EmailTemplate) -> NotificationSentEvent:
        return NotificationSentEvent(
            aggregate_id=recipient,
            notification_type=template.notification_type.value,
            recipient=recipient,
            subject=template.subject,
        )

    async def send_restock(self, subscription_id: UUID, data: RestockNotificationData) -> NotificationResult:
        """
        Send a single-item back-in-stock message to an active subscriber.

        The tracking record is only committed if the transport accepted
        the message.
        """
        async with self.session_factory() as session:
            try:
                subscription = await session.get(WaitlistSubscription, subscription_id)
                if not subscription or not subscription.is_active:
                    return NotificationResult(
                        success=False,
                        error=ErrorKind.NOT_FOUND,
                        message="Subscription not found or inactive",
                    )

                recipient = subscription.email
                notification = RestockNotification(
                    subscription_id=subscription.id,
                    notification_type=NotificationType.RESTOCK.value,
                )
                session.add(notification)
                await session.flush()

                template = restock_template(
                    data, self._tracked_purchase_url(data, subscription.id, notification.id)
                )
                if not await self._deliver(recipient, template):
                    await session.rollback()
                    return await self._record_failure(recipient, template)

                await save_event_to_outbox(session, self._sent_event(recipient, template))
                await session.commit()

            except SQLAlchemyError as e:
                logger.error(f"Error sending restock notification: {str(e)}", exc_info=True)
                await session.rollback()
                return NotificationResult(
                    success=False, error=ErrorKind.UNAVAILABLE, message="Failed to send notification"
                )

        logger.info(f"Sent restock notification {notification.id} to {recipient}")
        return NotificationResult(
            success=True, message="Notification sent", notification_ids=[notification.id]
        )

    async def _find_active_subscription(self, session, email: str, key: StockKey):
        result = await session.execute(
            select(WaitlistSubscription).where(
                WaitlistSubscription.email == email,
                WaitlistSubscription.product_id == key.product_id,
                WaitlistSubscription.variant_key == key.variant_key,
                WaitlistSubscription.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def send_consolidated(self, email: str,
                                items: List[RestockNotificationData]) -> NotificationResult:
        """One message for every item newly available to the same recipient."""
        email = normalize_email(email)
        if not items:
            return NotificationResult(success=True, message="No notifications to send")

        async with self.session_factory() as session:
            try:
                included = []
                for item in items:
                    subscription = await self._find_active_subscription(session, email, item.key)
                    if not subscription:
                        logger.warning(f"No active subscription of {email} for {item.key}; leaving it out")
                        continue
                    included.append((item, subscription.id))

                if not included:
                    return NotificationResult(
                        success=False, error=ErrorKind.NOT_FOUND, message="Subscription not found"
                    )

                if len(included) == 1:
                    item, subscription_id = included[0]
                    await session.rollback()
                    return await self.send_restock(subscription_id, item)

                notifications = []
                for _, subscription_id in included:
                    notification = RestockNotification(
                        subscription_id=subscription_id,
                        notification_type=NotificationType.CONSOLIDATED.value,
                    )
                    session.add(notification)
                    notifications.append(notification)

                await session.flush()

                template = consolidated_template(
                    [item for item, _ in included],
                    [
                        self._tracked_purchase_url(item, subscription_id, notification.id)
                        for (item, subscription_id), notification in zip(included, notifications)
                    ],
                )
                if not await self._deliver(email, template):
                    await session.rollback()
                    return await self._record_failure(email, template)

                await save_event_to_outbox(session, self._sent_event(email, template))
                await session.commit()

            except SQLAlchemyError as e:
                logger.error(f"Error sending consolidated notification: {str(e)}", exc_info=True)
                await session.rollback()
                return NotificationResult(
                    success=False, error=ErrorKind.UNAVAILABLE, message="Failed to send notification"
                )

        logger.info(f"Sent consolidated notification for {len(notifications)} items to {email}")
        return NotificationResult(
            success=True,
            message=f"Consolidated notification sent for {len(notifications)} items",
            notification_ids=[notification.id for notification in notifications],
        )

    async def _send_untracked(self, recipient: str, template: EmailTemplate) -> NotificationResult:
        if not await self._deliver(recipient, template):
            return await self._record_failure(recipient, template)

        try:
            async with self.session_factory() as session:
                await save_event_to_outbox(session, self._sent_event(recipient, template))
                await session.commit()
        except SQLAlchemyError as e:
            # The message is already out; only the event is lost
            logger.error(f"Error recording sent notification: {str(e)}", exc_info=True)

        logger.info(f"Sent {template.notification_type.value} notification to {recipient}")
        return NotificationResult(success=True, message="Notification sent")

    async def send_delay(self, data: DelayNotificationData) -> NotificationResult:
        return await self._send_untracked(normalize_email(data.email), delay_template(data))

    async def send_fulfillment(self, data: FulfillmentNotificationData) -> NotificationResult:
        return await self._send_untracked(normalize_email(data.email), fulfillment_template(data))

    async def _track(self, notification_id: UUID, **flags) -> OperationResult:
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(RestockNotification)
                    .where(RestockNotification.id == notification_id)
                    .values(**flags)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return OperationResult(
                        success=False, error=ErrorKind.NOT_FOUND, message="Notification not found"
                    )
                await session.commit()

            except SQLAlchemyError as e:
                logger.error(f"Error tracking notification {notification_id}: {str(e)}", exc_info=True)
                await session.rollback()
                return OperationResult(
                    success=False, error=ErrorKind.UNAVAILABLE, message="Failed to track notification"
                )

        return OperationResult(success=True, message="Tracked")

    async def track_open(self, notification_id: UUID) -> OperationResult:
        return await self._track(notification_id, email_opened=True)

    async def track_click(self, notification_id: UUID) -> OperationResult:
        return await self._track(notification_id, link_clicked=True)

    async def track_purchase(self, notification_id: UUID) -> OperationResult:
        return await self._track(notification_id, purchase_completed=True)

    async def track(self, notification_id: UUID, action: str) -> OperationResult:
        if action not in TRACKING_ACTIONS:
            return OperationResult(
                success=False, error=ErrorKind.VALIDATION, message=f"Unknown tracking action {action}"
            )
        return await getattr(self, f"track_{action}")(notification_id)

    async def analytics(self) -> NotificationAnalytics:
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    func.count(RestockNotification.id),
                    func.count(RestockNotification.id).filter(RestockNotification.email_opened.is_(True)),
                    func.count(RestockNotification.id).filter(RestockNotification.link_clicked.is_(True)),
                    func.count(RestockNotification.id).filter(RestockNotification.purchase_completed.is_(True)),
                )
            )
            total, opened, clicked, purchased = result.one()

        def rate(count: int) -> float:
            if not total:
                return 0.0
            return round(min(100.0, max(0.0, count / total * 100)), 2)

        return NotificationAnalytics(
            total_sent=total,
            open_rate=rate(opened),
            click_rate=rate(clicked),
            conversion_rate=rate(purchased),
        )
