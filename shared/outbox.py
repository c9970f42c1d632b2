"""
Transactional outbox for the restock engine's domain events.

Components call save_event_to_outbox inside the transaction that changes
stock, backorders, schedules or subscriptions. OutboxPublisher forwards
committed rows to RabbitMQ in creation order and marks them published, so
a rolled-back reservation or allocation never announces itself.
"""
import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, Uuid, select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import Base
from .events import BaseEvent, deserialize_event
from .message_broker import MessageBroker

logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    """Status of outbox messages."""
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class OutboxMessage(Base):
    """One domain event waiting to be (or already) published."""

    __tablename__ = "outbox"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(Uuid, nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    aggregate_id = Column(String(255), nullable=False)  # stock key, order id or subscription id
    event_data = Column(Text, nullable=False)
    status = Column(String(20), default=OutboxStatus.PENDING.value, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    published_at = Column(DateTime, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_outbox_status_created", "status", "created_at"),
        Index("ix_outbox_aggregate_id", "aggregate_id"),
    )


class OutboxPublisher:
    """Background task that forwards committed outbox rows to the broker."""

    def __init__(
        self,
        session_factory,
        message_broker: MessageBroker,
        poll_interval: float = 1.0,
        batch_size: int = 100,
        max_attempts: int = 3
    ):
        """
        Initialize outbox publisher.

        Args:
            session_factory: Async session factory for database access
            message_broker: Broker the events are published to
            poll_interval: Seconds to wait when the outbox has been drained
            batch_size: Rows claimed per poll
            max_attempts: Publish attempts before a row is marked failed
        """
        self.session_factory = session_factory
        self.message_broker = message_broker
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the outbox publisher."""
        if self._running:
            logger.warning("Outbox publisher already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("Outbox publisher started")

    async def stop(self):
        """Stop the outbox publisher."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Outbox publisher stopped")

    async def _run(self):
        while self._running:
            claimed = 0
            try:
                claimed = await self.publish_pending_messages()
            except Exception as e:
                logger.error(f"Error in outbox publisher: {str(e)}", exc_info=True)

            # A full batch means more rows are probably waiting
            if claimed < self.batch_size:
                await asyncio.sleep(self.poll_interval)

    async def publish_pending_messages(self) -> int:
        """
        Claim one batch of pending rows and publish it.

        Rows are locked with SKIP LOCKED where the database supports it, so
        several service instances can run a publisher side by side.

        Returns:
            Number of rows claimed (published or not)
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.PENDING.value)
                .order_by(OutboxMessage.created_at, OutboxMessage.id)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            )
            messages = result.scalars().all()

            if not messages:
                return 0

            published = 0
            for message in messages:
                if await self._publish(message):
                    published += 1

            await session.commit()

        logger.info(f"Published {published} of {len(messages)} outbox events")
        return len(messages)

    async def _publish(self, message: OutboxMessage) -> bool:
        try:
            event = deserialize_event(json.loads(message.event_data))
            await self.message_broker.publish_event(event)
        except Exception as e:
            message.retry_count += 1
            message.error_message = str(e)

            if message.retry_count >= self.max_attempts:
                message.status = OutboxStatus.FAILED.value
                logger.error(
                    f"Giving up on {message.event_type} event {message.event_id} "
                    f"after {message.retry_count} attempts: {str(e)}"
                )
            else:
                logger.warning(f"Publishing {message.event_type} event {message.event_id} failed: {str(e)}")
            return False

        message.status = OutboxStatus.PUBLISHED.value
        message.published_at = datetime.utcnow()
        return True


async def save_event_to_outbox(session: AsyncSession, event: BaseEvent):
    """
    Stage an event in the caller's transaction.

    Nothing is written until the caller commits; a rollback discards the
    event together with the change it describes.
    """
    session.add(OutboxMessage(
        event_id=event.event_id,
        event_type=event.event_type.value,
        aggregate_id=event.aggregate_id,
        event_data=json.dumps(event.model_dump(mode='json')),
        status=OutboxStatus.PENDING.value,
        created_at=datetime.utcnow(),
    ))

    logger.debug(f"Staged {event.event_type.value} event {event.event_id} in outbox")
