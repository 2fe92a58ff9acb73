"""
Post-commit Outbox

Order transitions write an ``OutboxEvent`` in the same transaction as the
state change. After the transaction commits, ``OutboxDispatcher`` claims
pending events and hands them to a publisher:

    - CeleryPublisher: queues ``place_order_call`` / ``sync_order_to_pos``
    - InlinePublisher: awaits the service call in-process (development, tests)

A publisher failure releases the claim so the periodic ``drain_outbox``
task can try again; it never reaches the request that created the order.
"""

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update

from biteclub.database import Database
from biteclub.models import OutboxEvent, OutboxKind, utc_now

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


class BasePublisher(ABC):
    """Delivers one outbox event to whatever performs the side effect."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def publish(self, event: OutboxEvent) -> None:
        pass


class InlinePublisher(BasePublisher):
    """Runs handlers in the current event loop."""

    def __init__(self, handlers: dict[OutboxKind, Callable[[str], Awaitable]]):
        self.handlers = handlers

    @property
    def name(self) -> str:
        return "inline"

    async def publish(self, event: OutboxEvent) -> None:
        handler = self.handlers.get(event.kind)
        if handler is None:
            logger.warning(f"Outbox: no inline handler for {event.kind.value}")
            return
        await handler(event.order_id)


class CeleryPublisher(BasePublisher):
    """Queues the matching Celery task for each event."""

    @property
    def name(self) -> str:
        return "celery"

    async def publish(self, event: OutboxEvent) -> None:
        from biteclub.tasks import place_order_call, sync_order_to_pos

        tasks = {
            OutboxKind.ORDER_CREATED: place_order_call,
            OutboxKind.ORDER_CONFIRMED: sync_order_to_pos,
        }
        tasks[event.kind].delay(event.order_id)


class OutboxDispatcher:
    """Claims undelivered events and publishes them after commit."""

    def __init__(
        self,
        database: Database,
        publisher: BasePublisher,
        batch_size: int = 50,
    ):
        self.database = database
        self.publisher = publisher
        self.batch_size = batch_size

    async def dispatch_pending(self, order_id: Optional[str] = None) -> int:
        """
        Publish every undelivered event (optionally only one order's).

        Returns:
            int: Number of events delivered
        """
        async with self.database.session() as session:
            query = (
                select(OutboxEvent)
                .where(
                    OutboxEvent.dispatched_at.is_(None),
                    OutboxEvent.attempts < MAX_ATTEMPTS,
                )
                .order_by(OutboxEvent.id)
                .limit(self.batch_size)
            )
            if order_id is not None:
                query = query.where(OutboxEvent.order_id == order_id)
            events = list((await session.execute(query)).scalars().all())

        delivered = 0
        for event in events:
            if not await self._claim(event.id):
                continue
            try:
                await self.publisher.publish(event)
            except Exception as e:
                logger.exception(
                    f"Outbox: {event.kind.value} for order {event.order_id} failed: {e}"
                )
                await self._release(event.id, str(e))
                continue
            delivered += 1
            logger.info(
                f"Outbox: {event.kind.value} for order {event.order_id} "
                f"delivered via {self.publisher.name}"
            )
        return delivered

    async def _claim(self, event_id: int) -> bool:
        async with self.database.transaction() as session:
            result = await session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id, OutboxEvent.dispatched_at.is_(None))
                .values(dispatched_at=utc_now(), attempts=OutboxEvent.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def _release(self, event_id: int, error: str) -> None:
        async with self.database.transaction() as session:
            await session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id)
                .values(dispatched_at=None, last_error=error[:1000])
                .execution_options(synchronize_session=False)
            )
