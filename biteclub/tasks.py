"""
Celery Tasks
Background delivery of outbox events: the restaurant call after an order
is created and the POS push after it is confirmed.

Each task opens its own database handle, runs the service coroutine to
completion and disposes the handle again.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from biteclub.celery_worker import celery_app
from biteclub.core.config import get_settings
from biteclub.database import Database
from biteclub.services import ServiceContainer
from biteclub.services.outbox import CeleryPublisher

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_with_services(work: Callable[[ServiceContainer], Awaitable[T]]) -> T:
    """Run ``work`` against a freshly wired container in this worker process."""

    async def runner() -> T:
        settings = get_settings()
        database = Database(settings.database_url, echo=settings.database_echo)
        try:
            services = ServiceContainer.build(database, settings, publisher=CeleryPublisher())
            return await work(services)
        finally:
            await database.dispose()

    return asyncio.run(runner())


@celery_app.task(bind=True)
def place_order_call(self, order_id: str) -> dict:
    """
    Call the restaurant about a new order.

    Not retried automatically: every attempt counts against the
    restaurant's retry limit, so further calls are placed by hand.
    """
    task_id = self.request.id
    logger.info(f"📞 Task {task_id}: Calling restaurant for order #{order_id}")

    call_log = run_with_services(lambda services: services.calls.notify_restaurant(order_id))

    if call_log is None:
        return {"success": False, "order_id": order_id, "task_id": task_id}
    return {
        "success": True,
        "order_id": order_id,
        "call_sid": call_log.external_call_id,
        "task_id": task_id,
    }


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def sync_order_to_pos(self, order_id: str) -> dict:
    """
    Push a confirmed order to the restaurant's POS integrations.

    Vendor failures are recorded on the order; only infrastructure errors
    (database, broker) raise and trigger a retry.
    """
    task_id = self.request.id
    start_time = time.time()
    logger.info(f"📋 Task {task_id}: Syncing order #{order_id} to POS")

    results = run_with_services(
        lambda services: services.integrations.sync_order_to_integrations(order_id)
    )

    elapsed = round(time.time() - start_time, 3)
    logger.info(f"✅ Task {task_id}: Order #{order_id} synced to {len(results)} integration(s) in {elapsed}s")
    return {
        "success": all(r["success"] for r in results),
        "order_id": order_id,
        "results": results,
        "processing_time_seconds": elapsed,
    }


@celery_app.task
def drain_outbox() -> dict:
    """Publish outbox events that were committed but never dispatched."""
    delivered = run_with_services(lambda services: services.outbox.dispatch_pending())
    if delivered:
        logger.info(f"Outbox drain delivered {delivered} event(s)")
    return {"delivered": delivered}


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now(timezone.utc).isoformat()
    }
