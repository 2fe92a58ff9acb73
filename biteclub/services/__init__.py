"""
                        Services Module

Business logic, wired together once per process by ``ServiceContainer``.
Collaborators with external APIs have Mock (development) and Real
(production) implementations chosen from ENV_MODE.

Services:
    - ledger: credit balances and the append-only ledger
    - promotions: first-time discount and loyalty rewards
    - orders: order state machine
    - calls: IVR restaurant calls (Twilio)
    - credits: credit purchases (Stripe) and admin grants
    - integrations: POS menu/order sync (Toast, Square)
    - outbox: post-commit delivery of order events
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy import text

from biteclub.core.config import Settings
from biteclub.database import Database
from biteclub.models import OutboxKind
from biteclub.services.calls import BaseTelephonyService, CallService, build_telephony_service
from biteclub.services.credits import CreditService
from biteclub.services.integrations import IntegrationService
from biteclub.services.ledger import LedgerService
from biteclub.services.orders import OrderService
from biteclub.services.outbox import BasePublisher, CeleryPublisher, InlinePublisher, OutboxDispatcher
from biteclub.services.payment import BasePaymentService, build_payment_service
from biteclub.services.pos import build_pos_registry

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Every service of one process, sharing a single database handle."""
    database: Database
    settings: Settings
    ledger: LedgerService
    orders: OrderService
    calls: CallService
    credits: CreditService
    integrations: IntegrationService
    outbox: OutboxDispatcher
    payment: BasePaymentService
    telephony: BaseTelephonyService

    @classmethod
    def build(
        cls,
        database: Database,
        settings: Settings,
        payment: Optional[BasePaymentService] = None,
        telephony: Optional[BaseTelephonyService] = None,
        publisher: Optional[BasePublisher] = None,
        pos_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ServiceContainer":
        """
        Wire the services for ``settings``. Tests pass their own
        collaborators; anything omitted is chosen from ENV_MODE.
        """
        payment = payment or build_payment_service(settings)
        telephony = telephony or build_telephony_service(settings)

        ledger = LedgerService()
        orders = OrderService(database, ledger, settings)
        calls = CallService(database, orders, telephony, settings)
        credits = CreditService(database, ledger, payment, settings)
        integrations = IntegrationService(
            database,
            build_pos_registry(timeout=settings.pos_request_timeout, transport=pos_transport),
        )

        if publisher is None:
            if settings.use_celery:
                publisher = CeleryPublisher()
            else:
                publisher = InlinePublisher({
                    OutboxKind.ORDER_CREATED: calls.notify_restaurant,
                    OutboxKind.ORDER_CONFIRMED: integrations.sync_order_to_integrations,
                })
        outbox = OutboxDispatcher(database, publisher)

        logger.info(
            f"Services ready (payment={payment.provider_name}, "
            f"telephony={telephony.provider_name}, outbox={publisher.name})"
        )

        return cls(
            database=database,
            settings=settings,
            ledger=ledger,
            orders=orders,
            calls=calls,
            credits=credits,
            integrations=integrations,
            outbox=outbox,
            payment=payment,
            telephony=telephony,
        )

    async def health(self) -> dict:
        """Status of the database and each external collaborator."""
        db_status = "healthy"
        try:
            async with self.database.session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            db_status = f"unhealthy: {str(e)}"
            logger.error(f"Database health check failed: {e}")

        payment_status = "healthy" if await self.payment.health_check() else "unhealthy"
        telephony_status = "healthy" if await self.telephony.health_check() else "unhealthy"

        statuses = [db_status, payment_status, telephony_status]
        return {
            "status": "operational" if all(s == "healthy" for s in statuses) else "degraded",
            "database": db_status,
            "payment": payment_status,
            "telephony": telephony_status,
        }


__all__ = ["ServiceContainer"]
