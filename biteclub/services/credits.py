"""
Credit Purchases

Students buy dining credits through the payment provider; administrators
can grant credits directly. Every purchase credit is keyed by the
provider's payment id, so the confirmation endpoint and the webhook can
both report the same payment without crediting it twice.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError

from biteclub.core.config import Settings
from biteclub.core.exceptions import Forbidden, InvalidAmount, InvalidRequest, NotFound, PaymentDeclined
from biteclub.database import Database
from biteclub.models import Account, LedgerEntry, LedgerKind
from biteclub.services.ledger import LedgerService, to_money
from biteclub.services.payment.base import BasePaymentService, CheckoutSession

logger = logging.getLogger(__name__)


@dataclass
class CreditReceipt:
    """A ledger entry together with the balance right after it."""
    entry: LedgerEntry
    balance: Decimal
    duplicate: bool = False


class CreditService:
    def __init__(
        self,
        database: Database,
        ledger: LedgerService,
        payment: BasePaymentService,
        settings: Settings,
    ):
        self.database = database
        self.ledger = ledger
        self.payment = payment
        self.settings = settings

    async def balance(self, account_id: str, limit: int = 20) -> tuple[Decimal, list[LedgerEntry]]:
        """Current balance and the most recent ledger entries."""
        async with self.database.session() as session:
            balance = await self.ledger.balance(session, account_id)
            history = await self.ledger.history(session, account_id, limit=limit)
        return balance, history

    async def start_checkout(self, account_id: str, amount) -> CheckoutSession:
        """
        Open a hosted checkout for one of the allowed purchase amounts.

        Raises:
            InvalidAmount: amount is not one of the configured options
        """
        amount = to_money(amount)
        allowed = [to_money(a) for a in self.settings.credit_purchase_amounts_list]
        if amount not in allowed:
            options = ", ".join(f"${a:.0f}" for a in allowed)
            raise InvalidAmount(f"Invalid amount. Must be one of {options}")

        async with self.database.session() as session:
            account = await session.get(Account, account_id)
            if account is None:
                raise NotFound(f"Account {account_id} not found")

        frontend = self.settings.frontend_url.rstrip("/")
        checkout = await self.payment.create_checkout_session(
            account_id=account_id,
            amount=amount,
            success_url=f"{frontend}/credits/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{frontend}/credits/cancel",
            customer_email=account.email,
        )
        logger.info(f"Checkout {checkout.session_id} opened for ${amount} (account {account_id})")
        return checkout

    async def confirm_purchase(
        self,
        account_id: str,
        payment_intent_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> CreditReceipt:
        """
        Credit a purchase the student reports as paid.

        Raises:
            InvalidRequest: neither a payment id nor a session id given
            PaymentDeclined: the provider does not report the payment as succeeded
            Forbidden: the payment belongs to another account
        """
        if payment_intent_id:
            result = await self.payment.retrieve_payment(payment_intent_id)
        elif session_id:
            result = await self.payment.retrieve_checkout_session(session_id)
        else:
            raise InvalidRequest("Payment Intent ID or Session ID is required")

        if not result.success:
            raise PaymentDeclined(result.error_message or "Payment not successful")

        owner = (result.metadata or {}).get("account_id")
        if owner and owner != account_id:
            raise Forbidden("Payment belongs to a different account")

        return await self.record_purchase(account_id, result.amount, result.payment_intent_id)

    async def handle_webhook_event(self, event: dict) -> Optional[CreditReceipt]:
        """
        Apply a verified provider event. Unrelated events are ignored.
        """
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if event_type == "payment_intent.succeeded":
            payment_id = obj.get("id")
        elif event_type == "checkout.session.completed":
            payment_id = obj.get("payment_intent")
        else:
            logger.info(f"Unhandled payment event type: {event_type}")
            return None

        account_id = metadata.get("account_id")
        credit_amount = metadata.get("credit_amount")
        if not (account_id and credit_amount and payment_id):
            logger.warning(f"Payment event {event_type} missing account or amount metadata; ignored")
            return None

        return await self.record_purchase(account_id, credit_amount, payment_id)

    async def record_purchase(self, account_id: str, amount, payment_id: str) -> CreditReceipt:
        """Credit a succeeded payment once; later reports return the first entry."""
        try:
            async with self.database.transaction() as session:
                existing = await self.ledger.find_by_external_payment(session, payment_id)
                if existing is not None:
                    balance = await self.ledger.balance(session, existing.account_id)
                    logger.info(f"Payment {payment_id} already credited; skipping")
                    return CreditReceipt(entry=existing, balance=balance, duplicate=True)

                entry = await self.ledger.credit(
                    session,
                    account_id,
                    amount,
                    LedgerKind.PURCHASE,
                    f"Credit purchase via {self.payment.provider_name}",
                    external_payment_id=payment_id,
                )
                balance = await self.ledger.balance(session, account_id)
        except IntegrityError:
            # Lost the race against a concurrent report of the same payment
            async with self.database.session() as session:
                existing = await self.ledger.find_by_external_payment(session, payment_id)
                if existing is None:
                    raise
                balance = await self.ledger.balance(session, existing.account_id)
            return CreditReceipt(entry=existing, balance=balance, duplicate=True)

        logger.info(f"Purchased ${entry.amount} credited to account {account_id}")
        return CreditReceipt(entry=entry, balance=balance)

    async def admin_add_credits(self, account_id: str, amount, reason: Optional[str] = None) -> CreditReceipt:
        async with self.database.transaction() as session:
            entry = await self.ledger.credit(
                session,
                account_id,
                amount,
                LedgerKind.ADMIN_ADD,
                reason or "Manually added by admin",
            )
            balance = await self.ledger.balance(session, account_id)

        logger.info(f"Admin added ${entry.amount} to account {account_id}")
        return CreditReceipt(entry=entry, balance=balance)
