"""
Credit Ledger

Append-only log of credit movements plus the running balance on
``Account.credit_balance``. Every balance change is one ledger entry and
one conditional ``UPDATE`` executed in the caller's session, so both land
in the same transaction or not at all.

Usage:
    async with database.transaction() as session:
        await ledger.debit(session, account_id, Decimal("8.00"),
                           LedgerKind.SPEND, "Order from Pizza Place",
                           order_id=order.id)
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from biteclub.core.exceptions import InsufficientBalance, InvalidAmount, NotFound
from biteclub.models import Account, LedgerEntry, LedgerKind

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    """Normalize a number to a two-place decimal, rounding half up."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class LedgerService:
    """Writes ledger entries and keeps balances equal to their sum."""

    async def credit(
        self,
        session: AsyncSession,
        account_id: str,
        amount,
        kind: LedgerKind,
        description: str,
        order_id: Optional[str] = None,
        external_payment_id: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Add credits to an account.

        Raises:
            InvalidAmount: amount is zero or negative
            NotFound: the account does not exist
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount(f"Credit amount must be positive, got {amount}")

        new_balance = await self._apply(
            session,
            account_id,
            update(Account)
            .where(Account.id == account_id)
            .values(credit_balance=Account.credit_balance + amount),
        )
        if new_balance is None:
            raise NotFound(f"Account {account_id} not found")

        entry = LedgerEntry(
            account_id=account_id,
            amount=amount,
            kind=kind,
            description=description,
            order_id=order_id,
            external_payment_id=external_payment_id,
        )
        session.add(entry)
        await session.flush()

        logger.info(f"Ledger: +{amount} {kind.value} -> account {account_id}")
        return entry

    async def debit(
        self,
        session: AsyncSession,
        account_id: str,
        amount,
        kind: LedgerKind,
        description: str,
        order_id: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Remove credits from an account.

        The sufficiency check and the decrement are a single statement, so
        two concurrent debits can never both pass against the same balance.

        Raises:
            InvalidAmount: amount is zero or negative
            InsufficientBalance: the balance would go negative
            NotFound: the account does not exist
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount(f"Debit amount must be positive, got {amount}")

        new_balance = await self._apply(
            session,
            account_id,
            update(Account)
            .where(Account.id == account_id, Account.credit_balance >= amount)
            .values(credit_balance=Account.credit_balance - amount),
        )
        if new_balance is None:
            exists = await session.scalar(select(Account.id).where(Account.id == account_id))
            if exists is None:
                raise NotFound(f"Account {account_id} not found")
            raise InsufficientBalance(
                f"Account {account_id} cannot cover {amount}"
            )

        entry = LedgerEntry(
            account_id=account_id,
            amount=-amount,
            kind=kind,
            description=description,
            order_id=order_id,
        )
        session.add(entry)
        await session.flush()

        logger.info(f"Ledger: -{amount} {kind.value} <- account {account_id}")
        return entry

    async def _apply(self, session: AsyncSession, account_id: str, statement) -> Optional[Decimal]:
        """Run a balance UPDATE and mirror the new value onto a loaded Account."""
        result = await session.execute(
            statement.returning(Account.credit_balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            return None

        loaded = session.identity_map.get(session.identity_key(Account, account_id))
        if loaded is not None:
            set_committed_value(loaded, "credit_balance", new_balance)
        return new_balance

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def balance(self, session: AsyncSession, account_id: str) -> Decimal:
        value = await session.scalar(
            select(Account.credit_balance).where(Account.id == account_id)
        )
        if value is None:
            raise NotFound(f"Account {account_id} not found")
        return to_money(value)

    async def ledger_sum(self, session: AsyncSession, account_id: str) -> Decimal:
        total = await session.scalar(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .where(LedgerEntry.account_id == account_id)
        )
        return to_money(total)

    async def reconcile(self, session: AsyncSession, account_id: str) -> tuple[Decimal, Decimal]:
        """Return ``(balance, sum of entries)``; they must always match."""
        balance = await self.balance(session, account_id)
        total = await self.ledger_sum(session, account_id)
        if balance != total:
            logger.error(
                f"Ledger mismatch for account {account_id}: balance={balance} entries={total}"
            )
        return balance, total

    async def history(
        self,
        session: AsyncSession,
        account_id: str,
        limit: int = 20,
    ) -> list[LedgerEntry]:
        result = await session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def entries_for_order(
        self,
        session: AsyncSession,
        order_id: str,
        kind: Optional[LedgerKind] = None,
    ) -> list[LedgerEntry]:
        query = select(LedgerEntry).where(LedgerEntry.order_id == order_id)
        if kind is not None:
            query = query.where(LedgerEntry.kind == kind)
        result = await session.execute(query.order_by(LedgerEntry.id))
        return list(result.scalars().all())

    async def has_charge(self, session: AsyncSession, order_id: str) -> bool:
        """Whether a SPEND entry references the order."""
        return bool(await self.entries_for_order(session, order_id, LedgerKind.SPEND))

    async def find_by_external_payment(
        self,
        session: AsyncSession,
        external_payment_id: str,
    ) -> Optional[LedgerEntry]:
        return await session.scalar(
            select(LedgerEntry).where(LedgerEntry.external_payment_id == external_payment_id)
        )
