"""
Order State Machine

Owns every order status change and the ledger effects tied to it:

    create     -> PENDING     promotions applied, loyalty reward credited
    accept     PENDING   -> CONFIRMED   student charged (the only charge)
    reject     PENDING   -> CANCELLED   no charge
    closeout   CONFIRMED -> COMPLETED   no ledger effect
    refund     *         -> REFUNDED    admin only, credits the charge back

Each operation runs in one database transaction. Transitions lock the
order row and swap the status with a compare-and-set, so concurrent
accept/refund requests on the same order serialize and the loser gets
``Conflict``.

Transitions accept an optional ``session`` to join a caller's open
transaction; the IVR keypad handler uses it to commit the call outcome
together with the order change.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from biteclub.core.config import Settings
from biteclub.core.exceptions import Conflict, InvalidAmount, NotFound
from biteclub.database import Database
from biteclub.models import (
    Account,
    CustomerRelationship,
    LedgerKind,
    MenuItem,
    Order,
    OrderItem,
    OrderStatus,
    OutboxEvent,
    OutboxKind,
    PromotionCost,
    Restaurant,
    utc_now,
)
from biteclub.services.ledger import LedgerService, to_money
from biteclub.services.promotions import PromotionResult, evaluate_promotions

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.COMPLETED, OrderStatus.REFUNDED}),
    OrderStatus.COMPLETED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.REFUNDED: frozenset(),
}

ACTIVE_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED)


@dataclass
class OrderLine:
    """One requested item at checkout."""
    menu_item_id: str
    quantity: int
    modifiers_selected: list = field(default_factory=list)
    custom_instructions: str = ""


@dataclass
class OrderCreation:
    order: Order
    promotions: PromotionResult
    balance_sufficient: bool


@dataclass
class RefundOutcome:
    order: Order
    refund_amount: Decimal
    was_charged: bool


class OrderService:
    """
    Order lifecycle coordinator.

    Args:
        database: Storage handle
        ledger: Ledger writing balance changes
        settings: Refund policy
    """

    def __init__(self, database: Database, ledger: LedgerService, settings: Settings):
        self.database = database
        self.ledger = ledger
        self.settings = settings

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_order(
        self,
        account_id: str,
        restaurant_id: str,
        items: list[OrderLine],
        subtotal,
        custom_instructions: Optional[str] = None,
    ) -> OrderCreation:
        """
        Create a PENDING order.

        Promotions are evaluated and persisted in the same transaction as
        the order. No credits move except an earned loyalty reward; the
        balance check here only reports whether acceptance would succeed.

        Raises:
            InvalidAmount: subtotal not positive, or no items
            NotFound: unknown account, restaurant or menu item
            Conflict: restaurant is inactive
        """
        subtotal = to_money(subtotal)
        if subtotal <= 0:
            raise InvalidAmount("Order total must be greater than 0")
        if not items:
            raise InvalidAmount("Order must contain at least one item")

        async with self.database.transaction() as session:
            account = await session.get(Account, account_id)
            if account is None:
                raise NotFound(f"Account {account_id} not found")

            restaurant = await session.get(Restaurant, restaurant_id)
            if restaurant is None:
                raise NotFound(f"Restaurant {restaurant_id} not found")
            if not restaurant.is_active:
                raise Conflict(f"Restaurant {restaurant.name} is not accepting orders")

            menu_items = await self._load_menu_items(session, restaurant_id, items)
            relationship = await self._get_or_create_relationship(session, account_id, restaurant_id)

            promotions = evaluate_promotions(subtotal, restaurant.promotion_config, relationship)

            balance_sufficient = to_money(account.credit_balance) >= promotions.final_amount
            if not balance_sufficient:
                logger.warning(
                    f"Order for account {account_id} exceeds current balance "
                    f"({account.credit_balance} < {promotions.final_amount}); "
                    f"acceptance will fail until credits are added"
                )

            order = Order(
                account=account,
                restaurant=restaurant,
                total_amount=subtotal,
                discount_amount=promotions.discount_amount,
                final_amount=promotions.final_amount,
                promotion_applied=promotions.promotion_applied,
                status=OrderStatus.PENDING,
                custom_instructions=custom_instructions,
                items=[
                    OrderItem(
                        menu_item=menu_items[line.menu_item_id],
                        quantity=line.quantity,
                        unit_price=to_money(menu_items[line.menu_item_id].price),
                        total_price=to_money(menu_items[line.menu_item_id].price) * line.quantity,
                        modifiers_selected=line.modifiers_selected or [],
                        custom_instructions=line.custom_instructions or "",
                    )
                    for line in items
                ],
            )
            session.add(order)
            await session.flush()

            if promotions.discount_amount > 0:
                session.add(PromotionCost(
                    order_id=order.id,
                    restaurant_id=restaurant_id,
                    cost_amount=promotions.discount_amount,
                    promotion_type=promotions.promotion_applied,
                    original_total=subtotal,
                    discount_amount=promotions.discount_amount,
                ))
                logger.info(
                    f"Promotion {promotions.promotion_applied.value} applied to order "
                    f"#{order.id}: -{promotions.discount_amount}"
                )

            relationship.is_first_time = promotions.updated_is_first_time
            relationship.total_spent = promotions.updated_total_spent
            relationship.loyalty_progress = promotions.updated_loyalty_progress

            if promotions.loyalty_reward_earned > 0:
                await self.ledger.credit(
                    session,
                    account_id,
                    promotions.loyalty_reward_earned,
                    LedgerKind.LOYALTY_REWARD,
                    f"Loyalty reward from {restaurant.name}",
                    order_id=order.id,
                )

            session.add(OutboxEvent(
                kind=OutboxKind.ORDER_CREATED,
                order_id=order.id,
                payload={"restaurant_id": restaurant_id},
            ))

        logger.info(f"Order #{order.id} created (final={order.final_amount})")
        return OrderCreation(order=order, promotions=promotions, balance_sufficient=balance_sufficient)

    async def preview_promotions(self, account_id: str, restaurant_id: str, subtotal) -> PromotionResult:
        """Evaluate promotions for a prospective order without writing anything."""
        async with self.database.session() as session:
            restaurant = await session.get(Restaurant, restaurant_id)
            if restaurant is None:
                raise NotFound(f"Restaurant {restaurant_id} not found")
            relationship = await self._find_relationship(session, account_id, restaurant_id)
            return evaluate_promotions(subtotal, restaurant.promotion_config, relationship)

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def accept_order(
        self,
        order_id: str,
        restaurant_id: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> Order:
        """
        PENDING -> CONFIRMED, charging the student ``final_amount``.

        An order discounted to 0.00 is confirmed without a SPEND entry.

        Raises:
            NotFound: order missing or not owned by ``restaurant_id``
            Conflict: order is no longer PENDING
            InsufficientBalance: student cannot pay; order stays PENDING
        """
        async with self.database.transaction(session) as session:
            order = await self._lock_order(session, order_id, restaurant_id)
            self._check_transition(order, OrderStatus.CONFIRMED)

            # Fully discounted orders confirm without a ledger entry
            if to_money(order.final_amount) > 0:
                await self.ledger.debit(
                    session,
                    order.account_id,
                    order.final_amount,
                    LedgerKind.SPEND,
                    f"Order from {order.restaurant.name}",
                    order_id=order.id,
                )
            await self._swap_status(
                session, order, OrderStatus.CONFIRMED, confirmed_at=utc_now()
            )
            session.add(OutboxEvent(kind=OutboxKind.ORDER_CONFIRMED, order_id=order.id, payload={}))

        logger.info(f"Order #{order_id} accepted and student charged {order.final_amount}")
        return order

    async def reject_order(
        self,
        order_id: str,
        restaurant_id: Optional[str] = None,
        reason: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> Order:
        """PENDING -> CANCELLED. The student is never charged."""
        async with self.database.transaction(session) as session:
            order = await self._lock_order(session, order_id, restaurant_id)
            self._check_transition(order, OrderStatus.CANCELLED)
            await self._swap_status(
                session,
                order,
                OrderStatus.CANCELLED,
                refund_reason=reason or "Order rejected by restaurant",
            )

        logger.info(f"Order #{order_id} rejected, no charge to student")
        return order

    async def closeout_order(
        self,
        order_id: str,
        restaurant_id: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> Order:
        """CONFIRMED -> COMPLETED."""
        async with self.database.transaction(session) as session:
            order = await self._lock_order(session, order_id, restaurant_id)
            self._check_transition(order, OrderStatus.COMPLETED)
            await self._swap_status(session, order, OrderStatus.COMPLETED, completed_at=utc_now())

        logger.info(f"Order #{order_id} completed")
        return order

    async def refund_order(
        self,
        order_id: str,
        reason: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> RefundOutcome:
        """
        Admin refund: any status except REFUNDED -> REFUNDED.

        Credits ``final_amount`` back when the order was charged. Orders
        that never reached acceptance are marked REFUNDED without a credit
        unless ``refund_uncharged_orders`` is enabled.

        Raises:
            NotFound: order missing
            Conflict: order already refunded
        """
        async with self.database.transaction(session) as session:
            order = await self._lock_order(session, order_id)
            if order.status == OrderStatus.REFUNDED:
                raise Conflict(f"Order #{order_id} already refunded")

            was_charged = await self.ledger.has_charge(session, order.id)
            refund_amount = Decimal("0.00")
            if was_charged or self.settings.refund_uncharged_orders:
                refund_amount = to_money(order.final_amount)

            if refund_amount > 0:
                await self.ledger.credit(
                    session,
                    order.account_id,
                    refund_amount,
                    LedgerKind.REFUND,
                    f"Refund for order #{order.id}: {reason or 'Admin refund'}",
                    order_id=order.id,
                )
            elif not was_charged:
                logger.warning(f"Order #{order_id} was never charged; refunding without credit")

            await self._swap_status(session, order, OrderStatus.REFUNDED, refund_reason=reason)

        logger.info(f"Order #{order_id} refunded ({refund_amount})")
        return RefundOutcome(order=order, refund_amount=refund_amount, was_charged=was_charged)

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        async with self.database.session() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise NotFound(f"Order #{order_id} not found")
            return order

    async def list_for_account(self, account_id: str) -> list[Order]:
        async with self.database.session() as session:
            result = await session.execute(
                select(Order)
                .where(Order.account_id == account_id)
                .order_by(Order.created_at.desc())
            )
            return list(result.scalars().all())

    async def list_for_restaurant(
        self,
        restaurant_id: str,
        status: Optional[OrderStatus] = None,
    ) -> list[Order]:
        async with self.database.session() as session:
            query = select(Order).where(Order.restaurant_id == restaurant_id)
            if status is not None:
                query = query.where(Order.status == status)
            result = await session.execute(query.order_by(Order.created_at.desc()))
            return list(result.scalars().all())

    async def active_order_count(self, restaurant_id: str) -> int:
        async with self.database.session() as session:
            count = await session.scalar(
                select(func.count(Order.id)).where(
                    Order.restaurant_id == restaurant_id,
                    Order.status.in_(ACTIVE_STATUSES),
                )
            )
            return count or 0

    async def restaurant_for_owner(self, owner_id: str) -> Restaurant:
        async with self.database.session() as session:
            restaurant = await session.scalar(
                select(Restaurant).where(Restaurant.owner_id == owner_id)
            )
            if restaurant is None:
                raise NotFound("Restaurant not found")
            return restaurant

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _load_menu_items(
        self,
        session: AsyncSession,
        restaurant_id: str,
        items: list[OrderLine],
    ) -> dict[str, MenuItem]:
        ids = {line.menu_item_id for line in items}
        result = await session.execute(
            select(MenuItem).where(MenuItem.id.in_(ids), MenuItem.restaurant_id == restaurant_id)
        )
        found = {item.id: item for item in result.scalars().all()}
        missing = ids - found.keys()
        if missing:
            raise NotFound(f"Menu items not found at this restaurant: {sorted(missing)}")
        for line in items:
            if line.quantity < 1:
                raise InvalidAmount(f"Quantity for {line.menu_item_id} must be at least 1")
        return found

    async def _find_relationship(
        self,
        session: AsyncSession,
        account_id: str,
        restaurant_id: str,
        lock: bool = False,
    ) -> Optional[CustomerRelationship]:
        query = select(CustomerRelationship).where(
            CustomerRelationship.account_id == account_id,
            CustomerRelationship.restaurant_id == restaurant_id,
        )
        if lock:
            query = query.with_for_update()
        return await session.scalar(query)

    async def _get_or_create_relationship(
        self,
        session: AsyncSession,
        account_id: str,
        restaurant_id: str,
    ) -> CustomerRelationship:
        relationship = await self._find_relationship(session, account_id, restaurant_id, lock=True)
        if relationship is None:
            relationship = CustomerRelationship(
                account_id=account_id,
                restaurant_id=restaurant_id,
                is_first_time=True,
                total_spent=Decimal("0.00"),
                loyalty_progress=Decimal("0.00"),
            )
            session.add(relationship)
            await session.flush()
        return relationship

    async def _lock_order(
        self,
        session: AsyncSession,
        order_id: str,
        restaurant_id: Optional[str] = None,
    ) -> Order:
        """Load the order under a row lock, scoped to the acting restaurant."""
        query = (
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if restaurant_id is not None:
            query = query.where(Order.restaurant_id == restaurant_id)
        order = await session.scalar(query)
        if order is None:
            raise NotFound(f"Order #{order_id} not found or access denied")
        return order

    @staticmethod
    def _check_transition(order: Order, target: OrderStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[order.status]:
            raise Conflict(
                f"Order #{order.id} cannot move from {order.status.value} to {target.value}"
            )

    async def _swap_status(
        self,
        session: AsyncSession,
        order: Order,
        target: OrderStatus,
        **values,
    ) -> None:
        """Compare-and-set the status; a concurrent change makes this a Conflict."""
        expected = order.status
        self._check_transition(order, target)
        result = await session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == expected)
            .values(status=target, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict(f"Order #{order.id} was modified concurrently")

        set_committed_value(order, "status", target)
        for key, value in values.items():
            set_committed_value(order, key, value)
