import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from biteclub.core.exceptions import Conflict, InsufficientBalance, InvalidAmount, NotFound
from biteclub.models import (
    CustomerRelationship,
    LedgerKind,
    Order,
    OrderStatus,
    OutboxEvent,
    OutboxKind,
    PromotionCost,
    PromotionType,
)
from biteclub.services.orders import OrderLine


def lines(item, quantity=1):
    return [OrderLine(menu_item_id=item.id, quantity=quantity)]


async def stored_order(services, order_id) -> Order:
    async with services.database.session() as session:
        return await session.get(Order, order_id)


async def test_order_created_pending_without_charge(services, seed, student, restaurant, burger):
    creation = await services.orders.create_order(student.id, restaurant.id, lines(burger, 2), "20.00")

    order = creation.order
    assert order.status == OrderStatus.PENDING
    assert order.total_amount == Decimal("20.00")
    assert order.final_amount == Decimal("20.00")
    assert order.items[0].total_price == Decimal("20.00")
    assert creation.balance_sufficient is True
    assert await seed.balance(student) == Decimal("50.00")
    assert await seed.entries(student, LedgerKind.SPEND) == []


async def test_order_creation_queues_restaurant_call(services, student, restaurant, burger):
    creation = await services.orders.create_order(student.id, restaurant.id, lines(burger), "10.00")

    async with services.database.session() as session:
        events = (await session.execute(
            select(OutboxEvent).where(OutboxEvent.order_id == creation.order.id)
        )).scalars().all()

    assert [e.kind for e in events] == [OutboxKind.ORDER_CREATED]
    assert events[0].dispatched_at is None


async def test_scenario_a_zero_balance(services, seed, restaurant, burger):
    broke = await seed.account()

    creation = await services.orders.create_order(broke.id, restaurant.id, lines(burger), "10.00")
    assert creation.order.status == OrderStatus.PENDING
    assert creation.balance_sufficient is False

    with pytest.raises(InsufficientBalance):
        await services.orders.accept_order(creation.order.id, restaurant_id=restaurant.id)

    order = await stored_order(services, creation.order.id)
    assert order.status == OrderStatus.PENDING
    assert await seed.balance(broke) == Decimal("0.00")


async def test_scenario_b_first_time_discount(services, seed, student, restaurant, burger):
    await seed.promotions(restaurant, first_time_enabled=True, first_time_percent=Decimal("20"))

    creation = await services.orders.create_order(student.id, restaurant.id, lines(burger), "10.00")

    order = creation.order
    assert order.discount_amount == Decimal("2.00")
    assert order.final_amount == Decimal("8.00")
    assert order.promotion_applied == PromotionType.FIRST_TIME

    async with services.database.session() as session:
        relationship = await session.scalar(select(CustomerRelationship).where(
            CustomerRelationship.account_id == student.id,
            CustomerRelationship.restaurant_id == restaurant.id,
        ))
        cost = await session.scalar(select(PromotionCost).where(PromotionCost.order_id == order.id))

    assert relationship.is_first_time is False
    assert cost.cost_amount == Decimal("2.00")
    assert cost.original_total == Decimal("10.00")

    second = await services.orders.create_order(student.id, restaurant.id, lines(burger), "10.00")
    assert second.order.discount_amount == Decimal("0.00")
    assert second.order.promotion_applied is None


async def test_scenario_c_loyalty_reward_credited_at_creation(services, seed, student, restaurant, burger):
    await seed.promotions(
        restaurant,
        loyalty_enabled=True,
        loyalty_spend_threshold=Decimal("50"),
        loyalty_reward_amount=Decimal("10"),
    )
    await seed.relationship(
        student, restaurant,
        is_first_time=False,
        total_spent=Decimal("45"),
        loyalty_progress=Decimal("45"),
    )

    creation = await services.orders.create_order(student.id, restaurant.id, lines(burger), "10.00")

    assert creation.promotions.loyalty_reward_earned == Decimal("10.00")
    assert creation.promotions.updated_loyalty_progress == Decimal("5.00")
    rewards = await seed.entries(student, LedgerKind.LOYALTY_REWARD)
    assert [r.amount for r in rewards] == [Decimal("10.00")]
    assert rewards[0].order_id == creation.order.id
    assert await seed.balance(student) == Decimal("60.00")


async def test_accept_charges_exactly_once(services, seed, student, restaurant, burger):
    creation = await services.orders.create_order(student.id, restaurant.id, lines(burger), "12.00")

    order = await services.orders.accept_order(creation.order.id, restaurant_id=restaurant.id)
    assert order.status == OrderStatus.CONFIRMED
    assert order.confirmed_at is not None

    with pytest.raises(Conflict):
        await services.orders.accept_order(creation.order.id, restaurant_id=restaurant.id)

    spends = await seed.entries(student, LedgerKind.SPEND)
    assert [s.amount for s in spends] == [Decimal("-12.00")]
    assert await seed.balance(student) == Decimal("38.00")


async def test_fully_discounted_order_confirms_without_charge(services, seed, student, restaurant, burger):
    await seed.promotions(restaurant, first_time_enabled=True, first_time_percent=Decimal("100"))
    creation = await services.orders.create_order(student.id, restaurant.id, lines(burger), "10.00")
    assert creation.order.final_amount == Decimal("0.00")

    order = await services.orders.accept_order(creation.order.id, restaurant_id=restaurant.id)

    assert order.status == OrderStatus.CONFIRMED
    assert await seed.entries(student, LedgerKind.SPEND) == []
    assert await seed.balance(student) == Decimal("50.00")

    outcome = await services.orders.refund_order(creation.order.id)
    assert outcome.was_charged is False
    assert outcome.refund_amount == Decimal("0.00")
    assert await seed.balance(student) == Decimal("50.00")


async def test_accept_by_other_restaurant_is_not_found(services, seed, student, restaurant, burger):
    creation = await services.orders.create_order(student.id, restaurant.id, lines(burger), "10.00")
    other = await seed.restaurant(name="Other Place")

    with pytest.raises(NotFound):
        await services.orders.accept_order(creation.order.id, restaurant_id=other.id)


async def test_reject_never_charges(services, seed, student, restaurant, burger):
    creation = await services.orders.create_order(student.id, restaurant.id, lines(burger), "10.00")

    order = await services.orders.reject_order(creation.order.id, restaurant_id=restaurant.id, reason="Closed")

    assert order.status == OrderStatus.CANCELLED
    assert order.refund_reason == "Closed"
    assert await seed.entries(student, LedgerKind.SPEND) == []
    with pytest.raises(Conflict):
        await services.orders.accept_order(creation.order.id, restaurant_id=restaurant.id)


async def test_closeout_requires_confirmation(services, student, restaurant, burger):
    creation = await services.orders.create_order(student.id, restaurant.id, lines(burger), "10.00")

    with pytest.raises(Conflict):
        await services.orders.closeout_order(creation.order.id, restaurant_id=restaurant.id)

    await services.orders.accept_order(creation.order.id, restaurant_id=restaurant.id)
    order = await services.orders.closeout_order(creation.order.id, restaurant_id=restaurant.id)
    assert order.status == OrderStatus.COMPLETED
    assert order.completed_at is not None


async def test_refund_credits_charged_order(services, seed, student, restaurant, burger):
    creation = await services.orders.create_order(student.id, restaurant.id, lines(burger), "15.00")
    await services.orders.accept_order(creation.order.id, restaurant_id=restaurant.id)

    outcome = await services.orders.refund_order(creation.order.id, reason="Cold food")

    assert outcome.was_charged is True
    assert outcome.refund_amount == Decimal("15.00")
    assert outcome.order.status == OrderStatus.REFUNDED
    assert await seed.balance(student) == Decimal("50.00")

    with pytest.raises(Conflict):
        await services.orders.refund_order(creation.order.id)


async def test_refund_of_uncharged_order_credits_nothing(services, seed, student, restaurant, burger):
    creation = await services.orders.create_order(student.id, restaurant.id, lines(burger), "15.00")
    await services.orders.reject_order(creation.order.id, restaurant_id=restaurant.id)

    outcome = await services.orders.refund_order(creation.order.id)

    assert outcome.was_charged is False
    assert outcome.refund_amount == Decimal("0.00")
    assert outcome.order.status == OrderStatus.REFUNDED
    assert await seed.entries(student, LedgerKind.REFUND) == []
    assert await seed.balance(student) == Decimal("50.00")


async def test_refund_of_uncharged_order_when_enabled(services, seed, student, restaurant, burger):
    services.orders.settings.refund_uncharged_orders = True
    creation = await services.orders.create_order(student.id, restaurant.id, lines(burger), "15.00")

    outcome = await services.orders.refund_order(creation.order.id)

    assert outcome.refund_amount == Decimal("15.00")
    assert await seed.balance(student) == Decimal("65.00")


async def test_balance_matches_ledger_after_mixed_activity(services, seed, student, restaurant, burger):
    await seed.promotions(
        restaurant,
        first_time_enabled=True,
        first_time_percent=Decimal("10"),
        loyalty_enabled=True,
        loyalty_spend_threshold=Decimal("20"),
        loyalty_reward_amount=Decimal("4"),
    )

    first = await services.orders.create_order(student.id, restaurant.id, lines(burger), "10.00")
    second = await services.orders.create_order(student.id, restaurant.id, lines(burger, 2), "20.00")
    await services.orders.accept_order(first.order.id, restaurant_id=restaurant.id)
    await services.orders.accept_order(second.order.id, restaurant_id=restaurant.id)
    await services.orders.refund_order(first.order.id)

    async with services.database.session() as session:
        balance, total = await services.ledger.reconcile(session, student.id)

    assert balance == total
    # 50 + 4 (reward) - 9 - 20 + 9 (refund)
    assert balance == Decimal("34.00")


@pytest.mark.parametrize("subtotal", ["0", "-5.00"])
async def test_non_positive_total_rejected(services, student, restaurant, burger, subtotal):
    with pytest.raises(InvalidAmount):
        await services.orders.create_order(student.id, restaurant.id, lines(burger), subtotal)


async def test_empty_order_rejected(services, student, restaurant):
    with pytest.raises(InvalidAmount):
        await services.orders.create_order(student.id, restaurant.id, [], "10.00")


async def test_menu_item_from_another_restaurant(services, seed, student, restaurant):
    other = await seed.restaurant(name="Elsewhere")
    foreign = await seed.menu_item(other, name="Taco")

    with pytest.raises(NotFound):
        await services.orders.create_order(student.id, restaurant.id, lines(foreign), "10.00")


async def test_inactive_restaurant_rejects_orders(services, seed, student):
    closed = await seed.restaurant(name="Closed Cafe", is_active=False)
    item = await seed.menu_item(closed)

    with pytest.raises(Conflict):
        await services.orders.create_order(student.id, closed.id, lines(item), "10.00")


async def test_preview_writes_nothing(services, seed, student, restaurant):
    await seed.promotions(restaurant, first_time_enabled=True, first_time_percent=Decimal("20"))

    first = await services.orders.preview_promotions(student.id, restaurant.id, "10.00")
    second = await services.orders.preview_promotions(student.id, restaurant.id, "10.00")

    assert first == second
    assert first.final_amount == Decimal("8.00")
    async with services.database.session() as session:
        assert await session.scalar(select(CustomerRelationship)) is None


async def test_restaurant_queries(services, student, restaurant, burger):
    a = await services.orders.create_order(student.id, restaurant.id, lines(burger), "10.00")
    b = await services.orders.create_order(student.id, restaurant.id, lines(burger), "10.00")
    await services.orders.reject_order(b.order.id, restaurant_id=restaurant.id)

    pending = await services.orders.list_for_restaurant(restaurant.id, status=OrderStatus.PENDING)
    assert [o.id for o in pending] == [a.order.id]
    assert await services.orders.active_order_count(restaurant.id) == 1
    assert len(await services.orders.list_for_account(student.id)) == 2


# =============================================================================
# CONCURRENT TRANSITIONS
# =============================================================================

@pytest.fixture
async def campus(concurrent_seed):
    student = await concurrent_seed.account(balance="15.00")
    restaurant = await concurrent_seed.restaurant()
    item = await concurrent_seed.menu_item(restaurant)
    return student, restaurant, item


async def assert_ledger_consistent(services, account):
    async with services.database.session() as session:
        balance, total = await services.ledger.reconcile(session, account.id)
    assert balance == total


async def test_concurrent_accepts_charge_once(concurrent_services, concurrent_seed, campus):
    student, restaurant, item = campus
    order = (await concurrent_services.orders.create_order(student.id, restaurant.id, lines(item), "10.00")).order

    results = await asyncio.gather(
        concurrent_services.orders.accept_order(order.id),
        concurrent_services.orders.accept_order(order.id),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, Conflict)) == 1
    assert len(await concurrent_seed.entries(student, LedgerKind.SPEND)) == 1
    assert await concurrent_seed.balance(student) == Decimal("5.00")
    await assert_ledger_consistent(concurrent_services, student)


async def test_accept_racing_refund(concurrent_services, concurrent_seed, campus):
    student, restaurant, item = campus
    order = (await concurrent_services.orders.create_order(student.id, restaurant.id, lines(item), "10.00")).order

    results = await asyncio.gather(
        concurrent_services.orders.accept_order(order.id),
        concurrent_services.orders.refund_order(order.id, reason="Duplicate order"),
        return_exceptions=True,
    )

    # Either the refund lands first and the accept conflicts, or the
    # accept charges and the refund credits it back
    assert not [r for r in results if isinstance(r, Exception) and not isinstance(r, Conflict)]
    assert (await stored_order(concurrent_services, order.id)).status == OrderStatus.REFUNDED
    spends = await concurrent_seed.entries(student, LedgerKind.SPEND)
    refunds = await concurrent_seed.entries(student, LedgerKind.REFUND)
    assert len(spends) == len(refunds) <= 1
    assert await concurrent_seed.balance(student) == Decimal("15.00")
    await assert_ledger_consistent(concurrent_services, student)


async def test_concurrent_accepts_cannot_overdraw(concurrent_services, concurrent_seed, campus):
    student, restaurant, item = campus
    first = (await concurrent_services.orders.create_order(student.id, restaurant.id, lines(item), "10.00")).order
    second = (await concurrent_services.orders.create_order(student.id, restaurant.id, lines(item), "10.00")).order

    results = await asyncio.gather(
        concurrent_services.orders.accept_order(first.id),
        concurrent_services.orders.accept_order(second.id),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, InsufficientBalance)) == 1
    statuses = sorted([
        (await stored_order(concurrent_services, first.id)).status.value,
        (await stored_order(concurrent_services, second.id)).status.value,
    ])
    assert statuses == [OrderStatus.CONFIRMED.value, OrderStatus.PENDING.value]
    assert await concurrent_seed.balance(student) == Decimal("5.00")
    await assert_ledger_consistent(concurrent_services, student)
