import asyncio
from decimal import Decimal
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from biteclub.core.exceptions import (
    CallingDisabled,
    Conflict,
    ExternalServiceUnavailable,
    InvalidRequest,
    NoPhoneNumber,
    RetryLimitExceeded,
)
from biteclub.models import CallLog, CallResponseType, LedgerKind, Order, OrderStatus
from biteclub.services.calls import MockTelephonyService
from biteclub.services.calls.accounting import advance_response_type, call_cost
from biteclub.services.orders import OrderLine


async def place_order(services, student, restaurant, item, subtotal="10.00") -> Order:
    creation = await services.orders.create_order(
        student.id, restaurant.id, [OrderLine(menu_item_id=item.id, quantity=1)], subtotal
    )
    return creation.order


async def call_logs(services, order_id) -> list[CallLog]:
    async with services.database.session() as session:
        result = await session.execute(
            select(CallLog).where(CallLog.order_id == order_id).order_by(CallLog.id)
        )
        return list(result.scalars().all())


async def order_status(services, order_id) -> OrderStatus:
    async with services.database.session() as session:
        return (await session.get(Order, order_id)).status


@pytest.fixture
async def order(services, student, restaurant, burger):
    return await place_order(services, student, restaurant, burger)


@pytest.fixture
async def call(services, order):
    return await services.calls.initiate_call(order.id)


# =============================================================================
# PLACING CALLS
# =============================================================================

async def test_initiate_call_records_attempt(services, telephony, order, restaurant, call):
    assert call.response_type == CallResponseType.INITIATED
    assert call.external_call_id.startswith("CA_mock_")

    placed = telephony.placed_calls[0]
    assert placed["to"] == restaurant.phone
    assert placed["url"] == f"http://testserver/api/calls/twiml/{order.id}"
    assert placed["status_callback"] == "http://testserver/api/calls/status-callback"
    assert placed["timeout"] == 30


async def test_call_phone_overrides_restaurant_phone(services, telephony, seed, student):
    restaurant = await seed.restaurant(call_phone="+15559990000")
    item = await seed.menu_item(restaurant)
    order = await place_order(services, student, restaurant, item)

    await services.calls.initiate_call(order.id)

    assert telephony.placed_calls[0]["to"] == "+15559990000"


async def test_calling_disabled_records_nothing(services, seed, student):
    restaurant = await seed.restaurant(call_enabled=False)
    item = await seed.menu_item(restaurant)
    order = await place_order(services, student, restaurant, item)

    with pytest.raises(CallingDisabled):
        await services.calls.initiate_call(order.id)
    assert await call_logs(services, order.id) == []


async def test_missing_phone_records_nothing(services, seed, student):
    restaurant = await seed.restaurant(phone=None)
    item = await seed.menu_item(restaurant)
    order = await place_order(services, student, restaurant, item)

    with pytest.raises(NoPhoneNumber):
        await services.calls.initiate_call(order.id)
    assert await call_logs(services, order.id) == []


async def test_provider_failure_records_failed_attempt(services, order):
    services.calls.telephony = MockTelephonyService(failure_rate=1.0)

    with pytest.raises(ExternalServiceUnavailable):
        await services.calls.initiate_call(order.id)

    logs = await call_logs(services, order.id)
    assert [log.response_type for log in logs] == [CallResponseType.FAILED]
    assert "error" in logs[0].response_data


async def test_notify_restaurant_never_raises(services, seed, student):
    restaurant = await seed.restaurant(call_enabled=False)
    item = await seed.menu_item(restaurant)
    order = await place_order(services, student, restaurant, item)

    assert await services.calls.notify_restaurant(order.id) is None


# =============================================================================
# KEYPAD
# =============================================================================

async def test_scenario_d_accept_by_keypad(services, seed, student, order, call):
    script = await services.calls.handle_keypad(order.id, "1", call.external_call_id)

    assert "Order accepted" in script
    logs = await call_logs(services, order.id)
    assert logs[0].response_type == CallResponseType.ACCEPTED
    assert logs[0].success is True
    assert logs[0].keypad_response == "1"
    assert await order_status(services, order.id) == OrderStatus.CONFIRMED

    spends = await seed.entries(student, LedgerKind.SPEND)
    assert [s.amount for s in spends] == [-order.final_amount]


async def test_keypad_accepts_fully_discounted_order(services, seed, student, restaurant, burger):
    await seed.promotions(restaurant, first_time_enabled=True, first_time_percent=Decimal("100"))
    order = await place_order(services, student, restaurant, burger)
    call = await services.calls.initiate_call(order.id)

    script = await services.calls.handle_keypad(order.id, "1", call.external_call_id)

    assert "Order accepted" in script
    assert (await call_logs(services, order.id))[0].response_type == CallResponseType.ACCEPTED
    assert await order_status(services, order.id) == OrderStatus.CONFIRMED
    assert await seed.entries(student, LedgerKind.SPEND) == []


async def test_redelivered_keypad_does_not_charge_twice(services, seed, student, order, call):
    first = await services.calls.handle_keypad(order.id, "1", call.external_call_id)
    again = await services.calls.handle_keypad(order.id, "1", call.external_call_id)

    assert again == first
    assert len(await seed.entries(student, LedgerKind.SPEND)) == 1


async def test_scenario_e_repeat_keeps_call_open(services, order, call):
    script = await services.calls.handle_keypad(order.id, "3", call.external_call_id)

    assert "Order details" in script
    assert "<Gather" in script
    logs = await call_logs(services, order.id)
    assert logs[0].response_type == CallResponseType.AWAITING_DIGIT_REPEAT
    assert not logs[0].response_type.is_terminal
    assert logs[0].repeat_count == 1
    assert await order_status(services, order.id) == OrderStatus.PENDING

    # Same call continues and can still accept
    await services.calls.handle_keypad(order.id, "1", call.external_call_id)
    logs = await call_logs(services, order.id)
    assert logs[0].response_type == CallResponseType.ACCEPTED
    assert len(logs) == 1


async def test_repeat_is_bounded(services, settings, order, call):
    for _ in range(settings.ivr_max_repeats):
        await services.calls.handle_keypad(order.id, "3", call.external_call_id)

    script = await services.calls.handle_keypad(order.id, "3", call.external_call_id)

    assert "Maximum repeats reached" in script
    logs = await call_logs(services, order.id)
    assert logs[0].response_type == CallResponseType.INVALID_RESPONSE
    assert logs[0].response_data["outcome"] == "too_many_repeats"
    assert await order_status(services, order.id) == OrderStatus.PENDING


async def test_redelivered_repeat_counts_once(services, settings, order, call):
    first = await services.calls.handle_keypad(order.id, "3", call.external_call_id, request_id="idem-1")
    again = await services.calls.handle_keypad(order.id, "3", call.external_call_id, request_id="idem-1")

    assert again == first
    log = (await call_logs(services, order.id))[0]
    assert log.repeat_count == 1
    assert log.response_type == CallResponseType.AWAITING_DIGIT_REPEAT

    # A fresh press is a new request and uses the next repeat
    await services.calls.handle_keypad(order.id, "3", call.external_call_id, request_id="idem-2")
    assert (await call_logs(services, order.id))[0].repeat_count == 2


async def test_reject_by_keypad(services, seed, student, order, call):
    script = await services.calls.handle_keypad(order.id, "2", call.external_call_id)

    assert "Order rejected" in script
    assert await order_status(services, order.id) == OrderStatus.CANCELLED
    assert (await call_logs(services, order.id))[0].response_type == CallResponseType.REJECTED
    assert await seed.entries(student, LedgerKind.SPEND) == []


async def test_support_request_dials_support(services, order, call):
    script = await services.calls.handle_keypad(order.id, "0", call.external_call_id)

    assert "+15550000000" in script
    assert (await call_logs(services, order.id))[0].response_type == CallResponseType.SUPPORT_REQUESTED
    assert await order_status(services, order.id) == OrderStatus.PENDING


async def test_unexpected_digit(services, order, call):
    script = await services.calls.handle_keypad(order.id, "7", call.external_call_id)

    assert "Invalid selection" in script
    assert (await call_logs(services, order.id))[0].response_type == CallResponseType.INVALID_RESPONSE
    assert await order_status(services, order.id) == OrderStatus.PENDING


async def test_accept_with_insufficient_balance(services, seed, restaurant, burger):
    broke = await seed.account()
    order = await place_order(services, broke, restaurant, burger)
    call = await services.calls.initiate_call(order.id)

    script = await services.calls.handle_keypad(order.id, "1", call.external_call_id)

    assert "enough credits" in script
    log = (await call_logs(services, order.id))[0]
    assert log.response_type == CallResponseType.INVALID_RESPONSE
    assert log.response_data["outcome"] == "insufficient_balance"
    assert await order_status(services, order.id) == OrderStatus.PENDING


async def test_keypad_after_dashboard_accept(services, restaurant, order, call):
    await services.orders.accept_order(order.id, restaurant_id=restaurant.id)

    script = await services.calls.handle_keypad(order.id, "2", call.external_call_id)

    assert "already been processed" in script
    log = (await call_logs(services, order.id))[0]
    assert log.response_data["outcome"] == "already_processed"
    assert await order_status(services, order.id) == OrderStatus.CONFIRMED


async def test_keypad_without_recorded_call_creates_attempt(services, order):
    await services.calls.handle_keypad(order.id, "2", "CA_unknown")

    logs = await call_logs(services, order.id)
    assert len(logs) == 1
    assert logs[0].external_call_id == "CA_unknown"
    assert logs[0].response_type == CallResponseType.REJECTED


async def test_keypad_for_missing_order(services):
    assert "Order not found" in await services.calls.handle_keypad("nope", "1")


async def test_no_response_times_out(services, order, call):
    script = await services.calls.handle_no_response(order.id, call.external_call_id)

    assert "No response received" in script
    assert (await call_logs(services, order.id))[0].response_type == CallResponseType.TIMEOUT
    assert await order_status(services, order.id) == OrderStatus.PENDING


# =============================================================================
# SCRIPTS
# =============================================================================

async def test_order_script_announces_order(services, student, order):
    script = await services.calls.order_script(order.id)

    assert f"Order number {order.short_id}" in script
    assert "Order total is $10.00" in script
    assert "1 Burger" in script
    assert student.first_name in script
    assert f"/api/calls/handle-response/{order.id}" in script
    assert f"/api/calls/no-response/{order.id}" in script


async def test_order_script_for_processed_or_missing_order(services, restaurant, order):
    await services.orders.reject_order(order.id, restaurant_id=restaurant.id)

    assert "already been processed" in await services.calls.order_script(order.id)
    assert "Order not found" in await services.calls.order_script("missing")


# =============================================================================
# STATUS CALLBACKS & COST
# =============================================================================

def test_call_cost_rounds_minutes_up():
    assert call_cost(None, Decimal("0.0085")) is None
    assert call_cost(0, Decimal("0.0085")) == Decimal("0")
    assert call_cost(60, Decimal("0.0085")) == Decimal("0.0085")
    assert call_cost(61, Decimal("0.0085")) == Decimal("0.0170")


def test_response_type_only_moves_forward():
    answered = CallResponseType.ANSWERED
    assert advance_response_type(answered, "ringing") == answered
    assert advance_response_type(CallResponseType.INITIATED, "in-progress") == answered
    assert advance_response_type(CallResponseType.ACCEPTED, "no-answer") == CallResponseType.ACCEPTED
    assert advance_response_type(answered, "completed") == answered
    assert advance_response_type(answered, "something-new") == answered


async def test_status_callback_is_idempotent(services, order, call):
    sid = call.external_call_id

    await services.calls.handle_status_callback(sid, "ringing")
    await services.calls.handle_status_callback(sid, "completed", 75)
    await services.calls.handle_status_callback(sid, "completed", 75)
    await services.calls.handle_status_callback(sid, "ringing")

    log = (await call_logs(services, order.id))[0]
    assert log.response_type == CallResponseType.RINGING
    assert log.duration == 75
    assert log.cost == Decimal("0.0170")
    assert log.provider_status == "ringing"


async def test_status_callback_never_overrides_keypad_outcome(services, order, call):
    await services.calls.handle_keypad(order.id, "1", call.external_call_id)

    await services.calls.handle_status_callback(call.external_call_id, "no-answer", 12)

    log = (await call_logs(services, order.id))[0]
    assert log.response_type == CallResponseType.ACCEPTED
    assert log.duration == 12


async def test_status_callback_unknown_call(services):
    assert await services.calls.handle_status_callback("CA_nobody", "ringing") is None


async def test_unanswered_call_times_out(services, order, call):
    await services.calls.handle_status_callback(call.external_call_id, "no-answer", 0)

    log = (await call_logs(services, order.id))[0]
    assert log.response_type == CallResponseType.TIMEOUT
    assert log.cost == Decimal("0")


# =============================================================================
# RETRIES
# =============================================================================

@pytest.mark.parametrize("call_retries", [0, 1, 2, 3, 4, 5])
async def test_retry_bound(services, seed, student, call_retries):
    restaurant = await seed.restaurant(call_retries=call_retries)
    item = await seed.menu_item(restaurant)
    order = await place_order(services, student, restaurant, item)

    await services.calls.initiate_call(order.id)
    for _ in range(call_retries):
        await services.calls.retry_call(order.id, restaurant_id=restaurant.id)

    with pytest.raises(RetryLimitExceeded):
        await services.calls.retry_call(order.id, restaurant_id=restaurant.id)
    assert len(await call_logs(services, order.id)) == call_retries + 1


async def test_failed_attempts_count_toward_retries(services, seed, student):
    restaurant = await seed.restaurant(call_retries=1)
    item = await seed.menu_item(restaurant)
    order = await place_order(services, student, restaurant, item)
    services.calls.telephony = MockTelephonyService(failure_rate=1.0)

    with pytest.raises(ExternalServiceUnavailable):
        await services.calls.initiate_call(order.id)
    with pytest.raises(ExternalServiceUnavailable):
        await services.calls.retry_call(order.id)
    with pytest.raises(RetryLimitExceeded):
        await services.calls.retry_call(order.id)


async def test_concurrent_retries_respect_bound(concurrent_services, concurrent_seed, telephony):
    student = await concurrent_seed.account(balance="50.00")
    restaurant = await concurrent_seed.restaurant(call_retries=1)
    item = await concurrent_seed.menu_item(restaurant)
    order = await place_order(concurrent_services, student, restaurant, item)
    await concurrent_services.calls.initiate_call(order.id)

    results = await asyncio.gather(
        concurrent_services.calls.retry_call(order.id, restaurant_id=restaurant.id),
        concurrent_services.calls.retry_call(order.id, restaurant_id=restaurant.id),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, RetryLimitExceeded)) == 1
    logs = await call_logs(concurrent_services, order.id)
    assert len(logs) == 2
    assert len(telephony.placed_calls) == 2
    assert all(log.external_call_id for log in logs)


async def test_attempt_recorded_before_dialing(services, telephony, order):
    recorded = []
    place_call = telephony.place_call

    async def place_and_inspect(**kwargs):
        recorded.extend(await call_logs(services, order.id))
        return await place_call(**kwargs)

    telephony.place_call = place_and_inspect
    call = await services.calls.initiate_call(order.id)

    assert [log.response_type for log in recorded] == [CallResponseType.INITIATED]
    assert recorded[0].external_call_id is None
    assert call.id == recorded[0].id
    assert call.external_call_id.startswith("CA_mock_")


async def test_retry_requires_pending_order(services, restaurant, order, call):
    await services.orders.reject_order(order.id, restaurant_id=restaurant.id)

    with pytest.raises(Conflict):
        await services.calls.retry_call(order.id, restaurant_id=restaurant.id)


# =============================================================================
# SETTINGS & REPORTS
# =============================================================================

async def test_update_call_settings(services, restaurant):
    updated = await services.calls.update_call_settings(
        restaurant.id, call_enabled=False, call_phone="+15557770000", call_retries=5, call_timeout_seconds=120
    )

    assert updated.call_enabled is False
    assert updated.call_number == "+15557770000"
    assert updated.call_retries == 5
    assert updated.call_timeout_seconds == 120


@pytest.mark.parametrize("changes", [
    {"call_retries": -1},
    {"call_retries": 6},
    {"call_timeout_seconds": 14},
    {"call_timeout_seconds": 121},
])
async def test_call_settings_bounds(services, restaurant, changes):
    with pytest.raises(InvalidRequest):
        await services.calls.update_call_settings(restaurant.id, **changes)


async def test_history_and_analytics(services, restaurant, order, call):
    await services.calls.handle_keypad(order.id, "1", call.external_call_id)
    await services.calls.handle_status_callback(call.external_call_id, "completed", 90)

    history = await services.calls.call_history(restaurant.id)
    assert history["total_calls"] == 1
    assert Decimal(str(history["total_cost"])) == Decimal("0.0170")
    assert history["calls"][0].id == call.id

    analytics = await services.calls.call_analytics()
    assert analytics["total_calls"] == 1
    assert analytics["total_duration"] == 90
    assert Decimal(str(analytics["total_cost"])) == Decimal("0.0170")
    assert analytics["acceptance_rate"] == 1.0
    assert analytics["by_response_type"] == {"ACCEPTED": 1}
    assert analytics["by_restaurant"][0]["restaurant_id"] == restaurant.id


async def test_analytics_date_range(services, order, call):
    await services.calls.handle_status_callback(call.external_call_id, "completed", 30)
    now = datetime.now(timezone.utc)

    inside = await services.calls.call_analytics(start_date=now - timedelta(hours=1), end_date=now + timedelta(hours=1))
    assert inside["total_calls"] == 1
    assert inside["total_duration"] == 30

    later = await services.calls.call_analytics(start_date=now + timedelta(hours=1))
    assert later["total_calls"] == 0
    assert later["total_duration"] == 0
    assert later["acceptance_rate"] == 0.0
    assert later["by_restaurant"] == []

    earlier = await services.calls.call_analytics(end_date=now - timedelta(hours=1))
    assert earlier["total_calls"] == 0


async def test_list_call_settings(services, seed, restaurant):
    await seed.restaurant(name="Arepa Stand", call_enabled=False)

    listed = await services.calls.list_call_settings()

    assert [r.name for r in listed] == ["Arepa Stand", "Campus Grill"]
    assert listed[0].call_enabled is False
    assert listed[1].id == restaurant.id
