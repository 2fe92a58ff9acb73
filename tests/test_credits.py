from decimal import Decimal

import pytest

from biteclub.core.exceptions import Forbidden, InvalidAmount, InvalidRequest, PaymentDeclined
from biteclub.models import LedgerKind


def session_payment(payment, session_id):
    return payment.sessions[session_id]


async def test_checkout_only_offers_configured_amounts(services):
    with pytest.raises(InvalidAmount):
        await services.credits.start_checkout("anyone", "12")


async def test_checkout_urls(services, payment, student):
    checkout = await services.credits.start_checkout(student.id, "25")

    assert checkout.url.endswith(checkout.session_id)
    pi = session_payment(payment, checkout.session_id)
    assert payment.payments[pi]["metadata"]["account_id"] == student.id
    assert payment.payments[pi]["amount"] == Decimal("25.00")


async def test_confirm_purchase_by_session(services, seed, student):
    checkout = await services.credits.start_checkout(student.id, "25")

    receipt = await services.credits.confirm_purchase(student.id, session_id=checkout.session_id)

    assert receipt.duplicate is False
    assert receipt.entry.kind == LedgerKind.PURCHASE
    assert receipt.balance == Decimal("75.00")
    assert await seed.balance(student) == Decimal("75.00")


async def test_purchase_credited_once(services, payment, seed, student):
    checkout = await services.credits.start_checkout(student.id, "10")
    pi = session_payment(payment, checkout.session_id)

    first = await services.credits.confirm_purchase(student.id, payment_intent_id=pi)
    second = await services.credits.confirm_purchase(student.id, session_id=checkout.session_id)

    assert second.duplicate is True
    assert second.entry.id == first.entry.id
    assert len(await seed.entries(student, LedgerKind.PURCHASE)) == 1
    assert await seed.balance(student) == Decimal("60.00")


async def test_declined_payment(services, payment, student):
    checkout = await services.credits.start_checkout(student.id, "10")
    payment.decline(session_payment(payment, checkout.session_id))

    with pytest.raises(PaymentDeclined):
        await services.credits.confirm_purchase(student.id, session_id=checkout.session_id)


async def test_confirm_requires_reference(services, student):
    with pytest.raises(InvalidRequest):
        await services.credits.confirm_purchase(student.id)


async def test_cannot_claim_another_accounts_payment(services, seed, student):
    other = await seed.account()
    checkout = await services.credits.start_checkout(student.id, "10")

    with pytest.raises(Forbidden):
        await services.credits.confirm_purchase(other.id, session_id=checkout.session_id)


async def test_webhook_and_confirmation_share_dedupe(services, payment, seed, student):
    checkout = await services.credits.start_checkout(student.id, "50")
    pi = session_payment(payment, checkout.session_id)
    event = {
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": checkout.session_id,
            "payment_intent": pi,
            "metadata": {"account_id": student.id, "credit_amount": "50"},
        }},
    }

    from_webhook = await services.credits.handle_webhook_event(event)
    from_client = await services.credits.confirm_purchase(student.id, session_id=checkout.session_id)

    assert from_webhook.duplicate is False
    assert from_client.duplicate is True
    assert await seed.balance(student) == Decimal("100.00")


async def test_webhook_ignores_unrelated_events(services):
    assert await services.credits.handle_webhook_event({"type": "customer.created", "data": {"object": {}}}) is None
    assert await services.credits.handle_webhook_event({
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_x", "metadata": {}}},
    }) is None


async def test_admin_add_credits(services, seed, student):
    receipt = await services.credits.admin_add_credits(student.id, "7.25", "Goodwill")

    assert receipt.entry.kind == LedgerKind.ADMIN_ADD
    assert receipt.entry.description == "Goodwill"
    assert receipt.balance == Decimal("57.25")


async def test_balance_history_newest_first(services, student):
    await services.credits.admin_add_credits(student.id, "1.00")

    balance, history = await services.credits.balance(student.id)

    assert balance == Decimal("51.00")
    assert [e.amount for e in history] == [Decimal("1.00"), Decimal("50.00")]
