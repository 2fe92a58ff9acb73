"""
Credit endpoints: balance, purchases through the payment provider and
the provider's webhook.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from biteclub.models import Account, AccountRole
from biteclub.routes.deps import current_account, get_services, require_role
from biteclub.schemas import (
    BalanceResponse,
    CheckoutRequest,
    CheckoutResponse,
    ConfirmPurchaseRequest,
    CreditReceiptResponse,
    LedgerEntryResponse,
)
from biteclub.services import ServiceContainer
from biteclub.services.credits import CreditReceipt

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/credits", tags=["Credits"])


def receipt_response(receipt: CreditReceipt) -> CreditReceiptResponse:
    return CreditReceiptResponse(
        success=True,
        amount=receipt.entry.amount,
        new_balance=receipt.balance,
        transaction_id=receipt.entry.id,
        duplicate=receipt.duplicate,
    )


@router.get("/balance", response_model=BalanceResponse)
async def balance(
    limit: int = Query(20, ge=1, le=100),
    account: Account = Depends(current_account),
    services: ServiceContainer = Depends(get_services),
) -> BalanceResponse:
    """Current balance and the most recent transactions."""
    amount, history = await services.credits.balance(account.id, limit=limit)
    return BalanceResponse(
        balance=amount,
        transactions=[LedgerEntryResponse.model_validate(e) for e in history],
    )


@router.post("/purchase", response_model=CheckoutResponse, summary="Start Credit Purchase")
async def purchase(
    payload: CheckoutRequest,
    account: Account = Depends(require_role(AccountRole.STUDENT)),
    services: ServiceContainer = Depends(get_services),
) -> CheckoutResponse:
    checkout = await services.credits.start_checkout(account.id, payload.amount)
    return CheckoutResponse(session_id=checkout.session_id, url=checkout.url)


@router.post("/purchase/confirm", response_model=CreditReceiptResponse, summary="Confirm Credit Purchase")
async def confirm_purchase(
    payload: ConfirmPurchaseRequest,
    account: Account = Depends(require_role(AccountRole.STUDENT)),
    services: ServiceContainer = Depends(get_services),
) -> CreditReceiptResponse:
    """Credit a completed checkout. Confirming the same payment twice is harmless."""
    receipt = await services.credits.confirm_purchase(
        account.id,
        payment_intent_id=payload.payment_intent_id,
        session_id=payload.session_id,
    )
    return receipt_response(receipt)


@router.post("/webhook", summary="Payment Provider Webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    body = await request.body()
    event = await services.payment.verify_webhook(body, stripe_signature)
    if event is None:
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    logger.info(f"Payment webhook received: {event.get('type', 'unknown')}")
    receipt = await services.credits.handle_webhook_event(event)
    return {
        "received": True,
        "credited": receipt is not None and not receipt.duplicate,
    }
