"""
Administrator endpoints: refunds and manual credit grants.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from biteclub.models import AccountRole
from biteclub.routes.credits import receipt_response
from biteclub.routes.deps import get_services, require_role
from biteclub.schemas import (
    AdminAddCredits,
    CreditReceiptResponse,
    OrderResponse,
    RefundRequest,
    RefundResponse,
)
from biteclub.services import ServiceContainer

router = APIRouter(
    prefix="/api/admin",
    tags=["Admin"],
    dependencies=[Depends(require_role(AccountRole.ADMIN))],
)


@router.post("/orders/{order_id}/refund", response_model=RefundResponse, summary="Refund Order")
async def refund_order(
    order_id: str,
    payload: Optional[RefundRequest] = None,
    services: ServiceContainer = Depends(get_services),
) -> RefundResponse:
    """
    Mark an order REFUNDED and credit the student back what they were
    charged. Orders that were never charged get no credit.
    """
    outcome = await services.orders.refund_order(order_id, reason=payload.reason if payload else None)
    return RefundResponse(
        success=True,
        order=OrderResponse.model_validate(outcome.order),
        refund_amount=outcome.refund_amount,
        was_charged=outcome.was_charged,
    )


@router.post("/credits/add", response_model=CreditReceiptResponse, summary="Add Credits")
async def add_credits(
    payload: AdminAddCredits,
    services: ServiceContainer = Depends(get_services),
) -> CreditReceiptResponse:
    receipt = await services.credits.admin_add_credits(payload.account_id, payload.amount, payload.reason)
    return receipt_response(receipt)
