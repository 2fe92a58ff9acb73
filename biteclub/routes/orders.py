"""
Order endpoints for students (checkout, history) and restaurants
(accept, reject, close out).

Side effects of a transition (restaurant call, POS sync) are queued in
the outbox by the service and dispatched after the response is sent.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from biteclub.models import Account, AccountRole, OrderStatus, Restaurant
from biteclub.routes.deps import current_restaurant, get_services, require_role
from biteclub.schemas import (
    ActiveCountResponse,
    OrderCreate,
    OrderCreateResponse,
    OrderListResponse,
    OrderResponse,
    PromotionCheck,
    PromotionPreview,
    RejectRequest,
)
from biteclub.services import ServiceContainer
from biteclub.services.orders import OrderLine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["Orders"])

student_only = require_role(AccountRole.STUDENT)


# =============================================================================
# STUDENT
# =============================================================================

@router.post("", response_model=OrderCreateResponse, status_code=201, summary="Create Order")
async def create_order(
    payload: OrderCreate,
    background_tasks: BackgroundTasks,
    account: Account = Depends(student_only),
    services: ServiceContainer = Depends(get_services),
) -> OrderCreateResponse:
    """
    Place a PENDING order. Nothing is charged until the restaurant
    accepts; ``balance_sufficient`` tells the client whether acceptance
    would currently succeed.
    """
    creation = await services.orders.create_order(
        account_id=account.id,
        restaurant_id=payload.restaurant_id,
        items=[
            OrderLine(
                menu_item_id=item.menu_item_id,
                quantity=item.quantity,
                modifiers_selected=item.modifiers_selected,
                custom_instructions=item.custom_instructions or "",
            )
            for item in payload.items
        ],
        subtotal=payload.total_amount,
        custom_instructions=payload.custom_instructions,
    )
    background_tasks.add_task(services.outbox.dispatch_pending, creation.order.id)

    message = "Order placed successfully"
    if not creation.balance_sufficient:
        message += "; add credits before the restaurant accepts it"

    return OrderCreateResponse(
        success=True,
        message=message,
        order=OrderResponse.model_validate(creation.order),
        promotions=PromotionPreview.model_validate(creation.promotions),
        balance_sufficient=creation.balance_sufficient,
    )


@router.post("/check-promotions", response_model=PromotionPreview, summary="Preview Promotions")
async def check_promotions(
    payload: PromotionCheck,
    account: Account = Depends(student_only),
    services: ServiceContainer = Depends(get_services),
) -> PromotionPreview:
    result = await services.orders.preview_promotions(account.id, payload.restaurant_id, payload.total_amount)
    return PromotionPreview.model_validate(result)


@router.get("/my-orders", response_model=OrderListResponse)
async def my_orders(
    account: Account = Depends(student_only),
    services: ServiceContainer = Depends(get_services),
) -> OrderListResponse:
    orders = await services.orders.list_for_account(account.id)
    return OrderListResponse(
        total=len(orders),
        orders=[OrderResponse.model_validate(o) for o in orders],
    )


# =============================================================================
# RESTAURANT
# =============================================================================

@router.get("/restaurant", response_model=OrderListResponse)
async def restaurant_orders(
    status: Optional[OrderStatus] = Query(None),
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> OrderListResponse:
    orders = await services.orders.list_for_restaurant(restaurant.id, status=status)
    return OrderListResponse(
        total=len(orders),
        orders=[OrderResponse.model_validate(o) for o in orders],
    )


@router.get("/restaurant/active-count", response_model=ActiveCountResponse)
async def active_count(
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> ActiveCountResponse:
    return ActiveCountResponse(count=await services.orders.active_order_count(restaurant.id))


@router.put("/{order_id}/accept", response_model=OrderResponse, summary="Accept Order")
async def accept_order(
    order_id: str,
    background_tasks: BackgroundTasks,
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> OrderResponse:
    """Confirm the order and charge the student."""
    order = await services.orders.accept_order(order_id, restaurant_id=restaurant.id)
    background_tasks.add_task(services.outbox.dispatch_pending, order.id)
    return OrderResponse.model_validate(order)


@router.put("/{order_id}/reject", response_model=OrderResponse, summary="Reject Order")
async def reject_order(
    order_id: str,
    payload: Optional[RejectRequest] = None,
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> OrderResponse:
    order = await services.orders.reject_order(
        order_id,
        restaurant_id=restaurant.id,
        reason=payload.reason if payload else None,
    )
    return OrderResponse.model_validate(order)


@router.put("/{order_id}/complete", response_model=OrderResponse, summary="Close Out Order")
async def complete_order(
    order_id: str,
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> OrderResponse:
    order = await services.orders.closeout_order(order_id, restaurant_id=restaurant.id)
    return OrderResponse.model_validate(order)
