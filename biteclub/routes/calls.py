"""
IVR call endpoints.

The telephony provider drives the ``/twiml``, ``/handle-response``,
``/no-response`` and ``/status-callback`` webhooks with form posts; each
is checked against the provider's request signature before anything
runs. The remaining endpoints are the restaurant's call settings and
history, manual retry, and the admin settings and analytics views.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response

from biteclub.core.exceptions import BiteClubError
from biteclub.models import AccountRole, Restaurant
from biteclub.routes.deps import current_restaurant, get_services, require_role
from biteclub.schemas import (
    CallHistoryResponse,
    CallLogResponse,
    CallSettingsResponse,
    CallSettingsUpdate,
    RestaurantCallSettingsResponse,
)
from biteclub.services import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calls", tags=["Calls"])


def twiml(content: str) -> Response:
    return Response(content=content, media_type="application/xml")


async def provider_params(
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> dict:
    """Form fields of a signed provider webhook; unsigned requests get 403."""
    params = {key: value for key, value in (await request.form()).items()} if request.method == "POST" else {}

    # The provider signs the public URL it was given, not the one we see behind the proxy
    url = services.settings.app_base_url.rstrip("/") + request.url.path
    if request.url.query:
        url += f"?{request.url.query}"

    signature = request.headers.get("X-Twilio-Signature")
    if not services.telephony.validate_request(url, params, signature):
        logger.warning(f"Rejected unsigned telephony webhook for {request.url.path}")
        raise HTTPException(status_code=403, detail="Invalid request signature")
    return params


# =============================================================================
# PROVIDER WEBHOOKS
# =============================================================================

@router.api_route(
    "/twiml/{order_id}",
    methods=["GET", "POST"],
    dependencies=[Depends(provider_params)],
    summary="Order Announcement TwiML",
)
async def order_twiml(
    order_id: str,
    services: ServiceContainer = Depends(get_services),
) -> Response:
    return twiml(await services.calls.order_script(order_id))


@router.post("/handle-response/{order_id}", summary="Keypad Input")
async def handle_response(
    order_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    params: dict = Depends(provider_params),
    services: ServiceContainer = Depends(get_services),
) -> Response:
    digits = params.get("Digits")
    call_sid = params.get("CallSid")
    logger.info(f"Keypad {digits!r} for order #{order_id} (call {call_sid})")

    # Same token on every redelivery of one webhook
    request_id = request.headers.get("I-Twilio-Idempotency-Token")

    try:
        content = await services.calls.handle_keypad(
            order_id, digits, external_call_id=call_sid, request_id=request_id
        )
    except BiteClubError as e:
        logger.error(f"Keypad handling failed for order #{order_id}: {e.message}")
        content = services.calls.scripts.error()

    # An accepted order has a POS sync waiting in the outbox
    background_tasks.add_task(services.outbox.dispatch_pending, order_id)
    return twiml(content)


@router.post("/no-response/{order_id}", summary="Keypad Timeout")
async def no_response(
    order_id: str,
    params: dict = Depends(provider_params),
    services: ServiceContainer = Depends(get_services),
) -> Response:
    content = await services.calls.handle_no_response(order_id, external_call_id=params.get("CallSid"))
    return twiml(content)


@router.post("/status-callback", summary="Call Progress Callback")
async def status_callback(
    params: dict = Depends(provider_params),
    services: ServiceContainer = Depends(get_services),
) -> Response:
    call_sid = params.get("CallSid")
    status = params.get("CallStatus")
    if not call_sid or not status:
        raise HTTPException(status_code=400, detail="CallSid and CallStatus are required")

    raw_duration = params.get("CallDuration")
    duration = int(raw_duration) if raw_duration and raw_duration.isdigit() else None

    await services.calls.handle_status_callback(call_sid, status, duration)
    return twiml("<Response></Response>")


# =============================================================================
# RESTAURANT
# =============================================================================

@router.get("/settings", response_model=CallSettingsResponse)
async def get_call_settings(
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> CallSettingsResponse:
    return CallSettingsResponse.model_validate(await services.calls.call_settings(restaurant.id))


@router.put("/settings", response_model=CallSettingsResponse)
async def update_call_settings(
    payload: CallSettingsUpdate,
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> CallSettingsResponse:
    updated = await services.calls.update_call_settings(restaurant.id, **payload.model_dump(exclude_unset=True))
    return CallSettingsResponse.model_validate(updated)


@router.get("/history", response_model=CallHistoryResponse)
async def call_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> CallHistoryResponse:
    history = await services.calls.call_history(restaurant.id, limit=limit, offset=offset)
    return CallHistoryResponse(
        calls=[CallLogResponse.model_validate(c) for c in history["calls"]],
        total_calls=history["total_calls"],
        total_cost=history["total_cost"],
    )


@router.post("/retry/{order_id}", response_model=CallLogResponse, summary="Call Restaurant Again")
async def retry_call(
    order_id: str,
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> CallLogResponse:
    call_log = await services.calls.retry_call(order_id, restaurant_id=restaurant.id)
    return CallLogResponse.model_validate(call_log)


# =============================================================================
# ADMIN
# =============================================================================

@router.get(
    "/admin/restaurants",
    response_model=list[RestaurantCallSettingsResponse],
    dependencies=[Depends(require_role(AccountRole.ADMIN))],
)
async def list_restaurant_call_settings(
    services: ServiceContainer = Depends(get_services),
) -> list[RestaurantCallSettingsResponse]:
    restaurants = await services.calls.list_call_settings()
    return [RestaurantCallSettingsResponse.model_validate(r) for r in restaurants]


@router.put(
    "/admin/restaurants/{restaurant_id}",
    response_model=RestaurantCallSettingsResponse,
    dependencies=[Depends(require_role(AccountRole.ADMIN))],
)
async def update_restaurant_call_settings(
    restaurant_id: str,
    payload: CallSettingsUpdate,
    services: ServiceContainer = Depends(get_services),
) -> RestaurantCallSettingsResponse:
    updated = await services.calls.update_call_settings(restaurant_id, **payload.model_dump(exclude_unset=True))
    return RestaurantCallSettingsResponse.model_validate(updated)


@router.get("/admin/analytics", dependencies=[Depends(require_role(AccountRole.ADMIN))])
async def call_analytics(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    return await services.calls.call_analytics(start_date=start_date, end_date=end_date)
