"""
IVR Call State Machine

Places the restaurant notification call for a new order and turns the
provider's asynchronous callbacks into CallLog updates and order
transitions.

Call attempt lifecycle (``CallLog.response_type``):

    INITIATED -> RINGING -> ANSWERED -> AWAITING_DIGIT_REPEAT
        -> ACCEPTED | REJECTED | SUPPORT_REQUESTED
         | INVALID_RESPONSE | FAILED | TIMEOUT

Progression is forward-only. Status callbacks may arrive late, twice or
out of order; keypad webhooks may be redelivered. Neither can move a call
backwards or apply an order transition twice.

Version: 1.0.0
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from biteclub.core.config import Settings
from biteclub.core.exceptions import (
    BiteClubError,
    CallingDisabled,
    Conflict,
    ExternalServiceUnavailable,
    InsufficientBalance,
    InvalidRequest,
    NoPhoneNumber,
    NotFound,
    RetryLimitExceeded,
)
from biteclub.database import Database
from biteclub.models import TERMINAL_CALL_STATES, CallLog, CallResponseType, Order, OrderStatus, Restaurant
from biteclub.services.calls.accounting import advance_response_type, call_cost, retries_exhausted
from biteclub.services.calls.base import BaseTelephonyService, TelephonyError
from biteclub.services.calls.scripts import IVRScripts
from biteclub.services.orders import OrderService

logger = logging.getLogger(__name__)

CALL_RETRIES_RANGE = (0, 5)
CALL_TIMEOUT_RANGE = (15, 120)


class CallService:
    """
    Restaurant notification calls.

    Args:
        database: Storage handle
        orders: Order state machine driven by keypad input
        telephony: Provider placing the calls
        settings: Base URL, pricing and IVR limits
    """

    def __init__(
        self,
        database: Database,
        orders: OrderService,
        telephony: BaseTelephonyService,
        settings: Settings,
    ):
        self.database = database
        self.orders = orders
        self.telephony = telephony
        self.settings = settings
        self.scripts = IVRScripts(
            brand_name=settings.brand_name,
            voice=settings.twilio_voice,
            support_number=settings.support_phone_number,
        )

    # =========================================================================
    # PLACING CALLS
    # =========================================================================

    async def initiate_call(self, order_id: str) -> CallLog:
        """
        Dial the restaurant for an order and record the attempt.

        Raises:
            NotFound: order does not exist
            CallingDisabled: restaurant turned calls off (no attempt recorded)
            NoPhoneNumber: restaurant has no number (no attempt recorded)
            ExternalServiceUnavailable: provider error (FAILED attempt recorded)
        """
        call_log, restaurant = await self._reserve_attempt(order_id)
        return await self._dial(call_log, restaurant)

    async def notify_restaurant(self, order_id: str) -> Optional[CallLog]:
        """Call the restaurant about a new order; failures are logged, never raised."""
        try:
            return await self.initiate_call(order_id)
        except BiteClubError as e:
            logger.warning(f"Restaurant not called for order #{order_id}: {e.message}")
        except Exception as e:
            logger.exception(f"Unexpected error calling restaurant for order #{order_id}: {e}")
        return None

    async def retry_call(self, order_id: str, restaurant_id: Optional[str] = None) -> CallLog:
        """
        Place another call for a still-pending order.

        The attempt count is checked and the new attempt recorded under the
        order row lock, so concurrent retries never exceed the limit.

        Raises:
            NotFound: order missing or not owned by ``restaurant_id``
            Conflict: order is no longer PENDING
            RetryLimitExceeded: ``call_retries + 1`` attempts already made
        """
        call_log, restaurant = await self._reserve_attempt(order_id, restaurant_id=restaurant_id, retry=True)
        return await self._dial(call_log, restaurant)

    async def _reserve_attempt(
        self,
        order_id: str,
        restaurant_id: Optional[str] = None,
        retry: bool = False,
    ) -> tuple[CallLog, Restaurant]:
        """Record an INITIATED attempt before the provider is contacted."""
        async with self.database.transaction() as session:
            order = await session.get(Order, order_id, with_for_update=True, populate_existing=True)
            if order is None or (restaurant_id is not None and order.restaurant_id != restaurant_id):
                raise NotFound(f"Order #{order_id} not found or access denied")
            restaurant = order.restaurant

            if retry:
                if order.status != OrderStatus.PENDING:
                    raise Conflict(f"Order #{order_id} is {order.status.value}, only pending orders can be called")
                attempts = await session.scalar(
                    select(func.count(CallLog.id)).where(CallLog.order_id == order_id)
                )
                if retries_exhausted(attempts or 0, restaurant.call_retries):
                    raise RetryLimitExceeded(
                        f"Maximum retry attempts exceeded ({attempts} of {restaurant.call_retries + 1})"
                    )

            if not restaurant.call_enabled:
                raise CallingDisabled(f"Calling disabled for restaurant {restaurant.name}")
            if not restaurant.call_number:
                raise NoPhoneNumber(f"No phone number configured for restaurant {restaurant.name}")

            call_log = CallLog(
                order_id=order_id,
                restaurant_id=restaurant.id,
                response_type=CallResponseType.INITIATED,
                success=False,
            )
            session.add(call_log)

        return call_log, restaurant

    async def _dial(self, call_log: CallLog, restaurant: Restaurant) -> CallLog:
        """Place a reserved attempt and attach the provider's call id to it."""
        order_id = call_log.order_id
        phone_number = restaurant.call_number
        base_url = self.settings.app_base_url.rstrip("/")
        logger.info(f"Calling {restaurant.name} at {phone_number} for order #{order_id}")

        try:
            placement = await self.telephony.place_call(
                to_number=phone_number,
                script_url=f"{base_url}/api/calls/twiml/{order_id}",
                timeout_seconds=restaurant.call_timeout_seconds,
                status_callback_url=f"{base_url}/api/calls/status-callback",
            )
        except TelephonyError as e:
            async with self.database.transaction() as session:
                call_log = await session.get(CallLog, call_log.id, with_for_update=True)
                call_log.response_type = CallResponseType.FAILED
                call_log.response_data = {"error": str(e)}
            raise ExternalServiceUnavailable(f"Could not place call: {e}") from e

        async with self.database.transaction() as session:
            call_log = await session.get(CallLog, call_log.id, with_for_update=True)
            call_log.external_call_id = placement.external_call_id
            call_log.provider_status = placement.status

        logger.info(f"Call {placement.external_call_id} initiated for order #{order_id}")
        return call_log

    # =========================================================================
    # PROVIDER WEBHOOKS
    # =========================================================================

    async def order_script(self, order_id: str) -> str:
        """TwiML fetched by the provider when the restaurant picks up."""
        async with self.database.session() as session:
            order = await session.get(Order, order_id)
        if order is None:
            return self.scripts.order_not_found()
        if order.status != OrderStatus.PENDING:
            return self.scripts.already_processed()
        return self.scripts.order_menu(order)

    async def handle_status_callback(
        self,
        external_call_id: str,
        status: str,
        duration: Optional[int] = None,
    ) -> Optional[CallLog]:
        """
        Apply a call progress event to the attempt it belongs to.

        Duration, cost and provider status are last-write-wins; the
        response type only moves forward. Unknown call ids are ignored.
        """
        async with self.database.transaction() as session:
            call_log = await session.scalar(
                select(CallLog)
                .where(CallLog.external_call_id == external_call_id)
                .order_by(CallLog.id.desc())
                .limit(1)
                .with_for_update()
            )
            if call_log is None:
                logger.warning(f"Status callback for unknown call {external_call_id} ({status})")
                return None

            call_log.provider_status = status
            if duration is not None:
                call_log.duration = duration
                call_log.cost = call_cost(duration, self.settings.call_cost_per_minute)
            call_log.response_type = advance_response_type(call_log.response_type, status)

        logger.info(
            f"Call {external_call_id} status={status} "
            f"type={call_log.response_type.value} duration={duration}"
        )
        return call_log

    async def handle_keypad(
        self,
        order_id: str,
        digits: Optional[str],
        external_call_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> str:
        """
        Act on the digit the restaurant pressed and return the next TwiML.

            1 -> accept the order (charges the student)
            2 -> reject the order
            3 -> repeat the order details, bounded by ``ivr_max_repeats``
            0 -> connect to support
            * -> invalid selection

        The order transition and the call outcome commit together. A digit
        arriving for an attempt that already ended replays that attempt's
        closing script without touching the order again. A repeat request
        redelivered with the same ``request_id`` replays the details
        without using up another repeat.
        """
        digits = (digits or "").strip()

        async with self.database.transaction() as session:
            order = await session.get(Order, order_id, with_for_update=True)
            if order is None:
                return self.scripts.order_not_found()

            call_log = await self._find_call_log(session, order, external_call_id)

            if call_log.response_type.is_terminal:
                logger.info(
                    f"Keypad {digits!r} for finished call on order #{order_id}; replaying outcome"
                )
                return self._replay(call_log)

            call_log.keypad_response = digits
            pending = order.status == OrderStatus.PENDING

            if digits == "1":
                if not pending:
                    return self._finish(call_log, CallResponseType.INVALID_RESPONSE, "already_processed",
                                        error=f"Order is {order.status.value}")
                try:
                    await self.orders.accept_order(order_id, session=session)
                except InsufficientBalance as e:
                    return self._finish(call_log, CallResponseType.INVALID_RESPONSE, "insufficient_balance",
                                        error=e.message)
                return self._finish(call_log, CallResponseType.ACCEPTED, "accepted")

            if digits == "2":
                if not pending:
                    return self._finish(call_log, CallResponseType.INVALID_RESPONSE, "already_processed",
                                        error=f"Order is {order.status.value}")
                await self.orders.reject_order(order_id, reason="Order rejected by restaurant", session=session)
                return self._finish(call_log, CallResponseType.REJECTED, "rejected")

            if digits == "3":
                if not pending:
                    return self._finish(call_log, CallResponseType.INVALID_RESPONSE, "already_processed",
                                        error=f"Order is {order.status.value}")
                data = dict(call_log.response_data or {})
                if request_id and data.get("repeat_request_id") == request_id:
                    logger.info(f"Repeat for order #{order_id} redelivered; replaying details")
                    return self.scripts.order_menu(order, repeat=True)
                if call_log.repeat_count >= self.settings.ivr_max_repeats:
                    return self._finish(call_log, CallResponseType.INVALID_RESPONSE, "too_many_repeats",
                                        error="Repeat limit reached")
                call_log.repeat_count += 1
                if request_id:
                    data["repeat_request_id"] = request_id
                    call_log.response_data = data
                call_log.response_type = CallResponseType.AWAITING_DIGIT_REPEAT
                logger.info(f"Order #{order_id} details repeated ({call_log.repeat_count})")
                return self.scripts.order_menu(order, repeat=True)

            if digits == "0":
                return self._finish(call_log, CallResponseType.SUPPORT_REQUESTED, "support")

            return self._finish(call_log, CallResponseType.INVALID_RESPONSE, "invalid_selection",
                                error=f"Unexpected input {digits!r}")

    async def handle_no_response(self, order_id: str, external_call_id: Optional[str] = None) -> str:
        """Gather timed out without a digit; the order stays as it is."""
        async with self.database.transaction() as session:
            order = await session.get(Order, order_id)
            if order is None:
                return self.scripts.order_not_found()
            call_log = await self._find_call_log(session, order, external_call_id)
            if call_log.response_type.is_terminal:
                return self._replay(call_log)
            return self._finish(call_log, CallResponseType.TIMEOUT, "no_response")

    # =========================================================================
    # SETTINGS & REPORTS
    # =========================================================================

    async def call_settings(self, restaurant_id: str) -> Restaurant:
        async with self.database.session() as session:
            restaurant = await session.get(Restaurant, restaurant_id)
            if restaurant is None:
                raise NotFound(f"Restaurant {restaurant_id} not found")
            return restaurant

    async def list_call_settings(self) -> list[Restaurant]:
        """Call configuration of every restaurant, by name."""
        async with self.database.session() as session:
            result = await session.execute(select(Restaurant).order_by(Restaurant.name, Restaurant.id))
            return list(result.scalars().all())

    async def update_call_settings(
        self,
        restaurant_id: str,
        call_enabled: Optional[bool] = None,
        call_phone: Optional[str] = None,
        call_retries: Optional[int] = None,
        call_timeout_seconds: Optional[int] = None,
    ) -> Restaurant:
        """
        Change a restaurant's call configuration.

        Raises:
            InvalidRequest: retries outside 0-5 or timeout outside 15-120 seconds
        """
        if call_retries is not None and not CALL_RETRIES_RANGE[0] <= call_retries <= CALL_RETRIES_RANGE[1]:
            raise InvalidRequest("Call retries must be between 0 and 5")
        if call_timeout_seconds is not None and not CALL_TIMEOUT_RANGE[0] <= call_timeout_seconds <= CALL_TIMEOUT_RANGE[1]:
            raise InvalidRequest("Call timeout must be between 15 and 120 seconds")

        async with self.database.transaction() as session:
            restaurant = await session.get(Restaurant, restaurant_id, with_for_update=True)
            if restaurant is None:
                raise NotFound(f"Restaurant {restaurant_id} not found")
            if call_enabled is not None:
                restaurant.call_enabled = call_enabled
            if call_phone is not None:
                restaurant.call_phone = call_phone or None
            if call_retries is not None:
                restaurant.call_retries = call_retries
            if call_timeout_seconds is not None:
                restaurant.call_timeout_seconds = call_timeout_seconds

        logger.info(f"Call settings updated for {restaurant.name}")
        return restaurant

    async def call_history(self, restaurant_id: str, limit: int = 50, offset: int = 0) -> dict:
        """Recent attempts for one restaurant with the total spent on calls."""
        async with self.database.session() as session:
            result = await session.execute(
                select(CallLog)
                .where(CallLog.restaurant_id == restaurant_id)
                .order_by(CallLog.call_time.desc(), CallLog.id.desc())
                .limit(limit)
                .offset(offset)
            )
            calls = list(result.scalars().all())

            totals = (await session.execute(
                select(func.count(CallLog.id), func.coalesce(func.sum(CallLog.cost), 0))
                .where(CallLog.restaurant_id == restaurant_id)
            )).one()

        return {
            "calls": calls,
            "total_calls": totals[0],
            "total_cost": totals[1],
        }

    async def call_analytics(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> dict:
        """Admin view: platform totals, attempts by response type and by restaurant."""
        filters = []
        if start_date is not None:
            filters.append(CallLog.call_time >= start_date)
        if end_date is not None:
            filters.append(CallLog.call_time <= end_date)

        async with self.database.session() as session:
            overall = (await session.execute(
                select(
                    func.count(CallLog.id),
                    func.coalesce(func.sum(CallLog.cost), 0),
                    func.coalesce(func.sum(CallLog.duration), 0),
                ).where(*filters)
            )).one()
            by_type = await session.execute(
                select(CallLog.response_type, func.count(CallLog.id))
                .where(*filters)
                .group_by(CallLog.response_type)
            )
            by_restaurant = await session.execute(
                select(
                    Restaurant.id,
                    Restaurant.name,
                    func.count(CallLog.id),
                    func.coalesce(func.sum(CallLog.cost), 0),
                )
                .join(CallLog, CallLog.restaurant_id == Restaurant.id)
                .where(*filters)
                .group_by(Restaurant.id, Restaurant.name)
                .order_by(func.count(CallLog.id).desc())
            )

            response_types = {row[0].value: row[1] for row in by_type.all()}
            restaurants = [
                {"restaurant_id": row[0], "name": row[1], "calls": row[2], "cost": row[3]}
                for row in by_restaurant.all()
            ]

        total_calls = overall[0]
        accepted = response_types.get(CallResponseType.ACCEPTED.value, 0)
        return {
            "total_calls": total_calls,
            "total_cost": overall[1],
            "total_duration": int(overall[2]),
            "acceptance_rate": round(accepted / total_calls, 4) if total_calls else 0.0,
            "by_response_type": response_types,
            "by_restaurant": restaurants,
        }

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _find_call_log(
        self,
        session: AsyncSession,
        order: Order,
        external_call_id: Optional[str],
    ) -> CallLog:
        """
        The attempt a webhook refers to: by call id when the provider sent
        one, else the newest unfinished attempt, else the newest attempt.
        A webhook for an order with no recorded attempt gets a fresh row.
        """
        base = (
            select(CallLog)
            .where(CallLog.order_id == order.id)
            .order_by(CallLog.id.desc())
            .limit(1)
            .with_for_update()
        )

        call_log = None
        if external_call_id:
            call_log = await session.scalar(base.where(CallLog.external_call_id == external_call_id))
        if call_log is None:
            call_log = await session.scalar(
                base.where(CallLog.response_type.notin_(TERMINAL_CALL_STATES))
            )
        if call_log is None:
            call_log = await session.scalar(base)
        if call_log is None:
            call_log = CallLog(
                order_id=order.id,
                restaurant_id=order.restaurant_id,
                external_call_id=external_call_id,
                response_type=CallResponseType.ANSWERED,
                repeat_count=0,
                success=False,
            )
            session.add(call_log)
            await session.flush()
        return call_log

    def _finish(
        self,
        call_log: CallLog,
        response_type: CallResponseType,
        outcome: str,
        error: Optional[str] = None,
    ) -> str:
        """Move the attempt to a terminal type and return its closing script."""
        call_log.response_type = response_type
        call_log.success = response_type == CallResponseType.ACCEPTED
        data = dict(call_log.response_data or {})
        data["outcome"] = outcome
        if error:
            data["error"] = error
        call_log.response_data = data

        logger.info(
            f"Call for order #{call_log.order_id} ended {response_type.value} "
            f"(keypad={call_log.keypad_response!r})"
        )
        return self._script_for(outcome)

    def _replay(self, call_log: CallLog) -> str:
        outcome = (call_log.response_data or {}).get("outcome")
        if outcome is None:
            return self.scripts.already_processed()
        return self._script_for(outcome)

    def _script_for(self, outcome: str) -> str:
        return {
            "accepted": self.scripts.accepted,
            "rejected": self.scripts.rejected,
            "support": self.scripts.support,
            "invalid_selection": self.scripts.invalid_selection,
            "too_many_repeats": self.scripts.too_many_repeats,
            "insufficient_balance": self.scripts.insufficient_balance,
            "already_processed": self.scripts.already_processed,
            "no_response": self.scripts.no_response,
        }.get(outcome, self.scripts.already_processed)()