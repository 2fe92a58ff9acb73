"""
Retry and cost accounting for IVR calls.

Pure helpers shared by the call state machine and its reports.
"""

import math
from decimal import Decimal
from typing import Optional

from biteclub.models import CallResponseType

COST_PLACES = Decimal("0.0001")

# Provider status -> response type it implies. ``completed`` only ends the
# call; the keypad outcome (or lack of one) decides the type.
STATUS_RESPONSE_TYPES = {
    "queued": CallResponseType.INITIATED,
    "initiated": CallResponseType.INITIATED,
    "ringing": CallResponseType.RINGING,
    "in-progress": CallResponseType.ANSWERED,
    "answered": CallResponseType.ANSWERED,
    "no-answer": CallResponseType.TIMEOUT,
    "busy": CallResponseType.FAILED,
    "failed": CallResponseType.FAILED,
    "canceled": CallResponseType.FAILED,
}


def call_cost(duration_seconds: Optional[int], cost_per_minute: Decimal) -> Optional[Decimal]:
    """Billed minutes rounded up, times the per-minute price. None without a duration."""
    if duration_seconds is None:
        return None
    if duration_seconds <= 0:
        return Decimal("0.0000")
    minutes = math.ceil(duration_seconds / 60)
    return (Decimal(minutes) * Decimal(str(cost_per_minute))).quantize(COST_PLACES)


def max_attempts(call_retries: int) -> int:
    """The first call plus ``call_retries`` retries."""
    return call_retries + 1


def retries_exhausted(attempts: int, call_retries: int) -> bool:
    return attempts >= max_attempts(call_retries)


def advance_response_type(
    current: CallResponseType,
    provider_status: str,
) -> CallResponseType:
    """
    Response type after a provider status event.

    Never moves backwards and never leaves a terminal state, so callbacks
    may arrive duplicated or out of order.
    """
    if current.is_terminal:
        return current
    target = STATUS_RESPONSE_TYPES.get((provider_status or "").lower())
    if target is None or target.rank <= current.rank:
        return current
    return target
