"""
Mock Telephony Service Implementation

Simulates Twilio call placement without dialling anyone. Used in
development mode (ENV_MODE=development) and in tests to:
    - Exercise the IVR flow end to end with curl or the simulator
    - Record every placed call for assertions

Behavior:
    - Generates Twilio-like call SIDs (CA_mock_xxx)
    - Randomly fails a configurable share of calls
    - Accepts every webhook signature

Version: 1.0.0
"""

import asyncio
import logging
import random
import uuid
from datetime import datetime
from typing import Optional

from biteclub.services.calls.base import BaseTelephonyService, CallPlacement, TelephonyError

logger = logging.getLogger(__name__)


class MockTelephonyService(BaseTelephonyService):
    """
    Mock implementation of the telephony service.

    Attributes:
        failure_rate: Probability of a simulated provider error (0.0-1.0)
        latency: Simulated API latency in seconds
        placed_calls: Every successful placement, oldest first
    """

    def __init__(self, failure_rate: float = 0.0, latency: float = 0.0):
        self.failure_rate = failure_rate
        self.latency = latency
        self.placed_calls: list[dict] = []

        logger.info(f"MockTelephonyService initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def place_call(
        self,
        to_number: str,
        script_url: str,
        timeout_seconds: int,
        status_callback_url: str,
    ) -> CallPlacement:
        start_time = datetime.now()
        if self.latency:
            await asyncio.sleep(self.latency)

        if random.random() < self.failure_rate:
            logger.warning(f"Mock: Simulated call failure to {to_number}")
            raise TelephonyError("Simulated provider failure")

        call_id = f"CA_mock_{uuid.uuid4().hex[:24]}"
        self.placed_calls.append({
            "external_call_id": call_id,
            "to": to_number,
            "url": script_url,
            "timeout": timeout_seconds,
            "status_callback": status_callback_url,
        })

        logger.info(f"Mock: Call {call_id} placed to {to_number} (script={script_url})")

        elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
        return CallPlacement(external_call_id=call_id, status="queued", response_time_ms=elapsed_ms)

    def validate_request(self, url: str, params: dict, signature: Optional[str]) -> bool:
        return True

    async def health_check(self) -> bool:
        return True
