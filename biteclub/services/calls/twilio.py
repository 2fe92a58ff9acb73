"""
Twilio Telephony Service Implementation

Production implementation using the official Twilio Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN
    - TWILIO_PHONE_NUMBER: caller id the restaurant sees

The SDK is synchronous; every API call runs in a worker thread so the
event loop keeps serving webhooks while a call is being placed.

Version: 1.0.0
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from twilio.base.exceptions import TwilioException
from twilio.request_validator import RequestValidator
from twilio.rest import Client as TwilioClient

from biteclub.core.config import Settings, get_settings
from biteclub.services.calls.base import BaseTelephonyService, CallPlacement, TelephonyError

logger = logging.getLogger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


class TwilioTelephonyService(BaseTelephonyService):
    """Places IVR calls through Twilio Programmable Voice."""

    def __init__(self, settings: Optional[Settings] = None):
        """
        Raises:
            ValueError: If Twilio credentials are not configured
        """
        settings = settings or get_settings()

        if not (settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_phone_number):
            raise ValueError(
                "TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER are required "
                "for production mode. Set them in your .env file or environment variables."
            )

        self.account_sid = settings.twilio_account_sid
        self.from_number = settings.twilio_phone_number
        self.client = TwilioClient(settings.twilio_account_sid, settings.twilio_auth_token)
        self.validator = RequestValidator(settings.twilio_auth_token)

        logger.info(f"TwilioTelephonyService initialized (from={self.from_number})")

    @property
    def provider_name(self) -> str:
        return "twilio"

    async def place_call(
        self,
        to_number: str,
        script_url: str,
        timeout_seconds: int,
        status_callback_url: str,
    ) -> CallPlacement:
        start_time = datetime.now()
        logger.info(f"Twilio: Calling {to_number} (script={script_url})")

        try:
            call = await asyncio.to_thread(
                self.client.calls.create,
                to=to_number,
                from_=self.from_number,
                url=script_url,
                timeout=timeout_seconds,
                status_callback=status_callback_url,
                status_callback_event=STATUS_CALLBACK_EVENTS,
                status_callback_method="POST",
            )
        except TwilioException as e:
            logger.error(f"Twilio: Call to {to_number} failed - {e}")
            raise TelephonyError(str(e)) from e

        elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
        logger.info(f"Twilio: Call {call.sid} created - status={call.status}")

        return CallPlacement(
            external_call_id=call.sid,
            status=call.status or "queued",
            response_time_ms=elapsed_ms,
        )

    def validate_request(self, url: str, params: dict, signature: Optional[str]) -> bool:
        if not signature:
            return False
        return self.validator.validate(url, params, signature)

    async def health_check(self) -> bool:
        try:
            await asyncio.to_thread(self.client.api.accounts(self.account_sid).fetch)
            return True
        except TwilioException as e:
            logger.error(f"Twilio health check failed: {e}")
            return False
