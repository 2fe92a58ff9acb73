"""
Telephony Service Factory & IVR Calls

Usage:
    from biteclub.services.calls import build_telephony_service

    # MockTelephonyService or TwilioTelephonyService depending on ENV_MODE
    telephony = build_telephony_service(settings)

Environment Switching:
    - ENV_MODE=development → MockTelephonyService (no calls placed)
    - ENV_MODE=staging → TwilioTelephonyService (test numbers)
    - ENV_MODE=production → TwilioTelephonyService

Version: 1.0.0
"""

import logging
from typing import Optional

from biteclub.core.config import Settings, get_settings
from biteclub.services.calls.base import BaseTelephonyService, CallPlacement, TelephonyError
from biteclub.services.calls.ivr import CallService
from biteclub.services.calls.mock import MockTelephonyService
from biteclub.services.calls.twilio import TwilioTelephonyService

logger = logging.getLogger(__name__)


def build_telephony_service(settings: Optional[Settings] = None) -> BaseTelephonyService:
    """Create the telephony provider for the given settings' environment."""
    settings = settings or get_settings()

    if settings.is_development:
        logger.info("Telephony Service: Using MockTelephonyService (development mode)")
        return MockTelephonyService()

    logger.info(
        f"Telephony Service: Using TwilioTelephonyService "
        f"({settings.env_mode.value} mode)"
    )
    return TwilioTelephonyService(settings)


__all__ = [
    "build_telephony_service",
    "BaseTelephonyService",
    "CallPlacement",
    "CallService",
    "TelephonyError",
    "MockTelephonyService",
    "TwilioTelephonyService",
]
