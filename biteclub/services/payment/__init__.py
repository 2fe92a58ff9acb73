"""
Payment Service Factory

Provides a single entry point for obtaining a payment service instance.

Usage:
    from biteclub.services.payment import build_payment_service

    # MockPaymentService or StripePaymentService depending on ENV_MODE
    payment_service = build_payment_service(settings)

Environment Switching:
    - ENV_MODE=development → MockPaymentService (no API calls)
    - ENV_MODE=staging → StripePaymentService (test keys)
    - ENV_MODE=production → StripePaymentService (live keys)

Version: 1.0.0
"""

import logging
from typing import Optional

from biteclub.core.config import Settings, get_settings
from biteclub.services.payment.base import (
    BasePaymentService,
    CheckoutSession,
    PaymentResult,
)
from biteclub.services.payment.mock import MockPaymentService
from biteclub.services.payment.stripe import StripePaymentService

logger = logging.getLogger(__name__)


def build_payment_service(settings: Optional[Settings] = None) -> BasePaymentService:
    """Create the payment provider for the given settings' environment."""
    settings = settings or get_settings()

    if settings.is_development:
        logger.info("Payment Service: Using MockPaymentService (development mode)")
        return MockPaymentService(
            checkout_base_url=f"{settings.frontend_url.rstrip('/')}/mock-checkout",
        )

    logger.info(
        f"Payment Service: Using StripePaymentService "
        f"({settings.env_mode.value} mode)"
    )
    return StripePaymentService(settings)


__all__ = [
    "build_payment_service",
    "BasePaymentService",
    "CheckoutSession",
    "PaymentResult",
    "MockPaymentService",
    "StripePaymentService",
]
