"""
Stripe Payment Service Implementation

Production implementation using the official Stripe Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - STRIPE_SECRET_KEY must be set in environment
    - STRIPE_WEBHOOK_SECRET for webhook verification

Security Notes:
    - Always verify webhook signatures
    - Credits are granted only for payments Stripe reports as succeeded

Version: 1.0.0
"""

import asyncio
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

import stripe

from biteclub.core.config import Settings, get_settings
from biteclub.services.payment.base import (
    BasePaymentService,
    CheckoutSession,
    PaymentResult,
)

logger = logging.getLogger(__name__)


class StripePaymentService(BasePaymentService):
    """
    Production Stripe payment service implementation.

    Configuration:
        Requires STRIPE_SECRET_KEY environment variable.
        Uses STRIPE_WEBHOOK_SECRET for webhook verification.
    """

    def __init__(self, settings: Optional[Settings] = None, brand_name: Optional[str] = None):
        """
        Initialize Stripe with API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = settings or get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for production mode. "
                "Set it in your .env file or environment variables."
            )

        # Configure Stripe SDK
        stripe.api_key = settings.stripe_secret_key

        self._webhook_secret = settings.stripe_webhook_secret
        self._currency = settings.stripe_currency
        self._brand_name = brand_name or settings.brand_name

        logger.info("StripePaymentService initialized")

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "stripe"

    def _convert_to_cents(self, amount: Decimal) -> int:
        """
        Convert dollar amount to cents for Stripe.

        Stripe expects amounts in the smallest currency unit (cents for USD).
        """
        return int((Decimal(str(amount)) * 100).to_integral_value())

    def _convert_from_cents(self, cents: Optional[int]) -> Decimal:
        """Convert cents back to dollars."""
        return (Decimal(cents or 0) / 100).quantize(Decimal("0.01"))

    async def create_checkout_session(
        self,
        account_id: str,
        amount: Decimal,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Create a hosted Checkout page for a credit purchase.

        Raises:
            stripe.StripeError: Propagated to the caller
        """
        metadata = {
            "account_id": account_id,
            "type": "credit_purchase",
            "credit_amount": str(amount),
        }

        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": self._currency,
                        "product_data": {
                            "name": f"{self._brand_name} Credits",
                            "description": f"${amount} in dining credits",
                        },
                        "unit_amount": self._convert_to_cents(amount),
                    },
                    "quantity": 1,
                },
            ],
            mode="payment",
            success_url=success_url,
            cancel_url=cancel_url,
            customer_email=customer_email,
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
        )

        logger.info(f"Stripe: Checkout session created - {session.id} (${amount})")
        return CheckoutSession(session_id=session.id, url=session.url)

    async def retrieve_payment(self, payment_intent_id: str) -> PaymentResult:
        start_time = datetime.now()

        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, payment_intent_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe: Failed to retrieve PaymentIntent {payment_intent_id} - {e}")
            return PaymentResult(
                success=False,
                payment_intent_id=payment_intent_id,
                error_message=str(e),
                error_code="stripe_error",
            )

        elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
        succeeded = intent.status == "succeeded"
        if not succeeded:
            logger.warning(f"Stripe: PaymentIntent {intent.id} status={intent.status}")

        return PaymentResult(
            success=succeeded,
            payment_intent_id=intent.id,
            amount=self._convert_from_cents(intent.amount_received or intent.amount),
            currency=intent.currency,
            status=intent.status,
            response_time_ms=elapsed_ms,
            metadata=dict(intent.metadata or {}),
            error_message=None if succeeded else "Payment not successful",
        )

    async def retrieve_checkout_session(self, session_id: str) -> PaymentResult:
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe: Failed to retrieve checkout session {session_id} - {e}")
            return PaymentResult(success=False, error_message=str(e), error_code="stripe_error")

        if not session.payment_intent:
            return PaymentResult(
                success=False,
                status=session.payment_status,
                error_message="Checkout session has no payment yet",
                error_code="payment_incomplete",
            )

        payment_intent_id = session.payment_intent
        if not isinstance(payment_intent_id, str):
            payment_intent_id = payment_intent_id.id

        result = await self.retrieve_payment(payment_intent_id)
        if result.success and not result.metadata:
            result.metadata = dict(session.metadata or {})
        return result

    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Optional[dict]:
        """
        Verify and parse a Stripe webhook event.

        Returns:
            Parsed event if the signature is valid, None otherwise
        """
        if not self._webhook_secret or not signature:
            logger.warning("Stripe: Webhook rejected - missing signature or webhook secret")
            return None

        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe: Webhook signature invalid - {e}")
            return None
        except ValueError as e:
            logger.warning(f"Stripe: Webhook payload invalid - {e}")
            return None

        logger.debug(f"Stripe: Webhook verified - {event['type']}")
        return json.loads(payload)

    async def health_check(self) -> bool:
        """
        Verify Stripe API connectivity.

        Makes a lightweight API call to verify credentials and connectivity.
        """
        try:
            await asyncio.to_thread(stripe.Account.retrieve)
            logger.debug("Stripe: Health check passed")
            return True
        except stripe.StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
