"""
Mock Payment Service Implementation

Simulates Stripe checkout without making real API calls.
Used in development mode (ENV_MODE=development) to:
    - Test credit purchases locally
    - Run the flow simulator without incurring costs

Behavior:
    - Generates Stripe-like IDs (cs_xxx, pi_xxx)
    - Every checkout session is paid immediately
    - ``decline()`` marks a payment as failed for testing
    - Webhook payloads are parsed without signature checks

Version: 1.0.0
"""

import json
import logging
import uuid
from decimal import Decimal
from typing import Optional

from biteclub.services.payment.base import (
    BasePaymentService,
    CheckoutSession,
    PaymentResult,
)

logger = logging.getLogger(__name__)


class MockPaymentService(BasePaymentService):
    """
    Mock implementation of the payment service.

    Attributes:
        payments: payment_intent_id -> recorded payment
        sessions: session_id -> payment_intent_id
    """

    def __init__(self, checkout_base_url: str = "http://localhost:5173/mock-checkout"):
        self.checkout_base_url = checkout_base_url
        self.payments: dict[str, dict] = {}
        self.sessions: dict[str, str] = {}

        logger.info("MockPaymentService initialized")

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    def _generate_payment_intent_id(self) -> str:
        """Generate a Stripe-like payment intent ID."""
        return f"pi_mock_{uuid.uuid4().hex[:24]}"

    def _generate_session_id(self) -> str:
        """Generate a Stripe-like checkout session ID."""
        return f"cs_mock_{uuid.uuid4().hex[:24]}"

    def decline(self, payment_intent_id: str) -> None:
        """Make a recorded payment look failed."""
        self.payments[payment_intent_id]["status"] = "requires_payment_method"

    async def create_checkout_session(
        self,
        account_id: str,
        amount: Decimal,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        session_id = self._generate_session_id()
        payment_intent_id = self._generate_payment_intent_id()

        self.payments[payment_intent_id] = {
            "amount": Decimal(str(amount)),
            "status": "succeeded",
            "metadata": {
                "account_id": account_id,
                "type": "credit_purchase",
                "credit_amount": str(amount),
            },
        }
        self.sessions[session_id] = payment_intent_id

        logger.debug(f"Mock: Checkout {session_id} for ${amount} (account {account_id})")
        return CheckoutSession(
            session_id=session_id,
            url=f"{self.checkout_base_url}/{session_id}",
        )

    async def retrieve_payment(self, payment_intent_id: str) -> PaymentResult:
        payment = self.payments.get(payment_intent_id)
        if payment is None:
            return PaymentResult(
                success=False,
                payment_intent_id=payment_intent_id,
                error_message="No such payment_intent",
                error_code="resource_missing",
            )

        return PaymentResult(
            success=payment["status"] == "succeeded",
            payment_intent_id=payment_intent_id,
            amount=payment["amount"],
            status=payment["status"],
            metadata=dict(payment["metadata"]),
            error_message=None if payment["status"] == "succeeded" else "Payment not successful",
        )

    async def retrieve_checkout_session(self, session_id: str) -> PaymentResult:
        payment_intent_id = self.sessions.get(session_id)
        if payment_intent_id is None:
            return PaymentResult(
                success=False,
                error_message="No such checkout session",
                error_code="resource_missing",
            )
        return await self.retrieve_payment(payment_intent_id)

    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Optional[dict]:
        """
        Mock webhook verification.

        In mock mode, always returns the parsed payload without
        signature verification.
        """
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Mock: Webhook payload is not valid JSON")
            return None

    async def health_check(self) -> bool:
        """Mock health check always returns True."""
        return True
