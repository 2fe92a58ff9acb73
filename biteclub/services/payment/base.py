"""
Payment Service Abstract Base Class

Defines the interface contract for the payment provider used to sell
dining credits. Both MockPaymentService and StripePaymentService
implement these methods, so credit purchases behave identically in
development and production.

Design Pattern: Strategy Pattern
    - Allows runtime switching between payment providers
    - Facilitates testing with mock implementations

Version: 1.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass
class PaymentResult:
    """
    Standardized view of a payment at the provider.

    Attributes:
        success: Whether the money was actually captured
        payment_intent_id: Provider payment identifier (Stripe format: pi_xxx)
        amount: Amount captured in dollars
        currency: Currency code (e.g., "usd")
        status: Provider status string
        error_message: Error description if the lookup or payment failed
        error_code: Machine-readable error code
        response_time_ms: Time taken by the provider API
        metadata: Key-value data attached when the payment was created
    """
    success: bool
    payment_intent_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "usd"
    status: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_time_ms: float = 0.0
    metadata: Optional[dict] = None


@dataclass
class CheckoutSession:
    """
    Hosted checkout page created for a credit purchase.

    Attributes:
        session_id: Provider session identifier (Stripe format: cs_xxx)
        url: Page the student is redirected to
    """
    session_id: str
    url: Optional[str] = None


class BasePaymentService(ABC):
    """
    Abstract base class for payment services.

    Example:
        >>> service = build_payment_service(settings)  # Mock or Stripe
        >>> session = await service.create_checkout_session(
        ...     account_id="a1b2", amount=Decimal("25"),
        ...     success_url="https://app/credits/success",
        ...     cancel_url="https://app/credits/cancel",
        ... )
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the payment provider.

        Returns:
            str: Provider name (e.g., "mock", "stripe")
        """
        pass

    @abstractmethod
    async def create_checkout_session(
        self,
        account_id: str,
        amount: Decimal,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Create a hosted checkout for buying ``amount`` dollars of credits.

        The account id and credit amount travel in the payment metadata so
        the webhook can credit the right account.
        """
        pass

    @abstractmethod
    async def retrieve_payment(self, payment_intent_id: str) -> PaymentResult:
        """
        Look up a payment.

        Returns:
            PaymentResult: ``success`` only when the payment succeeded
        """
        pass

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str) -> PaymentResult:
        """Look up the payment behind a completed checkout session."""
        pass

    @abstractmethod
    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Optional[dict]:
        """
        Verify and parse a webhook from the payment provider.

        Args:
            payload: Raw request body bytes
            signature: Signature header from the request

        Returns:
            dict: Parsed webhook event if valid, None if invalid
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the payment service.

        Returns:
            bool: True if service is reachable and operational
        """
        pass
