"""
Telephony Service Abstract Base Class

Defines the interface every telephony provider implements. The call state
machine only ever talks to this interface, so development mode can run the
full IVR flow against MockTelephonyService.

Version: 1.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


class TelephonyError(Exception):
    """Raised by a provider when a call could not be placed."""


@dataclass
class CallPlacement:
    """
    Result of asking the provider to dial a restaurant.

    Attributes:
        external_call_id: Provider call identifier (Twilio format: CAxxx)
        status: Provider status at creation time (usually "queued")
        response_time_ms: Time taken by the provider API
    """
    external_call_id: str
    status: str = "queued"
    response_time_ms: float = 0.0


class BaseTelephonyService(ABC):
    """
    Abstract base class for telephony services.

    Example:
        >>> service = build_telephony_service(settings)
        >>> placement = await service.place_call(
        ...     to_number="+15551234567",
        ...     script_url="https://api.example.com/api/calls/twiml/abc123",
        ...     timeout_seconds=30,
        ...     status_callback_url="https://api.example.com/api/calls/status-callback",
        ... )
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def place_call(
        self,
        to_number: str,
        script_url: str,
        timeout_seconds: int,
        status_callback_url: str,
    ) -> CallPlacement:
        """
        Dial ``to_number`` and fetch the IVR script from ``script_url``.

        Args:
            to_number: Restaurant phone number
            script_url: URL returning TwiML for the call
            timeout_seconds: Ring time before the provider gives up
            status_callback_url: URL receiving call progress events

        Returns:
            CallPlacement: Identifier for later callbacks

        Raises:
            TelephonyError: The provider refused or could not be reached
        """
        pass

    @abstractmethod
    def validate_request(self, url: str, params: dict, signature: Optional[str]) -> bool:
        """
        Check that a webhook really came from the provider.

        Args:
            url: Full URL the provider requested
            params: Form parameters of the request
            signature: Value of the provider signature header
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass
