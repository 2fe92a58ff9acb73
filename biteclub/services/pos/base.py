"""
POS Integration Abstract Base Class

Every point-of-sale vendor a restaurant can connect implements this
interface. Integrations are stateless: the restaurant's credentials are
passed in on every call, so one instance per vendor serves all
restaurants.

Version: 1.0.0
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import httpx

from biteclub.models import IntegrationType, Order

logger = logging.getLogger(__name__)


class POSError(Exception):
    """Raised when a POS API call fails or returns something unusable."""


@dataclass
class MenuItemData:
    """One sellable item as the POS describes it."""
    external_id: str
    name: str
    price: Decimal
    description: Optional[str] = None
    available: bool = True


@dataclass
class MenuSyncResult:
    success: bool
    items: list[MenuItemData] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class OrderSyncResult:
    success: bool
    external_order_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class OrderStatusResult:
    status: str
    estimated_time: Optional[int] = None


@dataclass
class ConfigField:
    """Describes one credential field for the integration setup form."""
    name: str
    type: str
    description: str
    required: bool = True
    options: Optional[list[str]] = None

    def to_dict(self) -> dict:
        data = {
            "name": self.name,
            "type": self.type,
            "required": self.required,
            "description": self.description,
        }
        if self.options:
            data["options"] = self.options
        return data


class POSIntegration(ABC):
    """
    Abstract base class for POS integrations.

    Args:
        timeout: Seconds before an HTTP request is abandoned
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
    """

    integration_type: IntegrationType
    display_name: str
    description: str
    config_fields: list[ConfigField] = []

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    @property
    def required_fields(self) -> list[str]:
        return [f.name for f in self.config_fields if f.required]

    def validate_config(self, config: Optional[dict]) -> bool:
        """All required credential fields are present and non-empty."""
        config = config or {}
        return all(config.get(name) for name in self.required_fields)

    def describe(self) -> dict:
        return {
            "type": self.integration_type.value,
            "name": self.display_name,
            "description": self.description,
            "status": "available",
            "config_fields": [f.to_dict() for f in self.config_fields],
        }

    def _client(self, base_url: str, headers: Optional[dict] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {},
            timeout=self.timeout,
            transport=self.transport,
        )

    @abstractmethod
    async def sync_menu(self, config: dict) -> MenuSyncResult:
        """Fetch the restaurant's current menu from the POS."""
        pass

    @abstractmethod
    async def sync_order(self, order: Order, config: dict) -> OrderSyncResult:
        """Push a confirmed order into the POS."""
        pass

    @abstractmethod
    async def get_order_status(self, external_order_id: str, config: dict) -> OrderStatusResult:
        pass
