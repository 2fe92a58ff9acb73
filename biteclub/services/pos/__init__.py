"""
POS Integration Registry

One integration per ``IntegrationType``, built once when the application
starts. Looking up a type that has no integration is a programming error,
not a runtime condition: the enum is closed.

Usage:
    registry = build_pos_registry(timeout=settings.pos_request_timeout)
    toast = registry[IntegrationType.TOAST]
"""

from typing import Optional

import httpx

from biteclub.models import IntegrationType
from biteclub.services.pos.base import (
    MenuItemData,
    MenuSyncResult,
    OrderStatusResult,
    OrderSyncResult,
    POSError,
    POSIntegration,
)
from biteclub.services.pos.square import SquareIntegration
from biteclub.services.pos.toast import ToastIntegration

POS_INTEGRATIONS = (ToastIntegration, SquareIntegration)


def build_pos_registry(
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[IntegrationType, POSIntegration]:
    registry = {
        cls.integration_type: cls(timeout=timeout, transport=transport)
        for cls in POS_INTEGRATIONS
    }
    missing = set(IntegrationType) - registry.keys()
    if missing:
        raise RuntimeError(f"No POS integration for {sorted(t.value for t in missing)}")
    return registry


__all__ = [
    "build_pos_registry",
    "MenuItemData",
    "MenuSyncResult",
    "OrderStatusResult",
    "OrderSyncResult",
    "POSError",
    "POSIntegration",
    "SquareIntegration",
    "ToastIntegration",
]
