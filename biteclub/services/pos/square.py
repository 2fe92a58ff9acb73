"""
Square POS Integration

Uses the Square Connect v2 API with a seller access token:
    - catalog/list: menu items and their first variation price
    - orders: create and retrieve orders at the configured location

Version: 1.0.0
"""

import logging
from decimal import Decimal
from typing import Optional

import httpx

from biteclub.models import IntegrationType, Order
from biteclub.services.pos.base import (
    ConfigField,
    MenuItemData,
    MenuSyncResult,
    OrderStatusResult,
    OrderSyncResult,
    POSIntegration,
)

logger = logging.getLogger(__name__)

SQUARE_HOSTS = {
    "sandbox": "https://connect.squareupsandbox.com",
    "production": "https://connect.squareup.com",
}
SQUARE_API_VERSION = "2024-01-18"

SQUARE_STATES = {
    "OPEN": "PREPARING",
    "COMPLETED": "COMPLETED",
    "CANCELED": "CANCELLED",
    "DRAFT": "PENDING",
}


def _cents(amount) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value())


class SquareIntegration(POSIntegration):
    integration_type = IntegrationType.SQUARE
    display_name = "Square POS"
    description = "Integration with Square point-of-sale system"
    config_fields = [
        ConfigField("accessToken", "password", "Square Access Token"),
        ConfigField("applicationId", "string", "Square Application ID"),
        ConfigField("locationId", "string", "Square Location ID"),
    ]

    def _connect(self, config: dict) -> httpx.AsyncClient:
        base_url = SQUARE_HOSTS.get(config.get("environment", "production"), SQUARE_HOSTS["production"])
        return self._client(base_url, {
            "Authorization": f"Bearer {config['accessToken']}",
            "Square-Version": SQUARE_API_VERSION,
        })

    async def sync_menu(self, config: dict) -> MenuSyncResult:
        logger.info(f"Square: Syncing catalog for location {config.get('locationId')}")
        items = []
        cursor: Optional[str] = None

        try:
            async with self._connect(config) as client:
                while True:
                    params = {"types": "ITEM"}
                    if cursor:
                        params["cursor"] = cursor
                    response = await client.get("/v2/catalog/list", params=params)
                    response.raise_for_status()
                    payload = response.json()

                    for obj in payload.get("objects", []):
                        item = self._menu_item(obj)
                        if item is not None:
                            items.append(item)

                    cursor = payload.get("cursor")
                    if not cursor:
                        break
        except httpx.HTTPError as e:
            logger.error(f"Square menu sync error: {e}")
            return MenuSyncResult(success=False, errors=[str(e)])

        return MenuSyncResult(success=True, items=items)

    @staticmethod
    def _menu_item(obj: dict) -> Optional[MenuItemData]:
        """Orders reference a variation, so the first priced variation is the external id."""
        data = obj.get("item_data") or {}
        for variation in data.get("variations", []):
            price = ((variation.get("item_variation_data") or {}).get("price_money") or {}).get("amount")
            if price is None:
                continue
            return MenuItemData(
                external_id=variation["id"],
                name=data.get("name") or "Unnamed item",
                price=(Decimal(price) / 100).quantize(Decimal("0.01")),
                description=data.get("description"),
                available=not obj.get("is_deleted", False),
            )
        return None

    async def sync_order(self, order: Order, config: dict) -> OrderSyncResult:
        line_items = []
        for item in order.items:
            line = {"quantity": str(item.quantity)}
            if item.menu_item.external_id:
                line["catalog_object_id"] = item.menu_item.external_id
            else:
                line["name"] = item.menu_item.name
                line["base_price_money"] = {"amount": _cents(item.unit_price), "currency": "USD"}
            if item.custom_instructions:
                line["note"] = item.custom_instructions
            line_items.append(line)

        body = {
            "idempotency_key": order.id,
            "order": {
                "location_id": config["locationId"],
                "reference_id": order.id,
                "line_items": line_items,
            },
        }

        try:
            async with self._connect(config) as client:
                response = await client.post("/v2/orders", json=body)
                response.raise_for_status()
                external_id = (response.json().get("order") or {}).get("id")
        except httpx.HTTPError as e:
            logger.error(f"Square order sync error for #{order.id}: {e}")
            return OrderSyncResult(success=False, error=str(e))

        if not external_id:
            return OrderSyncResult(success=False, error="Square returned no order id")

        logger.info(f"Square: Order #{order.id} created as {external_id}")
        return OrderSyncResult(success=True, external_order_id=external_id)

    async def get_order_status(self, external_order_id: str, config: dict) -> OrderStatusResult:
        try:
            async with self._connect(config) as client:
                response = await client.get(f"/v2/orders/{external_order_id}")
                response.raise_for_status()
                state = (response.json().get("order") or {}).get("state")
        except httpx.HTTPError as e:
            logger.error(f"Square order status error: {e}")
            return OrderStatusResult(status="UNKNOWN")

        return OrderStatusResult(status=SQUARE_STATES.get(state, "UNKNOWN"))
