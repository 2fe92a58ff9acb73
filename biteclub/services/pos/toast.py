"""
Toast POS Integration

Uses the Toast partner API with machine-client credentials:
    - authentication/v1: exchange client id/secret for a bearer token
    - menus/v2: read the published menu of a location
    - orders/v2: create and look up orders

Version: 1.0.0
"""

import logging
from decimal import Decimal

import httpx

from biteclub.models import IntegrationType, Order
from biteclub.services.pos.base import (
    ConfigField,
    MenuItemData,
    MenuSyncResult,
    OrderStatusResult,
    OrderSyncResult,
    POSError,
    POSIntegration,
)

logger = logging.getLogger(__name__)

TOAST_HOSTS = {
    "sandbox": "https://ws-sandbox-api.eng.toasttab.com",
    "production": "https://ws-api.toasttab.com",
}

# Toast approvalStatus -> status reported to restaurants
TOAST_STATUSES = {
    "NEEDS_APPROVAL": "PENDING",
    "APPROVED": "PREPARING",
    "FUTURE": "SCHEDULED",
    "NOT_APPROVED": "REJECTED",
}


class ToastIntegration(POSIntegration):
    integration_type = IntegrationType.TOAST
    display_name = "Toast POS"
    description = "Integration with Toast point-of-sale system"
    config_fields = [
        ConfigField("clientId", "string", "Toast API Client ID"),
        ConfigField("clientSecret", "password", "Toast API Client Secret"),
        ConfigField("locationGuid", "string", "Toast Location GUID"),
        ConfigField("environment", "select", "Environment", options=["sandbox", "production"]),
    ]

    def _base_url(self, config: dict) -> str:
        return TOAST_HOSTS.get(config.get("environment", "production"), TOAST_HOSTS["production"])

    async def _authenticate(self, config: dict) -> dict:
        """Return headers carrying a fresh access token for the location."""
        async with self._client(self._base_url(config)) as client:
            response = await client.post(
                "/authentication/v1/authentication/login",
                json={
                    "clientId": config["clientId"],
                    "clientSecret": config["clientSecret"],
                    "userAccessType": "TOAST_MACHINE_CLIENT",
                },
            )
            response.raise_for_status()
            token = (response.json().get("token") or {}).get("accessToken")

        if not token:
            raise POSError("Toast authentication returned no access token")

        return {
            "Authorization": f"Bearer {token}",
            "Toast-Restaurant-External-ID": config["locationGuid"],
        }

    async def sync_menu(self, config: dict) -> MenuSyncResult:
        logger.info(f"Toast: Syncing menu for location {config.get('locationGuid')}")
        try:
            headers = await self._authenticate(config)
            async with self._client(self._base_url(config), headers) as client:
                response = await client.get("/menus/v2/menus")
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, POSError) as e:
            logger.error(f"Toast menu sync error: {e}")
            return MenuSyncResult(success=False, errors=[str(e)])

        items = []
        for menu in payload.get("menus", []):
            for group in menu.get("menuGroups", []):
                for item in group.get("menuItems", []):
                    if not item.get("guid") or item.get("price") is None:
                        continue
                    items.append(MenuItemData(
                        external_id=item["guid"],
                        name=item.get("name") or "Unnamed item",
                        price=Decimal(str(item["price"])),
                        description=item.get("description"),
                        available=item.get("visibility") != "HIDDEN",
                    ))

        return MenuSyncResult(success=True, items=items)

    async def sync_order(self, order: Order, config: dict) -> OrderSyncResult:
        unlinked = [item.menu_item.name for item in order.items if not item.menu_item.external_id]
        if unlinked:
            return OrderSyncResult(success=False, error=f"Items not linked to Toast: {', '.join(unlinked)}")

        body = {
            "externalId": order.id,
            "checks": [{
                "selections": [
                    {
                        "item": {"guid": item.menu_item.external_id},
                        "quantity": item.quantity,
                        "externalPriceAmount": float(item.unit_price),
                    }
                    for item in order.items
                ],
            }],
        }
        if config.get("diningOptionGuid"):
            body["diningOption"] = {"guid": config["diningOptionGuid"]}

        try:
            headers = await self._authenticate(config)
            async with self._client(self._base_url(config), headers) as client:
                response = await client.post("/orders/v2/orders", json=body)
                response.raise_for_status()
                external_id = response.json().get("guid")
        except (httpx.HTTPError, POSError) as e:
            logger.error(f"Toast order sync error for #{order.id}: {e}")
            return OrderSyncResult(success=False, error=str(e))

        if not external_id:
            return OrderSyncResult(success=False, error="Toast returned no order guid")

        logger.info(f"Toast: Order #{order.id} created as {external_id}")
        return OrderSyncResult(success=True, external_order_id=external_id)

    async def get_order_status(self, external_order_id: str, config: dict) -> OrderStatusResult:
        try:
            headers = await self._authenticate(config)
            async with self._client(self._base_url(config), headers) as client:
                response = await client.get(f"/orders/v2/orders/{external_order_id}")
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, POSError) as e:
            logger.error(f"Toast order status error: {e}")
            return OrderStatusResult(status="UNKNOWN")

        if payload.get("voided"):
            return OrderStatusResult(status="CANCELLED")
        if payload.get("closedDate"):
            return OrderStatusResult(status="COMPLETED")
        return OrderStatusResult(
            status=TOAST_STATUSES.get(payload.get("approvalStatus"), "UNKNOWN"),
            estimated_time=payload.get("estimatedPrepTime"),
        )
