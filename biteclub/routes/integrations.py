"""
POS integration endpoints for restaurant owners, plus an admin view
across all restaurants.
"""

from fastapi import APIRouter, Depends

from biteclub.core.exceptions import NotFound
from biteclub.models import AccountRole, Restaurant
from biteclub.routes.deps import current_account, current_restaurant, get_services, require_role
from biteclub.schemas import (
    AdminIntegrationRequest,
    IntegrationConfigRequest,
    IntegrationDisableRequest,
    MenuSyncRequest,
)
from biteclub.services import ServiceContainer

router = APIRouter(prefix="/api/integrations", tags=["Integrations"])


@router.get("/types", dependencies=[Depends(current_account)])
async def integration_types(services: ServiceContainer = Depends(get_services)) -> dict:
    """Supported POS systems and the credentials each one needs."""
    return {"types": services.integrations.list_types()}


@router.get("/status")
async def integration_status(
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    return {"integrations": await services.integrations.status(restaurant.id)}


@router.post("/enable")
async def enable_integration(
    payload: IntegrationConfigRequest,
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    record = await services.integrations.enable(restaurant.id, payload.type, payload.config)
    return {
        "success": True,
        "message": f"{record.integration_type.value} integration enabled successfully",
    }


@router.post("/disable")
async def disable_integration(
    payload: IntegrationDisableRequest,
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    record = await services.integrations.disable(restaurant.id, payload.type)
    return {
        "success": True,
        "message": f"{record.integration_type.value} integration disabled",
    }


@router.post("/test", dependencies=[Depends(current_restaurant)])
async def test_integration(
    payload: IntegrationConfigRequest,
    services: ServiceContainer = Depends(get_services),
) -> dict:
    """Check a configuration for completeness without saving it."""
    valid = services.integrations.test_config(payload.type, payload.config)
    return {
        "success": valid,
        "message": "Configuration is valid" if valid else "Invalid configuration",
    }


@router.post("/sync/menu")
async def sync_menu(
    payload: MenuSyncRequest,
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    results = await services.integrations.sync_menu(restaurant.id, payload.type)
    return {"success": all(r["success"] for r in results), "results": results}


@router.post("/sync/order/{order_id}")
async def sync_order(
    order_id: str,
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    """Push one order to the restaurant's POS again."""
    order = await services.orders.get_order(order_id)
    if order.restaurant_id != restaurant.id:
        raise NotFound(f"Order #{order_id} not found or access denied")
    results = await services.integrations.sync_order_to_integrations(order_id)
    return {"success": any(r["success"] for r in results), "results": results}


@router.get("/order/{order_id}/status")
async def external_order_status(
    order_id: str,
    restaurant: Restaurant = Depends(current_restaurant),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    order = await services.orders.get_order(order_id)
    if order.restaurant_id != restaurant.id:
        raise NotFound(f"Order #{order_id} not found or access denied")
    return {"statuses": await services.integrations.external_order_status(order_id)}


# =============================================================================
# ADMIN
# =============================================================================

@router.get("/admin/restaurants", dependencies=[Depends(require_role(AccountRole.ADMIN))])
async def admin_restaurant_integrations(services: ServiceContainer = Depends(get_services)) -> dict:
    return {"restaurants": await services.integrations.admin_overview()}


@router.post("/admin/enable", dependencies=[Depends(require_role(AccountRole.ADMIN))])
async def admin_enable_integration(
    payload: AdminIntegrationRequest,
    services: ServiceContainer = Depends(get_services),
) -> dict:
    record = await services.integrations.enable(payload.restaurant_id, payload.type, payload.config)
    return {
        "success": True,
        "message": f"{record.integration_type.value} integration enabled for restaurant",
    }
