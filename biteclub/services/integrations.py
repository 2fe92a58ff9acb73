"""
POS Integration Management

Restaurants connect their point-of-sale system once; afterwards menus can
be pulled in on demand and every confirmed order is pushed out. Each
connected integration is handled on its own, so one vendor being down
never blocks the others.
"""

import logging
from typing import Optional

from sqlalchemy import select

from biteclub.core.exceptions import InvalidRequest, NotFound
from biteclub.database import Database
from biteclub.models import IntegrationConfig, IntegrationType, MenuItem, Order, Restaurant, utc_now
from biteclub.services.ledger import to_money
from biteclub.services.pos.base import OrderSyncResult, POSIntegration

logger = logging.getLogger(__name__)


def parse_integration_type(value) -> IntegrationType:
    if isinstance(value, IntegrationType):
        return value
    try:
        return IntegrationType(str(value).upper())
    except ValueError:
        raise InvalidRequest(f"Integration type {value} not supported") from None


class IntegrationService:
    """
    Args:
        database: Storage handle
        registry: Integration per type, from ``build_pos_registry``
    """

    def __init__(self, database: Database, registry: dict[IntegrationType, POSIntegration]):
        self.database = database
        self.registry = registry

    def list_types(self) -> list[dict]:
        return [integration.describe() for integration in self.registry.values()]

    def test_config(self, integration_type, config: Optional[dict]) -> bool:
        return self.registry[parse_integration_type(integration_type)].validate_config(config)

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    async def status(self, restaurant_id: str) -> list[dict]:
        async with self.database.session() as session:
            result = await session.execute(
                select(IntegrationConfig)
                .where(IntegrationConfig.restaurant_id == restaurant_id)
                .order_by(IntegrationConfig.integration_type)
            )
            configs = result.scalars().all()

        return [
            {
                "type": config.integration_type.value,
                "enabled": config.enabled,
                "sync_enabled": config.sync_enabled,
                "last_sync": config.last_sync_at,
                "has_valid_config": self.registry[config.integration_type].validate_config(config.config_data),
            }
            for config in configs
        ]

    async def admin_overview(self) -> list[dict]:
        """Every restaurant with the integrations it has configured."""
        async with self.database.session() as session:
            restaurants = (await session.execute(
                select(Restaurant).order_by(Restaurant.name, Restaurant.id)
            )).scalars().all()
            configs = (await session.execute(
                select(IntegrationConfig).order_by(IntegrationConfig.integration_type)
            )).scalars().all()

        by_restaurant: dict[str, list[dict]] = {}
        for config in configs:
            by_restaurant.setdefault(config.restaurant_id, []).append({
                "type": config.integration_type.value,
                "enabled": config.enabled,
                "sync_enabled": config.sync_enabled,
                "last_sync": config.last_sync_at,
            })

        return [
            {
                "id": restaurant.id,
                "name": restaurant.name,
                "integration_enabled": any(i["enabled"] for i in by_restaurant.get(restaurant.id, [])),
                "integrations": by_restaurant.get(restaurant.id, []),
            }
            for restaurant in restaurants
        ]

    async def enable(self, restaurant_id: str, integration_type, config: dict) -> IntegrationConfig:
        """
        Store credentials and switch the integration on.

        Raises:
            InvalidRequest: unsupported type or missing credential fields
            NotFound: restaurant does not exist
        """
        integration_type = parse_integration_type(integration_type)
        integration = self.registry[integration_type]
        if not integration.validate_config(config):
            missing = [name for name in integration.required_fields if not (config or {}).get(name)]
            raise InvalidRequest(f"Invalid configuration, missing: {', '.join(missing)}")

        async with self.database.transaction() as session:
            if await session.get(Restaurant, restaurant_id) is None:
                raise NotFound(f"Restaurant {restaurant_id} not found")
            record = await self._find(session, restaurant_id, integration_type)
            if record is None:
                record = IntegrationConfig(
                    restaurant_id=restaurant_id,
                    integration_type=integration_type,
                    config_data=dict(config),
                    enabled=True,
                    sync_enabled=True,
                )
                session.add(record)
            else:
                record.config_data = dict(config)
                record.enabled = True

        logger.info(f"{integration_type.value} integration enabled for restaurant {restaurant_id}")
        return record

    async def disable(self, restaurant_id: str, integration_type) -> IntegrationConfig:
        integration_type = parse_integration_type(integration_type)
        async with self.database.transaction() as session:
            record = await self._find(session, restaurant_id, integration_type)
            if record is None:
                raise NotFound(f"{integration_type.value} integration is not configured")
            record.enabled = False

        logger.info(f"{integration_type.value} integration disabled for restaurant {restaurant_id}")
        return record

    # =========================================================================
    # SYNC
    # =========================================================================

    async def sync_menu(self, restaurant_id: str, integration_type=None) -> list[dict]:
        """
        Pull menus from every enabled integration (or just one) and upsert
        them into the restaurant's menu by external id.
        """
        configs = await self._enabled_configs(
            restaurant_id,
            parse_integration_type(integration_type) if integration_type else None,
        )

        results = []
        for config in configs:
            integration = self.registry[config.integration_type]
            fetched = await integration.sync_menu(config.config_data)
            entry = {
                "type": config.integration_type.value,
                "success": fetched.success,
                "items_created": 0,
                "items_updated": 0,
                "errors": list(fetched.errors),
            }

            if fetched.success:
                async with self.database.transaction() as session:
                    existing = {
                        item.external_id: item
                        for item in (await session.execute(
                            select(MenuItem).where(
                                MenuItem.restaurant_id == restaurant_id,
                                MenuItem.external_id.in_([i.external_id for i in fetched.items]),
                            )
                        )).scalars().all()
                    }
                    for item in fetched.items:
                        menu_item = existing.get(item.external_id)
                        if menu_item is None:
                            session.add(MenuItem(
                                restaurant_id=restaurant_id,
                                external_id=item.external_id,
                                name=item.name,
                                description=item.description,
                                price=to_money(item.price),
                                available=item.available,
                            ))
                            entry["items_created"] += 1
                        else:
                            menu_item.name = item.name
                            menu_item.description = item.description
                            menu_item.price = to_money(item.price)
                            menu_item.available = item.available
                            entry["items_updated"] += 1

                    record = await session.get(IntegrationConfig, config.id)
                    record.last_sync_at = utc_now()

            logger.info(
                f"Menu sync {config.integration_type.value} for restaurant {restaurant_id}: "
                f"created={entry['items_created']} updated={entry['items_updated']} errors={len(entry['errors'])}"
            )
            results.append(entry)

        return results

    async def sync_order_to_integrations(self, order_id: str) -> list[dict]:
        """
        Push an order to every enabled, sync-enabled integration of its
        restaurant and remember the external ids on the order.
        """
        async with self.database.session() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise NotFound(f"Order #{order_id} not found")

        configs = [c for c in await self._enabled_configs(order.restaurant_id) if c.sync_enabled]
        if not configs:
            return []

        outcomes: list[tuple[IntegrationType, OrderSyncResult]] = []
        for config in configs:
            integration = self.registry[config.integration_type]
            try:
                result = await integration.sync_order(order, config.config_data)
            except Exception as e:
                logger.exception(f"{config.integration_type.value} sync crashed for order #{order_id}: {e}")
                result = OrderSyncResult(success=False, error=str(e))
            outcomes.append((config.integration_type, result))

        synced_at = utc_now()
        async with self.database.transaction() as session:
            locked = await session.get(Order, order_id, with_for_update=True)
            external = dict(locked.external_order_data or {})
            for integration_type, result in outcomes:
                if result.success and result.external_order_id:
                    external[integration_type.value.lower()] = {
                        "order_id": result.external_order_id,
                        "synced_at": synced_at.isoformat(),
                    }
            locked.external_order_data = external
            if any(result.success for _, result in outcomes):
                locked.integration_status = "SYNCED"
            elif locked.integration_status != "SYNCED":
                locked.integration_status = "FAILED"

        return [
            {
                "type": integration_type.value,
                "success": result.success,
                "external_order_id": result.external_order_id,
                "error": result.error,
            }
            for integration_type, result in outcomes
        ]

    async def external_order_status(self, order_id: str) -> list[dict]:
        """Ask each POS that holds a copy of the order where it stands."""
        async with self.database.session() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise NotFound(f"Order #{order_id} not found")
        configs = {c.integration_type: c for c in await self._enabled_configs(order.restaurant_id)}

        statuses = []
        for key, data in (order.external_order_data or {}).items():
            integration_type = parse_integration_type(key)
            config = configs.get(integration_type)
            if config is None:
                continue
            result = await self.registry[integration_type].get_order_status(data["order_id"], config.config_data)
            statuses.append({
                "type": integration_type.value,
                "external_order_id": data["order_id"],
                "status": result.status,
                "estimated_time": result.estimated_time,
            })
        return statuses

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    async def _find(session, restaurant_id: str, integration_type: IntegrationType) -> Optional[IntegrationConfig]:
        return await session.scalar(
            select(IntegrationConfig).where(
                IntegrationConfig.restaurant_id == restaurant_id,
                IntegrationConfig.integration_type == integration_type,
            )
        )

    async def _enabled_configs(
        self,
        restaurant_id: str,
        integration_type: Optional[IntegrationType] = None,
    ) -> list[IntegrationConfig]:
        async with self.database.session() as session:
            query = select(IntegrationConfig).where(
                IntegrationConfig.restaurant_id == restaurant_id,
                IntegrationConfig.enabled.is_(True),
            )
            if integration_type is not None:
                query = query.where(IntegrationConfig.integration_type == integration_type)
            result = await session.execute(query.order_by(IntegrationConfig.integration_type))
            return list(result.scalars().all())
