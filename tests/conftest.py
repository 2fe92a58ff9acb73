"""
Shared fixtures: an in-memory SQLite database, mock payment and
telephony providers, and a service container wired like development.
"""

from decimal import Decimal

import pytest
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from biteclub.core.config import Settings
from biteclub.database import Database
from biteclub.models import (
    Account,
    AccountRole,
    CustomerRelationship,
    LedgerEntry,
    MenuItem,
    PromotionConfig,
    Restaurant,
)
from biteclub.services import ServiceContainer
from biteclub.services.calls import MockTelephonyService
from biteclub.services.payment import MockPaymentService


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        env_mode="development",
        database_url="sqlite+aiosqlite://",
        use_celery=False,
        app_base_url="http://testserver",
        frontend_url="http://frontend.test",
        support_phone_number="+15550000000",
    )


@pytest.fixture
async def database():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    db = Database("sqlite+aiosqlite://", engine=engine)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def file_database(tmp_path):
    """
    File-backed database for tests that run transactions concurrently.

    Every transaction starts with BEGIN IMMEDIATE, so writers queue on the
    SQLite write lock the way they queue on row locks in PostgreSQL.
    """
    url = f"sqlite+aiosqlite:///{tmp_path / 'biteclub.db'}"
    engine = create_async_engine(url)

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    db = Database(url, engine=engine)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def telephony():
    return MockTelephonyService()


@pytest.fixture
def payment():
    return MockPaymentService()


@pytest.fixture
def services(database, settings, payment, telephony):
    return ServiceContainer.build(database, settings, payment=payment, telephony=telephony)


class Seeder:
    """Builds accounts, restaurants and menus directly in the database."""

    def __init__(self, services: ServiceContainer):
        self.services = services
        self.database = services.database
        self._counter = 0

    async def account(self, role=AccountRole.STUDENT, balance=None, first_name="Sam") -> Account:
        self._counter += 1
        async with self.database.transaction() as session:
            account = Account(
                email=f"user{self._counter}@campus.edu",
                first_name=first_name,
                last_name="Lee",
                role=role,
                credit_balance=Decimal("0.00"),
            )
            session.add(account)
        if balance:
            # Seed through the ledger so balances always match their entries
            await self.services.credits.admin_add_credits(account.id, balance, "Seed")
        return account

    async def restaurant(self, owner: Account = None, **kwargs) -> Restaurant:
        values = {
            "name": "Campus Grill",
            "phone": "+15551230000",
            "call_enabled": True,
            "call_retries": 2,
            "call_timeout_seconds": 30,
        }
        values.update(kwargs)
        async with self.database.transaction() as session:
            restaurant = Restaurant(owner_id=owner.id if owner else None, **values)
            session.add(restaurant)
        return restaurant

    async def menu_item(self, restaurant: Restaurant, name="Burger", price="10.00", **kwargs) -> MenuItem:
        async with self.database.transaction() as session:
            item = MenuItem(restaurant_id=restaurant.id, name=name, price=Decimal(price), **kwargs)
            session.add(item)
        return item

    async def promotions(self, restaurant: Restaurant, **kwargs) -> PromotionConfig:
        async with self.database.transaction() as session:
            config = PromotionConfig(restaurant_id=restaurant.id, **kwargs)
            session.add(config)
        return config

    async def relationship(self, account: Account, restaurant: Restaurant, **kwargs) -> CustomerRelationship:
        async with self.database.transaction() as session:
            relationship = CustomerRelationship(
                account_id=account.id,
                restaurant_id=restaurant.id,
                **kwargs,
            )
            session.add(relationship)
        return relationship

    async def balance(self, account: Account) -> Decimal:
        async with self.database.session() as session:
            return await self.services.ledger.balance(session, account.id)

    async def entries(self, account: Account, kind=None) -> list[LedgerEntry]:
        async with self.database.session() as session:
            query = select(LedgerEntry).where(LedgerEntry.account_id == account.id)
            if kind is not None:
                query = query.where(LedgerEntry.kind == kind)
            return list((await session.execute(query.order_by(LedgerEntry.id))).scalars().all())


@pytest.fixture
def seed(services):
    return Seeder(services)


@pytest.fixture
def concurrent_services(file_database, settings, payment, telephony):
    return ServiceContainer.build(file_database, settings, payment=payment, telephony=telephony)


@pytest.fixture
def concurrent_seed(concurrent_services):
    return Seeder(concurrent_services)


@pytest.fixture
async def student(seed):
    return await seed.account(balance="50.00")


@pytest.fixture
async def owner(seed):
    return await seed.account(role=AccountRole.RESTAURANT, first_name="Rita")


@pytest.fixture
async def admin(seed):
    return await seed.account(role=AccountRole.ADMIN, first_name="Ada")


@pytest.fixture
async def restaurant(seed, owner):
    return await seed.restaurant(owner)


@pytest.fixture
async def burger(seed, restaurant):
    return await seed.menu_item(restaurant)
