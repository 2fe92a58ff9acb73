"""
SQLAlchemy Database Models

Accounts and their credit ledger, restaurants with promotion and call
settings, orders with their items, IVR call attempts, POS integration
configuration and the post-commit outbox.

Money columns are fixed-point ``Numeric``; balances are never written
outside ``biteclub.services.ledger``.

Version: 1.0.0
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from biteclub.database import Base


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


Money = Numeric(10, 2)


# =============================================================================
# ENUMS
# =============================================================================

class AccountRole(str, enum.Enum):
    STUDENT = "STUDENT"
    RESTAURANT = "RESTAURANT"
    ADMIN = "ADMIN"


class LedgerKind(str, enum.Enum):
    """Why a ledger entry was written."""
    PURCHASE = "PURCHASE"
    ADMIN_ADD = "ADMIN_ADD"
    SPEND = "SPEND"
    REFUND = "REFUND"
    LOYALTY_REWARD = "LOYALTY_REWARD"


class OrderStatus(str, enum.Enum):
    """
    Order lifecycle.

    PENDING -> CONFIRMED | CANCELLED, CONFIRMED -> COMPLETED,
    anything not yet refunded -> REFUNDED (admin only).
    """
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PromotionType(str, enum.Enum):
    FIRST_TIME = "FIRST_TIME"


class CallResponseType(str, enum.Enum):
    """State of a single IVR call attempt."""
    INITIATED = "INITIATED"
    RINGING = "RINGING"
    ANSWERED = "ANSWERED"
    AWAITING_DIGIT_REPEAT = "AWAITING_DIGIT_REPEAT"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    SUPPORT_REQUESTED = "SUPPORT_REQUESTED"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_CALL_STATES

    @property
    def rank(self) -> int:
        """Position in the forward-only call progression."""
        if self.is_terminal:
            return len(_CALL_PROGRESSION)
        return _CALL_PROGRESSION.index(self)


_CALL_PROGRESSION = [
    CallResponseType.INITIATED,
    CallResponseType.RINGING,
    CallResponseType.ANSWERED,
    CallResponseType.AWAITING_DIGIT_REPEAT,
]

TERMINAL_CALL_STATES = frozenset({
    CallResponseType.ACCEPTED,
    CallResponseType.REJECTED,
    CallResponseType.SUPPORT_REQUESTED,
    CallResponseType.INVALID_RESPONSE,
    CallResponseType.FAILED,
    CallResponseType.TIMEOUT,
})


class IntegrationType(str, enum.Enum):
    """POS vendors the backend can sync with."""
    TOAST = "TOAST"
    SQUARE = "SQUARE"


class OutboxKind(str, enum.Enum):
    ORDER_CREATED = "order.created"
    ORDER_CONFIRMED = "order.confirmed"


# =============================================================================
# ACCOUNTS & LEDGER
# =============================================================================

class Account(Base):
    """A student, restaurant owner or administrator holding a credit balance."""
    __tablename__ = "accounts"

    id = Column(String(32), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False, unique=True, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    role = Column(Enum(AccountRole), nullable=False, default=AccountRole.STUDENT)

    # Written only by LedgerService
    credit_balance = Column(Money, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or "Customer"

    def __repr__(self):
        return f"<Account {self.email} - {self.role.value}>"


class LedgerEntry(Base):
    """Immutable credit movement. Positive amounts add to the balance."""
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(32), ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    kind = Column(Enum(LedgerKind), nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=True, index=True)
    external_payment_id = Column(String(255), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    def __repr__(self):
        return f"<LedgerEntry {self.kind.value} {self.amount} - {self.account_id}>"


# =============================================================================
# RESTAURANTS
# =============================================================================

class Restaurant(Base):
    __tablename__ = "restaurants"

    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(32), ForeignKey("accounts.id"), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # IVR call settings
    call_enabled = Column(Boolean, default=False, nullable=False)
    call_phone = Column(String(20), nullable=True)
    call_retries = Column(Integer, default=2, nullable=False)
    call_timeout_seconds = Column(Integer, default=30, nullable=False)

    promotion_config = relationship(
        "PromotionConfig", uselist=False, lazy="selectin", back_populates="restaurant"
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def call_number(self):
        return self.call_phone or self.phone

    def __repr__(self):
        return f"<Restaurant {self.name}>"


class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(String(32), primary_key=True, default=new_id)
    restaurant_id = Column(String(32), ForeignKey("restaurants.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Money, nullable=False)
    available = Column(Boolean, default=True, nullable=False)
    external_id = Column(String(255), nullable=True, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utc_now)


class PromotionConfig(Base):
    """Restaurant-owned promotion settings, read by the promotion engine."""
    __tablename__ = "restaurant_promotions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    restaurant_id = Column(String(32), ForeignKey("restaurants.id"), nullable=False, unique=True)

    first_time_enabled = Column(Boolean, default=False, nullable=False)
    first_time_percent = Column(Numeric(5, 2), default=0, nullable=False)

    loyalty_enabled = Column(Boolean, default=False, nullable=False)
    loyalty_spend_threshold = Column(Money, default=0, nullable=False)
    loyalty_reward_amount = Column(Money, default=0, nullable=False)

    restaurant = relationship("Restaurant", back_populates="promotion_config")


class CustomerRelationship(Base):
    """Per (account, restaurant) spending history used by promotions."""
    __tablename__ = "customer_relationships"
    __table_args__ = (UniqueConstraint("account_id", "restaurant_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(32), ForeignKey("accounts.id"), nullable=False, index=True)
    restaurant_id = Column(String(32), ForeignKey("restaurants.id"), nullable=False, index=True)
    is_first_time = Column(Boolean, default=True, nullable=False)
    total_spent = Column(Money, default=0, nullable=False)
    loyalty_progress = Column(Money, default=0, nullable=False)


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """
    A student's checkout at one restaurant.

    Never deleted; status moves only through OrderService transitions.
    """
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, default=new_id)
    account_id = Column(String(32), ForeignKey("accounts.id"), nullable=False, index=True)
    restaurant_id = Column(String(32), ForeignKey("restaurants.id"), nullable=False, index=True)

    # Pricing
    total_amount = Column(Money, nullable=False)
    discount_amount = Column(Money, nullable=False, default=0)
    final_amount = Column(Money, nullable=False)
    promotion_applied = Column(Enum(PromotionType), nullable=True)

    status = Column(Enum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True)
    refund_reason = Column(Text, nullable=True)
    custom_instructions = Column(Text, nullable=True)

    # POS sync
    external_order_data = Column(JSON, nullable=True)
    integration_status = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utc_now)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("Account", lazy="selectin")
    restaurant = relationship("Restaurant", lazy="selectin")
    items = relationship(
        "OrderItem", lazy="selectin", cascade="all, delete-orphan", order_by="OrderItem.id"
    )

    @property
    def short_id(self) -> str:
        """Masked id spoken on calls."""
        return self.id[-4:]

    def __repr__(self):
        return f"<Order #{self.id} - {self.status.value} - {self.final_amount}>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    menu_item_id = Column(String(32), ForeignKey("menu_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)
    total_price = Column(Money, nullable=False)
    modifiers_selected = Column(JSON, nullable=False, default=list)
    custom_instructions = Column(Text, nullable=False, default="")

    menu_item = relationship("MenuItem", lazy="selectin")


class PromotionCost(Base):
    """Marketing spend a restaurant absorbed on one order."""
    __tablename__ = "promotion_costs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, unique=True)
    restaurant_id = Column(String(32), ForeignKey("restaurants.id"), nullable=False, index=True)
    cost_amount = Column(Money, nullable=False)
    promotion_type = Column(Enum(PromotionType), nullable=False)
    original_total = Column(Money, nullable=False)
    discount_amount = Column(Money, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


# =============================================================================
# CALLS
# =============================================================================

class CallLog(Base):
    """
    One outbound IVR call attempt for an order.

    Status callbacks update duration/cost by ``external_call_id``;
    keypad input moves ``response_type`` forward.
    """
    __tablename__ = "call_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    restaurant_id = Column(String(32), ForeignKey("restaurants.id"), nullable=False, index=True)
    call_time = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    external_call_id = Column(String(100), nullable=True, index=True)

    response_type = Column(Enum(CallResponseType), nullable=False, default=CallResponseType.INITIATED)
    keypad_response = Column(String(10), nullable=True)
    repeat_count = Column(Integer, nullable=False, default=0)
    provider_status = Column(String(30), nullable=True)

    duration = Column(Integer, nullable=True)
    cost = Column(Numeric(10, 4), nullable=True)
    success = Column(Boolean, nullable=False, default=False)
    response_data = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<CallLog {self.external_call_id} - {self.response_type.value}>"


# =============================================================================
# INTEGRATIONS & OUTBOX
# =============================================================================

class IntegrationConfig(Base):
    __tablename__ = "integration_configs"
    __table_args__ = (UniqueConstraint("restaurant_id", "integration_type"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    restaurant_id = Column(String(32), ForeignKey("restaurants.id"), nullable=False, index=True)
    integration_type = Column(Enum(IntegrationType), nullable=False)
    config_data = Column(JSON, nullable=False, default=dict)
    enabled = Column(Boolean, default=True, nullable=False)
    sync_enabled = Column(Boolean, default=True, nullable=False)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)


class OutboxEvent(Base):
    """
    Side effect announced by a committed state change.

    Written inside the same transaction as the change; dispatched
    after commit.
    """
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(Enum(OutboxKind, values_callable=lambda e: [m.value for m in e]), nullable=False)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    dispatched_at = Column(DateTime(timezone=True), nullable=True, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
