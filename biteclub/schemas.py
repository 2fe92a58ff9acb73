"""
Pydantic Schemas for Request/Response Validation

Money is carried as ``Decimal`` end to end and serialized as a string,
so amounts never pass through binary floating point.

Version: 1.0.0
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from biteclub.models import CallResponseType, LedgerKind, OrderStatus, PromotionType


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderItemCreate(BaseModel):
    """Single item in an order."""
    menu_item_id: str = Field(..., min_length=1, examples=["9f1c2b7e4a5d4c3b8e6f0a1b2c3d4e5f"])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    modifiers_selected: List[Any] = Field(default_factory=list)
    custom_instructions: Optional[str] = Field(None, max_length=200, examples=["No onions"])


class OrderCreate(BaseModel):
    """Request schema for checking out at one restaurant."""
    restaurant_id: str = Field(..., min_length=1)
    items: List[OrderItemCreate] = Field(..., min_length=1)
    total_amount: Decimal = Field(..., examples=["24.50"])
    custom_instructions: Optional[str] = Field(None, max_length=500)

    @field_validator("total_amount")
    @classmethod
    def validate_total(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("Order total must be greater than 0")
        return v


class PromotionCheck(BaseModel):
    """Preview the promotions a checkout would receive."""
    restaurant_id: str = Field(..., min_length=1)
    total_amount: Decimal = Field(..., gt=0, examples=["18.00"])


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, examples=["Kitchen closed"])


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, examples=["Order never arrived"])


class CheckoutRequest(BaseModel):
    """Credit purchase; the amount must be one of the offered packages."""
    amount: Decimal = Field(..., examples=["25"])


class ConfirmPurchaseRequest(BaseModel):
    payment_intent_id: Optional[str] = Field(None, examples=["pi_3Nk..."])
    session_id: Optional[str] = Field(None, examples=["cs_test_a1..."])


class AdminAddCredits(BaseModel):
    account_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, examples=["15.00"])
    reason: Optional[str] = Field(None, max_length=500)


class CallSettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their current value."""
    call_enabled: Optional[bool] = None
    call_phone: Optional[str] = Field(None, max_length=20, examples=["+15551234567"])
    call_retries: Optional[int] = Field(None, examples=[2])
    call_timeout_seconds: Optional[int] = Field(None, examples=[30])


class IntegrationConfigRequest(BaseModel):
    """Credentials for one POS integration."""
    type: str = Field(..., examples=["TOAST", "SQUARE"])
    config: dict = Field(default_factory=dict)


class AdminIntegrationRequest(IntegrationConfigRequest):
    """Credentials for one POS integration of any restaurant."""
    restaurant_id: str


class IntegrationDisableRequest(BaseModel):
    type: str = Field(..., examples=["TOAST"])


class MenuSyncRequest(BaseModel):
    type: Optional[str] = Field(None, examples=["SQUARE"])


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class OrderItemResponse(BaseModel):
    menu_item_id: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    modifiers_selected: List[Any]
    custom_instructions: Optional[str]

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: str
    account_id: str
    restaurant_id: str
    total_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    promotion_applied: Optional[PromotionType]
    status: OrderStatus
    refund_reason: Optional[str]
    custom_instructions: Optional[str]
    integration_status: Optional[str]
    external_order_data: Optional[dict]
    items: List[OrderItemResponse]
    created_at: datetime
    confirmed_at: Optional[datetime]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class PromotionPreview(BaseModel):
    subtotal: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    promotion_applied: Optional[PromotionType]
    loyalty_reward_earned: Decimal
    loyalty_amount_needed: Optional[Decimal] = None
    first_time_percent: Optional[Decimal] = None

    class Config:
        from_attributes = True


class OrderCreateResponse(BaseModel):
    """Response after creating an order."""
    success: bool
    message: str
    order: OrderResponse
    promotions: PromotionPreview
    balance_sufficient: bool


class OrderListResponse(BaseModel):
    total: int
    orders: List[OrderResponse]


class ActiveCountResponse(BaseModel):
    count: int


class RefundResponse(BaseModel):
    success: bool
    order: OrderResponse
    refund_amount: Decimal
    was_charged: bool


class LedgerEntryResponse(BaseModel):
    id: int
    amount: Decimal
    kind: LedgerKind
    description: str
    order_id: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class BalanceResponse(BaseModel):
    balance: Decimal
    transactions: List[LedgerEntryResponse]


class CheckoutResponse(BaseModel):
    session_id: str
    url: str


class CreditReceiptResponse(BaseModel):
    success: bool
    amount: Decimal
    new_balance: Decimal
    transaction_id: int
    duplicate: bool = False


class CallLogResponse(BaseModel):
    id: int
    order_id: str
    restaurant_id: str
    call_time: datetime
    external_call_id: Optional[str]
    response_type: CallResponseType
    keypad_response: Optional[str]
    repeat_count: int
    duration: Optional[int]
    cost: Optional[Decimal]
    success: bool

    class Config:
        from_attributes = True


class CallHistoryResponse(BaseModel):
    calls: List[CallLogResponse]
    total_calls: int
    total_cost: Decimal


class CallSettingsResponse(BaseModel):
    call_enabled: bool
    call_phone: Optional[str]
    call_retries: int
    call_timeout_seconds: int

    class Config:
        from_attributes = True


class RestaurantCallSettingsResponse(CallSettingsResponse):
    id: str
    name: str
    phone: Optional[str]


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    environment: str
    database: str
    payment: str
    telephony: str
    timestamp: datetime
