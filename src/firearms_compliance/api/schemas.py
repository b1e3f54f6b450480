"""Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Checkout schemas
# ============================================================================


class CartLineIn(BaseModel):
    """A cart line as submitted by the storefront."""

    sku: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0, decimal_places=2)
    is_firearm: bool = False
    description: str | None = None


class PaymentDetailsIn(BaseModel):
    """Card data forwarded to the gateway. Never stored."""

    card_number: str = Field(pattern=r"^\d{12,19}$")
    expiration_date: str = Field(min_length=4, max_length=7)
    cvv: str = Field(pattern=r"^\d{3,4}$")
    billing: dict[str, Any] = Field(default_factory=dict)


class CheckoutCreate(BaseModel):
    """Schema for submitting a checkout."""

    model_config = ConfigDict(str_strip_whitespace=True)

    customer_id: str = Field(min_length=1, max_length=64)
    lines: list[CartLineIn] = Field(min_length=1)
    payment: PaymentDetailsIn
    currency: str = Field(default="USD", min_length=3, max_length=3)
    ffl_license_number: str | None = Field(default=None, max_length=32)


class CheckoutResponse(BaseModel):
    """Result of a checkout."""

    order_id: UUID
    order_number: str
    status: str
    hold_type: str
    amount: Decimal
    auth_transaction_id: str
    capture_transaction_id: str | None = None
    hold_reason: str | None = None
    ffl_license_number: str | None = None
    ffl_status: str
    firearm_count_in_window: int
    firearm_limit: int
    window_days: int


# ============================================================================
# Compliance settings schemas
# ============================================================================


class ComplianceSettingsResponse(BaseModel):
    """Active compliance policy."""

    model_config = ConfigDict(from_attributes=True)

    window_days: int
    firearm_limit: int
    multi_firearm_hold_enabled: bool
    ffl_hold_enabled: bool
    version: int
    updated_by: str
    updated_at: datetime | None = None


class ComplianceSettingsUpdate(BaseModel):
    """Partial policy update. Values are validated by the store."""

    model_config = ConfigDict(extra="forbid")

    window_days: int | None = None
    firearm_limit: int | None = None
    multi_firearm_hold_enabled: bool | None = None
    ffl_hold_enabled: bool | None = None


# ============================================================================
# Order schemas
# ============================================================================


class OrderLineResponse(BaseModel):
    """Schema for an order line."""

    model_config = ConfigDict(from_attributes=True)

    line_no: int
    sku: str
    description: str | None = None
    quantity: int
    unit_price: Decimal
    is_firearm: bool


class PaymentTransactionResponse(BaseModel):
    """Schema for one gateway call in the transaction trail."""

    model_config = ConfigDict(from_attributes=True)

    payment_transaction_id: UUID
    kind: str
    result: str
    gateway_transaction_id: str | None = None
    amount: Decimal | None = None
    attempts: int
    already_applied: bool
    message: str | None = None
    created_at: datetime


class OrderActivityResponse(BaseModel):
    """Schema for an audit row."""

    model_config = ConfigDict(from_attributes=True)

    action: str
    from_status: str | None = None
    to_status: str
    actor: str
    note: str | None = None
    created_at: datetime


class OrderResponse(BaseModel):
    """Schema for order response."""

    model_config = ConfigDict(from_attributes=True)

    order_id: UUID
    order_number: str
    customer_id: str
    status: str
    hold_type: str
    multi_firearm_flagged: bool
    amount: Decimal
    currency: str
    auth_transaction_id: str
    auth_expires_at: datetime | None = None
    capture_transaction_id: str | None = None
    ffl_license_number: str | None = None
    ffl_business_name: str | None = None
    ffl_status: str
    ffl_verified_at: datetime | None = None
    firearms_window_count_at_creation: int
    window_days_at_creation: int
    firearm_limit_at_creation: int
    settings_version: int
    override_reason: str | None = None
    override_by: str | None = None
    void_reason: str | None = None
    pending_operation: str | None = None
    failure_kind: str | None = None
    failure_count: int = 0
    created_at: datetime
    updated_at: datetime
    cleared_at: datetime | None = None
    voided_at: datetime | None = None


class OrderDetailResponse(OrderResponse):
    """Order with lines, payment trail and activity."""

    lines: list[OrderLineResponse]
    transactions: list[PaymentTransactionResponse] = Field(default_factory=list)
    activity: list[OrderActivityResponse]


# ============================================================================
# Staff action schemas
# ============================================================================


class AttachFflRequest(BaseModel):
    """Request to attach an FFL dealer to an order."""

    license_number: str = Field(min_length=1, max_length=32)


class OverrideHoldRequest(BaseModel):
    """Request to override a multi-firearm hold."""

    reason: str = Field(min_length=1)


class ForceVoidRequest(BaseModel):
    """Request to cancel an order."""

    reason: str = Field(min_length=1)


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    code: str
