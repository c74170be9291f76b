"""
Pydantic schemas for API request/response models.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Bounds keep the largest possible order total far below the BIGINT column limit.
MAX_QUANTITY = 10_000
MAX_UNIT_PRICE_CENTS = 100_000_000
MAX_LINE_ITEMS = 100


class LineItemRequest(BaseModel):
    """One ordered SKU. Quantity is checked by the order ledger."""

    sku: str = Field(..., min_length=1, max_length=64, description="Stock keeping unit")
    quantity: int = Field(
        ..., le=MAX_QUANTITY, description="Units ordered (must be positive)"
    )
    unit_price_cents: int = Field(
        ..., ge=0, le=MAX_UNIT_PRICE_CENTS, description="Unit price in cents"
    )


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    line_items: List[LineItemRequest] = Field(
        ..., max_length=MAX_LINE_ITEMS, description="Ordered items"
    )
    idempotency_key: str = Field(
        ..., min_length=1, max_length=255, description="Caller-supplied idempotency key"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "line_items": [{"sku": "A", "quantity": 2, "unit_price_cents": 500}],
                    "idempotency_key": "k1",
                }
            ]
        }
    }


class LineItemResponse(BaseModel):
    sku: str
    quantity: int
    unit_price_cents: int


class OrderResponse(BaseModel):
    """Response schema for an order."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(..., description="Order ID")
    user_id: uuid.UUID = Field(..., description="Owning user")
    idempotency_key: str = Field(..., description="Idempotency key")
    line_items: List[LineItemResponse] = Field(..., description="Ordered items")
    total_cents: int = Field(..., description="Order total in cents")
    currency: str = Field(..., description="Currency code")
    state: str = Field(..., description="Order state")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last transition timestamp")


class CreatePaymentIntentRequest(BaseModel):
    """Request schema for creating a payment intent."""

    idempotency_key: str = Field(
        ..., min_length=1, max_length=255, description="Caller-supplied idempotency key"
    )


class PaymentIntentResponse(BaseModel):
    """Response schema for a payment intent."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(..., description="Payment intent ID")
    order_id: uuid.UUID = Field(..., description="Order this intent collects for")
    idempotency_key: str = Field(..., description="Idempotency key")
    amount_cents: int = Field(..., description="Amount in cents")
    currency: str = Field(..., description="Currency code")
    state: str = Field(..., description="Intent state")
    provider_reference: Optional[str] = Field(
        default=None, description="Stripe PaymentIntent ID"
    )
    error_message: Optional[str] = Field(default=None, description="Provider error, if any")
    created_at: datetime
    updated_at: datetime


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="processed, noop, ignored or conflict")
    event_id: Optional[str] = Field(default=None, description="Stripe event ID")
    event_type: Optional[str] = Field(default=None, description="Stripe event type")
    intent_id: Optional[str] = Field(default=None, description="Matched payment intent")
    intent_state: Optional[str] = Field(default=None, description="Intent state after handling")
    message: Optional[str] = Field(default=None, description="Status message")


class SignupRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    display_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Require a local part and a domain."""
        local, _, domain = v.strip().partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return v.strip().lower()


class SigninRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    email: str
    display_name: Optional[str] = None


class SessionResponse(BaseModel):
    """Returned on sign-in; the token is also set as an HttpOnly cookie."""

    user_id: uuid.UUID
    token: str


class ReconciliationIssueResponse(BaseModel):
    """Response schema for a reconciliation conflict awaiting review."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    intent_id: uuid.UUID
    provider_reference: str
    kind: str
    recorded_state: str
    reported_outcome: str
    details: Optional[Dict[str, Any]] = None
    created_at: datetime


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    error: str
    message: str
