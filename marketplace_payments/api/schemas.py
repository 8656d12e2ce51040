"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class CartLineRequest(BaseModel):
    """One line of a cart snapshot."""

    product_id: str = Field(..., min_length=1, description="Catalog product identifier")
    seller_id: str = Field(..., min_length=1, description="Seller of the product")
    quantity: int = Field(..., description="Units ordered")
    unit_price: int = Field(..., description="Unit price in minor units, as shown to the buyer")


class CheckoutRequest(BaseModel):
    """Request schema for checkout."""

    buyer_id: str = Field(..., min_length=1, description="Buyer identifier")
    items: List[CartLineRequest] = Field(default_factory=list, description="Cart lines")
    total: int = Field(..., description="Cart total in minor units")
    currency: str = Field(..., description="ISO 4217 currency code (e.g., EUR)")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Normalize currency to upper case."""
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "buyer_id": "buyer_42",
                    "items": [
                        {
                            "product_id": "prod_lamp",
                            "seller_id": "seller_7",
                            "quantity": 1,
                            "unit_price": 4999,
                        }
                    ],
                    "total": 4999,
                    "currency": "EUR",
                }
            ]
        }
    }


class CheckoutResponse(BaseModel):
    """Response schema for checkout."""

    order_id: str = Field(..., description="Order ID")
    order_number: str = Field(..., description="Human-readable order number")
    status: str = Field(..., description="Order status")
    total_amount: int = Field(..., description="Order total in minor units")
    currency: str = Field(..., description="Currency code")
    client_secret: Optional[str] = Field(
        default=None, description="PaymentIntent client secret used to confirm payment"
    )


class OrderItemResponse(BaseModel):
    product_id: str
    seller_id: str
    quantity: int
    unit_price: int
    amount: int


class OrderResponse(BaseModel):
    """Response schema for an order."""

    id: str = Field(..., description="Order ID")
    order_number: str = Field(..., description="Human-readable order number")
    buyer_id: str = Field(..., description="Buyer identifier")
    status: str = Field(..., description="Order status")
    total_amount: int = Field(..., description="Order total in minor units")
    currency: str = Field(..., description="Currency code")
    payment_intent_id: Optional[str] = Field(default=None, description="Stripe PaymentIntent ID")
    refunded_amount: int = Field(..., description="Confirmed refunds in minor units")
    requires_review: bool = Field(..., description="Flagged for manual reconciliation")
    review_reason: Optional[str] = Field(default=None, description="Why the order was flagged")
    version: int = Field(..., description="Optimistic concurrency version")
    items: List[OrderItemResponse] = Field(default_factory=list)
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Cancellation reason")


class RefundRequest(BaseModel):
    """Request schema for refunding an order."""

    amount: int = Field(..., gt=0, description="Refund amount in minor units")
    reason: Optional[str] = Field(
        default=None, description="Refund reason (requested_by_customer, duplicate, fraudulent)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount": 2000, "reason": "requested_by_customer"},
            ]
        }
    }


class RefundResponse(BaseModel):
    """Response schema for refund."""

    id: str = Field(..., description="Refund ID")
    order_id: str = Field(..., description="Order ID")
    amount: int = Field(..., description="Refund amount in minor units")
    currency: str = Field(..., description="Currency code")
    reason: Optional[str] = None
    source: str = Field(..., description="api or processor")
    stripe_refund_id: Optional[str] = Field(default=None, description="Stripe Refund ID")
    status: str = Field(..., description="Refund status (requested, confirmed, failed)")
    attempt_count: int = 0
    failure_reason: Optional[str] = None


class OnboardingRequest(BaseModel):
    email: Optional[str] = Field(default=None, description="Seller contact email")
    country: Optional[str] = Field(
        default=None, min_length=2, max_length=2, description="ISO country code"
    )


class OnboardingResponse(BaseModel):
    seller_id: str
    stripe_account_id: str
    onboarding_url: Optional[str] = Field(default=None, description="Stripe-hosted onboarding link")
    expires_at: Optional[int] = Field(default=None, description="Link expiry (Unix timestamp)")


class SellerAccountResponse(BaseModel):
    seller_id: str
    stripe_account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool
    onboarding_status: str
    capabilities_checked_at: Optional[str] = None


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="processed or duplicate")
    event_id: str = Field(..., description="Stripe event ID")
    kind: str = Field(..., description="Event kind")
    outcome: Dict[str, Any] = Field(default_factory=dict, description="Recorded outcome")


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Stable reason code")
    message: str = Field(..., description="Human-readable message")
    details: Optional[Dict[str, Any]] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ReconciliationResponse(BaseModel):
    """Response schema for reconciliation."""

    date: str = Field(..., description="Reconciliation date")
    database_total: int = Field(..., description="Captured total from order records")
    database_count: int = Field(..., description="Captured order count")
    processor_total: int = Field(..., description="Succeeded total at Stripe")
    processor_count: int = Field(..., description="Succeeded intent count at Stripe")
    discrepancy_amount: int = Field(..., description="Absolute difference of totals")
    discrepancy_count: int = Field(..., description="Number of specific discrepancies")
    discrepancies: List[Dict[str, Any]] = Field(..., description="Specific discrepancies")


class SweepResponse(BaseModel):
    sweeps: Dict[str, Dict[str, int]] = Field(..., description="Result counts per sweep")
