"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CheckoutRequest,
    CheckoutResponse,
    OrderResponse,
    RefundRequest,
    RefundResponse,
)

__all__ = [
    "create_app",
    "CheckoutRequest",
    "CheckoutResponse",
    "OrderResponse",
    "RefundRequest",
    "RefundResponse",
]
