"""External integrations for payment processing."""
from .stripe_client import StripeClient, StripeError

__all__ = ["StripeClient", "StripeError"]
