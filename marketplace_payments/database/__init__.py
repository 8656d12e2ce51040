"""Database package for the marketplace payments engine."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    AuditEntry,
    Base,
    GatewayAttempt,
    IdempotencyRecord,
    Order,
    OrderItem,
    OutboxEvent,
    PaymentEvent,
    ReconciliationRun,
    Refund,
    SellerAccount,
    Transfer,
)

__all__ = [
    "Base",
    "Order",
    "OrderItem",
    "PaymentEvent",
    "SellerAccount",
    "Transfer",
    "Refund",
    "IdempotencyRecord",
    "AuditEntry",
    "GatewayAttempt",
    "OutboxEvent",
    "ReconciliationRun",
    "get_db",
    "get_session_factory",
    "init_db",
    "close_db",
]
