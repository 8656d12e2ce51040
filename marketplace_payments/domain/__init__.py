"""Domain types: order state machine, processor event kinds, error taxonomy."""
from .events import PaymentEventKind, VerifiedEvent
from .state_machine import Decision, DecisionKind, OrderStatus, OrderTrigger, decide

__all__ = [
    "Decision",
    "DecisionKind",
    "OrderStatus",
    "OrderTrigger",
    "PaymentEventKind",
    "VerifiedEvent",
    "decide",
]
