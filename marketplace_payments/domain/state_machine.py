"""
Order state machine.

    CREATED → PAYMENT_PROCESSING → PAID → FULFILLED
       │              │              │        │
       │              │              └────────┴──→ REFUND_REQUESTED → REFUNDED
       │              ↓                                   │
       ├──────→ PAYMENT_FAILED                            └─→ (back to PAID / FULFILLED on failure)
       └──────→ CANCELLED ←── PAYMENT_PROCESSING

The table below is a total function over (status, trigger). Every pair
resolves to exactly one decision; anything not listed is a rejection.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    CREATED = "CREATED"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAID = "PAID"
    FULFILLED = "FULFILLED"
    REFUND_REQUESTED = "REFUND_REQUESTED"
    REFUNDED = "REFUNDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CANCELLED = "CANCELLED"


class OrderTrigger(str, Enum):
    """Inputs that can move an order."""

    PAYMENT_STARTED = "payment_started"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CANCEL = "cancel"
    FULFILLMENT_COMPLETED = "fulfillment_completed"
    REFUND_REQUESTED = "refund_requested"
    REFUND_CONFIRMED = "refund_confirmed"
    REFUND_FAILED = "refund_failed"


class DecisionKind(str, Enum):
    APPLY = "applied"
    NOOP = "noop"
    REVIEW = "review"
    REJECT = "reject"


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    to_status: Optional[OrderStatus] = None
    revert: bool = False

    @property
    def changes_state(self) -> bool:
        return self.kind is DecisionKind.APPLY


def _apply(status: OrderStatus) -> Decision:
    return Decision(DecisionKind.APPLY, status)


_NOOP = Decision(DecisionKind.NOOP)
_REVIEW = Decision(DecisionKind.REVIEW)
_REJECT = Decision(DecisionKind.REJECT)
_REVERT = Decision(DecisionKind.APPLY, None, revert=True)

S = OrderStatus
T = OrderTrigger

TRANSITIONS: Dict[Tuple[OrderStatus, OrderTrigger], Decision] = {
    (S.CREATED, T.PAYMENT_STARTED): _apply(S.PAYMENT_PROCESSING),
    (S.CREATED, T.PAYMENT_SUCCEEDED): _apply(S.PAID),
    (S.CREATED, T.PAYMENT_FAILED): _apply(S.PAYMENT_FAILED),
    (S.CREATED, T.CANCEL): _apply(S.CANCELLED),
    (S.PAYMENT_PROCESSING, T.PAYMENT_STARTED): _NOOP,
    (S.PAYMENT_PROCESSING, T.PAYMENT_SUCCEEDED): _apply(S.PAID),
    (S.PAYMENT_PROCESSING, T.PAYMENT_FAILED): _apply(S.PAYMENT_FAILED),
    (S.PAYMENT_PROCESSING, T.CANCEL): _apply(S.CANCELLED),
    (S.PAID, T.PAYMENT_SUCCEEDED): _NOOP,
    # A late failure never downgrades a paid order.
    (S.PAID, T.PAYMENT_FAILED): _REVIEW,
    (S.PAID, T.FULFILLMENT_COMPLETED): _apply(S.FULFILLED),
    (S.PAID, T.REFUND_REQUESTED): _apply(S.REFUND_REQUESTED),
    (S.FULFILLED, T.PAYMENT_SUCCEEDED): _NOOP,
    (S.FULFILLED, T.PAYMENT_FAILED): _REVIEW,
    (S.FULFILLED, T.FULFILLMENT_COMPLETED): _NOOP,
    (S.FULFILLED, T.REFUND_REQUESTED): _apply(S.REFUND_REQUESTED),
    (S.REFUND_REQUESTED, T.PAYMENT_SUCCEEDED): _NOOP,
    (S.REFUND_REQUESTED, T.PAYMENT_FAILED): _REVIEW,
    (S.REFUND_REQUESTED, T.REFUND_CONFIRMED): _apply(S.REFUNDED),
    (S.REFUND_REQUESTED, T.REFUND_FAILED): _REVERT,
    (S.REFUNDED, T.PAYMENT_SUCCEEDED): _NOOP,
    (S.REFUNDED, T.PAYMENT_FAILED): _REVIEW,
    (S.REFUNDED, T.REFUND_CONFIRMED): _NOOP,
    (S.PAYMENT_FAILED, T.PAYMENT_SUCCEEDED): _REVIEW,
    (S.PAYMENT_FAILED, T.PAYMENT_FAILED): _NOOP,
    (S.CANCELLED, T.PAYMENT_SUCCEEDED): _REVIEW,
    (S.CANCELLED, T.PAYMENT_FAILED): _NOOP,
    (S.CANCELLED, T.CANCEL): _NOOP,
}

TERMINAL_STATUSES = frozenset({S.REFUNDED, S.PAYMENT_FAILED, S.CANCELLED})
REFUNDABLE_STATUSES = frozenset({S.PAID, S.FULFILLED})
CANCELLABLE_STATUSES = frozenset({S.CREATED, S.PAYMENT_PROCESSING})
AWAITING_PAYMENT_STATUSES = frozenset({S.CREATED, S.PAYMENT_PROCESSING})


def decide(
    status: OrderStatus,
    trigger: OrderTrigger,
    pre_refund_status: Optional[OrderStatus] = None,
) -> Decision:
    """
    Resolve a (status, trigger) pair.

    Revert decisions are resolved against ``pre_refund_status``; a revert
    with no recorded prior status falls back to PAID.
    """
    decision = TRANSITIONS.get((status, trigger), _REJECT)
    if decision.revert:
        return _apply(pre_refund_status or S.PAID)
    return decision
