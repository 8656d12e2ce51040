"""
Typed processor events.

Raw Stripe event type strings are mapped once, at the boundary, onto
``PaymentEventKind``. Anything unknown becomes ``UNHANDLED`` so handlers
never fall through on a string comparison.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class PaymentEventKind(str, Enum):
    """Every kind of processor notification the engine understands."""

    INTENT_SUCCEEDED = "intent_succeeded"
    INTENT_FAILED = "intent_failed"
    INTENT_PROCESSING = "intent_processing"
    INTENT_CANCELED = "intent_canceled"
    CHARGE_REFUNDED = "charge_refunded"
    REFUND_UPDATED = "refund_updated"
    REFUND_FAILED = "refund_failed"
    ACCOUNT_UPDATED = "account_updated"
    TRANSFER_CREATED = "transfer_created"
    TRANSFER_REVERSED = "transfer_reversed"
    DISPUTE_CREATED = "dispute_created"
    UNHANDLED = "unhandled"

    @classmethod
    def from_type(cls, event_type: Optional[str]) -> "PaymentEventKind":
        """Map a Stripe event type string to a kind."""
        return _STRIPE_TYPES.get(event_type or "", cls.UNHANDLED)


_STRIPE_TYPES: Dict[str, PaymentEventKind] = {
    "payment_intent.succeeded": PaymentEventKind.INTENT_SUCCEEDED,
    "payment_intent.payment_failed": PaymentEventKind.INTENT_FAILED,
    "payment_intent.processing": PaymentEventKind.INTENT_PROCESSING,
    "payment_intent.canceled": PaymentEventKind.INTENT_CANCELED,
    "charge.refunded": PaymentEventKind.CHARGE_REFUNDED,
    "refund.updated": PaymentEventKind.REFUND_UPDATED,
    "charge.refund.updated": PaymentEventKind.REFUND_UPDATED,
    "refund.failed": PaymentEventKind.REFUND_FAILED,
    "account.updated": PaymentEventKind.ACCOUNT_UPDATED,
    "transfer.created": PaymentEventKind.TRANSFER_CREATED,
    "transfer.reversed": PaymentEventKind.TRANSFER_REVERSED,
    "charge.dispute.created": PaymentEventKind.DISPUTE_CREATED,
}


@dataclass(frozen=True)
class VerifiedEvent:
    """
    A signature-checked processor event.

    ``event_id`` is the idempotency key. For malformed payloads it is derived
    from the payload checksum so the delivery can still be recorded once.
    """

    event_id: str
    kind: PaymentEventKind
    event_type: str
    payload_checksum: str
    received_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)
    malformed: bool = False

    @property
    def obj(self) -> Dict[str, Any]:
        """The ``data.object`` of the event."""
        return self.data

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.data.get("metadata") or {}

    @property
    def order_ref(self) -> Optional[str]:
        """Order id carried in the object's metadata, if any."""
        return self.metadata.get("order_id")

    @property
    def payment_intent_ref(self) -> Optional[str]:
        """Payment intent id the object belongs to."""
        if self.data.get("object") == "payment_intent":
            return self.data.get("id")
        intent = self.data.get("payment_intent")
        if isinstance(intent, dict):
            return intent.get("id")
        return intent
