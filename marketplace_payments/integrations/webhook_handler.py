"""
Stripe webhook ingestion: verify, dedupe, dispatch.

Implements:
- Signature and timestamp verification (nothing is recorded on failure)
- Exactly-once processing through the idempotency store
- Exhaustive dispatch over ``PaymentEventKind``
- One transaction per event covering the state change, the event record
  and the completed idempotency key
"""
import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.idempotency import DUPLICATE, IN_PROGRESS, IdempotencyStore
from marketplace_payments.core.order_manager import OrderManager, commit_or_conflict
from marketplace_payments.core.refunds import RefundProcessor
from marketplace_payments.core.seller_accounts import SellerAccountManager
from marketplace_payments.database.models import PaymentEvent
from marketplace_payments.domain.errors import (
    ConflictError,
    RequestInProgressError,
    WebhookAuthenticationError,
)
from marketplace_payments.domain.events import PaymentEventKind, VerifiedEvent
from marketplace_payments.monitoring.logging import payment_context
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[AsyncSession, VerifiedEvent], Awaitable[Dict[str, Any]]]


def signed_at(signature_header: str) -> Optional[int]:
    """Timestamp (``t=``) of a ``Stripe-Signature`` header."""
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t" and value.isdigit():
            return int(value)
    return None


@dataclass(frozen=True)
class IngestResult:
    status: str  # processed, duplicate
    event_id: str
    kind: str
    outcome: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "event_id": self.event_id,
            "kind": self.kind,
            "outcome": self.outcome,
        }


class WebhookIngestor:
    """
    Handles Stripe webhook deliveries.

    Every ``PaymentEventKind`` must have a handler; a missing one is a
    programming error caught at construction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        idempotency: IdempotencyStore,
        orders: OrderManager,
        refunds: RefundProcessor,
        sellers: SellerAccountManager,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the ingestor and check every event kind has a handler.

        Args:
            session_factory: Database session factory
            idempotency: Store used to dedupe event ids
            orders: Handles payment intent events
            refunds: Handles refund events
            sellers: Handles account and transfer events
            settings: Application settings (webhook secret and tolerance)

        Raises:
            RuntimeError: a ``PaymentEventKind`` has no handler
        """
        self.session_factory = session_factory
        self.idempotency = idempotency
        self.orders = orders
        self.refunds = refunds
        self.sellers = sellers
        self.settings = settings or get_settings()

        self.handlers: Dict[PaymentEventKind, EventHandler] = {
            PaymentEventKind.INTENT_SUCCEEDED: orders.apply_payment_event,
            PaymentEventKind.INTENT_FAILED: orders.apply_payment_event,
            PaymentEventKind.INTENT_PROCESSING: orders.apply_payment_event,
            PaymentEventKind.INTENT_CANCELED: orders.apply_payment_event,
            PaymentEventKind.CHARGE_REFUNDED: refunds.apply_charge_refunded,
            PaymentEventKind.REFUND_UPDATED: refunds.apply_refund_update,
            PaymentEventKind.REFUND_FAILED: refunds.apply_refund_update,
            PaymentEventKind.ACCOUNT_UPDATED: sellers.apply_account_update,
            PaymentEventKind.TRANSFER_CREATED: sellers.apply_transfer_event,
            PaymentEventKind.TRANSFER_REVERSED: sellers.apply_transfer_event,
            PaymentEventKind.DISPUTE_CREATED: self._handle_dispute,
            PaymentEventKind.UNHANDLED: self._handle_unhandled,
        }
        missing = set(PaymentEventKind) - set(self.handlers)
        if missing:
            raise RuntimeError(f"No webhook handler for: {sorted(k.value for k in missing)}")

        logger.info("webhook_ingestor_initialized", kinds=len(self.handlers))

    def verify(self, payload: bytes, signature_header: Optional[str]) -> VerifiedEvent:
        """
        Verify signature and timestamp, then parse the event.

        A payload that verifies but cannot be parsed is returned as a
        malformed ``UNHANDLED`` event keyed on its checksum.

        Args:
            payload: Raw request body
            signature_header: ``Stripe-Signature`` header value

        Returns:
            VerifiedEvent: Parsed event

        Raises:
            WebhookAuthenticationError: ``invalid_signature`` or
                ``stale_timestamp``
        """
        checksum = hashlib.sha256(payload).hexdigest()
        if not signature_header:
            metrics.record_signature_failure("invalid_signature")
            raise WebhookAuthenticationError("Missing Stripe-Signature header")

        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text,
                signature_header,
                self.settings.stripe_webhook_secret,
                self.settings.webhook_tolerance_seconds,
            )
        except UnicodeDecodeError as e:
            metrics.record_signature_failure("invalid_signature")
            raise WebhookAuthenticationError("Payload is not valid UTF-8") from e
        except stripe.SignatureVerificationError as e:
            reason = "stale_timestamp" if "tolerance" in str(e) else "invalid_signature"
            metrics.record_signature_failure(reason)
            logger.warning("webhook_signature_verification_failed", reason=reason, error=str(e))
            raise WebhookAuthenticationError(
                "Webhook signature verification failed", reason_code=reason
            ) from e

        # verify_header bounds only the past side of the window
        timestamp = signed_at(signature_header)
        skew = abs(time.time() - timestamp) if timestamp is not None else None
        if skew is None or skew > self.settings.webhook_tolerance_seconds:
            metrics.record_signature_failure("stale_timestamp")
            logger.warning("webhook_timestamp_out_of_window", timestamp=timestamp, skew=skew)
            raise WebhookAuthenticationError(
                "Webhook timestamp outside the tolerance window", reason_code="stale_timestamp"
            )

        received_at = datetime.now(timezone.utc)
        try:
            body = json.loads(text)
        except ValueError:
            body = None

        if not isinstance(body, dict) or not body.get("id") or not body.get("type"):
            logger.warning("webhook_payload_malformed", payload_checksum=checksum)
            event_type = body.get("type") if isinstance(body, dict) else None
            return VerifiedEvent(
                event_id=f"payload:{checksum}",
                kind=PaymentEventKind.UNHANDLED,
                event_type=str(event_type or "malformed"),
                payload_checksum=checksum,
                received_at=received_at,
                malformed=True,
            )

        obj = (body.get("data") or {}).get("object")
        event = VerifiedEvent(
            event_id=body["id"],
            kind=PaymentEventKind.from_type(body["type"]),
            event_type=body["type"],
            payload_checksum=checksum,
            received_at=received_at,
            data=obj if isinstance(obj, dict) else {},
        )
        logger.info(
            "webhook_signature_verified",
            event_id=event.event_id,
            event_type=event.event_type,
            kind=event.kind.value,
        )
        return event

    async def ingest(self, payload: bytes, signature_header: Optional[str]) -> IngestResult:
        """Verify, dedupe and apply one delivery."""
        return await self.process(self.verify(payload, signature_header))

    async def process(self, event: VerifiedEvent) -> IngestResult:
        """
        Apply a verified event exactly once.

        Log lines written while the event is handled carry its event id and,
        when the payload names one, its order id.

        Args:
            event: Verified event from ``verify``

        Returns:
            IngestResult: ``processed`` with the handler outcome, or
            ``duplicate`` with the outcome stored by the first delivery

        Raises:
            RequestInProgressError: another delivery of this event is being
                processed; the sender should redeliver later
            ConflictError: version conflicts persisted through every re-read
        """
        with payment_context(order_id=event.order_ref, event_id=event.event_id):
            return await self._process(event)

    async def _process(self, event: VerifiedEvent) -> IngestResult:
        start = time.perf_counter()
        kind = event.kind.value

        reservation = await self.idempotency.reserve(event.event_id, scope="webhook")
        if reservation.status == DUPLICATE:
            metrics.record_webhook_event(kind, "duplicate", time.perf_counter() - start)
            logger.info("webhook_event_duplicate", event_id=event.event_id)
            return IngestResult("duplicate", event.event_id, kind, reservation.outcome or {})
        if reservation.status == IN_PROGRESS:
            metrics.record_webhook_event(kind, "in_progress", time.perf_counter() - start)
            raise RequestInProgressError(
                "Event is already being processed", details={"event_id": event.event_id}
            )

        try:
            outcome = await self._apply(event)
        except Exception as e:
            await self.idempotency.release(event.event_id)
            metrics.record_webhook_event(kind, "failed", time.perf_counter() - start)
            logger.error(
                "webhook_event_failed",
                event_id=event.event_id,
                event_type=event.event_type,
                error=str(e),
            )
            raise

        status = "noop" if outcome.get("result") in ("noop", "rejected") else "processed"
        metrics.record_webhook_event(kind, status, time.perf_counter() - start)
        logger.info(
            "webhook_event_processed",
            event_id=event.event_id,
            event_type=event.event_type,
            result=outcome.get("result"),
            annotation=outcome.get("annotation"),
        )
        return IngestResult("processed", event.event_id, kind, outcome)

    async def _apply(self, event: VerifiedEvent) -> Dict[str, Any]:
        """Dispatch and record in one transaction, re-reading on version conflicts."""
        attempts = self.settings.webhook_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            async with self.session_factory() as db:
                try:
                    outcome = await self._dispatch(db, event)
                    db.add(
                        PaymentEvent(
                            event_id=event.event_id,
                            event_type=event.event_type,
                            kind=event.kind.value,
                            order_id=outcome.get("order_id"),
                            payload_checksum=event.payload_checksum,
                            outcome=outcome,
                            annotation=outcome.get("annotation"),
                            received_at=event.received_at,
                        )
                    )
                    await self.idempotency.complete(db, event.event_id, outcome)
                    await commit_or_conflict(db)
                    return outcome
                except ConflictError:
                    if attempt == attempts:
                        raise
                    logger.info(
                        "webhook_event_conflict_retry",
                        event_id=event.event_id,
                        attempt=attempt,
                    )
        raise ConflictError("Event could not be applied")

    async def _dispatch(self, db: AsyncSession, event: VerifiedEvent) -> Dict[str, Any]:
        if event.malformed:
            return {"result": "noop", "annotation": "malformed_payload"}
        return await self.handlers[event.kind](db, event)

    async def _handle_dispute(self, db: AsyncSession, event: VerifiedEvent) -> Dict[str, Any]:
        """A dispute freezes funds; the order is flagged for manual handling."""
        order = await self.orders.resolve_order(db, event)
        if order is None:
            return {"result": "noop", "annotation": "order_not_found"}
        self.orders.flag_for_review(
            db,
            order,
            "dispute_opened",
            source="webhook",
            correlation_id=event.event_id,
            details={"dispute_id": event.obj.get("id"), "reason": event.obj.get("reason")},
        )
        return {"order_id": order.id, "result": "review", "annotation": "dispute_opened"}

    async def _handle_unhandled(self, db: AsyncSession, event: VerifiedEvent) -> Dict[str, Any]:
        logger.warning(
            "webhook_event_unhandled",
            event_id=event.event_id,
            event_type=event.event_type,
        )
        return {"result": "noop", "annotation": f"unhandled_event_type:{event.event_type}"}
