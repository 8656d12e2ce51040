"""
Refund processor.

The cumulative invariant: the sum of non-failed refunds for an order never
exceeds its total. An API refund moves the order to REFUND_REQUESTED in the
same transaction that writes the ``requested`` refund row, so two concurrent
requests race on the order version and only one can pass the check.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.audit import AuditLedger
from marketplace_payments.core.order_manager import (
    OrderManager,
    commit_or_conflict,
    flush_or_conflict,
)
from marketplace_payments.database.models import Order, Refund, new_id
from marketplace_payments.domain.errors import (
    GatewayUnavailableError,
    OverRefundError,
    PaymentGatewayError,
    RefundNotAllowedError,
    ValidationError,
)
from marketplace_payments.domain.events import PaymentEventKind, VerifiedEvent
from marketplace_payments.domain.state_machine import (
    REFUNDABLE_STATUSES,
    OrderStatus,
    OrderTrigger,
)
from marketplace_payments.integrations.stripe_client import StripeClient
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_FAILED_REFUND_STATUSES = ("failed", "canceled")


class RefundProcessor:
    """Issues refunds and applies the processor's refund notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeClient,
        orders: OrderManager,
        audit: AuditLedger,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the refund processor.

        Args:
            session_factory: Database session factory
            gateway: Stripe gateway adapter
            orders: Order manager that owns the order transitions
            audit: Audit ledger
            settings: Application settings
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.orders = orders
        self.audit = audit
        self.settings = settings or get_settings()

    async def request_refund(
        self, order_id: str, amount: int, reason: Optional[str] = None
    ) -> Refund:
        """
        Refund ``amount`` of a paid order.

        Args:
            order_id: Order to refund
            amount: Amount in minor units
            reason: Processor refund reason, if any

        Returns:
            Refund: ``confirmed`` if the processor settled it synchronously,
            ``requested`` while awaiting the processor (including after a
            transient failure, left to the reconciliation sweep)

        Raises:
            RefundNotAllowedError: order is not PAID or FULFILLED
            OverRefundError: refunds would exceed the order total
            PaymentGatewayError: processor rejected the refund; the refund is
                failed and the order reverted
        """
        if amount <= 0:
            raise ValidationError("Refund amount must be positive", reason_code="invalid_amount")

        async with self.session_factory() as db:
            order = await self.orders.load(db, order_id)
            status = OrderStatus(order.status)
            if status not in REFUNDABLE_STATUSES:
                raise RefundNotAllowedError(
                    f"Order in {status.value} cannot be refunded",
                    details={"order_id": order_id, "status": status.value},
                )

            committed = await self.committed_amount(db, order_id)
            if committed + amount > order.total_amount:
                raise OverRefundError(
                    "Refund exceeds the refundable amount",
                    details={
                        "order_id": order_id,
                        "requested": amount,
                        "refundable": order.total_amount - committed,
                    },
                )

            self.orders.apply_trigger(
                db,
                order,
                OrderTrigger.REFUND_REQUESTED,
                source="api",
                details={"amount": amount},
            )
            refund = Refund(
                id=new_id(),
                order_id=order_id,
                amount=amount,
                currency=order.currency,
                reason=reason,
                source="api",
                status="requested",
                attempt_count=1,
            )
            db.add(refund)
            self.audit.record(
                db,
                "refund",
                refund.id,
                "refund_requested",
                to_status="requested",
                amount=amount,
                source="api",
                details={"order_id": order_id, "reason": reason},
            )
            await commit_or_conflict(db)

        metrics.record_refund("requested", "api")
        logger.info("refund_requested", order_id=order_id, refund_id=refund.id, amount=amount)

        try:
            processor_refund = await self.gateway.create_refund(
                refund.id,
                amount,
                payment_intent_id=order.payment_intent_id,
                charge_id=order.charge_id,
                reason=reason,
                order_id=order_id,
            )
        except PaymentGatewayError as e:
            await self._settle_by_id(refund.id, "failed", source="gateway", failure_reason=e.message)
            raise
        except GatewayUnavailableError:
            logger.warning("refund_outcome_unknown", refund_id=refund.id, order_id=order_id)
            return refund

        return await self._apply_processor_refund(refund.id, processor_refund, source="gateway")

    async def committed_amount(self, db: AsyncSession, order_id: str) -> int:
        """Sum of non-failed refunds for an order."""
        result = await db.execute(
            select(func.coalesce(func.sum(Refund.amount), 0)).where(
                Refund.order_id == order_id, Refund.status != "failed"
            )
        )
        return int(result.scalar_one())

    # Webhooks

    async def apply_charge_refunded(self, db: AsyncSession, event: VerifiedEvent) -> Dict[str, Any]:
        """
        Apply ``charge.refunded``.

        ``amount_refunded`` is cumulative. Pending refunds are confirmed
        first; any remainder was issued outside the engine (dashboard,
        dispute tooling) and is recorded as a processor refund.

        Args:
            db: Ingestor session
            event: Verified ``charge.refunded`` event

        Returns:
            Dict[str, Any]: Outcome stored with the event
        """
        order = await self.orders.resolve_order(db, event)
        if order is None:
            return {"result": "noop", "annotation": "order_not_found"}

        charge = event.obj
        if charge.get("id") and not order.charge_id:
            order.charge_id = charge["id"]

        remaining = int(charge.get("amount_refunded") or 0) - order.refunded_amount
        if remaining < 0:
            return {"order_id": order.id, "result": "noop", "annotation": "stale_refund_total"}

        pending = await self._pending_refunds(db, order.id)
        settled_ids = {
            r.get("id")
            for r in ((charge.get("refunds") or {}).get("data") or [])
            if r.get("status") == "succeeded"
        }
        confirmed: List[str] = []
        for refund in pending:
            if refund.amount > remaining:
                continue
            if settled_ids and refund.stripe_refund_id and refund.stripe_refund_id not in settled_ids:
                continue
            remaining -= refund.amount
            await self._settle(
                db, refund, order, "confirmed", source="webhook", correlation_id=event.event_id
            )
            confirmed.append(refund.id)

        if remaining == 0:
            if not confirmed:
                return {"order_id": order.id, "result": "noop", "annotation": "already_applied"}
            return {"order_id": order.id, "result": "applied", "confirmed_refunds": confirmed}

        if order.refunded_amount + remaining > order.total_amount:
            self.orders.flag_for_review(
                db, order, "refund_exceeds_total", source="webhook", correlation_id=event.event_id
            )
            return {"order_id": order.id, "result": "review", "annotation": "refund_exceeds_total"}

        outcome = await self._record_processor_refund(db, order, remaining, event)
        outcome["confirmed_refunds"] = confirmed
        return outcome

    async def _record_processor_refund(
        self, db: AsyncSession, order: Order, amount: int, event: VerifiedEvent
    ) -> Dict[str, Any]:
        from_status = OrderStatus(order.status)
        if from_status in REFUNDABLE_STATUSES:
            self.orders.apply_trigger(
                db,
                order,
                OrderTrigger.REFUND_REQUESTED,
                source="webhook",
                correlation_id=event.event_id,
                details={"amount": amount, "initiated_by": "processor"},
            )
            await flush_or_conflict(db)
        elif from_status not in (OrderStatus.REFUND_REQUESTED, OrderStatus.REFUNDED):
            self.orders.flag_for_review(
                db, order, "refund_on_unpaid_order", source="webhook", correlation_id=event.event_id
            )
            return {"order_id": order.id, "result": "review", "annotation": "refund_on_unpaid_order"}

        refund = Refund(
            id=new_id(),
            order_id=order.id,
            amount=amount,
            currency=order.currency,
            reason="processor_initiated",
            source="processor",
            status="requested",
            attempt_count=0,
        )
        db.add(refund)
        await self._settle(db, refund, order, "confirmed", source="webhook", correlation_id=event.event_id)
        return {
            "order_id": order.id,
            "result": "applied",
            "from_status": from_status.value,
            "to_status": order.status,
            "refund_id": refund.id,
            "amount": amount,
        }

    async def apply_refund_update(self, db: AsyncSession, event: VerifiedEvent) -> Dict[str, Any]:
        """Apply ``refund.updated`` / ``refund.failed``."""
        obj = event.obj
        refund = None
        if obj.get("id"):
            refund = (
                await db.execute(select(Refund).where(Refund.stripe_refund_id == obj["id"]))
            ).scalar_one_or_none()
        local_id = (obj.get("metadata") or {}).get("refund_id")
        if refund is None and local_id:
            refund = await db.get(Refund, local_id)
        if refund is None:
            return {"result": "noop", "annotation": "refund_not_found"}

        if not refund.stripe_refund_id and obj.get("id"):
            refund.stripe_refund_id = obj["id"]

        status = obj.get("status")
        if event.kind is PaymentEventKind.REFUND_FAILED or status in _FAILED_REFUND_STATUSES:
            target = "failed"
        elif status == "succeeded":
            target = "confirmed"
        else:
            return {"refund_id": refund.id, "result": "noop", "annotation": f"refund_{status}"}

        order = await self.orders.load(db, refund.order_id)
        return await self._settle(
            db,
            refund,
            order,
            target,
            source="webhook",
            correlation_id=event.event_id,
            failure_reason=obj.get("failure_reason"),
        )

    # Settlement

    async def _settle(
        self,
        db: AsyncSession,
        refund: Refund,
        order: Order,
        status: str,
        *,
        source: str,
        correlation_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Move a refund to ``confirmed`` or ``failed`` and drive the order.

        A refund the processor fails after confirming is subtracted again and
        the order is flagged for review.
        """
        before = refund.status
        if before == status:
            return {"refund_id": refund.id, "result": "noop", "annotation": "already_applied"}

        refund.status = status
        if failure_reason:
            refund.failure_reason = failure_reason
        self.audit.record(
            db,
            "refund",
            refund.id,
            f"refund_{status}",
            from_status=before,
            to_status=status,
            amount=refund.amount,
            source=source,
            correlation_id=correlation_id,
            details={"order_id": order.id},
        )
        metrics.record_refund(status, refund.source)

        if status == "confirmed":
            order.refunded_amount += refund.amount
        elif before == "confirmed":
            order.refunded_amount -= refund.amount
            self.orders.flag_for_review(
                db, order, "refund_failed_after_confirmation", source=source, correlation_id=correlation_id
            )
            return {"refund_id": refund.id, "result": "review", "annotation": "refund_failed_after_confirmation"}

        outcome: Dict[str, Any] = {
            "refund_id": refund.id,
            "order_id": order.id,
            "result": "applied",
            "refund_status": status,
        }
        if order.status != OrderStatus.REFUND_REQUESTED.value:
            return outcome

        if any(r.status == "requested" for r in await self._pending_refunds(db, order.id)):
            return outcome

        trigger = OrderTrigger.REFUND_CONFIRMED if status == "confirmed" else OrderTrigger.REFUND_FAILED
        if trigger is OrderTrigger.REFUND_FAILED and order.refunded_amount > 0:
            # An earlier refund on this order did settle.
            trigger = OrderTrigger.REFUND_CONFIRMED
        result = self.orders.apply_trigger(
            db, order, trigger, source=source, correlation_id=correlation_id
        )
        outcome["to_status"] = result.to_status.value
        return outcome

    async def _settle_by_id(
        self,
        refund_id: str,
        status: str,
        *,
        source: str,
        failure_reason: Optional[str] = None,
        stripe_refund_id: Optional[str] = None,
    ) -> Refund:
        async with self.session_factory() as db:
            refund = await db.get(Refund, refund_id)
            order = await self.orders.load(db, refund.order_id)
            if stripe_refund_id and not refund.stripe_refund_id:
                refund.stripe_refund_id = stripe_refund_id
            await self._settle(db, refund, order, status, source=source, failure_reason=failure_reason)
            await commit_or_conflict(db)
        logger.info("refund_settled", refund_id=refund_id, status=status, source=source)
        return refund

    async def _apply_processor_refund(
        self, refund_id: str, processor_refund: Dict[str, Any], source: str
    ) -> Refund:
        status = processor_refund.get("status")
        if status == "succeeded":
            return await self._settle_by_id(
                refund_id, "confirmed", source=source, stripe_refund_id=processor_refund.get("id")
            )
        if status in _FAILED_REFUND_STATUSES:
            return await self._settle_by_id(
                refund_id,
                "failed",
                source=source,
                failure_reason=processor_refund.get("failure_reason") or status,
                stripe_refund_id=processor_refund.get("id"),
            )

        async with self.session_factory() as db:
            refund = await db.get(Refund, refund_id)
            refund.stripe_refund_id = refund.stripe_refund_id or processor_refund.get("id")
            await db.commit()
        return refund

    # Queries and reconciliation support

    async def _pending_refunds(self, db: AsyncSession, order_id: str) -> List[Refund]:
        result = await db.execute(
            select(Refund)
            .where(Refund.order_id == order_id, Refund.status == "requested")
            .order_by(Refund.created_at)
        )
        return list(result.scalars().all())

    async def list_refunds(self, order_id: str) -> List[Refund]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Refund).where(Refund.order_id == order_id).order_by(Refund.created_at)
            )
            return list(result.scalars().all())

    async def find_stuck_refunds(
        self, older_than: datetime, limit: int = 100, after_id: Optional[str] = None
    ) -> List[Refund]:
        """One page of ``requested`` refunds created before ``older_than``, ordered by id."""
        stmt = select(Refund).where(Refund.status == "requested", Refund.created_at < older_than)
        if after_id is not None:
            stmt = stmt.where(Refund.id > after_id)
        async with self.session_factory() as db:
            result = await db.execute(stmt.order_by(Refund.id).limit(limit))
            return list(result.scalars().all())

    async def resolve_stuck_refund(self, refund: Refund) -> str:
        """
        Settle a ``requested`` refund against the processor.

        Never issues a second refund: an unsent refund is re-issued under
        its original idempotency key.

        Args:
            refund: Refund still ``requested``

        Returns:
            str: Refund status after the check
        """
        processor_refund: Optional[Dict[str, Any]] = None
        if refund.stripe_refund_id:
            processor_refund = await self.gateway.retrieve_refund(refund.stripe_refund_id)
        else:
            order = await self.orders.get_order(refund.order_id)
            if order.payment_intent_id:
                for item in await self.gateway.list_refunds(order.payment_intent_id):
                    if (item.get("metadata") or {}).get("refund_id") == refund.id:
                        processor_refund = item
                        break
            if processor_refund is None:
                async with self.session_factory() as db:
                    row = await db.get(Refund, refund.id)
                    row.attempt_count += 1
                    await db.commit()
                try:
                    processor_refund = await self.gateway.create_refund(
                        refund.id,
                        refund.amount,
                        payment_intent_id=order.payment_intent_id,
                        charge_id=order.charge_id,
                        reason=refund.reason,
                        order_id=order.id,
                    )
                except PaymentGatewayError as e:
                    settled = await self._settle_by_id(
                        refund.id, "failed", source="reconciliation", failure_reason=e.message
                    )
                    return settled.status

        settled = await self._apply_processor_refund(refund.id, processor_refund, source="reconciliation")
        return settled.status
