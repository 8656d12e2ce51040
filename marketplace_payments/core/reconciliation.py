"""
Reconciliation against the processor.

Two jobs:
- Sweeps that settle anything left waiting on a webhook or interrupted
  mid-call: stuck payments, stuck refunds, unsent transfers and gateway
  attempts that never finished.
- A daily comparison of processor totals with order records.

Sweeps never repeat a processor side effect blindly. They query first and
re-issue only under the original idempotency key.
"""
import time
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.audit import AuditLedger, ensure_utc
from marketplace_payments.core.idempotency import IdempotencyStore
from marketplace_payments.core.order_manager import OrderManager, commit_or_conflict
from marketplace_payments.core.refunds import RefundProcessor
from marketplace_payments.core.seller_accounts import SellerAccountManager
from marketplace_payments.database.models import Order, ReconciliationRun
from marketplace_payments.domain.errors import EngineError
from marketplace_payments.domain.events import PaymentEventKind, VerifiedEvent
from marketplace_payments.domain.state_machine import AWAITING_PAYMENT_STATUSES, OrderStatus, OrderTrigger
from marketplace_payments.integrations.stripe_client import StripeClient
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Order statuses that mean the processor captured the full amount
_CAPTURED_STATUSES = (
    OrderStatus.PAID.value,
    OrderStatus.FULFILLED.value,
    OrderStatus.REFUND_REQUESTED.value,
    OrderStatus.REFUNDED.value,
)

_INTENT_STATUS_KINDS = {
    "succeeded": PaymentEventKind.INTENT_SUCCEEDED,
    "canceled": PaymentEventKind.INTENT_CANCELED,
}


class ReconciliationEngine:
    """
    Settles pending work against the processor.

    Each sweep returns a count per result and never raises for a single
    item; a failing item is logged and retried on the next sweep.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeClient,
        orders: OrderManager,
        refunds: RefundProcessor,
        sellers: SellerAccountManager,
        idempotency: IdempotencyStore,
        audit: AuditLedger,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.orders = orders
        self.refunds = refunds
        self.sellers = sellers
        self.idempotency = idempotency
        self.audit = audit
        self.settings = settings or get_settings()
        logger.info("reconciliation_engine_initialized")

    # Sweeps

    async def _pages(
        self, finder: Callable[..., Any], *args: Any, key: Callable[[Any], str] = lambda row: row.id
    ) -> AsyncIterator[Any]:
        """Yield every row ``finder`` matches, one ``sweep_batch_size`` page at a time."""
        size = self.settings.sweep_batch_size
        after_id: Optional[str] = None
        while True:
            page = await finder(*args, limit=size, after_id=after_id)
            for row in page:
                yield row
            if len(page) < size:
                return
            after_id = key(page[-1])

    async def sweep_stuck_payments(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Resolve orders still waiting for a terminal payment webhook.

        The intent is looked up by reference, or searched by order id when
        the reference was never attached. Succeeded and canceled intents are
        applied as if their webhook had arrived; a failed attempt the buyer
        never retried and a checkout with no intent are cancelled once past
        ``checkout_expiry_seconds``.
        """
        now = now or datetime.now(timezone.utc)
        horizon = now - timedelta(seconds=self.settings.payment_timeout_seconds)
        expiry = now - timedelta(seconds=self.settings.checkout_expiry_seconds)
        results: Counter = Counter()

        stuck = self._pages(self.orders.find_stuck_orders, AWAITING_PAYMENT_STATUSES, horizon)
        async for order in stuck:
            try:
                result = await self._resolve_payment(order, expired=ensure_utc(order.created_at) < expiry)
            except EngineError as e:
                logger.warning(
                    "stuck_payment_unresolved",
                    order_id=order.id,
                    error=e.reason_code,
                    message=e.message,
                )
                result = "error"
            results[result] += 1

        self._record("payments", results)
        return dict(results)

    async def _resolve_payment(self, order: Order, expired: bool) -> str:
        intent: Optional[Dict[str, Any]] = None
        if order.payment_intent_id:
            intent = await self.gateway.retrieve_payment_intent(order.payment_intent_id)
        else:
            intent = await self.gateway.find_payment_intent_for_order(order.id)
            if intent is not None:
                await self.orders.attach_intent(order.id, intent["id"])

        status = intent.get("status") if intent else None
        kind = _INTENT_STATUS_KINDS.get(status)
        if kind is not None:
            outcome = await self._apply_intent(kind, intent)
            return outcome.get("result", "noop")

        if not expired:
            return "pending"

        if intent is not None:
            await self.orders.cancel_order(order.id, reason="checkout_expired")
        else:
            await self.orders.transition(
                order.id,
                OrderTrigger.CANCEL,
                source="reconciliation",
                details={"reason": "checkout_expired"},
            )
        logger.info("checkout_expired", order_id=order.id, payment_intent_id=order.payment_intent_id)
        return "expired"

    async def _apply_intent(self, kind: PaymentEventKind, intent: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a retrieved intent through the same path as its webhook."""
        event = VerifiedEvent(
            event_id=f"reconcile:{intent['id']}:{intent.get('status')}",
            kind=kind,
            event_type=f"payment_intent.{intent.get('status')}",
            payload_checksum="",
            received_at=datetime.now(timezone.utc),
            data=intent,
        )
        async with self.session_factory() as db:
            outcome = await self.orders.apply_payment_event(db, event, source="reconciliation")
            await commit_or_conflict(db)
        return outcome

    async def sweep_stuck_refunds(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Settle refunds still ``requested`` past ``refund_timeout_seconds``."""
        now = now or datetime.now(timezone.utc)
        horizon = now - timedelta(seconds=self.settings.refund_timeout_seconds)
        results: Counter = Counter()

        async for refund in self._pages(self.refunds.find_stuck_refunds, horizon):
            try:
                result = await self.refunds.resolve_stuck_refund(refund)
            except EngineError as e:
                logger.warning(
                    "stuck_refund_unresolved",
                    refund_id=refund.id,
                    order_id=refund.order_id,
                    error=e.reason_code,
                )
                result = "error"
            results[result] += 1

        self._record("refunds", results)
        return dict(results)

    async def sweep_pending_transfers(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Settle transfers left ``requested`` and schedule ones never created.

        A paid order with no transfer row for a payouts-ready seller means
        the outbox consumer was interrupted or the seller became payable
        after the order was paid.
        """
        now = now or datetime.now(timezone.utc)
        horizon = now - timedelta(seconds=self.settings.payment_timeout_seconds)
        results: Counter = Counter()

        async for transfer in self._pages(self.sellers.find_pending_transfers, horizon):
            try:
                result = await self.sellers.resolve_pending_transfer(transfer)
            except EngineError as e:
                logger.warning(
                    "pending_transfer_unresolved",
                    transfer_id=transfer.id,
                    order_id=transfer.order_id,
                    error=e.reason_code,
                )
                result = "error"
            results[result] += 1

        async for order_id in self._pages(
            self.sellers.find_orders_missing_transfers, horizon, key=lambda order_id: order_id
        ):
            try:
                created = await self.sellers.schedule_transfers(order_id)
                results["scheduled"] += len(created)
            except EngineError as e:
                logger.warning("transfer_scheduling_failed", order_id=order_id, error=e.reason_code)
                results["error"] += 1

        self._record("transfers", results)
        return dict(results)

    async def sweep_unknown_attempts(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Mark gateway attempts that never finished as ``unknown``.

        A ``pending`` attempt past the horizon means the process died
        mid-call. The entity sweeps settle the effect against the processor.
        """
        now = now or datetime.now(timezone.utc)
        horizon = now - timedelta(seconds=self.settings.payment_timeout_seconds)
        stale = await self.audit.stale_pending_attempts(horizon)
        for attempt in stale:
            await self.audit.mark_attempt(attempt.id, "unknown", error="interrupted")
            logger.warning(
                "gateway_attempt_interrupted",
                attempt_id=attempt.id,
                operation=attempt.operation,
                idempotency_key=attempt.idempotency_key,
                order_id=attempt.order_id,
            )

        results = {"unknown": len(stale)} if stale else {}
        self._record("attempts", results)
        return results

    async def purge_idempotency(self, now: Optional[datetime] = None) -> Dict[str, int]:
        removed = await self.idempotency.purge_expired(now)
        results = {"purged": removed} if removed else {}
        self._record("idempotency", results)
        return results

    async def run_sweeps(self, now: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        """Run every sweep once. A failing sweep does not stop the others."""
        sweeps = {
            "attempts": self.sweep_unknown_attempts,
            "payments": self.sweep_stuck_payments,
            "refunds": self.sweep_stuck_refunds,
            "transfers": self.sweep_pending_transfers,
            "idempotency": self.purge_idempotency,
        }
        summary: Dict[str, Dict[str, int]] = {}
        for name, sweep in sweeps.items():
            try:
                summary[name] = await sweep(now)
            except Exception as e:
                logger.error("reconciliation_sweep_failed", sweep=name, error=str(e))
                metrics.record_sweep(name, "error")
                summary[name] = {"error": 1}

        logger.info("reconciliation_sweeps_completed", summary=summary)
        return summary

    @staticmethod
    def _record(sweep: str, results: Dict[str, int]) -> None:
        for result, count in results.items():
            metrics.record_sweep(sweep, result, count)

    # Daily totals

    async def _get_database_totals(
        self, db: AsyncSession, start: datetime, end: datetime
    ) -> Dict[str, Any]:
        """Captured orders created in ``[start, end)``."""
        result = await db.execute(
            select(
                func.count(Order.id).label("count"),
                func.sum(Order.total_amount).label("total"),
            ).where(
                Order.created_at >= start,
                Order.created_at < end,
                Order.status.in_(_CAPTURED_STATUSES),
            )
        )
        row = result.first()
        return {"count": row.count or 0, "total": int(row.total or 0)}

    async def _get_processor_intents(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Succeeded payment intents created in ``[start, end)``."""
        intents: List[Dict[str, Any]] = []
        starting_after = None
        while True:
            page = await self.gateway.list_payment_intents(
                limit=100,
                starting_after=starting_after,
                created_gte=int(start.timestamp()),
                created_lte=int(end.timestamp()) - 1,
            )
            data = page.get("data") or []
            intents.extend(pi for pi in data if pi.get("status") == "succeeded")
            if not page.get("has_more") or not data:
                break
            starting_after = data[-1]["id"]
        return intents

    async def _find_discrepancies(
        self,
        db: AsyncSession,
        start: datetime,
        end: datetime,
        intents: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        result = await db.execute(
            select(Order).where(
                Order.created_at >= start,
                Order.created_at < end,
                Order.payment_intent_id.isnot(None),
            )
        )
        orders = {o.payment_intent_id: o for o in result.scalars().all()}
        discrepancies: List[Dict[str, Any]] = []

        for pi in intents:
            order = orders.pop(pi["id"], None)
            if order is None:
                discrepancies.append({
                    "type": "missing_in_database",
                    "payment_intent_id": pi["id"],
                    "order_id": (pi.get("metadata") or {}).get("order_id"),
                    "processor_amount": pi.get("amount"),
                    "currency": pi.get("currency"),
                })
            elif order.total_amount != pi.get("amount"):
                discrepancies.append({
                    "type": "amount_mismatch",
                    "order_id": order.id,
                    "payment_intent_id": pi["id"],
                    "database_amount": order.total_amount,
                    "processor_amount": pi.get("amount"),
                })
            elif order.status not in _CAPTURED_STATUSES:
                discrepancies.append({
                    "type": "status_mismatch",
                    "order_id": order.id,
                    "payment_intent_id": pi["id"],
                    "database_status": order.status,
                })

        for intent_id, order in orders.items():
            if order.status in _CAPTURED_STATUSES:
                discrepancies.append({
                    "type": "missing_at_processor",
                    "order_id": order.id,
                    "payment_intent_id": intent_id,
                    "database_amount": order.total_amount,
                })
        return discrepancies

    async def reconcile_date(self, reconciliation_date: date) -> Dict[str, Any]:
        """
        Compare processor totals with order records for one UTC day.

        The run is stored in ``reconciliation_runs``; re-running a date
        overwrites its row.

        Args:
            reconciliation_date: Date to reconcile

        Returns:
            Dict[str, Any]: Reconciliation results
        """
        started = time.perf_counter()
        start = datetime.combine(reconciliation_date, datetime.min.time(), tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        run_date = datetime.combine(reconciliation_date, datetime.min.time())
        logger.info("reconciliation_started", date=reconciliation_date.isoformat())

        async with self.session_factory() as db:
            run = (
                await db.execute(select(ReconciliationRun).where(ReconciliationRun.run_date == run_date))
            ).scalar_one_or_none()
            if run is None:
                run = ReconciliationRun(run_date=run_date, status="in_progress")
                db.add(run)
            run.status = "in_progress"
            run.started_at = datetime.now(timezone.utc)
            run.completed_at = None
            await db.commit()

            try:
                db_totals = await self._get_database_totals(db, start, end)
                intents = await self._get_processor_intents(start, end)
                processor_totals = {
                    "count": len(intents),
                    "total": sum(int(pi.get("amount") or 0) for pi in intents),
                }
                discrepancies = await self._find_discrepancies(db, start, end, intents)
            except Exception as e:
                logger.error(
                    "reconciliation_failed",
                    date=reconciliation_date.isoformat(),
                    error=str(e),
                )
                run.status = "failed"
                run.completed_at = datetime.now(timezone.utc)
                run.details = {"error": str(e)}
                await db.commit()
                raise

            discrepancy_amount = abs(db_totals["total"] - processor_totals["total"])
            run.processor_total = processor_totals["total"]
            run.database_total = db_totals["total"]
            run.discrepancy_amount = discrepancy_amount
            run.discrepancy_count = len(discrepancies)
            run.status = "completed"
            run.completed_at = datetime.now(timezone.utc)
            run.details = {
                "database": db_totals,
                "processor": processor_totals,
                "discrepancies": discrepancies[:100],
            }
            await db.commit()

        metrics.set_reconciliation_metrics(
            len(discrepancies), discrepancy_amount, time.perf_counter() - started
        )
        log = logger.warning if discrepancies else logger.info
        log(
            "reconciliation_completed",
            date=reconciliation_date.isoformat(),
            discrepancy_amount=discrepancy_amount,
            discrepancy_count=len(discrepancies),
        )

        return {
            "date": reconciliation_date.isoformat(),
            "database_total": db_totals["total"],
            "database_count": db_totals["count"],
            "processor_total": processor_totals["total"],
            "processor_count": processor_totals["count"],
            "discrepancy_amount": discrepancy_amount,
            "discrepancy_count": len(discrepancies),
            "discrepancies": discrepancies,
        }

    async def reconcile_yesterday(self) -> Dict[str, Any]:
        yesterday = datetime.now(timezone.utc).date() - timedelta(days=1)
        return await self.reconcile_date(yesterday)
