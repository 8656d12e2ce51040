"""
Append-only audit ledger.

Two kinds of records are kept:

- ``AuditEntry`` rows for state transitions, rejections, annotations and
  money-movement milestones. They are added to the caller's session so they
  commit (or roll back) together with the change they describe.
- ``GatewayAttempt`` rows for outbound processor calls. These are written in
  their own short transaction before the call is issued and updated after,
  so an attempt interrupted by a crash remains visible as ``pending``.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_payments.database.models import AuditEntry, GatewayAttempt

logger = structlog.get_logger(__name__)

ATTEMPT_OUTCOMES = ("pending", "succeeded", "failed", "unknown", "not_sent", "reconciled")


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuditLedger:
    """Writes and queries the audit trail."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    def record(
        self,
        db: AsyncSession,
        entity_type: str,
        entity_id: str,
        action: str,
        *,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        version: Optional[int] = None,
        amount: Optional[int] = None,
        source: str = "engine",
        correlation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """
        Add an audit entry to ``db``.

        The entry is committed by the caller, inside the same transaction as
        the change it describes.

        Args:
            db: Caller's session
            entity_type: ``order``, ``refund``, ``transfer`` or ``seller``
            entity_id: Id of the entity (``order:seller`` for blocked pairs)
            action: What happened (``transition``, ``transition_rejected``, ...)
            from_status: Status before the change
            to_status: Status after the change
            version: Order version after the change
            amount: Money amount involved, in minor units
            source: Origin (webhook, api, reconciliation, ...)
            correlation_id: Event, request or processor id
            details: Extra structured details

        Returns:
            AuditEntry: The pending entry
        """
        entry = AuditEntry(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            from_status=from_status,
            to_status=to_status,
            version=version,
            amount=amount,
            source=source,
            correlation_id=correlation_id,
            details=details,
        )
        db.add(entry)
        return entry

    async def record_standalone(self, entity_type: str, entity_id: str, action: str, **fields: Any) -> None:
        """Record an entry in its own transaction (used for rejections)."""
        async with self.session_factory() as db:
            self.record(db, entity_type, entity_id, action, **fields)
            await db.commit()

    async def begin_attempt(
        self,
        operation: str,
        idempotency_key: Optional[str] = None,
        order_id: Optional[str] = None,
        request: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Persist a ``pending`` gateway attempt before the call is issued.

        Args:
            operation: Gateway operation name
            idempotency_key: Key sent to the processor
            order_id: Order the call belongs to
            request: Request parameters worth keeping

        Returns:
            int: Attempt id for ``finish_attempt``
        """
        async with self.session_factory() as db:
            attempt = GatewayAttempt(
                operation=operation,
                idempotency_key=idempotency_key,
                order_id=order_id,
                request=request,
                outcome="pending",
            )
            db.add(attempt)
            await db.commit()
            attempt_id = attempt.id

        logger.debug(
            "gateway_attempt_started",
            attempt_id=attempt_id,
            operation=operation,
            idempotency_key=idempotency_key,
        )
        return attempt_id

    async def finish_attempt(
        self,
        attempt_id: int,
        outcome: str,
        external_ref: Optional[str] = None,
        error: Optional[str] = None,
        attempts: int = 1,
    ) -> None:
        """
        Record the result of a gateway attempt.

        Args:
            attempt_id: Id from ``begin_attempt``
            outcome: One of ``ATTEMPT_OUTCOMES``
            external_ref: Processor object id on success
            error: Error message on failure
            attempts: Number of tries made under the retry policy

        Raises:
            ValueError: unknown outcome
        """
        if outcome not in ATTEMPT_OUTCOMES:
            raise ValueError(f"Unknown attempt outcome: {outcome}")

        async with self.session_factory() as db:
            await db.execute(
                update(GatewayAttempt)
                .where(GatewayAttempt.id == attempt_id)
                .values(
                    outcome=outcome,
                    external_ref=external_ref,
                    error=error,
                    attempts=attempts,
                    finished_at=datetime.now(timezone.utc),
                )
            )
            await db.commit()

        log = logger.warning if outcome in ("unknown", "not_sent") else logger.debug
        log("gateway_attempt_finished", attempt_id=attempt_id, outcome=outcome, error=error)

    async def stale_pending_attempts(self, older_than: datetime) -> List[GatewayAttempt]:
        """Attempts still ``pending`` that started before ``older_than``."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(GatewayAttempt)
                .where(
                    GatewayAttempt.outcome == "pending",
                    GatewayAttempt.started_at < older_than,
                )
                .order_by(GatewayAttempt.started_at)
            )
            return list(result.scalars().all())

    async def mark_attempt(
        self, attempt_id: int, outcome: str, error: Optional[str] = None
    ) -> None:
        """Move an attempt to ``outcome`` after the fact (reconciliation)."""
        async with self.session_factory() as db:
            await db.execute(
                update(GatewayAttempt)
                .where(GatewayAttempt.id == attempt_id)
                .values(outcome=outcome, error=error, finished_at=datetime.now(timezone.utc))
            )
            await db.commit()

    async def history(self, entity_type: str, entity_id: str) -> List[AuditEntry]:
        """All entries for an entity, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(AuditEntry)
                .where(
                    AuditEntry.entity_type == entity_type,
                    AuditEntry.entity_id == entity_id,
                )
                .order_by(AuditEntry.id)
            )
            return list(result.scalars().all())

    async def has_entry(self, entity_type: str, entity_id: str, action: str) -> bool:
        """Whether ``action`` was ever recorded for the entity."""
        async with self.session_factory() as db:
            found = await db.execute(
                select(AuditEntry.id)
                .where(
                    AuditEntry.entity_type == entity_type,
                    AuditEntry.entity_id == entity_id,
                    AuditEntry.action == action,
                )
                .limit(1)
            )
            return found.scalar_one_or_none() is not None

    async def attempts(
        self,
        outcome: Optional[str] = None,
        order_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[GatewayAttempt]:
        """Gateway attempts, newest first, optionally filtered."""
        stmt = select(GatewayAttempt)
        if outcome:
            stmt = stmt.where(GatewayAttempt.outcome == outcome)
        if order_id:
            stmt = stmt.where(GatewayAttempt.order_id == order_id)
        stmt = stmt.order_by(GatewayAttempt.id.desc()).limit(limit)

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())
