"""
Idempotency store preventing duplicate effects.

Keys are processor event ids (webhook scope) or client supplied
``Idempotency-Key`` headers (request scope). Each key moves through:

    (absent) → reserved → completed

A reservation is a single INSERT on the primary key, so exactly one
concurrent caller wins. Completed outcomes are kept for
``idempotency_retention_seconds`` and can optionally be cached in Redis.
"""
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.audit import ensure_utc
from marketplace_payments.database.models import IdempotencyRecord
from marketplace_payments.domain.errors import (
    ConflictError,
    EngineError,
    IdempotencyKeyReuseError,
    RequestInProgressError,
)
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RESERVED = "reserved"
DUPLICATE = "duplicate"
IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class Reservation:
    """Result of trying to reserve a key."""

    key: str
    status: str
    outcome: Optional[Dict[str, Any]] = None
    status_code: Optional[int] = None

    @property
    def acquired(self) -> bool:
        return self.status == RESERVED


def request_fingerprint(body: Any) -> str:
    """Stable hash of a request body, used to detect key reuse."""
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class IdempotencyStore:
    """
    Durable key → outcome mapping.

    The database is the source of truth. Redis, when configured, only caches
    completed outcomes so duplicates can short-circuit without a query.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize the idempotency store.

        Args:
            session_factory: Database session factory
            settings: Application settings (lease and retention)
            redis_client: Optional cache for completed outcomes
        """
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.redis_client = redis_client

    @property
    def lease(self) -> timedelta:
        return timedelta(seconds=self.settings.idempotency_reservation_lease_seconds)

    @property
    def retention(self) -> timedelta:
        return timedelta(seconds=self.settings.idempotency_retention_seconds)

    async def reserve(
        self, key: str, scope: str = "webhook", request_hash: Optional[str] = None
    ) -> Reservation:
        """
        Atomically reserve ``key``.

        A reservation older than the lease is taken over.

        Args:
            key: Event id or client ``Idempotency-Key``
            scope: ``webhook`` or ``request``, used for metrics
            request_hash: Fingerprint of the request body, if any

        Returns:
            Reservation: ``reserved`` for the single winner, ``duplicate``
            with the stored outcome when the key already completed, or
            ``in_progress`` while another caller holds a live reservation

        Raises:
            IdempotencyKeyReuseError: the key was first used with a different
                request body
        """
        cached = await self._cache_get(key)
        if cached is not None:
            self._check_fingerprint(key, cached.get("request_hash"), request_hash)
            metrics.record_idempotency(scope, "duplicate")
            logger.info("idempotency_cache_hit", idempotency_key=key, source="redis")
            return Reservation(key, DUPLICATE, cached.get("outcome"), cached.get("status_code"))

        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            try:
                await db.execute(
                    insert(IdempotencyRecord).values(
                        key=key,
                        scope=scope,
                        state=RESERVED,
                        request_hash=request_hash,
                        reserved_at=now,
                        expires_at=now + self.retention,
                    )
                )
                await db.commit()
                metrics.record_idempotency(scope, "reserved")
                logger.debug("idempotency_key_reserved", idempotency_key=key, scope=scope)
                return Reservation(key, RESERVED)
            except IntegrityError:
                await db.rollback()

            record = (
                await db.execute(select(IdempotencyRecord).where(IdempotencyRecord.key == key))
            ).scalar_one_or_none()

            if record is None:
                # Released between our INSERT and SELECT; the releaser's
                # caller has already failed, so report the key as busy and
                # let the sender redeliver.
                metrics.record_idempotency(scope, "in_progress")
                return Reservation(key, IN_PROGRESS)

            self._check_fingerprint(key, record.request_hash, request_hash)

            if record.state == "completed":
                metrics.record_idempotency(scope, "duplicate")
                logger.info("idempotency_cache_hit", idempotency_key=key, source="database")
                await self._cache_set(key, record)
                return Reservation(key, DUPLICATE, record.outcome, record.status_code)

            if ensure_utc(record.reserved_at) > now - self.lease:
                metrics.record_idempotency(scope, "in_progress")
                logger.info("idempotency_key_in_progress", idempotency_key=key)
                return Reservation(key, IN_PROGRESS)

            result = await db.execute(
                update(IdempotencyRecord)
                .where(
                    IdempotencyRecord.key == key,
                    IdempotencyRecord.state == RESERVED,
                    IdempotencyRecord.reserved_at < now - self.lease,
                )
                .values(reserved_at=now, request_hash=request_hash or record.request_hash)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount == 1:
            metrics.record_idempotency(scope, "takeover")
            logger.warning("idempotency_reservation_taken_over", idempotency_key=key)
            return Reservation(key, RESERVED)

        metrics.record_idempotency(scope, "in_progress")
        return Reservation(key, IN_PROGRESS)

    async def complete(
        self,
        db: AsyncSession,
        key: str,
        outcome: Dict[str, Any],
        status_code: int = 200,
    ) -> None:
        """
        Mark ``key`` completed inside the caller's transaction.

        The outcome becomes visible to duplicates only when ``db`` commits.

        Args:
            db: Session holding the change the key guards
            key: Reserved key
            outcome: Result replayed to duplicates
            status_code: HTTP status replayed with the outcome
        """
        await db.execute(
            update(IdempotencyRecord)
            .where(IdempotencyRecord.key == key)
            .values(
                state="completed",
                outcome=outcome,
                status_code=status_code,
                completed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )

    async def release(self, key: str) -> None:
        """Drop an unfinished reservation so a redelivery can retry."""
        async with self.session_factory() as db:
            await db.execute(
                delete(IdempotencyRecord).where(
                    IdempotencyRecord.key == key,
                    IdempotencyRecord.state == RESERVED,
                )
            )
            await db.commit()
        logger.info("idempotency_reservation_released", idempotency_key=key)

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        async with self.session_factory() as db:
            return (
                await db.execute(select(IdempotencyRecord).where(IdempotencyRecord.key == key))
            ).scalar_one_or_none()

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete completed records past retention. Returns the number removed."""
        now = now or datetime.now(timezone.utc)
        async with self.session_factory() as db:
            result = await db.execute(
                delete(IdempotencyRecord).where(
                    IdempotencyRecord.expires_at < now,
                    IdempotencyRecord.state == "completed",
                )
            )
            await db.commit()

        if result.rowcount:
            logger.info("idempotency_records_purged", count=result.rowcount)
        return result.rowcount or 0

    async def execute_once(
        self,
        key: str,
        request_hash: str,
        operation: Callable[[], Awaitable[Tuple[int, Dict[str, Any]]]],
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Run a client request at most once per ``key``.

        ``operation`` returns ``(status_code, body)``. Successful results and
        permanent rejections are stored and replayed for later requests
        carrying the same key. Transient failures and conflicts release the
        key so the client can retry.

        Args:
            key: Client ``Idempotency-Key``
            request_hash: Fingerprint of the request body
            operation: The request handler

        Returns:
            Tuple of status code and body, fresh or replayed

        Raises:
            RequestInProgressError: the first request is still running
            IdempotencyKeyReuseError: the key was used for another request
        """
        reservation = await self.reserve(key, scope="request", request_hash=request_hash)
        if reservation.status == DUPLICATE:
            return reservation.status_code or 200, reservation.outcome or {}
        if reservation.status == IN_PROGRESS:
            raise RequestInProgressError(
                "A request with this idempotency key is still being processed"
            )

        try:
            status_code, body = await operation()
        except EngineError as e:
            if e.http_status >= 500 or isinstance(e, ConflictError):
                await self.release(key)
                raise
            await self._finish(key, e.to_dict(), e.http_status)
            raise
        except Exception:
            await self.release(key)
            raise

        await self._finish(key, body, status_code)
        return status_code, body

    async def _finish(self, key: str, outcome: Dict[str, Any], status_code: int) -> None:
        async with self.session_factory() as db:
            await self.complete(db, key, outcome, status_code)
            await db.commit()

    @staticmethod
    def _check_fingerprint(
        key: str, stored: Optional[str], presented: Optional[str]
    ) -> None:
        if stored and presented and stored != presented:
            logger.warning("idempotency_key_reused", idempotency_key=key)
            raise IdempotencyKeyReuseError(
                "Idempotency key was already used with a different request",
                details={"idempotency_key": key},
            )

    async def _cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        if self.redis_client is None:
            return None
        try:
            cached = await self.redis_client.get(f"idempotency:{key}")
            return json.loads(cached) if cached else None
        except Exception as e:
            logger.warning("redis_cache_error", error=str(e), idempotency_key=key)
            return None

    async def _cache_set(self, key: str, record: IdempotencyRecord) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(
                f"idempotency:{key}",
                self.settings.idempotency_cache_ttl,
                json.dumps(
                    {
                        "outcome": record.outcome,
                        "status_code": record.status_code,
                        "request_hash": record.request_hash,
                    }
                ),
            )
        except Exception as e:
            logger.warning("redis_cache_set_error", error=str(e), idempotency_key=key)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
