"""SQLAlchemy database models for the order and payment reconciliation engine."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Portable column types: JSONB on PostgreSQL, autoincrementing INTEGER on SQLite
JSONType = JSON().with_variant(JSONB(), "postgresql")
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Buyer purchase attempt.

    ``status`` is only ever written by the order manager. ``version`` is the
    optimistic concurrency counter: every flush that changes the row is
    conditioned on the version read, and bumps it.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_number: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    refunded_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pre_refund_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    requires_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", lazy="selectin", order_by="OrderItem.id"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("total_amount > 0", name="positive_total"),
        CheckConstraint("refunded_amount >= 0", name="non_negative_refunded"),
        CheckConstraint("length(currency) = 3", name="valid_order_currency"),
        Index("idx_orders_status_updated", "status", "updated_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "buyer_id": self.buyer_id,
            "status": self.status,
            "total_amount": self.total_amount,
            "currency": self.currency,
            "payment_intent_id": self.payment_intent_id,
            "refunded_amount": self.refunded_amount,
            "requires_review": self.requires_review,
            "review_reason": self.review_reason,
            "version": self.version,
            "items": [item.to_dict() for item in self.items],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, status={self.status}, "
            f"total={self.total_amount} {self.currency}, version={self.version})>"
        )


class OrderItem(Base):
    """Line item frozen at checkout time."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("unit_price >= 0", name="non_negative_price"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "seller_id": self.seller_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "amount": self.amount,
        }


class PaymentEvent(Base):
    """
    Verified processor notification.

    Exactly one row per external event id. Immutable once written.
    """

    __tablename__ = "payment_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    payload_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    outcome: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    annotation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "kind": self.kind,
            "order_id": self.order_id,
            "payload_checksum": self.payload_checksum,
            "outcome": self.outcome,
            "annotation": self.annotation,
            "received_at": self.received_at.isoformat(),
        }

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return f"<PaymentEvent(event_id={self.event_id}, kind={self.kind})>"


class SellerAccount(Base):
    """Seller payout destination at the processor (Stripe Connect account)."""

    __tablename__ = "seller_accounts"

    seller_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stripe_account_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    charges_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    details_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    onboarding_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    capabilities_checked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "onboarding_status IN ('pending', 'in_progress', 'complete', 'restricted')",
            name="valid_onboarding_status",
        ),
    )

    @property
    def payouts_ready(self) -> bool:
        return bool(self.charges_enabled and self.payouts_enabled)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seller_id": self.seller_id,
            "stripe_account_id": self.stripe_account_id,
            "charges_enabled": self.charges_enabled,
            "payouts_enabled": self.payouts_enabled,
            "details_submitted": self.details_submitted,
            "onboarding_status": self.onboarding_status,
            "capabilities_checked_at": (
                self.capabilities_checked_at.isoformat()
                if self.capabilities_checked_at
                else None
            ),
        }


class Transfer(Base):
    """Payout of an order's proceeds to one seller. One row per order-seller pair."""

    __tablename__ = "transfers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    stripe_transfer_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="requested")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("order_id", "seller_id", name="uq_transfer_order_seller"),
        CheckConstraint("amount > 0", name="positive_transfer_amount"),
        CheckConstraint(
            "status IN ('requested', 'confirmed', 'failed')", name="valid_transfer_status"
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "seller_id": self.seller_id,
            "amount": self.amount,
            "currency": self.currency,
            "stripe_transfer_id": self.stripe_transfer_id,
            "status": self.status,
            "attempt_count": self.attempt_count,
            "failure_reason": self.failure_reason,
        }


class Refund(Base):
    """Money returned to the buyer for (part of) an order."""

    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="api")
    stripe_refund_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="requested")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_refund_amount"),
        CheckConstraint(
            "status IN ('requested', 'confirmed', 'failed')", name="valid_refund_status"
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "amount": self.amount,
            "currency": self.currency,
            "reason": self.reason,
            "source": self.source,
            "stripe_refund_id": self.stripe_refund_id,
            "status": self.status,
            "attempt_count": self.attempt_count,
            "failure_reason": self.failure_reason,
        }


class IdempotencyRecord(Base):
    """
    Key → outcome mapping.

    ``state`` is ``reserved`` while the first delivery is being processed and
    ``completed`` once its outcome is stored.
    """

    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="reserved")
    request_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    outcome: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    reserved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

    __table_args__ = (
        CheckConstraint("state IN ('reserved', 'completed')", name="valid_idempotency_state"),
        CheckConstraint("scope IN ('webhook', 'request')", name="valid_idempotency_scope"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "scope": self.scope,
            "state": self.state,
            "status_code": self.status_code,
            "outcome": self.outcome,
            "reserved_at": self.reserved_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "expires_at": self.expires_at.isoformat(),
        }


class AuditEntry(Base):
    """
    Append-only audit trail.

    One row per state transition, rejection, annotation or money-movement
    milestone. Never updated or deleted.
    """

    __tablename__ = "audit_entries"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    source: Mapped[str] = mapped_column(String(30), nullable=False, default="engine")
    correlation_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_created", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "version": self.version,
            "amount": self.amount,
            "source": self.source,
            "correlation_id": self.correlation_id,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }

    def __repr__(self) -> str:
        """String representation of AuditEntry."""
        return (
            f"<AuditEntry(id={self.id}, {self.entity_type}:{self.entity_id}, "
            f"action={self.action})>"
        )


class GatewayAttempt(Base):
    """
    One outbound processor call.

    Written as ``pending`` and committed before the call is issued, so a crash
    mid-call leaves a visible record for the reconciliation sweep.
    """

    __tablename__ = "gateway_attempts"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    request: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    external_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "outcome IN ('pending', 'succeeded', 'failed', 'unknown', 'not_sent', 'reconciled')",
            name="valid_attempt_outcome",
        ),
        Index("idx_gateway_attempts_outcome", "outcome", "started_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation,
            "idempotency_key": self.idempotency_key,
            "order_id": self.order_id,
            "request": self.request,
            "outcome": self.outcome,
            "external_ref": self.external_ref,
            "error": self.error,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Events are written in the same transaction as the order transition that
    produced them, then dispatched by a background worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )


class ReconciliationRun(Base):
    """
    Daily reconciliation status tracking table.

    Stores the results of daily jobs comparing processor totals with order
    records.
    """

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    run_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, unique=True
    )
    processor_total: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    database_total: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    discrepancy_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    discrepancy_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of ReconciliationRun."""
        return f"<ReconciliationRun(id={self.id}, date={self.run_date}, status={self.status})>"
