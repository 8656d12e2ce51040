"""
Order manager: the single writer of order status.

Every status change goes through ``apply_trigger``, which consults the
transition table and records the outcome in the audit ledger. Writes are
conditioned on the order's version counter; a concurrent writer surfaces as
``ConflictError`` and the caller re-reads and retries.

No database transaction is held open across a gateway call. An order reaches
PAYMENT_PROCESSING and commits before the payment intent is created.
"""
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.audit import AuditLedger
from marketplace_payments.core.catalog import PriceCatalog, StaticPriceCatalog
from marketplace_payments.database.models import Order, OrderItem, OutboxEvent
from marketplace_payments.domain.errors import (
    ConflictError,
    EmptyCartError,
    GatewayUnavailableError,
    InvalidCartError,
    InvalidTransitionError,
    OrderNotCancellableError,
    OrderNotFoundError,
    PaymentGatewayError,
)
from marketplace_payments.domain.events import PaymentEventKind, VerifiedEvent
from marketplace_payments.domain.state_machine import (
    CANCELLABLE_STATUSES,
    DecisionKind,
    OrderStatus,
    OrderTrigger,
    decide,
)
from marketplace_payments.integrations.stripe_client import StripeClient
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_BASE36 = string.digits + string.ascii_uppercase

# Outbox events emitted when an order enters these states
_OUTBOX_EVENTS = {
    OrderStatus.PAID: "order.paid",
    OrderStatus.CANCELLED: "order.cancelled",
    OrderStatus.REFUNDED: "order.refunded",
}

_INTENT_TRIGGERS = {
    PaymentEventKind.INTENT_SUCCEEDED: OrderTrigger.PAYMENT_SUCCEEDED,
    PaymentEventKind.INTENT_FAILED: OrderTrigger.PAYMENT_FAILED,
    PaymentEventKind.INTENT_PROCESSING: OrderTrigger.PAYMENT_STARTED,
    PaymentEventKind.INTENT_CANCELED: OrderTrigger.CANCEL,
}


@dataclass(frozen=True)
class CartLine:
    product_id: str
    seller_id: str
    quantity: int
    unit_price: int

    @property
    def amount(self) -> int:
        return self.quantity * self.unit_price


@dataclass(frozen=True)
class CartSnapshot:
    """Buyer's cart as submitted at checkout."""

    buyer_id: str
    lines: Tuple[CartLine, ...]
    total: int
    currency: str


@dataclass(frozen=True)
class PaymentIntentRequest:
    order_id: str
    amount: int
    currency: str
    idempotency_key: str


@dataclass(frozen=True)
class CheckoutResult:
    order_id: str
    order_number: str
    status: str
    total_amount: int
    currency: str
    client_secret: Optional[str]


@dataclass
class TransitionResult:
    """Outcome of applying one trigger to one order."""

    order: Order
    decision: DecisionKind
    from_status: OrderStatus
    to_status: OrderStatus
    annotation: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_outcome(self) -> Dict[str, Any]:
        outcome = {
            "order_id": self.order.id,
            "result": self.decision.value,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
        }
        if self.annotation:
            outcome["annotation"] = self.annotation
        return outcome


def generate_order_number() -> str:
    """``ORD-<epoch-ms>-<9 random base36 chars>``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


async def commit_or_conflict(db: AsyncSession) -> None:
    """Commit, turning a failed version check into ``ConflictError``."""
    try:
        await db.commit()
    except StaleDataError as e:
        await db.rollback()
        raise _conflict(e) from e


async def flush_or_conflict(db: AsyncSession) -> None:
    """Flush pending changes, turning a failed version check into ``ConflictError``."""
    try:
        await db.flush()
    except StaleDataError as e:
        await db.rollback()
        raise _conflict(e) from e


def _conflict(error: StaleDataError) -> ConflictError:
    metrics.record_version_conflict()
    logger.info("order_version_conflict", error=str(error))
    return ConflictError("Order was modified concurrently; re-read and retry")


class OrderManager:
    """Owns the order state machine."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeClient,
        audit: AuditLedger,
        catalog: Optional[PriceCatalog] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the order manager.

        Args:
            session_factory: Database session factory
            gateway: Stripe gateway adapter
            audit: Audit ledger for transitions and rejections
            catalog: Current prices for checkout validation (static if omitted)
            settings: Application settings
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.audit = audit
        self.catalog = catalog or StaticPriceCatalog()
        self.settings = settings or get_settings()

    # Checkout

    async def validate_cart(self, cart: CartSnapshot) -> str:
        """
        Check a cart against the catalog.

        Args:
            cart: Buyer's cart snapshot

        Returns:
            str: Normalized (upper-case) currency code

        Raises:
            EmptyCartError: no lines
            InvalidCartError: see ``reason_code`` for the failing check
        """
        if not cart.lines:
            raise EmptyCartError("Cart has no items")

        currency = (cart.currency or "").upper()
        if len(currency) != 3 or not currency.isalpha():
            raise InvalidCartError(
                f"Invalid currency: {cart.currency!r}", reason_code="invalid_currency"
            )

        for line in cart.lines:
            if line.quantity <= 0 or line.unit_price < 0:
                raise InvalidCartError(
                    f"Invalid quantity for {line.product_id}",
                    reason_code="invalid_quantity",
                    details={"product_id": line.product_id},
                )
            current = await self.catalog.current_price(line.product_id)
            if current is None:
                raise InvalidCartError(
                    f"Unknown product {line.product_id}",
                    reason_code="unknown_product",
                    details={"product_id": line.product_id},
                )
            if current != line.unit_price:
                raise InvalidCartError(
                    f"Price of {line.product_id} changed",
                    reason_code="stale_price",
                    details={
                        "product_id": line.product_id,
                        "submitted": line.unit_price,
                        "current": current,
                    },
                )

        line_sum = sum(line.amount for line in cart.lines)
        if line_sum != cart.total or cart.total <= 0:
            raise InvalidCartError(
                "Cart total does not match its lines",
                reason_code="total_mismatch",
                details={"submitted": cart.total, "computed": line_sum},
            )
        return currency

    async def create_order(self, cart: CartSnapshot) -> Tuple[Order, PaymentIntentRequest]:
        """
        Validate the cart and persist a CREATED order.

        Args:
            cart: Buyer's cart snapshot

        Returns:
            Tuple of the new order and the intent request to send for it
        """
        currency = await self.validate_cart(cart)

        order = Order(
            order_number=generate_order_number(),
            buyer_id=cart.buyer_id,
            status=OrderStatus.CREATED.value,
            total_amount=cart.total,
            currency=currency,
            refunded_amount=0,
            requires_review=False,
            items=[
                OrderItem(
                    product_id=line.product_id,
                    seller_id=line.seller_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    amount=line.amount,
                )
                for line in cart.lines
            ],
        )

        async with self.session_factory() as db:
            db.add(order)
            await db.flush()
            self.audit.record(
                db,
                "order",
                order.id,
                "order_created",
                to_status=OrderStatus.CREATED.value,
                version=order.version,
                amount=order.total_amount,
                source="checkout",
                details={"buyer_id": cart.buyer_id, "lines": len(cart.lines)},
            )
            await db.commit()

        metrics.record_checkout(order.total_amount)
        logger.info(
            "order_created",
            order_id=order.id,
            order_number=order.order_number,
            total_amount=order.total_amount,
            currency=order.currency,
        )
        return order, PaymentIntentRequest(
            order_id=order.id,
            amount=order.total_amount,
            currency=order.currency,
            idempotency_key=f"order:{order.id}:intent",
        )

    async def begin_payment(self, request: PaymentIntentRequest) -> Dict[str, Any]:
        """
        Move the order to PAYMENT_PROCESSING, then create the payment intent.

        Args:
            request: Intent request returned by ``create_order``

        Returns:
            Dict[str, Any]: The processor's payment intent

        Raises:
            PaymentGatewayError: the processor rejected the intent; the order
                is now PAYMENT_FAILED
            GatewayUnavailableError: outcome unknown; the order stays in
                PAYMENT_PROCESSING for the reconciliation sweep
        """
        await self.transition(request.order_id, OrderTrigger.PAYMENT_STARTED, source="checkout")

        try:
            intent = await self.gateway.create_payment_intent(
                amount=request.amount,
                currency=request.currency,
                order_id=request.order_id,
            )
        except PaymentGatewayError as e:
            logger.warning("payment_intent_rejected", order_id=request.order_id, error=str(e))
            await self.transition(
                request.order_id,
                OrderTrigger.PAYMENT_FAILED,
                source="gateway",
                details={"error": e.message},
            )
            raise
        except GatewayUnavailableError:
            logger.warning("payment_intent_outcome_unknown", order_id=request.order_id)
            await self.audit.record_standalone(
                "order",
                request.order_id,
                "payment_outcome_unknown",
                source="gateway",
            )
            raise

        await self.attach_intent(request.order_id, intent["id"])
        return intent

    async def checkout(self, cart: CartSnapshot) -> CheckoutResult:
        """
        Create the order and its payment intent.

        Args:
            cart: Buyer's cart snapshot

        Returns:
            CheckoutResult: Order reference and the intent client secret
        """
        order, request = await self.create_order(cart)
        intent = await self.begin_payment(request)
        return CheckoutResult(
            order_id=order.id,
            order_number=order.order_number,
            status=OrderStatus.PAYMENT_PROCESSING.value,
            total_amount=order.total_amount,
            currency=order.currency,
            client_secret=intent.get("client_secret"),
        )

    async def attach_intent(self, order_id: str, payment_intent_id: str) -> None:
        """Record the processor intent reference once; later calls are no-ops."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(Order)
                .where(Order.id == order_id, Order.payment_intent_id.is_(None))
                .values(payment_intent_id=payment_intent_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                self.audit.record(
                    db,
                    "order",
                    order_id,
                    "payment_intent_attached",
                    source="gateway",
                    correlation_id=payment_intent_id,
                )
            await db.commit()

    # Transitions

    def apply_trigger(
        self,
        db: AsyncSession,
        order: Order,
        trigger: OrderTrigger,
        *,
        source: str,
        expected_version: Optional[int] = None,
        correlation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Apply ``trigger`` to a loaded order inside ``db``.

        Changes are flushed (and version-checked) when the caller commits.

        Args:
            db: Session the caller commits
            order: Order loaded in ``db``
            trigger: Trigger to apply
            source: Origin recorded in the audit entry (webhook, api, ...)
            expected_version: Version the caller last read, if it holds one
            correlation_id: Event or request id recorded with the entry
            details: Extra audit details

        Returns:
            TransitionResult: Decision taken and the statuses on each side

        Raises:
            ConflictError: ``expected_version`` does not match
            InvalidTransitionError: the table rejects the pair; the rejection
                is already added to ``db`` as an audit entry
        """
        if expected_version is not None and order.version != expected_version:
            metrics.record_version_conflict()
            raise ConflictError(
                "Order version does not match",
                details={"expected": expected_version, "actual": order.version},
            )

        status = OrderStatus(order.status)
        pre_refund = OrderStatus(order.pre_refund_status) if order.pre_refund_status else None
        decision = decide(status, trigger, pre_refund)

        if decision.kind is DecisionKind.REJECT:
            metrics.record_rejected_transition(status.value, trigger.value)
            logger.warning(
                "order_transition_rejected",
                order_id=order.id,
                status=status.value,
                trigger=trigger.value,
                source=source,
            )
            self.audit.record(
                db,
                "order",
                order.id,
                "transition_rejected",
                from_status=status.value,
                version=order.version,
                source=source,
                correlation_id=correlation_id,
                details={"trigger": trigger.value, **(details or {})},
            )
            raise InvalidTransitionError(
                f"Cannot apply {trigger.value} to an order in {status.value}",
                details={"order_id": order.id, "status": status.value, "trigger": trigger.value},
            )

        if decision.kind is DecisionKind.NOOP:
            logger.info(
                "order_transition_noop",
                order_id=order.id,
                status=status.value,
                trigger=trigger.value,
            )
            return TransitionResult(order, decision.kind, status, status, "already_applied")

        if decision.kind is DecisionKind.REVIEW:
            reason = f"{trigger.value}_on_{status.value.lower()}"
            self.flag_for_review(db, order, reason, source=source, correlation_id=correlation_id)
            return TransitionResult(order, decision.kind, status, status, reason)

        to_status = decision.to_status
        order.status = to_status.value
        order.updated_at = datetime.now(timezone.utc)
        if to_status is OrderStatus.REFUND_REQUESTED:
            order.pre_refund_status = status.value
        elif status is OrderStatus.REFUND_REQUESTED:
            order.pre_refund_status = None
        if trigger is OrderTrigger.CANCEL and details and details.get("reason"):
            order.cancel_reason = details["reason"]

        self.audit.record(
            db,
            "order",
            order.id,
            "transition",
            from_status=status.value,
            to_status=to_status.value,
            version=order.version + 1,
            source=source,
            correlation_id=correlation_id,
            details={"trigger": trigger.value, **(details or {})},
        )

        event_type = _OUTBOX_EVENTS.get(to_status)
        if event_type:
            db.add(
                OutboxEvent(
                    aggregate_id=order.id,
                    aggregate_type="order",
                    event_type=event_type,
                    payload={
                        "order_id": order.id,
                        "order_number": order.order_number,
                        "buyer_id": order.buyer_id,
                        "total_amount": order.total_amount,
                        "refunded_amount": order.refunded_amount,
                        "currency": order.currency,
                        "payment_intent_id": order.payment_intent_id,
                        "charge_id": order.charge_id,
                    },
                )
            )

        metrics.record_transition(status.value, to_status.value)
        logger.info(
            "order_transitioned",
            order_id=order.id,
            from_status=status.value,
            to_status=to_status.value,
            trigger=trigger.value,
            source=source,
        )
        return TransitionResult(order, decision.kind, status, to_status)

    async def transition(
        self,
        order_id: str,
        trigger: OrderTrigger,
        *,
        source: str = "api",
        expected_version: Optional[int] = None,
        correlation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Load the order, apply ``trigger`` and commit in one unit of work.

        Args:
            order_id: Order to transition
            trigger: Trigger to apply
            source: Origin recorded in the audit entry
            expected_version: Version the caller last read, if it holds one
            correlation_id: Event or request id recorded with the entry
            details: Extra audit details

        Returns:
            TransitionResult: Decision taken and the order after commit

        Raises:
            ConflictError: another writer committed first
            InvalidTransitionError: the table rejects the trigger
        """
        async with self.session_factory() as db:
            order = await self.load(db, order_id)
            try:
                result = self.apply_trigger(
                    db,
                    order,
                    trigger,
                    source=source,
                    expected_version=expected_version,
                    correlation_id=correlation_id,
                    details=details,
                )
            except InvalidTransitionError:
                await db.commit()
                raise
            await commit_or_conflict(db)
            return result

    def flag_for_review(
        self,
        db: AsyncSession,
        order: Order,
        reason: str,
        *,
        source: str,
        correlation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Mark the order for manual reconciliation without changing its status."""
        order.requires_review = True
        order.review_reason = reason
        metrics.record_review_flag(reason)
        logger.warning("order_flagged_for_review", order_id=order.id, reason=reason)
        self.audit.record(
            db,
            "order",
            order.id,
            "flagged_for_review",
            from_status=order.status,
            to_status=order.status,
            source=source,
            correlation_id=correlation_id,
            details={"reason": reason, **(details or {})},
        )

    async def apply_payment_event(
        self, db: AsyncSession, event: VerifiedEvent, source: str = "webhook"
    ) -> Dict[str, Any]:
        """
        Apply a payment intent event inside the ingestor's transaction.

        Args:
            db: Ingestor session, committed with the event record
            event: Verified ``payment_intent.*`` event
            source: Origin recorded in the audit entry

        Returns:
            Dict[str, Any]: Outcome stored with the event (``result`` is
            applied, noop, review or rejected)
        """
        trigger = _INTENT_TRIGGERS[event.kind]
        order = await self.resolve_order(db, event)
        if order is None:
            logger.warning(
                "payment_event_order_not_found",
                event_id=event.event_id,
                payment_intent_id=event.payment_intent_ref,
            )
            return {"result": "noop", "annotation": "order_not_found"}

        intent = event.obj
        intent_id = event.payment_intent_ref

        if intent_id and order.payment_intent_id and order.payment_intent_id != intent_id:
            self.flag_for_review(
                db,
                order,
                "payment_intent_mismatch",
                source=source,
                correlation_id=event.event_id,
                details={"event_intent": intent_id, "order_intent": order.payment_intent_id},
            )
            return {"order_id": order.id, "result": "review", "annotation": "payment_intent_mismatch"}

        if event.kind is PaymentEventKind.INTENT_SUCCEEDED:
            amount = intent.get("amount_received") or intent.get("amount")
            currency = (intent.get("currency") or "").upper()
            if amount != order.total_amount or currency != order.currency:
                self.flag_for_review(
                    db,
                    order,
                    "amount_mismatch",
                    source=source,
                    correlation_id=event.event_id,
                    details={
                        "expected": [order.total_amount, order.currency],
                        "received": [amount, currency],
                    },
                )
                return {"order_id": order.id, "result": "review", "annotation": "amount_mismatch"}

            if order.payment_intent_id is None and intent_id:
                order.payment_intent_id = intent_id
            charge = intent.get("latest_charge")
            if isinstance(charge, dict):
                charge = charge.get("id")
            if charge and not order.charge_id:
                order.charge_id = charge

        details: Dict[str, Any] = {"event_type": event.event_type}
        if event.kind is PaymentEventKind.INTENT_FAILED:
            last_error = intent.get("last_payment_error") or {}
            details["failure"] = last_error.get("code") or last_error.get("message")
        if event.kind is PaymentEventKind.INTENT_CANCELED:
            details["reason"] = intent.get("cancellation_reason") or "processor_canceled"

        try:
            result = self.apply_trigger(
                db,
                order,
                trigger,
                source=source,
                correlation_id=event.event_id,
                details=details,
            )
        except InvalidTransitionError as e:
            return {"order_id": order.id, "result": "rejected", "annotation": e.message}
        return result.to_outcome()

    async def resolve_order(self, db: AsyncSession, event: VerifiedEvent) -> Optional[Order]:
        """Find the order an event refers to: metadata first, then intent id."""
        if event.order_ref:
            order = await db.get(Order, event.order_ref)
            if order is not None:
                return order
        intent_id = event.payment_intent_ref
        if intent_id:
            return (
                await db.execute(select(Order).where(Order.payment_intent_id == intent_id))
            ).scalar_one_or_none()
        return None

    # Buyer and fulfillment operations

    async def cancel_order(self, order_id: str, reason: Optional[str] = None) -> Order:
        """
        Cancel an unpaid order.

        The processor intent is cancelled first so a buyer cannot complete
        payment for a cancelled order.

        Raises:
            OrderNotCancellableError: the order is paid (or otherwise past
                the point of cancellation)
        """
        order = await self.get_order(order_id)
        status = OrderStatus(order.status)
        if status is OrderStatus.CANCELLED:
            return order
        if status not in CANCELLABLE_STATUSES:
            raise OrderNotCancellableError(
                f"Order in {status.value} cannot be cancelled",
                details={"order_id": order_id, "status": status.value},
            )

        intent_id = order.payment_intent_id
        if intent_id is None and status is OrderStatus.PAYMENT_PROCESSING:
            found = await self.gateway.find_payment_intent_for_order(order_id)
            intent_id = found.get("id") if found else None

        if intent_id:
            try:
                await self.gateway.cancel_payment_intent(intent_id, order_id=order_id)
            except PaymentGatewayError:
                intent = await self.gateway.retrieve_payment_intent(intent_id)
                if intent.get("status") == "succeeded":
                    raise OrderNotCancellableError(
                        "Payment already succeeded",
                        details={"order_id": order_id, "payment_intent_id": intent_id},
                    )
                if intent.get("status") != "canceled":
                    raise

        try:
            result = await self.transition(
                order_id,
                OrderTrigger.CANCEL,
                source="buyer",
                correlation_id=intent_id,
                details={"reason": reason or "requested_by_buyer"},
            )
        except InvalidTransitionError as e:
            raise OrderNotCancellableError(e.message, details=e.details) from e
        return result.order

    async def mark_fulfilled(self, order_id: str, source: str = "fulfillment") -> Order:
        """Record the fulfillment completion signal."""
        result = await self.transition(order_id, OrderTrigger.FULFILLMENT_COMPLETED, source=source)
        return result.order

    # Queries

    async def load(self, db: AsyncSession, order_id: str) -> Order:
        order = await db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
        return order

    async def get_order(self, order_id: str) -> Order:
        async with self.session_factory() as db:
            return await self.load(db, order_id)

    async def list_orders(self, buyer_id: str, limit: int = 50, offset: int = 0) -> List[Order]:
        """Buyer's orders, newest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order)
                .where(Order.buyer_id == buyer_id)
                .order_by(Order.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def list_seller_orders(self, seller_id: str, limit: int = 50, offset: int = 0) -> List[Order]:
        """Orders containing at least one line sold by ``seller_id``."""
        seller_orders = select(OrderItem.order_id).where(OrderItem.seller_id == seller_id)
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order)
                .where(Order.id.in_(seller_orders))
                .order_by(Order.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def find_stuck_orders(
        self,
        statuses: Sequence[OrderStatus],
        older_than: datetime,
        limit: int = 100,
        after_id: Optional[str] = None,
    ) -> List[Order]:
        """
        Orders in ``statuses`` whose last transition is older than ``older_than``.

        Args:
            statuses: Statuses to match
            older_than: Only orders last updated before this instant
            limit: Page size
            after_id: Cursor; only orders with a greater id are returned

        Returns:
            One page of orders, ordered by id
        """
        stmt = select(Order).where(
            Order.status.in_([s.value for s in statuses]),
            Order.updated_at < older_than,
        )
        if after_id is not None:
            stmt = stmt.where(Order.id > after_id)
        async with self.session_factory() as db:
            result = await db.execute(stmt.order_by(Order.id).limit(limit))
            return list(result.scalars().all())
