"""
Seller account manager.

Tracks each seller's connected account at the processor and moves order
proceeds to sellers. A transfer is only ever attempted after the seller's
capability flags have been checked, and at most one transfer exists per
(order, seller) pair.
"""
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.audit import AuditLedger, ensure_utc
from marketplace_payments.database.models import Order, OrderItem, SellerAccount, Transfer
from marketplace_payments.domain.errors import (
    GatewayUnavailableError,
    PaymentGatewayError,
    PayoutNotEnabledError,
    SellerAccountNotFoundError,
)
from marketplace_payments.domain.events import PaymentEventKind, VerifiedEvent
from marketplace_payments.domain.state_machine import OrderStatus
from marketplace_payments.integrations.stripe_client import StripeClient
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYABLE_STATUSES = (OrderStatus.PAID.value, OrderStatus.FULFILLED.value)


def _onboarding_status(current: str, account: Dict[str, Any]) -> str:
    if account.get("charges_enabled") and account.get("payouts_enabled"):
        return "complete"
    requirements = account.get("requirements") or {}
    if account.get("details_submitted") or requirements.get("disabled_reason"):
        return "restricted"
    return current if current != "complete" else "restricted"


def apply_capabilities(record: SellerAccount, account: Dict[str, Any]) -> bool:
    """Copy capability flags from a processor account. Returns True if payouts-ready."""
    record.charges_enabled = bool(account.get("charges_enabled"))
    record.payouts_enabled = bool(account.get("payouts_enabled"))
    record.details_submitted = bool(account.get("details_submitted"))
    record.onboarding_status = _onboarding_status(record.onboarding_status, account)
    record.capabilities_checked_at = datetime.now(timezone.utc)
    return record.payouts_ready


class SellerAccountManager:
    """Onboarding, capability tracking and transfers for sellers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeClient,
        audit: AuditLedger,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the seller account manager.

        Args:
            session_factory: Database session factory
            gateway: Stripe gateway adapter (Connect accounts and transfers)
            audit: Audit ledger
            settings: Application settings
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.audit = audit
        self.settings = settings or get_settings()

    # Onboarding

    async def start_onboarding(
        self,
        seller_id: str,
        email: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Ensure the seller has a connected account and return an onboarding link.

        The account is created at most once; repeated calls only mint a
        fresh link.

        Args:
            seller_id: Marketplace seller id
            email: Seller email passed to the processor
            country: Two-letter country code (``default_seller_country`` if omitted)

        Returns:
            Dict[str, Any]: Account id, onboarding URL and link expiry
        """
        async with self.session_factory() as db:
            record = await db.get(SellerAccount, seller_id)

        if record is None:
            account = await self.gateway.create_connected_account(
                seller_id, email=email, country=country
            )
            record = await self._store_account(seller_id, account)

        link = await self.gateway.create_account_link(record.stripe_account_id)

        if record.onboarding_status == "pending":
            async with self.session_factory() as db:
                record = await db.get(SellerAccount, seller_id)
                record.onboarding_status = "in_progress"
                await db.commit()

        logger.info("seller_onboarding_started", seller_id=seller_id, account_id=record.stripe_account_id)
        return {
            "seller_id": seller_id,
            "stripe_account_id": record.stripe_account_id,
            "onboarding_url": link.get("url"),
            "expires_at": link.get("expires_at"),
        }

    async def _store_account(self, seller_id: str, account: Dict[str, Any]) -> SellerAccount:
        async with self.session_factory() as db:
            record = SellerAccount(
                seller_id=seller_id,
                stripe_account_id=account["id"],
                onboarding_status="pending",
            )
            apply_capabilities(record, account)
            if record.onboarding_status != "complete":
                record.onboarding_status = "pending"
            db.add(record)
            self.audit.record(
                db,
                "seller",
                seller_id,
                "connected_account_created",
                source="api",
                correlation_id=account["id"],
            )
            try:
                await db.commit()
            except IntegrityError:
                # Concurrent onboarding created the same account (same
                # processor idempotency key).
                await db.rollback()
                record = await db.get(SellerAccount, seller_id)
            return record

    async def get_account(self, seller_id: str) -> SellerAccount:
        async with self.session_factory() as db:
            record = await db.get(SellerAccount, seller_id)
        if record is None:
            raise SellerAccountNotFoundError(
                f"No connected account for seller {seller_id}", details={"seller_id": seller_id}
            )
        return record

    async def refresh_capabilities(self, seller_id: str) -> SellerAccount:
        """Re-read capability flags live from the processor."""
        record = await self.get_account(seller_id)
        account = await self.gateway.retrieve_account(record.stripe_account_id)

        async with self.session_factory() as db:
            record = await db.get(SellerAccount, seller_id)
            ready = apply_capabilities(record, account)
            await db.commit()

        logger.info("seller_capabilities_refreshed", seller_id=seller_id, payouts_ready=ready)
        return record

    async def apply_account_update(self, db: AsyncSession, event: VerifiedEvent) -> Dict[str, Any]:
        """Refresh capability flags from an ``account.updated`` event."""
        account = event.obj
        record = (
            await db.execute(
                select(SellerAccount).where(SellerAccount.stripe_account_id == account.get("id"))
            )
        ).scalar_one_or_none()
        if record is None:
            return {"result": "noop", "annotation": "seller_account_not_found"}

        before = record.onboarding_status
        ready = apply_capabilities(record, account)
        if before != record.onboarding_status:
            self.audit.record(
                db,
                "seller",
                record.seller_id,
                "onboarding_status_changed",
                from_status=before,
                to_status=record.onboarding_status,
                source="webhook",
                correlation_id=event.event_id,
            )
        return {
            "seller_id": record.seller_id,
            "result": "applied",
            "payouts_ready": ready,
            "onboarding_status": record.onboarding_status,
        }

    async def authorize_transfer(self, seller_id: str) -> SellerAccount:
        """
        Confirm the seller can receive funds.

        Stored flags older than ``capability_freshness_seconds`` are
        refreshed from the processor first.

        Args:
            seller_id: Seller about to be paid

        Returns:
            SellerAccount: The payouts-ready account

        Raises:
            SellerAccountNotFoundError: seller never onboarded
            PayoutNotEnabledError: charges or payouts are disabled
        """
        record = await self.get_account(seller_id)
        freshness = timedelta(seconds=self.settings.capability_freshness_seconds)
        checked_at = ensure_utc(record.capabilities_checked_at)
        if checked_at is None or checked_at < datetime.now(timezone.utc) - freshness:
            record = await self.refresh_capabilities(seller_id)

        if not record.payouts_ready:
            logger.warning(
                "transfer_not_authorized",
                seller_id=seller_id,
                charges_enabled=record.charges_enabled,
                payouts_enabled=record.payouts_enabled,
            )
            raise PayoutNotEnabledError(
                f"Seller {seller_id} cannot receive transfers",
                details={
                    "seller_id": seller_id,
                    "charges_enabled": record.charges_enabled,
                    "payouts_enabled": record.payouts_enabled,
                },
            )
        return record

    # Transfers

    async def create_transfer(
        self,
        order_id: str,
        seller_id: str,
        amount: int,
        currency: str,
        source_transaction: Optional[str] = None,
        retry: bool = False,
    ) -> Transfer:
        """
        Pay ``amount`` of an order's proceeds to a seller.

        Authorization happens before any record is written. The first caller
        reserves the (order, seller) row and issues the processor call;
        later callers get the existing row back. ``retry`` re-issues the call
        for a row that never received a processor reference.

        Args:
            order_id: Paid order the proceeds come from
            seller_id: Seller to pay
            amount: Net amount in minor units
            currency: Order currency
            source_transaction: Charge the transfer is funded from
            retry: Re-issue the call for an existing unsent row

        Returns:
            Transfer: The (order, seller) transfer row

        Raises:
            PayoutNotEnabledError: seller cannot receive funds; nothing stored
            GatewayUnavailableError: outcome unknown; row stays ``requested``
        """
        account = await self.authorize_transfer(seller_id)

        async with self.session_factory() as db:
            transfer = Transfer(
                order_id=order_id,
                seller_id=seller_id,
                amount=amount,
                currency=currency,
                status="requested",
                attempt_count=0,
            )
            db.add(transfer)
            try:
                await db.commit()
                created = True
            except IntegrityError:
                await db.rollback()
                created = False

        if not created:
            transfer = await self._find_transfer(order_id, seller_id)
            if not retry or transfer.status != "requested" or transfer.stripe_transfer_id:
                logger.info(
                    "transfer_already_exists",
                    order_id=order_id,
                    seller_id=seller_id,
                    status=transfer.status,
                )
                return transfer

        return await self._send_transfer(transfer, account, source_transaction)

    async def _send_transfer(
        self, transfer: Transfer, account: SellerAccount, source_transaction: Optional[str]
    ) -> Transfer:
        async with self.session_factory() as db:
            transfer = await db.get(Transfer, transfer.id)
            transfer.attempt_count += 1
            await db.commit()

        try:
            result = await self.gateway.create_transfer(
                amount=transfer.amount,
                currency=transfer.currency,
                destination=account.stripe_account_id,
                order_id=transfer.order_id,
                seller_id=transfer.seller_id,
                source_transaction=source_transaction,
            )
        except PaymentGatewayError as e:
            await self._finish_transfer(transfer.id, "failed", failure_reason=e.message)
            metrics.record_transfer("failed")
            logger.error(
                "transfer_rejected",
                order_id=transfer.order_id,
                seller_id=transfer.seller_id,
                error=e.message,
            )
            return await self._reload(transfer.id)
        except GatewayUnavailableError:
            metrics.record_transfer("unknown")
            raise

        await self._finish_transfer(transfer.id, "confirmed", stripe_transfer_id=result["id"])
        metrics.record_transfer("confirmed")
        return await self._reload(transfer.id)

    async def _finish_transfer(
        self,
        transfer_id: str,
        status: str,
        stripe_transfer_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        source: str = "gateway",
    ) -> None:
        async with self.session_factory() as db:
            transfer = await db.get(Transfer, transfer_id)
            before = transfer.status
            transfer.status = status
            if stripe_transfer_id:
                transfer.stripe_transfer_id = stripe_transfer_id
            if failure_reason:
                transfer.failure_reason = failure_reason
            self.audit.record(
                db,
                "transfer",
                transfer_id,
                f"transfer_{status}",
                from_status=before,
                to_status=status,
                amount=transfer.amount,
                source=source,
                correlation_id=stripe_transfer_id or transfer.order_id,
                details={"order_id": transfer.order_id, "seller_id": transfer.seller_id},
            )
            await db.commit()

    async def schedule_transfers(self, order_id: str) -> List[Transfer]:
        """
        Create one transfer per seller for a paid order.

        Each seller receives the sum of their lines minus ``platform_fee_bps``.
        Sellers that cannot receive funds are skipped and audited once per
        (order, seller) pair. A transient processor failure is re-raised
        after the other sellers have been attempted, so the caller retries.
        """
        async with self.session_factory() as db:
            order = await db.get(Order, order_id)
            if order is None or order.status not in PAYABLE_STATUSES:
                logger.warning(
                    "transfer_scheduling_skipped",
                    order_id=order_id,
                    status=order.status if order else None,
                )
                return []

            totals: Dict[str, int] = defaultdict(int)
            for item in order.items:
                totals[item.seller_id] += item.amount

        transfers: List[Transfer] = []
        pending_error: Optional[GatewayUnavailableError] = None
        for seller_id, gross in sorted(totals.items()):
            amount = gross - gross * self.settings.platform_fee_bps // 10000
            if amount <= 0:
                continue
            try:
                transfers.append(
                    await self.create_transfer(
                        order_id,
                        seller_id,
                        amount,
                        order.currency,
                        source_transaction=order.charge_id,
                    )
                )
            except (PayoutNotEnabledError, SellerAccountNotFoundError) as e:
                pair = f"{order_id}:{seller_id}"
                if await self.audit.has_entry("transfer", pair, "transfer_blocked"):
                    continue
                await self.audit.record_standalone(
                    "transfer",
                    pair,
                    "transfer_blocked",
                    amount=amount,
                    source="scheduler",
                    details={"order_id": order_id, "seller_id": seller_id, "reason": e.reason_code},
                )
            except GatewayUnavailableError as e:
                pending_error = pending_error or e

        if pending_error is not None:
            raise pending_error
        return transfers

    async def apply_transfer_event(self, db: AsyncSession, event: VerifiedEvent) -> Dict[str, Any]:
        """Confirm (``transfer.created``) or fail (``transfer.reversed``) a transfer."""
        obj = event.obj
        transfer = (
            await db.execute(select(Transfer).where(Transfer.stripe_transfer_id == obj.get("id")))
        ).scalar_one_or_none()
        if transfer is None and event.order_ref and event.metadata.get("seller_id"):
            transfer = (
                await db.execute(
                    select(Transfer).where(
                        Transfer.order_id == event.order_ref,
                        Transfer.seller_id == event.metadata["seller_id"],
                    )
                )
            ).scalar_one_or_none()
        if transfer is None:
            return {"result": "noop", "annotation": "transfer_not_found"}

        before = transfer.status
        if event.kind is PaymentEventKind.TRANSFER_CREATED:
            if transfer.status == "confirmed":
                return {"transfer_id": transfer.id, "result": "noop", "annotation": "already_applied"}
            transfer.status = "confirmed"
            transfer.stripe_transfer_id = transfer.stripe_transfer_id or obj.get("id")
        else:
            transfer.status = "failed"
            transfer.failure_reason = "reversed"
            logger.warning(
                "transfer_reversed",
                transfer_id=transfer.id,
                order_id=transfer.order_id,
                seller_id=transfer.seller_id,
            )

        metrics.record_transfer(transfer.status)
        self.audit.record(
            db,
            "transfer",
            transfer.id,
            f"transfer_{transfer.status}",
            from_status=before,
            to_status=transfer.status,
            amount=transfer.amount,
            source="webhook",
            correlation_id=event.event_id,
        )
        return {
            "transfer_id": transfer.id,
            "result": "applied",
            "from_status": before,
            "to_status": transfer.status,
        }

    # Queries and reconciliation support

    async def _find_transfer(self, order_id: str, seller_id: str) -> Transfer:
        async with self.session_factory() as db:
            return (
                await db.execute(
                    select(Transfer).where(
                        Transfer.order_id == order_id, Transfer.seller_id == seller_id
                    )
                )
            ).scalar_one()

    async def _reload(self, transfer_id: str) -> Transfer:
        async with self.session_factory() as db:
            return await db.get(Transfer, transfer_id)

    async def list_transfers(self, order_id: str) -> List[Transfer]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Transfer).where(Transfer.order_id == order_id).order_by(Transfer.seller_id)
            )
            return list(result.scalars().all())

    async def find_pending_transfers(
        self, older_than: datetime, limit: int = 100, after_id: Optional[str] = None
    ) -> List[Transfer]:
        """One page of ``requested`` transfers created before ``older_than``, ordered by id."""
        stmt = select(Transfer).where(
            Transfer.status == "requested", Transfer.created_at < older_than
        )
        if after_id is not None:
            stmt = stmt.where(Transfer.id > after_id)
        async with self.session_factory() as db:
            result = await db.execute(stmt.order_by(Transfer.id).limit(limit))
            return list(result.scalars().all())

    async def find_orders_missing_transfers(
        self, older_than: datetime, limit: int = 100, after_id: Optional[str] = None
    ) -> List[str]:
        """
        Paid orders with a payable seller line that has no transfer row.

        Lines whose seller is not onboarded, or whose stored flags do not
        allow payouts, are left out. They become eligible again when an
        ``account.updated`` event enables the account.

        Args:
            older_than: Only orders last updated before this instant
            limit: Page size
            after_id: Cursor; only orders with a greater id are returned

        Returns:
            One page of order ids, ordered by id
        """
        missing = (
            select(OrderItem.order_id)
            .join(SellerAccount, SellerAccount.seller_id == OrderItem.seller_id)
            .where(
                SellerAccount.charges_enabled.is_(True),
                SellerAccount.payouts_enabled.is_(True),
                ~exists().where(
                    Transfer.order_id == OrderItem.order_id,
                    Transfer.seller_id == OrderItem.seller_id,
                ),
            )
        )
        stmt = select(Order.id).where(
            Order.status.in_(PAYABLE_STATUSES),
            Order.updated_at < older_than,
            Order.id.in_(missing),
        )
        if after_id is not None:
            stmt = stmt.where(Order.id > after_id)
        async with self.session_factory() as db:
            result = await db.execute(stmt.order_by(Order.id).limit(limit))
            return list(result.scalars().all())

    async def resolve_pending_transfer(self, transfer: Transfer) -> str:
        """
        Settle a ``requested`` transfer against the processor.

        Returns ``confirmed`` when the processor already holds the transfer,
        otherwise re-issues it under the same idempotency key.
        """
        existing = await self.gateway.list_transfers(transfer_group=transfer.order_id)
        for item in existing:
            if (item.get("metadata") or {}).get("seller_id") == transfer.seller_id:
                await self._finish_transfer(
                    transfer.id, "confirmed", stripe_transfer_id=item["id"], source="reconciliation"
                )
                return "confirmed"

        async with self.session_factory() as db:
            order = await db.get(Order, transfer.order_id)
        result = await self.create_transfer(
            transfer.order_id,
            transfer.seller_id,
            transfer.amount,
            transfer.currency,
            source_transaction=order.charge_id if order else None,
            retry=True,
        )
        return result.status
