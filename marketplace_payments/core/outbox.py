"""
Transactional outbox dispatch.

Order transitions write outbox rows in the same transaction as the status
change. This publisher reads unpublished rows and hands them to the
consumers registered for their event type. Consumers must be idempotent;
a row is marked published only after every consumer for it succeeded.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.seller_accounts import SellerAccountManager
from marketplace_payments.database.models import Order, OutboxEvent
from marketplace_payments.monitoring.logging import payment_context
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Consumer = Callable[[Dict[str, Any]], Awaitable[None]]


def paid_notifications(order: Order) -> List[Dict[str, Any]]:
    """
    Messages sent when an order is paid.

    The buyer gets one ``payment_confirmed`` message; each seller gets one
    ``new_sale`` message listing their own lines and gross amount.
    """
    messages: List[Dict[str, Any]] = [
        {
            "recipient_type": "buyer",
            "recipient_id": order.buyer_id,
            "kind": "payment_confirmed",
            "order_id": order.id,
            "order_number": order.order_number,
            "amount": order.total_amount,
            "currency": order.currency,
        }
    ]
    sales: Dict[str, List[Any]] = {}
    for item in order.items:
        sales.setdefault(item.seller_id, []).append(item)
    for seller_id, items in sorted(sales.items()):
        messages.append(
            {
                "recipient_type": "seller",
                "recipient_id": seller_id,
                "kind": "new_sale",
                "order_id": order.id,
                "order_number": order.order_number,
                "product_ids": [item.product_id for item in items],
                "amount": sum(item.amount for item in items),
                "currency": order.currency,
            }
        )
    return messages


class OutboxPublisher:
    """
    Publishes events from the outbox table to their consumers.

    Delivery is at-least-once:
    1. Read unpublished events in creation order
    2. Run every consumer registered for the event type
    3. Mark the event published
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sellers: Optional[SellerAccountManager] = None,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize outbox publisher.

        Args:
            session_factory: Database session factory
            sellers: Seller account manager used to schedule transfers
            settings: Application settings
            http_client: Client for the fulfillment webhook
        """
        self.session_factory = session_factory
        self.sellers = sellers
        self.settings = settings or get_settings()
        self.batch_size = self.settings.outbox_batch_size
        self.poll_interval_seconds = self.settings.outbox_poll_interval_seconds
        self._http = http_client
        self._running = False
        self.consumers: Dict[str, List[Consumer]] = {}

        if sellers is not None:
            self.register("order.paid", self._schedule_transfers)
        if self.settings.fulfillment_webhook_url:
            for event_type in ("order.paid", "order.cancelled", "order.refunded"):
                self.register(event_type, self._notify_fulfillment)
        if self.settings.notification_webhook_url:
            self.register("order.paid", self._notify_parties)

        logger.info(
            "outbox_publisher_initialized",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval_seconds,
            event_types=sorted(self.consumers),
        )

    def register(self, event_type: str, consumer: Consumer) -> None:
        """Add a consumer for ``event_type``."""
        self.consumers.setdefault(event_type, []).append(consumer)

    async def _schedule_transfers(self, event_data: Dict[str, Any]) -> None:
        await self.sellers.schedule_transfers(event_data["aggregate_id"])

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=10.0)
        return self._http

    async def _notify_fulfillment(self, event_data: Dict[str, Any]) -> None:
        response = await self._client().post(
            self.settings.fulfillment_webhook_url,
            json=event_data,
            headers={"Idempotency-Key": f"outbox:{event_data['id']}"},
        )
        response.raise_for_status()

    async def _notify_parties(self, event_data: Dict[str, Any]) -> None:
        async with self.session_factory() as db:
            order = await db.get(Order, event_data["aggregate_id"])
        if order is None:
            logger.warning("notification_order_missing", order_id=event_data["aggregate_id"])
            return

        client = self._client()
        for message in paid_notifications(order):
            response = await client.post(
                self.settings.notification_webhook_url,
                json=message,
                headers={
                    "Idempotency-Key": (
                        f"outbox:{event_data['id']}:"
                        f"{message['recipient_type']}:{message['recipient_id']}"
                    )
                },
            )
            response.raise_for_status()
        logger.info("order_parties_notified", order_id=order.id)

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published == False)  # noqa: E712
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Run the consumers for a single event.

        Args:
            event: Outbox event to publish

        Returns:
            bool: True if every consumer succeeded, False otherwise
        """
        event_data = {
            "id": event.id,
            "aggregate_id": event.aggregate_id,
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": event.created_at.isoformat(),
        }
        start = time.perf_counter()
        try:
            with payment_context(order_id=event.aggregate_id, outbox_event_id=str(event.id)):
                for consumer in self.consumers.get(event.event_type, []):
                    await consumer(event_data)
        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                aggregate_id=event.aggregate_id,
                error=str(e),
            )
            return False

        metrics.record_outbox_event_published(event.event_type, time.perf_counter() - start)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=event.aggregate_id,
        )
        return True

    async def _mark_as_published(self, event_ids: List[int]) -> None:
        if not event_ids:
            return
        async with self.session_factory() as db:
            await db.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id.in_(event_ids))
                .values(published=True, published_at=datetime.now(timezone.utc))
            )
            await db.commit()
        logger.info("outbox_events_marked_published", count=len(event_ids))

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        async with self.session_factory() as db:
            events = await self._fetch_unpublished_events(db)
        if not events:
            return 0

        logger.info("outbox_batch_processing_started", batch_size=len(events))

        published_ids = []
        for event in events:
            if await self._publish_event(event):
                published_ids.append(event.id)

        await self._mark_as_published(published_ids)

        logger.info(
            "outbox_batch_processed",
            total=len(events),
            published=len(published_ids),
            failed=len(events) - len(published_ids),
        )
        return len(published_ids)

    async def start(self) -> None:
        """
        Run the publisher loop until ``stop`` is called.

        Failed events stay unpublished and are picked up again next poll.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        await asyncio.sleep(0.1)
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Number of unpublished events."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(OutboxEvent).where(OutboxEvent.published == False)  # noqa: E712
            )
            return int(result.scalar_one())

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
