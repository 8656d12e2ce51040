"""
Service wiring.

``PaymentsEngine`` builds every component once, against one session
factory and one gateway, so the API and the workers share the same graph.
"""
from typing import Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.audit import AuditLedger
from marketplace_payments.core.catalog import HttpPriceCatalog, PriceCatalog
from marketplace_payments.core.idempotency import IdempotencyStore
from marketplace_payments.core.order_manager import OrderManager
from marketplace_payments.core.outbox import OutboxPublisher
from marketplace_payments.core.reconciliation import ReconciliationEngine
from marketplace_payments.core.refunds import RefundProcessor
from marketplace_payments.core.seller_accounts import SellerAccountManager
from marketplace_payments.database.connection import get_session_factory
from marketplace_payments.integrations.stripe_client import StripeClient
from marketplace_payments.integrations.webhook_handler import WebhookIngestor
from marketplace_payments.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


class PaymentsEngine:
    """All services of the reconciliation engine."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        gateway: Optional[StripeClient] = None,
        catalog: Optional[PriceCatalog] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.redis_client = redis_client
        self.catalog = catalog

        self.audit = AuditLedger(self.session_factory)
        self.gateway = gateway or StripeClient(self.settings, audit=self.audit)
        self.idempotency = IdempotencyStore(self.session_factory, self.settings, redis_client)
        self.orders = OrderManager(
            self.session_factory, self.gateway, self.audit, catalog, self.settings
        )
        self.sellers = SellerAccountManager(
            self.session_factory, self.gateway, self.audit, self.settings
        )
        self.refunds = RefundProcessor(
            self.session_factory, self.gateway, self.orders, self.audit, self.settings
        )
        self.webhooks = WebhookIngestor(
            self.session_factory,
            self.idempotency,
            self.orders,
            self.refunds,
            self.sellers,
            self.settings,
        )
        self.outbox = OutboxPublisher(self.session_factory, self.sellers, self.settings)
        self.reconciliation = ReconciliationEngine(
            self.session_factory,
            self.gateway,
            self.orders,
            self.refunds,
            self.sellers,
            self.idempotency,
            self.audit,
            self.settings,
        )
        self.health = HealthCheck(self.session_factory, redis_client, self.gateway)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PaymentsEngine":
        """Build the engine with the collaborators named in ``settings``."""
        settings = settings or get_settings()
        redis_client = None
        if settings.redis_url:
            redis_client = aioredis.from_url(
                settings.redis_url, encoding="utf-8", decode_responses=True
            )
        catalog = HttpPriceCatalog(settings.catalog_url) if settings.catalog_url else None
        logger.info(
            "payments_engine_configured",
            redis=redis_client is not None,
            catalog=settings.catalog_url,
        )
        return cls(settings=settings, catalog=catalog, redis_client=redis_client)

    async def close(self) -> None:
        await self.outbox.close()
        await self.idempotency.close()
        if isinstance(self.catalog, HttpPriceCatalog):
            await self.catalog.close()
