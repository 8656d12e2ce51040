"""
Health check endpoints for Kubernetes readiness and liveness checks.

Checks:
- Database connectivity
- Redis connectivity (when a cache is configured)
- Stripe API reachability
"""
from typing import TYPE_CHECKING, Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_payments.config import get_settings

if TYPE_CHECKING:
    from marketplace_payments.integrations.stripe_client import StripeClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Stripe API reachability check
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: Optional[aioredis.Redis] = None,
        gateway: Optional["StripeClient"] = None,
    ) -> None:
        self.settings = get_settings()
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.gateway = gateway

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Redis only caches idempotency outcomes, so a missing client is
        reported as disabled rather than unhealthy.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if self.redis_client is None:
            return {"status": "disabled", "service": "redis", "message": "Redis not configured"}

        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_stripe(self) -> Dict[str, Any]:
        """
        Check Stripe API reachability with a balance read.

        Raises:
            HealthCheckError: If Stripe check fails
        """
        if self.gateway is None:
            return {"status": "disabled", "service": "stripe", "message": "No gateway configured"}

        try:
            await self.gateway.retrieve_balance()
        except Exception as e:
            logger.error("stripe_health_check_failed", error=str(e))
            raise HealthCheckError(f"Stripe health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "stripe",
            "message": "Stripe API connection successful",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("redis", self.check_redis),
            ("stripe", self.check_stripe),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness check endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness check: the database must be reachable."""
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            return {"status": "not_ready", "checks": {"database": {"status": "unhealthy", "error": str(e)}}}
        return {"status": "ready", "checks": {"database": database}}
