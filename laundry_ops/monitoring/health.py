"""
Health checks for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (webhook deduplication)
- Tap gateway circuit breaker state
"""
from typing import Any, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from laundry_ops.config import get_settings
from laundry_ops.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    The gateway is not called; an open circuit breaker is what marks it
    unhealthy, so probes never spend Tap rate limit.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        circuit_state: Optional[Callable[[], str]] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Session factory to probe (defaults to the app's)
            circuit_state: Callable returning the Tap circuit breaker state
        """
        self.settings = get_settings()
        self.session_factory = session_factory
        self.circuit_state = circuit_state

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self.session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        redis_client: Optional[aioredis.Redis] = None
        try:
            redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await redis_client.ping()
            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")
        finally:
            if redis_client is not None:
                await redis_client.aclose()

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Report the Tap circuit breaker state.

        Raises:
            HealthCheckError: If the circuit is open
        """
        state = self.circuit_state() if self.circuit_state else "unknown"
        if state == "open":
            logger.warning("gateway_health_check_failed", circuit_state=state)
            raise HealthCheckError("Tap circuit breaker is open")
        return {
            "status": "healthy",
            "service": "tap",
            "circuit_state": state,
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Redis only deduplicates webhooks, so a Redis failure degrades the
        service instead of marking it unhealthy.
        """
        checks: Dict[str, Any] = {}
        status = "healthy"

        for name, check, critical in (
            ("database", self.check_database, True),
            ("redis", self.check_redis, False),
            ("tap", self.check_gateway, True),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                if critical:
                    status = "unhealthy"
                elif status == "healthy":
                    status = "degraded"

        return {"status": status, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe; does not check external dependencies."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe; verifies dependencies are available."""
        return await self.check_all()
