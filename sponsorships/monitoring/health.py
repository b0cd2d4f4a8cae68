"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Key-value store connectivity
"""
from typing import Any, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sponsorships.cache import KeyValueStore

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the database and the key-value store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        kv_store: KeyValueStore,
    ) -> None:
        self.session_factory = session_factory
        self.kv_store = kv_store

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

    async def check_kv_store(self) -> Dict[str, Any]:
        """
        Check key-value store connectivity.

        Raises:
            HealthCheckError: If the store does not answer
        """
        try:
            alive = await self.kv_store.ping()
        except Exception as e:
            logger.error("kv_store_health_check_failed", error=str(e))
            raise HealthCheckError(f"Key-value store health check failed: {str(e)}")

        if not alive:
            raise HealthCheckError("Key-value store did not answer ping")
        return {
            "status": "healthy",
            "service": "kv_store",
            "backend": type(self.kv_store).__name__,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("kv_store", self.check_kv_store)):
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
        """Liveness probe; does not touch external dependencies."""
        return {"status": "alive", "message": "Application is running"}
