"""
Health checks for liveness and readiness probes.

- Liveness: the process is up; no I/O
- Readiness: the billing database answers a query. The Stripe circuit
  breaker is reported but never blocks readiness: webhooks still reconcile
  (without settlement lookups) while Stripe is degraded.
"""

import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from payment_reconciler.observability.logging import get_logger
from payment_reconciler.resilience.circuit_breakers import get_stripe_breaker
from payment_reconciler.storage.database import BillingDatabase

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(BaseModel):
    name: str = Field(description="billing_database or stripe_api")
    status: HealthStatus
    message: str | None = None
    latency_ms: float | None = Field(default=None, description="Probe round trip, database only")
    last_check: datetime
    metadata: dict[str, Any] | None = Field(default=None, description="Breaker counters for stripe_api")


class LivenessResponse(BaseModel):
    status: str = "alive"
    timestamp: datetime
    uptime_seconds: float = Field(description="Seconds since the checker was created")


class ReadinessResponse(BaseModel):
    """Aggregate of the component probes; degraded still counts as ready."""

    status: HealthStatus
    timestamp: datetime
    ready: bool = Field(description="False only when the billing database is unavailable")
    components: list[ComponentHealth]


class HealthChecker:
    """Runs the probes and tracks uptime."""

    def __init__(self):
        self.start_time = time.time()

    def get_uptime_seconds(self) -> float:
        return time.time() - self.start_time

    async def check_liveness(self) -> LivenessResponse:
        return LivenessResponse(
            timestamp=datetime.now(UTC),
            uptime_seconds=round(self.get_uptime_seconds(), 3),
        )

    async def check_readiness(self, billing_db: BillingDatabase | None = None) -> ReadinessResponse:
        """
        Readiness probe.

        Returns:
            ReadinessResponse: ready is False only when the database is
            missing or unresponsive
        """
        components = [
            await self._check_database_health(billing_db),
            self._check_stripe_breaker(),
        ]

        overall_status = HealthStatus.HEALTHY
        if components[0].status == HealthStatus.UNHEALTHY:
            overall_status = HealthStatus.UNHEALTHY
        elif any(c.status != HealthStatus.HEALTHY for c in components):
            overall_status = HealthStatus.DEGRADED

        return ReadinessResponse(
            status=overall_status,
            timestamp=datetime.now(UTC),
            ready=overall_status != HealthStatus.UNHEALTHY,
            components=components,
        )

    async def _check_database_health(self, billing_db: BillingDatabase | None) -> ComponentHealth:
        if billing_db is None:
            return ComponentHealth(
                name="billing_database",
                status=HealthStatus.UNHEALTHY,
                message="Database not initialized",
                last_check=datetime.now(UTC),
            )

        start_time = time.perf_counter()
        responsive = await billing_db.ping()
        latency_ms = round((time.perf_counter() - start_time) * 1000, 2)

        if not responsive:
            logger.error("Database health check failed", latency_ms=latency_ms)
        return ComponentHealth(
            name="billing_database",
            status=HealthStatus.HEALTHY if responsive else HealthStatus.UNHEALTHY,
            message="Database responsive" if responsive else "Database check failed",
            latency_ms=latency_ms,
            last_check=datetime.now(UTC),
        )

    def _check_stripe_breaker(self) -> ComponentHealth:
        breaker = get_stripe_breaker()
        state = breaker.current_state
        return ComponentHealth(
            name="stripe_api",
            status=HealthStatus.HEALTHY if state == "closed" else HealthStatus.DEGRADED,
            message=f"Circuit breaker {state}",
            last_check=datetime.now(UTC),
            metadata={"fail_count": breaker.fail_counter, "fail_max": breaker.fail_max},
        )


_health_checker: HealthChecker | None = None


def get_health_checker() -> HealthChecker:
    global _health_checker
    if _health_checker is None:
        _health_checker = HealthChecker()
    return _health_checker
