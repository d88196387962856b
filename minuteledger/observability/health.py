"""
Liveness and readiness checks.

Readiness depends only on the ledger store. The duration probe is reported
alongside it: a missing ffprobe binary degrades estimates to the size
fallback but never takes the service out of rotation.
"""

import shutil
import time
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from minuteledger.config import MediaConfig
from minuteledger.observability.logging import get_logger
from minuteledger.storage.database import LedgerDatabase, StoreError

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(BaseModel):
    """Health of one dependency."""

    name: str
    status: HealthStatus
    critical: bool = Field(default=True, description="Whether readiness depends on it")
    message: str | None = None
    latency_ms: float | None = None


class LivenessResponse(BaseModel):
    status: str = "alive"
    timestamp: datetime
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    status: HealthStatus
    timestamp: datetime
    ready: bool = Field(description="Whether service is ready to accept traffic")
    components: list[ComponentHealth]


class HealthChecker:
    """One per application; built in the lifespan."""

    def __init__(self, db: LedgerDatabase, media_config: MediaConfig | None = None):
        self.db = db
        self.media_config = media_config or MediaConfig(probe_enabled=False)
        self.started_at = time.monotonic()

    async def check_liveness(self) -> LivenessResponse:
        return LivenessResponse(
            timestamp=datetime.now(UTC),
            uptime_seconds=round(time.monotonic() - self.started_at, 3),
        )

    async def check_readiness(self) -> ReadinessResponse:
        """
        Run every component check.

        Returns:
            ReadinessResponse: ready is False only when a critical component
            is unhealthy; status is the worst component status
        """
        components = [await self._check_store(), self._check_duration_probe()]

        ready = not any(
            c.critical and c.status == HealthStatus.UNHEALTHY for c in components
        )
        if any(c.status == HealthStatus.UNHEALTHY for c in components):
            overall = HealthStatus.UNHEALTHY
        elif any(c.status == HealthStatus.DEGRADED for c in components):
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        return ReadinessResponse(
            status=overall,
            timestamp=datetime.now(UTC),
            ready=ready,
            components=components,
        )

    async def _check_store(self) -> ComponentHealth:
        started = time.perf_counter()
        try:
            await self.db.ping()
        except StoreError as e:
            logger.error("Ledger store health check failed", error=str(e))
            return ComponentHealth(
                name="ledger_database",
                status=HealthStatus.UNHEALTHY,
                message=f"Store check failed: {e}",
                latency_ms=round((time.perf_counter() - started) * 1000, 2),
            )

        return ComponentHealth(
            name="ledger_database",
            status=HealthStatus.HEALTHY,
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
        )

    def _check_duration_probe(self) -> ComponentHealth:
        if not self.media_config.probe_enabled:
            return ComponentHealth(
                name="duration_probe",
                status=HealthStatus.HEALTHY,
                critical=False,
                message="Probe disabled; durations estimated from file size",
            )

        if shutil.which(self.media_config.ffprobe_path) is None:
            return ComponentHealth(
                name="duration_probe",
                status=HealthStatus.DEGRADED,
                critical=False,
                message=f"{self.media_config.ffprobe_path} not found; using size fallback",
            )

        return ComponentHealth(name="duration_probe", status=HealthStatus.HEALTHY, critical=False)
