"""
Component lifecycle.

The watcher, the retry scheduler and the application share one
start/stop/health_check shape so the shutdown manager and the status loop can
treat them uniformly. Uptime is measured on the component's Clock, which
keeps it meaningful under a VirtualClock in tests.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import structlog

from croupier.core.clock import Clock, SystemClock

log = structlog.get_logger()


class HealthStatus(str, Enum):
    """Component health status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    status: HealthStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def healthy(cls, message: str = "OK", **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.HEALTHY, message=message, details=details)

    @classmethod
    def degraded(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.DEGRADED, message=message, details=details)

    @classmethod
    def unhealthy(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.UNHEALTHY, message=message, details=details)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "message": self.message, **self.details}


class BaseComponent:
    """Base class for long-running pipeline components.

    Subclasses override _do_start(), _do_stop() and _do_health_check().
    start() and stop() are idempotent; a failing _do_start() leaves the
    component stopped and re-raises.
    """

    def __init__(self, name: Optional[str] = None, clock: Optional[Clock] = None) -> None:
        self._name = name or self.__class__.__name__
        self._lifecycle_clock: Clock = clock or SystemClock()
        self._running = False
        self._started_at: Optional[float] = None
        self._lifecycle_log = log.bind(component=self._name)

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uptime_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        return max(0.0, self._lifecycle_clock.now() - self._started_at)

    async def start(self) -> None:
        if self._running:
            return
        try:
            await self._do_start()
        except Exception as e:
            self._lifecycle_log.error("component_start_failed", error=str(e))
            raise
        self._running = True
        self._started_at = self._lifecycle_clock.now()
        self._lifecycle_log.debug("component_started")

    async def stop(self) -> None:
        if not self._running:
            return
        try:
            await self._do_stop()
        finally:
            self._running = False
            self._lifecycle_log.debug("component_stopped", uptime_seconds=self.uptime_seconds)

    async def health_check(self) -> HealthCheckResult:
        if not self._running:
            return HealthCheckResult.unhealthy(f"{self._name} not running")
        return await self._do_health_check()

    async def _do_start(self) -> None:
        pass

    async def _do_stop(self) -> None:
        pass

    async def _do_health_check(self) -> HealthCheckResult:
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds)
