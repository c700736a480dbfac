from __future__ import annotations

from datetime import datetime
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, computed_field

from ...core.enums import HealthStatus


class PoolStats(BaseModel):
    """Point-in-time counters of the pool for one server address."""

    model_config = ConfigDict(frozen=True)

    address: str
    size: int
    idle: int
    max_size: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def in_use(self) -> int:
        return self.size - self.idle

    @computed_field  # type: ignore[prop-decorator]
    @property
    def utilization_pct(self) -> float:
        """Pool utilization as percentage."""
        if self.max_size == 0:
            return 0.0
        return (self.size / self.max_size) * 100


class HealthCheckResult(BaseModel):
    """Result of a driver health check against one server."""

    model_config = ConfigDict(frozen=True)

    status: HealthStatus
    address: str | None = None
    server_version: str | None = None
    protocol_version: str | None = None
    latency_s: float | None = None
    message: str | None = None
    pools: tuple[PoolStats, ...] = Field(default_factory=tuple)
    timestamp: datetime = Field(default_factory=datetime.now)

    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    @classmethod
    def unhealthy(cls: type[Self], error: str, pools: tuple[PoolStats, ...] = ()) -> Self:
        """Create result for failed health check.

        Parameters
        ----------
        error
            Error message describing the failure.
        pools
            Pool counters at the time of the check.
        """
        return cls(status=HealthStatus.UNHEALTHY, message=error, pools=pools)

    @classmethod
    def healthy(
        cls: type[Self],
        *,
        address: str,
        server_version: str,
        protocol_version: str,
        latency_s: float,
        pools: tuple[PoolStats, ...] = (),
    ) -> Self:
        """Create result for successful health check.

        The status is DEGRADED instead of HEALTHY when any pool is full.
        """
        saturated = any(p.size >= p.max_size and p.idle == 0 for p in pools)
        return cls(
            status=HealthStatus.DEGRADED if saturated else HealthStatus.HEALTHY,
            address=address,
            server_version=server_version,
            protocol_version=protocol_version,
            latency_s=latency_s,
            message="Pool saturated" if saturated else "Driver is healthy",
            pools=pools,
        )
