from __future__ import annotations

from enum import StrEnum


class AccessMode(StrEnum):
    READ = "r"
    WRITE = "w"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
