"""Core module exports."""

from __future__ import annotations

from .enums import AccessMode, HealthStatus

__all__ = [
    "AccessMode",
    "HealthStatus",
]
