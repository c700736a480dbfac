from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field

from ...core.enums import AccessMode


class RoutingTable(BaseModel):
    """Which addresses serve reads, writes and routing for one database.

    `refreshed_at` is a monotonic clock reading taken when the table was fetched.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    database: str = Field(default="", description="Database name ('' = server default)")
    routers: tuple[str, ...] = Field(default=())
    readers: tuple[str, ...] = Field(default=())
    writers: tuple[str, ...] = Field(default=())
    ttl: float = Field(default=0.0, ge=0)
    refreshed_at: float = Field(default=0.0)

    @classmethod
    def parse(
        cls,
        *,
        database: str,
        servers: Iterable[Mapping[str, Any]],
        ttl: float,
        refreshed_at: float,
    ) -> Self:
        """Build a table from the ``servers`` list of a routing discovery response.

        Each entry looks like ``{"role": "READ", "addresses": ["host:7687", ...]}``.
        Roles other than ROUTE, READ and WRITE are ignored.
        """
        by_role: dict[str, list[str]] = {"ROUTE": [], "READ": [], "WRITE": []}
        for server in servers:
            role = str(server.get("role", "")).upper()
            if role not in by_role:
                continue
            for address in server.get("addresses", ()):
                if address not in by_role[role]:
                    by_role[role].append(str(address))
        return cls(
            database=database,
            routers=tuple(by_role["ROUTE"]),
            readers=tuple(by_role["READ"]),
            writers=tuple(by_role["WRITE"]),
            ttl=ttl,
            refreshed_at=refreshed_at,
        )

    @property
    def expires_at(self) -> float:
        return self.refreshed_at + self.ttl

    def addresses_for(self, mode: AccessMode) -> tuple[str, ...]:
        return self.readers if mode is AccessMode.READ else self.writers

    def is_fresh(self, mode: AccessMode, now: float) -> bool:
        """Fresh means: not expired and at least one address for the requested role."""
        return now < self.expires_at and bool(self.addresses_for(mode))

    def is_usable(self) -> bool:
        """A table without routers or readers cannot be trusted, even while leaders change."""
        return bool(self.routers) and bool(self.readers)

    def servers(self) -> set[str]:
        return {*self.routers, *self.readers, *self.writers}
