"""Address resolution for read and write work.

Two implementations share the `Router` protocol:

- `DirectRouter` always answers with the one configured address. It has no
  cache, so `invalidate` and `cleanup` have nothing to do.
- `ClusterRouter` keeps one routing table per database, refreshed through
  the pool when the table has expired or lacks addresses for the requested
  role. Each database has its own lock; refreshing one database never
  blocks lookups of another.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from typing import TYPE_CHECKING, Protocol

from ...core.enums import AccessMode
from ...exceptions import PoolExhaustedError, RoutingError, ServerError, TransportError
from ...logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from structlog.stdlib import BoundLogger

    from .config import RoutingSettings
    from .pool import ConnectionPool
    from .routing import RoutingTable

logger: BoundLogger = get_logger(__name__)


class Router(Protocol):
    async def areaders(self, database: str = "") -> list[str]: ...

    async def awriters(self, database: str = "") -> list[str]: ...

    def invalidate(self, database: str = "") -> None: ...

    def cleanup(self) -> None: ...


class DirectRouter:
    __slots__ = ("_address",)

    def __init__(self, address: str) -> None:
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    async def areaders(self, database: str = "") -> list[str]:
        return [self._address]

    async def awriters(self, database: str = "") -> list[str]:
        return [self._address]

    def invalidate(self, database: str = "") -> None:
        pass

    def cleanup(self) -> None:
        pass


class ClusterRouter:
    """Routing table cache for a cluster reached through a seed address.

    Parameters
    ----------
    seed
        Address from the driver URI; always tried after the known routers.
    pool
        Pool used to borrow a connection for each discovery call.
    settings
        Routing context, TTL floor and refresh deadline.
    clock
        Monotonic clock, injectable for tests.
    """

    __slots__ = ("_clock", "_counters", "_locks", "_pool", "_seed", "_settings", "_tables")

    def __init__(
        self,
        seed: str,
        pool: ConnectionPool,
        settings: RoutingSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._seed = seed
        self._pool = pool
        self._settings = settings
        self._clock = clock
        self._tables: dict[str, RoutingTable] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._counters: dict[tuple[str, AccessMode], Iterator[int]] = {}

    @property
    def seed(self) -> str:
        return self._seed

    def table(self, database: str = "") -> RoutingTable | None:
        return self._tables.get(database)

    async def areaders(self, database: str = "") -> list[str]:
        return await self._aaddresses(database, AccessMode.READ)

    async def awriters(self, database: str = "") -> list[str]:
        return await self._aaddresses(database, AccessMode.WRITE)

    def invalidate(self, database: str = "") -> None:
        if self._tables.pop(database, None) is not None:
            logger.info("Routing table invalidated", database=database or "<default>")

    def cleanup(self) -> None:
        self._tables.clear()
        self._counters.clear()

    async def _aaddresses(self, database: str, mode: AccessMode) -> list[str]:
        table = await self._atable(database, mode)
        addresses = list(table.addresses_for(mode))
        if not addresses:
            raise RoutingError(f"No {mode.name.lower()} servers available for database {database or '<default>'!r}")
        counter = self._counters.setdefault((database, mode), itertools.count())
        offset = next(counter) % len(addresses)
        return addresses[offset:] + addresses[:offset]

    async def _atable(self, database: str, mode: AccessMode) -> RoutingTable:
        table = self._tables.get(database)
        if table is not None and table.is_fresh(mode, self._clock()):
            return table

        lock = self._locks.setdefault(database, asyncio.Lock())
        async with lock:
            # Another task may have refreshed while we waited.
            table = self._tables.get(database)
            if table is not None and table.is_fresh(mode, self._clock()):
                return table
            table = await self._arefresh(database, table)
            self._tables[database] = table
            return table

    async def _arefresh(self, database: str, previous: RoutingTable | None) -> RoutingTable:
        candidates = list(previous.routers) if previous is not None else []
        if self._seed not in candidates:
            candidates.append(self._seed)

        timeout = self._settings.refresh_timeout
        failures: list[str] = []
        for address in candidates:
            try:
                async with self._pool.aconnection(address, timeout=timeout) as conn:
                    table = await conn.aroute(database, self._settings.context, timeout=timeout)
            except ServerError as e:
                if e.is_fatal_during_discovery:
                    logger.error("Routing discovery rejected", address=address, code=e.code)
                    raise
                failures.append(f"{address}: {e}")
                continue
            except (TransportError, PoolExhaustedError) as e:
                failures.append(f"{address}: {e}")
                await self._pool.acleanup(address)
                continue

            if not table.is_usable():
                failures.append(f"{address}: table without routers or readers")
                continue
            table = table.model_copy(
                update={"ttl": max(table.ttl, self._settings.min_ttl), "refreshed_at": self._clock()}
            )
            logger.info(
                "Routing table refreshed",
                database=database or "<default>",
                router=address,
                routers=len(table.routers),
                readers=len(table.readers),
                writers=len(table.writers),
                ttl=table.ttl,
            )
            return table

        logger.error("Routing table refresh failed", database=database or "<default>", attempts=failures)
        raise RoutingError(
            f"Unable to fetch routing table for database {database or '<default>'!r}: " + "; ".join(failures)
        )
