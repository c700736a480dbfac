"""Per-address pool of Bolt connections.

Each server address gets its own bounded slot set guarded by its own
`asyncio.Condition`, so a saturated address never blocks acquisition
from another one. Capacity counts connections both idle and handed out.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Self

from ...exceptions import GraphwireError, PoolClosedError, PoolExhaustedError
from ...logger import get_logger
from .enums import ConnectionState
from .health import PoolStats

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable
    from types import TracebackType

    from structlog.stdlib import BoundLogger

    from .config import PoolSettings
    from .connection import Connection

logger: BoundLogger = get_logger(__name__)

type Connector = Callable[[str], Awaitable[Connection]]


class _AddressPool:
    __slots__ = ("address", "condition", "idle", "total")

    def __init__(self, address: str) -> None:
        self.address = address
        self.condition = asyncio.Condition()
        self.idle: deque[Connection] = deque()
        self.total = 0


class ConnectionPool:
    """Bounded connection pools keyed by server address.

    Examples
    --------
    >>> pool = ConnectionPool(connector, PoolSettings(max_size=10))
    >>> async with pool.aconnection("core-1:7687") as conn:
    ...     stream = await conn.arun(Command(query="RETURN 1"))
    >>> await pool.aclose()
    """

    __slots__ = ("_clock", "_closed", "_connector", "_pools", "_settings")

    def __init__(
        self,
        connector: Connector,
        settings: PoolSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connector = connector
        self._settings = settings
        self._clock = clock
        self._pools: dict[str, _AddressPool] = {}
        self._closed = False

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def settings(self) -> PoolSettings:
        return self._settings

    async def aacquire(self, address: str, timeout: float | None = None) -> Connection:
        """Hand out a live connection to `address`.

        Reuses an idle connection when one passes validation, otherwise opens
        a new one while under capacity, otherwise waits for a release.

        Parameters
        ----------
        address
            ``host:port`` of the server.
        timeout
            Seconds to wait for capacity. Defaults to ``PoolSettings.acquisition_timeout``.

        Raises
        ------
        PoolExhaustedError
            No connection became available before the deadline.
        PoolClosedError
            The pool has been closed.
        TransportError, ServerError
            Opening a new connection failed.
        """
        if self._closed:
            raise PoolClosedError("Connection pool is closed")
        slot = self._pools.setdefault(address, _AddressPool(address))
        deadline = asyncio.get_running_loop().time() + (
            timeout if timeout is not None else self._settings.acquisition_timeout
        )

        while True:
            try:
                async with asyncio.timeout_at(deadline):
                    conn = await self._areserve(slot)
            except TimeoutError as e:
                logger.warning("Pool exhausted", address=address, max_size=self._settings.max_size)
                raise PoolExhaustedError(
                    f"No connection to {address} available within the acquisition timeout "
                    f"(max_size={self._settings.max_size})"
                ) from e

            if conn is None:
                return await self._aopen(slot)
            if self._is_reusable(conn):
                return conn
            await self._adiscard(slot, conn)

    async def arelease(self, conn: Connection) -> None:
        """Return `conn` to its idle set, or discard it when it cannot be reused."""
        slot = self._pools.get(conn.address)
        if slot is None:
            conn.abort()
            return

        if conn.is_alive() and conn.state is not ConnectionState.READY:
            try:
                await conn.areset()
            except GraphwireError as e:
                logger.warning("Reset on release failed", address=conn.address, error=str(e))
                conn.abort()
        if conn.is_alive() and conn.supports_multi_database:
            conn.select_database("")

        if self._closed or not conn.is_alive():
            await self._adiscard(slot, conn)
            return

        conn.mark_idle()
        async with slot.condition:
            slot.idle.append(conn)
            slot.condition.notify()

    @asynccontextmanager
    async def aconnection(self, address: str, timeout: float | None = None) -> AsyncIterator[Connection]:
        conn = await self.aacquire(address, timeout)
        try:
            yield conn
        finally:
            await self.arelease(conn)

    async def acleanup(self, address: str) -> None:
        """Close every idle connection to `address`. Connections in use are left alone."""
        slot = self._pools.get(address)
        if slot is None:
            return
        async with slot.condition:
            stale = list(slot.idle)
            slot.idle.clear()
            slot.total -= len(stale)
            slot.condition.notify(len(stale))
        for conn in stale:
            await conn.aclose()
        if stale:
            logger.info("Pool cleaned up", address=address, closed=len(stale))

    async def aclose(self) -> None:
        """Close all idle connections and refuse further acquisition.

        Connections still handed out are closed when released.
        """
        if self._closed:
            return
        self._closed = True
        for slot in list(self._pools.values()):
            async with slot.condition:
                idle = list(slot.idle)
                slot.idle.clear()
                slot.total -= len(idle)
                slot.condition.notify_all()
            for conn in idle:
                await conn.aclose()
        logger.info("Connection pool closed", addresses=len(self._pools))

    def stats(self) -> tuple[PoolStats, ...]:
        return tuple(
            PoolStats(address=slot.address, size=slot.total, idle=len(slot.idle), max_size=self._settings.max_size)
            for slot in self._pools.values()
        )

    async def _areserve(self, slot: _AddressPool) -> Connection | None:
        """Pop an idle connection, or reserve capacity for a new one (returns None)."""
        async with slot.condition:
            while True:
                if self._closed:
                    raise PoolClosedError("Connection pool is closed")
                if slot.idle:
                    return slot.idle.pop()
                if slot.total < self._settings.max_size:
                    slot.total += 1
                    return None
                await slot.condition.wait()

    async def _aopen(self, slot: _AddressPool) -> Connection:
        try:
            conn = await self._connector(slot.address)
        except BaseException:
            async with slot.condition:
                slot.total -= 1
                slot.condition.notify()
            raise
        logger.debug("Pool opened connection", address=slot.address, size=slot.total)
        return conn

    async def _adiscard(self, slot: _AddressPool, conn: Connection) -> None:
        await conn.aclose()
        async with slot.condition:
            slot.total -= 1
            slot.condition.notify()
        logger.debug("Pool discarded connection", address=slot.address, size=slot.total)

    def _is_reusable(self, conn: Connection) -> bool:
        if not conn.is_alive():
            return False
        now = self._clock()
        max_idle = self._settings.max_idle_time
        if max_idle is not None and now - conn.idle_since > max_idle:
            return False
        max_lifetime = self._settings.max_lifetime
        return max_lifetime is None or now - conn.created_at <= max_lifetime
