from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol

from ...exceptions import TransportError, TransportTimeoutError
from ...logger import get_logger

if TYPE_CHECKING:
    import ssl

    from structlog.stdlib import BoundLogger

logger: BoundLogger = get_logger(__name__)

DEFAULT_PORT = 7687


class Transport(Protocol):
    """Reliable ordered byte stream to one server address."""

    @property
    def closed(self) -> bool: ...

    async def aread_exactly(self, n: int) -> bytes: ...

    async def awrite(self, data: bytes) -> None: ...

    async def aclose(self) -> None: ...

    def abort(self) -> None: ...


def parse_address(address: str, default_port: int = DEFAULT_PORT) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into its parts."""
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port = rest.removeprefix(":")
    else:
        host, _, port = address.rpartition(":") if ":" in address else (address, "", "")
    if not host:
        raise ValueError(f"Invalid address {address!r}")
    try:
        return host, int(port) if port else default_port
    except ValueError:
        raise ValueError(f"Invalid port in address {address!r}") from None


class AsyncioTransport:
    """Transport over asyncio streams, optionally wrapped in TLS before any protocol traffic."""

    __slots__ = ("_address", "_closed", "_reader", "_writer")

    def __init__(self, address: str, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._address = address
        self._reader = reader
        self._writer = writer
        self._closed = False

    @classmethod
    async def aopen(
        cls,
        address: str,
        *,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float | None = None,
    ) -> AsyncioTransport:
        host, port = parse_address(address)
        try:
            async with asyncio.timeout(timeout):
                reader, writer = await asyncio.open_connection(
                    host, port, ssl=ssl_context, server_hostname=host if ssl_context else None
                )
        except TimeoutError as e:
            raise TransportTimeoutError(f"Timed out connecting to {address}") from e
        except OSError as e:
            raise TransportError(f"Failed to connect to {address}: {e}") from e

        logger.debug("Transport opened", address=address, encrypted=ssl_context is not None)
        return cls(address, reader, writer)

    @property
    def closed(self) -> bool:
        return self._closed

    async def aread_exactly(self, n: int) -> bytes:
        try:
            return await self._reader.readexactly(n)
        except asyncio.IncompleteReadError as e:
            self._closed = True
            raise TransportError(f"Connection to {self._address} closed by peer") from e
        except OSError as e:
            self._closed = True
            raise TransportError(f"Read from {self._address} failed: {e}") from e

    async def awrite(self, data: bytes) -> None:
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            self._closed = True
            raise TransportError(f"Write to {self._address} failed: {e}") from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as e:
            logger.debug("Transport close raised", address=self._address, error=str(e))

    def abort(self) -> None:
        self._closed = True
        self._writer.transport.abort()
