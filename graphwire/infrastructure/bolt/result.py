from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ...exceptions import UsageError
from .models import Command, Record, Summary

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .connection import Connection, StreamHandle, TransactionHandle


class Result:
    """Forward-only cursor over one stream.

    Iterating yields records; once exhausted, further reads return the same
    summary and never replay records.

    Examples
    --------
    >>> result = await tx.arun("UNWIND range(1, 3) AS n RETURN n")
    >>> async for record in result:
    ...     print(record["n"])
    >>> summary = await result.aconsume()
    """

    __slots__ = ("_connection", "_stream", "_timeout")

    def __init__(self, connection: Connection, stream: StreamHandle, *, timeout: float | None = None) -> None:
        self._connection = connection
        self._stream = stream
        self._timeout = timeout

    @property
    def keys(self) -> tuple[str, ...]:
        return self._stream.keys

    async def anext(self) -> Record | Summary:
        return await self._connection.anext(self._stream, timeout=self._timeout)

    def __aiter__(self) -> AsyncIterator[Record]:
        return self._aiter()

    async def _aiter(self) -> AsyncIterator[Record]:
        while isinstance(item := await self.anext(), Record):
            yield item

    async def aconsume(self) -> Summary:
        """Skip remaining records and return the summary."""
        while not isinstance(item := await self.anext(), Summary):
            pass
        return item

    async def asingle(self) -> Record:
        """Return the only record of the result.

        Raises
        ------
        UsageError
            The result holds zero records or more than one.
        """
        first = await self.anext()
        if not isinstance(first, Record):
            raise UsageError("Expected exactly one record, got none")
        if isinstance(await self.anext(), Record):
            await self.aconsume()
            raise UsageError("Expected exactly one record, got more than one")
        return first

    async def avalues(self) -> list[tuple[Any, ...]]:
        return [record.values async for record in self]

    async def adata(self) -> list[dict[str, Any]]:
        return [record.data() async for record in self]


class Transaction:
    """Explicit transaction handed to units of work.

    Commit and rollback are driven by the executor; work only runs queries.
    """

    __slots__ = ("_connection", "_handle", "_timeout")

    def __init__(self, connection: Connection, handle: TransactionHandle, *, timeout: float | None = None) -> None:
        self._connection = connection
        self._handle = handle
        self._timeout = timeout

    @property
    def connection(self) -> Connection:
        return self._connection

    async def arun(self, query: str, parameters: dict[str, Any] | None = None, **kwparameters: Any) -> Result:
        command = Command(query=query, params={**(parameters or {}), **kwparameters})
        stream = await self._connection.arun_in_tx(self._handle, command, timeout=self._timeout)
        return Result(self._connection, stream, timeout=self._timeout)
