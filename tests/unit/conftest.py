"""Shared fixtures: an in-memory Bolt server speaking real framing and PackStream.

`FakeBoltServer` implements the `Transport` protocol, so a real `Connection`
can be opened on top of it. Writes are processed synchronously and the
responses queued for the next reads. Reading past the queued bytes raises
`TransportError` instead of blocking.

Scripted queries
----------------
- ``RETURN <int> AS <key>``                      one record
- ``RETURN <int>/0 AS <key>``                    fails on PULL with an arithmetic error
- ``UNWIND range(<a>, <b>) AS n RETURN n``       lazily generated records
- ``CREATE (:Person {name: $name})``             staged in a transaction, visible after commit
- ``MATCH (p:Person {name: $name}) RETURN p.name AS name``
- ``MATCH (p:Person) RETURN count(p) AS c``
- routing procedures of Bolt 3.0 and 4.0-4.2
- anything else fails on RUN with a syntax error
"""

from __future__ import annotations

import asyncio
import itertools
import re
import struct
from collections.abc import Awaitable, Callable, Iterator
from typing import Any

import pytest
from pydantic import SecretStr

from graphwire.exceptions import TransportError
from graphwire.infrastructure.bolt.config import ConnectionSettings
from graphwire.infrastructure.bolt.connection import Connection
from graphwire.infrastructure.bolt.packstream import PackStreamCodec, Structure
from graphwire.infrastructure.bolt.protocol import (
    BEGIN,
    BOLT_MAGIC,
    COMMIT,
    DISCARD,
    FAILURE,
    GOODBYE,
    HELLO,
    IGNORED,
    PULL,
    RECORD,
    RESET,
    ROLLBACK,
    ROUTE,
    RUN,
    SUCCESS,
    frame,
)

PASSWORD = "secret"

DEFAULT_ROUTING_SERVERS: list[dict[str, Any]] = [
    {"role": "ROUTE", "addresses": ["core-1:7687", "core-2:7687"]},
    {"role": "READ", "addresses": ["core-2:7687", "core-3:7687"]},
    {"role": "WRITE", "addresses": ["core-1:7687"]},
]

_RETURN_LITERAL = re.compile(r"^RETURN (-?\d+) AS (\w+)$")
_RETURN_DIV_ZERO = re.compile(r"^RETURN (-?\d+) ?/ ?0 AS (\w+)$")
_UNWIND_RANGE = re.compile(r"^UNWIND range\((-?\d+), ?(-?\d+)\) AS (\w+) RETURN \3$", re.IGNORECASE)
_CREATE_PERSON = "CREATE (:Person {name: $name})"
_MATCH_PERSON = "MATCH (p:Person {name: $name}) RETURN p.name AS name"
_COUNT_PERSONS = "MATCH (p:Person) RETURN count(p) AS c"

_END = object()
_UNSET = object()


class _ServerFailure(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class _ServerResult:
    def __init__(
        self,
        fields: list[str],
        rows: Iterator[list[Any]],
        *,
        in_tx: bool,
        query_type: str = "r",
        writes: tuple[str, ...] = (),
        error: tuple[str, str] | None = None,
    ) -> None:
        self.fields = fields
        self.in_tx = in_tx
        self.query_type = query_type
        self.writes = writes
        self.error = error
        self._rows = rows
        self._peeked: Any = _UNSET

    def take(self) -> Any:
        if self._peeked is not _UNSET:
            row, self._peeked = self._peeked, _UNSET
            return row
        return next(self._rows, _END)

    def has_more(self) -> bool:
        if self._peeked is _UNSET:
            self._peeked = next(self._rows, _END)
        return self._peeked is not _END


class FakeBoltServer:
    """Scripted single-session Bolt server living entirely in memory."""

    def __init__(
        self,
        version: tuple[int, int] = (4, 4),
        *,
        agent: str = "Neo4j/4.4.0",
        routing_servers: list[dict[str, Any]] | None = None,
        routing_ttl: int = 300,
        committed: list[str] | None = None,
        route_failure: tuple[str, str] | None = None,
    ) -> None:
        self.version = version
        self.agent = agent
        self.routing_servers = DEFAULT_ROUTING_SERVERS if routing_servers is None else routing_servers
        self.routing_ttl = routing_ttl
        self.route_failure = route_failure
        # Shared list lets several sessions see the same "database".
        self.committed: list[str] = committed if committed is not None else []
        self.received: list[Structure] = []
        self.hello: dict[str, Any] | None = None
        self.said_goodbye = False

        self._codec = PackStreamCodec()
        self._inbox = bytearray()
        self._outbox = bytearray()
        self._chunks: list[bytes] = []
        self._handshaken = False
        self._closed = False
        self._severed = False
        self._stalled = False
        self._failed = False
        self._tx_staged: list[str] | None = None
        self._results: dict[int, _ServerResult] = {}
        self._last_qid = -1
        self._qids = itertools.count()
        self._bookmarks = itertools.count(1)
        self._current_bookmark = ""

    # -- Transport protocol ------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    async def awrite(self, data: bytes) -> None:
        if self._severed or self._closed:
            raise TransportError("Connection reset by peer")
        self._inbox += data
        self._process()

    async def aread_exactly(self, n: int) -> bytes:
        if self._stalled:
            await asyncio.Event().wait()
        if self._severed or self._closed:
            raise TransportError("Connection reset by peer")
        if len(self._outbox) < n:
            raise TransportError(f"Peer closed the connection (wanted {n} bytes, have {len(self._outbox)})")
        data = bytes(self._outbox[:n])
        del self._outbox[:n]
        return data

    async def aclose(self) -> None:
        self._closed = True

    def abort(self) -> None:
        self._closed = True

    # -- test controls -----------------------------------------------------------

    def sever(self) -> None:
        """Make every further read and write fail like a dropped socket."""
        self._severed = True

    def stall(self) -> None:
        """Stop answering; reads wait forever."""
        self._stalled = True

    def messages(self, tag: int) -> list[Structure]:
        return [m for m in self.received if m.tag == tag]

    @property
    def open_results(self) -> int:
        return len(self._results)

    @property
    def last_bookmark(self) -> str:
        return self._current_bookmark

    # -- protocol ----------------------------------------------------------------

    def _process(self) -> None:
        if not self._handshaken:
            if len(self._inbox) < 20:
                return
            assert bytes(self._inbox[:4]) == BOLT_MAGIC
            del self._inbox[:20]
            self._handshaken = True
            major, minor = self.version
            self._outbox += bytes([0, 0, minor, major])

        while len(self._inbox) >= 2:
            (size,) = struct.unpack(">H", self._inbox[:2])
            if len(self._inbox) < 2 + size:
                return
            chunk = bytes(self._inbox[2 : 2 + size])
            del self._inbox[: 2 + size]
            if size:
                self._chunks.append(chunk)
                continue
            if not self._chunks:
                continue
            message = self._codec.unpack(b"".join(self._chunks))
            self._chunks.clear()
            self.received.append(message)
            self._handle(message)

    def _send(self, tag: int, *fields: Any) -> None:
        self._outbox += frame(self._codec.pack(Structure(tag, *fields)))

    def _fail(self, code: str, message: str) -> None:
        self._send(FAILURE, {"code": code, "message": message})
        self._failed = True
        self._tx_staged = None
        self._results.clear()

    def _bookmark(self) -> str:
        self._current_bookmark = f"bm:{next(self._bookmarks)}"
        return self._current_bookmark

    def _handle(self, message: Structure) -> None:
        if message.tag == GOODBYE:
            self.said_goodbye = True
            self._closed = True
            return
        if message.tag == RESET:
            self._failed = False
            self._tx_staged = None
            self._results.clear()
            self._send(SUCCESS, {})
            return
        if self._failed:
            self._send(IGNORED)
            return
        handlers: dict[int, Callable[[list[Any]], None]] = {
            HELLO: lambda f: self._on_hello(f[0]),
            RUN: lambda f: self._on_run(*f),
            PULL: lambda f: self._on_pull(f[0] if f else {}),
            DISCARD: lambda f: self._on_discard(f[0] if f else {}),
            BEGIN: lambda f: self._on_begin(),
            COMMIT: lambda f: self._on_commit(),
            ROLLBACK: lambda f: self._on_rollback(),
            ROUTE: self._on_route,
        }
        try:
            handler = handlers.get(message.tag)
            if handler is None:
                raise _ServerFailure("Neo.ClientError.Request.Invalid", f"Unknown message 0x{message.tag:02X}")
            handler(message.fields)
        except _ServerFailure as e:
            self._fail(e.code, e.message)

    def _on_hello(self, extra: dict[str, Any]) -> None:
        self.hello = extra
        if extra.get("credentials") != PASSWORD:
            raise _ServerFailure("Neo.ClientError.Security.Unauthorized", "The client is unauthorized")
        self._send(SUCCESS, {"server": self.agent, "connection_id": "bolt-1"})

    def _on_begin(self) -> None:
        if self._tx_staged is not None:
            raise _ServerFailure("Neo.ClientError.Request.Invalid", "Transaction already open")
        if self._results:
            raise _ServerFailure("Neo.ClientError.Request.Invalid", "Previous result not consumed")
        self._tx_staged = []
        self._send(SUCCESS, {})

    def _on_commit(self) -> None:
        if self._tx_staged is None:
            raise _ServerFailure("Neo.ClientError.Request.Invalid", "No transaction open")
        if self._results:
            raise _ServerFailure("Neo.ClientError.Request.Invalid", "Results still open at commit")
        self.committed.extend(self._tx_staged)
        self._tx_staged = None
        self._send(SUCCESS, {"bookmark": self._bookmark()})

    def _on_rollback(self) -> None:
        if self._tx_staged is None:
            raise _ServerFailure("Neo.ClientError.Request.Invalid", "No transaction open")
        self._tx_staged = None
        self._results.clear()
        self._send(SUCCESS, {})

    def _on_route(self, fields: list[Any]) -> None:
        if self.route_failure is not None:
            raise _ServerFailure(*self.route_failure)
        _, _, db_field = fields
        database = db_field.get("db") if isinstance(db_field, dict) else db_field
        self._send(
            SUCCESS,
            {"rt": {"ttl": self.routing_ttl, "servers": self.routing_servers, "db": database or "neo4j"}},
        )

    def _on_run(self, query: str, params: dict[str, Any], extra: dict[str, Any]) -> None:
        in_tx = self._tx_staged is not None
        if not in_tx and self._results:
            raise _ServerFailure("Neo.ClientError.Request.Invalid", "Previous result not consumed")
        result = self._plan(query, params, in_tx=in_tx)
        qid = next(self._qids)
        self._results[qid] = result
        self._last_qid = qid
        metadata: dict[str, Any] = {"fields": result.fields, "t_first": 1}
        if in_tx and self.version >= (4, 0):
            metadata["qid"] = qid
        self._send(SUCCESS, metadata)

    def _result_for(self, extra: dict[str, Any]) -> tuple[int, _ServerResult]:
        qid = extra.get("qid", -1)
        if qid == -1:
            qid = self._last_qid
        result = self._results.get(qid)
        if result is None:
            raise _ServerFailure("Neo.ClientError.Request.Invalid", f"No open result with qid {qid}")
        return qid, result

    def _on_pull(self, extra: dict[str, Any]) -> None:
        qid, result = self._result_for(extra)
        if result.error is not None:
            raise _ServerFailure(*result.error)
        n = extra.get("n", -1)
        sent = 0
        while n < 0 or sent < n:
            row = result.take()
            if row is _END:
                break
            self._send(RECORD, row)
            sent += 1
        if result.has_more():
            self._send(SUCCESS, {"has_more": True})
            return
        self._complete(qid, result)

    def _on_discard(self, extra: dict[str, Any]) -> None:
        qid, result = self._result_for(extra)
        self._complete(qid, result)

    def _complete(self, qid: int, result: _ServerResult) -> None:
        del self._results[qid]
        metadata: dict[str, Any] = {"type": result.query_type, "t_last": 2, "db": "neo4j"}
        if result.writes:
            metadata["stats"] = {"nodes-created": len(result.writes)}
        if not result.in_tx:
            self.committed.extend(result.writes)
            metadata["bookmark"] = self._bookmark()
        self._send(SUCCESS, metadata)

    def _visible(self) -> list[str]:
        return [*self.committed, *(self._tx_staged or [])]

    def _plan(self, query: str, params: dict[str, Any], *, in_tx: bool) -> _ServerResult:
        if match := _RETURN_LITERAL.match(query):
            return _ServerResult([match[2]], iter([[int(match[1])]]), in_tx=in_tx)
        if match := _RETURN_DIV_ZERO.match(query):
            return _ServerResult(
                [match[2]],
                iter(()),
                in_tx=in_tx,
                error=("Neo.ClientError.Statement.ArithmeticError", "/ by zero"),
            )
        if match := _UNWIND_RANGE.match(query):
            start, stop = int(match[1]), int(match[2])
            return _ServerResult([match[3]], ([i] for i in range(start, stop + 1)), in_tx=in_tx)
        if query == _CREATE_PERSON:
            name = params["name"]
            if in_tx:
                assert self._tx_staged is not None
                self._tx_staged.append(name)
                return _ServerResult([], iter(()), in_tx=True, query_type="w")
            return _ServerResult([], iter(()), in_tx=False, query_type="w", writes=(name,))
        if query == _MATCH_PERSON:
            visible = self._visible() if in_tx else self.committed
            rows = [[n] for n in visible if n == params["name"]]
            return _ServerResult(["name"], iter(rows), in_tx=in_tx)
        if query == _COUNT_PERSONS:
            visible = self._visible() if in_tx else self.committed
            return _ServerResult(["c"], iter([[len(visible)]]), in_tx=in_tx)
        if query.startswith("CALL dbms.routing.getRoutingTable") or query.startswith(
            "CALL dbms.cluster.routing.getRoutingTable"
        ):
            if self.route_failure is not None:
                raise _ServerFailure(*self.route_failure)
            return _ServerResult(["ttl", "servers"], iter([[self.routing_ttl, self.routing_servers]]), in_tx=in_tx)
        raise _ServerFailure("Neo.ClientError.Statement.SyntaxError", f"Invalid input {query[:20]!r}")


type ConnectionOpener = Callable[..., Awaitable[Connection]]


@pytest.fixture
def settings() -> ConnectionSettings:
    return ConnectionSettings(user="neo4j", password=SecretStr(PASSWORD), fetch_size=1000)


@pytest.fixture
def server() -> FakeBoltServer:
    return FakeBoltServer()


@pytest.fixture
def server_factory() -> type[FakeBoltServer]:
    return FakeBoltServer


@pytest.fixture
def open_connection(settings: ConnectionSettings) -> ConnectionOpener:
    """Open a real `Connection` on top of a `FakeBoltServer`."""

    async def _open(
        server: FakeBoltServer,
        address: str = "localhost:7687",
        connection_settings: ConnectionSettings | None = None,
        **kwargs: Any,
    ) -> Connection:
        return await Connection.aopen(address, connection_settings or settings, transport=server, **kwargs)

    return _open


@pytest.fixture
async def conn(server: FakeBoltServer, open_connection: ConnectionOpener) -> Connection:
    return await open_connection(server)


class FakeCluster:
    """Connector that opens a fresh `FakeBoltServer` session per connection.

    All sessions share one committed-data list. Addresses in `down` refuse
    connections; `options` customises the servers of one address.
    """

    def __init__(self, settings: ConnectionSettings, **defaults: Any) -> None:
        self.settings = settings
        self.defaults = defaults
        self.options: dict[str, dict[str, Any]] = {}
        self.down: set[str] = set()
        self.committed: list[str] = []
        self.sessions: dict[str, list[FakeBoltServer]] = {}

    async def __call__(self, address: str) -> Connection:
        if address in self.down:
            raise TransportError(f"Failed to connect to {address}: connection refused")
        server = FakeBoltServer(committed=self.committed, **{**self.defaults, **self.options.get(address, {})})
        self.sessions.setdefault(address, []).append(server)
        return await Connection.aopen(address, self.settings, transport=server)

    def received(self, tag: int, address: str | None = None) -> list[Structure]:
        sessions = self.sessions.get(address, []) if address else [s for v in self.sessions.values() for s in v]
        return [m for s in sessions for m in s.messages(tag)]


@pytest.fixture
def cluster(settings: ConnectionSettings) -> FakeCluster:
    return FakeCluster(settings)
