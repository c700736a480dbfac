"""Bolt session state machine over one physical connection.

States and transitions::

    READY --arun--> AUTO_STREAMING --(summary)--> READY
    READY --abegin--> IN_TX --arun_in_tx--> TX_STREAMING --(all summaries)--> IN_TX
    IN_TX | TX_STREAMING --acommit/arollback--> READY
    any --(server FAILURE)--> FAILED --areset--> READY
    any --(transport failure)--> DEAD            (terminal)

A connection is not safe for concurrent use. The pool guarantees a single
owner between acquire and release; nothing here locks.

Results are pulled in batches of `fetch_size` records. Inside a transaction
several results may be open at once; each is tracked by its own handle and
buffer, keyed by the server query id. Switching from one result to another
buffers at most the rest of the current batch.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Self

from ...exceptions import (
    ConnectionDeadError,
    InvalidStreamError,
    NoTransactionError,
    ProtocolError,
    ResetRequiredError,
    ServerError,
    TransactionOpenError,
    TransportError,
    TransportTimeoutError,
    UnsupportedFeatureError,
)
from ...logger import get_logger
from .enums import ConnectionState
from .models import Command, Record, Summary, TxConfig
from .packstream import PackStreamCodec, Structure
from .protocol import (
    BEGIN,
    COMMIT,
    DISCARD,
    FAILURE,
    GOODBYE,
    HELLO,
    PULL,
    RECORD,
    RESET,
    ROLLBACK,
    ROUTE,
    RUN,
    SUCCESS,
    SUMMARY_TAGS,
    MessageChannel,
    ProtocolVersion,
    handshake_request,
    parse_handshake_response,
)
from .routing import RoutingTable
from .transport import AsyncioTransport

if TYPE_CHECKING:
    import ssl
    from collections.abc import AsyncIterator, Callable, Iterable

    from structlog.stdlib import BoundLogger

    from .config import ConnectionSettings
    from .packstream import ValueCodec
    from .transport import Transport

logger: BoundLogger = get_logger(__name__)

_GOODBYE_TIMEOUT = 1.0


class StreamHandle:
    """Opaque reference to one result stream of one connection.

    Valid until the owning connection resets. Once the summary has been
    returned, further reads return the same summary.
    """

    __slots__ = ("_buffer", "_connection", "_generation", "_id", "_in_tx", "_keys", "_qid", "_run_metadata", "_summary")

    def __init__(self, connection: Connection, stream_id: int, generation: int, *, in_tx: bool) -> None:
        self._connection = connection
        self._id = stream_id
        self._generation = generation
        self._in_tx = in_tx
        self._keys: tuple[str, ...] = ()
        self._qid = -1
        self._run_metadata: dict[str, Any] = {}
        self._buffer: deque[Record] = deque()
        self._summary: Summary | None = None

    @property
    def keys(self) -> tuple[str, ...]:
        return self._keys

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def __repr__(self) -> str:
        return f"<StreamHandle id={self._id} qid={self._qid} done={self._summary is not None}>"


class TransactionHandle:
    __slots__ = ("_connection", "_id")

    def __init__(self, connection: Connection, tx_id: int) -> None:
        self._connection = connection
        self._id = tx_id

    def __repr__(self) -> str:
        return f"<TransactionHandle id={self._id}>"


class Connection:
    """One authenticated Bolt session bound to one server address.

    Examples
    --------
    >>> conn = await Connection.aopen("localhost:7687", ConnectionSettings())
    >>> stream = await conn.arun(Command(query="RETURN 1 AS n"), TxConfig(mode=AccessMode.READ))
    >>> await conn.anext(stream)
    <Record n=1>
    >>> await conn.anext(stream)
    Summary(...)
    >>> await conn.aclose()
    """

    __slots__ = (
        "_address",
        "_bookmark",
        "_channel",
        "_clock",
        "_connection_id",
        "_created_at",
        "_database",
        "_failure",
        "_generation",
        "_ids",
        "_idle_since",
        "_pending",
        "_server_agent",
        "_settings",
        "_state",
        "_streaming",
        "_streams",
        "_transport",
        "_tx",
        "_version",
    )

    def __init__(
        self,
        address: str,
        transport: Transport,
        version: ProtocolVersion,
        settings: ConnectionSettings,
        *,
        server_agent: str = "",
        connection_id: str = "",
        codec: ValueCodec | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._address = address
        self._transport = transport
        self._channel = MessageChannel(transport, codec or PackStreamCodec())
        self._version = version
        self._settings = settings
        self._server_agent = server_agent
        self._connection_id = connection_id
        self._clock = clock

        self._state = ConnectionState.READY
        self._tx: TransactionHandle | None = None
        self._bookmark = ""
        self._database = ""
        self._failure: ServerError | None = None
        self._streams: dict[int, StreamHandle] = {}
        self._streaming: StreamHandle | None = None
        self._pending = 0
        self._generation = 0
        self._ids = itertools.count(1)
        self._created_at = clock()
        self._idle_since = self._created_at

    @classmethod
    async def aopen(
        cls,
        address: str,
        settings: ConnectionSettings,
        *,
        ssl_context: ssl.SSLContext | None = None,
        routing_context: dict[str, str] | None = None,
        codec: ValueCodec | None = None,
        transport: Transport | None = None,
    ) -> Self:
        """Connect, negotiate a protocol version and authenticate.

        Parameters
        ----------
        address
            ``host:port`` of the server.
        settings
            Credentials, user agent and timeouts.
        ssl_context
            Wrap the socket in TLS before any protocol traffic.
        routing_context
            Sent in HELLO (4.1+) when the driver routes; ``None`` for direct connections.
        codec, transport
            Override the default PackStream codec or supply an already open transport.

        Raises
        ------
        TransportError
            Connection, handshake or timeout failure.
        ServerError
            The server rejected the credentials.
        """
        if transport is None:
            transport = await AsyncioTransport.aopen(
                address, ssl_context=ssl_context, timeout=settings.connect_timeout
            )
        codec = codec or PackStreamCodec()
        channel = MessageChannel(transport, codec)

        try:
            async with asyncio.timeout(settings.connect_timeout):
                await transport.awrite(handshake_request())
                version = parse_handshake_response(await transport.aread_exactly(4))

                extra: dict[str, Any] = {"user_agent": settings.user_agent, **settings.auth_token()}
                if routing_context is not None and version >= (4, 1):
                    extra["routing"] = dict(routing_context)
                await channel.asend(Structure(HELLO, extra))
                response = await channel.areceive()
        except TransportError:
            transport.abort()
            raise
        except TimeoutError as e:
            transport.abort()
            raise TransportTimeoutError(f"Timed out opening connection to {address}") from e

        metadata = response.fields[0] if response.fields else {}
        if response.tag == FAILURE:
            transport.abort()
            raise ServerError.from_metadata(metadata)
        if response.tag != SUCCESS:
            transport.abort()
            raise ProtocolError(f"Unexpected response 0x{response.tag:02X} to HELLO")

        connection = cls(
            address,
            transport,
            version,
            settings,
            server_agent=str(metadata.get("server", "")),
            connection_id=str(metadata.get("connection_id", "")),
            codec=codec,
        )
        logger.info(
            "Connection opened",
            address=address,
            protocol_version=f"{version[0]}.{version[1]}",
            server=connection.server_version,
            connection_id=connection.connection_id,
        )
        return connection

    # -- identity -----------------------------------------------------------------

    @property
    def address(self) -> str:
        return self._address

    @property
    def server_name(self) -> str:
        return self._address

    @property
    def server_version(self) -> str:
        return self._server_agent

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def protocol_version(self) -> ProtocolVersion:
        return self._version

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def bookmark(self) -> str:
        return self._bookmark

    @property
    def database(self) -> str:
        return self._database

    @property
    def in_transaction(self) -> bool:
        return self._tx is not None

    @property
    def created_at(self) -> float:
        return self._created_at

    @property
    def idle_since(self) -> float:
        return self._idle_since

    def mark_idle(self) -> None:
        self._idle_since = self._clock()

    def is_alive(self) -> bool:
        return self._state is not ConnectionState.DEAD and not self._transport.closed

    # -- multi-database -------------------------------------------------------------

    @property
    def supports_multi_database(self) -> bool:
        return self._version >= (4, 0)

    def select_database(self, database: str) -> None:
        """Target `database` ('' = server default) for subsequent auto-commit work and transactions."""
        if not self.supports_multi_database:
            raise UnsupportedFeatureError(
                f"Protocol {self._version[0]}.{self._version[1]} on {self._address} "
                f"({self._server_agent}) does not support database selection"
            )
        if self._tx is not None:
            raise TransactionOpenError("Cannot change database while a transaction is open")
        self._database = database

    # -- auto-commit ---------------------------------------------------------------

    async def arun(
        self, command: Command, tx_config: TxConfig | None = None, *, timeout: float | None = None
    ) -> StreamHandle:
        """Run `command` as an auto-commit statement.

        A previous auto-commit result that was not consumed is buffered first.

        Raises
        ------
        TransactionOpenError
            A transaction is open on this connection.
        ServerError
            The server rejected the statement (connection becomes FAILED).
        """
        self._assert_usable()
        if self._tx is not None:
            raise TransactionOpenError("Cannot run an auto-commit statement while a transaction is open")
        tx_config = tx_config or TxConfig()
        extra = tx_config.to_extra(self._database if self.supports_multi_database else "")
        if command.metadata:
            extra["tx_metadata"] = {**extra.get("tx_metadata", {}), **command.metadata}
        return await self._arun_auto(command, extra, timeout)

    async def _arun_auto(self, command: Command, extra: dict[str, Any], timeout: float | None) -> StreamHandle:
        async with self._aio(timeout):
            await self._abuffer_auto_streams()
            stream = self._new_stream(in_tx=False)
            await self._asend(Structure(RUN, command.query, command.params, extra), self._pull_message(stream))
            await self._aread_run_response(stream)
        self._state = ConnectionState.AUTO_STREAMING
        return stream

    # -- explicit transactions -----------------------------------------------------

    async def abegin(self, tx_config: TxConfig | None = None, *, timeout: float | None = None) -> TransactionHandle:
        self._assert_usable()
        if self._tx is not None:
            raise TransactionOpenError("A transaction is already open on this connection")
        tx_config = tx_config or TxConfig()
        async with self._aio(timeout):
            await self._abuffer_auto_streams()
            extra = tx_config.to_extra(self._database if self.supports_multi_database else "")
            await self._asend(Structure(BEGIN, extra))
            await self._aexpect_success()
        self._tx = TransactionHandle(self, next(self._ids))
        self._state = ConnectionState.IN_TX
        return self._tx

    async def arun_in_tx(
        self, tx: TransactionHandle, command: Command, *, timeout: float | None = None
    ) -> StreamHandle:
        """Run `command` inside the open transaction `tx`.

        Earlier results of the same transaction may still be open; they stay
        readable through their own handles.
        """
        self._assert_usable()
        self._assert_tx(tx)
        async with self._aio(timeout):
            if self._streaming is not None:
                await self._abuffer_batch(self._streaming)
            stream = self._new_stream(in_tx=True)
            await self._asend(Structure(RUN, command.query, command.params, {}), self._pull_message(stream))
            await self._aread_run_response(stream)
        self._state = ConnectionState.TX_STREAMING
        return stream

    async def acommit(self, tx: TransactionHandle, *, timeout: float | None = None) -> str:
        """Commit `tx` and return the new bookmark. Open results are discarded first."""
        self._assert_usable()
        self._assert_tx(tx)
        async with self._aio(timeout):
            await self._adiscard_open_streams()
            await self._asend(Structure(COMMIT))
            metadata = await self._aexpect_success()
        if bookmark := metadata.get("bookmark"):
            self._bookmark = str(bookmark)
        self._tx = None
        self._state = ConnectionState.READY
        return self._bookmark

    async def arollback(self, tx: TransactionHandle, *, timeout: float | None = None) -> None:
        self._assert_usable()
        self._assert_tx(tx)
        async with self._aio(timeout):
            await self._adiscard_open_streams()
            await self._asend(Structure(ROLLBACK))
            await self._aexpect_success()
        self._tx = None
        self._state = ConnectionState.READY

    # -- streaming -----------------------------------------------------------------

    async def anext(self, stream: StreamHandle, *, timeout: float | None = None) -> Record | Summary:
        """Return the next record of `stream`, or its summary once exhausted.

        Calling again after the summary returns the same summary.

        Raises
        ------
        InvalidStreamError
            `stream` is not a live handle of this connection.
        ServerError
            The server failed while producing the result (connection becomes FAILED).
        """
        if (
            not isinstance(stream, StreamHandle)
            or stream._connection is not self
            or stream._generation != self._generation
        ):
            raise InvalidStreamError(f"{stream!r} is not a live stream of connection to {self._address}")
        if stream._buffer:
            return stream._buffer.popleft()
        if stream._summary is not None:
            return stream._summary
        self._assert_usable()

        async with self._aio(timeout):
            while True:
                if self._streaming is not stream:
                    if self._streaming is not None:
                        await self._abuffer_batch(self._streaming)
                    await self._asend(self._pull_message(stream))
                    self._streaming = stream
                item = await self._areceive_item(stream)
                if item is not None:
                    return item

    # -- maintenance ---------------------------------------------------------------

    async def areset(self, *, timeout: float | None = None) -> None:
        """Return to READY from any live state, dropping open results and transactions."""
        if self._state is ConnectionState.DEAD:
            raise ConnectionDeadError(f"Connection to {self._address} is dead")
        async with self._aio(timeout):
            await self._asend(Structure(RESET))
            message = None
            while self._pending > 0:
                message = await self._areceive()
            if message is None or message.tag != SUCCESS:
                raise ProtocolError(f"RESET on {self._address} was not acknowledged")

        self._generation += 1
        self._streams.clear()
        self._streaming = None
        self._tx = None
        self._failure = None
        self._state = ConnectionState.READY
        logger.debug("Connection reset", address=self._address, connection_id=self._connection_id)

    async def aroute(
        self,
        database: str = "",
        context: dict[str, str] | None = None,
        bookmarks: Iterable[str] = (),
        *,
        timeout: float | None = None,
    ) -> RoutingTable:
        """Ask this server for the routing table of `database`."""
        self._assert_usable()
        if self._tx is not None:
            raise TransactionOpenError("Cannot fetch routing information while a transaction is open")
        context = {"address": self._address, **(context or {})}
        bookmark_list = sorted(b for b in bookmarks if b)

        if self._version >= (4, 3):
            db_field: Any = ({"db": database} if database else {}) if self._version >= (4, 4) else (database or None)
            async with self._aio(timeout):
                await self._abuffer_auto_streams()
                await self._asend(Structure(ROUTE, context, bookmark_list, db_field))
                metadata = await self._aexpect_success()
            rt = metadata.get("rt", {})
            ttl, servers, database = rt.get("ttl", 0), rt.get("servers", []), rt.get("db", database)
        else:
            if self._version >= (4, 0):
                command = Command(
                    query="CALL dbms.routing.getRoutingTable($context, $database)",
                    params={"context": context, "database": database or None},
                )
                extra: dict[str, Any] = {"mode": "r", "db": "system"}
            else:
                command = Command(
                    query="CALL dbms.cluster.routing.getRoutingTable($context)", params={"context": context}
                )
                extra = {"mode": "r"}
            if bookmark_list:
                extra["bookmarks"] = bookmark_list
            stream = await self._arun_auto(command, extra, timeout)
            records = [item async for item in self._aiter_records(stream, timeout)]
            if not records:
                raise ProtocolError(f"Routing procedure on {self._address} returned no record")
            ttl, servers = records[0]["ttl"], records[0]["servers"]

        return RoutingTable.parse(
            database=database or "", servers=servers, ttl=float(ttl), refreshed_at=self._clock()
        )

    async def aclose(self) -> None:
        """Say goodbye (best effort) and close the transport."""
        if self._state is ConnectionState.DEAD:
            return
        self._state = ConnectionState.DEAD
        try:
            async with asyncio.timeout(_GOODBYE_TIMEOUT):
                await self._channel.asend(Structure(GOODBYE))
        except (TransportError, TimeoutError) as e:
            logger.debug("GOODBYE not delivered", address=self._address, error=str(e))
        finally:
            await self._transport.aclose()
        logger.info("Connection closed", address=self._address, connection_id=self._connection_id)

    def abort(self) -> None:
        """Close the transport immediately; the connection becomes DEAD."""
        self._state = ConnectionState.DEAD
        self._transport.abort()

    # -- internals -----------------------------------------------------------------

    def _assert_usable(self) -> None:
        if self._state is ConnectionState.DEAD:
            raise ConnectionDeadError(f"Connection to {self._address} is dead")
        if self._state is ConnectionState.FAILED:
            raise ResetRequiredError(self._failure)

    def _assert_tx(self, tx: TransactionHandle) -> None:
        if self._tx is None:
            raise NoTransactionError("No transaction is open on this connection")
        if tx is not self._tx:
            raise NoTransactionError(f"{tx!r} is not the open transaction of this connection")

    @asynccontextmanager
    async def _aio(self, timeout: float | None) -> AsyncIterator[None]:
        effective = timeout if timeout is not None else self._settings.command_timeout
        try:
            async with asyncio.timeout(effective):
                yield
        except TransportError as e:
            self._die(e)
            raise
        except TimeoutError as e:
            self._die(e)
            raise TransportTimeoutError(f"Operation on {self._address} timed out after {effective}s") from e

    def _die(self, cause: BaseException) -> None:
        if self._state is not ConnectionState.DEAD:
            logger.warning("Connection dead", address=self._address, error=str(cause) or type(cause).__name__)
        self._state = ConnectionState.DEAD
        self._streaming = None
        self._transport.abort()

    def _fail(self, error: ServerError) -> None:
        self._state = ConnectionState.FAILED
        self._failure = error
        self._streaming = None

    def _new_stream(self, *, in_tx: bool) -> StreamHandle:
        return StreamHandle(self, next(self._ids), self._generation, in_tx=in_tx)

    def _pull_message(self, stream: StreamHandle, n: int | None = None) -> Structure:
        if self._version < (4, 0):
            return Structure(PULL)
        extra: dict[str, Any] = {"n": n if n is not None else self._settings.fetch_size}
        if stream._qid >= 0:
            extra["qid"] = stream._qid
        return Structure(PULL, extra)

    def _discard_message(self, stream: StreamHandle) -> Structure:
        if self._version < (4, 0):
            return Structure(DISCARD)
        extra: dict[str, Any] = {"n": -1}
        if stream._qid >= 0:
            extra["qid"] = stream._qid
        return Structure(DISCARD, extra)

    async def _asend(self, *messages: Structure) -> None:
        await self._channel.asend(*messages)
        self._pending += len(messages)

    async def _areceive(self) -> Structure:
        message = await self._channel.areceive()
        if message.tag in SUMMARY_TAGS:
            self._pending -= 1
        return message

    async def _aexpect_success(self) -> dict[str, Any]:
        message = await self._areceive()
        metadata: dict[str, Any] = message.fields[0] if message.fields else {}
        if message.tag == SUCCESS:
            return metadata
        if message.tag == FAILURE:
            error = ServerError.from_metadata(metadata)
            self._fail(error)
            raise error
        raise ProtocolError(f"Unexpected response 0x{message.tag:02X} from {self._address}")

    async def _aread_run_response(self, stream: StreamHandle) -> None:
        metadata = await self._aexpect_success()
        stream._keys = tuple(metadata.get("fields", ()))
        stream._qid = int(metadata.get("qid", -1))
        stream._run_metadata = metadata
        self._streams[stream._id] = stream
        self._streaming = stream

    async def _areceive_item(self, stream: StreamHandle) -> Record | Summary | None:
        """Read one message of the in-flight PULL for `stream`; None when a batch ends with more to come."""
        message = await self._areceive()
        if message.tag == RECORD:
            return Record(stream._keys, message.fields[0])
        self._streaming = None
        metadata: dict[str, Any] = message.fields[0] if message.fields else {}
        if message.tag == SUCCESS:
            if metadata.get("has_more"):
                return None
            return self._complete(stream, metadata)
        if message.tag == FAILURE:
            error = ServerError.from_metadata(metadata)
            self._fail(error)
            raise error
        raise ProtocolError(f"Unexpected message 0x{message.tag:02X} while streaming from {self._address}")

    def _complete(self, stream: StreamHandle, metadata: dict[str, Any], *, discarded: bool = False) -> Summary:
        summary = Summary.from_metadata(
            stream._keys, stream._run_metadata, metadata, server=self._server_agent, discarded=discarded
        )
        stream._summary = summary
        self._streams.pop(stream._id, None)
        if not stream._in_tx:
            if summary.bookmark:
                self._bookmark = summary.bookmark
            self._state = ConnectionState.READY
        elif self._tx is not None:
            self._state = ConnectionState.TX_STREAMING if self._streams else ConnectionState.IN_TX
        return summary

    async def _abuffer_batch(self, stream: StreamHandle) -> None:
        while self._streaming is stream:
            item = await self._areceive_item(stream)
            if isinstance(item, Record):
                stream._buffer.append(item)

    async def _abuffer_all(self, stream: StreamHandle) -> None:
        while stream._summary is None:
            if self._streaming is not stream:
                await self._asend(self._pull_message(stream, n=-1))
                self._streaming = stream
            await self._abuffer_batch(stream)

    async def _abuffer_auto_streams(self) -> None:
        for stream in [s for s in self._streams.values() if not s._in_tx]:
            await self._abuffer_all(stream)

    async def _adiscard_open_streams(self) -> None:
        if self._streaming is not None:
            await self._abuffer_batch(self._streaming)
        for stream in list(self._streams.values()):
            await self._asend(self._discard_message(stream))
            self._complete(stream, await self._aexpect_success(), discarded=True)

    async def _aiter_records(self, stream: StreamHandle, timeout: float | None) -> AsyncIterator[Record]:
        while isinstance(item := await self.anext(stream, timeout=timeout), Record):
            yield item

    def __repr__(self) -> str:
        return f"<Connection address={self._address} id={self._connection_id} state={self._state}>"
