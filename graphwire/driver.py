"""Driver facade wiring router, pool and executor together.

Usage
-----
>>> config = DriverConfig(uri="neo4j://core-1:7687", connection=ConnectionSettings(password=SecretStr("pw")))
>>> async with create_driver(config) as driver:
...     async def add_person(tx: Transaction) -> None:
...         await (await tx.arun("CREATE (:Person {name: $name})", name="Alice")).aconsume()
...     await driver.aexecute_write(add_person)
...     count = await driver.aexecute_read(count_people)
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Self

from .core.enums import AccessMode
from .exceptions import GraphwireError
from .infrastructure.bolt.connection import Connection
from .infrastructure.bolt.health import HealthCheckResult
from .infrastructure.bolt.models import Command, Summary, TxConfig
from .infrastructure.bolt.pool import ConnectionPool
from .infrastructure.bolt.router import ClusterRouter, DirectRouter
from .logger import get_logger
from .resilience.executor import TransactionExecutor

if TYPE_CHECKING:
    from types import TracebackType

    from structlog.stdlib import BoundLogger

    from .infrastructure.bolt.config import DriverConfig
    from .infrastructure.bolt.pool import Connector
    from .infrastructure.bolt.router import Router
    from .resilience.types import UnitOfWork

logger: BoundLogger = get_logger(__name__)


class Driver:
    """Entry point for running managed transactions.

    The driver remembers the bookmark of the last committed transaction and
    passes it to the next one, so each unit of work observes the writes of
    the previous one even when routed to a different server.
    """

    __slots__ = ("_bookmark", "_closed", "_config", "_executor", "_pool", "_router")

    def __init__(self, config: DriverConfig, router: Router, pool: ConnectionPool) -> None:
        self._config = config
        self._router = router
        self._pool = pool
        self._executor = TransactionExecutor(router, pool, config.retry, timeout=config.connection.command_timeout)
        self._bookmark = ""
        self._closed = False

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None and exc_val is not None:
            logger.error(
                "Driver context manager exiting with exception",
                exc_type=exc_type.__name__,
                exc_val=str(exc_val),
            )
        await self.aclose()

    @property
    def config(self) -> DriverConfig:
        return self._config

    @property
    def router(self) -> Router:
        return self._router

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def bookmark(self) -> str:
        return self._bookmark

    async def aexecute(self, work: UnitOfWork, tx_config: TxConfig | None = None, database: str = "") -> Any:
        """Run `work` in a retried transaction and return its value.

        `work` may run several times; it must be safe to repeat.
        """
        tx_config = tx_config or TxConfig()
        if self._bookmark:
            tx_config = tx_config.with_bookmarks(self._bookmark)
        outcome = await self._executor.aexecute(work, tx_config, database)
        if outcome.bookmark:
            self._bookmark = outcome.bookmark
        return outcome.value

    async def aexecute_read(self, work: UnitOfWork, database: str = "", **tx_options: Any) -> Any:
        return await self.aexecute(work, TxConfig(mode=AccessMode.READ, **tx_options), database)

    async def aexecute_write(self, work: UnitOfWork, database: str = "", **tx_options: Any) -> Any:
        return await self.aexecute(work, TxConfig(mode=AccessMode.WRITE, **tx_options), database)

    async def ahealth_check(self, database: str = "") -> HealthCheckResult:
        """Run ``RETURN 1`` on a reader of `database` and report latency and pool usage."""
        try:
            address = (await self._router.areaders(database))[0]
            start = time.perf_counter()
            async with self._pool.aconnection(address) as conn:
                if database:
                    conn.select_database(database)
                stream = await conn.arun(Command(query="RETURN 1 AS n"), TxConfig(mode=AccessMode.READ))
                while not isinstance(await conn.anext(stream), Summary):
                    pass
                latency_s = time.perf_counter() - start
                version = conn.protocol_version
                server_version = conn.server_version
        except GraphwireError as e:
            return HealthCheckResult.unhealthy(error=str(e), pools=self._pool.stats())

        return HealthCheckResult.healthy(
            address=address,
            server_version=server_version,
            protocol_version=f"{version[0]}.{version[1]}",
            latency_s=latency_s,
            pools=self._pool.stats(),
        )

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._router.cleanup()
        await self._pool.aclose()
        logger.info("Driver closed", uri=self._config.uri)


def create_driver(config: DriverConfig, *, connector: Connector | None = None) -> Driver:
    """Build a driver for `config`.

    ``bolt://`` URIs talk to the one server named; ``neo4j://`` URIs discover
    the cluster through it. A ``+s`` suffix enables TLS.
    """
    if connector is None:
        ssl_context = config.build_ssl_context()
        routing_context = dict(config.routing.context) if config.routing_enabled else None

        async def connector(address: str) -> Connection:
            return await Connection.aopen(
                address, config.connection, ssl_context=ssl_context, routing_context=routing_context
            )

    pool = ConnectionPool(connector, config.pool)
    router: Router
    if config.routing_enabled:
        router = ClusterRouter(config.address, pool, config.routing)
    else:
        router = DirectRouter(config.address)
    logger.info("Driver created", uri=config.uri, routing=config.routing_enabled, encrypted=config.encrypted)
    return Driver(config, router, pool)
