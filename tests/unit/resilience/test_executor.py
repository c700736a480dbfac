from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from unittest.mock import MagicMock

import pytest

from graphwire.core.enums import AccessMode
from graphwire.exceptions import RetryExhaustedError, ServerError, UsageError
from graphwire.infrastructure.bolt.config import PoolSettings, RoutingSettings
from graphwire.infrastructure.bolt.models import TxConfig
from graphwire.infrastructure.bolt.pool import ConnectionPool
from graphwire.infrastructure.bolt.protocol import BEGIN, ROUTE
from graphwire.infrastructure.bolt.result import Transaction
from graphwire.infrastructure.bolt.router import ClusterRouter, DirectRouter
from graphwire.resilience import RetryConfig, TransactionExecutor

ADDRESS = "core-1:7687"
CREATE = "CREATE (:Person {name: $name})"


def transient(code: str = "Neo.TransientError.Transaction.DeadlockDetected") -> ServerError:
    return ServerError(code, "try again")


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_retry_time=0.5, wait_min=0.0, wait_max=0.01, multiplier=0.001, acquisition_timeout=1.0)


@pytest.fixture
async def pool(cluster) -> AsyncIterator[ConnectionPool]:
    pool = ConnectionPool(cluster, PoolSettings(acquisition_timeout=1.0))
    yield pool
    await pool.aclose()


@pytest.fixture
def executor(pool: ConnectionPool, fast_retry: RetryConfig) -> TransactionExecutor:
    return TransactionExecutor(DirectRouter(ADDRESS), pool, fast_retry)


class TestSuccessfulExecution:
    @pytest.mark.asyncio
    async def test_commits_and_returns_value(self, executor: TransactionExecutor, cluster) -> None:
        async def work(tx: Transaction) -> str:
            await (await tx.arun(CREATE, name="Ada")).aconsume()
            return "done"

        outcome = await executor.aexecute(work)

        assert outcome.value == "done"
        assert outcome.bookmark == "bm:1"
        assert outcome.attempts == 1
        assert cluster.committed == ["Ada"]

    @pytest.mark.asyncio
    async def test_database_and_bookmarks_reach_begin(self, executor: TransactionExecutor, cluster) -> None:
        async def work(tx: Transaction) -> int:
            return (await (await tx.arun("RETURN 1 AS n")).asingle())["n"]

        await executor.aexecute(work, TxConfig(bookmarks=frozenset({"bm:9"})), database="movies")

        (begin,) = cluster.received(BEGIN)
        assert begin.fields[0] == {"bookmarks": ["bm:9"], "db": "movies"}

    @pytest.mark.asyncio
    async def test_read_mode_targets_reader(self, cluster, fast_retry: RetryConfig) -> None:
        pool = ConnectionPool(cluster, PoolSettings(acquisition_timeout=1.0))
        router = ClusterRouter(ADDRESS, pool, RoutingSettings())
        executor = TransactionExecutor(router, pool, fast_retry)

        async def work(tx: Transaction) -> str:
            return tx.connection.address

        outcome = await executor.aexecute(work, TxConfig(mode=AccessMode.READ))

        assert outcome.value == "core-2:7687"
        (begin,) = cluster.received(BEGIN, "core-2:7687")
        assert begin.fields[0]["mode"] == "r"
        await pool.aclose()


class TestRetries:
    """Retryable failures rerun the whole unit of work."""

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, executor: TransactionExecutor, cluster) -> None:
        """Verify only the final successful attempt's writes are committed.

        Arrange
        -------
        - A unit of work that writes, then fails transiently on its first two attempts

        Act
        ---
        - Execute it

        Assert
        ------
        - Three attempts were made
        - The write is committed exactly once
        - The bookmark is the one from the successful commit
        """
        calls = 0

        async def work(tx: Transaction) -> int:
            nonlocal calls
            calls += 1
            await (await tx.arun(CREATE, name="Ada")).aconsume()
            if calls < 3:
                raise transient()
            return calls

        outcome = await executor.aexecute(work)

        assert outcome.value == 3
        assert outcome.attempts == 3
        assert cluster.committed == ["Ada"]
        assert outcome.bookmark == "bm:1"

    @pytest.mark.asyncio
    async def test_before_sleep_called_per_retry(self, pool: ConnectionPool, fast_retry: RetryConfig) -> None:
        before_sleep = MagicMock()
        executor = TransactionExecutor(DirectRouter(ADDRESS), pool, fast_retry, before_sleep=before_sleep)
        calls = 0

        async def work(tx: Transaction) -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise transient()

        await executor.aexecute(work)

        before_sleep.assert_called_once()

    @pytest.mark.asyncio
    async def test_budget_exhaustion_wraps_last_error(self, pool: ConnectionPool) -> None:
        executor = TransactionExecutor(
            DirectRouter(ADDRESS), pool, RetryConfig(max_retry_time=0.05, wait_min=0.0, wait_max=0.005)
        )
        calls = 0

        async def work(tx: Transaction) -> None:
            nonlocal calls
            calls += 1
            raise transient()

        with pytest.raises(RetryExhaustedError) as exc_info:
            await executor.aexecute(work)

        assert isinstance(exc_info.value.last_error, ServerError)
        assert exc_info.value.attempts == calls
        assert calls > 1

    @pytest.mark.asyncio
    async def test_broken_connection_is_replaced(self, executor: TransactionExecutor, cluster) -> None:
        calls = 0

        async def work(tx: Transaction) -> int:
            nonlocal calls
            calls += 1
            if calls == 1:
                cluster.sessions[ADDRESS][-1].sever()
            return (await (await tx.arun("RETURN 7 AS n")).asingle())["n"]

        outcome = await executor.aexecute(work)

        assert outcome.value == 7
        assert outcome.attempts == 2
        assert len(cluster.sessions[ADDRESS]) == 2

    @pytest.mark.asyncio
    async def test_not_a_leader_refreshes_routing(self, cluster, fast_retry: RetryConfig) -> None:
        pool = ConnectionPool(cluster, PoolSettings(acquisition_timeout=1.0))
        router = ClusterRouter(ADDRESS, pool, RoutingSettings())
        executor = TransactionExecutor(router, pool, fast_retry)
        calls = 0

        async def work(tx: Transaction) -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ServerError("Neo.ClientError.Cluster.NotALeader", "leader moved")

        outcome = await executor.aexecute(work)

        assert outcome.attempts == 2
        assert len(cluster.received(ROUTE)) == 2
        await pool.aclose()


class TestNonRetryable:
    """Permanent failures propagate unchanged after a single attempt."""

    @pytest.mark.asyncio
    async def test_server_client_error(self, executor: TransactionExecutor, pool: ConnectionPool) -> None:
        calls = 0

        async def work(tx: Transaction) -> None:
            nonlocal calls
            calls += 1
            await tx.arun("THIS IS NOT CYPHER")

        with pytest.raises(ServerError, match="SyntaxError"):
            await executor.aexecute(work)

        assert calls == 1
        (stats,) = pool.stats()
        assert stats.idle == 1

    @pytest.mark.asyncio
    async def test_usage_error(self, executor: TransactionExecutor) -> None:
        calls = 0

        async def work(tx: Transaction) -> None:
            nonlocal calls
            calls += 1
            await (await tx.arun("MATCH (p:Person {name: $name}) RETURN p.name AS name", name="x")).asingle()

        with pytest.raises(UsageError, match="none"):
            await executor.aexecute(work)

        assert calls == 1

    @pytest.mark.asyncio
    async def test_application_error(self, executor: TransactionExecutor, cluster) -> None:
        async def work(tx: Transaction) -> None:
            await (await tx.arun(CREATE, name="Ada")).aconsume()
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await executor.aexecute(work)

        assert cluster.committed == []

    @pytest.mark.asyncio
    async def test_cancellation_aborts_connection(self, executor: TransactionExecutor, pool: ConnectionPool) -> None:
        started = asyncio.Event()

        async def work(tx: Transaction) -> None:
            started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(executor.aexecute(work))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        (stats,) = pool.stats()
        assert stats.size == 0
