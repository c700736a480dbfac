"""Retrying transaction executor.

Each attempt resolves an address for the access mode, borrows a connection,
begins a transaction, runs the unit of work and commits. Failures are
classified by `graphwire.resilience.classification`; retryable ones wait with
exponential backoff and full jitter before the whole unit of work runs again.

Units of work must be safe to repeat: nothing they do before commit may have
effects outside the transaction.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_delay,
    wait_random_exponential,
)

from ..core.enums import AccessMode
from ..exceptions import GraphwireError, RetryExhaustedError, TransportError
from ..infrastructure.bolt.enums import ConnectionState
from ..infrastructure.bolt.models import TxConfig
from ..infrastructure.bolt.result import Transaction
from ..logger import bound_context, get_logger
from .classification import invalidates_routing, is_retryable

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from ..infrastructure.bolt.connection import Connection, TransactionHandle
    from ..infrastructure.bolt.pool import ConnectionPool
    from ..infrastructure.bolt.router import Router
    from .config import RetryConfig
    from .types import BeforeSleepCallback, UnitOfWork

logger: BoundLogger = get_logger(__name__)


class TransactionOutcome(BaseModel):
    """Value returned by the unit of work and the bookmark of its commit."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    value: Any
    bookmark: str
    attempts: int = 1


def log_before_sleep(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome is not None else None
    logger.warning(
        "Transaction attempt failed, retrying",
        attempt=retry_state.attempt_number,
        sleep_s=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
        error_type=type(error).__name__ if error else None,
        error=str(error) if error else None,
    )


class TransactionExecutor:
    """Run units of work in managed, retried transactions.

    Examples
    --------
    >>> executor = TransactionExecutor(router, pool, RetryConfig(max_retry_time=15))
    >>> async def work(tx: Transaction) -> int:
    ...     result = await tx.arun("MATCH (n) RETURN count(n) AS c")
    ...     return (await result.asingle())["c"]
    >>> outcome = await executor.aexecute(work, TxConfig(mode=AccessMode.READ))
    >>> outcome.value, outcome.bookmark
    """

    __slots__ = ("_before_sleep", "_config", "_pool", "_router", "_timeout")

    def __init__(
        self,
        router: Router,
        pool: ConnectionPool,
        config: RetryConfig,
        *,
        before_sleep: BeforeSleepCallback | None = None,
        timeout: float | None = None,
    ) -> None:
        self._router = router
        self._pool = pool
        self._config = config
        self._before_sleep = before_sleep or log_before_sleep
        self._timeout = timeout

    async def aexecute(
        self,
        work: UnitOfWork,
        tx_config: TxConfig | None = None,
        database: str = "",
    ) -> TransactionOutcome:
        """Run `work` until it commits, fails permanently or the retry budget is spent.

        Raises
        ------
        RetryExhaustedError
            Retryable failures continued past ``max_retry_time``; wraps the last one.
        GraphwireError
            Any non-retryable failure, unchanged.
        """
        tx_config = tx_config or TxConfig()
        retrying = AsyncRetrying(
            stop=stop_after_delay(self._config.max_retry_time),
            wait=wait_random_exponential(
                multiplier=self._config.multiplier,
                min=self._config.wait_min,
                max=self._config.wait_max,
                exp_base=self._config.exp_base,
            ),
            retry=retry_if_exception(is_retryable),
            before_sleep=self._before_sleep,
            reraise=False,
        )
        try:
            with bound_context(database=database or "<default>", mode=tx_config.mode.value):
                async for attempt in retrying:
                    with attempt:
                        value, bookmark = await self._aattempt(work, tx_config, database)
                        return TransactionOutcome(
                            value=value, bookmark=bookmark, attempts=attempt.retry_state.attempt_number
                        )
        except RetryError as e:
            last_error = e.last_attempt.exception()
            assert last_error is not None
            logger.error(
                "Transaction retries exhausted",
                attempts=e.last_attempt.attempt_number,
                error_type=type(last_error).__name__,
                error=str(last_error),
            )
            raise RetryExhaustedError(last_error, e.last_attempt.attempt_number) from last_error
        raise AssertionError("unreachable")

    async def _aattempt(self, work: UnitOfWork, tx_config: TxConfig, database: str) -> tuple[Any, str]:
        if tx_config.mode is AccessMode.READ:
            addresses = await self._router.areaders(database)
        else:
            addresses = await self._router.awriters(database)
        address = addresses[0]

        conn = await self._pool.aacquire(address, timeout=self._config.acquisition_timeout)
        tx: TransactionHandle | None = None
        try:
            if database:
                conn.select_database(database)
            tx = await conn.abegin(tx_config, timeout=self._timeout)
            value = await work(Transaction(conn, tx, timeout=self._timeout))
            bookmark = await conn.acommit(tx, timeout=self._timeout)
        except Exception as e:
            await self._arollback_quietly(conn, tx)
            await self._ahandle_failure(e, address, database)
            raise
        except BaseException:
            # Cancelled mid-request: the session can no longer be trusted.
            conn.abort()
            raise
        finally:
            await self._pool.arelease(conn)
        return value, bookmark

    async def _arollback_quietly(self, conn: Connection, tx: TransactionHandle | None) -> None:
        if tx is None or conn.state not in (ConnectionState.IN_TX, ConnectionState.TX_STREAMING):
            return
        try:
            await conn.arollback(tx, timeout=self._timeout)
        except GraphwireError as e:
            logger.warning("Rollback after failure did not complete", address=conn.address, error=str(e))

    async def _ahandle_failure(self, error: Exception, address: str, database: str) -> None:
        if invalidates_routing(error):
            self._router.invalidate(database)
        if isinstance(error, TransportError):
            await self._pool.acleanup(address)
