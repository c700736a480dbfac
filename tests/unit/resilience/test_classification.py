from __future__ import annotations

import pytest

from graphwire.exceptions import (
    ConnectionDeadError,
    InvalidStreamError,
    PoolClosedError,
    PoolExhaustedError,
    ResetRequiredError,
    RoutingError,
    ServerError,
    TransportError,
    TransportTimeoutError,
    UsageError,
)
from graphwire.resilience import invalidates_routing, is_retryable

DEADLOCK = ServerError("Neo.TransientError.Transaction.DeadlockDetected", "deadlock")
NOT_A_LEADER = ServerError("Neo.ClientError.Cluster.NotALeader", "not leader")
SYNTAX = ServerError("Neo.ClientError.Statement.SyntaxError", "bad")


class TestIsRetryable:
    @pytest.mark.parametrize(
        "error",
        [
            DEADLOCK,
            NOT_A_LEADER,
            ServerError("Neo.ClientError.General.ForbiddenOnReadOnlyDatabase", "read only"),
            ServerError("Neo.TransientError.General.DatabaseUnavailable", "starting"),
            TransportError("reset by peer"),
            TransportTimeoutError("timed out"),
            ConnectionDeadError("dead"),
            PoolExhaustedError("full"),
            RoutingError("no routers"),
            ResetRequiredError(DEADLOCK),
        ],
    )
    def test_retryable(self, error: Exception) -> None:
        assert is_retryable(error)

    @pytest.mark.parametrize(
        "error",
        [
            SYNTAX,
            ServerError("Neo.TransientError.Transaction.Terminated", "terminated"),
            ServerError("Neo.TransientError.Transaction.LockClientStopped", "stopped"),
            ServerError("Neo.DatabaseError.General.UnknownError", "boom"),
            UsageError("misuse"),
            InvalidStreamError("stale handle"),
            ResetRequiredError(SYNTAX),
            ResetRequiredError(None),
            PoolClosedError("closed"),
            ValueError("user code"),
        ],
    )
    def test_not_retryable(self, error: Exception) -> None:
        assert not is_retryable(error)


class TestInvalidatesRouting:
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (NOT_A_LEADER, True),
            (ServerError("Neo.TransientError.General.DatabaseUnavailable", "starting"), True),
            (TransportError("reset by peer"), True),
            (DEADLOCK, False),
            (SYNTAX, False),
            (PoolExhaustedError("full"), False),
        ],
    )
    def test_invalidates_routing(self, error: Exception, expected: bool) -> None:
        assert invalidates_routing(error) is expected
