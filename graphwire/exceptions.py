"""Error taxonomy for the driver core.

Every error raised by the package derives from `GraphwireError`:

- `ServerError`: the server rejected a request. Carries the server code and
  the classification parsed from it.
- `TransportError`: the byte stream broke (connection lost, timeout,
  handshake or framing failure). A connection that observes one is dead.
- `UsageError`: the caller violated the session state machine.
- `RoutingError`, `PoolExhaustedError`, `PoolClosedError`, `RetryExhaustedError`.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorClassification(StrEnum):
    CLIENT_ERROR = "ClientError"
    TRANSIENT_ERROR = "TransientError"
    DATABASE_ERROR = "DatabaseError"
    UNKNOWN = "Unknown"


class GraphwireError(Exception):
    """Base class for all driver errors."""


class ServerError(GraphwireError):
    """The server reported a FAILURE for a request.

    Parameters
    ----------
    code
        Server status code, e.g. ``Neo.ClientError.Statement.SyntaxError``.
    message
        Human readable server message.
    """

    # Transient codes that really mean "the client asked to stop".
    _CLIENT_TERMINATED_CODES = frozenset(
        {
            "Neo.TransientError.Transaction.Terminated",
            "Neo.TransientError.Transaction.LockClientStopped",
        }
    )
    _ROUTING_CODES = frozenset(
        {
            "Neo.ClientError.Cluster.NotALeader",
            "Neo.ClientError.General.ForbiddenOnReadOnlyDatabase",
            "Neo.TransientError.General.DatabaseUnavailable",
        }
    )
    _FATAL_DISCOVERY_CODES = frozenset(
        {
            "Neo.ClientError.Database.DatabaseNotFound",
            "Neo.ClientError.Transaction.InvalidBookmark",
            "Neo.ClientError.Transaction.InvalidBookmarkMixture",
            "Neo.ClientError.Statement.TypeError",
            "Neo.ClientError.Statement.ArgumentError",
            "Neo.ClientError.Request.Invalid",
        }
    )

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any]) -> ServerError:
        return cls(
            code=str(metadata.get("code", "Neo.DatabaseError.General.UnknownError")),
            message=str(metadata.get("message", "An unknown error occurred")),
        )

    @property
    def classification(self) -> ErrorClassification:
        parts = self.code.split(".")
        if len(parts) < 2:
            return ErrorClassification.UNKNOWN
        try:
            return ErrorClassification(parts[1])
        except ValueError:
            return ErrorClassification.UNKNOWN

    def is_retryable(self) -> bool:
        if self.code in self._CLIENT_TERMINATED_CODES:
            return False
        if self.code in self._ROUTING_CODES:
            return True
        return self.classification is ErrorClassification.TRANSIENT_ERROR

    @property
    def invalidates_routing(self) -> bool:
        """Whether the targeted address no longer serves the requested role."""
        return self.code in self._ROUTING_CODES

    @property
    def is_fatal_during_discovery(self) -> bool:
        """Errors caused by the client; asking another router will not help."""
        if self.code in self._FATAL_DISCOVERY_CODES:
            return True
        return self.code.startswith("Neo.ClientError.Security.") and (
            self.code != "Neo.ClientError.Security.AuthorizationExpired"
        )


class TransportError(GraphwireError):
    """The underlying byte stream failed."""


class TransportTimeoutError(TransportError, TimeoutError):
    """A network operation did not complete before its deadline."""


class HandshakeError(TransportError):
    """Protocol version negotiation or authentication failed."""


class ProtocolError(TransportError):
    """The peer sent something the protocol does not allow."""


class ConnectionDeadError(TransportError):
    """The connection's transport has been observed broken or closed."""


class UsageError(GraphwireError):
    """The session state machine contract was violated by the caller."""


class TransactionOpenError(UsageError):
    """Auto-commit work or a new transaction was requested while one is open."""


class NoTransactionError(UsageError):
    """Commit, rollback or a transactional run without a matching open transaction."""


class InvalidStreamError(UsageError):
    """The stream handle does not belong to this connection or was discarded."""


class ResetRequiredError(UsageError):
    """The connection is FAILED and must be reset before further work."""

    def __init__(self, cause: ServerError | None) -> None:
        super().__init__(f"Connection is in a failed state and must be reset (cause: {cause})")
        self.cause = cause


class UnsupportedFeatureError(UsageError):
    """The negotiated protocol version lacks the requested capability."""


class RoutingError(GraphwireError):
    """No reachable router could supply a routing table."""


class PoolExhaustedError(GraphwireError):
    """No connection became available before the acquisition deadline."""


class PoolClosedError(GraphwireError):
    """The pool has been closed."""


class RetryExhaustedError(GraphwireError):
    """Retry budget exhausted; `last_error` holds the most recent failure."""

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(f"Transaction failed after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts
