"""Decide how the retry engine treats a failure.

- `is_retryable`: run the whole unit of work again after a backoff
- `invalidates_routing`: the targeted address may no longer serve its role
"""

from __future__ import annotations

from ..exceptions import (
    PoolExhaustedError,
    ResetRequiredError,
    RoutingError,
    ServerError,
    TransportError,
    UsageError,
)


def is_retryable(error: BaseException) -> bool:
    match error:
        case ServerError():
            return error.is_retryable()
        case ResetRequiredError(cause=ServerError() as cause):
            # Work swallowed a server error and kept going on the failed session.
            return cause.is_retryable()
        case UsageError():
            return False
        case TransportError() | PoolExhaustedError() | RoutingError():
            return True
        case _:
            return False


def invalidates_routing(error: BaseException) -> bool:
    match error:
        case ServerError():
            return error.invalidates_routing
        case TransportError():
            return True
        case _:
            return False
