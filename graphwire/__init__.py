"""graphwire: asyncio driver core for Bolt graph databases.

- `create_driver` / `Driver`: managed, retried transactions with causal bookmarks
- `graphwire.infrastructure.bolt`: connections, pooling and routing
- `graphwire.resilience`: retry policy and transaction executor
"""

from .core.enums import AccessMode, HealthStatus
from .driver import Driver, create_driver
from .exceptions import (
    ConnectionDeadError,
    GraphwireError,
    InvalidStreamError,
    NoTransactionError,
    PoolClosedError,
    PoolExhaustedError,
    ResetRequiredError,
    RetryExhaustedError,
    RoutingError,
    ServerError,
    TransactionOpenError,
    TransportError,
    TransportTimeoutError,
    UnsupportedFeatureError,
    UsageError,
)
from .infrastructure.bolt import (
    Command,
    ConnectionSettings,
    DriverConfig,
    PoolSettings,
    Record,
    Result,
    RoutingSettings,
    Summary,
    Transaction,
    TxConfig,
)
from .resilience import RetryConfig, TransactionOutcome

__all__ = [
    "AccessMode",
    "Command",
    "ConnectionDeadError",
    "ConnectionSettings",
    "Driver",
    "DriverConfig",
    "GraphwireError",
    "HealthStatus",
    "InvalidStreamError",
    "NoTransactionError",
    "PoolClosedError",
    "PoolExhaustedError",
    "PoolSettings",
    "Record",
    "ResetRequiredError",
    "Result",
    "RetryConfig",
    "RetryExhaustedError",
    "RoutingError",
    "RoutingSettings",
    "ServerError",
    "Summary",
    "Transaction",
    "TransactionOpenError",
    "TransactionOutcome",
    "TransportError",
    "TransportTimeoutError",
    "TxConfig",
    "UnsupportedFeatureError",
    "UsageError",
    "create_driver",
]
