"""Bolt protocol client primitives.

This module provides:

- `Connection`: one authenticated session and its state machine
- `ConnectionPool`: bounded per-address connection pools
- `DirectRouter` / `ClusterRouter`: address resolution by access mode
- `Result` / `Transaction`: cursor and transaction objects for units of work

Usage
-----
Raw connection::

    conn = await Connection.aopen("localhost:7687", ConnectionSettings(password=SecretStr("pw")))
    stream = await conn.arun(Command(query="RETURN 1 AS n"))
    record = await conn.anext(stream)

Pooled, routed::

    pool = ConnectionPool(connector, PoolSettings())
    router = ClusterRouter("core-1:7687", pool, RoutingSettings())
    async with pool.aconnection((await router.awriters())[0]) as conn:
        ...
"""

from .config import ConnectionSettings, DriverConfig, PoolSettings, RoutingSettings
from .connection import Connection, StreamHandle, TransactionHandle
from .enums import ConnectionState
from .health import HealthCheckResult, PoolStats
from .models import Command, Record, Summary, TxConfig
from .packstream import PackStreamCodec, PackStreamError, Structure, ValueCodec
from .pool import ConnectionPool, Connector
from .result import Result, Transaction
from .router import ClusterRouter, DirectRouter, Router
from .routing import RoutingTable
from .transport import AsyncioTransport, Transport

__all__ = [
    "AsyncioTransport",
    "ClusterRouter",
    "Command",
    "Connection",
    "ConnectionPool",
    "ConnectionSettings",
    "ConnectionState",
    "Connector",
    "DirectRouter",
    "DriverConfig",
    "HealthCheckResult",
    "PackStreamCodec",
    "PackStreamError",
    "PoolSettings",
    "PoolStats",
    "Record",
    "Result",
    "Router",
    "RoutingSettings",
    "RoutingTable",
    "StreamHandle",
    "Structure",
    "Summary",
    "Transaction",
    "TransactionHandle",
    "Transport",
    "TxConfig",
    "ValueCodec",
]
