"""Retry policy and the transaction executor built on it."""

from .classification import invalidates_routing, is_retryable
from .config import RetryConfig
from .executor import TransactionExecutor, TransactionOutcome, log_before_sleep

__all__ = [
    "RetryConfig",
    "TransactionExecutor",
    "TransactionOutcome",
    "invalidates_routing",
    "is_retryable",
    "log_before_sleep",
]
