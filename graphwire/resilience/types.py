from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from tenacity import RetryCallState

if TYPE_CHECKING:
    from ..infrastructure.bolt.result import Transaction

type BeforeSleepCallback = Callable[[RetryCallState], Awaitable[None] | None]
type UnitOfWork = Callable[[Transaction], Awaitable[Any]]
