from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from datetime import timedelta
from typing import Any, overload

from pydantic import BaseModel, ConfigDict, Field

from ...core.enums import AccessMode


class Command(BaseModel):
    """A query with named parameters and statement metadata."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    query: str = Field(min_length=1, description="Query text")
    params: dict[str, Any] = Field(default_factory=dict, description="Named parameters")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Statement metadata")


class TxConfig(BaseModel):
    """How a transaction (or auto-commit statement) should be started."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: AccessMode = Field(default=AccessMode.WRITE, description="Read or write intent")
    timeout: timedelta | None = Field(default=None, description="Server side transaction timeout")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Transaction metadata")
    bookmarks: frozenset[str] = Field(default_factory=frozenset, description="Bookmarks to wait for")

    def with_bookmarks(self, *bookmarks: str) -> TxConfig:
        return self.model_copy(update={"bookmarks": self.bookmarks | {b for b in bookmarks if b}})

    def to_extra(self, database: str = "") -> dict[str, Any]:
        """Build the BEGIN/RUN extra map sent on the wire."""
        extra: dict[str, Any] = {}
        if self.bookmarks:
            extra["bookmarks"] = sorted(self.bookmarks)
        if self.timeout is not None:
            extra["tx_timeout"] = int(self.timeout.total_seconds() * 1000)
        if self.metadata:
            extra["tx_metadata"] = dict(self.metadata)
        if self.mode is AccessMode.READ:
            extra["mode"] = "r"
        if database:
            extra["db"] = database
        return extra


class Summary(BaseModel):
    """Terminal element of every result stream."""

    model_config = ConfigDict(frozen=True)

    keys: tuple[str, ...] = Field(default=())
    query_type: str | None = Field(default=None, description="r, w, rw or s")
    bookmark: str | None = Field(default=None)
    database: str | None = Field(default=None)
    counters: dict[str, Any] = Field(default_factory=dict)
    result_available_after: int | None = Field(default=None, description="Milliseconds until first record")
    result_consumed_after: int | None = Field(default=None, description="Milliseconds until last record")
    server: str = Field(default="")
    discarded: bool = Field(default=False, description="Remaining records were discarded, not pulled")

    @classmethod
    def from_metadata(
        cls,
        keys: Sequence[str],
        run_metadata: Mapping[str, Any],
        metadata: Mapping[str, Any],
        *,
        server: str = "",
        discarded: bool = False,
    ) -> Summary:
        return cls(
            keys=tuple(keys),
            query_type=metadata.get("type"),
            bookmark=metadata.get("bookmark"),
            database=metadata.get("db"),
            counters=dict(metadata.get("stats") or {}),
            result_available_after=run_metadata.get("t_first"),
            result_consumed_after=metadata.get("t_last"),
            server=server,
            discarded=discarded,
        )


class Record:
    """One row of a result: values addressable by position or key."""

    __slots__ = ("_keys", "_values")

    def __init__(self, keys: tuple[str, ...], values: Sequence[Any]) -> None:
        self._keys = keys
        self._values = tuple(values)

    @property
    def keys(self) -> tuple[str, ...]:
        return self._keys

    @property
    def values(self) -> tuple[Any, ...]:
        return self._values

    @overload
    def __getitem__(self, key: int) -> Any: ...

    @overload
    def __getitem__(self, key: str) -> Any: ...

    def __getitem__(self, key: int | str) -> Any:
        if isinstance(key, str):
            try:
                return self._values[self._keys.index(key)]
            except ValueError:
                raise KeyError(key) from None
        return self._values[key]

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Record):
            return NotImplemented
        return self._keys == other._keys and self._values == other._values

    def __hash__(self) -> int:
        return hash((self._keys, self._values))

    def __repr__(self) -> str:
        fields = " ".join(f"{k}={v!r}" for k, v in zip(self._keys, self._values, strict=True))
        return f"<Record {fields}>"

    def data(self) -> dict[str, Any]:
        return dict(zip(self._keys, self._values, strict=True))
