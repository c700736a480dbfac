"""Configuration models for Bolt connections, pooling and routing.

- `ConnectionSettings`: authentication, timeouts and fetch size per connection
- `PoolSettings`: per-address capacity and staleness limits
- `RoutingSettings`: cluster discovery behaviour
- `DriverConfig`: everything above plus the URI and retry policy, loadable
  from ``GRAPHWIRE_*`` environment variables
"""

from __future__ import annotations

import ssl as ssl_module
from typing import Any, Literal
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, SecretStr, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ...resilience.config import RetryConfig
from .transport import DEFAULT_PORT

type UriScheme = Literal["bolt", "bolt+s", "neo4j", "neo4j+s"]

_SCHEMES: frozenset[str] = frozenset({"bolt", "bolt+s", "neo4j", "neo4j+s"})


class ConnectionSettings(BaseModel):
    """Settings applied to every physical connection."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    user: str = Field(default="neo4j", description="Principal for basic authentication")
    password: SecretStr = Field(default=SecretStr(""), description="Credentials for basic authentication")
    user_agent: str = Field(default="graphwire/0.1", min_length=1, description="Client identity sent in HELLO")
    connect_timeout: float = Field(default=30.0, gt=0, le=600.0, description="TCP connect + handshake timeout (s)")
    command_timeout: float | None = Field(
        default=None, gt=0, description="Default timeout for each network operation (None = no limit)"
    )
    fetch_size: int = Field(default=1000, ge=1, le=1_000_000, description="Records requested per PULL")
    ssl_ca_certs: str | None = Field(default=None, description="CA bundle for TLS verification")

    def auth_token(self) -> dict[str, Any]:
        return {
            "scheme": "basic",
            "principal": self.user,
            "credentials": self.password.get_secret_value(),
        }


class PoolSettings(BaseModel):
    """Connection pool settings, applied per server address."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_size: int = Field(default=100, ge=1, le=10_000, description="Maximum connections per address")
    acquisition_timeout: float = Field(default=60.0, gt=0, le=3600.0, description="Acquire deadline (s)")
    max_idle_time: float | None = Field(
        default=300.0, gt=0, description="Discard idle connections older than this (s, None = never)"
    )
    max_lifetime: float | None = Field(
        default=3600.0, gt=0, description="Discard connections older than this (s, None = never)"
    )


class RoutingSettings(BaseModel):
    """Cluster discovery settings."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    context: dict[str, str] = Field(default_factory=dict, description="Routing context sent to the server")
    min_ttl: float = Field(default=0.0, ge=0, description="Lower bound applied to server supplied TTLs (s)")
    refresh_timeout: float = Field(default=15.0, gt=0, description="Deadline for one routing table refresh (s)")


class DriverConfig(BaseSettings):
    """Complete driver configuration.

    Examples
    --------
    >>> config = DriverConfig(
    ...     uri="neo4j://core-1.graph.internal:7687",
    ...     connection=ConnectionSettings(user="neo4j", password=SecretStr("secret")),
    ...     pool=PoolSettings(max_size=50),
    ... )
    >>> async with create_driver(config) as driver:
    ...     await driver.aexecute_read(work)

    Or from the environment::

        GRAPHWIRE_URI=neo4j+s://graph.example.com
        GRAPHWIRE_CONNECTION__USER=reader
        GRAPHWIRE_POOL__MAX_SIZE=20
    """

    model_config = SettingsConfigDict(
        env_prefix="GRAPHWIRE_",
        env_nested_delimiter="__",
        extra="forbid",
        frozen=True,
    )

    uri: str = Field(default=f"bolt://localhost:{DEFAULT_PORT}")
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    pool: PoolSettings = Field(default_factory=PoolSettings)
    routing: RoutingSettings = Field(default_factory=RoutingSettings)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("uri")
    @classmethod
    def _check_uri(cls, value: str) -> str:
        parts = urlsplit(value)
        if parts.scheme not in _SCHEMES:
            raise ValueError(f"Unsupported URI scheme {parts.scheme!r}; expected one of {sorted(_SCHEMES)}")
        if not parts.hostname:
            raise ValueError(f"URI {value!r} has no host")
        return value

    @computed_field  # type: ignore[prop-decorator]
    @property
    def address(self) -> str:
        parts = urlsplit(self.uri)
        host = f"[{parts.hostname}]" if parts.hostname and ":" in parts.hostname else parts.hostname
        return f"{host}:{parts.port or DEFAULT_PORT}"

    @property
    def routing_enabled(self) -> bool:
        return urlsplit(self.uri).scheme.startswith("neo4j")

    @property
    def encrypted(self) -> bool:
        return urlsplit(self.uri).scheme.endswith("+s")

    def build_ssl_context(self) -> ssl_module.SSLContext | None:
        if not self.encrypted:
            return None
        context = ssl_module.create_default_context()
        if self.connection.ssl_ca_certs:
            context.load_verify_locations(self.connection.ssl_ca_certs)
        return context
