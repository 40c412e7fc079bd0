from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
IAM_CREDENTIALS_ENDPOINT = "iamcredentials.googleapis.com:443"

# IAM Credentials refuses lifetimes above 12h even with the org policy relaxed.
MAX_TOKEN_LIFETIME = timedelta(hours=12)


class Settings(BaseSettings):
    """
    Program configuration loaded from environment variables.

    Prefix: MEMORYSTORE_IAM_

    Examples:
      MEMORYSTORE_IAM_SERVICE_ACCOUNT=redis-client@my-project.iam.gserviceaccount.com
      MEMORYSTORE_IAM_TOKEN_LIFETIME=PT30M
      MEMORYSTORE_IAM_REDIS_HOST=10.0.0.3

    Command-line flags are applied on top by passing them as keyword
    arguments (see load_settings).
    """

    model_config = SettingsConfigDict(
        env_prefix="MEMORYSTORE_IAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # General
    env: Literal["dev", "staging", "prod"] = Field(
        "dev",
        description="Deployment environment name.",
    )
    app_name: str = Field(
        "memorystore-iam-redis",
        description="Name attached to every log record.",
    )
    log_level: str = Field(
        "INFO",
        description="Base log level (DEBUG, INFO, WARNING, ERROR).",
    )
    log_format: Literal["json", "console"] = Field(
        "json",
        description="Render logs as JSON lines or as human-readable console output.",
    )
    metrics_port: int | None = Field(
        default=None,
        description="Serve Prometheus metrics on this port; disabled when unset.",
    )

    # Identity exchange
    service_account: str = Field(
        "example-service-account@example-project.iam.gserviceaccount.com",
        description="Service account email (or full resource name) whose token is minted.",
    )
    token_scopes: list[str] = Field(
        default_factory=lambda: [CLOUD_PLATFORM_SCOPE],
        description="OAuth scopes requested for the access token.",
    )
    token_lifetime: timedelta = Field(
        timedelta(hours=1),
        description="Requested lifetime of each access token.",
    )
    token_delegates: list[str] = Field(
        default_factory=list,
        description="Optional delegation chain of service accounts.",
    )
    iam_endpoint: str = Field(
        IAM_CREDENTIALS_ENDPOINT,
        description="host:port of the IAM Credentials API.",
    )
    token_exchange_timeout: float = Field(
        10.0,
        description="Per-attempt timeout in seconds for GenerateAccessToken.",
    )
    token_exchange_deadline: float = Field(
        30.0,
        description="Overall deadline in seconds, retries included, for one token exchange.",
    )

    # Credential caching
    credential_mode: Literal["per-connection", "background-refresh"] = Field(
        "per-connection",
        description=(
            "per-connection mints a token for every connection authentication; "
            "background-refresh serves a cached token refreshed by a worker thread."
        ),
    )
    token_refresh_interval: timedelta = Field(
        timedelta(minutes=5),
        description="Age at which the background worker replaces the cached token.",
    )
    token_refresh_check_interval: timedelta = Field(
        timedelta(seconds=10),
        description="How often the background worker wakes up to check the token age.",
    )

    # Redis
    redis_host: str = Field(
        "10.142.0.12",
        description="Redis endpoint host or IP.",
    )
    redis_port: int = Field(
        6379,
        description="Redis endpoint port.",
    )
    redis_protocol: int = Field(
        2,
        description="RESP version. 2 authenticates with AUTH, 3 with HELLO 3 AUTH.",
    )
    cluster: bool = Field(
        False,
        description="Treat redis_host as a cluster discovery endpoint and follow slot redirections.",
    )
    ca_file: Path = Field(
        Path("server-ca.pem"),
        description="PEM bundle of certificate authorities trusted for the Redis endpoint.",
    )
    ssl_check_hostname: bool = Field(
        True,
        description="Verify that the server certificate matches redis_host.",
    )
    pool_max_connections: int = Field(
        10,
        description="Maximum connections in the pool (applies per node).",
    )
    pool_min_idle: int = Field(
        1,
        description="Connections opened up front and kept available.",
    )
    pool_idle_timeout: float | None = Field(
        60.0,
        description="Seconds after which an idle pooled connection is re-established.",
    )
    pool_timeout: float = Field(
        5.0,
        description="Seconds to wait for a free pooled connection.",
    )
    socket_timeout: float = Field(
        5.0,
        description="Socket read/write timeout in seconds.",
    )
    socket_connect_timeout: float = Field(
        5.0,
        description="Socket connect timeout in seconds.",
    )
    command_retries: int = Field(
        3,
        description="Retries for commands failing with connection or timeout errors.",
    )

    # Round trip
    key: str = Field(
        "key",
        description="Key written and read back by the driver.",
    )
    value: str = Field(
        "value",
        description="Value written by the driver.",
    )
    verify_keys: int = Field(
        0,
        description="After the round trip, write and read back this many distinct keys.",
    )

    @field_validator("service_account")
    @classmethod
    def _service_account_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("service_account must not be empty")
        return value

    @field_validator("token_lifetime")
    @classmethod
    def _lifetime_in_range(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0) or value > MAX_TOKEN_LIFETIME:
            raise ValueError("token_lifetime must be greater than 0 and at most 12h")
        return value

    @field_validator("token_scopes")
    @classmethod
    def _scopes_not_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("token_scopes must contain at least one scope")
        return value

    @model_validator(mode="after")
    def _pool_bounds(self) -> "Settings":
        if self.pool_max_connections < 1:
            raise ValueError("pool_max_connections must be at least 1")
        if not 0 <= self.pool_min_idle <= self.pool_max_connections:
            raise ValueError("pool_min_idle must be between 0 and pool_max_connections")
        if self.command_retries < 0:
            raise ValueError("command_retries must not be negative")
        if self.pool_idle_timeout is not None and self.pool_idle_timeout <= 0:
            raise ValueError("pool_idle_timeout must be positive or unset")
        if self.verify_keys < 0:
            raise ValueError("verify_keys must not be negative")
        if self.redis_protocol not in (2, 3):
            raise ValueError("redis_protocol must be 2 or 3")
        for name in (
            "pool_timeout",
            "socket_timeout",
            "socket_connect_timeout",
            "token_exchange_timeout",
            "token_exchange_deadline",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        return self


def load_settings(**overrides: Any) -> Settings:
    """
    Build a Settings object from the environment plus explicit overrides.

    Overrides set to None are ignored so that unset CLI flags fall back to
    the environment or the defaults.

    Usage:
        from memorystore_iam.config import load_settings
        settings = load_settings(redis_host="10.0.0.3")
    """
    return Settings(**{name: value for name, value in overrides.items() if value is not None})
