from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import redis.asyncio as redis
import structlog
from redis.asyncio.connection import Connection, SSLConnection
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.credentials import CredentialProvider
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..config import Settings
from ..errors import TokenExchangeError
from .tls import TrustBundle

logger = structlog.get_logger("cache.redis_client")

RedisClient = Union[redis.Redis, redis.RedisCluster]


@dataclass(frozen=True)
class PoolConfig:
    """
    Immutable connection pool policy.

    max_connections applies per node. idle_timeout=None keeps idle
    connections forever. With cluster=True, host:port is only the discovery
    endpoint; the shard nodes come from CLUSTER SLOTS.
    """

    host: str
    port: int = 6379
    max_connections: int = 10
    min_idle: int = 1
    idle_timeout: Optional[float] = 60.0
    pool_timeout: float = 5.0
    socket_timeout: Optional[float] = 5.0
    socket_connect_timeout: Optional[float] = 5.0
    check_hostname: bool = True
    command_retries: int = 3
    protocol: int = 2
    cluster: bool = False

    def __post_init__(self) -> None:
        if self.max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        if not 0 <= self.min_idle <= self.max_connections:
            raise ValueError("min_idle must be between 0 and max_connections")
        if self.idle_timeout is not None and self.idle_timeout <= 0:
            raise ValueError("idle_timeout must be positive or None")
        if self.command_retries < 0:
            raise ValueError("command_retries must not be negative")
        if self.protocol not in (2, 3):
            raise ValueError("protocol must be 2 or 3")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PoolConfig":
        return cls(
            host=settings.redis_host,
            port=settings.redis_port,
            max_connections=settings.pool_max_connections,
            min_idle=settings.pool_min_idle,
            idle_timeout=settings.pool_idle_timeout,
            pool_timeout=settings.pool_timeout,
            socket_timeout=settings.socket_timeout,
            socket_connect_timeout=settings.socket_connect_timeout,
            check_hostname=settings.ssl_check_hostname,
            command_retries=settings.command_retries,
            protocol=settings.redis_protocol,
            cluster=settings.cluster,
        )


# ------------------------------------------------------------------------- #
# Connections
# ------------------------------------------------------------------------- #


class IdleTimeoutMixin:
    """
    Drops a connection that sat idle longer than idle_timeout before reusing it.

    The next command then reconnects, which runs AUTH again and so asks the
    credential provider for a fresh token. This mirrors a server closing
    idle connections, without waiting for the failed write.
    """

    def __init__(self, *, idle_timeout: Optional[float] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.idle_timeout = idle_timeout
        self._last_used: Optional[float] = None

    def idle_expired(self) -> bool:
        if self.idle_timeout is None or self._last_used is None:
            return False
        return time.monotonic() - self._last_used > self.idle_timeout

    async def send_packed_command(self, command: Any, check_health: bool = True) -> None:
        if self.is_connected and self.idle_expired():  # type: ignore[attr-defined]
            logger.debug("redis_connection_idle_expired", idle_timeout=self.idle_timeout)
            await self.disconnect()  # type: ignore[attr-defined]
        await super().send_packed_command(command, check_health)  # type: ignore[misc]

    async def read_response(self, *args: Any, **kwargs: Any) -> Any:
        try:
            return await super().read_response(*args, **kwargs)  # type: ignore[misc]
        finally:
            if self.is_connected:  # type: ignore[attr-defined]
                self._last_used = time.monotonic()

    async def disconnect(self, *args: Any, **kwargs: Any) -> None:
        self._last_used = None
        await super().disconnect(*args, **kwargs)  # type: ignore[misc]


class IdleTimeoutConnection(IdleTimeoutMixin, Connection):
    """Plain TCP connection with idle expiry (tests and local development)."""


class IdleTimeoutSSLConnection(IdleTimeoutMixin, SSLConnection):
    """TLS connection with idle expiry; the pool default."""

# ------------------------------------------------------------------------- #
# Retries
# ------------------------------------------------------------------------- #


class CredentialAwareRetry(Retry):
    """
    Command retry that stops at once on a permanent token exchange failure.

    A reconnect inside a command runs AUTH, and a failed exchange surfaces
    as TokenExchangeError, which redis-py treats as a connection error.
    Retrying PermissionDenied or InvalidArgument only adds load on IAM, so
    those are raised after the connection is cleaned up. Transient exchange
    failures keep the normal backoff.
    """

    async def call_with_retry(
        self,
        do: Callable[[], Awaitable[Any]],
        fail: Callable[[Exception], Any],
    ) -> Any:
        async def _fail(error: Exception) -> None:
            await fail(error)
            if isinstance(error, TokenExchangeError) and not error.retryable:
                logger.warning("redis_retry_aborted", error_type=type(error).__name__)
                raise error

        return await super().call_with_retry(do, _fail)


def _retry_policy(retries: int) -> Retry:
    return CredentialAwareRetry(ExponentialBackoff(cap=2.0, base=0.1), retries)


# ------------------------------------------------------------------------- #
# Pool / client factory
# ------------------------------------------------------------------------- #


def _common_kwargs(
    config: PoolConfig,
    credential_provider: CredentialProvider,
    decode_responses: bool,
) -> dict[str, Any]:
    return {
        "host": config.host,
        "port": config.port,
        "credential_provider": credential_provider,
        "socket_timeout": config.socket_timeout,
        "socket_connect_timeout": config.socket_connect_timeout,
        "retry": _retry_policy(config.command_retries),
        "retry_on_error": [RedisConnectionError, RedisTimeoutError],
        "decode_responses": decode_responses,
        "protocol": config.protocol,
    }


def _ssl_kwargs(config: PoolConfig, trust_bundle: TrustBundle) -> dict[str, Any]:
    return {
        "ssl_cert_reqs": "required",
        "ssl_ca_data": trust_bundle.pem,
        "ssl_check_hostname": config.check_hostname,
    }


def create_redis_client(
    config: PoolConfig,
    credential_provider: CredentialProvider,
    trust_bundle: Optional[TrustBundle],
    *,
    decode_responses: bool = True,
    **connection_kwargs: Any,
) -> RedisClient:
    """
    Build an async Redis client over authenticated, pooled connections.

    The credential provider is stored, not called: the pool asks it for
    credentials each time it opens (or re-opens) a connection.

    Every connection verifies the server certificate against trust_bundle.
    trust_bundle=None builds a plaintext pool and exists only for tests and
    local development.

    Returns a redis.Redis over a BlockingConnectionPool, or a
    redis.RedisCluster when config.cluster is set.

    Example:
        bundle = load_trust_bundle("server-ca.pem")
        client = create_redis_client(PoolConfig(host="10.0.0.3"), provider, bundle)
        await client.set("key", "value")
    """
    if config.cluster:
        client: RedisClient = _create_cluster_client(
            config, credential_provider, trust_bundle, decode_responses, connection_kwargs
        )
    else:
        client = _create_pooled_client(
            config, credential_provider, trust_bundle, decode_responses, connection_kwargs
        )
    logger.info(
        "redis_pool_configured",
        host=config.host,
        port=config.port,
        tls=trust_bundle is not None,
        cluster=config.cluster,
        protocol=config.protocol,
        max_connections=config.max_connections,
        min_idle=config.min_idle,
        idle_timeout=config.idle_timeout,
    )
    return client


def _create_pooled_client(
    config: PoolConfig,
    credential_provider: CredentialProvider,
    trust_bundle: Optional[TrustBundle],
    decode_responses: bool,
    connection_kwargs: dict[str, Any],
) -> redis.Redis:
    kwargs = _common_kwargs(config, credential_provider, decode_responses)
    kwargs["idle_timeout"] = config.idle_timeout
    if trust_bundle is not None:
        connection_class: type[Connection] = IdleTimeoutSSLConnection
        kwargs.update(_ssl_kwargs(config, trust_bundle))
    else:
        connection_class = IdleTimeoutConnection
    kwargs.update(connection_kwargs)

    pool = redis.BlockingConnectionPool(
        max_connections=config.max_connections,
        timeout=config.pool_timeout,
        connection_class=connection_class,
        **kwargs,
    )
    # Same policy on the client: depending on the redis-py release, commands
    # retry through the connection's Retry or the client's.
    client = redis.Redis(
        connection_pool=pool,
        retry=kwargs["retry"],
        retry_on_error=kwargs["retry_on_error"],
    )
    client.auto_close_connection_pool = True
    return client


def _create_cluster_client(
    config: PoolConfig,
    credential_provider: CredentialProvider,
    trust_bundle: Optional[TrustBundle],
    decode_responses: bool,
    connection_kwargs: dict[str, Any],
) -> redis.RedisCluster:
    """
    Cluster client: one connection pool per shard node, max_connections each.

    redis-py builds the per-node pools itself and does not accept a
    connection class, so the idle-timeout class and its setting are pushed
    into the node template and the startup nodes after construction.
    Unlike the standalone pool, an exhausted node raises instead of waiting.
    """
    kwargs = _common_kwargs(config, credential_provider, decode_responses)
    kwargs["max_connections"] = config.max_connections
    if trust_bundle is not None:
        connection_class: type[Connection] = IdleTimeoutSSLConnection
        kwargs["ssl"] = True
        kwargs.update(_ssl_kwargs(config, trust_bundle))
    else:
        connection_class = IdleTimeoutConnection
    kwargs.update(connection_kwargs)

    client = redis.RedisCluster(**kwargs)

    template = client.nodes_manager.connection_kwargs
    template["connection_class"] = connection_class
    template["idle_timeout"] = config.idle_timeout
    for node in client.nodes_manager.startup_nodes.values():
        node.connection_class = connection_class
        node.connection_kwargs["idle_timeout"] = config.idle_timeout
    return client


async def warm_up(client: RedisClient, config: PoolConfig) -> int:
    """
    Open connections before the first command so setup errors surface early.

    Standalone: opens min_idle pooled connections. Cluster: runs discovery
    (CLUSTER SLOTS through an authenticated connection). Returns the number
    of connections or shard nodes made ready.
    """
    if isinstance(client, redis.RedisCluster):
        await client.initialize()
        nodes = client.get_nodes()
        logger.info("redis_cluster_discovered", nodes=len(nodes))
        return len(nodes)
    return await ensure_min_idle(client, config.min_idle)


async def ensure_min_idle(client: redis.Redis, count: int) -> int:
    """
    Open `count` connections concurrently and hand them back to the pool.

    Each new connection authenticates, so this is also the earliest point
    at which a bad token, CA or endpoint shows up. Returns the number of
    connections opened; re-raises the first failure after releasing the
    connections that did open.
    """
    if count <= 0:
        return 0

    pool = client.connection_pool
    results = await asyncio.gather(
        *(pool.get_connection() for _ in range(count)),
        return_exceptions=True,
    )

    opened = [r for r in results if not isinstance(r, BaseException)]
    for connection in opened:
        await pool.release(connection)

    for result in results:
        if isinstance(result, BaseException):
            logger.error("redis_pool_warmup_failed", opened=len(opened), requested=count)
            raise result

    logger.info("redis_pool_warmed", connections=len(opened))
    return len(opened)


class RedisCache:
    """
    Convenience wrapper around an async Redis client for simple string values.

    This class does NOT manage the underlying connection lifecycle.
    The caller is responsible for:
      - passing in a client (e.g., from create_redis_client())
      - closing it at shutdown (client.aclose()).

    With the default empty prefix keys are written verbatim.
    """

    def __init__(self, client: RedisClient, *, prefix: str = ""):
        self._client = client
        # Ensure a non-empty prefix always ends with a colon
        if prefix and not prefix.endswith(":"):
            prefix = f"{prefix}:"
        self._prefix = prefix

    def _key(self, key: str) -> str:
        """Build a namespaced key."""
        return f"{self._prefix}{key}"

    async def get_str(self, key: str) -> Optional[str]:
        """
        Get a simple string value.

        Returns None if the key is not present.
        """
        value = await self._client.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set_str(
        self,
        key: str,
        value: str,
        *,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """
        Set a simple string value with an optional TTL (no expiry by default).
        """
        namespaced = self._key(key)
        if ttl_seconds is not None:
            await self._client.set(namespaced, value, ex=ttl_seconds)
        else:
            await self._client.set(namespaced, value)
