from __future__ import annotations

from typing import Optional, Union

import structlog
from redis.exceptions import DataError

from .auth import IamTokenProvider, RefreshingTokenProvider
from .cache import PoolConfig, RedisCache, create_redis_client, load_trust_bundle, warm_up
from .config import Settings
from .errors import ConfigurationError

logger = structlog.get_logger("driver")

CredentialSource = Union[IamTokenProvider, RefreshingTokenProvider]


async def run_round_trip(cache: RedisCache, key: str, value: str) -> Optional[str]:
    """
    SET key value (no expiry), then GET key and return what was read.
    """
    await cache.set_str(key, value)
    logger.info("redis_set_done", key=key)
    result = await cache.get_str(key)
    logger.info("redis_get_done", key=key, found=result is not None)
    return result


async def run_key_sweep(cache: RedisCache, count: int, *, prefix: str = "sweep") -> int:
    """
    Write and read back `count` distinct keys; return how many matched.

    On a cluster the keys hash to different slots, so this exercises
    every shard reachable from the discovery endpoint.
    """
    matched = 0
    for i in range(count):
        key, value = f"{prefix}key{i}", f"{prefix}value{i}"
        await cache.set_str(key, value)
        got = await cache.get_str(key)
        if got == value:
            matched += 1
        else:
            logger.warning("redis_sweep_mismatch", key=key, expected=value, got=got)
    logger.info("redis_sweep_done", requested=count, matched=matched)
    return matched


def build_credential_provider(settings: Settings) -> CredentialSource:
    """
    Build the provider selected by settings.credential_mode.

    The background-refresh provider is started here, so a token exchange
    failure surfaces immediately as TokenExchangeError.
    """
    provider = IamTokenProvider.from_settings(settings)
    if settings.credential_mode == "per-connection":
        return provider

    refreshing = RefreshingTokenProvider(
        provider,
        refresh_interval=settings.token_refresh_interval,
        check_interval=settings.token_refresh_check_interval,
    )
    try:
        return refreshing.start()
    except BaseException:
        provider.close()
        raise


def _pool_config(settings: Settings) -> PoolConfig:
    try:
        return PoolConfig.from_settings(settings)
    except ValueError as exc:
        raise ConfigurationError(str(exc), cause=exc) from exc


async def run(settings: Settings) -> Optional[str]:
    """
    Load the trust bundle, build the pool and perform one SET/GET round trip.

    With settings.verify_keys > 0 a key sweep follows the round trip; a
    mismatch raises redis.exceptions.DataError.

    Raises ConfigurationError, TokenExchangeError or redis-py exceptions;
    the caller decides what a failure means.
    """
    log = logger.bind(redis_host=settings.redis_host, redis_port=settings.redis_port)

    # Trust material and pool policy first: without them nothing can connect.
    trust_bundle = load_trust_bundle(settings.ca_file)
    config = _pool_config(settings)

    provider = build_credential_provider(settings)
    try:
        client = create_redis_client(config, provider, trust_bundle)
        try:
            await warm_up(client, config)
            cache = RedisCache(client)
            result = await run_round_trip(cache, settings.key, settings.value)
            if settings.verify_keys:
                matched = await run_key_sweep(cache, settings.verify_keys)
                if matched != settings.verify_keys:
                    raise DataError(f"only {matched} of {settings.verify_keys} keys read back correctly")
                log.info("redis_keys_verified", count=matched)
        finally:
            await client.aclose()
            log.info("redis_closed")
    finally:
        provider.close()

    return result
