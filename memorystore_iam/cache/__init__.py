from __future__ import annotations

"""
Redis connectivity for Memorystore.

This package provides:
- Trust bundle loading (PEM CA certificates for TLS verification)
- A TLS connection pool factory (standalone or cluster) whose connections
  authenticate through an injected credential provider
- A RedisCache helper for simple string reads and writes
"""

from .redis_client import (
    CredentialAwareRetry,
    IdleTimeoutConnection,
    IdleTimeoutSSLConnection,
    PoolConfig,
    RedisCache,
    create_redis_client,
    ensure_min_idle,
    warm_up,
)
from .tls import TrustBundle, load_trust_bundle

__all__ = [
    "CredentialAwareRetry",
    "IdleTimeoutConnection",
    "IdleTimeoutSSLConnection",
    "PoolConfig",
    "RedisCache",
    "TrustBundle",
    "create_redis_client",
    "ensure_min_idle",
    "load_trust_bundle",
    "warm_up",
]
