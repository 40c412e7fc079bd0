from __future__ import annotations

"""
IAM-authenticated, TLS-secured Redis access for Memorystore.

This package provides:
- An IAM Credentials token provider usable as a redis-py credential provider
- An opt-in background-refreshing variant for connection-heavy processes
- Trust bundle loading and a TLS connection pool factory
- A small driver that performs a SET/GET round trip
"""

__version__ = "0.1.0"
