from __future__ import annotations

"""
Credential providers for Memorystore IAM authentication.

This package provides:
- IamTokenProvider: one GenerateAccessToken call per connection authentication
- RefreshingTokenProvider: opt-in cached token kept fresh by a background thread

Both implement redis-py's CredentialProvider and can be passed straight to
the connection pool factory in memorystore_iam.cache.
"""

from .refreshing_provider import RefreshingTokenProvider
from .token_provider import Credential, IamTokenProvider, service_account_resource

__all__ = [
    "Credential",
    "IamTokenProvider",
    "RefreshingTokenProvider",
    "service_account_resource",
]
