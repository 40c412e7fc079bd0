from __future__ import annotations

"""
Exception hierarchy for the IAM-authenticated Redis client.

Components raise; only the driver decides whether a failure aborts the
process. Connection and command failures are left as redis-py exceptions.
"""

from typing import Any, Dict, Optional

from redis.exceptions import AuthenticationError


class MemorystoreIamError(Exception):
    """Base error carrying an optional cause and structured context for logging."""

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[BaseException] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context: Dict[str, Any] = context
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        """Flatten the error for structured log fields."""
        data: Dict[str, Any] = {
            "error_type": type(self).__name__,
            "error": self.message,
            **self.context,
        }
        if self.cause is not None:
            data["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return data


class ConfigurationError(MemorystoreIamError):
    """Startup misconfiguration; retrying cannot help."""


class TrustBundleError(ConfigurationError):
    """The CA bundle is missing, unreadable or holds no PEM certificates."""


class TokenExchangeError(MemorystoreIamError, AuthenticationError):
    """
    GenerateAccessToken failed or returned no token.

    Also an AuthenticationError so that redis-py tears down a connection
    whose AUTH could not be attempted, and retries it like any other
    connection failure.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        cause: Optional[BaseException] = None,
        **context: Any,
    ):
        super().__init__(message, cause=cause, **context)
        self.retryable = retryable


class TokenExpiredError(TokenExchangeError):
    """No cached token is young enough to present to the server."""
