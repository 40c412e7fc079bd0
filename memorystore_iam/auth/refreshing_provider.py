from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Optional

import structlog
from redis.credentials import CredentialProvider

from ..errors import MemorystoreIamError, TokenExpiredError
from ..metrics import TOKEN_REFRESH_FAILURES
from .token_provider import Credential, IamTokenProvider

logger = structlog.get_logger("auth.refreshing_provider")


class RefreshingTokenProvider(CredentialProvider):
    """
    Serves a cached IAM token that a single background thread keeps fresh.

    Processes that open thousands of connections would otherwise call
    GenerateAccessToken once per connection and get throttled. Here the
    connection path never talks to IAM:

    - start() refreshes once and raises if that fails, so setup problems
      surface immediately
    - a daemon thread wakes every check_interval and refreshes once the
      token is older than refresh_interval
    - get_credentials() returns the cached token, or raises
      TokenExpiredError (chained to the last refresh error) once the token
      has outlived its lifetime

    Keep refresh_interval well below the token lifetime so that several
    failed refreshes can be retried before the cached token expires.
    """

    def __init__(
        self,
        provider: IamTokenProvider,
        *,
        refresh_interval: timedelta = timedelta(minutes=5),
        check_interval: timedelta = timedelta(seconds=10),
        lifetime: Optional[timedelta] = None,
    ):
        self._provider = provider
        self.refresh_interval = refresh_interval.total_seconds()
        self.check_interval = check_interval.total_seconds()
        self.lifetime = (lifetime or provider.lifetime).total_seconds()

        self._lock = threading.Lock()
        self._credential: Optional[Credential] = None
        self._last_refresh: Optional[float] = None
        self._last_error: Optional[BaseException] = None

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --------------------------------------------------------------------- #
    # Lifecycle
    # --------------------------------------------------------------------- #

    def start(self) -> "RefreshingTokenProvider":
        if self._thread is not None:
            return self

        self.refresh_now()
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="iam-token-refresh",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "token_refresh_started",
            refresh_interval_seconds=self.refresh_interval,
            check_interval_seconds=self.check_interval,
            lifetime_seconds=self.lifetime,
        )
        return self

    def close(self) -> None:
        """
        Stop the refresh thread and release the wrapped provider.
        """
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.check_interval + 1)
            self._thread = None
        self._provider.close()
        logger.info("token_refresh_stopped")

    def __enter__(self) -> "RefreshingTokenProvider":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # --------------------------------------------------------------------- #
    # Refresh
    # --------------------------------------------------------------------- #

    def refresh_now(self) -> Credential:
        """
        Mint a new token synchronously and cache it.

        Raises TokenExchangeError (or whatever the exchange raised) on
        failure; the previous token stays cached.
        """
        try:
            credential = self._provider.retrieve_credential()
        except Exception as exc:
            with self._lock:
                self._last_error = exc
            raise

        with self._lock:
            self._credential = credential
            self._last_refresh = time.monotonic()
            self._last_error = None
        logger.info(
            "token_refreshed",
            service_account=self._provider.resource_name,
            refresh_interval_seconds=self.refresh_interval,
            lifetime_seconds=self.lifetime,
        )
        return credential

    def _refresh_due(self) -> bool:
        with self._lock:
            if self._last_refresh is None or self.refresh_interval <= 0:
                return True
            return time.monotonic() - self._last_refresh >= self.refresh_interval

    def _run(self) -> None:
        while not self._stop.wait(self.check_interval):
            if not self._refresh_due():
                continue
            try:
                self.refresh_now()
            except Exception as exc:
                # The thread must survive; the error is reported via get_credentials().
                TOKEN_REFRESH_FAILURES.inc()
                if isinstance(exc, MemorystoreIamError):
                    fields = exc.to_dict()
                else:
                    fields = {"error": str(exc), "error_type": type(exc).__name__}
                logger.error("token_refresh_failed", **fields)

    # --------------------------------------------------------------------- #
    # redis-py CredentialProvider hooks
    # --------------------------------------------------------------------- #

    def _expired(self) -> bool:
        if self._last_refresh is None or self.lifetime <= 0:
            return True
        return time.monotonic() - self._last_refresh >= self.lifetime

    def get_credentials(self) -> Credential:
        with self._lock:
            if self._credential is None or self._expired():
                raise TokenExpiredError(
                    "Background IAM token refresh failed",
                    cause=self._last_error,
                    service_account=self._provider.resource_name,
                )
            return self._credential

    async def get_credentials_async(self) -> Credential:
        return self.get_credentials()
