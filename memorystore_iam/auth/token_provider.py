from __future__ import annotations

import asyncio
import threading
import time
from datetime import timedelta
from typing import Any, NamedTuple, Optional, Sequence

import structlog
from google.api_core import exceptions as core_exceptions
from google.api_core import retry as retries
from google.auth import exceptions as auth_exceptions
from google.cloud import iam_credentials_v1
from google.protobuf import duration_pb2
from redis.credentials import CredentialProvider

from ..config import CLOUD_PLATFORM_SCOPE, IAM_CREDENTIALS_ENDPOINT, MAX_TOKEN_LIFETIME, Settings
from ..errors import TokenExchangeError
from ..metrics import TOKEN_EXCHANGE_DURATION, TOKEN_EXCHANGES

logger = structlog.get_logger("auth.token_provider")

# Memorystore IAM auth always logs in as the built-in user.
REDIS_USERNAME = "default"

SERVICE_ACCOUNT_PREFIX = "projects/-/serviceAccounts/"

_TRANSIENT_ERRORS = (
    core_exceptions.ServiceUnavailable,
    core_exceptions.TooManyRequests,
    core_exceptions.InternalServerError,
    core_exceptions.DeadlineExceeded,
    core_exceptions.RetryError,
    auth_exceptions.TransportError,
)


class Credential(NamedTuple):
    """
    Username/token pair presented in AUTH.

    A plain tuple so redis-py can splat it into the AUTH command.
    """

    username: str
    token: str

    def __repr__(self) -> str:
        return f"Credential(username={self.username!r}, token='***')"


def service_account_resource(account: str) -> str:
    """
    Expand a service account email into the IAM resource name.

    Full resource names ("projects/<p>/serviceAccounts/<email>") pass through.
    """
    if account.startswith("projects/"):
        return account
    return f"{SERVICE_ACCOUNT_PREFIX}{account}"


def default_retry(deadline: float) -> retries.Retry:
    """Retry transient IAM failures with exponential backoff, bounded by deadline seconds."""
    return retries.Retry(
        initial=0.25,
        maximum=4.0,
        multiplier=2.0,
        predicate=retries.if_transient_error,
        timeout=deadline,
    )


class IamTokenProvider(CredentialProvider):
    """
    Mints a fresh IAM access token every time credentials are requested.

    This is the object handed to the Redis connection pool. The pool calls
    get_credentials_async() each time a connection is opened or has to
    re-authenticate, so every connection presents a token from its own
    GenerateAccessToken call. Nothing is cached here; see
    RefreshingTokenProvider for the cached variant.

    The IAM client is created lazily on the first exchange unless one is
    injected (tests pass a stub exposing generate_access_token()).
    """

    def __init__(
        self,
        service_account: str,
        *,
        scopes: Sequence[str] = (CLOUD_PLATFORM_SCOPE,),
        lifetime: timedelta = timedelta(hours=1),
        delegates: Sequence[str] = (),
        client: Any = None,
        endpoint: str = IAM_CREDENTIALS_ENDPOINT,
        timeout: float = 10.0,
        retry: Optional[retries.Retry] = None,
        deadline: float = 30.0,
    ):
        if not service_account:
            raise ValueError("service_account must not be empty")
        if not scopes:
            raise ValueError("at least one scope is required")
        if lifetime <= timedelta(0) or lifetime > MAX_TOKEN_LIFETIME:
            raise ValueError("lifetime must be greater than 0 and at most 12h")

        self.resource_name = service_account_resource(service_account)
        self.scopes = list(scopes)
        self.lifetime = lifetime
        self.delegates = [service_account_resource(d) for d in delegates]
        self.endpoint = endpoint
        self.timeout = timeout
        self.deadline = deadline
        self._retry = retry if retry is not None else default_retry(deadline)

        self._client = client
        self._owns_client = client is None
        self._client_lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings, *, client: Any = None) -> "IamTokenProvider":
        return cls(
            settings.service_account,
            scopes=settings.token_scopes,
            lifetime=settings.token_lifetime,
            delegates=settings.token_delegates,
            client=client,
            endpoint=settings.iam_endpoint,
            timeout=settings.token_exchange_timeout,
            deadline=settings.token_exchange_deadline,
        )

    # --------------------------------------------------------------------- #
    # Token exchange
    # --------------------------------------------------------------------- #

    def _get_client(self) -> Any:
        with self._client_lock:
            if self._closed:
                raise TokenExchangeError(
                    "IAM token provider is closed",
                    service_account=self.resource_name,
                )
            if self._client is None:
                self._client = iam_credentials_v1.IAMCredentialsClient(
                    client_options={"api_endpoint": self.endpoint},
                )
            return self._client

    def _build_request(self) -> iam_credentials_v1.GenerateAccessTokenRequest:
        lifetime = duration_pb2.Duration()
        lifetime.FromTimedelta(self.lifetime)
        return iam_credentials_v1.GenerateAccessTokenRequest(
            name=self.resource_name,
            delegates=self.delegates,
            scope=self.scopes,
            lifetime=lifetime,
        )

    def retrieve_credential(self) -> Credential:
        """
        Exchange the service account identity for a short-lived access token.

        Raises TokenExchangeError if the exchange fails for any reason
        (transport, permission denied, invalid scope, empty token).
        """
        log = logger.bind(service_account=self.resource_name)
        log.debug("token_exchange_start", lifetime_seconds=self.lifetime.total_seconds())

        start = time.perf_counter()
        try:
            client = self._get_client()
            response = client.generate_access_token(
                request=self._build_request(),
                retry=self._retry,
                timeout=self.timeout,
            )
        except (
            core_exceptions.GoogleAPIError,
            auth_exceptions.GoogleAuthError,
            OSError,
        ) as exc:
            TOKEN_EXCHANGES.labels(outcome="error").inc()
            retryable = isinstance(exc, _TRANSIENT_ERRORS)
            log.error(
                "token_exchange_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                retryable=retryable,
            )
            raise TokenExchangeError(
                "GenerateAccessToken failed",
                retryable=retryable,
                cause=exc,
                service_account=self.resource_name,
            ) from exc
        finally:
            TOKEN_EXCHANGE_DURATION.observe(time.perf_counter() - start)

        token = getattr(response, "access_token", "")
        if not token:
            TOKEN_EXCHANGES.labels(outcome="error").inc()
            log.error("token_exchange_empty_token")
            raise TokenExchangeError(
                "GenerateAccessToken returned an empty token",
                service_account=self.resource_name,
            )

        TOKEN_EXCHANGES.labels(outcome="success").inc()
        log.info("token_exchange_succeeded")
        return Credential(REDIS_USERNAME, token)

    # --------------------------------------------------------------------- #
    # redis-py CredentialProvider hooks
    # --------------------------------------------------------------------- #

    def get_credentials(self) -> Credential:
        return self.retrieve_credential()

    async def get_credentials_async(self) -> Credential:
        """
        Run the blocking exchange in a worker thread, bounded by the deadline.

        The grpc per-attempt timeout bounds each call; the outer wait_for
        bounds the whole exchange, retries included, and lets the awaiting
        connection be cancelled.
        """
        bound = self.deadline + self.timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.retrieve_credential),
                timeout=bound,
            )
        except asyncio.TimeoutError as exc:
            TOKEN_EXCHANGES.labels(outcome="error").inc()
            logger.error(
                "token_exchange_timed_out",
                service_account=self.resource_name,
                timeout_seconds=bound,
            )
            raise TokenExchangeError(
                "GenerateAccessToken did not complete in time",
                retryable=True,
                cause=exc,
                service_account=self.resource_name,
            ) from exc

    def close(self) -> None:
        """
        Close the gRPC channel if this provider created the client.

        Later exchanges raise TokenExchangeError instead of opening a new
        channel.
        """
        with self._client_lock:
            self._closed = True
            if self._client is not None and self._owns_client:
                self._client.transport.close()
                logger.debug("iam_client_closed")
            if self._owns_client:
                self._client = None
