"""Refreshable access tokens for replication destinations."""

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from photo_replicator.alerts import AlertSink

logger = logging.getLogger(__name__)

DROPBOX_TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Dropbox short-lived tokens last four hours; refresh ahead of that.
DEFAULT_REFRESH_INTERVAL = 3.5 * 60 * 60


class RefreshError(Exception):
    """Exception raised when an access token cannot be refreshed."""

    pass


class RefreshUnavailableError(RefreshError):
    """Exception raised when the token endpoint is temporarily unavailable (429 or 5xx)."""

    pass


RETRYABLE_REFRESH_ERRORS = (RefreshUnavailableError, httpx.RequestError, asyncio.TimeoutError)


class TokenState(str, enum.Enum):
    """Lifecycle state of a destination credential."""

    FRESH = "fresh"
    STALE = "stale"
    DEGRADED = "degraded"


@dataclass
class CredentialState:
    """Mutable token state owned by one CredentialManager."""

    access_token: str | None = None
    last_refresh: float | None = None
    consecutive_failures: int = 0
    degraded: bool = False
    first_failure_at: float | None = None
    last_failure_at: float | None = None
    last_error: str | None = None


class OAuthRefresher:
    """Exchanges a long-lived refresh token for a new access token."""

    def __init__(
        self,
        token_url: str,
        refresh_token: str,
        client_id: str,
        client_secret: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize refresher.

        Args:
            token_url: OAuth token endpoint
            refresh_token: Long-lived refresh token
            client_id: OAuth application key
            client_secret: OAuth application secret
            client: Optional shared httpx client; a short-lived one is used otherwise
        """
        self.token_url = token_url
        self.refresh_token = refresh_token
        self.client_id = client_id
        self.client_secret = client_secret
        self._client = client

    async def __call__(self) -> str:
        """Request a new access token.

        The endpoint's own expiry field is ignored; staleness is decided by
        the manager's refresh interval.

        Raises:
            RefreshUnavailableError: On 429 or 5xx responses
            RefreshError: If the endpoint rejects the request or omits the token
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if self._client is not None:
            response = await self._client.post(self.token_url, data=data)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(self.token_url, data=data)

        try:
            result: dict[str, Any] = response.json()
        except ValueError:
            result = {"body": response.text[:200]}

        if response.status_code == 429 or response.status_code >= 500:
            raise RefreshUnavailableError(
                f"Token endpoint unavailable ({response.status_code}): {result}"
            )
        if response.status_code >= 400:
            raise RefreshError(f"Token refresh failed ({response.status_code}): {result}")
        token = result.get("access_token")
        if not token:
            raise RefreshError("No access token in refresh response")
        return token


class CredentialManager:
    """Keeps a destination's access token fresh and degrades after repeated failures.

    A token is FRESH until ``refresh_interval`` seconds have passed since the
    last successful refresh, then STALE. Each stale read triggers one refresh
    cycle (itself retried with backoff, every attempt bounded by
    ``refresh_timeout``). After ``max_consecutive_failures`` failed cycles the
    manager enters DEGRADED: it stops refreshing but keeps handing out the
    last known token so callers can use it until the destination rejects it.
    """

    def __init__(
        self,
        name: str,
        refresher: Callable[[], Awaitable[str]],
        *,
        state: CredentialState | None = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        max_consecutive_failures: int = 3,
        refresh_attempts: int = 3,
        refresh_timeout: float = 30.0,
        alert_sink: AlertSink | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize credential manager.

        Args:
            name: Destination name used in logs and alerts
            refresher: Coroutine function returning a new access token
            state: Initial token state, empty (STALE) by default
            refresh_interval: Seconds after which a token counts as stale
            max_consecutive_failures: Failed refresh cycles before DEGRADED
            refresh_attempts: Attempts per refresh cycle for transient errors
            refresh_timeout: Seconds each refresh attempt may take
            alert_sink: Receives the credential_degraded alert
            clock: Wall-clock time source
            sleep: Coroutine used to wait between refresh attempts
        """
        if max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")
        self.name = name
        self.refresher = refresher
        self.credential = state if state is not None else CredentialState()
        self.refresh_interval = refresh_interval
        self.max_consecutive_failures = max_consecutive_failures
        self.refresh_attempts = refresh_attempts
        self.refresh_timeout = refresh_timeout
        self.alert_sink = alert_sink
        self.clock = clock
        self.sleep = sleep
        self._lock = asyncio.Lock()

    @property
    def state(self) -> TokenState:
        cred = self.credential
        if cred.degraded:
            return TokenState.DEGRADED
        if cred.access_token is None or cred.last_refresh is None:
            return TokenState.STALE
        if self.clock() - cred.last_refresh >= self.refresh_interval:
            return TokenState.STALE
        return TokenState.FRESH

    def should_attempt(self) -> bool:
        """Return False when callers should skip work that needs this credential."""
        return not self.credential.degraded

    async def get_valid_token(self) -> str | None:
        """Return a usable token, refreshing it first when stale.

        Never raises for refresh failures: the last cached token (or None)
        is returned instead and the failure is counted.
        """
        if self.state is not TokenState.STALE:
            return self.credential.access_token

        async with self._lock:
            # Another caller may have refreshed while we waited for the lock.
            if self.state is not TokenState.STALE:
                return self.credential.access_token
            try:
                await self._refresh()
            except RefreshError as e:
                await self._record_failure(e)
            return self.credential.access_token

    def invalidate(self) -> None:
        """Mark the cached token stale after a destination rejected it."""
        if self.credential.degraded:
            return
        logger.info(f"{self.name} token rejected, will refresh on next use")
        self.credential.last_refresh = None

    def reset(self) -> None:
        """Leave degraded mode; the next read triggers a refresh."""
        cred = self.credential
        logger.info(
            f"Resetting {self.name} credentials after "
            f"{cred.consecutive_failures} failure(s)"
        )
        cred.degraded = False
        cred.consecutive_failures = 0
        cred.first_failure_at = None
        cred.last_failure_at = None
        cred.last_error = None
        cred.last_refresh = None

    async def refresh_now(self) -> str:
        """Refresh immediately regardless of state.

        A success clears degraded mode. A failure raises without touching
        the failure counter.

        Raises:
            RefreshError: If the refresh fails
        """
        async with self._lock:
            token = await self._refresh()
        return token

    async def _refresh(self) -> str:
        logger.info(f"Refreshing {self.name} access token")
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(RETRYABLE_REFRESH_ERRORS),
                wait=wait_exponential(multiplier=1, min=1, max=30),
                stop=stop_after_attempt(self.refresh_attempts),
                sleep=self.sleep,
                reraise=True,
            ):
                with attempt:
                    token = await asyncio.wait_for(
                        self.refresher(), timeout=self.refresh_timeout
                    )
        except asyncio.TimeoutError as e:
            raise RefreshError(
                f"Token endpoint did not answer within {self.refresh_timeout}s"
            ) from e
        except httpx.RequestError as e:
            raise RefreshError(f"Network error: {e}") from e

        cred = self.credential
        cred.access_token = token
        cred.last_refresh = self.clock()
        cred.consecutive_failures = 0
        cred.first_failure_at = None
        cred.last_failure_at = None
        cred.last_error = None
        if cred.degraded:
            logger.info(f"{self.name} credentials recovered from degraded mode")
        cred.degraded = False
        logger.info(f"{self.name} access token refreshed successfully")
        return token

    async def _record_failure(self, error: Exception) -> None:
        cred = self.credential
        now = self.clock()
        cred.consecutive_failures += 1
        cred.last_failure_at = now
        if cred.first_failure_at is None:
            cred.first_failure_at = now
        cred.last_error = str(error)
        logger.error(
            f"Failed to refresh {self.name} token "
            f"({cred.consecutive_failures}/{self.max_consecutive_failures}): {error}"
        )

        if cred.consecutive_failures < self.max_consecutive_failures:
            return

        cred.degraded = True
        logger.error(
            f"{self.name} credentials degraded, suspending refresh; "
            f"uploads will use the cached token until it is rejected"
        )
        if self.alert_sink is not None:
            await self.alert_sink.notify(
                "credential_degraded",
                details={
                    "destination": self.name,
                    "consecutive_failures": cred.consecutive_failures,
                    "first_failure_at": cred.first_failure_at,
                    "last_failure_at": cred.last_failure_at,
                    "last_error": cred.last_error,
                    "has_cached_token": cred.access_token is not None,
                },
            )
