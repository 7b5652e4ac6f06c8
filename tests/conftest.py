"""Pytest configuration and shared fixtures."""

import asyncio
import time

import pytest

from photo_replicator.alerts import AlertSink
from photo_replicator.credentials import CredentialManager, CredentialState, RefreshError
from photo_replicator.destinations import CredentialError, Destination
from photo_replicator.models import AlertEvent, Item, Session
from photo_replicator.store import StoreError, StoreUnavailableError


class FakeClock:
    """Deterministic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeStore:
    """In-memory primary store where each object becomes visible at a given time."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock or FakeClock()
        self._objects: dict[str, tuple[bytes, float]] = {}
        self.fail_listing_at: set[float] = set()
        self.fail_reads: set[str] = set()
        self.unavailable = False
        self.reads: list[str] = []
        self.list_calls: list[str] = []

    def add(self, path: str, data: bytes = b"jpeg", at: float = 0.0) -> None:
        self._objects[path] = (data, at)

    def add_many(self, prefix: str, count: int, at: float = 0.0, start: int = 0) -> None:
        for i in range(start, start + count):
            self.add(f"{prefix}{1700000000000 + i}-photo{i}.jpg", at=at)

    def _visible(self) -> dict[str, bytes]:
        now = self.clock()
        return {p: d for p, (d, at) in self._objects.items() if at <= now}

    async def list_items(self, prefix: str) -> list[Item]:
        self.list_calls.append(prefix)
        if self.unavailable:
            raise StoreUnavailableError("store unreachable")
        if self.clock() in self.fail_listing_at:
            raise StoreError("listing unavailable")
        return sorted(
            (
                Item(path=p, size=len(d), content_type="image/jpeg")
                for p, d in self._visible().items()
                if p.startswith(prefix) and p != prefix and not p.endswith("/")
            ),
            key=lambda item: item.path,
        )

    async def list_top_level(self) -> list[str]:
        return sorted({p.split("/", 1)[0] for p in self._visible()})

    async def read_bytes(self, path: str) -> bytes:
        self.reads.append(path)
        if path in self.fail_reads:
            raise StoreError(f"cannot read {path}")
        return self._objects[path][0]

    def public_url(self, path: str) -> str:
        return f"https://storage.example.com/{path}"


class RecordingAlertSink(AlertSink):
    """Alert sink that keeps every delivered event."""

    def __init__(self) -> None:
        super().__init__(timeout=1.0)
        self.events: list[AlertEvent] = []

    async def deliver(self, event: AlertEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events]


async def no_refresh() -> str:
    raise AssertionError("refresh should not be needed")


def fresh_credentials(name: str = "test", degraded: bool = False) -> CredentialManager:
    """Credentials holding a just-refreshed token, optionally already degraded."""
    return CredentialManager(
        name,
        no_refresh,
        state=CredentialState(
            access_token="test_access_token_123",
            last_refresh=time.time(),
            degraded=degraded,
            consecutive_failures=3 if degraded else 0,
        ),
    )


async def failing_refresh() -> str:
    raise RefreshError("invalid_grant")


def expiring_credentials(
    name: str = "test", alert_sink: AlertSink | None = None
) -> CredentialManager:
    """Credentials with a cached token whose every refresh fails."""
    return CredentialManager(
        name,
        failing_refresh,
        state=CredentialState(access_token="old_token", last_refresh=time.time()),
        max_consecutive_failures=3,
        refresh_attempts=1,
        alert_sink=alert_sink,
    )


class ScriptedDestination(Destination):
    """Destination that raises queued errors before succeeding."""

    def __init__(
        self,
        name: str,
        errors: list[Exception] | None = None,
        degraded: bool = False,
        latency: float = 0.0,
        shared: dict[str, int] | None = None,
    ) -> None:
        super().__init__(fresh_credentials(name, degraded))
        self.name = name
        self.errors = list(errors or [])
        self.container_error: Exception | None = None
        self.latency = latency
        self.calls = 0
        self.uploaded: list[str] = []
        self.active = 0
        self.max_active = 0
        self.shared = shared if shared is not None else {"active": 0, "max": 0}

    async def resolve_container(self, session: Session) -> str:
        if self.container_error is not None:
            raise self.container_error
        return f"/{self.name}/{session.key}/album{session.album_index}"

    def destination_path(self, container: str, filename: str) -> str:
        return f"{container}/{filename}"

    async def upload(self, data: bytes, container: str, filename: str, content_type: str) -> str:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.shared["active"] += 1
        self.shared["max"] = max(self.shared["max"], self.shared["active"])
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            if self.errors:
                raise self.errors.pop(0)
            self.uploaded.append(filename)
            return f"{container}/{filename}"
        finally:
            self.active -= 1
            self.shared["active"] -= 1


class RejectingDestination(ScriptedDestination):
    """Destination that rejects every upload as an expired token.

    Each rejection invalidates the token and asks for a new one, so a
    refresher that keeps failing drives the credentials into DEGRADED.
    """

    def __init__(self, name: str, credentials: CredentialManager) -> None:
        super().__init__(name)
        self.credentials = credentials

    async def upload(self, data: bytes, container: str, filename: str, content_type: str) -> str:
        self.calls += 1
        self.credentials.invalidate()
        await self.credentials.get_valid_token()
        raise CredentialError("expired_access_token")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> FakeStore:
    return FakeStore(clock)


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()
