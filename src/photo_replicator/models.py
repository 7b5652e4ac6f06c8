"""Data models for the photo replicator."""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from photo_replicator.utils import storage_safe_key


class Verdict(str, enum.Enum):
    """Terminal outcome of a verification run."""

    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


class OutcomeStatus(str, enum.Enum):
    """Result of replicating one item to one destination."""

    UPLOADED = "uploaded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Session:
    """One client upload batch, identified by an untrusted address-like string."""

    raw_id: str
    album_index: int = 1

    def __post_init__(self) -> None:
        """Validate session data."""
        if not isinstance(self.raw_id, str) or not self.raw_id.strip():
            raise ValueError("Session identifier cannot be empty")
        if self.album_index < 1:
            raise ValueError("Album index must be >= 1")

    @property
    def key(self) -> str:
        """Storage-safe key derived from the raw identifier."""
        return storage_safe_key(self.raw_id)

    @property
    def prefix(self) -> str:
        """Canonical primary-store prefix for this session's album."""
        return album_prefix(self.key, self.album_index)


def album_prefix(session_key: str, album_index: int) -> str:
    """Compose the store prefix holding one album of a session."""
    return f"{session_key}/album-{album_index}/"


@dataclass(frozen=True)
class Item:
    """One uploaded photo as listed by the primary store."""

    path: str
    size: int = 0
    content_type: str = "application/octet-stream"
    created_at: datetime | None = None

    @property
    def filename(self) -> str:
        """Last path segment of the item."""
        return self.path.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of waiting for a session's items to land in the primary store."""

    session: Session
    matched_count: int
    expected_count: int
    items: tuple[Item, ...]
    verdict: Verdict
    elapsed_polls: int
    prefix: str
    elapsed_seconds: float = 0.0

    @property
    def complete(self) -> bool:
        """True when the verdict is COMPLETE."""
        return self.verdict is Verdict.COMPLETE

    @property
    def missing_count(self) -> int:
        """Items still missing from the expected count, never negative."""
        return max(0, self.expected_count - self.matched_count)


@dataclass(frozen=True)
class ItemOutcome:
    """Result of replicating a single item to a single destination."""

    destination: str
    item_path: str
    status: OutcomeStatus
    destination_path: str | None = None
    attempts: int = 0
    retry_delays: tuple[float, ...] = ()
    remote_id: str | None = None
    error: str | None = None
    degraded: bool = False

    def __post_init__(self) -> None:
        """Validate outcome."""
        if self.status is OutcomeStatus.FAILED and not self.error:
            raise ValueError("Failed outcome must have an error")

    @property
    def success(self) -> bool:
        """True when the item was uploaded."""
        return self.status is OutcomeStatus.UPLOADED


@dataclass(frozen=True)
class DispatchReport:
    """Per-destination, per-item outcomes of one replication run."""

    outcomes: tuple[ItemOutcome, ...] = ()

    @property
    def succeeded(self) -> list[ItemOutcome]:
        """Outcomes of uploaded items."""
        return [o for o in self.outcomes if o.status is OutcomeStatus.UPLOADED]

    @property
    def failed(self) -> list[ItemOutcome]:
        """Outcomes of failed items, degraded or not."""
        return [o for o in self.outcomes if o.status is OutcomeStatus.FAILED]

    @property
    def skipped(self) -> list[ItemOutcome]:
        """Outcomes of items skipped after degraded credentials were rejected."""
        return [o for o in self.outcomes if o.status is OutcomeStatus.SKIPPED]

    @property
    def has_failures(self) -> bool:
        """True when a failure happened outside degraded mode."""
        return any(not o.degraded for o in self.failed)

    def for_destination(self, name: str) -> list[ItemOutcome]:
        """Return the outcomes recorded for one destination.

        Args:
            name: Destination name, e.g. "dropbox"

        Returns:
            Outcomes in upload order
        """
        return [o for o in self.outcomes if o.destination == name]


@dataclass(frozen=True)
class AlertEvent:
    """Structured event delivered to the admin alert sink."""

    kind: str
    session: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable representation with an ISO timestamp."""
        return {
            "kind": self.kind,
            "session": self.session,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class CompletionAck:
    """Immediate acknowledgment returned to the front door."""

    accepted: bool
    task_id: str | None
    session_key: str
    expected_count: int
    error: str | None = None


@dataclass(frozen=True)
class PipelineResult:
    """Everything one background verification-and-replication run produced."""

    verification: VerificationResult
    report: DispatchReport | None = None
    notified: bool = False
