"""Utility functions for session keys and expected counts."""

import logging
import re
from collections.abc import Callable
from datetime import datetime

logger = logging.getLogger(__name__)

# Shots on one disposable roll
DEFAULT_ROLL_CAPACITY = 30

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")
_NON_ALNUM_RUN = re.compile(r"[^A-Za-z0-9]+")

KeyStrategy = Callable[[str], str]


def storage_safe_key(raw_id: str) -> str:
    """Derive the storage-safe key for a raw session identifier.

    Every character outside ``[A-Za-z0-9]`` becomes a single underscore, so
    the key has the same length as the identifier and re-deriving it from
    an already safe key returns the key unchanged.

    Args:
        raw_id: Untrusted session identifier (usually an address)

    Returns:
        Key usable as a primary-store prefix
    """
    return _NON_ALNUM.sub("_", raw_id)


def collapsed_key(raw_id: str) -> str:
    """Older scheme: runs of separators collapsed to one underscore."""
    return _NON_ALNUM_RUN.sub("_", raw_id).strip("_")


def lowercase_key(raw_id: str) -> str:
    """Older scheme: lowercased collapsed key."""
    return collapsed_key(raw_id).lower()


def hyphen_key(raw_id: str) -> str:
    """Older scheme: runs of separators replaced by a hyphen."""
    return _NON_ALNUM_RUN.sub("-", raw_id).strip("-")


def compact_key(raw_id: str) -> str:
    """Older scheme: separators dropped entirely."""
    return _NON_ALNUM_RUN.sub("", raw_id)


# Tried in order by the legacy fallback search; the first is the current scheme.
KEY_STRATEGIES: tuple[KeyStrategy, ...] = (
    storage_safe_key,
    collapsed_key,
    lowercase_key,
    hyphen_key,
    compact_key,
)


def candidate_keys(
    raw_id: str, strategies: tuple[KeyStrategy, ...] = KEY_STRATEGIES
) -> list[str]:
    """Return the distinct non-empty keys produced by each strategy, in order."""
    keys: list[str] = []
    for strategy in strategies:
        key = strategy(raw_id)
        if key and key not in keys:
            keys.append(key)
    return keys


def address_components(raw_id: str) -> list[str]:
    """Split an address-like identifier into its alphanumeric components."""
    return [part for part in _NON_ALNUM_RUN.split(raw_id) if part]


def matches_address(raw_id: str, key: str) -> bool:
    """Check if a stored key begins and ends with the identifier's first and last components.

    Both sides are split into whole components, so "12_Oak_Rd_ABCD" does not
    match "1 Elm St CD". Comparison is case-insensitive. Identifiers with no
    alphanumeric component never match.
    """
    wanted = address_components(raw_id)
    found = address_components(key)
    if not wanted or not found:
        return False
    return (
        found[0].lower() == wanted[0].lower()
        and found[-1].lower() == wanted[-1].lower()
    )


def expected_count_from_remaining(
    remaining: int | str, capacity: int = DEFAULT_ROLL_CAPACITY
) -> tuple[int, bool]:
    """Derive how many photos a session should contain.

    Args:
        remaining: Client-reported remaining-shot counter
        capacity: Total shots available in the session

    Returns:
        Tuple of (expected count, anomaly flag). The count is clamped to
        ``[0, capacity]``; the flag is set when clamping was necessary.

    Raises:
        ValueError: If remaining is not an integer
    """
    if isinstance(remaining, bool):
        raise ValueError(f"Remaining count must be an integer, got {remaining!r}")
    if isinstance(remaining, str):
        try:
            remaining = int(remaining.strip())
        except ValueError:
            raise ValueError(
                f"Remaining count must be an integer, got {remaining!r}"
            ) from None
    if not isinstance(remaining, int):
        raise ValueError(f"Remaining count must be an integer, got {remaining!r}")

    expected = capacity - remaining
    if expected < 0 or expected > capacity:
        clamped = min(max(expected, 0), capacity)
        logger.warning(
            f"Remaining count {remaining} is outside roll capacity {capacity}, "
            f"clamping expected count {expected} to {clamped}"
        )
        return clamped, True
    return expected, False


def compose_item_path(
    session_key: str, album_index: int, filename: str, timestamp: datetime
) -> str:
    """Compose the primary-store path for an uploaded photo.

    The millisecond timestamp prefix keeps names unique and sortable.
    """
    millis = int(timestamp.timestamp() * 1000)
    return f"{session_key}/album-{album_index}/{millis}-{filename}"
