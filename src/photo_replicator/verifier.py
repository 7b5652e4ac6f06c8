"""Waits for a session's photos to appear in the eventually-consistent primary store."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from photo_replicator.models import (
    Item,
    Session,
    VerificationResult,
    Verdict,
    album_prefix,
)
from photo_replicator.store import ItemStore, StoreError
from photo_replicator.utils import KEY_STRATEGIES, KeyStrategy, candidate_keys, matches_address

logger = logging.getLogger(__name__)


class CompletionVerifier:
    """Polls the primary store until a session holds the expected number of items.

    Sessions started under an older key-derivation scheme are found by a
    fallback search over alternate keys, which is repeated on every poll
    because late uploads may still land under the old prefix.
    """

    def __init__(
        self,
        store: ItemStore,
        *,
        poll_interval: float = 30.0,
        max_wait: float = 1800.0,
        strategies: tuple[KeyStrategy, ...] = KEY_STRATEGIES,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize verifier.

        Args:
            store: Primary store adapter
            poll_interval: Seconds between listings
            max_wait: Seconds after which verification gives up
            strategies: Ordered key-derivation strategies for the fallback search
            clock: Monotonic time source
            sleep: Coroutine used to wait between polls
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        if max_wait < 0:
            raise ValueError("max_wait must be >= 0")
        self.store = store
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.strategies = strategies
        self.clock = clock
        self.sleep = sleep

    async def verify(
        self,
        session: Session,
        expected_count: int,
        *,
        max_wait: float | None = None,
        poll_interval: float | None = None,
    ) -> VerificationResult:
        """Wait until the session's album holds ``expected_count`` items.

        Args:
            session: Session whose album is verified
            expected_count: Number of items the album should contain
            max_wait: Override of the configured max wait
            poll_interval: Override of the configured poll interval

        Returns:
            COMPLETE result as soon as the count is met, otherwise an
            INCOMPLETE result at the deadline carrying the best item set seen

        Raises:
            StoreError: If the very first listing of the canonical prefix fails
        """
        if expected_count < 0:
            raise ValueError("expected_count must be >= 0")
        max_wait = self.max_wait if max_wait is None else max_wait
        poll_interval = self.poll_interval if poll_interval is None else poll_interval

        started = self.clock()
        prefix = session.prefix
        items = await self.store.list_items(prefix)
        polls = 0
        logger.info(
            f"Verifying {prefix}: found {len(items)}/{expected_count} item(s) on first listing"
        )
        if len(items) >= expected_count:
            return self._result(session, expected_count, items, prefix, polls, started)

        prefix, items = await self._best_of(session, prefix, items)
        if len(items) >= expected_count:
            return self._result(session, expected_count, items, prefix, polls, started)

        while True:
            remaining = max_wait - (self.clock() - started)
            if remaining <= 0:
                break
            await self.sleep(min(poll_interval, remaining))
            polls += 1

            try:
                current = await self.store.list_items(prefix)
            except StoreError as e:
                logger.warning(f"Listing {prefix} failed on poll {polls}, will retry: {e}")
                current = []
            if len(current) > len(items):
                items = current
            prefix, items = await self._best_of(session, prefix, items)

            logger.debug(
                f"Poll {polls} for {session.key}: {len(items)}/{expected_count} under {prefix}"
            )
            if len(items) >= expected_count:
                break

        return self._result(session, expected_count, items, prefix, polls, started)

    async def _best_of(
        self, session: Session, prefix: str, items: list[Item]
    ) -> tuple[str, list[Item]]:
        """Run the legacy fallback search and adopt any prefix holding more items."""
        best_prefix, best_items = prefix, items
        try:
            candidates = await self._candidate_prefixes(session)
        except StoreError as e:
            logger.warning(f"Fallback search for {session.key} failed: {e}")
            return best_prefix, best_items

        for candidate in candidates:
            if candidate == best_prefix:
                continue
            try:
                found = await self.store.list_items(candidate)
            except StoreError as e:
                logger.warning(f"Listing candidate {candidate} failed: {e}")
                continue
            if len(found) > len(best_items):
                logger.info(
                    f"Adopting legacy prefix {candidate} for {session.key}: "
                    f"{len(found)} item(s) vs {len(best_items)}"
                )
                best_prefix, best_items = candidate, found
        return best_prefix, best_items

    async def _candidate_prefixes(self, session: Session) -> list[str]:
        canonical = session.key
        keys = [k for k in candidate_keys(session.raw_id, self.strategies) if k != canonical]
        for key in await self.store.list_top_level():
            if key != canonical and key not in keys and matches_address(session.raw_id, key):
                keys.append(key)
        return [album_prefix(key, session.album_index) for key in keys]

    def _result(
        self,
        session: Session,
        expected_count: int,
        items: list[Item],
        prefix: str,
        polls: int,
        started: float,
    ) -> VerificationResult:
        verdict = Verdict.COMPLETE if len(items) >= expected_count else Verdict.INCOMPLETE
        elapsed = self.clock() - started
        if verdict is Verdict.COMPLETE:
            logger.info(
                f"Verified {session.key}: {len(items)}/{expected_count} item(s) "
                f"after {polls} poll(s)"
            )
        else:
            logger.warning(
                f"Verification of {session.key} timed out after {elapsed:.0f}s: "
                f"{len(items)}/{expected_count} item(s)"
            )
        return VerificationResult(
            session=session,
            matched_count=len(items),
            expected_count=expected_count,
            items=tuple(sorted(items, key=lambda item: item.path)),
            verdict=verdict,
            elapsed_polls=polls,
            prefix=prefix,
            elapsed_seconds=elapsed,
        )
