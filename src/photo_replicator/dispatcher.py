"""Replicates verified items to every destination with per-item retry."""

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Sequence

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from photo_replicator.destinations import (
    CredentialError,
    Destination,
    RateLimitError,
    ServerError,
)
from photo_replicator.models import (
    DispatchReport,
    Item,
    ItemOutcome,
    OutcomeStatus,
    Session,
)
from photo_replicator.store import ItemStore

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (RateLimitError, ServerError, CredentialError)


class RateLimitAwareWait:
    """Tenacity wait strategy honouring destination-suggested delays.

    Rate-limit errors wait what the destination asked for (or a default) and
    are not subject to the backoff cap; other errors back off exponentially.
    """

    def __init__(
        self, backoff_initial: float, backoff_max: float, default_rate_limit_delay: float
    ) -> None:
        self.default_rate_limit_delay = default_rate_limit_delay
        self._backoff = wait_exponential(multiplier=backoff_initial, max=backoff_max)

    def __call__(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitError):
            if error.retry_after is not None:
                return error.retry_after
            return self.default_rate_limit_delay
        return self._backoff(retry_state)


class SharedReads:
    """Reads each item from the store once and hands the bytes to every destination.

    The bytes of an item are dropped as soon as each of ``consumers`` has
    either read or skipped it.
    """

    def __init__(self, store: ItemStore, consumers: int) -> None:
        self.store = store
        self.consumers = consumers
        self.reads = 0
        self._pending: dict[str, asyncio.Future[bytes]] = {}
        self._waiting: dict[str, int] = {}

    @property
    def held(self) -> int:
        return len(self._pending)

    async def read(self, path: str) -> bytes:
        """Return an item's bytes, fetching them on the first request only.

        Raises:
            StoreError: If the read fails; every consumer sees the same error
        """
        future = self._pending.get(path)
        if future is None:
            future = asyncio.ensure_future(self.store.read_bytes(path))
            self._pending[path] = future
            self.reads += 1
        try:
            return await asyncio.shield(future)
        finally:
            self._consume(path)

    def skip(self, items: Sequence[Item]) -> None:
        """Record that one consumer will never read these items."""
        for item in items:
            self._consume(item.path)

    def _consume(self, path: str) -> None:
        left = self._waiting.get(path, self.consumers) - 1
        if left > 0:
            self._waiting[path] = left
            return
        self._waiting.pop(path, None)
        self._pending.pop(path, None)


class ReplicationDispatcher:
    """Uploads items to destinations: destinations in parallel, items one at a time."""

    def __init__(
        self,
        store: ItemStore,
        *,
        max_attempts: int = 3,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        default_rate_limit_delay: float = 5.0,
        inter_item_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize dispatcher.

        Args:
            store: Primary store the item bytes are read from
            max_attempts: Upload attempts per item, including the first
            backoff_initial: First generic backoff delay in seconds
            backoff_max: Cap for generic backoff delays
            default_rate_limit_delay: Delay when a rate limit carries no hint
            inter_item_delay: Pause after each successful upload
            sleep: Coroutine used for every wait
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.max_attempts = max_attempts
        self.inter_item_delay = inter_item_delay
        self.sleep = sleep
        self._wait = RateLimitAwareWait(backoff_initial, backoff_max, default_rate_limit_delay)

    async def replicate(
        self,
        items: Sequence[Item],
        session: Session,
        destinations: Sequence[Destination],
    ) -> DispatchReport:
        """Replicate items to every destination.

        Each item is read from the store once, however many destinations
        receive it.

        Args:
            items: Verified items, uploaded in this order
            session: Session (and album) the items belong to
            destinations: Targets to replicate to

        Returns:
            Report with one outcome per destination and item
        """
        logger.info(
            f"Replicating {len(items)} item(s) of {session.key} album {session.album_index} "
            f"to {len(destinations)} destination(s)"
        )
        reads = SharedReads(self.store, len(destinations))
        per_destination = await asyncio.gather(
            *(
                self._replicate_to(destination, items, session, reads)
                for destination in destinations
            )
        )
        outcomes = tuple(o for group in per_destination for o in group)
        report = DispatchReport(outcomes=outcomes)
        logger.info(
            f"Replication of {session.key} finished: {len(report.succeeded)} uploaded, "
            f"{len(report.failed)} failed, {len(report.skipped)} skipped"
        )
        return report

    async def _replicate_to(
        self,
        destination: Destination,
        items: Sequence[Item],
        session: Session,
        reads: SharedReads,
    ) -> list[ItemOutcome]:
        degraded = not destination.should_attempt()
        if degraded:
            logger.warning(
                f"{destination.name} credentials are degraded, trying cached token "
                f"for {session.key} without retries"
            )

        try:
            container = await self._with_retries(
                self._attempts(degraded), [], lambda: destination.resolve_container(session)
            )
        except Exception as e:
            logger.error(f"Failed to resolve {destination.name} container for {session.key}: {e}")
            degraded = degraded or not destination.should_attempt()
            reads.skip(items)
            return [
                ItemOutcome(
                    destination=destination.name,
                    item_path=item.path,
                    status=OutcomeStatus.FAILED,
                    error=f"Container resolution failed: {e}",
                    degraded=degraded,
                )
                for item in items
            ]

        outcomes: list[ItemOutcome] = []
        try:
            for index, item in enumerate(items):
                if not degraded and not destination.should_attempt():
                    degraded = True
                    logger.warning(
                        f"{destination.name} credentials degraded during {session.key}, "
                        f"continuing with the cached token without retries"
                    )
                outcome = await self._replicate_item(
                    destination, container, item, reads, self._attempts(degraded), degraded
                )
                if not outcome.success and not degraded and not destination.should_attempt():
                    logger.warning(
                        f"{destination.name} credentials degraded while uploading {item.path}"
                    )
                    outcome = dataclasses.replace(outcome, degraded=True)
                    degraded = True
                outcomes.append(outcome)
                if degraded and not outcome.success:
                    outcomes.extend(
                        ItemOutcome(
                            destination=destination.name,
                            item_path=rest.path,
                            status=OutcomeStatus.SKIPPED,
                            destination_path=destination.destination_path(
                                container, rest.filename
                            ),
                            error="Skipped: degraded credentials were rejected",
                            degraded=True,
                        )
                        for rest in items[index + 1 :]
                    )
                    reads.skip(items[index + 1 :])
                    break
                if outcome.success and index < len(items) - 1 and self.inter_item_delay > 0:
                    await self.sleep(self.inter_item_delay)
        finally:
            destination.release_container(container)
        return outcomes

    def _attempts(self, degraded: bool) -> int:
        return 1 if degraded else self.max_attempts

    async def _replicate_item(
        self,
        destination: Destination,
        container: str,
        item: Item,
        reads: SharedReads,
        attempts: int,
        degraded: bool,
    ) -> ItemOutcome:
        destination_path = destination.destination_path(container, item.filename)
        try:
            data = await reads.read(item.path)
        except Exception as e:
            logger.error(f"Failed to read {item.path} from the primary store: {e}")
            return ItemOutcome(
                destination=destination.name,
                item_path=item.path,
                status=OutcomeStatus.FAILED,
                destination_path=destination_path,
                error=f"Read failed: {e}",
                degraded=degraded,
            )

        delays: list[float] = []
        tries = 0

        async def upload() -> str:
            nonlocal tries
            tries += 1
            return await destination.upload(data, container, item.filename, item.content_type)

        try:
            remote_id = await self._with_retries(attempts, delays, upload)
        except Exception as e:
            logger.error(
                f"Failed to upload {item.path} to {destination.name} after {tries} attempt(s): {e}"
            )
            return ItemOutcome(
                destination=destination.name,
                item_path=item.path,
                status=OutcomeStatus.FAILED,
                destination_path=destination_path,
                attempts=tries,
                retry_delays=tuple(delays),
                error=str(e) or type(e).__name__,
                degraded=degraded,
            )

        logger.info(f"Successfully uploaded {item.filename} to {destination.name}")
        return ItemOutcome(
            destination=destination.name,
            item_path=item.path,
            status=OutcomeStatus.UPLOADED,
            destination_path=destination_path,
            attempts=tries,
            retry_delays=tuple(delays),
            remote_id=remote_id,
            degraded=degraded,
        )

    async def _with_retries(
        self,
        attempts: int,
        delays: list[float],
        call: Callable[[], Awaitable[str]],
    ) -> str:
        def record(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            delays.append(delay)
            logger.warning(
                f"Attempt {retry_state.attempt_number} failed "
                f"({retry_state.outcome.exception()}), retrying in {delay:.1f}s"
            )

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            wait=self._wait,
            stop=stop_after_attempt(attempts),
            before_sleep=record,
            sleep=self.sleep,
            reraise=True,
        ):
            with attempt:
                result = await call()
        return result
