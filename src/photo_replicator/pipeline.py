"""Completion trigger: acknowledges immediately, verifies and replicates in the background."""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Coroutine, Mapping, Sequence
from typing import Any

from photo_replicator.alerts import AlertSink
from photo_replicator.destinations import Destination
from photo_replicator.dispatcher import ReplicationDispatcher
from photo_replicator.mailer import Mailer
from photo_replicator.models import (
    CompletionAck,
    PipelineResult,
    Session,
    VerificationResult,
)
from photo_replicator.notifications import compose_print_request
from photo_replicator.store import StoreError
from photo_replicator.utils import DEFAULT_ROLL_CAPACITY, expected_count_from_remaining
from photo_replicator.verifier import CompletionVerifier

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[str, str, BaseException], Awaitable[None]]


class TaskRunner:
    """Bounded pool of detached background tasks.

    At most ``max_concurrent`` tasks run at once; the rest wait on a
    semaphore. An exception in one task is logged and handed to
    ``on_error`` but never reaches the submitter or other tasks. A finished
    task's result is handed out once; unclaimed results beyond
    ``keep_results`` are dropped oldest first.
    """

    def __init__(
        self,
        max_concurrent: int = 4,
        on_error: ErrorCallback | None = None,
        keep_results: int = 256,
    ) -> None:
        """Initialize task runner.

        Args:
            max_concurrent: Tasks allowed to run at the same time
            on_error: Coroutine function called with (task_id, name, error) on a crash
            keep_results: Unclaimed results kept before the oldest are dropped
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if keep_results < 0:
            raise ValueError("keep_results must be >= 0")
        self.max_concurrent = max_concurrent
        self.on_error = on_error
        self.keep_results = keep_results
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._results: dict[str, Any] = {}
        self._closed = False

    @property
    def pending(self) -> int:
        """Number of submitted tasks that have not finished."""
        return len(self._tasks)

    @property
    def unclaimed(self) -> int:
        """Number of finished results nobody has collected yet."""
        return len(self._results)

    def submit(self, name: str, coro: Coroutine[Any, Any, Any]) -> str:
        """Schedule a coroutine on the running loop and return its task id.

        Raises:
            RuntimeError: If the runner is closed or no event loop is running
        """
        if self._closed:
            coro.close()
            raise RuntimeError("TaskRunner is closed")
        task_id = uuid.uuid4().hex
        task = asyncio.get_running_loop().create_task(
            self._run(task_id, name, coro), name=f"{name}:{task_id}"
        )
        self._tasks[task_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(task_id, None))
        logger.debug(f"Submitted background task {name} ({task_id})")
        return task_id

    def result(self, task_id: str) -> Any:
        """Collect a finished task's result.

        Returns:
            The result, or None if the task is unknown, still running, failed
            or was already collected
        """
        return self._results.pop(task_id, None)

    async def wait(self, task_id: str) -> Any:
        """Wait for one task and collect its result (None if it failed)."""
        task = self._tasks.get(task_id)
        if task is not None:
            await asyncio.shield(task)
        return self.result(task_id)

    async def drain(self) -> None:
        """Wait until every submitted task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def close(self) -> None:
        """Refuse new work and wait for running tasks."""
        self._closed = True
        await self.drain()

    async def _run(self, task_id: str, name: str, coro: Coroutine[Any, Any, Any]) -> None:
        async with self._semaphore:
            try:
                result = await coro
            except asyncio.CancelledError:
                logger.warning(f"Background task {name} ({task_id}) was cancelled")
                raise
            except Exception as e:
                logger.exception(f"Background task {name} ({task_id}) crashed: {e}")
                if self.on_error is not None:
                    try:
                        await self.on_error(task_id, name, e)
                    except Exception as callback_error:
                        logger.error(f"Error callback for {name} failed: {callback_error}")
                return
        self._keep(task_id, result)

    def _keep(self, task_id: str, result: Any) -> None:
        self._results[task_id] = result
        while len(self._results) > self.keep_results:
            dropped = next(iter(self._results))
            del self._results[dropped]
            logger.debug(f"Dropped unclaimed result of task {dropped}")


class CompletionPipeline:
    """Entry point the front door calls when a client reports a finished session."""

    def __init__(
        self,
        verifier: CompletionVerifier,
        dispatcher: ReplicationDispatcher,
        destinations: Sequence[Destination],
        alert_sink: AlertSink,
        runner: TaskRunner | None = None,
        *,
        mailer: Mailer | None = None,
        notify_recipient: str | None = None,
        capacity: int = DEFAULT_ROLL_CAPACITY,
        download_base_url: str | None = None,
        bucket: str | None = None,
    ) -> None:
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.destinations = list(destinations)
        self.alert_sink = alert_sink
        self.runner = runner if runner is not None else TaskRunner(on_error=self._on_crash)
        if self.runner.on_error is None:
            self.runner.on_error = self._on_crash
        self.mailer = mailer
        self.notify_recipient = notify_recipient
        self.capacity = capacity
        self.download_base_url = download_base_url
        self.bucket = bucket

    def on_session_complete(
        self,
        session_id: str,
        album_index: int | str,
        expected_count: int | str,
        metadata: Mapping[str, Any] | None = None,
    ) -> CompletionAck:
        """Validate the completion signal and start the pipeline in the background.

        Returns as soon as the task is scheduled; everything downstream is
        reported to operators only.

        Args:
            session_id: Raw session identifier sent by the client
            album_index: Album within the session, starting at 1
            expected_count: Number of photos the client uploaded
            metadata: Optional user details for the print request

        Returns:
            Accepted acknowledgment carrying the background task id

        Raises:
            ValueError: If the identifier is missing or a count is not an integer
        """
        session, expected, details = _validate(session_id, album_index, expected_count, metadata)
        return self._start(session, expected, details)

    async def acknowledge(
        self,
        session_id: str,
        album_index: int | str,
        expected_count: int | str,
        metadata: Mapping[str, Any] | None = None,
    ) -> CompletionAck:
        """Like on_session_complete, but refuse the signal when the primary store is down.

        The session's canonical prefix is listed once before anything is
        scheduled, so an unreachable store fails the acknowledgment instead
        of surfacing later as a crashed background run.

        Returns:
            Accepted acknowledgment, or ``accepted=False`` with the store error
            and no task id

        Raises:
            ValueError: If the identifier is missing or a count is not an integer
        """
        session, expected, details = _validate(session_id, album_index, expected_count, metadata)
        try:
            await self.verifier.store.list_items(session.prefix)
        except StoreError as e:
            logger.error(f"Refusing completion of {session.key}, primary store unavailable: {e}")
            return CompletionAck(
                accepted=False,
                task_id=None,
                session_key=session.key,
                expected_count=expected,
                error=f"{type(e).__name__}: {e}",
            )
        return self._start(session, expected, details)

    def on_roll_complete(
        self,
        session_id: str,
        album_index: int | str,
        remaining: int | str,
        metadata: Mapping[str, Any] | None = None,
    ) -> CompletionAck:
        """Like on_session_complete, but derive the count from the remaining-shot counter.

        Raises:
            ValueError: If the identifier is missing or remaining is not an integer
        """
        expected, anomaly = expected_count_from_remaining(remaining, self.capacity)
        ack = self.on_session_complete(session_id, album_index, expected, metadata)
        if anomaly:
            self.runner.submit(
                f"{ack.session_key}:anomaly",
                self.alert_sink.notify(
                    "expected_count_anomaly",
                    ack.session_key,
                    {"remaining": remaining, "capacity": self.capacity, "expected": expected},
                ),
            )
        return ack

    def _start(
        self, session: Session, expected: int, metadata: dict[str, Any]
    ) -> CompletionAck:
        task_id = self.runner.submit(session.key, self.run(session, expected, metadata))
        logger.info(
            f"Accepted completion of {session.key} album {session.album_index}, "
            f"expecting {expected} item(s) (task {task_id})"
        )
        return CompletionAck(
            accepted=True, task_id=task_id, session_key=session.key, expected_count=expected
        )

    async def run(
        self, session: Session, expected_count: int, metadata: Mapping[str, Any] | None = None
    ) -> PipelineResult:
        """Verify the session, replicate what was found and notify the operator."""
        metadata = metadata or {}
        verification = await self.verifier.verify(session, expected_count)

        if not verification.complete:
            await self.alert_sink.notify(
                "verification_incomplete",
                session.key,
                {
                    "raw_id": session.raw_id,
                    "album_index": session.album_index,
                    "expected": verification.expected_count,
                    "found": verification.matched_count,
                    "missing": verification.missing_count,
                    "prefix": verification.prefix,
                    "polls": verification.elapsed_polls,
                    "elapsed_seconds": round(verification.elapsed_seconds, 1),
                },
            )

        report = None
        if verification.items and self.destinations:
            report = await self.dispatcher.replicate(
                verification.items, session, self.destinations
            )
            if report.has_failures:
                await self.alert_sink.notify(
                    "replication_failed",
                    session.key,
                    {
                        "failed": [
                            {
                                "destination": o.destination,
                                "item": o.item_path,
                                "attempts": o.attempts,
                                "error": o.error,
                            }
                            for o in report.failed
                            if not o.degraded
                        ],
                        "uploaded": len(report.succeeded),
                    },
                )
        elif not verification.items:
            logger.warning(f"No items found for {session.key}, nothing to replicate")

        notified = await self._send_print_request(session, expected_count, metadata, verification)
        return PipelineResult(verification=verification, report=report, notified=notified)

    async def _send_print_request(
        self,
        session: Session,
        photo_count: int,
        metadata: Mapping[str, Any],
        verification: VerificationResult,
    ) -> bool:
        if self.mailer is None or not self.notify_recipient:
            return False
        subject, body = compose_print_request(
            session,
            photo_count,
            self.capacity,
            metadata,
            download_base_url=self.download_base_url,
            bucket=self.bucket,
            verification=verification,
        )
        try:
            await self.mailer.send(subject, body, self.notify_recipient)
        except Exception as e:
            logger.error(f"Failed to send print request for {session.key}: {e}")
            return False
        return True

    async def _on_crash(self, task_id: str, name: str, error: BaseException) -> None:
        await self.alert_sink.notify(
            "pipeline_crashed",
            name,
            {"task_id": task_id, "error": f"{type(error).__name__}: {error}"},
        )


def _require_id(session_id: Any) -> str:
    if not isinstance(session_id, str) or not session_id.strip():
        raise ValueError("Session identifier is required")
    return session_id


def _as_int(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{label.capitalize()} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ValueError(f"{label.capitalize()} must be an integer, got {value!r}")


def _validate(
    session_id: Any,
    album_index: Any,
    expected_count: Any,
    metadata: Any,
) -> tuple[Session, int, dict[str, Any]]:
    session = Session(
        raw_id=_require_id(session_id),
        album_index=_as_int(album_index, "album index"),
    )
    expected = _as_int(expected_count, "expected count")
    if expected < 0:
        raise ValueError(f"Expected count must be >= 0, got {expected}")
    if metadata is not None and not isinstance(metadata, Mapping):
        raise ValueError("Metadata must be a mapping")
    return session, expected, dict(metadata or {})
