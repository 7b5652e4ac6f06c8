"""Admin alert sinks for operator-visible failures.

Every sink is best effort: ``notify`` bounds delivery with a timeout and
logs delivery errors instead of raising them into the pipeline.
"""

import asyncio
import json
import logging
from html import escape
from pathlib import Path
from typing import Any

from photo_replicator.mailer import Mailer
from photo_replicator.models import AlertEvent

logger = logging.getLogger(__name__)


class AlertSink:
    """Base class for alert sinks."""

    def __init__(self, timeout: float = 10.0) -> None:
        """Initialize alert sink.

        Args:
            timeout: Seconds one delivery may take before it is abandoned
        """
        self.timeout = timeout

    async def notify(
        self,
        kind: str,
        session: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Deliver an alert, never raising.

        Args:
            kind: Alert kind, e.g. "verification_incomplete"
            session: Storage-safe session key the alert is about, if any
            details: Structured context for the operator
        """
        event = AlertEvent(kind=kind, session=session, details=details or {})
        try:
            await asyncio.wait_for(self.deliver(event), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Alert delivery timed out after {self.timeout}s: {kind}")
        except Exception as e:
            logger.error(f"Alert delivery failed for {kind}: {e}")

    async def deliver(self, event: AlertEvent) -> None:
        """Send one event to the sink's backend.

        Args:
            event: Alert to deliver

        Raises:
            Exception: Any backend failure; notify() logs and contains it
        """
        raise NotImplementedError


class LogAlertSink(AlertSink):
    """Writes alerts to the log as structured records."""

    async def deliver(self, event: AlertEvent) -> None:
        """Log the event at WARNING with the full event under the ``alert`` extra."""
        logger.warning(
            f"ALERT {event.kind} session={event.session} details={event.details}",
            extra={"alert": event.to_dict()},
        )


class JsonlAlertSink(AlertSink):
    """Appends one JSON object per alert to a file for later inspection."""

    def __init__(self, path: Path, timeout: float = 10.0) -> None:
        super().__init__(timeout)
        self.path = path
        self._lock = asyncio.Lock()

    async def deliver(self, event: AlertEvent) -> None:
        """Append the event as one JSON line, serialising writers."""
        line = json.dumps(event.to_dict(), default=str) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line)


class MailAlertSink(AlertSink):
    """Emails alerts to an administrator."""

    def __init__(self, mailer: Mailer, recipient: str, timeout: float = 30.0) -> None:
        super().__init__(timeout)
        self.mailer = mailer
        self.recipient = recipient

    async def deliver(self, event: AlertEvent) -> None:
        """Format the event as an HTML email and send it to the recipient."""
        subject = f"[photo-replicator] {event.kind}"
        if event.session:
            subject += f": {event.session}"
        rows = "".join(
            f"<li><strong>{escape(str(k))}:</strong> {escape(str(v))}</li>"
            for k, v in event.details.items()
        )
        body = (
            f"<h2>{escape(event.kind)}</h2>"
            f"<p><strong>Session:</strong> {escape(event.session or '-')}</p>"
            f"<ul>{rows}</ul>"
            f"<p><strong>Timestamp:</strong> {event.timestamp.isoformat()}</p>"
        )
        await self.mailer.send(subject, body, self.recipient)


class FanOutAlertSink(AlertSink):
    """Delivers each alert to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: list[AlertSink], timeout: float = 30.0) -> None:
        super().__init__(timeout)
        self.sinks = sinks

    async def deliver(self, event: AlertEvent) -> None:
        """Notify every sink concurrently; each one contains its own failures."""
        await asyncio.gather(
            *(sink.notify(event.kind, event.session, event.details) for sink in self.sinks)
        )
