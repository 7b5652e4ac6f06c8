"""Email transport for operator notifications."""

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class Mailer(Protocol):
    """Anything that can deliver an email."""

    async def send(self, subject: str, body: str, recipient: str) -> None: ...


class SmtpMailer:
    """Sends HTML email over SMTP with STARTTLS."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        sender: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.timeout = timeout

    async def send(self, subject: str, body: str, recipient: str) -> None:
        """Send an email without blocking the event loop.

        Raises:
            smtplib.SMTPException: If the server rejects the message
            OSError: If the server cannot be reached
        """
        msg = MIMEMultipart()
        msg["From"] = self.sender
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "html"))
        await asyncio.to_thread(self._send_sync, msg)
        logger.info(f"Email sent to {recipient}: {subject}")

    def _send_sync(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            server.starttls()
            server.login(self.username, self.password)
            server.send_message(msg)
