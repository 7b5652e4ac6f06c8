"""Print-request email sent to the operator once a roll is complete."""

from collections.abc import Mapping
from datetime import datetime, timezone
from html import escape
from typing import Any
from urllib.parse import quote

from photo_replicator.models import Session, VerificationResult


def compose_print_request(
    session: Session,
    photo_count: int,
    capacity: int,
    metadata: Mapping[str, Any],
    *,
    download_base_url: str | None = None,
    bucket: str | None = None,
    verification: VerificationResult | None = None,
) -> tuple[str, str]:
    """Build the subject and HTML body of a print-request email.

    Args:
        session: Completed session
        photo_count: Number of photos the client reported taking
        capacity: Shots available on the roll
        metadata: Client metadata; ``skipToPrint`` and ``userDetails`` are used
        download_base_url: Base URL of the one-click zip download, if any
        bucket: Primary store bucket, used for the console link
        verification: Verification outcome to include, if already known

    Returns:
        Tuple of (subject, html_body)
    """
    skip_to_print = bool(metadata.get("skipToPrint"))
    user = metadata.get("userDetails") or {}
    address = escape(session.raw_id)

    status = "SKIPPED TO PRINT" if skip_to_print else "FULL ROLL"
    subject = f"PRINT REQUEST: {session.raw_id} ({photo_count} photos - {status})"

    parts = [
        "<h2>New Print Request</h2>",
        f"<p><strong>Address:</strong> {address}</p>",
        f"<p><strong>Album:</strong> {session.album_index}</p>",
        f"<p><strong>Photos taken:</strong> {photo_count}/{capacity}</p>",
        "<p><strong>Status:</strong> "
        f"{'Skipped to print' if skip_to_print else 'Completed full roll'}</p>",
    ]

    if verification is not None:
        parts.append(
            f"<p><strong>Verification:</strong> {verification.verdict.value} "
            f"({verification.matched_count}/{verification.expected_count} found in storage)</p>"
        )

    parts.append("<h3>Download Options:</h3>")
    if download_base_url:
        link = f"{download_base_url.rstrip('/')}/download-photos/{quote(session.raw_id, safe='')}"
        parts.append(
            f'<p><a href="{escape(link)}">Download All Photos as ZIP</a></p>'
        )
    if bucket:
        console = (
            "https://console.cloud.google.com/storage/browser/"
            f"{quote(bucket)}/{quote(session.prefix)}"
        )
        parts.append(f'<p><a href="{escape(console)}">Open in Google Cloud Console</a></p>')

    if isinstance(user, Mapping):
        parts.append("<p><strong>User Details:</strong></p><ul>")
        for label, key in (
            ("Username", "username"),
            ("Postcode", "postcode"),
            ("House Number", "houseNumber"),
        ):
            parts.append(f"<li><strong>{label}:</strong> {escape(str(user.get(key, '')))}</li>")
        parts.append("</ul>")

    parts.append(
        f"<p><strong>Timestamp:</strong> {datetime.now(timezone.utc).isoformat()}</p>"
    )
    return subject, "\n".join(parts)
