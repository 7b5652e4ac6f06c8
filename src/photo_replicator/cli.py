"""Command-line interface for the photo replicator."""

import asyncio
import logging
from contextlib import AsyncExitStack

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from photo_replicator.alerts import (
    AlertSink,
    FanOutAlertSink,
    JsonlAlertSink,
    LogAlertSink,
    MailAlertSink,
)
from photo_replicator.config import Settings, get_settings
from photo_replicator.credentials import (
    DROPBOX_TOKEN_URL,
    GOOGLE_TOKEN_URL,
    CredentialManager,
    CredentialState,
    OAuthRefresher,
    RefreshError,
)
from photo_replicator.destinations import (
    Destination,
    DropboxDestination,
    GoogleDriveDestination,
)
from photo_replicator.dispatcher import ReplicationDispatcher
from photo_replicator.mailer import Mailer, SmtpMailer
from photo_replicator.models import PipelineResult, Session, VerificationResult
from photo_replicator.pipeline import CompletionPipeline, TaskRunner
from photo_replicator.store import GCSItemStore
from photo_replicator.utils import expected_count_from_remaining
from photo_replicator.verifier import CompletionVerifier

app = typer.Typer(
    name="photo-replicator",
    help="Verify completed photo sessions and replicate them to remote storage",
    add_completion=False,
)
console = Console()


def setup_logging(verbose: bool) -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: Enable verbose (DEBUG) logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )


def build_mailer(settings: Settings) -> Mailer | None:
    """Create the SMTP mailer when SMTP is configured.

    Args:
        settings: Application settings

    Returns:
        Mailer, or None when SMTP settings are incomplete
    """
    if not settings.smtp_configured:
        return None
    return SmtpMailer(
        settings.SMTP_HOST,
        settings.SMTP_PORT,
        settings.SMTP_USERNAME,
        settings.SMTP_PASSWORD,
        sender=settings.MAIL_FROM,
    )


def build_alert_sink(settings: Settings, mailer: Mailer | None) -> AlertSink:
    """Create the alert sink: always the log, plus a JSONL file and admin mail when configured.

    Args:
        settings: Application settings
        mailer: Mailer used for admin alerts, if any

    Returns:
        A single sink, or a fan-out over several
    """
    sinks: list[AlertSink] = [LogAlertSink()]
    if settings.ALERT_LOG_PATH:
        sinks.append(JsonlAlertSink(settings.ALERT_LOG_PATH))
    if mailer is not None and settings.ADMIN_EMAIL:
        sinks.append(MailAlertSink(mailer, settings.ADMIN_EMAIL))
    return sinks[0] if len(sinks) == 1 else FanOutAlertSink(sinks)


def build_credentials(
    settings: Settings, alert_sink: AlertSink
) -> dict[str, CredentialManager]:
    """Create one credential manager per configured destination.

    Args:
        settings: Application settings
        alert_sink: Receives credential_degraded alerts

    Returns:
        Managers keyed by destination name ("dropbox", "drive")
    """
    managers: dict[str, CredentialManager] = {}
    common = dict(
        refresh_interval=settings.TOKEN_REFRESH_INTERVAL,
        max_consecutive_failures=settings.TOKEN_MAX_FAILURES,
        refresh_timeout=settings.TOKEN_REFRESH_TIMEOUT,
        alert_sink=alert_sink,
    )
    if settings.dropbox_configured:
        managers["dropbox"] = CredentialManager(
            "dropbox",
            OAuthRefresher(
                DROPBOX_TOKEN_URL,
                settings.DROPBOX_REFRESH_TOKEN,
                settings.DROPBOX_APP_KEY,
                settings.DROPBOX_APP_SECRET,
            ),
            state=CredentialState(access_token=settings.DROPBOX_TOKEN),
            **common,
        )
    if settings.drive_configured:
        managers["drive"] = CredentialManager(
            "drive",
            OAuthRefresher(
                GOOGLE_TOKEN_URL,
                settings.DRIVE_REFRESH_TOKEN,
                settings.DRIVE_CLIENT_ID,
                settings.DRIVE_CLIENT_SECRET,
            ),
            **common,
        )
    return managers


def build_destinations(
    settings: Settings, credentials: dict[str, CredentialManager]
) -> list[Destination]:
    """Create a destination for every configured credential manager.

    Args:
        settings: Application settings
        credentials: Managers from build_credentials()

    Returns:
        Destinations to be entered as async context managers
    """
    destinations: list[Destination] = []
    if "dropbox" in credentials:
        destinations.append(DropboxDestination(credentials["dropbox"], root=settings.DROPBOX_ROOT))
    if "drive" in credentials:
        destinations.append(
            GoogleDriveDestination(credentials["drive"], settings.DRIVE_PARENT_FOLDER_ID)
        )
    return destinations


def resolve_expected(expected: int | None, remaining: int | None, capacity: int) -> int:
    """Pick the expected count from --expected, or derive it from --remaining.

    Raises:
        typer.BadParameter: If neither option is usable
    """
    if expected is not None:
        if expected < 0:
            raise typer.BadParameter("--expected must be >= 0")
        return expected
    if remaining is None:
        raise typer.BadParameter("Provide --expected or --remaining")
    count, anomaly = expected_count_from_remaining(remaining, capacity)
    if anomaly:
        console.print(
            f"[yellow]Remaining {remaining} is outside capacity {capacity}, "
            f"using {count}[/yellow]"
        )
    return count


def parse_session(address: str, album: int) -> Session:
    """Build a Session from CLI arguments, reporting invalid input as a usage error."""
    try:
        return Session(address, album)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e


def print_verification(result: VerificationResult) -> None:
    """Print a verification summary."""
    colour = "green" if result.complete else "red"
    console.print("\n[bold]Verification:[/bold]")
    console.print(f"  Prefix: {result.prefix}")
    console.print(f"  [{colour}]Verdict: {result.verdict.value}[/{colour}]")
    console.print(f"  Found: {result.matched_count}/{result.expected_count}")
    console.print(f"  Polls: {result.elapsed_polls}")


def print_pipeline(result: PipelineResult) -> None:
    """Print the verification summary and a table of unsuccessful outcomes."""
    print_verification(result.verification)
    if result.report is None:
        console.print("\n[yellow]Nothing was replicated[/yellow]")
        return

    report = result.report
    console.print("\n[bold]Replication Summary:[/bold]")
    console.print(f"  [green]Uploaded: {len(report.succeeded)}[/green]")
    console.print(f"  [red]Failed: {len(report.failed)}[/red]")
    console.print(f"  Skipped: {len(report.skipped)}")

    problems = [o for o in report.outcomes if not o.success]
    if problems:
        table = Table("Destination", "Item", "Status", "Error")
        for outcome in problems:
            table.add_row(
                outcome.destination, outcome.item_path, outcome.status.value, outcome.error or ""
            )
        console.print(table)


async def async_verify(
    settings: Settings, session: Session, expected: int, max_wait: float, poll_interval: float
) -> int:
    """Async verify implementation.

    Returns:
        Exit code (0 when complete, 1 otherwise)
    """
    logger = logging.getLogger(__name__)
    try:
        async with GCSItemStore(settings.STORE_BUCKET, settings.STORE_TOKEN) as store:
            verifier = CompletionVerifier(store, poll_interval=poll_interval, max_wait=max_wait)
            result = await verifier.verify(session, expected)
    except Exception as e:
        logger.error(f"Verification failed: {e}", exc_info=True)
        return 1

    print_verification(result)
    return 0 if result.complete else 1


async def async_complete(
    settings: Settings, session: Session, expected: int, metadata: dict
) -> int:
    """Run the whole pipeline in the foreground.

    Returns:
        Exit code (0 for success, 1 if the store refused the session, verification
        was incomplete or uploads failed)
    """
    logger = logging.getLogger(__name__)
    mailer = build_mailer(settings)
    alert_sink = build_alert_sink(settings, mailer)
    credentials = build_credentials(settings, alert_sink)

    try:
        async with AsyncExitStack() as stack:
            store = await stack.enter_async_context(
                GCSItemStore(settings.STORE_BUCKET, settings.STORE_TOKEN)
            )
            destinations = [
                await stack.enter_async_context(d)
                for d in build_destinations(settings, credentials)
            ]
            if not destinations:
                logger.warning("No destinations configured, verification only")

            pipeline = CompletionPipeline(
                CompletionVerifier(
                    store, poll_interval=settings.POLL_INTERVAL, max_wait=settings.MAX_WAIT
                ),
                ReplicationDispatcher(
                    store,
                    max_attempts=settings.MAX_ATTEMPTS,
                    backoff_initial=settings.BACKOFF_INITIAL,
                    backoff_max=settings.BACKOFF_MAX,
                    default_rate_limit_delay=settings.RATE_LIMIT_DELAY,
                    inter_item_delay=settings.INTER_ITEM_DELAY,
                ),
                destinations,
                alert_sink,
                TaskRunner(settings.MAX_CONCURRENT_PIPELINES),
                mailer=mailer,
                notify_recipient=settings.FOUNDER_EMAIL,
                capacity=settings.ROLL_CAPACITY,
                download_base_url=settings.DOWNLOAD_BASE_URL,
                bucket=settings.STORE_BUCKET,
            )
            ack = await pipeline.acknowledge(
                session.raw_id, session.album_index, expected, metadata
            )
            if not ack.accepted:
                console.print(f"[red]Completion refused: {ack.error}[/red]")
                return 1
            result = await pipeline.runner.wait(ack.task_id)
    except Exception as e:
        logger.error(f"Pipeline failed: {e}", exc_info=True)
        return 1

    if result is None:
        console.print("[red]Pipeline crashed, see the alert log for details[/red]")
        return 1
    print_pipeline(result)
    if not result.verification.complete:
        return 1
    if result.report is not None and result.report.has_failures:
        return 1
    return 0


async def async_refresh(settings: Settings, destination: str) -> int:
    """Refresh one destination's token right away.

    Returns:
        Exit code (0 for success, 1 if unconfigured or the refresh failed)
    """
    credentials = build_credentials(settings, LogAlertSink())
    manager = credentials.get(destination)
    if manager is None:
        console.print(f"[red]Error: {destination} credentials are not configured[/red]")
        return 1
    try:
        await manager.refresh_now()
    except RefreshError as e:
        console.print(f"[red]Refresh failed: {e}[/red]")
        return 1
    console.print(f"[green]{destination} token refreshed[/green]")
    return 0


@app.command()
def verify(
    address: str = typer.Argument(..., help="Session identifier (address) to verify"),
    album: int = typer.Option(1, "--album", "-a", min=1, help="Album index"),
    expected: int = typer.Option(None, "--expected", "-e", help="Expected number of photos"),
    remaining: int = typer.Option(
        None, "--remaining", "-r", help="Remaining-shot counter reported by the client"
    ),
    max_wait: float = typer.Option(None, "--max-wait", help="Seconds to wait before giving up"),
    poll_interval: float = typer.Option(None, "--poll-interval", help="Seconds between listings"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Wait until ADDRESS holds the expected number of photos in the primary store."""
    setup_logging(verbose)
    settings = get_settings()
    if not settings.STORE_BUCKET:
        console.print("[red]Error: STORE_BUCKET is required.[/red]")
        raise typer.Exit(1)

    count = resolve_expected(expected, remaining, settings.ROLL_CAPACITY)
    exit_code = asyncio.run(
        async_verify(
            settings,
            parse_session(address, album),
            count,
            settings.MAX_WAIT if max_wait is None else max_wait,
            settings.POLL_INTERVAL if poll_interval is None else poll_interval,
        )
    )
    raise typer.Exit(exit_code)


@app.command()
def complete(
    address: str = typer.Argument(..., help="Session identifier (address) that finished"),
    album: int = typer.Option(1, "--album", "-a", min=1, help="Album index"),
    expected: int = typer.Option(None, "--expected", "-e", help="Expected number of photos"),
    remaining: int = typer.Option(
        None, "--remaining", "-r", help="Remaining-shot counter reported by the client"
    ),
    skip_to_print: bool = typer.Option(
        False, "--skip-to-print", help="Client skipped the rest of the roll"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Verify ADDRESS and replicate its photos to every configured destination."""
    setup_logging(verbose)
    settings = get_settings()
    if not settings.STORE_BUCKET:
        console.print("[red]Error: STORE_BUCKET is required.[/red]")
        raise typer.Exit(1)

    count = resolve_expected(expected, remaining, settings.ROLL_CAPACITY)
    exit_code = asyncio.run(
        async_complete(
            settings, parse_session(address, album), count, {"skipToPrint": skip_to_print}
        )
    )
    raise typer.Exit(exit_code)


@app.command("refresh-token")
def refresh_token(
    destination: str = typer.Argument(..., help="Destination name: dropbox or drive"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Refresh a destination's access token once and report the result."""
    setup_logging(verbose)
    exit_code = asyncio.run(async_refresh(get_settings(), destination))
    raise typer.Exit(exit_code)


if __name__ == "__main__":
    app()
