"""Photo Replicator - verify completed photo sessions and replicate them to remote storage."""

__version__ = "0.1.0"

from photo_replicator.alerts import AlertSink, JsonlAlertSink, LogAlertSink
from photo_replicator.credentials import CredentialManager, CredentialState, OAuthRefresher
from photo_replicator.destinations import DropboxDestination, GoogleDriveDestination
from photo_replicator.dispatcher import ReplicationDispatcher
from photo_replicator.models import (
    DispatchReport,
    Item,
    Session,
    VerificationResult,
    Verdict,
)
from photo_replicator.pipeline import CompletionPipeline, TaskRunner
from photo_replicator.store import GCSItemStore, ItemStore
from photo_replicator.utils import storage_safe_key
from photo_replicator.verifier import CompletionVerifier

__all__ = [
    "AlertSink",
    "JsonlAlertSink",
    "LogAlertSink",
    "CredentialManager",
    "CredentialState",
    "OAuthRefresher",
    "DropboxDestination",
    "GoogleDriveDestination",
    "ReplicationDispatcher",
    "DispatchReport",
    "Item",
    "Session",
    "VerificationResult",
    "Verdict",
    "CompletionPipeline",
    "TaskRunner",
    "GCSItemStore",
    "ItemStore",
    "storage_safe_key",
    "CompletionVerifier",
]
