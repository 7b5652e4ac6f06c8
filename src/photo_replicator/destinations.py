"""Replication destinations: Dropbox and Google Drive clients using httpx."""

import json
import logging
import uuid
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from photo_replicator.credentials import CredentialManager
from photo_replicator.models import Session

logger = logging.getLogger(__name__)

DROPBOX_CONTENT_URL = "https://content.dropboxapi.com/2"
DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
DRIVE_FOLDER_MIME = "application/vnd.google-apps.folder"


class DestinationAPIError(Exception):
    """Base exception for destination API errors."""

    pass


class RateLimitError(DestinationAPIError):
    """Exception raised when the destination asks us to slow down."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ServerError(DestinationAPIError):
    """Exception raised for 5xx server errors and network failures."""

    pass


class CredentialError(DestinationAPIError):
    """Exception raised when no usable token exists or the token was rejected."""

    pass


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class Destination:
    """Base class for token-authenticated replication targets."""

    name = "destination"

    def __init__(self, credentials: CredentialManager) -> None:
        self.credentials = credentials
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "Destination":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(timeout=60.0)
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
        self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the httpx AsyncClient instance.

        Raises:
            RuntimeError: If the destination is used outside of async context manager
        """
        if self._client is None:
            raise RuntimeError("Destination must be used within async context manager")
        return self._client

    def should_attempt(self) -> bool:
        """Return False once the credentials have degraded."""
        return self.credentials.should_attempt()

    async def resolve_container(self, session: Session) -> str:
        """Find or create the remote container for a session's album."""
        raise NotImplementedError

    def destination_path(self, container: str, filename: str) -> str:
        """Human-readable remote path an item lands at."""
        raise NotImplementedError

    def release_container(self, container: str) -> None:
        """Forget anything cached for a container once a run is done with it."""

    async def upload(
        self, data: bytes, container: str, filename: str, content_type: str
    ) -> str:
        """Upload one item, returning the remote identifier or path."""
        raise NotImplementedError

    async def _token(self) -> str:
        token = await self.credentials.get_valid_token()
        if not token:
            raise CredentialError(f"No {self.name} access token available")
        return token

    def _parse_json_response(
        self, response: httpx.Response, context: str
    ) -> dict[str, Any]:
        """Parse JSON response, handling non-JSON responses gracefully.

        Raises:
            ServerError: If response is 5xx with non-JSON body
        """
        try:
            return response.json()
        except ValueError:
            if response.status_code >= 500:
                logger.warning(f"Server returned non-JSON response while {context}, will retry")
                raise ServerError(
                    f"Server error {response.status_code}: {response.text[:200]}"
                )
            return {"error_summary": response.text[:200]}

    def _handle_error_response(
        self, response: httpx.Response, result: dict[str, Any], context: str
    ) -> None:
        raise NotImplementedError


class DropboxDestination(Destination):
    """Token-based remote storage. Parent folders are created implicitly on upload."""

    name = "dropbox"

    def __init__(self, credentials: CredentialManager, root: str = "/import") -> None:
        """Initialize Dropbox destination.

        Args:
            credentials: Manager owning the Dropbox access token
            root: Dropbox folder all sessions are replicated under
        """
        super().__init__(credentials)
        self.root = "/" + root.strip("/") if root.strip("/") else ""

    async def resolve_container(self, session: Session) -> str:
        return f"{self.root}/{session.key}/album{session.album_index}"

    def destination_path(self, container: str, filename: str) -> str:
        return f"{container}/{filename}"

    async def upload(
        self, data: bytes, container: str, filename: str, content_type: str
    ) -> str:
        """Upload bytes, asking Dropbox to rename rather than overwrite on conflict.

        Raises:
            RateLimitError: If Dropbox reports too many requests or write operations
            ServerError: On 5xx responses or network errors
            CredentialError: If the token is missing or was rejected
            DestinationAPIError: For other rejections
        """
        path = self.destination_path(container, filename)
        token = await self._token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/octet-stream",
            "Dropbox-API-Arg": json.dumps(
                {"path": path, "mode": "add", "autorename": True, "mute": False}
            ),
        }
        try:
            response = await self.client.post(
                f"{DROPBOX_CONTENT_URL}/files/upload", headers=headers, content=data
            )
        except httpx.RequestError as e:
            logger.warning(f"Network error while uploading {path}, will retry: {e}")
            raise ServerError(f"Network error: {e}") from e

        result = self._parse_json_response(response, f"uploading {path}")
        if response.status_code >= 400:
            self._handle_error_response(response, result, f"uploading {path}")

        uploaded = result.get("path_display", path)
        logger.debug(f"Uploaded {filename} to Dropbox as {uploaded}")
        return uploaded

    def _handle_error_response(
        self, response: httpx.Response, result: dict[str, Any], context: str
    ) -> None:
        """Classify a Dropbox error response.

        Raises:
            RateLimitError: On 429 or a too_many_* error summary
            CredentialError: On 401
            ServerError: On 5xx
            DestinationAPIError: For other errors
        """
        status_code = response.status_code
        summary = str(result.get("error_summary", result))
        error = result.get("error") or {}

        if status_code == 429 or summary.startswith("too_many_"):
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            if retry_after is None and isinstance(error, dict):
                retry_after = error.get("retry_after")
            logger.warning(f"Dropbox rate limit while {context}, retry after {retry_after}s")
            raise RateLimitError(
                f"Dropbox rate limit exceeded: {summary}", retry_after=retry_after
            )

        if status_code == 401:
            self.credentials.invalidate()
            raise CredentialError(f"Dropbox rejected the access token: {summary}")

        if status_code >= 500:
            logger.warning(f"Dropbox server error while {context}, will retry")
            raise ServerError(f"Dropbox server error {status_code}: {summary}")

        error_msg = f"Dropbox API error while {context}: {summary}"
        logger.error(error_msg)
        raise DestinationAPIError(error_msg)


class GoogleDriveDestination(Destination):
    """Folder-based remote storage. Session folders are found or created before upload."""

    name = "drive"

    def __init__(self, credentials: CredentialManager, parent_folder_id: str) -> None:
        """Initialize Drive destination.

        Args:
            credentials: Manager owning the Google access token
            parent_folder_id: Drive folder that holds one sub-folder per session album
        """
        super().__init__(credentials)
        self.parent_folder_id = parent_folder_id
        self._folder_names: dict[str, str] = {}

    async def resolve_container(self, session: Session) -> str:
        """Return the id of the "<key>/album<n>" folder, creating folders as needed."""
        session_folder = await self._find_or_create_folder(session.key, self.parent_folder_id)
        album_name = f"album{session.album_index}"
        album_folder = await self._find_or_create_folder(album_name, session_folder)
        self._folder_names[album_folder] = f"{session.key}/{album_name}"
        return album_folder

    def destination_path(self, container: str, filename: str) -> str:
        return f"{self._folder_names.get(container, container)}/{filename}"

    def release_container(self, container: str) -> None:
        self._folder_names.pop(container, None)

    async def upload(
        self, data: bytes, container: str, filename: str, content_type: str
    ) -> str:
        """Upload bytes as a new file; Drive keeps same-named files side by side.

        Raises:
            RateLimitError: On 429 or a rate-limit reason on 403
            ServerError: On 5xx responses or network errors
            CredentialError: If the token is missing or was rejected
            DestinationAPIError: For other rejections
        """
        metadata = {"name": filename, "parents": [container]}
        boundary = uuid.uuid4().hex
        body = (
            f"--{boundary}\r\n"
            "Content-Type: application/json; charset=UTF-8\r\n\r\n"
            f"{json.dumps(metadata)}\r\n"
            f"--{boundary}\r\n"
            f"Content-Type: {content_type}\r\n\r\n"
        ).encode() + data + f"\r\n--{boundary}--\r\n".encode()

        result = await self._request(
            "POST",
            f"{DRIVE_UPLOAD_URL}/files",
            f"uploading {filename}",
            params={"uploadType": "multipart", "fields": "id,name"},
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            content=body,
        )
        file_id = result["id"]
        logger.debug(f"Uploaded {filename} to Drive folder {container}, file ID: {file_id}")
        return file_id

    async def _find_or_create_folder(self, name: str, parent_id: str) -> str:
        escaped = name.replace("\\", "\\\\").replace("'", "\\'")
        query = (
            f"name = '{escaped}' and mimeType = '{DRIVE_FOLDER_MIME}' "
            f"and '{parent_id}' in parents and trashed = false"
        )
        found = await self._request(
            "GET",
            f"{DRIVE_API_URL}/files",
            f"looking up folder '{name}'",
            params={"q": query, "fields": "files(id,name)", "pageSize": "1"},
        )
        files = found.get("files", [])
        if files:
            return files[0]["id"]

        created = await self._request(
            "POST",
            f"{DRIVE_API_URL}/files",
            f"creating folder '{name}'",
            params={"fields": "id"},
            json={"name": name, "mimeType": DRIVE_FOLDER_MIME, "parents": [parent_id]},
        )
        logger.info(f"Created Drive folder '{name}' with ID: {created['id']}")
        return created["id"]

    async def _request(
        self, method: str, url: str, context: str, **kwargs: Any
    ) -> dict[str, Any]:
        token = await self._token()
        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as e:
            logger.warning(f"Network error while {context}, will retry: {e}")
            raise ServerError(f"Network error: {e}") from e

        result = self._parse_json_response(response, context)
        if response.status_code >= 400:
            self._handle_error_response(response, result, context)
        return result

    def _handle_error_response(
        self, response: httpx.Response, result: dict[str, Any], context: str
    ) -> None:
        """Classify a Drive error response.

        Raises:
            RateLimitError: On 429 or a rate-limit reason on 403
            CredentialError: On 401
            ServerError: On 5xx
            DestinationAPIError: For other errors
        """
        status_code = response.status_code
        error = result.get("error") if isinstance(result.get("error"), dict) else {}
        message = error.get("message", str(result))
        reasons = {e.get("reason") for e in error.get("errors", []) if isinstance(e, dict)}

        if status_code == 429 or (
            status_code == 403 and reasons & {"rateLimitExceeded", "userRateLimitExceeded"}
        ):
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(f"Drive rate limit while {context}, retry after {retry_after}s")
            raise RateLimitError(f"Drive rate limit exceeded: {message}", retry_after=retry_after)

        if status_code == 401:
            self.credentials.invalidate()
            raise CredentialError(f"Drive rejected the access token: {message}")

        if status_code >= 500:
            logger.warning(f"Drive server error while {context}, will retry")
            raise ServerError(f"Drive server error {status_code}: {message}")

        error_msg = f"Drive API error while {context}: {message}"
        logger.error(error_msg)
        raise DestinationAPIError(error_msg)
