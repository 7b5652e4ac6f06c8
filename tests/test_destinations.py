"""White-box tests for destination clients and their error classification."""

import json
import re

import httpx
import pytest
from pytest_httpx import HTTPXMock

from conftest import fresh_credentials
from photo_replicator.credentials import TokenState
from photo_replicator.destinations import (
    CredentialError,
    DestinationAPIError,
    DropboxDestination,
    GoogleDriveDestination,
    RateLimitError,
    ServerError,
    parse_retry_after,
)
from photo_replicator.models import Session

DROPBOX_UPLOAD_URL = "https://content.dropboxapi.com/2/files/upload"
DRIVE_FILES_URL = re.compile(r"https://www\.googleapis\.com/drive/v3/files(\?.*)?$")
DRIVE_UPLOAD_URL = re.compile(r"https://www\.googleapis\.com/upload/drive/v3/files(\?.*)?$")


def test_parse_retry_after() -> None:
    assert parse_retry_after("5") == 5.0
    assert parse_retry_after("0.5") == 0.5
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


@pytest.mark.asyncio
class TestDropboxDestination:
    """Test Dropbox uploads."""

    async def test_container_and_path(self) -> None:
        destination = DropboxDestination(fresh_credentials(), root="/import/")

        container = await destination.resolve_container(Session("S1"))

        assert container == "/import/S1/album1"
        assert destination.destination_path(container, "p1.jpg") == "/import/S1/album1/p1.jpg"

    async def test_empty_root(self) -> None:
        destination = DropboxDestination(fresh_credentials(), root="")

        assert await destination.resolve_container(Session("S1", 2)) == "/S1/album2"

    async def test_upload_success(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=DROPBOX_UPLOAD_URL,
            json={"path_display": "/import/S1/album1/p1 (1).jpg", "id": "id:abc"},
        )

        async with DropboxDestination(fresh_credentials()) as destination:
            result = await destination.upload(b"jpeg", "/import/S1/album1", "p1.jpg", "image/jpeg")

        assert result == "/import/S1/album1/p1 (1).jpg"
        request = httpx_mock.get_requests()[0]
        assert request.headers["Authorization"] == "Bearer test_access_token_123"
        assert request.headers["Content-Type"] == "application/octet-stream"
        assert json.loads(request.headers["Dropbox-API-Arg"]) == {
            "path": "/import/S1/album1/p1.jpg",
            "mode": "add",
            "autorename": True,
            "mute": False,
        }
        assert request.content == b"jpeg"

    async def test_rate_limit_header(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=DROPBOX_UPLOAD_URL,
            status_code=429,
            headers={"Retry-After": "5"},
            text="too_many_requests",
        )

        async with DropboxDestination(fresh_credentials()) as destination:
            with pytest.raises(RateLimitError) as exc_info:
                await destination.upload(b"jpeg", "/import/S1/album1", "p1.jpg", "image/jpeg")

        assert exc_info.value.retry_after == 5.0

    async def test_rate_limit_body(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=DROPBOX_UPLOAD_URL,
            status_code=429,
            json={
                "error_summary": "too_many_write_operations/",
                "error": {"reason": {".tag": "too_many_write_operations"}, "retry_after": 2},
            },
        )

        async with DropboxDestination(fresh_credentials()) as destination:
            with pytest.raises(RateLimitError) as exc_info:
                await destination.upload(b"jpeg", "/c", "p1.jpg", "image/jpeg")

        assert exc_info.value.retry_after == 2

    async def test_expired_token_invalidates_credentials(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=DROPBOX_UPLOAD_URL,
            status_code=401,
            json={"error_summary": "expired_access_token/"},
        )
        credentials = fresh_credentials()

        async with DropboxDestination(credentials) as destination:
            with pytest.raises(CredentialError):
                await destination.upload(b"jpeg", "/c", "p1.jpg", "image/jpeg")

        assert credentials.state is TokenState.STALE

    async def test_server_error(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST", url=DROPBOX_UPLOAD_URL, status_code=503, text="<html>down</html>"
        )

        async with DropboxDestination(fresh_credentials()) as destination:
            with pytest.raises(ServerError):
                await destination.upload(b"jpeg", "/c", "p1.jpg", "image/jpeg")

    async def test_network_error_is_retryable(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_exception(httpx.ConnectError("boom"), url=DROPBOX_UPLOAD_URL)

        async with DropboxDestination(fresh_credentials()) as destination:
            with pytest.raises(ServerError, match="Network error"):
                await destination.upload(b"jpeg", "/c", "p1.jpg", "image/jpeg")

    async def test_permanent_error(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=DROPBOX_UPLOAD_URL,
            status_code=409,
            json={"error_summary": "path/insufficient_space/"},
        )

        async with DropboxDestination(fresh_credentials()) as destination:
            with pytest.raises(DestinationAPIError) as exc_info:
                await destination.upload(b"jpeg", "/c", "p1.jpg", "image/jpeg")

        assert not isinstance(exc_info.value, (RateLimitError, ServerError, CredentialError))
        assert "insufficient_space" in str(exc_info.value)

    async def test_missing_token(self) -> None:
        credentials = fresh_credentials()
        credentials.credential.access_token = None
        credentials.credential.degraded = True
        credentials.credential.consecutive_failures = 3

        async with DropboxDestination(credentials) as destination:
            with pytest.raises(CredentialError, match="No dropbox access token"):
                await destination.upload(b"jpeg", "/c", "p1.jpg", "image/jpeg")

    async def test_outside_context_manager(self) -> None:
        destination = DropboxDestination(fresh_credentials())

        with pytest.raises(RuntimeError, match="async context manager"):
            await destination.upload(b"jpeg", "/c", "p1.jpg", "image/jpeg")


@pytest.mark.asyncio
class TestGoogleDriveDestination:
    """Test Drive folder resolution and uploads."""

    async def test_resolve_finds_and_creates_folders(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="GET", url=DRIVE_FILES_URL, json={"files": [{"id": "session_folder"}]}
        )
        httpx_mock.add_response(method="GET", url=DRIVE_FILES_URL, json={"files": []})
        httpx_mock.add_response(method="POST", url=DRIVE_FILES_URL, json={"id": "album_folder"})

        async with GoogleDriveDestination(fresh_credentials(), "root_folder") as destination:
            container = await destination.resolve_container(Session("12 AB34CD"))

        assert container == "album_folder"
        assert destination.destination_path(container, "p.jpg") == "12_AB34CD/album1/p.jpg"
        destination.release_container(container)
        assert destination.destination_path(container, "p.jpg") == "album_folder/p.jpg"

        lookup, album_lookup, create = httpx_mock.get_requests()
        assert "'root_folder' in parents" in lookup.url.params["q"]
        assert "name = '12_AB34CD'" in lookup.url.params["q"]
        assert "'session_folder' in parents" in album_lookup.url.params["q"]
        assert json.loads(create.content) == {
            "name": "album1",
            "mimeType": "application/vnd.google-apps.folder",
            "parents": ["session_folder"],
        }

    async def test_upload_success(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST", url=DRIVE_UPLOAD_URL, json={"id": "file_1", "name": "p.jpg"}
        )

        async with GoogleDriveDestination(fresh_credentials(), "root") as destination:
            file_id = await destination.upload(b"jpegdata", "album_folder", "p.jpg", "image/jpeg")

        assert file_id == "file_1"
        request = httpx_mock.get_requests()[0]
        assert request.url.params["uploadType"] == "multipart"
        assert request.headers["Content-Type"].startswith("multipart/related; boundary=")
        assert b'"parents": ["album_folder"]' in request.content
        assert b"Content-Type: image/jpeg" in request.content
        assert b"jpegdata" in request.content

    async def test_rate_limit_on_403(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=DRIVE_UPLOAD_URL,
            status_code=403,
            json={
                "error": {
                    "code": 403,
                    "message": "User rate limit exceeded.",
                    "errors": [{"reason": "userRateLimitExceeded"}],
                }
            },
        )

        async with GoogleDriveDestination(fresh_credentials(), "root") as destination:
            with pytest.raises(RateLimitError) as exc_info:
                await destination.upload(b"x", "f", "p.jpg", "image/jpeg")

        assert exc_info.value.retry_after is None

    async def test_forbidden_is_permanent(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=DRIVE_UPLOAD_URL,
            status_code=403,
            json={
                "error": {
                    "code": 403,
                    "message": "Insufficient permissions",
                    "errors": [{"reason": "insufficientFilePermissions"}],
                }
            },
        )

        async with GoogleDriveDestination(fresh_credentials(), "root") as destination:
            with pytest.raises(DestinationAPIError, match="Insufficient permissions"):
                await destination.upload(b"x", "f", "p.jpg", "image/jpeg")

    async def test_unauthorized(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="GET",
            url=DRIVE_FILES_URL,
            status_code=401,
            json={"error": {"code": 401, "message": "Invalid Credentials"}},
        )
        credentials = fresh_credentials()

        async with GoogleDriveDestination(credentials, "root") as destination:
            with pytest.raises(CredentialError):
                await destination.resolve_container(Session("S1"))

        assert credentials.state is TokenState.STALE
