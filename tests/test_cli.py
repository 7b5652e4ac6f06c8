"""Black-box tests for CLI entry point."""

import re
from collections.abc import Iterator

import pytest
from pytest_httpx import HTTPXMock
from typer.testing import CliRunner

from photo_replicator.cli import app
from photo_replicator.config import Settings, get_settings

runner = CliRunner()

LIST_URL = re.compile(r"https://storage\.googleapis\.com/storage/v1/b/bucket/o(\?.*)?$")


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Isolate every test from the caller's environment and cached settings."""
    for name in Settings.model_fields:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("POLL_INTERVAL", "0.01")
    monkeypatch.setenv("MAX_WAIT", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def listing(*names: str) -> dict:
    return {"items": [{"name": n, "size": "3", "contentType": "image/jpeg"} for n in names]}


class TestCLI:
    """Test command-line interface."""

    def test_cli_help(self) -> None:
        """Test CLI help output."""
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        assert "Verify completed photo sessions" in result.stdout

    def test_verify_requires_bucket(self) -> None:
        result = runner.invoke(app, ["verify", "12 AB34CD", "--expected", "5"])

        assert result.exit_code == 1
        assert "STORE_BUCKET is required" in result.stdout

    def test_verify_requires_a_count(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STORE_BUCKET", "bucket")

        result = runner.invoke(app, ["verify", "12 AB34CD"])

        assert result.exit_code == 2

    def test_verify_rejects_blank_address(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STORE_BUCKET", "bucket")

        result = runner.invoke(app, ["verify", "  ", "--expected", "1"])

        assert result.exit_code == 2

    def test_verify_complete(
        self, monkeypatch: pytest.MonkeyPatch, httpx_mock: HTTPXMock
    ) -> None:
        monkeypatch.setenv("STORE_BUCKET", "bucket")
        httpx_mock.add_response(
            method="GET",
            url=LIST_URL,
            json=listing("12_AB34CD/album-1/1-a.jpg", "12_AB34CD/album-1/2-b.jpg"),
        )

        result = runner.invoke(app, ["verify", "12 AB34CD", "--remaining", "28"])

        assert result.exit_code == 0
        assert "Verdict: complete" in result.stdout
        assert "Found: 2/2" in result.stdout
        assert httpx_mock.get_requests()[0].url.params["prefix"] == "12_AB34CD/album-1/"

    def test_complete_without_destinations(
        self, monkeypatch: pytest.MonkeyPatch, httpx_mock: HTTPXMock
    ) -> None:
        monkeypatch.setenv("STORE_BUCKET", "bucket")
        for _ in range(2):
            httpx_mock.add_response(
                method="GET", url=LIST_URL, json=listing("S1/album-2/1-a.jpg")
            )

        result = runner.invoke(app, ["complete", "S1", "--album", "2", "--expected", "1"])

        assert result.exit_code == 0
        assert "Nothing was replicated" in result.stdout

    def test_complete_refused_when_store_rejects_listing(
        self, monkeypatch: pytest.MonkeyPatch, httpx_mock: HTTPXMock
    ) -> None:
        monkeypatch.setenv("STORE_BUCKET", "bucket")
        httpx_mock.add_response(method="GET", url=LIST_URL, status_code=403, text="denied")

        result = runner.invoke(app, ["complete", "S1", "--expected", "1"])

        assert result.exit_code == 1
        assert "Completion refused" in result.stdout
        assert len(httpx_mock.get_requests()) == 1

    def test_refresh_token_unconfigured(self) -> None:
        result = runner.invoke(app, ["refresh-token", "dropbox"])

        assert result.exit_code == 1
        assert "dropbox credentials are not configured" in result.stdout

    def test_refresh_token(self, monkeypatch: pytest.MonkeyPatch, httpx_mock: HTTPXMock) -> None:
        monkeypatch.setenv("DROPBOX_REFRESH_TOKEN", "refresh")
        monkeypatch.setenv("DROPBOX_APP_KEY", "key")
        monkeypatch.setenv("DROPBOX_APP_SECRET", "secret")
        httpx_mock.add_response(
            method="POST",
            url="https://api.dropboxapi.com/oauth2/token",
            json={"access_token": "new"},
        )

        result = runner.invoke(app, ["refresh-token", "dropbox"])

        assert result.exit_code == 0
        assert "dropbox token refreshed" in result.stdout

    def test_refresh_token_rejected(
        self, monkeypatch: pytest.MonkeyPatch, httpx_mock: HTTPXMock
    ) -> None:
        monkeypatch.setenv("DROPBOX_REFRESH_TOKEN", "refresh")
        monkeypatch.setenv("DROPBOX_APP_KEY", "key")
        monkeypatch.setenv("DROPBOX_APP_SECRET", "secret")
        httpx_mock.add_response(
            method="POST",
            url="https://api.dropboxapi.com/oauth2/token",
            status_code=400,
            json={"error": "invalid_grant"},
        )

        result = runner.invoke(app, ["refresh-token", "dropbox"])

        assert result.exit_code == 1
        assert "Refresh failed" in result.stdout
