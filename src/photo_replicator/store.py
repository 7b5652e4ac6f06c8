"""Primary object store adapter backed by the Google Cloud Storage JSON API."""

import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from photo_replicator.models import Item

logger = logging.getLogger(__name__)

GCS_API_BASE_URL = "https://storage.googleapis.com/storage/v1"
GCS_PUBLIC_BASE_URL = "https://storage.googleapis.com"


class StoreError(Exception):
    """Base exception for primary store errors."""

    pass


class StoreUnavailableError(StoreError):
    """Exception raised when the store cannot be reached at all."""

    pass


@runtime_checkable
class ItemStore(Protocol):
    """Capabilities the pipeline needs from the primary store."""

    async def list_items(self, prefix: str) -> list[Item]: ...

    async def list_top_level(self) -> list[str]: ...

    async def read_bytes(self, path: str) -> bytes: ...

    def public_url(self, path: str) -> str: ...


class GCSItemStore:
    """Read-only adapter over a GCS (Firebase Storage) bucket using httpx."""

    def __init__(self, bucket: str, access_token: str | None = None) -> None:
        """Initialize store adapter.

        Args:
            bucket: Bucket name, e.g. "my-app.firebasestorage.app"
            access_token: Optional OAuth bearer token for private buckets
        """
        self.bucket = bucket
        self.access_token = access_token
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        """Get the base URL for object requests."""
        return f"{GCS_API_BASE_URL}/b/{self.bucket}/o"

    async def __aenter__(self) -> "GCSItemStore":
        """Async context manager entry."""
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        self._client = httpx.AsyncClient(timeout=30.0, headers=headers)
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
            RuntimeError: If the store is used outside of async context manager
        """
        if self._client is None:
            raise RuntimeError("Store must be used within async context manager")
        return self._client

    async def list_items(self, prefix: str) -> list[Item]:
        """List items under a prefix, skipping folder placeholder objects.

        Args:
            prefix: Object name prefix, normally ending in "/"

        Returns:
            Items sorted by path
        """
        items: list[Item] = []
        async for page in self._pages({"prefix": prefix}):
            for obj in page.get("items", []):
                name = obj["name"]
                if name == prefix or name.endswith("/"):
                    continue
                items.append(_item_from_object(obj))
        items.sort(key=lambda item: item.path)
        return items

    async def list_top_level(self) -> list[str]:
        """List top-level "folder" names of the bucket, without trailing slash."""
        names: list[str] = []
        async for page in self._pages({"delimiter": "/"}):
            names.extend(p.rstrip("/") for p in page.get("prefixes", []))
        return sorted(names)

    @retry(
        retry=retry_if_exception_type(StoreUnavailableError),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def read_bytes(self, path: str) -> bytes:
        """Download an object's content.

        Raises:
            StoreError: If the object is missing or the request is rejected
            StoreUnavailableError: If the store cannot be reached
        """
        url = f"{self.base_url}/{quote(path, safe='')}"
        try:
            response = await self.client.get(url, params={"alt": "media"})
        except httpx.RequestError as e:
            logger.warning(f"Network error while reading {path}, will retry: {e}")
            raise StoreUnavailableError(f"Network error: {e}") from e

        self._check_response(response, f"reading {path}")
        return response.content

    def public_url(self, path: str) -> str:
        return f"{GCS_PUBLIC_BASE_URL}/{self.bucket}/{quote(path)}"

    async def _pages(self, params: dict[str, str]) -> AsyncIterator[dict[str, Any]]:
        """Yield JSON listing pages, following nextPageToken."""
        page_token: str | None = None
        while True:
            query = dict(params)
            if page_token:
                query["pageToken"] = page_token
            page = await self._list_page(query)
            yield page
            page_token = page.get("nextPageToken")
            if not page_token:
                return

    @retry(
        retry=retry_if_exception_type(StoreUnavailableError),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _list_page(self, params: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self.client.get(self.base_url, params=params)
        except httpx.RequestError as e:
            logger.warning(f"Network error while listing {params}, will retry: {e}")
            raise StoreUnavailableError(f"Network error: {e}") from e

        self._check_response(response, f"listing {params}")
        return response.json()

    def _check_response(self, response: httpx.Response, context: str) -> None:
        if response.status_code >= 500:
            logger.warning(f"Store server error {response.status_code} while {context}")
            raise StoreUnavailableError(
                f"Store error {response.status_code}: {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise StoreError(
                f"Store rejected request while {context}: "
                f"{response.status_code} {response.text[:200]}"
            )


def _item_from_object(obj: dict[str, Any]) -> Item:
    created = obj.get("timeCreated")
    return Item(
        path=obj["name"],
        size=int(obj.get("size", 0)),
        content_type=obj.get("contentType") or "application/octet-stream",
        created_at=datetime.fromisoformat(created.replace("Z", "+00:00"))
        if created
        else None,
    )
