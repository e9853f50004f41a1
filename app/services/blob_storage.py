"""
Blob Storage - Path-addressed image storage.

Supabase Storage REST implementation; the core only needs upload, public
URL resolution and delete (to clean up after a partial upload).
"""

from typing import Protocol

import httpx
from structlog import get_logger

from app.exceptions import StorageError

logger = get_logger(__name__)


class BlobStorage(Protocol):
    """Blob storage protocol."""

    async def upload(self, data: bytes, path: str, content_type: str) -> str:
        """
        Store bytes at path and return the stored path.

        Raises:
            StorageError: upload was not confirmed
        """
        ...

    def public_url(self, path: str) -> str:
        """Publicly fetchable URL for a stored path."""
        ...

    async def delete(self, path: str) -> None:
        """Remove a stored path; missing paths are not an error."""
        ...


class SupabaseBlobStorage:
    """Supabase Storage (``/storage/v1``) implementation."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str,
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self._service_key = service_key
        self._timeout = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._service_key}",
            "apikey": self._service_key,
        }

    async def upload(self, data: bytes, path: str, content_type: str) -> str:
        url = f"{self.base_url}/storage/v1/object/{self.bucket}/{path}"
        headers = {
            **self._headers,
            "Content-Type": content_type,
            "Cache-Control": "3600",
            "x-upsert": "false",
        }

        try:
            response = await self.http_client.post(url, content=data, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "blob_upload_failed",
                path=path,
                status=e.response.status_code,
                text=e.response.text[:200],
            )
            raise StorageError(f"Upload of {path} failed: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("blob_upload_error", path=path, error=str(e))
            raise StorageError(f"Upload of {path} failed") from e

        return path

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"

    async def delete(self, path: str) -> None:
        url = f"{self.base_url}/storage/v1/object/{self.bucket}"
        try:
            response = await self.http_client.request(
                "DELETE", url, json={"prefixes": [path]}, headers=self._headers
            )
            if response.status_code != 404:
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("blob_delete_failed", path=path, error=str(e))
            raise StorageError(f"Delete of {path} failed") from e

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
