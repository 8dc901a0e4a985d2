"""HTTP adapter for a remote blob store."""
from __future__ import annotations

from typing import Dict, Optional

import httpx

from ..errors import BlobNotFoundError, StorageError, TransientStorageError


class HTTPBlobStore:
    """
    HTTP client adapter for an object store exposing ``PUT/GET/HEAD {base}/{key}``.

    Implements IBlobStore protocol. Network failures and 5xx responses are
    raised as TransientStorageError and left to the RetryExecutor; this
    adapter never retries on its own.
    """

    def __init__(
        self,
        base_url: str,
        timeout: int = 60,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers=self._headers,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("HTTPBlobStore not initialized. Use 'async with' context.")
        return self._client

    @staticmethod
    def _raise_for_status(response: httpx.Response, method: str, key: str) -> None:
        if response.status_code == 404:
            raise BlobNotFoundError(f"Blob not found: {key}")
        if response.status_code >= 500 or response.status_code in (408, 429):
            raise TransientStorageError(f"Storage error {response.status_code} on {method} {key}")
        if response.status_code >= 400:
            try:
                error_detail = response.json()
            except ValueError:
                error_detail = response.text
            raise StorageError(f"Storage error {response.status_code} on {method} {key}: {error_detail}")

    async def put(self, key: str, data: bytes) -> None:
        client = self._require_client()
        try:
            response = await client.put(f"/{key}", content=data)
        except (httpx.RequestError, httpx.TimeoutException) as exc:
            raise TransientStorageError(f"PUT {key} failed: {exc}") from exc
        self._raise_for_status(response, "PUT", key)

    async def get(self, key: str) -> bytes:
        client = self._require_client()
        try:
            response = await client.get(f"/{key}")
        except (httpx.RequestError, httpx.TimeoutException) as exc:
            raise TransientStorageError(f"GET {key} failed: {exc}") from exc
        self._raise_for_status(response, "GET", key)
        return response.content

    async def exists(self, key: str) -> bool:
        client = self._require_client()
        try:
            response = await client.head(f"/{key}")
        except (httpx.RequestError, httpx.TimeoutException) as exc:
            raise TransientStorageError(f"HEAD {key} failed: {exc}") from exc
        if response.status_code == 404:
            return False
        self._raise_for_status(response, "HEAD", key)
        return True
