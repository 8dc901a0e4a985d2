"""
Storage Service - Single Responsibility: put/get blobs through the retry executor.

Also ships two blob store adapters: an in-memory store and a local
directory store. The HTTP adapter lives in api_client.py.
"""
import asyncio
import logging
import os
import uuid
from pathlib import Path
from typing import Dict, Optional

from ..errors import BlobNotFoundError, StorageError, TransientStorageError
from ..protocols import IBlobStore
from .retry import RetryExecutor

logger = logging.getLogger(__name__)


def _check_key(key: str) -> str:
    if not key or key.startswith("/") or ".." in key.split("/"):
        raise StorageError(f"Invalid storage key: {key!r}")
    return key


class MemoryBlobStore:
    """Dict-backed blob store. Counts writes so callers can observe dedup."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self.put_calls = 0
        self.bytes_written = 0

    async def put(self, key: str, data: bytes) -> None:
        _check_key(key)
        self.put_calls += 1
        self.bytes_written += len(data)
        self._blobs[key] = bytes(data)

    async def get(self, key: str) -> bytes:
        try:
            return self._blobs[key]
        except KeyError:
            raise BlobNotFoundError(f"Blob not found: {key}") from None

    async def exists(self, key: str) -> bool:
        return key in self._blobs

    def keys(self):
        return list(self._blobs)

    def __len__(self) -> int:
        return len(self._blobs)


class LocalBlobStore:
    """
    Blob store rooted at a local directory.

    Writes go to a temporary file first and are renamed into place, so a
    key is either absent or complete.
    """

    def __init__(self, root: Path):
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        return self._root / _check_key(key)

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)

    async def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            raise TransientStorageError(f"Write failed for {key}: {e}") from e

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise BlobNotFoundError(f"Blob not found: {key}") from None
        except OSError as e:
            raise TransientStorageError(f"Read failed for {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        return self._path(key).is_file()


class StorageService:
    """
    Service for reading and writing blobs.

    Every call goes through the RetryExecutor; callers must not loop on
    storage errors themselves.
    """

    def __init__(self, store: IBlobStore, retry: Optional[RetryExecutor] = None):
        """
        Initialize storage service.

        Args:
            store: Blob store adapter
            retry: Retry executor shared with the rest of the pipeline
        """
        self._store = store
        self._retry = retry or RetryExecutor()

    @property
    def store(self) -> IBlobStore:
        return self._store

    async def put(self, key: str, data: bytes) -> str:
        """
        Store bytes under key.

        Returns:
            The key written
        """
        await self._retry.execute(lambda: self._store.put(key, data), name=f"put {key}")
        logger.debug("[storage] Stored %s (%d bytes)", key, len(data))
        return key

    async def put_file(self, key: str, path: Path) -> str:
        data = await asyncio.to_thread(Path(path).read_bytes)
        return await self.put(key, data)

    async def get(self, key: str) -> bytes:
        return await self._retry.execute(lambda: self._store.get(key), name=f"get {key}")

    async def exists(self, key: str) -> bool:
        return await self._retry.execute(lambda: self._store.exists(key), name=f"exists {key}")
