"""
Deduplication Engine - content hashing and hash -> storage key lookup.

Duplicate detection is by BLAKE3 content hash only: two filenames with
identical bytes resolve to one stored object.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, Optional, Sequence, Union

from blake3 import blake3

from ..models import DedupRecord, ThumbnailResult, TranscodingResult
from ..protocols import IHashIndex
from .hash_index import InMemoryHashIndex

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 65536  # 64KB reads

Content = Union[bytes, bytearray, memoryview, Path, Sequence[Path]]


def _hash_paths(paths: Iterable[Path]) -> str:
    hasher = blake3()
    for path in paths:
        with open(path, "rb") as f:
            while True:
                block = f.read(HASH_BLOCK_SIZE)
                if not block:
                    break
                hasher.update(block)
    return hasher.hexdigest()


def _hash_buffer(data) -> str:
    hasher = blake3()
    view = memoryview(data)
    for offset in range(0, len(view), HASH_BLOCK_SIZE):
        hasher.update(view[offset:offset + HASH_BLOCK_SIZE])
    return hasher.hexdigest()


def blake3_bytes(data: bytes) -> str:
    """BLAKE3 hex digest of an in-memory buffer."""
    return _hash_buffer(data)


async def blake3_file(path: Path) -> str:
    """Calculate BLAKE3 hash of file asynchronously (non-blocking)."""
    return await asyncio.to_thread(_hash_paths, [Path(path)])


def storage_key_for(content_hash: str, filename: str = "", namespace: str = "media") -> str:
    """
    Canonical storage key for content: ``{namespace}/{h[:2]}/{h[2:4]}/{h}{ext}``.

    The extension is taken from whichever filename first stored the content.
    """
    suffix = Path(filename).suffix.lower() if filename else ""
    return f"{namespace}/{content_hash[:2]}/{content_hash[2:4]}/{content_hash}{suffix}"


class DeduplicationEngine:
    """
    Content-addressed dedup over an injected hash index.

    Lookups and inserts are serialized by an engine lock; ``claim(hash)``
    additionally serializes the lookup -> write -> register sequence per
    hash so two concurrent uploads of the same bytes write only once.
    """

    def __init__(self, index: Optional[IHashIndex] = None):
        self._index = index if index is not None else InMemoryHashIndex()
        self._lock = asyncio.Lock()
        self._claims: Dict[str, asyncio.Lock] = {}
        self._claim_refs: Dict[str, int] = {}

    @property
    def index(self) -> IHashIndex:
        return self._index

    async def compute_hash(self, content: Content) -> str:
        """
        Deterministic digest over the full content.

        Buffers are hashed in 64KB slices and files are streamed, off the
        event loop. A sequence of paths is hashed as their concatenation.
        """
        if isinstance(content, (bytes, bytearray, memoryview)):
            return await asyncio.to_thread(_hash_buffer, content)
        if isinstance(content, Path):
            return await blake3_file(content)
        return await asyncio.to_thread(_hash_paths, [Path(p) for p in content])

    async def lookup(self, content_hash: str) -> Optional[str]:
        """Storage key of a prior upload with this hash, or None."""
        record = await self.lookup_record(content_hash)
        return record.storage_key if record else None

    async def lookup_record(self, content_hash: str) -> Optional[DedupRecord]:
        async with self._lock:
            record = await self._index.get(content_hash)
        if record:
            logger.debug("Dedup: HIT - %s... -> %s", content_hash[:16], record.storage_key)
        else:
            logger.debug("Dedup: MISS - %s...", content_hash[:16])
        return record

    async def register(
        self,
        content_hash: str,
        storage_key: str,
        size: int = 0,
        owner: Optional[str] = None,
    ) -> DedupRecord:
        """Record a new hash -> key mapping after a successful first write."""
        async with self._lock:
            record = await self._index.get(content_hash)
            if record is None:
                record = DedupRecord(content_hash=content_hash, storage_key=storage_key, size=size)
            if owner:
                record.owners.add(owner)
            await self._index.put(record)
        logger.info("Dedup: registered %s... -> %s", content_hash[:16], storage_key)
        return record

    async def attribute(self, content_hash: str, owner: str) -> Optional[DedupRecord]:
        """Attribute an existing object to another caller that uploaded the same bytes."""
        async with self._lock:
            record = await self._index.get(content_hash)
            if record is None:
                return None
            if owner not in record.owners:
                record.owners.add(owner)
                await self._index.put(record)
        return record

    async def attach_artifacts(
        self,
        content_hash: str,
        thumbnail: Optional[ThumbnailResult] = None,
        transcoding: Optional[TranscodingResult] = None,
    ) -> None:
        """Remember derived artifacts so duplicates need no regeneration."""
        async with self._lock:
            record = await self._index.get(content_hash)
            if record is None:
                return
            if thumbnail is not None:
                record.thumbnail = thumbnail
            if transcoding is not None:
                record.transcoding = transcoding
            await self._index.put(record)

    async def forget(self, content_hash: str) -> None:
        async with self._lock:
            await self._index.delete(content_hash)

    @asynccontextmanager
    async def claim(self, content_hash: str) -> AsyncIterator[None]:
        """Hold the per-hash lock for a lookup -> write -> register sequence."""
        async with self._lock:
            lock = self._claims.setdefault(content_hash, asyncio.Lock())
            self._claim_refs[content_hash] = self._claim_refs.get(content_hash, 0) + 1
        try:
            async with lock:
                yield
        finally:
            async with self._lock:
                self._claim_refs[content_hash] -= 1
                if self._claim_refs[content_hash] == 0:
                    del self._claim_refs[content_hash]
                    del self._claims[content_hash]
