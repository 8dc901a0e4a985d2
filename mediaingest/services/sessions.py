"""
Upload Session Manager - chunked, resumable uploads.

Chunks are staged as part files under ``staging_dir/{session_id}/`` and
verified by their BLAKE3 tag. ``finalize`` hashes the staged parts in a
stream, consults the DeduplicationEngine and writes the assembled bytes
to the blob store only when the content is new.
"""
import asyncio
import logging
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from ..config import IngestConfig
from ..errors import (
    ChunkIntegrityError,
    ChunkSizeMismatchError,
    IncompleteUploadError,
    SessionExpiredError,
    SessionNotFoundError,
)
from ..models import Chunk, ChunkAcceptResult, StoredObject, UploadSession
from .dedup import DeduplicationEngine, blake3_bytes, storage_key_for
from .storage import StorageService
from .validation import FileValidator, validate_filename

logger = logging.getLogger(__name__)


def chunk_layout(total_size: int, chunk_size: int) -> List[Chunk]:
    """Declared chunk sizes: full chunks followed by a shorter tail."""
    count = max(1, -(-total_size // chunk_size))
    chunks = []
    for index in range(count):
        start = index * chunk_size
        chunks.append(Chunk(index=index, size=min(chunk_size, total_size - start)))
    return chunks


class UploadSessionManager:
    """
    Owns every open UploadSession.

    Usage:
        session = await manager.open_session("user-1", "clip.mp4", size)
        for index in session.missing_chunks():
            await manager.accept_chunk(session.id, index, data, len(data))
        stored = await manager.finalize(session.id)
    """

    def __init__(
        self,
        config: IngestConfig,
        storage: StorageService,
        dedup: DeduplicationEngine,
        staging_dir: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._storage = storage
        self._dedup = dedup
        self._staging_dir = Path(staging_dir) if staging_dir else config.staging_dir
        self._clock = clock
        self._validator = FileValidator(config)
        self._sessions: Dict[str, UploadSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def staging_dir(self) -> Path:
        return self._staging_dir

    def __len__(self) -> int:
        return len(self._sessions)

    # Session lifecycle
    async def open_session(
        self,
        caller_id: str,
        filename: str,
        total_size: int,
        mime_type: Optional[str] = None,
    ) -> UploadSession:
        """
        Register a new chunked upload.

        Raises:
            UnsafeFilenameError: filename fails safety checks
            FileTooLargeError: total_size exceeds max_file_size
        """
        validate_filename(filename)
        self._validator.check_size(total_size)

        now = self._clock()
        session_id = uuid.uuid4().hex
        session = UploadSession(
            id=session_id,
            caller_id=caller_id,
            filename=filename,
            total_size=total_size,
            chunk_size=self._config.chunk_size,
            chunks=chunk_layout(total_size, self._config.chunk_size),
            created_at=now,
            last_activity=now,
            expires_at=now + self._config.session_expiry,
            mime_type=mime_type,
            multipart_handle=str(self._staging_dir / session_id),
        )
        self._sessions[session.id] = session
        self._locks[session.id] = asyncio.Lock()
        logger.debug(
            "Session %s opened for %s (%d bytes, %d chunks)",
            session.id, filename, total_size, session.total_chunks,
        )
        return session

    def get_session(self, session_id: str) -> Optional[UploadSession]:
        return self._sessions.get(session_id)

    def _require(self, session_id: str, caller_id: Optional[str] = None) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None or (caller_id is not None and caller_id != session.caller_id):
            raise SessionNotFoundError(f"Upload session not found: {session_id}")
        if session.is_expired(self._clock()):
            raise SessionExpiredError(f"Upload session {session_id} expired")
        return session

    def missing_chunks(self, session_id: str) -> List[int]:
        """Indices still required to finalize. Raises if the session is gone or expired."""
        return self._require(session_id).missing_chunks()

    @staticmethod
    def _part_path(session: UploadSession, index: int) -> Path:
        return Path(session.multipart_handle) / f"{index:06d}.part"

    @staticmethod
    def _write_part(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)

    async def accept_chunk(
        self,
        session_id: str,
        index: int,
        data: bytes,
        size: Optional[int] = None,
        caller_id: Optional[str] = None,
    ) -> ChunkAcceptResult:
        """
        Stage one chunk.

        Re-sending an uploaded chunk with identical bytes is a no-op.

        Raises:
            SessionNotFoundError, SessionExpiredError
            ChunkSizeMismatchError: index or size disagrees with the layout
            ChunkIntegrityError: re-send with different bytes
        """
        session = self._require(session_id, caller_id)
        if size is None:
            size = len(data)
        if not 0 <= index < session.total_chunks:
            raise ChunkSizeMismatchError(
                f"Chunk index {index} out of range (session has {session.total_chunks} chunks)"
            )
        chunk = session.chunks[index]
        if size != chunk.size or len(data) != size:
            raise ChunkSizeMismatchError(
                f"Chunk {index}: expected {chunk.size} bytes, got {size} declared / {len(data)} received"
            )

        tag = await asyncio.to_thread(blake3_bytes, data)

        async with self._locks[session_id]:
            duplicate = False
            if chunk.uploaded:
                if tag != chunk.integrity_tag:
                    raise ChunkIntegrityError(
                        f"Chunk {index} of session {session_id} was re-sent with different content"
                    )
                duplicate = True
            else:
                await asyncio.to_thread(self._write_part, self._part_path(session, index), data)
                # Flag, tag and byte count change together
                chunk.integrity_tag = tag
                chunk.uploaded = True
                session.uploaded_size += chunk.size

            now = self._clock()
            session.last_activity = now
            session.expires_at = now + self._config.session_expiry

        logger.debug(
            "Session %s: chunk %d/%d %s", session_id, index + 1, session.total_chunks,
            "already uploaded" if duplicate else "accepted",
        )
        return ChunkAcceptResult(
            session_id=session_id,
            index=index,
            integrity_tag=tag,
            uploaded_size=session.uploaded_size,
            total_size=session.total_size,
            duplicate_chunk=duplicate,
        )

    async def finalize(self, session_id: str) -> StoredObject:
        """
        Assemble the staged chunks and commit them through the dedup engine.

        Raises:
            IncompleteUploadError: some chunk is not uploaded yet
        """
        session = self._require(session_id)
        async with self._locks[session_id]:
            missing = session.missing_chunks()
            if missing:
                raise IncompleteUploadError(
                    f"Session {session_id} is missing {len(missing)} chunk(s): {missing[:10]}"
                )
            parts = [self._part_path(session, c.index) for c in session.chunks]
            content_hash = await self._dedup.compute_hash(parts)

            async def load() -> bytes:
                return await asyncio.to_thread(lambda: b"".join(p.read_bytes() for p in parts))

            stored = await self._commit(session.caller_id, session.filename, content_hash,
                                        session.total_size, load)

        await self._destroy(session_id)
        logger.info(
            "Session %s finalized: %s -> %s%s", session_id, session.filename, stored.storage_key,
            " (duplicate)" if stored.is_duplicate else "",
        )
        return stored

    async def put_single(self, caller_id: str, filename: str, data: bytes) -> StoredObject:
        """Single-shot upload of an in-memory buffer."""
        validate_filename(filename)
        self._validator.check_size(len(data))
        content_hash = await self._dedup.compute_hash(data)

        async def load() -> bytes:
            return data

        return await self._commit(caller_id, filename, content_hash, len(data), load)

    async def _commit(
        self,
        caller_id: str,
        filename: str,
        content_hash: str,
        size: int,
        load: Callable[[], Awaitable[bytes]],
    ) -> StoredObject:
        async with self._dedup.claim(content_hash):
            record = await self._dedup.lookup_record(content_hash)
            if record is not None:
                record = await self._dedup.attribute(content_hash, caller_id) or record
                return StoredObject(
                    storage_key=record.storage_key,
                    content_hash=content_hash,
                    size=size,
                    is_duplicate=True,
                    record=record,
                )

            key = storage_key_for(content_hash, filename, self._config.storage_namespace)
            await self._storage.put(key, await load())
            record = await self._dedup.register(content_hash, key, size=size, owner=caller_id)
            return StoredObject(storage_key=key, content_hash=content_hash, size=size, record=record)

    # Housekeeping
    async def _destroy(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)
        if session is not None and session.multipart_handle:
            await asyncio.to_thread(shutil.rmtree, session.multipart_handle, True)

    async def abort(self, session_id: str) -> bool:
        """Drop a session and its staged chunks. Returns False if unknown."""
        if session_id not in self._sessions:
            return False
        await self._destroy(session_id)
        logger.info("Session %s aborted", session_id)
        return True

    async def purge_expired(self) -> int:
        """Remove sessions idle past their expiry. Returns the number removed."""
        now = self._clock()
        expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for sid in expired:
            await self._destroy(sid)
        if expired:
            logger.info("Purged %d expired upload session(s)", len(expired))
        return len(expired)
