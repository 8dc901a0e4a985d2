"""File processor - runs the upload and processing stages for one file."""
import asyncio
import logging
import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Optional

from ..config import IngestConfig, ProcessingOptions
from ..errors import ProcessingError, SessionError, TranscodingTimeoutError
from ..models import MediaKind, StoredObject, UploadFile
from ..services.dedup import DeduplicationEngine
from ..services.sessions import UploadSessionManager
from ..services.storage import StorageService
from ..services.thumbnails import ThumbnailService
from ..services.transcoding import TranscodingPipeline
from ..utils.events import ProgressTracker

logger = logging.getLogger(__name__)

UPLOAD_SHARE = 90.0  # percent of overall progress spent uploading


def _read_file_range(path: Path, offset: int, length: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(offset)
        return f.read(length)


class FileProcessor:
    """
    Moves one file's bytes into storage and derives its artifacts.

    Small files go up in one shot; files larger than ``chunk_size`` use a
    resumable session whose id is kept on the file, so a resumed file only
    sends the chunks that are still missing.
    """

    def __init__(
        self,
        config: IngestConfig,
        sessions: UploadSessionManager,
        storage: StorageService,
        dedup: DeduplicationEngine,
        pipeline: TranscodingPipeline,
        thumbnails: ThumbnailService,
        tracker: ProgressTracker,
    ):
        self._config = config
        self._sessions = sessions
        self._storage = storage
        self._dedup = dedup
        self._pipeline = pipeline
        self._thumbnails = thumbnails
        self._tracker = tracker

    def _progress(self, file: UploadFile, percent: float, stage: str, batch_id: Optional[str]) -> None:
        file.progress = percent
        self._tracker.update(file.id, percent, stage, batch_id)

    async def _read(self, file: UploadFile, offset: int, length: int) -> bytes:
        if file.data is not None:
            return bytes(memoryview(file.data)[offset:offset + length])
        return await asyncio.to_thread(_read_file_range, file.path, offset, length)

    # Upload stage
    async def upload(self, file: UploadFile, options: ProcessingOptions, batch_id: Optional[str] = None) -> StoredObject:
        if file.size <= self._config.chunk_size and not file.session_id:
            data = file.data if file.data is not None else await asyncio.to_thread(file.path.read_bytes)
            stored = await self._sessions.put_single(options.caller_id, file.filename, data)
        else:
            stored = await self._upload_chunked(file, options, batch_id)

        file.content_hash = stored.content_hash
        file.storage_key = stored.storage_key
        file.is_duplicate = stored.is_duplicate
        self._progress(file, UPLOAD_SHARE, "uploading", batch_id)
        logger.info(
            "Stored %s -> %s%s", file.filename, stored.storage_key,
            " (duplicate, no bytes written)" if stored.is_duplicate else "",
        )
        return stored

    async def _upload_chunked(self, file: UploadFile, options: ProcessingOptions, batch_id: Optional[str]) -> StoredObject:
        session = None
        if file.session_id:
            try:
                self._sessions.missing_chunks(file.session_id)
                session = self._sessions.get_session(file.session_id)
            except SessionError as e:
                logger.info("Session for %s unusable (%s), starting over", file.filename, e)
                await self._sessions.abort(file.session_id)
                file.session_id = None
        if session is None:
            session = await self._sessions.open_session(
                options.caller_id, file.filename, file.size, mime_type=file.mime_type,
            )
            file.session_id = session.id

        for index in session.missing_chunks():
            chunk = session.chunks[index]
            data = await self._read(file, index * session.chunk_size, chunk.size)
            accepted = await self._sessions.accept_chunk(session.id, index, data, chunk.size)
            self._progress(file, accepted.percent * UPLOAD_SHARE / 100, "uploading", batch_id)

        stored = await self._sessions.finalize(session.id)
        file.session_id = None
        return stored

    # Processing stage
    async def process(
        self,
        file: UploadFile,
        options: ProcessingOptions,
        stored: StoredObject,
        batch_id: Optional[str] = None,
    ) -> None:
        """
        Generate thumbnail/rendition for the file.

        Raises:
            TranscodingTimeoutError: the whole stage exceeded pipeline_timeout_ms
            ProcessingError: a derived artifact could not be produced
            ResourceError: the transcoding pipeline is unavailable
        """
        timeout = self._config.pipeline_timeout
        try:
            await asyncio.wait_for(self._process(file, options, stored, batch_id), timeout=timeout)
        except asyncio.TimeoutError:
            raise TranscodingTimeoutError(
                f"Processing {file.filename} exceeded {timeout:.0f}s", timeout=timeout,
            ) from None

    async def _process(self, file: UploadFile, options: ProcessingOptions, stored: StoredObject,
                       batch_id: Optional[str]) -> None:
        record = stored.record
        if stored.is_duplicate and record is not None:
            file.thumbnail = record.thumbnail
            file.transcoding = record.transcoding

        kind = file.kind
        needs_thumbnail = (options.generate_thumbnail and file.thumbnail is None
                           and kind in (MediaKind.IMAGE, MediaKind.VIDEO))
        needs_transcode = options.transcode_video and file.transcoding is None and kind == MediaKind.VIDEO
        if not (needs_thumbnail or needs_transcode):
            return

        if kind == MediaKind.VIDEO:
            self._pipeline.ensure_available()

        source, temp_source = await self._materialize(file)
        start = time.monotonic()
        try:
            if needs_thumbnail:
                await self._make_thumbnail(file, options, source)
                self._progress(file, 95.0, "processing", batch_id)
            if needs_transcode:
                await self._make_rendition(file, options, source)
        except ProcessingError:
            # Videos are counted by transcode_video itself
            if kind != MediaKind.VIDEO:
                self._pipeline.record_processed(False, time.monotonic() - start)
            raise
        finally:
            if temp_source is not None:
                temp_source.unlink(missing_ok=True)
        if kind != MediaKind.VIDEO:
            self._pipeline.record_processed(True, time.monotonic() - start)

        await self._dedup.attach_artifacts(file.content_hash, thumbnail=file.thumbnail, transcoding=file.transcoding)

    async def _materialize(self, file: UploadFile):
        """Videos need a path for the media engine; images can stay in memory."""
        if file.path is not None:
            return file.path, None
        if file.kind != MediaKind.VIDEO:
            return file.data, None
        temp = self._config.temp_dir / f"src_{uuid.uuid4().hex}{Path(file.filename).suffix.lower()}"

        def write():
            temp.parent.mkdir(parents=True, exist_ok=True)
            temp.write_bytes(file.data)

        await asyncio.to_thread(write)
        return temp, temp

    async def _make_thumbnail(self, file: UploadFile, options: ProcessingOptions, source) -> None:
        thumb_opts = options.thumbnail or self._config.thumbnail_defaults
        result = await self._thumbnails.generate_thumbnail(source, file.kind, thumb_opts, cache_key=file.content_hash)
        if result is None:
            return
        key = (f"{self._config.storage_namespace}/thumbnails/"
               f"{file.content_hash}_{result.width}x{result.height}.{thumb_opts.extension}")
        await self._storage.put_file(key, result.path)
        if self._thumbnails.cache is None:
            # nothing bounds the local copy without a cache
            await asyncio.to_thread(result.path.unlink, True)
            result = replace(result, path=None)
        file.thumbnail = replace(result, storage_key=key)

    async def _make_rendition(self, file: UploadFile, options: ProcessingOptions, source: Path) -> None:
        trans = options.transcoding
        # ids may be absolute paths; keep output names inside output_dir
        output = self._config.output_dir / f"{uuid.uuid4().hex}_{trans.quality}.{trans.output_format}"
        result = await self._pipeline.transcode_video(source, output, trans)
        if not result.success:
            raise ProcessingError(f"Transcoding failed for {file.filename}: {result.error}")
        key = (f"{self._config.storage_namespace}/renditions/"
               f"{file.content_hash}_{trans.quality}.{trans.output_format}")
        try:
            await self._storage.put_file(key, output)
        finally:
            output.unlink(missing_ok=True)
        file.transcoding = replace(result, storage_key=key)
