"""Core orchestrator - schedules batches of files through bounded worker slots."""
import asyncio
import functools
import logging
import time
import traceback
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ..config import IngestConfig, ProcessingOptions
from ..errors import (
    ConfigError,
    IngestError,
    InvalidStateTransitionError,
    MaxRetriesExceededError,
    ResourceError,
    ValidationError,
)
from ..models import BatchJob, BatchProgress, FileResult, FileState, Priority, UploadFile
from ..protocols import IBlobStore, IMediaEngine
from ..services.dedup import DeduplicationEngine
from ..services.media_engine import FFmpegEngine
from ..services.retry import RetryExecutor, RetryPolicy
from ..services.sessions import UploadSessionManager
from ..services.storage import MemoryBlobStore, StorageService
from ..services.thumbnails import ThumbnailCache, ThumbnailService
from ..services.transcoding import TranscodingPipeline
from ..services.validation import FileValidator
from ..utils.events import ProgressChannel, ProgressTracker
from .file_processor import FileProcessor
from .queue import AdmissionQueue
from .state import FileStateMachine

logger = logging.getLogger(__name__)


@dataclass
class _BatchRun:
    """Runtime bookkeeping for one submitted batch."""
    job: BatchJob
    options: ProcessingOptions
    files: Dict[str, UploadFile]
    priorities: Dict[str, Priority] = field(default_factory=dict)
    queue: AdmissionQueue = field(default_factory=AdmissionQueue)
    active: Dict[str, asyncio.Task] = field(default_factory=dict)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    halted: bool = False


class BatchOrchestrator:
    """
    Orchestrates batches of uploads using injected services.

    Every collaborator can be injected; anything left out gets an
    in-process default (memory blob store, in-memory hash index, FFmpeg).

    Usage:
        async with BatchOrchestrator(config, LocalBlobStore(root)) as orchestrator:
            job = await orchestrator.submit_batch(files, {"priority": "high"}, concurrency=3)
            async for event in orchestrator.progress:
                ...
            job = await orchestrator.wait(job.id)
    """

    def __init__(
        self,
        config: Optional[IngestConfig] = None,
        blob_store: Optional[IBlobStore] = None,
        dedup: Optional[DeduplicationEngine] = None,
        engine: Optional[IMediaEngine] = None,
        pipeline: Optional[TranscodingPipeline] = None,
        thumbnails: Optional[ThumbnailService] = None,
        retry: Optional[RetryExecutor] = None,
        progress: Optional[ProgressChannel] = None,
        sessions: Optional[UploadSessionManager] = None,
    ):
        """
        Initialize orchestrator with dependencies.

        Args:
            config: Pipeline configuration
            blob_store: Blob store adapter (default: in-memory)
            dedup: Deduplication engine shared across batches
            engine: Media engine (default: FFmpeg resolved from PATH)
            pipeline: Transcoding pipeline (default: built from engine)
            thumbnails: Thumbnail service (default: built from engine)
            retry: Retry executor used for every storage and engine call
            progress: Channel receiving progress events
            sessions: Upload session manager
        """
        self._config = config or IngestConfig()
        self._retry = retry or RetryExecutor(RetryPolicy.from_config(self._config))
        self._storage = StorageService(blob_store if blob_store is not None else MemoryBlobStore(), self._retry)
        self._dedup = dedup or DeduplicationEngine()
        self._sessions = sessions or UploadSessionManager(self._config, self._storage, self._dedup)
        if engine is None:
            engine = FFmpegEngine(self._config.ffmpeg_path, self._config.ffprobe_path)
        self._pipeline = pipeline or TranscodingPipeline(self._config, engine, self._retry)
        self._thumbnails = thumbnails or ThumbnailService(
            engine,
            self._config,
            ThumbnailCache(self._config.thumbnail_cache_size, self._config.thumbnail_cache_ttl_s),
        )
        self._progress = progress or ProgressChannel(self._config.progress_queue_size)
        self._tracker = ProgressTracker(self._progress)
        self._validator = FileValidator(self._config)
        self._state = FileStateMachine()
        self._processor = FileProcessor(
            self._config,
            self._sessions,
            self._storage,
            self._dedup,
            self._pipeline,
            self._thumbnails,
            self._tracker,
        )

        self._batches: Dict[str, _BatchRun] = {}
        self._file_index: Dict[str, _BatchRun] = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    # Accessors
    @property
    def config(self) -> IngestConfig:
        return self._config

    @property
    def progress(self) -> ProgressChannel:
        return self._progress

    @property
    def dedup(self) -> DeduplicationEngine:
        return self._dedup

    @property
    def pipeline(self) -> TranscodingPipeline:
        return self._pipeline

    @property
    def sessions(self) -> UploadSessionManager:
        return self._sessions

    def get_batch(self, batch_id: str) -> Optional[BatchJob]:
        run = self._batches.get(batch_id)
        return run.job if run else None

    def batch_progress(self, batch_id: str) -> BatchProgress:
        """
        Aggregate percent, bytes done, speed and ETA for a batch.

        Raises:
            KeyError: unknown batch id
        """
        run = self._batches.get(batch_id)
        if run is None:
            raise KeyError(f"Unknown batch id: {batch_id}")
        return BatchProgress.of(run.job)

    def get_file(self, file_id: str) -> Optional[UploadFile]:
        run = self._file_index.get(file_id)
        return run.files[file_id] if run else None

    def _lookup(self, file_id: str) -> Tuple[UploadFile, _BatchRun]:
        run = self._file_index.get(file_id)
        if run is None:
            raise KeyError(f"Unknown file id: {file_id}")
        return run.files[file_id], run

    # Submission
    async def submit_batch(
        self,
        files: Iterable[UploadFile],
        options: Union[ProcessingOptions, Mapping[str, Any], None] = None,
        concurrency: Optional[int] = None,
    ) -> BatchJob:
        """
        Schedule files onto at most ``concurrency`` worker slots.

        Returns immediately; use ``wait()`` for the terminal BatchJob.
        Files failing validation are cancelled up front and never take a slot.
        """
        if options is None:
            options = ProcessingOptions()
        elif not isinstance(options, ProcessingOptions):
            options = ProcessingOptions.from_mapping(options)
        if concurrency is None:
            concurrency = self._config.max_concurrent_uploads
        if concurrency < 1:
            raise ConfigError("concurrency must be at least 1")

        files = list(files)
        ids = [f.id for f in files]
        if len(set(ids)) != len(ids) or any(i in self._file_index for i in ids):
            raise ValidationError("File ids must be unique across active batches")

        job = BatchJob(id=uuid.uuid4().hex, files=files, concurrency=concurrency, started_at=time.time())
        run = _BatchRun(job=job, options=options, files={f.id: f for f in files})
        self._batches[job.id] = run
        for f in files:
            self._file_index[f.id] = run

        logger.info("Batch %s: %d file(s), concurrency %d", job.id, len(files), concurrency)

        default_priority = Priority(options.priority)
        for f in files:
            priority = f.priority or default_priority
            run.priorities[f.id] = priority
            try:
                if not f.has_content:
                    raise ValidationError(f"{f.filename}: no content (neither data nor path)")
                self._validator.validate(f)
            except ValidationError as e:
                await self._reject(run, f, e)
                continue
            run.queue.push(f.id, priority)
            self._tracker.update(f.id, 0.0, FileState.PENDING.value, job.id)

        self._fill_slots(run)
        self._check_done(run)
        return job

    async def wait(self, batch_id: str, release: bool = False) -> BatchJob:
        """Wait until every file in the batch is settled and return the BatchJob."""
        run = self._batches.get(batch_id)
        if run is None:
            raise KeyError(f"Unknown batch id: {batch_id}")
        await run.done.wait()
        if release:
            self.release(batch_id)
        return run.job

    async def run_batch(
        self,
        files: Iterable[UploadFile],
        options: Union[ProcessingOptions, Mapping[str, Any], None] = None,
        concurrency: Optional[int] = None,
    ) -> BatchJob:
        """Submit, wait and release in one call."""
        job = await self.submit_batch(files, options, concurrency)
        return await self.wait(job.id, release=True)

    def release(self, batch_id: str) -> None:
        """Forget a finished batch and its files."""
        run = self._batches.pop(batch_id, None)
        if run is None:
            return
        for file_id in run.files:
            self._file_index.pop(file_id, None)
            self._state.forget(file_id)
            self._tracker.forget(file_id)

    # Controls
    async def pause(self, file_id: str) -> None:
        """
        Pause an uploading file and free its slot.

        Raises:
            InvalidStateTransitionError: file is not uploading
        """
        file, run = self._lookup(file_id)
        async with self._state.lock(file_id):
            self._state.transition_locked(file, FileState.PAUSED)
            task = run.active.get(file_id)
            if task:
                task.cancel()
        self._tracker.update(file_id, file.progress, FileState.PAUSED.value, run.job.id)
        logger.info("File %s paused at %.0f%%", file.filename, file.progress)

    async def resume(self, file_id: str) -> None:
        """
        Re-queue a paused file at its original position.

        Raises:
            InvalidStateTransitionError: file is not paused
        """
        file, run = self._lookup(file_id)
        async with self._state.lock(file_id):
            if file.state != FileState.PAUSED or file_id in run.queue:
                raise InvalidStateTransitionError(file_id, file.state, FileState.UPLOADING)
            self._requeue(run, file)
        logger.info("File %s resumed", file.filename)
        self._fill_slots(run)

    async def cancel(self, file_id: str) -> None:
        """
        Cancel a file from any non-terminal state, freeing its slot immediately.

        Raises:
            InvalidStateTransitionError: file already completed or cancelled
        """
        file, run = self._lookup(file_id)
        async with self._state.lock(file_id):
            self._state.transition_locked(file, FileState.CANCELLED)
            if file.last_error is None:
                file.last_error = "Cancelled by caller"
            file.error_kind = "cancelled"
            run.queue.remove(file_id)
            task = run.active.get(file_id)
            if task:
                task.cancel()
        if file.session_id:
            await self._sessions.abort(file.session_id)
            file.session_id = None
        self._tracker.update(file_id, file.progress, FileState.CANCELLED.value, run.job.id)
        logger.info("File %s cancelled", file.filename)
        self._check_done(run)

    async def retry(self, file_id: str) -> None:
        """
        Re-queue a file that failed during upload.

        The retry counter keeps counting across calls.

        Raises:
            InvalidStateTransitionError: file is not in error, or failed while processing
            MaxRetriesExceededError: max_retry_attempts retries already used
            ResourceError: the batch was halted
        """
        file, run = self._lookup(file_id)
        async with self._state.lock(file_id):
            if file.state != FileState.ERROR or file.error_stage == FileState.PROCESSING or file_id in run.queue:
                raise InvalidStateTransitionError(file_id, file.state, FileState.UPLOADING)
            if run.halted:
                # Refused before counting, so the attempt is not used up
                raise ResourceError(f"Batch {run.job.id} halted: {run.job.halted_reason}")
            if file.retry_count >= self._config.max_retry_attempts:
                file.error_kind = MaxRetriesExceededError.kind
                raise MaxRetriesExceededError(file_id, file.retry_count)
            file.retry_count += 1
            self._requeue(run, file)
        logger.info("File %s retry %d/%d", file.filename, file.retry_count, self._config.max_retry_attempts)
        self._fill_slots(run)

    def _requeue(self, run: _BatchRun, file: UploadFile) -> None:
        if run.halted:
            raise ResourceError(f"Batch {run.job.id} halted: {run.job.halted_reason}")
        run.queue.push(file.id, run.priorities[file.id])
        if run.job.ended_at is not None:
            # Reopen a finished batch
            run.job.ended_at = None
            run.job.results = []
            run.done.clear()

    async def close(self) -> None:
        """Cancel running files and close the progress channel."""
        tasks = [t for run in self._batches.values() for t in run.active.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._progress.close()

    # Scheduling
    def _fill_slots(self, run: _BatchRun) -> None:
        while not run.halted and len(run.active) < run.job.concurrency:
            file_id = run.queue.pop()
            if file_id is None:
                return
            if file_id in run.active:
                # Previous task for this file is still unwinding; its done callback refills
                run.queue.push(file_id, run.priorities[file_id])
                return
            task = asyncio.create_task(self._run_file(run, run.files[file_id]), name=f"ingest-{file_id}")
            run.active[file_id] = task
            task.add_done_callback(functools.partial(self._on_task_done, run, file_id))

    def _on_task_done(self, run: _BatchRun, file_id: str, task: asyncio.Task) -> None:
        if run.active.get(file_id) is task:
            del run.active[file_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Worker for %s crashed: %r", file_id, task.exception())
        self._fill_slots(run)
        self._check_done(run)

    def _check_done(self, run: _BatchRun) -> None:
        job = run.job
        if run.active or run.queue:
            return
        if any(f.state == FileState.PAUSED for f in job.files):
            return
        job.results = [FileResult.from_file(f) for f in job.files]
        if job.ended_at is not None:
            return
        job.ended_at = time.time()
        run.done.set()
        logger.info(
            "Batch %s finished: %d succeeded, %d failed (%d cancelled, %d duplicates) in %.1fs",
            job.id, job.success_count, job.failure_count, job.cancelled_count,
            job.duplicate_count, job.duration or 0.0,
        )

    # Per-file execution
    async def _run_file(self, run: _BatchRun, file: UploadFile) -> None:
        batch_id = run.job.id
        async with self._state.lock(file.id):
            if file.state.is_terminal:
                return
            self._state.transition_locked(file, FileState.UPLOADING)
            file.last_error = None
            file.error_kind = None
            file.error_stage = None
        self._tracker.update(file.id, file.progress, FileState.UPLOADING.value, batch_id)

        stage = FileState.UPLOADING
        try:
            stored = await self._processor.upload(file, run.options, batch_id)

            async with self._state.lock(file.id):
                self._state.transition_locked(file, FileState.PROCESSING)
            stage = FileState.PROCESSING
            self._tracker.update(file.id, file.progress, FileState.PROCESSING.value, batch_id)

            await self._processor.process(file, run.options, stored, batch_id)

            async with self._state.lock(file.id):
                self._state.transition_locked(file, FileState.COMPLETED)
                file.progress = 100.0
            self._tracker.update(file.id, 100.0, FileState.COMPLETED.value, batch_id)
            logger.info("File %s completed", file.filename)
        except asyncio.CancelledError:
            # pause()/cancel() already moved the state
            raise
        except InvalidStateTransitionError as e:
            logger.debug("File %s: %s", file.filename, e)
        except ResourceError as e:
            await self._fail(run, file, e, stage)
            await self._halt(run, str(e))
        except IngestError as e:
            await self._fail(run, file, e, stage)
        except Exception as e:
            logger.error("Unexpected error processing %s: %s", file.filename, e)
            logger.error(traceback.format_exc())
            await self._fail(run, file, e, stage)

    async def _fail(self, run: _BatchRun, file: UploadFile, exc: BaseException, stage: FileState) -> None:
        message = str(exc)
        remediation = getattr(exc, "remediation", None)
        if remediation:
            message = f"{message} ({remediation})"
        async with self._state.lock(file.id):
            if file.state not in (FileState.UPLOADING, FileState.PROCESSING):
                return
            self._state.transition_locked(file, FileState.ERROR, error=message)
            file.error_kind = getattr(exc, "kind", "error")
            file.error_stage = stage
        self._tracker.update(file.id, file.progress, FileState.ERROR.value, run.job.id, message=message)
        logger.warning("File %s failed during %s: %s", file.filename, stage.value, message)

    async def _reject(self, run: _BatchRun, file: UploadFile, exc: ValidationError) -> None:
        async with self._state.lock(file.id):
            self._state.transition_locked(file, FileState.CANCELLED, error=str(exc))
            file.error_kind = exc.kind
        self._tracker.update(file.id, 0.0, FileState.CANCELLED.value, run.job.id, message=str(exc))
        logger.warning("File %s rejected: %s", file.filename, exc)

    async def _halt(self, run: _BatchRun, reason: str) -> None:
        """Stop admitting files into the batch and cancel everything still queued."""
        if run.halted:
            return
        run.halted = True
        run.job.halted_reason = reason
        logger.error("Batch %s halted: %s", run.job.id, reason)

        queued: List[str] = []
        while True:
            file_id = run.queue.pop()
            if file_id is None:
                break
            queued.append(file_id)
        # Paused files could never be re-admitted
        queued += [f.id for f in run.job.files if f.state == FileState.PAUSED and f.id not in queued]
        for file_id in queued:
            file = run.files[file_id]
            async with self._state.lock(file_id):
                if file.state.is_terminal:
                    continue
                self._state.transition_locked(file, FileState.CANCELLED, error=f"Batch halted: {reason}")
                file.error_kind = ResourceError.kind
            self._tracker.update(file_id, file.progress, FileState.CANCELLED.value, run.job.id)
