"""
MediaIngest - media ingestion pipeline: resumable uploads, content dedup,
bounded batch orchestration and derived artifacts (thumbnails, renditions).

Usage:
    from mediaingest import BatchOrchestrator, IngestConfig, UploadFile, LocalBlobStore

    config = IngestConfig.from_mapping({"maxConcurrentUploads": 3})
    async with BatchOrchestrator(config, LocalBlobStore("./store")) as orchestrator:
        job = await orchestrator.submit_batch(
            [UploadFile(id="a", filename="a.jpg", size=size, mime_type="image/jpeg", path=path)],
            {"priority": "high"},
        )
        job = await orchestrator.wait(job.id)
        for result in job.results:
            print(result.filename, result.status.value, result.storage_key)

    # Chunked upload driven by the caller
    session = await orchestrator.sessions.open_session("user-1", "clip.mp4", total_size)
    await orchestrator.sessions.accept_chunk(session.id, 0, chunk_bytes)
    stored = await orchestrator.sessions.finalize(session.id)
"""
from .config import IngestConfig, ProcessingOptions, ThumbnailOptions, TranscodingOptions
from .errors import (
    IngestError,
    InvalidStateTransitionError,
    MaxRetriesExceededError,
    PipelineUnavailableError,
    ProcessingError,
    ResourceError,
    RetryExhaustedError,
    SessionError,
    TransientStorageError,
    ValidationError,
)
from .models import (
    BatchJob,
    BatchProgress,
    FileResult,
    FileState,
    MediaKind,
    Priority,
    ResultStatus,
    ThumbnailResult,
    TranscodingResult,
    UploadFile,
    UploadSession,
)
from .orchestrator import BatchOrchestrator
from .services import (
    DeduplicationEngine,
    FFmpegEngine,
    HTTPBlobStore,
    JsonHashIndex,
    LocalBlobStore,
    MemoryBlobStore,
    RetryExecutor,
    RetryPolicy,
    ThumbnailService,
    TranscodingPipeline,
    UploadSessionManager,
)
from .utils.events import ProgressChannel, ProgressEvent

__version__ = "0.1.0"
__all__ = [
    # Main
    "BatchOrchestrator",
    # Config
    "IngestConfig",
    "ProcessingOptions",
    "ThumbnailOptions",
    "TranscodingOptions",
    # Models
    "BatchJob",
    "BatchProgress",
    "FileResult",
    "FileState",
    "MediaKind",
    "Priority",
    "ResultStatus",
    "ThumbnailResult",
    "TranscodingResult",
    "UploadFile",
    "UploadSession",
    # Errors
    "IngestError",
    "InvalidStateTransitionError",
    "MaxRetriesExceededError",
    "PipelineUnavailableError",
    "ProcessingError",
    "ResourceError",
    "RetryExhaustedError",
    "SessionError",
    "TransientStorageError",
    "ValidationError",
    # Services
    "DeduplicationEngine",
    "FFmpegEngine",
    "HTTPBlobStore",
    "JsonHashIndex",
    "LocalBlobStore",
    "MemoryBlobStore",
    "RetryExecutor",
    "RetryPolicy",
    "ThumbnailService",
    "TranscodingPipeline",
    "UploadSessionManager",
    # Progress
    "ProgressChannel",
    "ProgressEvent",
]
