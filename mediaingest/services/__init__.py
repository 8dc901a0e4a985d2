"""Services for the ingestion pipeline."""
from .api_client import HTTPBlobStore
from .dedup import DeduplicationEngine, blake3_bytes, blake3_file, storage_key_for
from .hash_index import InMemoryHashIndex, JsonHashIndex
from .media_engine import FFmpegEngine
from .retry import RetryExecutor, RetryPolicy
from .sessions import UploadSessionManager
from .storage import LocalBlobStore, MemoryBlobStore, StorageService
from .thumbnails import ThumbnailCache, ThumbnailService
from .transcoding import PipelineHealth, TranscodingPipeline, TranscodingStats
from .validation import FileValidator, detect_media_kind, validate_filename

__all__ = [
    "HTTPBlobStore",
    "DeduplicationEngine",
    "blake3_bytes",
    "blake3_file",
    "storage_key_for",
    "InMemoryHashIndex",
    "JsonHashIndex",
    "FFmpegEngine",
    "RetryExecutor",
    "RetryPolicy",
    "UploadSessionManager",
    "LocalBlobStore",
    "MemoryBlobStore",
    "StorageService",
    "ThumbnailCache",
    "ThumbnailService",
    "PipelineHealth",
    "TranscodingPipeline",
    "TranscodingStats",
    "FileValidator",
    "detect_media_kind",
    "validate_filename",
]
