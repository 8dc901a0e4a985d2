"""
Models for the ingestion pipeline.

Mutable records (UploadFile, UploadSession, BatchJob) are owned by a single
component; results handed back to callers are frozen dataclasses.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set


class MediaKind(Enum):
    """Declared media kind of an uploaded file."""
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


class FileState(Enum):
    """Per-file lifecycle state."""
    PENDING = "pending"
    UPLOADING = "uploading"
    PAUSED = "paused"
    PROCESSING = "processing"
    ERROR = "error"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (FileState.COMPLETED, FileState.CANCELLED)

    @property
    def is_active(self) -> bool:
        """Holding a worker slot."""
        return self in (FileState.UPLOADING, FileState.PROCESSING)


class Priority(Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 0, "normal": 1, "low": 2}[self.value]


class ResultStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class UploadFile:
    """
    One file within a batch.

    Content comes either from ``data`` (in-memory buffer) or ``path``.
    """
    id: str
    filename: str
    size: int
    mime_type: str = "application/octet-stream"
    kind: Optional[MediaKind] = None
    data: Optional[bytes] = field(default=None, repr=False)
    path: Optional[Path] = None
    priority: Optional[Priority] = None
    state: FileState = FileState.PENDING
    progress: float = 0.0
    retry_count: int = 0
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    error_stage: Optional[FileState] = None
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    content_hash: Optional[str] = None
    storage_key: Optional[str] = None
    is_duplicate: bool = False
    thumbnail: Optional["ThumbnailResult"] = None
    transcoding: Optional["TranscodingResult"] = None
    session_id: Optional[str] = None

    def __post_init__(self):
        if self.path is not None:
            self.path = Path(self.path)

    @property
    def has_content(self) -> bool:
        return self.data is not None or self.path is not None


@dataclass
class Chunk:
    """A contiguous byte range of a session, verified independently."""
    index: int
    size: int
    uploaded: bool = False
    integrity_tag: Optional[str] = None


@dataclass
class UploadSession:
    """Resumable multi-chunk upload."""
    id: str
    caller_id: str
    filename: str
    total_size: int
    chunk_size: int
    chunks: List[Chunk]
    created_at: float
    last_activity: float
    expires_at: float
    uploaded_size: int = 0
    mime_type: Optional[str] = None
    multipart_handle: Optional[str] = None

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    @property
    def is_complete(self) -> bool:
        return all(c.uploaded for c in self.chunks)

    def missing_chunks(self) -> List[int]:
        return [c.index for c in self.chunks if not c.uploaded]

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at


@dataclass(frozen=True)
class ChunkAcceptResult:
    session_id: str
    index: int
    integrity_tag: str
    uploaded_size: int
    total_size: int
    duplicate_chunk: bool = False  # identical re-send, nothing written

    @property
    def percent(self) -> float:
        if self.total_size <= 0:
            return 100.0
        return self.uploaded_size / self.total_size * 100


@dataclass(frozen=True)
class StoredObject:
    """Outcome of committing content through the dedup engine."""
    storage_key: str
    content_hash: str
    size: int
    is_duplicate: bool = False
    record: Optional["DedupRecord"] = None


@dataclass
class DedupRecord:
    """Hash -> stored object mapping plus derived artifacts already produced for it."""
    content_hash: str
    storage_key: str
    size: int = 0
    owners: Set[str] = field(default_factory=set)
    thumbnail: Optional["ThumbnailResult"] = None
    transcoding: Optional["TranscodingResult"] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "storage_key": self.storage_key,
            "size": self.size,
            "owners": sorted(self.owners),
            "thumbnail": self.thumbnail.to_dict() if self.thumbnail else None,
            "transcoding": self.transcoding.to_dict() if self.transcoding else None,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DedupRecord":
        thumb = data.get("thumbnail")
        trans = data.get("transcoding")
        return cls(
            content_hash=data["content_hash"],
            storage_key=data["storage_key"],
            size=data.get("size", 0),
            owners=set(data.get("owners") or []),
            thumbnail=ThumbnailResult.from_dict(thumb) if thumb else None,
            transcoding=TranscodingResult.from_dict(trans) if trans else None,
            created_at=data.get("created_at") or time.time(),
        )


@dataclass(frozen=True)
class MediaInfo:
    """Technical metadata reported by the media engine."""
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    bitrate: Optional[int] = None
    codec: Optional[str] = None
    size: int = 0
    format: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "duration": self.duration,
            "bitrate": self.bitrate,
            "codec": self.codec,
            "size": self.size,
            "format": self.format,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MediaInfo":
        return cls(**{k: data.get(k) for k in ("width", "height", "duration", "bitrate", "codec", "format")},
                   size=data.get("size") or 0)


@dataclass(frozen=True)
class ThumbnailResult:
    width: int
    height: int
    format: str
    size: int
    storage_key: Optional[str] = None
    path: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "format": self.format,
            "size": self.size,
            "storage_key": self.storage_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThumbnailResult":
        return cls(
            width=data["width"],
            height=data["height"],
            format=data["format"],
            size=data.get("size", 0),
            storage_key=data.get("storage_key"),
        )


@dataclass(frozen=True)
class TranscodingResult:
    """Immutable result of one transcode."""
    input_path: str
    output_path: str
    success: bool
    quality: str = "medium"
    codec: str = "libx264"
    original: MediaInfo = field(default_factory=MediaInfo)
    transcoded: MediaInfo = field(default_factory=MediaInfo)
    processing_time: float = 0.0
    error: Optional[str] = None
    storage_key: Optional[str] = None

    @classmethod
    def ok(cls, input_path, output_path, original: MediaInfo, transcoded: MediaInfo,
           processing_time: float, quality: str = "medium", codec: str = "libx264"):
        return cls(
            input_path=str(input_path),
            output_path=str(output_path),
            success=True,
            quality=quality,
            codec=codec,
            original=original,
            transcoded=transcoded,
            processing_time=processing_time,
        )

    @classmethod
    def fail(cls, input_path, output_path, error: str, processing_time: float = 0.0,
             original: Optional[MediaInfo] = None):
        return cls(
            input_path=str(input_path),
            output_path=str(output_path),
            success=False,
            original=original or MediaInfo(),
            processing_time=processing_time,
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_path": self.input_path,
            "output_path": self.output_path,
            "success": self.success,
            "quality": self.quality,
            "codec": self.codec,
            "original": self.original.to_dict(),
            "transcoded": self.transcoded.to_dict(),
            "processing_time": self.processing_time,
            "error": self.error,
            "storage_key": self.storage_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscodingResult":
        return cls(
            input_path=data["input_path"],
            output_path=data["output_path"],
            success=data["success"],
            quality=data.get("quality", "medium"),
            codec=data.get("codec", "libx264"),
            original=MediaInfo.from_dict(data.get("original") or {}),
            transcoded=MediaInfo.from_dict(data.get("transcoded") or {}),
            processing_time=data.get("processing_time", 0.0),
            error=data.get("error"),
            storage_key=data.get("storage_key"),
        )


@dataclass(frozen=True)
class FileResult:
    """Immutable terminal outcome of one file in a batch."""
    file_id: str
    filename: str
    status: ResultStatus
    storage_key: Optional[str] = None
    content_hash: Optional[str] = None
    is_duplicate: bool = False
    thumbnail: Optional[ThumbnailResult] = None
    transcoding: Optional[TranscodingResult] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retry_count: int = 0
    size: int = 0

    @property
    def success(self) -> bool:
        return self.status == ResultStatus.SUCCEEDED

    @classmethod
    def from_file(cls, f: UploadFile) -> "FileResult":
        if f.state == FileState.COMPLETED:
            status = ResultStatus.SUCCEEDED
        elif f.state == FileState.CANCELLED:
            status = ResultStatus.CANCELLED
        else:
            status = ResultStatus.FAILED
        return cls(
            file_id=f.id,
            filename=f.filename,
            status=status,
            storage_key=f.storage_key,
            content_hash=f.content_hash,
            is_duplicate=f.is_duplicate,
            thumbnail=f.thumbnail,
            transcoding=f.transcoding,
            error=f.last_error,
            error_kind=f.error_kind,
            retry_count=f.retry_count,
            size=f.size,
        )


@dataclass
class BatchJob:
    """A submitted batch and, once terminal, its per-file results."""
    id: str
    files: List[UploadFile]
    concurrency: int
    results: List[FileResult] = field(default_factory=list)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    halted_reason: Optional[str] = None

    @property
    def total_files(self) -> int:
        return len(self.files)

    @property
    def is_terminal(self) -> bool:
        return len(self.results) == self.total_files and self.ended_at is not None

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        """Failed and cancelled files."""
        return sum(1 for r in self.results if not r.success)

    @property
    def cancelled_count(self) -> int:
        return sum(1 for r in self.results if r.status == ResultStatus.CANCELLED)

    @property
    def duplicate_count(self) -> int:
        return sum(1 for r in self.results if r.is_duplicate)

    @property
    def total_bytes(self) -> int:
        return sum(f.size for f in self.files)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    @property
    def all_success(self) -> bool:
        return self.is_terminal and self.failure_count == 0


@dataclass(frozen=True)
class BatchProgress:
    """
    Aggregate progress of a batch at one point in time.

    Completed, cancelled and failed files count as fully done, so a halted or
    partly failed batch still reaches 100%. A retried file moves back.
    """
    batch_id: str
    total_files: int
    settled_files: int
    bytes_total: int
    bytes_done: float
    elapsed: float
    speed: float  # bytes per second since the batch started
    eta: Optional[float]  # seconds; None while nothing has moved yet

    @property
    def percent(self) -> float:
        if self.bytes_total <= 0:
            return 100.0 * self.settled_files / self.total_files if self.total_files else 100.0
        return min(100.0, 100.0 * self.bytes_done / self.bytes_total)

    @property
    def is_complete(self) -> bool:
        return self.settled_files == self.total_files

    @classmethod
    def of(cls, job: "BatchJob", now: Optional[float] = None) -> "BatchProgress":
        """Snapshot ``job`` from its files' progress and start time."""
        now = time.time() if now is None else now
        settled = [f for f in job.files if f.state.is_terminal or f.state == FileState.ERROR]
        settled_ids = {f.id for f in settled}
        bytes_done = sum(f.size for f in settled) + sum(
            f.size * f.progress / 100 for f in job.files if f.id not in settled_ids
        )
        bytes_total = job.total_bytes
        end = job.ended_at if job.ended_at is not None else now
        elapsed = max(0.0, end - job.started_at) if job.started_at is not None else 0.0
        speed = bytes_done / elapsed if elapsed > 0 else 0.0

        if len(settled) == job.total_files:
            eta = 0.0
        elif speed > 0:
            eta = max(0.0, bytes_total - bytes_done) / speed
        else:
            eta = None
        return cls(
            batch_id=job.id,
            total_files=job.total_files,
            settled_files=len(settled),
            bytes_total=bytes_total,
            bytes_done=bytes_done,
            elapsed=elapsed,
            speed=speed,
            eta=eta,
        )
