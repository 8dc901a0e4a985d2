"""
Configuration for the ingestion pipeline.

Immutable dataclasses enumerating every recognized option. Unknown keys are
rejected at construction instead of being silently ignored.
"""
import dataclasses
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ConfigError

MB = 1024 * 1024

DEFAULT_ALLOWED_MIME_TYPES: Tuple[str, ...] = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/bmp",
    "image/tiff",
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    "video/webm",
    "video/x-flv",
    "video/x-ms-wmv",
    "audio/mpeg",
    "audio/aac",
    "audio/wav",
    "audio/ogg",
    "audio/flac",
    "application/pdf",
    "text/plain",
)

THUMBNAIL_FORMATS = ("jpeg", "png", "webp")
QUALITY_TIERS = ("low", "medium", "high")
PRIORITIES = ("low", "normal", "high")
BATCH_MODES = ("pool", "chunked")

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(name: str) -> str:
    return _CAMEL_RE.sub("_", name).lower()


def _coerce(target):
    """Converter that passes instances through and builds them from mappings."""
    def convert(value):
        if isinstance(value, target):
            return value
        return target.from_mapping(value)
    return convert


def _build(cls, data: Mapping[str, Any], converters: Optional[Dict[str, Any]] = None):
    """Instantiate a dataclass from a mapping, accepting camelCase keys and rejecting unknown ones."""
    known = {f.name for f in dataclasses.fields(cls)}
    kwargs = {}
    unknown = []
    for key, value in data.items():
        name = _snake(key)
        if name not in known:
            unknown.append(key)
            continue
        if converters and name in converters and value is not None:
            value = converters[name](value)
        kwargs[name] = value
    if unknown:
        raise ConfigError(f"Unknown {cls.__name__} option(s): {', '.join(sorted(unknown))}")
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigError(str(e)) from e


@dataclass(frozen=True)
class ThumbnailOptions:
    """Bounding box and encoding for generated thumbnails."""
    width: int = 300
    height: int = 300
    quality: int = 80
    format: str = "jpeg"

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ConfigError("Thumbnail width and height must be positive")
        if not 1 <= self.quality <= 100:
            raise ConfigError("Thumbnail quality must be between 1 and 100")
        if self.format not in THUMBNAIL_FORMATS:
            raise ConfigError(f"Unsupported thumbnail format: {self.format}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ThumbnailOptions":
        return _build(cls, data)

    @property
    def extension(self) -> str:
        return "jpg" if self.format == "jpeg" else self.format


@dataclass(frozen=True)
class TranscodingOptions:
    """Requested rendition for a video transcode."""
    quality: str = "medium"
    codec: str = "libx264"
    audio_codec: str = "aac"
    output_format: str = "mp4"
    max_duration: Optional[float] = None

    def __post_init__(self):
        if self.quality not in QUALITY_TIERS:
            raise ConfigError(f"Unknown quality tier: {self.quality}")
        if self.max_duration is not None and self.max_duration <= 0:
            raise ConfigError("max_duration must be positive")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TranscodingOptions":
        return _build(cls, data)


@dataclass(frozen=True)
class ProcessingOptions:
    """Per-batch processing options supplied by the caller."""
    caller_id: str = "anonymous"
    priority: str = "normal"
    generate_thumbnail: bool = True
    transcode_video: bool = True
    thumbnail: Optional[ThumbnailOptions] = None
    transcoding: TranscodingOptions = field(default_factory=TranscodingOptions)

    def __post_init__(self):
        if self.priority not in PRIORITIES:
            raise ConfigError(f"Unknown priority: {self.priority}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProcessingOptions":
        return _build(cls, data, {
            "thumbnail": _coerce(ThumbnailOptions),
            "transcoding": _coerce(TranscodingOptions),
        })


def _default_work_dir() -> Path:
    return Path(tempfile.gettempdir()) / "mediaingest"


@dataclass(frozen=True)
class IngestConfig:
    """Immutable configuration for the whole pipeline."""
    max_file_size: int = 500 * MB
    allowed_mime_types: Tuple[str, ...] = DEFAULT_ALLOWED_MIME_TYPES
    max_concurrent_uploads: int = 3
    max_concurrent_transcoding_jobs: int = 2
    max_retry_attempts: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000
    retry_backoff_factor: float = 2.0
    retry_jitter: bool = False
    session_expiry_ms: int = 30 * 60 * 1000
    thumbnail_defaults: ThumbnailOptions = field(default_factory=ThumbnailOptions)
    chunk_size: int = 5 * MB
    pipeline_timeout_ms: int = 300000
    transcode_batch_mode: str = "pool"
    work_dir: Path = field(default_factory=_default_work_dir)
    min_free_disk_mb: int = 100
    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None
    progress_queue_size: int = 1000
    thumbnail_cache_size: int = 256
    thumbnail_cache_ttl_s: float = 3600.0
    storage_namespace: str = "media"

    def __post_init__(self):
        if self.max_file_size <= 0:
            raise ConfigError("max_file_size must be positive")
        if self.max_concurrent_uploads < 1:
            raise ConfigError("max_concurrent_uploads must be at least 1")
        if self.max_concurrent_transcoding_jobs < 1:
            raise ConfigError("max_concurrent_transcoding_jobs must be at least 1")
        if self.max_retry_attempts < 1:
            raise ConfigError("max_retry_attempts must be at least 1")
        if self.retry_base_delay_ms < 0:
            raise ConfigError("retry_base_delay_ms must be non-negative")
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ConfigError("retry_max_delay_ms must be >= retry_base_delay_ms")
        if self.retry_backoff_factor < 1:
            raise ConfigError("retry_backoff_factor must be >= 1")
        if self.session_expiry_ms <= 0:
            raise ConfigError("session_expiry_ms must be positive")
        if self.chunk_size <= 0:
            raise ConfigError("chunk_size must be positive")
        if self.pipeline_timeout_ms <= 0:
            raise ConfigError("pipeline_timeout_ms must be positive")
        if self.transcode_batch_mode not in BATCH_MODES:
            raise ConfigError(f"Unknown transcode_batch_mode: {self.transcode_batch_mode}")
        if self.progress_queue_size < 1:
            raise ConfigError("progress_queue_size must be at least 1")
        # Normalize containers so from_mapping() can take lists and strings
        object.__setattr__(self, "allowed_mime_types", tuple(self.allowed_mime_types))
        object.__setattr__(self, "work_dir", Path(self.work_dir))

    # Derived values
    @property
    def session_expiry(self) -> float:
        return self.session_expiry_ms / 1000

    @property
    def pipeline_timeout(self) -> float:
        return self.pipeline_timeout_ms / 1000

    @property
    def temp_dir(self) -> Path:
        return self.work_dir / "temp"

    @property
    def output_dir(self) -> Path:
        return self.work_dir / "output"

    @property
    def staging_dir(self) -> Path:
        return self.work_dir / "staging"

    def replace(self, **changes) -> "IngestConfig":
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "IngestConfig":
        """
        Build config from a dict using camelCase names (``maxFileSize``) or snake_case.

        Raises:
            ConfigError: on unknown keys or invalid values
        """
        return _build(cls, data, {
            "thumbnail_defaults": _coerce(ThumbnailOptions),
            "work_dir": Path,
        })

    @classmethod
    def from_env(cls, prefix: str = "MEDIAINGEST_") -> "IngestConfig":
        """Read ``MEDIAINGEST_*`` environment variables on top of defaults."""
        casts = {
            "max_file_size": int,
            "max_concurrent_uploads": int,
            "max_concurrent_transcoding_jobs": int,
            "max_retry_attempts": int,
            "retry_base_delay_ms": int,
            "retry_max_delay_ms": int,
            "retry_backoff_factor": float,
            "session_expiry_ms": int,
            "chunk_size": int,
            "pipeline_timeout_ms": int,
            "min_free_disk_mb": int,
            "progress_queue_size": int,
            "thumbnail_cache_size": int,
            "thumbnail_cache_ttl_s": float,
        }
        data: Dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            raw = os.getenv(prefix + f.name.upper())
            if raw is None or raw == "":
                continue
            if f.name in casts:
                try:
                    data[f.name] = casts[f.name](raw)
                except ValueError as e:
                    raise ConfigError(f"{prefix}{f.name.upper()}: {e}") from e
            elif f.name == "retry_jitter":
                data[f.name] = raw.strip().lower() in ("1", "true", "yes", "on")
            elif f.name == "allowed_mime_types":
                data[f.name] = tuple(t.strip() for t in raw.split(",") if t.strip())
            elif f.name == "thumbnail_defaults":
                width, _, height = raw.partition("x")
                try:
                    data[f.name] = ThumbnailOptions(width=int(width), height=int(height or width))
                except ValueError as e:
                    raise ConfigError(f"{prefix}THUMBNAIL_DEFAULTS: expected WIDTHxHEIGHT") from e
            else:
                data[f.name] = raw
        return cls.from_mapping(data)
