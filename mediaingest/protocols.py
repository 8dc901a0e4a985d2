"""
Protocols (Interfaces) for the collaborators the pipeline consumes.

The core never implements these for production; it ships in-memory/local
adapters and a thin HTTP adapter.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional, Protocol, runtime_checkable

from .models import DedupRecord, MediaInfo


@runtime_checkable
class IBlobStore(Protocol):
    """Interface for the blob store."""

    async def put(self, key: str, data: bytes) -> None:
        """Store bytes under key. Raises TransientStorageError on network/timeout failure."""
        ...

    async def get(self, key: str) -> bytes:
        """Fetch bytes. Raises BlobNotFoundError when missing."""
        ...

    async def exists(self, key: str) -> bool:
        ...


@runtime_checkable
class IMediaEngine(Protocol):
    """Interface for the external media-processing engine."""

    def resolve(self) -> bool:
        """Return True when the engine's executables can be located."""
        ...

    @property
    def ffmpeg_path(self) -> Optional[str]:
        ...

    @property
    def ffprobe_path(self) -> Optional[str]:
        ...

    async def inspect(self, path: Path) -> MediaInfo:
        """Inspect codec, dimensions and duration."""
        ...

    async def transcode(self, input_path: Path, output_path: Path, args: Iterable[str],
                        timeout: Optional[float] = None) -> None:
        """Run one transcode. Raises ProcessingError on non-zero exit."""
        ...

    async def capture_frame(self, input_path: Path, output_path: Path, at_seconds: float) -> Path:
        """Write a single still frame taken at ``at_seconds``."""
        ...


class IHashIndex(ABC):
    """Interface for hash -> storage key records (Repository Pattern)."""

    @abstractmethod
    async def get(self, content_hash: str) -> Optional[DedupRecord]:
        pass

    @abstractmethod
    async def put(self, record: DedupRecord) -> None:
        pass

    @abstractmethod
    async def delete(self, content_hash: str) -> None:
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass
