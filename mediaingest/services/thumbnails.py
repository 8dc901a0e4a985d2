"""
Thumbnail Service - Single Responsibility: derive still thumbnails.

Images are decoded and resized with Pillow; videos are first reduced to a
single frame by the media engine. Aspect ratio is preserved and images are
never upscaled.
"""
import asyncio
import io
import logging
import time
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

from PIL import Image, ImageOps, UnidentifiedImageError

from ..config import IngestConfig, ThumbnailOptions
from ..errors import UnsupportedMediaError
from ..models import MediaKind, ThumbnailResult
from ..protocols import IMediaEngine

logger = logging.getLogger(__name__)

Source = Union[bytes, Path]

_PIL_FORMATS = {"jpeg": "JPEG", "png": "PNG", "webp": "WEBP"}


def compute_thumbnail_size(orig_width: int, orig_height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """Fit inside the box keeping aspect ratio; scale is capped at 1.0 (never upscale)."""
    if orig_width <= 0 or orig_height <= 0:
        raise UnsupportedMediaError(f"Invalid image dimensions {orig_width}x{orig_height}")
    scale = min(max_width / orig_width, max_height / orig_height, 1.0)
    return max(1, int(orig_width * scale)), max(1, int(orig_height * scale))


def frame_seek_time(duration: Optional[float]) -> float:
    """Seek position for the representative video frame: min(1s, 10% of duration)."""
    if not duration or duration <= 0:
        return 0.0
    return min(1.0, duration * 0.1)


def _render(source: Source, options: ThumbnailOptions) -> Tuple[int, int, bytes]:
    try:
        if isinstance(source, (bytes, bytearray, memoryview)):
            img = Image.open(io.BytesIO(source))
        else:
            img = Image.open(source)
        with img:
            img = ImageOps.exif_transpose(img)
            width, height = compute_thumbnail_size(img.width, img.height, options.width, options.height)
            resized = img.resize((width, height), resample=Image.Resampling.LANCZOS)
    except (UnidentifiedImageError, OSError) as e:
        raise UnsupportedMediaError(f"Cannot decode image: {e}") from e

    if options.format == "jpeg" and resized.mode not in ("RGB", "L"):
        resized = resized.convert("RGB")
    elif options.format == "webp" and resized.mode not in ("RGB", "RGBA"):
        resized = resized.convert("RGBA")

    buf = io.BytesIO()
    save_kwargs = {"optimize": True}
    if options.format in ("jpeg", "webp"):
        save_kwargs["quality"] = options.quality
    resized.save(buf, format=_PIL_FORMATS[options.format], **save_kwargs)
    return width, height, buf.getvalue()


class ThumbnailCache:
    """
    Bounded LRU cache of thumbnail results with a TTL.

    Injected into ThumbnailService; there is no module-level cache. The
    cache owns the local file of every entry it holds and deletes it when
    the entry is evicted, expires or is replaced.
    """

    def __init__(self, max_size: int = 256, ttl: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, ThumbnailResult]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(source_key: str, options: ThumbnailOptions) -> str:
        return f"{source_key}:{options.width}x{options.height}:q{options.quality}:{options.format}"

    def get(self, key: str) -> Optional[ThumbnailResult]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        stored_at, result = entry
        if self._clock() - stored_at > self._ttl:
            del self._entries[key]
            self._discard(result)
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return result

    def put(self, key: str, result: ThumbnailResult) -> None:
        previous = self._entries.get(key)
        if previous is not None and previous[1].path != result.path:
            self._discard(previous[1])
        self._entries[key] = (self._clock(), result)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_size:
            _, (_, evicted) = self._entries.popitem(last=False)
            self._discard(evicted)

    def clear(self) -> None:
        for _, result in self._entries.values():
            self._discard(result)
        self._entries.clear()

    @staticmethod
    def _discard(result: ThumbnailResult) -> None:
        if result.path is not None:
            result.path.unlink(missing_ok=True)

    def __len__(self) -> int:
        return len(self._entries)


class ThumbnailService:
    """
    Service for generating thumbnails.

    Encoded thumbnails are written under ``output_dir/thumbnails`` and
    returned as ThumbnailResult with ``path`` set. Files of cached results
    are removed by the cache; uncached files belong to the caller.
    """

    def __init__(
        self,
        engine: IMediaEngine,
        config: Optional[IngestConfig] = None,
        cache: Optional[ThumbnailCache] = None,
    ):
        self._engine = engine
        self._config = config or IngestConfig()
        self._cache = cache
        self._out_dir = self._config.output_dir / "thumbnails"

    @property
    def cache(self) -> Optional[ThumbnailCache]:
        return self._cache

    async def generate_thumbnail(
        self,
        source: Source,
        kind: MediaKind,
        options: Optional[ThumbnailOptions] = None,
        cache_key: Optional[str] = None,
    ) -> Optional[ThumbnailResult]:
        """
        Generate a thumbnail for an image or video.

        Args:
            source: Encoded bytes or a path to the media file
            kind: Media kind; audio and documents get no thumbnail
            options: Bounding box/encoding (defaults from config)
            cache_key: Stable identity of the source (content hash) for caching

        Returns:
            ThumbnailResult, or None for unsupported kinds

        Raises:
            UnsupportedMediaError: source could not be decoded
        """
        if kind not in (MediaKind.IMAGE, MediaKind.VIDEO):
            return None
        options = options or self._config.thumbnail_defaults

        key = ThumbnailCache.make_key(cache_key, options) if (self._cache and cache_key) else None
        if key:
            cached = self._cache.get(key)
            if cached is not None and (cached.path is None or cached.path.exists()):
                logger.debug("Thumbnail cache HIT for %s", cache_key[:16])
                return cached

        if kind == MediaKind.VIDEO:
            result = await self._from_video(source, options)
        else:
            result = await self._from_image(source, options)

        if key:
            self._cache.put(key, result)
        return result

    async def _from_image(self, source: Source, options: ThumbnailOptions) -> ThumbnailResult:
        width, height, encoded = await asyncio.to_thread(_render, source, options)
        path = self._out_dir / f"{uuid.uuid4().hex}.{options.extension}"
        await asyncio.to_thread(self._write, path, encoded)
        logger.debug("Thumbnail %dx%d %s (%d bytes)", width, height, options.format, len(encoded))
        return ThumbnailResult(width=width, height=height, format=options.format, size=len(encoded), path=path)

    async def _from_video(self, source: Source, options: ThumbnailOptions) -> ThumbnailResult:
        temp_dir = self._config.temp_dir
        cleanup = []
        try:
            if isinstance(source, (bytes, bytearray, memoryview)):
                video_path = temp_dir / f"thumbsrc_{uuid.uuid4().hex}"
                await asyncio.to_thread(self._write, video_path, bytes(source))
                cleanup.append(video_path)
            else:
                video_path = Path(source)

            info = await self._engine.inspect(video_path)
            frame_path = temp_dir / f"frame_{uuid.uuid4().hex}.png"
            cleanup.append(frame_path)
            await self._engine.capture_frame(video_path, frame_path, frame_seek_time(info.duration))
            return await self._from_image(frame_path, options)
        finally:
            for p in cleanup:
                p.unlink(missing_ok=True)

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
