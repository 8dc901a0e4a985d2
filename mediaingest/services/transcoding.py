"""
Transcoding Pipeline - video renditions, engine health and aggregate stats.

Each pipeline instance owns its configuration and its TranscodingStats;
any number of instances can coexist.
"""
import asyncio
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import psutil

from ..config import MB, IngestConfig, TranscodingOptions
from ..errors import InsufficientResourcesError, PipelineUnavailableError, ProcessingError, RetryExhaustedError
from ..models import MediaInfo, TranscodingResult
from ..protocols import IMediaEngine
from .media_engine import build_transcode_args
from .retry import RetryExecutor, RetryPolicy

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
Job = Union[PathLike, Tuple[PathLike, PathLike]]


@dataclass(frozen=True)
class StatsSnapshot:
    total_files: int = 0
    successful: int = 0
    failed: int = 0
    total_processing_time: float = 0.0
    average_processing_time: float = 0.0
    total_size_before: int = 0
    total_size_after: int = 0
    compression_ratio: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_files": self.total_files,
            "successful": self.successful,
            "failed": self.failed,
            "total_processing_time": self.total_processing_time,
            "average_processing_time": self.average_processing_time,
            "total_size_before": self.total_size_before,
            "total_size_after": self.total_size_after,
            "compression_ratio": self.compression_ratio,
        }


class TranscodingStats:
    """
    Running aggregate over every completed or failed job.

    All mutation happens under one lock so concurrent workers never lose
    an update.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self.total_files = 0
        self.successful = 0
        self.failed = 0
        self.total_processing_time = 0.0
        self.total_size_before = 0
        self.total_size_after = 0

    def record(self, success: bool, processing_time: float, size_before: int = 0, size_after: int = 0) -> None:
        with self._lock:
            self.total_files += 1
            self.total_processing_time += processing_time
            if success:
                self.successful += 1
                self.total_size_before += size_before
                self.total_size_after += size_after
            else:
                self.failed += 1

    @property
    def average_processing_time(self) -> float:
        return self.total_processing_time / self.total_files if self.total_files else 0.0

    @property
    def compression_ratio(self) -> float:
        """Size after as a percentage of size before (40.0 means 60% smaller)."""
        if self.total_size_before <= 0:
            return 0.0
        return self.total_size_after / self.total_size_before * 100

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                total_files=self.total_files,
                successful=self.successful,
                failed=self.failed,
                total_processing_time=self.total_processing_time,
                average_processing_time=self.average_processing_time,
                total_size_before=self.total_size_before,
                total_size_after=self.total_size_after,
                compression_ratio=self.compression_ratio,
            )

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()


@dataclass(frozen=True)
class PipelineHealth:
    healthy: bool
    reasons: List[str] = field(default_factory=list)
    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None
    free_disk_mb: Optional[float] = None
    low_disk: bool = False


class TranscodingPipeline:
    """
    Drives the media engine for video renditions.

    Usage:
        pipeline = TranscodingPipeline(config, FFmpegEngine())
        pipeline.initialize()
        result = await pipeline.transcode_video("in.mov", "out.mp4", TranscodingOptions(quality="low"))
    """

    def __init__(
        self,
        config: IngestConfig,
        engine: IMediaEngine,
        retry: Optional[RetryExecutor] = None,
        stats: Optional[TranscodingStats] = None,
    ):
        self._config = config
        self._engine = engine
        self._retry = retry or RetryExecutor(RetryPolicy.from_config(config))
        self._stats = stats or TranscodingStats()
        self._initialized = False

    @property
    def engine(self) -> IMediaEngine:
        return self._engine

    @property
    def stats(self) -> TranscodingStats:
        return self._stats

    def initialize(self) -> None:
        """Create working directories."""
        for directory in (self._config.temp_dir, self._config.output_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self._initialized = True
        logger.info("Transcoding pipeline ready (work dir %s)", self._config.work_dir)

    # Health
    def check_health(self) -> PipelineHealth:
        reasons = []
        if not self._engine.resolve():
            reasons.append("media engine executables (ffmpeg/ffprobe) not found")

        for directory in (self._config.temp_dir, self._config.output_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                reasons.append(f"cannot create {directory}: {e}")
                continue
            if not os.access(directory, os.W_OK):
                reasons.append(f"{directory} is not writable")

        free_mb = None
        low_disk = False
        if self._config.min_free_disk_mb > 0:
            try:
                free_mb = psutil.disk_usage(str(self._config.work_dir)).free / MB
            except OSError as e:
                reasons.append(f"cannot read free disk space: {e}")
            else:
                if free_mb < self._config.min_free_disk_mb:
                    low_disk = True
                    reasons.append(
                        f"only {free_mb:.0f} MB free, {self._config.min_free_disk_mb} MB required"
                    )

        health = PipelineHealth(
            healthy=not reasons,
            reasons=reasons,
            ffmpeg_path=self._engine.ffmpeg_path,
            ffprobe_path=self._engine.ffprobe_path,
            free_disk_mb=free_mb,
            low_disk=low_disk,
        )
        if not health.healthy:
            logger.warning("Transcoding pipeline unhealthy: %s", "; ".join(reasons))
        return health

    def ensure_available(self) -> PipelineHealth:
        """
        Raises:
            InsufficientResourcesError: disk space is the only problem
            PipelineUnavailableError: engine or working directories unusable
        """
        health = self.check_health()
        if health.healthy:
            return health
        message = "; ".join(health.reasons)
        if health.low_disk and len(health.reasons) == 1:
            raise InsufficientResourcesError(message)
        raise PipelineUnavailableError(message)

    # Transcoding
    def default_output_path(self, input_path: Path, options: TranscodingOptions) -> Path:
        return self._config.output_dir / f"{input_path.stem}_{options.quality}.{options.output_format}"

    async def transcode_video(
        self,
        input_path: PathLike,
        output_path: Optional[PathLike] = None,
        options: Optional[TranscodingOptions] = None,
    ) -> TranscodingResult:
        """
        Transcode one video and record the outcome in the stats.

        Engine failures come back as ``TranscodingResult(success=False)``;
        only ResourceError propagates.
        """
        options = options or TranscodingOptions()
        input_path = Path(input_path)
        output_path = Path(output_path) if output_path else self.default_output_path(input_path, options)
        if not self._initialized:
            self.initialize()
        self.ensure_available()

        start = time.monotonic()
        original = MediaInfo()
        try:
            original = await self._engine.inspect(input_path)
            args = build_transcode_args(options)
            await self._retry.execute(
                lambda: self._engine.transcode(input_path, output_path, args,
                                               timeout=self._config.pipeline_timeout),
                name=f"transcode {input_path.name}",
            )
            transcoded = await self._engine.inspect(output_path)
        except (ProcessingError, RetryExhaustedError) as e:
            elapsed = time.monotonic() - start
            self._stats.record(False, elapsed)
            logger.warning("Transcoding failed for %s: %s", input_path.name, e)
            return TranscodingResult.fail(input_path, output_path, str(e),
                                          processing_time=elapsed, original=original)

        elapsed = time.monotonic() - start
        size_before = original.size or _file_size(input_path)
        size_after = transcoded.size or _file_size(output_path)
        self._stats.record(True, elapsed, size_before, size_after)
        logger.info(
            "Transcoded %s (%s): %d -> %d bytes in %.1fs",
            input_path.name, options.quality, size_before, size_after, elapsed,
        )
        return TranscodingResult.ok(
            input_path, output_path,
            original=original,
            transcoded=transcoded,
            processing_time=elapsed,
            quality=options.quality,
            codec=options.codec,
        )

    async def transcode_batch(
        self,
        jobs: Sequence[Job],
        options: Optional[TranscodingOptions] = None,
    ) -> List[TranscodingResult]:
        """
        Transcode many videos, at most ``max_concurrent_transcoding_jobs`` at a time.

        Results keep the order of ``jobs``. In ``chunked`` mode each group
        finishes completely before the next starts.
        """
        limit = self._config.max_concurrent_transcoding_jobs
        pairs = [(j if isinstance(j, tuple) else (j, None)) for j in jobs]

        if self._config.transcode_batch_mode == "chunked":
            results: List[TranscodingResult] = []
            for offset in range(0, len(pairs), limit):
                chunk = pairs[offset:offset + limit]
                results.extend(await asyncio.gather(
                    *(self.transcode_video(src, dst, options) for src, dst in chunk)
                ))
            return results

        semaphore = asyncio.Semaphore(limit)

        async def run(src, dst):
            async with semaphore:
                return await self.transcode_video(src, dst, options)

        return list(await asyncio.gather(*(run(src, dst) for src, dst in pairs)))

    # Stats
    def record_processed(self, success: bool, processing_time: float) -> None:
        """Count a non-video file that went through the processing stage (no size contribution)."""
        self._stats.record(success, processing_time)

    def get_stats(self) -> StatsSnapshot:
        return self._stats.snapshot()

    def reset_stats(self) -> None:
        self._stats.reset()
        logger.info("Transcoding stats reset")


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0
