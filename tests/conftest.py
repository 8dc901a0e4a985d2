"""Shared fixtures and fakes for the mediaingest tests."""
import asyncio
import io
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from PIL import Image

from mediaingest.config import IngestConfig
from mediaingest.errors import ProcessingError, TransientStorageError
from mediaingest.models import MediaInfo
from mediaingest.services.storage import MemoryBlobStore


def make_jpeg(width: int = 1200, height: int = 800, color=(200, 40, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="JPEG")
    return buf.getvalue()


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


class FakeMediaEngine:
    """In-process stand-in for ffmpeg: writes outputs at ``ratio`` of the input size."""

    def __init__(
        self,
        available: bool = True,
        duration: float = 10.0,
        ratio: float = 0.4,
        fail_transcode: bool = False,
        delay: float = 0.0,
        delays: Optional[Dict[str, float]] = None,
    ):
        self.available = available
        self.duration = duration
        self.ratio = ratio
        self.fail_transcode = fail_transcode
        self.delay = delay
        self.delays = delays or {}
        self.inspect_calls: List[Path] = []
        self.transcode_calls: List[tuple] = []
        self.frame_calls: List[tuple] = []
        self.events: List[tuple] = []
        self.active = 0
        self.max_active = 0

    def resolve(self) -> bool:
        return self.available

    @property
    def ffmpeg_path(self):
        return "/usr/bin/ffmpeg" if self.available else None

    @property
    def ffprobe_path(self):
        return "/usr/bin/ffprobe" if self.available else None

    async def inspect(self, path) -> MediaInfo:
        path = Path(path)
        self.inspect_calls.append(path)
        size = path.stat().st_size if path.exists() else 0
        return MediaInfo(width=640, height=360, duration=self.duration, codec="h264", size=size, format="mp4")

    async def transcode(self, input_path, output_path, args, timeout=None) -> None:
        input_path, output_path = Path(input_path), Path(output_path)
        self.transcode_calls.append((input_path, output_path, list(args)))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.events.append(("start", input_path.name))
        try:
            delay = self.delays.get(input_path.name, self.delay)
            if delay:
                await asyncio.sleep(delay)
            if self.fail_transcode:
                raise ProcessingError("ffmpeg exited with code 1: invalid data found")
            size = input_path.stat().st_size
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_bytes(b"\0" * int(size * self.ratio))
        finally:
            self.active -= 1
            self.events.append(("end", input_path.name))

    async def capture_frame(self, input_path, output_path, at_seconds) -> Path:
        output_path = Path(output_path)
        self.frame_calls.append((Path(input_path), at_seconds))
        output_path.parent.mkdir(parents=True, exist_ok=True)
        Image.new("RGB", (640, 360), (10, 120, 200)).save(output_path, format="PNG")
        return output_path


class FlakyBlobStore(MemoryBlobStore):
    """Fails the first ``fail_puts`` writes with a transient error."""

    def __init__(self, fail_puts: int = 0):
        super().__init__()
        self.fail_puts = fail_puts
        self.attempts = 0

    async def put(self, key: str, data: bytes) -> None:
        self.attempts += 1
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise TransientStorageError(f"connection reset while writing {key}")
        await super().put(key, data)


class GatedBlobStore(MemoryBlobStore):
    """Holds every write until ``gate`` is set."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.waiting = 0

    async def put(self, key: str, data: bytes) -> None:
        self.waiting += 1
        try:
            await self.gate.wait()
        finally:
            self.waiting -= 1
        await super().put(key, data)


class SlowBlobStore(MemoryBlobStore):
    """Sleeps on every write and records how many writes overlap."""

    def __init__(self, delay: float = 0.02):
        super().__init__()
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def put(self, key: str, data: bytes) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            await super().put(key, data)
        finally:
            self.in_flight -= 1


@pytest.fixture
def config(tmp_path):
    return IngestConfig(
        work_dir=tmp_path / "work",
        min_free_disk_mb=0,
        retry_base_delay_ms=1,
        retry_max_delay_ms=5,
        chunk_size=64 * 1024,
    )


@pytest.fixture
def engine():
    return FakeMediaEngine()
