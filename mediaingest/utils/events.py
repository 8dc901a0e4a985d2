from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Tuple
import asyncio
import logging
import time
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """Progress information for a single file."""
    file_id: str
    percent: float
    stage: str  # pending, uploading, paused, processing, error, completed, cancelled
    batch_id: Optional[str] = None
    message: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


_CLOSED = object()


class ProgressChannel:
    """
    Bounded queue of progress events.

    The orchestrator publishes, callers drain or iterate. Publishing never
    blocks: when the queue is full the oldest event is dropped.
    """

    def __init__(self, maxsize: int = 1000):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1

    def drain(self) -> List[ProgressEvent]:
        """Return every queued event without waiting."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return events
            if item is _CLOSED:
                # Keep the marker so iterators still terminate
                self._queue.put_nowait(_CLOSED)
                return events
            events.append(item)

    async def get(self) -> Optional[ProgressEvent]:
        """Next event, or None once the channel is closed and empty."""
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self):
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class ProgressTracker:
    """Publish only meaningful updates: a change of at least 1% or a new stage."""

    def __init__(self, channel: ProgressChannel, min_step: float = 1.0):
        self._channel = channel
        self._min_step = min_step
        self._last: Dict[str, Tuple[str, float]] = {}

    @property
    def channel(self) -> ProgressChannel:
        return self._channel

    def update(self, file_id: str, percent: float, stage: str,
               batch_id: Optional[str] = None, message: Optional[str] = None) -> bool:
        percent = max(0.0, min(100.0, percent))
        last = self._last.get(file_id)
        if last is not None:
            last_stage, last_percent = last
            if stage == last_stage and abs(percent - last_percent) < self._min_step:
                return False
        self._last[file_id] = (stage, percent)
        self._channel.publish(ProgressEvent(
            file_id=file_id, percent=percent, stage=stage, batch_id=batch_id, message=message,
        ))
        return True

    def forget(self, file_id: str) -> None:
        self._last.pop(file_id, None)
