"""Admission queue - FIFO within a priority class, high before normal before low."""
import heapq
import itertools
from typing import Dict, List, Optional, Tuple

from ..models import Priority


class AdmissionQueue:
    """
    Pending files waiting for a worker slot.

    A file keeps its submission sequence number, so a re-queued file
    (resume, retry) returns to its original position within its class.
    """

    def __init__(self):
        self._heap: List[Tuple[int, int, str]] = []
        self._seq: Dict[str, int] = {}
        self._queued: Dict[str, Tuple[int, int, str]] = {}
        self._counter = itertools.count()

    def push(self, file_id: str, priority: Priority = Priority.NORMAL) -> None:
        if file_id in self._queued:
            return
        seq = self._seq.setdefault(file_id, next(self._counter))
        entry = (priority.rank, seq, file_id)
        self._queued[file_id] = entry
        heapq.heappush(self._heap, entry)

    def pop(self) -> Optional[str]:
        """Next file id to admit, or None when empty."""
        while self._heap:
            entry = heapq.heappop(self._heap)
            file_id = entry[2]
            if self._queued.get(file_id) == entry:
                del self._queued[file_id]
                return file_id
        return None

    def remove(self, file_id: str) -> bool:
        """Drop a queued file (lazy deletion). Returns False if it was not queued."""
        return self._queued.pop(file_id, None) is not None

    def __contains__(self, file_id: str) -> bool:
        return file_id in self._queued

    def __len__(self) -> int:
        return len(self._queued)

    def __bool__(self) -> bool:
        return bool(self._queued)
