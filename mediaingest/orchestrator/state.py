"""Per-file state machine. Every transition happens under the file's lock."""
import asyncio
import logging
import time
from typing import Dict, FrozenSet, Optional

from ..errors import InvalidStateTransitionError
from ..models import FileState, UploadFile

logger = logging.getLogger(__name__)

_NON_TERMINAL = [s for s in FileState if not s.is_terminal]

TRANSITIONS: Dict[FileState, FrozenSet[FileState]] = {
    FileState.PENDING: frozenset({FileState.UPLOADING}),
    FileState.UPLOADING: frozenset({FileState.PROCESSING, FileState.PAUSED, FileState.ERROR}),
    FileState.PAUSED: frozenset({FileState.UPLOADING}),
    FileState.PROCESSING: frozenset({FileState.COMPLETED, FileState.ERROR}),
    FileState.ERROR: frozenset({FileState.UPLOADING}),
    FileState.COMPLETED: frozenset(),
    FileState.CANCELLED: frozenset(),
}
# Any non-terminal state may be cancelled
for _state in _NON_TERMINAL:
    TRANSITIONS[_state] = TRANSITIONS[_state] | {FileState.CANCELLED}


def can_transition(current: FileState, target: FileState) -> bool:
    return target in TRANSITIONS[current]


class FileStateMachine:
    """
    Serializes state changes per file.

    A pause request racing a completion resolves to exactly one of them:
    the loser sees the new state and gets InvalidStateTransitionError.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, file_id: str) -> asyncio.Lock:
        return self._locks.setdefault(file_id, asyncio.Lock())

    async def transition(self, file: UploadFile, target: FileState, error: Optional[str] = None) -> FileState:
        """
        Move ``file`` to ``target``.

        Returns:
            The previous state

        Raises:
            InvalidStateTransitionError: illegal from the current state (state unchanged)
        """
        async with self.lock(file.id):
            return self.transition_locked(file, target, error)

    def transition_locked(self, file: UploadFile, target: FileState, error: Optional[str] = None) -> FileState:
        """Same as transition() for callers already holding ``lock(file.id)``."""
        current = file.state
        if not can_transition(current, target):
            raise InvalidStateTransitionError(file.id, current, target)
        file.state = target
        now = time.time()
        if target == FileState.UPLOADING and file.started_at is None:
            file.started_at = now
        if target.is_terminal:
            file.ended_at = now
        if error is not None:
            file.last_error = error
        logger.debug("File %s: %s -> %s", file.id, current.value, target.value)
        return current

    def forget(self, file_id: str) -> None:
        self._locks.pop(file_id, None)
