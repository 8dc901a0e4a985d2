"""
Error taxonomy for the ingestion pipeline.

Every exception carries a short ``kind`` used in per-file results so callers
can tell validation problems from storage outages without isinstance chains.
"""
from typing import Optional


class IngestError(Exception):
    """Base class for all ingestion errors."""

    kind = "error"


# Validation ---------------------------------------------------------------

class ValidationError(IngestError):
    """Rejected before any work starts. Never retried."""

    kind = "validation"


class ConfigError(ValidationError):
    """Invalid or unknown configuration option."""


class FileTooLargeError(ValidationError):
    pass


class UnsafeFilenameError(ValidationError):
    pass


class DisallowedTypeError(ValidationError):
    pass


# Sessions -----------------------------------------------------------------

class SessionError(IngestError):
    """Recoverable by starting a new session."""

    kind = "session"


class SessionNotFoundError(SessionError):
    pass


class SessionExpiredError(SessionError):
    pass


class ChunkSizeMismatchError(SessionError):
    pass


class ChunkIntegrityError(SessionError):
    pass


class IncompleteUploadError(SessionError):
    pass


# Storage ------------------------------------------------------------------

class StorageError(IngestError):
    """Non-transient storage failure (bad request, missing key)."""

    kind = "storage"


class BlobNotFoundError(StorageError):
    pass


class TransientError(IngestError):
    """Network/timeout style failure that the retry executor may retry."""

    kind = "transient"


class TransientStorageError(TransientError):
    pass


class TransientEngineError(TransientError):
    """The media engine could not be spawned (EAGAIN, too many processes)."""


class RetryExhaustedError(IngestError):
    """All attempts of a retried operation failed."""

    kind = "transient"

    def __init__(self, message: str, cause: BaseException, attempts: int):
        super().__init__(message)
        self.cause = cause
        self.attempts = attempts


# Processing ---------------------------------------------------------------

class ProcessingError(IngestError):
    """Derived-artifact failure. Not retried automatically."""

    kind = "processing"

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        self.remediation = remediation or "Check that the source file is a valid, supported media file and re-upload it."


class UnsupportedMediaError(ProcessingError):
    pass


class TranscodingTimeoutError(ProcessingError):
    def __init__(self, message: str, timeout: float):
        super().__init__(
            message,
            remediation="The file took too long to process; try a lower quality preset or a shorter clip.",
        )
        self.timeout = timeout


# Resources ----------------------------------------------------------------

class ResourceError(IngestError):
    """Fatal for the current batch: halts admission of new files."""

    kind = "resource"


class PipelineUnavailableError(ResourceError):
    pass


class InsufficientResourcesError(ResourceError):
    pass


# Orchestration ------------------------------------------------------------

class InvalidStateTransitionError(IngestError):
    """Usage error: the requested transition is not legal from the current state."""

    kind = "state"

    def __init__(self, file_id: str, current, target):
        current_name = getattr(current, "value", current)
        target_name = getattr(target, "value", target)
        super().__init__(f"File {file_id}: cannot go from '{current_name}' to '{target_name}'")
        self.file_id = file_id
        self.current = current
        self.target = target


class MaxRetriesExceededError(IngestError):
    kind = "retries_exhausted"

    def __init__(self, file_id: str, attempts: int):
        super().__init__(f"File {file_id}: retry limit reached after {attempts} attempts")
        self.file_id = file_id
        self.attempts = attempts
