"""
File validation - size, declared type and filename safety.

Runs before any work starts; failures raise ValidationError subclasses
and are never retried.
"""
import mimetypes
import re
from pathlib import PurePosixPath
from typing import Optional

from ..config import IngestConfig
from ..errors import DisallowedTypeError, FileTooLargeError, UnsafeFilenameError
from ..models import MediaKind, UploadFile

MAX_FILENAME_LENGTH = 255

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_RESERVED_NAMES = {"CON", "PRN", "AUX", "NUL"} | {f"COM{i}" for i in range(1, 10)} | {f"LPT{i}" for i in range(1, 10)}
DANGEROUS_EXTENSIONS = {".exe", ".bat", ".cmd", ".scr", ".pif", ".com", ".js", ".vbs", ".sh"}


def validate_filename(filename: str) -> str:
    """
    Check a client-supplied filename.

    Returns:
        The filename unchanged

    Raises:
        UnsafeFilenameError: empty, too long, control characters, path
            components, reserved device name or a hidden executable extension
    """
    if not filename or not filename.strip():
        raise UnsafeFilenameError("Filename is empty")
    if len(filename) > MAX_FILENAME_LENGTH:
        raise UnsafeFilenameError(f"Filename exceeds {MAX_FILENAME_LENGTH} characters")
    if _CONTROL_CHARS.search(filename):
        raise UnsafeFilenameError(f"Filename contains control characters: {filename!r}")
    if "/" in filename or "\\" in filename or filename in (".", ".."):
        raise UnsafeFilenameError(f"Filename must not contain path components: {filename!r}")

    stem = filename.split(".", 1)[0].strip().upper()
    if stem in _RESERVED_NAMES:
        raise UnsafeFilenameError(f"Reserved device name: {filename!r}")

    # Every dotted part after the first counts: "photo.jpg.exe" and "run.exe.jpg" are both rejected
    parts = filename.lower().split(".")[1:]
    for ext in parts:
        if f".{ext.strip()}" in DANGEROUS_EXTENSIONS:
            raise UnsafeFilenameError(f"Executable extension not allowed: {filename!r}")
    return filename


def guess_mime_type(filename: str) -> str:
    mime, _ = mimetypes.guess_type(filename)
    return mime or "application/octet-stream"


def detect_media_kind(mime_type: Optional[str], filename: str = "") -> MediaKind:
    """Media kind from the declared MIME type, falling back to the extension."""
    mime = mime_type if mime_type and mime_type != "application/octet-stream" else None
    if mime is None and filename:
        mime = guess_mime_type(PurePosixPath(filename).name)
    major = (mime or "").split("/", 1)[0]
    if major == "image":
        return MediaKind.IMAGE
    if major == "video":
        return MediaKind.VIDEO
    if major == "audio":
        return MediaKind.AUDIO
    return MediaKind.DOCUMENT


class FileValidator:
    """Apply the configured limits to an UploadFile."""

    def __init__(self, config: IngestConfig):
        self._config = config

    def check_size(self, size: int) -> None:
        if size < 0:
            raise FileTooLargeError(f"Invalid size: {size}")
        if size > self._config.max_file_size:
            raise FileTooLargeError(
                f"File is {size} bytes, limit is {self._config.max_file_size} bytes"
            )

    def check_type(self, mime_type: str) -> None:
        if mime_type not in self._config.allowed_mime_types:
            raise DisallowedTypeError(f"File type not allowed: {mime_type}")

    def validate(self, file: UploadFile) -> UploadFile:
        """
        Validate and normalize a file in place (fills ``kind`` when missing).

        Raises:
            ValidationError: first failed check
        """
        validate_filename(file.filename)
        self.check_size(file.size)
        self.check_type(file.mime_type)
        if file.kind is None:
            file.kind = detect_media_kind(file.mime_type, file.filename)
        return file
