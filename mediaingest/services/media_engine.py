"""
FFmpeg adapter - the external media engine driven as a subprocess.

Only presence and exit status matter to the pipeline; stdout of ffprobe
is parsed into MediaInfo.
"""
import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..config import TranscodingOptions
from ..errors import (
    PipelineUnavailableError,
    ProcessingError,
    TranscodingTimeoutError,
    TransientEngineError,
    UnsupportedMediaError,
)
from ..models import MediaInfo

logger = logging.getLogger(__name__)

# quality tier -> (crf, maxrate)
QUALITY_PRESETS: Dict[str, Dict[str, str]] = {
    "high": {"crf": "20", "maxrate": "8M", "bufsize": "16M"},
    "medium": {"crf": "23", "maxrate": "4M", "bufsize": "8M"},
    "low": {"crf": "28", "maxrate": "2M", "bufsize": "4M"},
}
ENCODER_PRESET = "medium"


def build_transcode_args(options: TranscodingOptions) -> List[str]:
    """ffmpeg output arguments for a quality tier (inputs/outputs excluded)."""
    preset = QUALITY_PRESETS[options.quality]
    args = [
        "-c:v", options.codec,
        "-preset", ENCODER_PRESET,
        "-crf", preset["crf"],
        "-maxrate", preset["maxrate"],
        "-bufsize", preset["bufsize"],
        "-c:a", options.audio_codec,
    ]
    if options.output_format == "mp4":
        args += ["-movflags", "+faststart"]
    if options.max_duration:
        args += ["-t", f"{options.max_duration:g}"]
    return args


def parse_ffprobe_output(raw: str, size: int = 0) -> MediaInfo:
    """Turn ``ffprobe -print_format json -show_format -show_streams`` output into MediaInfo."""
    try:
        data = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        raise UnsupportedMediaError(f"Unreadable ffprobe output: {e}") from e

    fmt: Dict[str, Any] = data.get("format") or {}
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    primary = video or (streams[0] if streams else {})

    def _num(value, cast):
        try:
            return cast(value) if value not in (None, "", "N/A") else None
        except (TypeError, ValueError):
            return None

    return MediaInfo(
        width=_num(primary.get("width"), int),
        height=_num(primary.get("height"), int),
        duration=_num(fmt.get("duration") or primary.get("duration"), float),
        bitrate=_num(fmt.get("bit_rate") or primary.get("bit_rate"), int),
        codec=primary.get("codec_name"),
        size=_num(fmt.get("size"), int) or size,
        format=fmt.get("format_name"),
    )


class FFmpegEngine:
    """
    Runs ffmpeg/ffprobe with ``asyncio.create_subprocess_exec``.

    Executable paths are taken from the constructor or resolved from PATH.
    """

    def __init__(self, ffmpeg_path: Optional[str] = None, ffprobe_path: Optional[str] = None):
        self._ffmpeg_hint = ffmpeg_path
        self._ffprobe_hint = ffprobe_path
        self._ffmpeg: Optional[str] = None
        self._ffprobe: Optional[str] = None
        self.resolve()

    def resolve(self) -> bool:
        """Locate both executables. Returns True when both were found."""
        self._ffmpeg = shutil.which(self._ffmpeg_hint or "ffmpeg")
        self._ffprobe = shutil.which(self._ffprobe_hint or "ffprobe")
        if not (self._ffmpeg and self._ffprobe):
            logger.debug("FFmpeg not resolved (ffmpeg=%s, ffprobe=%s)", self._ffmpeg, self._ffprobe)
        return bool(self._ffmpeg and self._ffprobe)

    @property
    def ffmpeg_path(self) -> Optional[str]:
        return self._ffmpeg

    @property
    def ffprobe_path(self) -> Optional[str]:
        return self._ffprobe

    async def _run(self, argv: List[str], timeout: Optional[float] = None) -> bytes:
        if not argv[0]:
            raise PipelineUnavailableError("Media engine executable not found on PATH")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise PipelineUnavailableError(f"Media engine executable missing: {argv[0]}") from e
        except OSError as e:
            raise TransientEngineError(f"Could not start {Path(argv[0]).name}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TranscodingTimeoutError(
                f"{Path(argv[0]).name} exceeded {timeout:.0f}s", timeout=timeout or 0.0,
            ) from None
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            tail = stderr.decode(errors="replace").strip().splitlines()[-5:]
            raise ProcessingError(
                f"{Path(argv[0]).name} exited with code {proc.returncode}: {' | '.join(tail)}"
            )
        return stdout

    async def inspect(self, path: Path) -> MediaInfo:
        path = Path(path)
        out = await self._run([
            self._ffprobe or "",
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ], timeout=30)
        size = path.stat().st_size if path.exists() else 0
        return parse_ffprobe_output(out.decode(errors="replace"), size=size)

    async def transcode(
        self,
        input_path: Path,
        output_path: Path,
        args: Iterable[str],
        timeout: Optional[float] = None,
    ) -> None:
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        logger.debug("ffmpeg transcode %s -> %s", input_path, output_path)
        await self._run(
            [self._ffmpeg or "", "-y", "-hide_banner", "-loglevel", "error",
             "-i", str(input_path), *args, str(output_path)],
            timeout=timeout,
        )

    async def capture_frame(self, input_path: Path, output_path: Path, at_seconds: float) -> Path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        await self._run(
            [self._ffmpeg or "", "-y", "-hide_banner", "-loglevel", "error",
             "-ss", f"{at_seconds:.3f}", "-i", str(input_path),
             "-frames:v", "1", "-q:v", "2", str(output_path)],
            timeout=60,
        )
        return output_path
