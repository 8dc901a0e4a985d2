"""Command line interface for the mediaingest package."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from rich.logging import RichHandler

from .cli_progress import BatchProgressDisplay, render_configuration_summary
from .config import PRIORITIES, QUALITY_TIERS, IngestConfig, ProcessingOptions, TranscodingOptions
from .errors import ConfigError
from .models import UploadFile
from .services.validation import guess_mime_type

DEFAULT_STORE_DIR = "media-store"
INDEX_DIR_NAME = ".index"


class CLIError(RuntimeError):
    """Raised when CLI validation/execution fails."""


def _setup_logging(debug: bool, silent: bool, log_level: Optional[str]) -> str:
    """
    Route mediaingest logs through rich.

    Nothing is logged unless --debug or --log-level asks for it. Returns the
    effective mode for the configuration summary.
    """
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    logging.disable(logging.NOTSET)

    if silent or not (debug or log_level):
        # progress panel and final summary still go to the console
        logging.disable(logging.CRITICAL)
        root.setLevel(logging.CRITICAL + 1)
        return "silent"

    level = logging.DEBUG if debug else getattr(logging, log_level.upper(), logging.INFO)
    rich_handler = RichHandler(rich_tracebacks=True, markup=False, show_time=False, show_path=False)
    rich_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(rich_handler)
    root.setLevel(level)
    return logging.getLevelName(level)


def _unquote(value: str) -> str:
    if len(value) > 1 and value[0] in "'\"" and value[-1] == value[0]:
        return value[1:-1]
    return value


def _parse_env_line(raw: str) -> Optional[Tuple[str, str]]:
    line = raw.strip()
    if line.startswith("export "):
        line = line[7:].lstrip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    key, _, value = line.partition("=")
    key = key.strip()
    return (key, _unquote(value.strip())) if key else None


def _load_env_file(path: Path, override: bool = False) -> None:
    """Export KEY=value pairs (e.g. MEDIAINGEST_STORE) from a .env file."""
    if not path.is_file():
        problem = "is not a file" if path.exists() else "not found"
        raise CLIError(f"env file {problem}: {path}")
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise CLIError(f"cannot read env file {path}: {exc}") from exc

    pairs = (pair for pair in map(_parse_env_line, lines) if pair)
    for key, value in pairs:
        if override or key not in os.environ:
            os.environ[key] = value


def _resolve_default_env_file() -> Optional[Path]:
    candidate = Path.cwd() / ".env"
    return candidate if candidate.is_file() else None


def collect_files(sources: Iterable[Path]) -> List[UploadFile]:
    """
    Build UploadFiles from files and folders (folders are scanned recursively).

    Hidden files are skipped. Ids are the resolved paths, so the same file
    given twice is only ingested once.
    """
    paths: List[Path] = []
    for source in sources:
        source = Path(source).expanduser()
        if source.is_dir():
            paths.extend(
                p for p in sorted(source.rglob("*"))
                if p.is_file() and not any(part.startswith(".") for part in p.relative_to(source).parts)
            )
        elif source.is_file():
            paths.append(source)
        else:
            raise CLIError(f"source does not exist: {source}")

    files: List[UploadFile] = []
    seen = set()
    for path in paths:
        file_id = str(path.resolve())
        if file_id in seen:
            continue
        seen.add(file_id)
        files.append(UploadFile(
            id=file_id,
            filename=path.name,
            size=path.stat().st_size,
            mime_type=guess_mime_type(path.name),
            path=path,
        ))
    return files


def _build_config(args: argparse.Namespace) -> IngestConfig:
    config = IngestConfig.from_env()
    if args.concurrency is not None:
        config = config.replace(max_concurrent_uploads=args.concurrency)
    if args.work_dir is not None:
        config = config.replace(work_dir=args.work_dir)
    return config


async def _run_ingest(
    files: List[UploadFile],
    store_dir: Path,
    config: IngestConfig,
    options: ProcessingOptions,
    concurrency: Optional[int] = None,
) -> int:
    from .orchestrator import BatchOrchestrator
    from .services import DeduplicationEngine, JsonHashIndex, LocalBlobStore

    index = JsonHashIndex(store_dir / INDEX_DIR_NAME)
    await index.load()
    dedup = DeduplicationEngine(index)

    async with BatchOrchestrator(config, LocalBlobStore(store_dir), dedup=dedup) as orchestrator:
        job = await orchestrator.submit_batch(files, options, concurrency)
        display = BatchProgressDisplay({f.id: f for f in files})
        renderer = asyncio.create_task(display.consume(orchestrator.progress))
        try:
            job = await orchestrator.wait(job.id)
            progress = orchestrator.batch_progress(job.id)
        finally:
            orchestrator.progress.close()
            await renderer
            await index.save()

    display.on_finish(job, progress)
    for result in job.results:
        if not result.success and result.error:
            print(f"{result.status.value.upper()}: {result.filename}: {result.error}", file=sys.stderr)
    return 0 if job.all_success else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="media-ingest",
        description="Ingest media files into a content-addressed local store, with thumbnails and renditions.",
    )
    parser.add_argument("sources", nargs="*", type=Path, help="Files or folders to ingest")
    parser.add_argument(
        "-s",
        "--store",
        type=Path,
        default=None,
        help=f"Blob store directory (default from MEDIAINGEST_STORE or ./{DEFAULT_STORE_DIR})",
    )
    parser.add_argument("-c", "--concurrency", type=int, default=None, help="Concurrent uploads")
    parser.add_argument("-p", "--priority", choices=PRIORITIES, default="normal", help="Batch priority")
    parser.add_argument("--caller-id", default=None, help="Owner recorded for stored objects")
    parser.add_argument("--no-thumbnails", action="store_true", help="Skip thumbnail generation")
    parser.add_argument("--no-transcode", action="store_true", help="Skip video transcoding")
    parser.add_argument("-q", "--quality", choices=QUALITY_TIERS, default="medium", help="Rendition quality")
    parser.add_argument("--work-dir", type=Path, default=None, help="Working directory for temp/output files")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this .env file",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs")
    parser.add_argument("--silent", action="store_true", help="Only print errors")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Explicit log level (DEBUG/INFO/WARNING/ERROR)",
    )
    parser.add_argument("--version", action="version", version="media-ingest (from mediaingest)")
    return parser


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    used_env_file = args.env_file or _resolve_default_env_file()
    if used_env_file is not None:
        try:
            _load_env_file(Path(used_env_file))
        except CLIError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1

    effective_log_mode = _setup_logging(
        debug=args.debug,
        silent=args.silent,
        log_level=args.log_level,
    )

    if not args.sources:
        parser.print_help()
        return 0

    try:
        config = _build_config(args)
        options = ProcessingOptions(
            caller_id=args.caller_id or os.getenv("MEDIAINGEST_CALLER_ID") or "cli",
            priority=args.priority,
            generate_thumbnail=not args.no_thumbnails,
            transcode_video=not args.no_transcode,
            transcoding=TranscodingOptions(quality=args.quality),
        )
        files = collect_files(args.sources)
    except (CLIError, ConfigError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    if not files:
        print("Nothing to ingest.", file=sys.stderr)
        return 0

    store_dir = Path(args.store or os.getenv("MEDIAINGEST_STORE") or DEFAULT_STORE_DIR).expanduser()
    render_configuration_summary(
        {
            "Sources": ", ".join(str(s) for s in args.sources),
            "Files": f"{len(files)}",
            "Store": str(store_dir),
            "Work Dir": str(config.work_dir),
            "Concurrency": str(config.max_concurrent_uploads),
            "Priority": args.priority,
            "Thumbnails": "no" if args.no_thumbnails else "yes",
            "Transcode": "no" if args.no_transcode else f"yes ({args.quality})",
            "Env File": str(used_env_file) if used_env_file else "-",
            "Logging": effective_log_mode,
        }
    )

    try:
        return asyncio.run(_run_ingest(files, store_dir, config, options))
    except CLIError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Cancelled.", file=sys.stderr)
        return 130


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
