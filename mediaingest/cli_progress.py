"""Console rendering and progress helpers for the media-ingest CLI."""
from __future__ import annotations

import time
from typing import Any, Dict, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn, TimeElapsedColumn
from rich.table import Table

from .models import BatchJob, BatchProgress, UploadFile
from .utils.events import ProgressChannel, ProgressEvent

console = Console()


def _human_size(value: int) -> str:
    size = float(max(value, 0))
    units = ["B", "KB", "MB", "GB", "TB"]
    unit_idx = 0
    while size >= 1024.0 and unit_idx < len(units) - 1:
        size /= 1024.0
        unit_idx += 1
    if unit_idx == 0:
        return f"{int(size)} {units[unit_idx]}"
    return f"{size:.2f} {units[unit_idx]}"


def render_configuration_summary(config: Dict[str, Any], out: Optional[Console] = None) -> None:
    """Render startup configuration summary."""
    out = out or console
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(style="white")

    for key, value in config.items():
        rendered = "-" if value is None else str(value)
        table.add_row(key, rendered)

    panel = Panel(
        table,
        title="[bold green]media-ingest[/bold green]",
        subtitle="[dim]mediaingest CLI[/dim]",
        border_style="blue",
    )
    out.print(panel)


class BatchProgressDisplay:
    """Renders progress events from a ProgressChannel as live bars plus a timeline."""

    _PALETTE = {
        "DONE": "green",
        "DUP": "cyan",
        "FAIL": "red",
        "SKIP": "yellow",
        "INFO": "blue",
    }

    def __init__(self, files: Dict[str, UploadFile], out: Optional[Console] = None, live: bool = True):
        self._files = files
        self._console = out or console
        self._use_live = live
        self._tasks: Dict[str, TaskID] = {}
        self._finished: set[str] = set()
        self._stats: Dict[str, int] = {"done": 0, "failed": 0, "skipped": 0}
        self._live: Optional[Live] = None
        self._overall_task: Optional[TaskID] = None

        self._meta_progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.fields[label]}", justify="left"),
            BarColumn(bar_width=28),
            TextColumn("{task.completed}/{task.total}"),
            TextColumn("[dim]{task.fields[detail]}", justify="left"),
            expand=False,
            console=self._console,
        )
        self._file_progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold green]{task.fields[label]}", justify="left"),
            BarColumn(bar_width=42),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("[dim]{task.fields[stage]}"),
            TimeElapsedColumn(),
            expand=False,
            console=self._console,
        )

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def _emit_timeline(self, status: str, name: str, size_bytes: Optional[int] = None,
                       error: Optional[str] = None) -> None:
        stamp = time.strftime("%H:%M:%S")
        size_label = f" {_human_size(size_bytes)}" if size_bytes and size_bytes > 0 else ""
        error_label = f" cause={error}" if error else ""
        color = self._PALETTE.get(status, "white")
        self._console.print(
            f"[dim]{stamp}[/dim] [{color}]{status:<4}[/{color}] {name}{size_label}{error_label}"
        )

    def start(self) -> None:
        if not self._use_live or self._live is not None:
            return
        self._live = Live(
            Group(self._meta_progress, self._file_progress),
            console=self._console,
            refresh_per_second=8,
            vertical_overflow="visible",
        )
        self._live.start()
        self._overall_task = self._meta_progress.add_task(
            "overall",
            label="Overall",
            total=max(len(self._files), 1),
            completed=0,
            detail="done=0 failed=0 skipped=0",
        )

    def stop(self) -> None:
        if self._live is None:
            return
        self._live.stop()
        self._live = None

    def _update_overall(self) -> None:
        if self._overall_task is None:
            return
        done, failed, skipped = self._stats["done"], self._stats["failed"], self._stats["skipped"]
        self._meta_progress.update(
            self._overall_task,
            completed=done + failed + skipped,
            detail=f"done={done} failed={failed} skipped={skipped}",
        )

    def handle(self, event: ProgressEvent) -> None:
        file = self._files.get(event.file_id)
        name = file.filename if file else event.file_id

        if event.stage in ("uploading", "processing", "paused"):
            task_id = self._tasks.get(event.file_id)
            if task_id is None:
                task_id = self._file_progress.add_task(name, label=name[:40], stage=event.stage, total=100)
                self._tasks[event.file_id] = task_id
            self._file_progress.update(task_id, completed=event.percent, stage=event.stage)
            return

        if event.stage not in ("completed", "error", "cancelled") or event.file_id in self._finished:
            return

        task_id = self._tasks.pop(event.file_id, None)
        if task_id is not None:
            self._file_progress.remove_task(task_id)

        size = file.size if file else None
        if event.stage == "completed":
            self._finished.add(event.file_id)
            self._stats["done"] += 1
            self._emit_timeline("DUP" if file is not None and file.is_duplicate else "DONE", name, size)
        elif event.stage == "cancelled":
            self._finished.add(event.file_id)
            self._stats["skipped"] += 1
            self._emit_timeline("SKIP", name, size, error=event.message)
        else:
            # error is not terminal; a later retry may still complete the file
            self._stats["failed"] += 1
            self._emit_timeline("FAIL", name, size, error=event.message)
        self._update_overall()

    async def consume(self, channel: ProgressChannel) -> None:
        """Render events until the channel is closed."""
        self.start()
        try:
            async for event in channel:
                self.handle(event)
        finally:
            self.stop()

    def on_finish(self, job: BatchJob, progress: Optional[BatchProgress] = None) -> None:
        self.stop()
        self._console.print(
            f"[bold]Finished[/bold] succeeded={job.success_count} total={job.total_files} "
            f"failed={job.failure_count} cancelled={job.cancelled_count} "
            f"duplicates={job.duplicate_count} size={_human_size(job.total_bytes)}"
        )
        if progress is not None and progress.elapsed > 0:
            self._console.print(
                f"[dim]{_human_size(int(progress.bytes_done))} in {progress.elapsed:.1f}s "
                f"({_human_size(int(progress.speed))}/s)[/dim]"
            )
        if job.halted_reason:
            self._console.print(f"[red]Batch halted:[/red] {job.halted_reason}")
