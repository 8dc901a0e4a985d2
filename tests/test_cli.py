"""Tests for media-ingest CLI helpers."""
import io
import logging
import os
from pathlib import Path

import pytest
from rich.console import Console
from rich.logging import RichHandler

from mediaingest.cli import CLIError, _load_env_file, _setup_logging, collect_files, run_cli
from mediaingest.cli_progress import BatchProgressDisplay, _human_size
from mediaingest.models import UploadFile
from mediaingest.utils.events import ProgressEvent


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    logging.disable(logging.NOTSET)


def test_load_env_file(tmp_path, monkeypatch):
    env_path = tmp_path / ".env"
    env_path.write_text(
        "\n".join(
            [
                "# comment",
                "MEDIAINGEST_STORE=/data/store",
                "MEDIAINGEST_CALLER_ID='uploader-7'",
                "export MEDIAINGEST_MAX_CONCURRENT_UPLOADS=5",
                "not a pair",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.delenv("MEDIAINGEST_STORE", raising=False)
    monkeypatch.delenv("MEDIAINGEST_CALLER_ID", raising=False)
    monkeypatch.delenv("MEDIAINGEST_MAX_CONCURRENT_UPLOADS", raising=False)

    _load_env_file(env_path)

    assert os.environ["MEDIAINGEST_STORE"] == "/data/store"
    assert os.environ["MEDIAINGEST_CALLER_ID"] == "uploader-7"
    assert os.environ["MEDIAINGEST_MAX_CONCURRENT_UPLOADS"] == "5"


def test_load_env_file_keeps_existing(tmp_path, monkeypatch):
    env_path = tmp_path / ".env"
    env_path.write_text("MEDIAINGEST_STORE=/from/file\n", encoding="utf-8")
    monkeypatch.setenv("MEDIAINGEST_STORE", "/from/shell")
    _load_env_file(env_path)
    assert os.environ["MEDIAINGEST_STORE"] == "/from/shell"


def test_load_env_file_missing(tmp_path):
    with pytest.raises(CLIError):
        _load_env_file(tmp_path / "missing.env")


def test_setup_logging_defaults_to_silent():
    mode = _setup_logging(debug=False, silent=False, log_level=None)
    assert mode == "silent"
    assert logging.getLogger().isEnabledFor(logging.ERROR) is False


def test_setup_logging_debug_mode():
    mode = _setup_logging(debug=True, silent=False, log_level=None)
    assert mode == "DEBUG"
    assert logging.getLogger().isEnabledFor(logging.DEBUG) is True
    assert any(isinstance(h, RichHandler) for h in logging.getLogger().handlers)


def test_setup_logging_explicit_level():
    assert _setup_logging(debug=False, silent=False, log_level="warning") == "WARNING"


def test_collect_files(tmp_path):
    (tmp_path / "album").mkdir()
    (tmp_path / "album" / "a.jpg").write_bytes(b"a")
    (tmp_path / "album" / "nested").mkdir()
    (tmp_path / "album" / "nested" / "b.mp4").write_bytes(b"bb")
    (tmp_path / "album" / ".hidden.jpg").write_bytes(b"h")
    (tmp_path / "single.txt").write_bytes(b"ccc")

    files = collect_files([tmp_path / "album", tmp_path / "single.txt", tmp_path / "album" / "a.jpg"])

    assert [f.filename for f in files] == ["a.jpg", "b.mp4", "single.txt"]
    assert files[1].size == 2
    assert files[1].mime_type == "video/mp4"
    assert files[0].path == tmp_path / "album" / "a.jpg"


def test_collect_files_missing_source(tmp_path):
    with pytest.raises(CLIError):
        collect_files([tmp_path / "nope"])


def test_run_cli_without_sources(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert run_cli([]) == 0


def test_run_cli_missing_source(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert run_cli([str(tmp_path / "nope"), "--silent"]) == 1


def test_run_cli_bad_env_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert run_cli(["--env-file", str(tmp_path / "missing.env")]) == 1


def test_run_cli_ingests_folder(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MEDIAINGEST_WORK_DIR", str(tmp_path / "work"))
    source = tmp_path / "docs"
    source.mkdir()
    (source / "one.txt").write_text("first document", encoding="utf-8")
    (source / "two.txt").write_text("second document", encoding="utf-8")
    (source / "copy.txt").write_text("first document", encoding="utf-8")
    store = tmp_path / "store"

    code = run_cli([str(source), "-s", str(store), "--silent", "--no-thumbnails", "--no-transcode"])

    assert code == 0
    stored = [p for p in (store / "media").rglob("*") if p.is_file()]
    assert len(stored) == 2
    assert (store / ".index" / "hashes.json").exists()


class TestBatchProgressDisplay:
    def _display(self):
        files = {
            "a": UploadFile(id="a", filename="a.jpg", size=2048),
            "b": UploadFile(id="b", filename="b.jpg", size=10, is_duplicate=True),
            "c": UploadFile(id="c", filename="c.jpg", size=10),
        }
        out = Console(file=io.StringIO(), width=120)
        return BatchProgressDisplay(files, out=out, live=False), out

    def test_counts_terminal_events(self):
        display, out = self._display()
        display.handle(ProgressEvent(file_id="a", percent=50.0, stage="uploading"))
        display.handle(ProgressEvent(file_id="a", percent=100.0, stage="completed"))
        display.handle(ProgressEvent(file_id="b", percent=100.0, stage="completed"))
        display.handle(ProgressEvent(file_id="c", percent=10.0, stage="error", message="disk full"))
        display.handle(ProgressEvent(file_id="a", percent=100.0, stage="completed"))

        assert display.stats == {"done": 2, "failed": 1, "skipped": 0}
        text = out.file.getvalue()
        assert "DONE" in text
        assert "DUP" in text
        assert "cause=disk full" in text

    def test_cancelled_is_skipped(self):
        display, _ = self._display()
        display.handle(ProgressEvent(file_id="c", percent=0.0, stage="cancelled", message="Cancelled by caller"))
        assert display.stats["skipped"] == 1


def test_human_size():
    assert _human_size(512) == "512 B"
    assert _human_size(2048) == "2.00 KB"
    assert _human_size(5 * 1024 * 1024) == "5.00 MB"
