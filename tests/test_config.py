"""Tests for configuration parsing."""
from pathlib import Path

import pytest

from mediaingest.config import IngestConfig, ProcessingOptions, ThumbnailOptions, TranscodingOptions
from mediaingest.errors import ConfigError


class TestIngestConfig:
    def test_defaults(self):
        config = IngestConfig()
        assert config.max_file_size == 500 * 1024 * 1024
        assert config.max_concurrent_uploads == 3
        assert config.max_retry_attempts == 3
        assert config.session_expiry == 1800
        assert config.pipeline_timeout == 300
        assert config.thumbnail_defaults == ThumbnailOptions(300, 300, 80, "jpeg")

    def test_from_mapping_camel_case(self):
        config = IngestConfig.from_mapping({
            "maxConcurrentUploads": 5,
            "retryBaseDelayMs": 10,
            "thumbnailDefaults": {"width": 100, "height": 50},
            "workDir": "/tmp/x",
        })
        assert config.max_concurrent_uploads == 5
        assert config.retry_base_delay_ms == 10
        assert config.thumbnail_defaults.width == 100
        assert config.work_dir == Path("/tmp/x")
        assert config.temp_dir == Path("/tmp/x/temp")

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError, match="maxUploads"):
            IngestConfig.from_mapping({"maxUploads": 3})

    @pytest.mark.parametrize("changes", [
        {"max_concurrent_uploads": 0},
        {"max_retry_attempts": 0},
        {"retry_base_delay_ms": 100, "retry_max_delay_ms": 10},
        {"chunk_size": 0},
        {"transcode_batch_mode": "parallel"},
    ])
    def test_invalid_values(self, changes):
        with pytest.raises(ConfigError):
            IngestConfig(**changes)

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MEDIAINGEST_MAX_CONCURRENT_UPLOADS", "7")
        monkeypatch.setenv("MEDIAINGEST_ALLOWED_MIME_TYPES", "image/png, video/mp4")
        monkeypatch.setenv("MEDIAINGEST_THUMBNAIL_DEFAULTS", "128x96")
        monkeypatch.setenv("MEDIAINGEST_WORK_DIR", str(tmp_path))
        config = IngestConfig.from_env()
        assert config.max_concurrent_uploads == 7
        assert config.allowed_mime_types == ("image/png", "video/mp4")
        assert (config.thumbnail_defaults.width, config.thumbnail_defaults.height) == (128, 96)
        assert config.work_dir == tmp_path
        assert config.retry_jitter is False

    def test_retry_jitter_from_env(self, monkeypatch):
        monkeypatch.setenv("MEDIAINGEST_RETRY_JITTER", "true")
        assert IngestConfig.from_env().retry_jitter is True
        assert IngestConfig.from_mapping({"retryJitter": True}).retry_jitter is True

    def test_from_env_bad_number(self, monkeypatch):
        monkeypatch.setenv("MEDIAINGEST_CHUNK_SIZE", "lots")
        with pytest.raises(ConfigError, match="MEDIAINGEST_CHUNK_SIZE"):
            IngestConfig.from_env()


class TestProcessingOptions:
    def test_nested_mappings(self):
        options = ProcessingOptions.from_mapping({
            "callerId": "u1",
            "priority": "high",
            "thumbnail": {"width": 64, "height": 64, "format": "png"},
            "transcoding": {"quality": "low", "maxDuration": 30},
        })
        assert options.caller_id == "u1"
        assert options.thumbnail.extension == "png"
        assert options.transcoding == TranscodingOptions(quality="low", max_duration=30)

    def test_unknown_priority(self):
        with pytest.raises(ConfigError):
            ProcessingOptions(priority="urgent")

    def test_unknown_quality(self):
        with pytest.raises(ConfigError):
            TranscodingOptions(quality="ultra")

    def test_thumbnail_bounds(self):
        with pytest.raises(ConfigError):
            ThumbnailOptions(width=0)
        with pytest.raises(ConfigError):
            ThumbnailOptions(quality=101)
        assert ThumbnailOptions(format="jpeg").extension == "jpg"
