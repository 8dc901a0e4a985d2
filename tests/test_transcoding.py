"""Tests for the media engine adapter and the transcoding pipeline."""
import json
from types import SimpleNamespace

import pytest

from mediaingest.config import MB, TranscodingOptions
from mediaingest.errors import InsufficientResourcesError, PipelineUnavailableError, UnsupportedMediaError
from mediaingest.services import transcoding as transcoding_module
from mediaingest.services.media_engine import FFmpegEngine, build_transcode_args, parse_ffprobe_output
from mediaingest.services.retry import RetryExecutor, RetryPolicy
from mediaingest.services.transcoding import TranscodingPipeline, TranscodingStats

from conftest import FakeMediaEngine


def _pipeline(config, engine):
    return TranscodingPipeline(config, engine, RetryExecutor(RetryPolicy(base_delay=0.0, max_delay=0.0)))


def _videos(tmp_path, names, size=1000):
    paths = []
    for name in names:
        p = tmp_path / name
        p.write_bytes(b"v" * size)
        paths.append(p)
    return paths


class TestTranscodeArgs:
    def test_quality_presets(self):
        low = build_transcode_args(TranscodingOptions(quality="low"))
        high = build_transcode_args(TranscodingOptions(quality="high"))
        assert low[low.index("-crf") + 1] == "28"
        assert high[high.index("-crf") + 1] == "20"
        assert high[high.index("-maxrate") + 1] == "8M"
        assert "+faststart" in low

    def test_max_duration(self):
        args = build_transcode_args(TranscodingOptions(max_duration=12.5, output_format="webm"))
        assert args[args.index("-t") + 1] == "12.5"
        assert "-movflags" not in args


class TestMediaInfoParsing:
    def test_video_stream(self):
        raw = json.dumps({
            "format": {"duration": "12.5", "bit_rate": "800000", "size": "1250000", "format_name": "mov,mp4"},
            "streams": [
                {"codec_type": "audio", "codec_name": "aac"},
                {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080},
            ],
        })
        info = parse_ffprobe_output(raw)
        assert (info.width, info.height, info.codec) == (1920, 1080, "h264")
        assert info.duration == 12.5
        assert info.size == 1250000

    def test_missing_values(self):
        info = parse_ffprobe_output(json.dumps({"format": {"duration": "N/A"}}), size=42)
        assert info.duration is None
        assert info.size == 42

    def test_garbage(self):
        with pytest.raises(UnsupportedMediaError):
            parse_ffprobe_output("not json")


class TestFFmpegEngine:
    def test_unresolvable(self):
        engine = FFmpegEngine("definitely-not-ffmpeg-binary", "definitely-not-ffprobe-binary")
        assert engine.resolve() is False
        assert engine.ffmpeg_path is None

    @pytest.mark.asyncio
    async def test_missing_executable_is_unavailable(self, tmp_path):
        engine = FFmpegEngine("definitely-not-ffmpeg-binary", "definitely-not-ffprobe-binary")
        with pytest.raises(PipelineUnavailableError):
            await engine.transcode(tmp_path / "in.mp4", tmp_path / "out.mp4", [])


class TestTranscodingStats:
    def test_compression_ratio(self):
        stats = TranscodingStats()
        stats.record(True, 2.0, 1000, 400)
        stats.record(False, 1.0)
        snap = stats.snapshot()
        assert snap.total_files == 2
        assert snap.successful == 1
        assert snap.failed == 1
        assert snap.compression_ratio == pytest.approx(40.0)
        assert snap.average_processing_time == pytest.approx(1.5)

    def test_empty(self):
        snap = TranscodingStats().snapshot()
        assert snap.compression_ratio == 0.0
        assert snap.average_processing_time == 0.0


class TestTranscodingPipeline:
    @pytest.mark.asyncio
    async def test_transcode_video(self, config, engine, tmp_path):
        (video,) = _videos(tmp_path, ["clip.mov"])
        pipeline = _pipeline(config, engine)

        result = await pipeline.transcode_video(video, options=TranscodingOptions(quality="low"))

        assert result.success
        assert result.output_path == str(config.output_dir / "clip_low.mp4")
        assert result.original.size == 1000
        assert result.transcoded.size == 400
        stats = pipeline.get_stats()
        assert stats.total_files == 1
        assert stats.compression_ratio == pytest.approx(40.0)
        assert "-crf" in engine.transcode_calls[0][2]

    @pytest.mark.asyncio
    async def test_engine_failure_is_a_result(self, config, tmp_path):
        (video,) = _videos(tmp_path, ["clip.mov"])
        pipeline = _pipeline(config, FakeMediaEngine(fail_transcode=True))

        result = await pipeline.transcode_video(video)

        assert not result.success
        assert "exited with code 1" in result.error
        assert pipeline.get_stats().failed == 1

    @pytest.mark.asyncio
    async def test_unavailable_engine_raises(self, config, tmp_path):
        (video,) = _videos(tmp_path, ["clip.mov"])
        pipeline = _pipeline(config, FakeMediaEngine(available=False))
        with pytest.raises(PipelineUnavailableError):
            await pipeline.transcode_video(video)
        assert pipeline.get_stats().total_files == 0

    @pytest.mark.asyncio
    async def test_pool_mode_keeps_order_and_limit(self, config, tmp_path):
        names = ["a.mov", "b.mov", "c.mov", "d.mov"]
        videos = _videos(tmp_path, names)
        engine = FakeMediaEngine(delays={"a.mov": 0.05, "b.mov": 0.2, "c.mov": 0.01, "d.mov": 0.01})
        pipeline = _pipeline(config.replace(max_concurrent_transcoding_jobs=2), engine)

        results = await pipeline.transcode_batch(videos)

        assert [r.input_path for r in results] == [str(v) for v in videos]
        assert all(r.success for r in results)
        assert engine.max_active == 2
        # c starts as soon as a frees its slot, while b is still running
        assert engine.events.index(("start", "c.mov")) < engine.events.index(("end", "b.mov"))

    @pytest.mark.asyncio
    async def test_chunked_mode_waits_for_group(self, config, tmp_path):
        names = ["a.mov", "b.mov", "c.mov", "d.mov"]
        videos = _videos(tmp_path, names)
        engine = FakeMediaEngine(delays={"a.mov": 0.01, "b.mov": 0.1})
        pipeline = _pipeline(
            config.replace(max_concurrent_transcoding_jobs=2, transcode_batch_mode="chunked"), engine,
        )

        results = await pipeline.transcode_batch([(v, tmp_path / "out" / f"{v.stem}.mp4") for v in videos])

        assert [r.input_path for r in results] == [str(v) for v in videos]
        assert engine.events.index(("end", "b.mov")) < engine.events.index(("start", "c.mov"))
        assert engine.max_active == 2

    @pytest.mark.asyncio
    async def test_reset_stats(self, config, engine, tmp_path):
        (video,) = _videos(tmp_path, ["clip.mov"])
        pipeline = _pipeline(config, engine)
        await pipeline.transcode_video(video)
        pipeline.record_processed(True, 0.5)
        assert pipeline.get_stats().total_files == 2
        pipeline.reset_stats()
        assert pipeline.get_stats().total_files == 0


class TestPipelineHealth:
    def test_healthy(self, config, engine):
        health = _pipeline(config, engine).check_health()
        assert health.healthy
        assert health.ffmpeg_path == "/usr/bin/ffmpeg"
        assert config.temp_dir.is_dir()
        assert config.output_dir.is_dir()

    def test_missing_engine(self, config):
        pipeline = _pipeline(config, FakeMediaEngine(available=False))
        health = pipeline.check_health()
        assert not health.healthy
        with pytest.raises(PipelineUnavailableError):
            pipeline.ensure_available()

    def test_low_disk(self, config, engine, monkeypatch):
        monkeypatch.setattr(
            transcoding_module.psutil, "disk_usage", lambda path: SimpleNamespace(free=10 * MB),
        )
        pipeline = _pipeline(config.replace(min_free_disk_mb=100), engine)
        health = pipeline.check_health()
        assert health.low_disk
        assert health.free_disk_mb == pytest.approx(10.0)
        with pytest.raises(InsufficientResourcesError):
            pipeline.ensure_available()
