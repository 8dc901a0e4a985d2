"""Tests for content hashing, the hash index and the dedup engine."""
import asyncio

import pytest

from mediaingest.models import DedupRecord, ThumbnailResult
from mediaingest.services.dedup import DeduplicationEngine, blake3_bytes, storage_key_for
from mediaingest.services.hash_index import InMemoryHashIndex, JsonHashIndex

HELLO_WORLD_BLAKE3 = "d74981efa70a0c880b8d8c1985d075dbcbf679b99a5f9914e5aaf96b831a9e24"


class TestHashing:
    def test_known_digest(self):
        assert blake3_bytes(b"hello world") == HELLO_WORLD_BLAKE3

    @pytest.mark.asyncio
    async def test_buffer_and_file_agree(self, tmp_path):
        data = bytes(range(256)) * 1000
        path = tmp_path / "blob.bin"
        path.write_bytes(data)
        engine = DeduplicationEngine()
        assert await engine.compute_hash(data) == await engine.compute_hash(path)

    @pytest.mark.asyncio
    async def test_parts_hash_as_concatenation(self, tmp_path):
        parts = []
        for i, piece in enumerate([b"hello", b" ", b"world"]):
            p = tmp_path / f"{i}.part"
            p.write_bytes(piece)
            parts.append(p)
        assert await DeduplicationEngine().compute_hash(parts) == HELLO_WORLD_BLAKE3

    def test_storage_key_layout(self):
        key = storage_key_for(HELLO_WORLD_BLAKE3, "Photo.JPG", "media")
        assert key == f"media/d7/49/{HELLO_WORLD_BLAKE3}.jpg"


class TestDeduplicationEngine:
    @pytest.mark.asyncio
    async def test_lookup_after_register(self):
        engine = DeduplicationEngine()
        assert await engine.lookup("abc") is None
        await engine.register("abc", "media/ab/c/abc.jpg", size=3, owner="u1")
        assert await engine.lookup("abc") == "media/ab/c/abc.jpg"

    @pytest.mark.asyncio
    async def test_attribute_adds_owner(self):
        engine = DeduplicationEngine()
        await engine.register("abc", "key", owner="u1")
        record = await engine.attribute("abc", "u2")
        assert record.owners == {"u1", "u2"}
        assert await engine.attribute("missing", "u2") is None

    @pytest.mark.asyncio
    async def test_attach_artifacts(self):
        engine = DeduplicationEngine()
        await engine.register("abc", "key")
        thumb = ThumbnailResult(width=10, height=10, format="jpeg", size=1, storage_key="t")
        await engine.attach_artifacts("abc", thumbnail=thumb)
        record = await engine.lookup_record("abc")
        assert record.thumbnail == thumb

    @pytest.mark.asyncio
    async def test_forget(self):
        engine = DeduplicationEngine()
        await engine.register("abc", "key")
        await engine.forget("abc")
        assert await engine.lookup("abc") is None

    @pytest.mark.asyncio
    async def test_claim_serializes_same_hash(self):
        engine = DeduplicationEngine()
        order = []

        async def worker(name):
            async with engine.claim("same"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
        assert engine._claims == {}


class TestJsonHashIndex:
    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        index = JsonHashIndex(tmp_path)
        await index.put(DedupRecord(content_hash="abc", storage_key="key", size=5, owners={"u1"}))
        await index.save()
        assert index.path.exists()

        reloaded = JsonHashIndex(tmp_path)
        await reloaded.load()
        record = await reloaded.get("abc")
        assert record.storage_key == "key"
        assert record.owners == {"u1"}
        assert len(reloaded) == 1

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_fresh(self, tmp_path):
        (tmp_path / "hashes.json").write_text("{not json", encoding="utf-8")
        index = JsonHashIndex(tmp_path)
        await index.load()
        assert len(index) == 0

    @pytest.mark.asyncio
    async def test_save_skipped_when_clean(self, tmp_path):
        index = JsonHashIndex(tmp_path)
        await index.save()
        assert not index.path.exists()

    @pytest.mark.asyncio
    async def test_cleanup_stale_keeps_owned(self, tmp_path):
        index = JsonHashIndex(tmp_path)
        await index.put(DedupRecord(content_hash="old", storage_key="k1", created_at=0.0))
        await index.put(DedupRecord(content_hash="owned", storage_key="k2", owners={"u1"}, created_at=0.0))
        assert await index.cleanup_stale(max_age_days=1) == 1
        assert await index.get("old") is None
        assert await index.get("owned") is not None

    @pytest.mark.asyncio
    async def test_in_memory_index(self):
        index = InMemoryHashIndex()
        await index.put(DedupRecord(content_hash="a", storage_key="k"))
        await index.delete("a")
        assert len(index) == 0
