"""Tests for blob store adapters and the storage service."""
import asyncio

import httpx
import pytest

from mediaingest.errors import BlobNotFoundError, RetryExhaustedError, StorageError, TransientStorageError
from mediaingest.services.api_client import HTTPBlobStore
from mediaingest.services.retry import RetryExecutor, RetryPolicy
from mediaingest.services.storage import LocalBlobStore, MemoryBlobStore, StorageService

from conftest import FlakyBlobStore


async def _no_sleep(_delay):
    return None


def _retry(attempts=3):
    return RetryExecutor(RetryPolicy(max_attempts=attempts, base_delay=0.0, max_delay=0.0), sleep=_no_sleep)


class TestMemoryBlobStore:
    @pytest.mark.asyncio
    async def test_put_get(self):
        store = MemoryBlobStore()
        await store.put("media/a.bin", b"abc")
        assert await store.get("media/a.bin") == b"abc"
        assert await store.exists("media/a.bin")
        assert store.put_calls == 1
        assert store.bytes_written == 3

    @pytest.mark.asyncio
    async def test_missing(self):
        with pytest.raises(BlobNotFoundError):
            await MemoryBlobStore().get("nope")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", "/abs", "media/../etc"])
    async def test_invalid_keys(self, key):
        with pytest.raises(StorageError):
            await MemoryBlobStore().put(key, b"x")


class TestLocalBlobStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        store = LocalBlobStore(tmp_path / "store")
        await store.put("media/ab/cd/abcd.jpg", b"data")
        assert (tmp_path / "store" / "media" / "ab" / "cd" / "abcd.jpg").read_bytes() == b"data"
        assert await store.get("media/ab/cd/abcd.jpg") == b"data"
        assert await store.exists("media/ab/cd/abcd.jpg")
        assert not await store.exists("media/zz.jpg")

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, tmp_path):
        store = LocalBlobStore(tmp_path)
        await store.put("a/b.bin", b"1")
        assert [p.name for p in (tmp_path / "a").iterdir()] == ["b.bin"]

    @pytest.mark.asyncio
    async def test_concurrent_writes_of_one_key(self, tmp_path):
        store = LocalBlobStore(tmp_path)
        payload = b"t" * 256 * 1024
        await asyncio.gather(*(store.put("media/thumbnails/h_300x200.jpg", payload) for _ in range(8)))
        assert await store.get("media/thumbnails/h_300x200.jpg") == payload
        assert [p.name for p in (tmp_path / "media" / "thumbnails").iterdir()] == ["h_300x200.jpg"]

    @pytest.mark.asyncio
    async def test_missing(self, tmp_path):
        with pytest.raises(BlobNotFoundError):
            await LocalBlobStore(tmp_path).get("missing.bin")


class TestStorageService:
    @pytest.mark.asyncio
    async def test_retries_transient_writes(self):
        store = FlakyBlobStore(fail_puts=2)
        service = StorageService(store, _retry(3))
        assert await service.put("media/x.bin", b"x") == "media/x.bin"
        assert store.attempts == 3
        assert await store.get("media/x.bin") == b"x"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        store = FlakyBlobStore(fail_puts=10)
        service = StorageService(store, _retry(3))
        with pytest.raises(RetryExhaustedError):
            await service.put("media/x.bin", b"x")
        assert store.attempts == 3
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_put_file(self, tmp_path):
        path = tmp_path / "thumb.jpg"
        path.write_bytes(b"jpeg")
        store = MemoryBlobStore()
        await StorageService(store, _retry()).put_file("media/thumbnails/t.jpg", path)
        assert await store.get("media/thumbnails/t.jpg") == b"jpeg"


class TestHTTPBlobStore:
    @staticmethod
    def _transport(blobs, status_override=None):
        def handler(request: httpx.Request) -> httpx.Response:
            if status_override is not None:
                return httpx.Response(status_override, json={"error": "nope"})
            key = request.url.path.lstrip("/")
            if request.method == "PUT":
                blobs[key] = request.content
                return httpx.Response(201)
            if key not in blobs:
                return httpx.Response(404)
            if request.method == "HEAD":
                return httpx.Response(200)
            return httpx.Response(200, content=blobs[key])

        return httpx.MockTransport(handler)

    @pytest.mark.asyncio
    async def test_put_get_exists(self):
        blobs = {}
        async with HTTPBlobStore("http://store.local", transport=self._transport(blobs)) as store:
            await store.put("media/a.bin", b"abc")
            assert blobs == {"media/a.bin": b"abc"}
            assert await store.get("media/a.bin") == b"abc"
            assert await store.exists("media/a.bin")
            assert not await store.exists("media/b.bin")
            with pytest.raises(BlobNotFoundError):
                await store.get("media/b.bin")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 503, 429, 408])
    async def test_transient_statuses(self, status):
        async with HTTPBlobStore("http://store.local", transport=self._transport({}, status)) as store:
            with pytest.raises(TransientStorageError):
                await store.put("media/a.bin", b"abc")

    @pytest.mark.asyncio
    async def test_client_error_is_not_transient(self):
        async with HTTPBlobStore("http://store.local", transport=self._transport({}, 400)) as store:
            with pytest.raises(StorageError) as exc_info:
                await store.put("media/a.bin", b"abc")
        assert not isinstance(exc_info.value, TransientStorageError)

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with HTTPBlobStore("http://store.local", transport=httpx.MockTransport(handler)) as store:
            with pytest.raises(TransientStorageError):
                await store.get("media/a.bin")

    @pytest.mark.asyncio
    async def test_requires_context(self):
        with pytest.raises(RuntimeError):
            await HTTPBlobStore("http://store.local").get("x")
