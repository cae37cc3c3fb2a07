"""Storage client and signed URL cache tests.

HTTP calls go through httpx.MockTransport; no network access.
"""

import json
from uuid import uuid4

import httpx
import pytest

from aistudio.services.exceptions import StorageError, StorageUploadError
from aistudio.services.storage import (
    CachedUrlSigner,
    InMemoryUrlCache,
    StorageClient,
    split_object_path,
)


class CountingSigner:
    def __init__(self, result="https://storage.test/signed"):
        self.result = result
        self.calls = 0

    async def sign(self, path, ttl_seconds):
        self.calls += 1
        return None if self.result is None else f"{self.result}/{path}?n={self.calls}"


def test_split_object_path():
    assert split_object_path("inputs/refs/a.jpg") == ("inputs", "refs/a.jpg")
    assert split_object_path("/outputs/x.jpg") == ("outputs", "x.jpg")
    with pytest.raises(ValueError):
        split_object_path("no-key")


@pytest.mark.asyncio
class TestCachedUrlSigner:
    async def test_reuses_cached_url(self):
        inner = CountingSigner()
        signer = CachedUrlSigner(inner, InMemoryUrlCache())

        first = await signer.sign("inputs/a.jpg", 600)
        second = await signer.sign("inputs/a.jpg", 600)

        assert first == second
        assert inner.calls == 1

    async def test_ttl_is_part_of_key(self):
        inner = CountingSigner()
        signer = CachedUrlSigner(inner, InMemoryUrlCache())

        await signer.sign("inputs/a.jpg", 600)
        await signer.sign("inputs/a.jpg", 3600)

        assert inner.calls == 2

    async def test_short_ttl_not_cached(self):
        """A URL valid for less than the safety margin is never served from cache."""
        inner = CountingSigner()
        signer = CachedUrlSigner(inner, InMemoryUrlCache(), safety_margin_seconds=60)

        await signer.sign("inputs/a.jpg", 30)
        await signer.sign("inputs/a.jpg", 30)

        assert inner.calls == 2

    async def test_missing_object_not_cached(self):
        inner = CountingSigner(result=None)
        signer = CachedUrlSigner(inner, InMemoryUrlCache())

        assert await signer.sign("inputs/gone.jpg", 600) is None
        assert await signer.sign("inputs/gone.jpg", 600) is None
        assert inner.calls == 2


@pytest.mark.asyncio
class TestInMemoryUrlCache:
    async def test_expired_entry_is_dropped(self):
        clock = [1000.0]
        cache = InMemoryUrlCache(clock=lambda: clock[0])

        await cache.set("k", "v", 10)
        assert await cache.get("k") == "v"

        clock[0] += 11
        assert await cache.get("k") is None

    async def test_evicts_oldest_when_full(self):
        cache = InMemoryUrlCache(max_entries=2)

        await cache.set("a", "1", 60)
        await cache.set("b", "2", 60)
        await cache.set("c", "3", 60)

        assert await cache.get("a") is None
        assert await cache.get("b") == "2"
        assert await cache.get("c") == "3"

    async def test_evict(self):
        cache = InMemoryUrlCache()
        await cache.set("a", "1", 60)
        await cache.evict("a")
        assert await cache.get("a") is None


def _client(handler) -> StorageClient:
    return StorageClient(
        "https://project.storage.test/",
        "service-key",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
class TestStorageClient:
    async def test_sign_returns_absolute_url(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"signedURL": "/object/sign/inputs/refs/a.jpg?token=abc"}
            )

        url = await _client(handler).sign("inputs/refs/a.jpg", 600)

        assert url == "https://project.storage.test/storage/v1/object/sign/inputs/refs/a.jpg?token=abc"
        assert seen["url"] == "https://project.storage.test/storage/v1/object/sign/inputs/refs/a.jpg"
        assert seen["auth"] == "Bearer service-key"
        assert seen["body"] == {"expiresIn": 600}

    async def test_sign_missing_object_returns_none(self):
        def handler(request):
            return httpx.Response(400, json={"error": "Object not found"})

        assert await _client(handler).sign("inputs/gone.jpg", 600) is None

    async def test_sign_server_error_raises(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        with pytest.raises(StorageError, match="500"):
            await _client(handler).sign("inputs/a.jpg", 600)

    async def test_save_output_uploads_with_upsert(self):
        user_id, job_id = uuid4(), uuid4()
        uploads = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(
                    200, content=b"\xff\xd8jpeg", headers={"content-type": "image/jpeg"}
                )
            uploads.append(request)
            return httpx.Response(200, json={"Key": "ok"})

        path = await _client(handler).save_output("https://cdn.test/out.jpg", user_id, job_id, 1)

        assert path == f"outputs/{user_id}/{job_id}-1.jpg"
        assert len(uploads) == 1
        assert uploads[0].url.path == f"/storage/v1/object/outputs/{user_id}/{job_id}-1.jpg"
        assert uploads[0].headers["x-upsert"] == "true"
        assert uploads[0].content == b"\xff\xd8jpeg"

    async def test_save_output_download_failure(self):
        def handler(request):
            return httpx.Response(404)

        with pytest.raises(StorageUploadError, match="Fetch output failed"):
            await _client(handler).save_output("https://cdn.test/out.jpg", uuid4(), uuid4(), 0)

    async def test_save_output_upload_failure(self):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, content=b"img")
            return httpx.Response(413, text="too large")

        with pytest.raises(StorageUploadError, match="Upload to outputs failed \\(413\\)"):
            await _client(handler).save_output("https://cdn.test/out.jpg", uuid4(), uuid4(), 0)
