"""Object storage client (Supabase Storage REST API) and signed URL caching.

Object paths are "<bucket>/<key>", the bucket being the first path segment.
"""

import time
from typing import Callable, Optional, Protocol
from uuid import UUID

import httpx
import structlog

from aistudio.services.exceptions import StorageError, StorageUploadError

logger = structlog.get_logger(__name__)


class UrlSigner(Protocol):
    async def sign(self, path: str, ttl_seconds: int) -> Optional[str]:
        """Return a time-limited URL for an object path, None if the object is missing."""
        ...


class OutputSaver(Protocol):
    async def save_output(self, remote_url: str, user_id: UUID, job_id: UUID, index: int) -> str:
        """Persist a provider output and return its object path."""
        ...


class UrlCache(Protocol):
    """Cache of signed URLs keyed by object path.

    Implementations must drop entries after the ttl they were stored with.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: float) -> None: ...

    async def evict(self, key: str) -> None: ...


class InMemoryUrlCache:
    """Process-local UrlCache with per-entry expiry."""

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self.clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        if len(self._entries) >= self.max_entries:
            self._purge_expired()
            if len(self._entries) >= self.max_entries:
                # Oldest insertion goes first
                self._entries.pop(next(iter(self._entries)))
        self._entries[key] = (value, self.clock() + ttl_seconds)

    async def evict(self, key: str) -> None:
        self._entries.pop(key, None)

    def _purge_expired(self) -> None:
        now = self.clock()
        for key in [k for k, (_, exp) in self._entries.items() if exp <= now]:
            del self._entries[key]


class CachedUrlSigner:
    """UrlSigner that memoizes signed URLs.

    Entries are kept for ttl - safety_margin seconds, so a URL handed out from
    the cache still has at least safety_margin seconds of validity left.
    """

    def __init__(self, signer: UrlSigner, cache: UrlCache, safety_margin_seconds: int = 60):
        self.signer = signer
        self.cache = cache
        self.safety_margin_seconds = safety_margin_seconds

    async def sign(self, path: str, ttl_seconds: int) -> Optional[str]:
        key = f"{path}:{ttl_seconds}"
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        url = await self.signer.sign(path, ttl_seconds)
        if url is not None:
            await self.cache.set(key, url, ttl_seconds - self.safety_margin_seconds)
        return url


def split_object_path(path: str) -> tuple[str, str]:
    """Split "<bucket>/<key>" into (bucket, key).

    Raises:
        ValueError: If the path has no bucket or no key
    """
    bucket, _, key = path.strip("/").partition("/")
    if not bucket or not key:
        raise ValueError(f"Invalid object path: {path!r}")
    return bucket, key


class StorageClient:
    """Supabase Storage REST client: signs input URLs and persists provider outputs."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        outputs_bucket: str = "outputs",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize storage client.

        Args:
            base_url: Project URL (from STORAGE_URL env var)
            service_key: Service role key (from STORAGE_SERVICE_KEY env var)
            outputs_bucket: Bucket that receives generated images
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.outputs_bucket = outputs_bucket
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {service_key}",
            "apikey": service_key,
        }

    async def sign(self, path: str, ttl_seconds: int) -> Optional[str]:
        """Create a signed URL for an object.

        Args:
            path: Object path "<bucket>/<key>"
            ttl_seconds: URL lifetime

        Returns:
            Absolute signed URL, or None if the object does not exist

        Raises:
            StorageError: Storage unreachable or returned an unexpected error
        """
        bucket, key = split_object_path(path)
        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/storage/v1/object/sign/{bucket}/{key}",
                    headers=self.headers,
                    json={"expiresIn": ttl_seconds},
                )
        except httpx.HTTPError as e:
            raise StorageError(f"Network error while signing {path}: {e}") from e

        if response.status_code in (400, 404):
            logger.warning("storage.sign.not_found", path=path, status=response.status_code)
            return None
        if response.status_code >= 400:
            raise StorageError(f"Cannot sign URL ({response.status_code}): {response.text}")

        signed = response.json().get("signedURL")
        if not signed:
            raise StorageError(f"Cannot sign URL: empty response for {path}")
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/storage/v1{signed}"

    async def save_output(self, remote_url: str, user_id: UUID, job_id: UUID, index: int) -> str:
        """Download a provider output and upload it to the outputs bucket.

        The object key is derived from job id and output index, so saving the
        same output twice overwrites instead of duplicating.

        Args:
            remote_url: Provider CDN URL of the generated image
            user_id: Owner of the job (first key segment)
            job_id: Generation job id
            index: Position of this output in the provider's result

        Returns:
            Object path "<outputs bucket>/<key>"

        Raises:
            StorageUploadError: Download or upload failed
        """
        key = f"{user_id}/{job_id}-{index}.jpg"
        try:
            async with httpx.AsyncClient(timeout=60.0, transport=self.transport) as client:
                image_response = await client.get(remote_url)
                image_response.raise_for_status()

                response = await client.post(
                    f"{self.base_url}/storage/v1/object/{self.outputs_bucket}/{key}",
                    headers={
                        **self.headers,
                        "Content-Type": image_response.headers.get("content-type", "image/jpeg"),
                        "x-upsert": "true",
                    },
                    content=image_response.content,
                )
        except httpx.HTTPError as e:
            raise StorageUploadError(f"Fetch output failed: {e}") from e

        if response.status_code >= 400:
            raise StorageUploadError(
                f"Upload to outputs failed ({response.status_code}): {response.text}"
            )
        return f"{self.outputs_bucket}/{key}"
