"""
Durable object storage for the pipeline.

All assets are stored under a per-user, per-project folder:
  {user_id}/{project_id}/images/{uuid}-{filename}
  {user_id}/{project_id}/videos/{room_id}-{uuid}.mp4
  {user_id}/{project_id}/final/{uuid}.mp4
  {user_id}/{project_id}/final/{uuid}-thumbnail.jpg

Every key carries a fresh uuid, so writes never collide and a retried
upload never overwrites a previous artifact.
"""

import os
import asyncio
import logging
from contextlib import nullcontext
from typing import Awaitable, Callable, Optional, TypeVar
from uuid import uuid4

import httpx

from .errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ── Config ───────────────────────────────────────────────────────────────────

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "supabase")
SUPABASE_BUCKET = os.getenv("SUPABASE_STORAGE_BUCKET", "property-media")

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")


# ── Key helpers ──────────────────────────────────────────────────────────────

def project_folder(user_id: str, project_id: str) -> str:
    return f"{user_id}/{project_id}"


def image_key(user_id: str, project_id: str, filename: str) -> str:
    safe_name = os.path.basename(filename) or "image"
    return f"{project_folder(user_id, project_id)}/images/{uuid4().hex}-{safe_name}"


def room_video_key(user_id: str, project_id: str, room_id: str) -> str:
    return f"{project_folder(user_id, project_id)}/videos/{room_id}-{uuid4().hex}.mp4"


def final_video_key(user_id: str, project_id: str) -> str:
    return f"{project_folder(user_id, project_id)}/final/{uuid4().hex}.mp4"


def thumbnail_key(user_id: str, project_id: str) -> str:
    return f"{project_folder(user_id, project_id)}/final/{uuid4().hex}-thumbnail.jpg"


# ── Retry ────────────────────────────────────────────────────────────────────

async def with_storage_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    label: str = "storage operation",
) -> T:
    """
    Run a storage operation with capped exponential backoff.

    Raises:
        StorageError once `max_attempts` attempts have failed.
    """
    last_error: Optional[Exception] = None

    for attempt in range(max_attempts):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            if attempt == max_attempts - 1:
                break
            delay = min(base_delay * (2 ** attempt), max_delay)
            logger.warning(
                f"{label} failed (attempt {attempt + 1}/{max_attempts}): {e} — retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

    logger.error(f"{label} failed after {max_attempts} attempts: {last_error}")
    raise StorageError(f"{label} failed after {max_attempts} attempts: {last_error}", details=last_error)


# ── Backends ─────────────────────────────────────────────────────────────────

class StorageBackend:
    """put(bytes, key) -> public URL; download(url) -> bytes."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._http_client = http_client

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    async def download(self, url: str) -> bytes:
        """Download an object from a public URL and return raw bytes."""
        client_ctx = (
            nullcontext(self._http_client)
            if self._http_client is not None
            else httpx.AsyncClient(timeout=120, follow_redirects=True)
        )
        try:
            async with client_ctx as client:
                resp = await client.get(url)
                resp.raise_for_status()
                return resp.content
        except httpx.HTTPError as e:
            raise StorageError(f"Download failed for {url}: {e}", details=e)


class SupabaseStorage(StorageBackend):
    """Supabase Storage bucket; the client is synchronous, so calls run in a thread."""

    def __init__(self, client, bucket: str = SUPABASE_BUCKET,
                 http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(http_client)
        self.client = client
        self.bucket = bucket

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        def _put() -> str:
            bucket = self.client.storage.from_(self.bucket)
            bucket.upload(key, data, {"content-type": content_type, "upsert": "false"})
            return bucket.get_public_url(key)

        public_url = await asyncio.to_thread(_put)
        logger.info(f"Uploaded to Supabase Storage: {key} ({len(data)} bytes)")
        return public_url


class R2Storage(StorageBackend):
    """Cloudflare R2 through the S3 API."""

    def __init__(self, s3_client=None, bucket: str = R2_BUCKET_NAME,
                 public_url: str = R2_PUBLIC_URL,
                 http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(http_client)
        self.s3 = s3_client or self._make_client()
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")

    @staticmethod
    def _make_client():
        import boto3
        from botocore.config import Config as BotoConfig

        return boto3.client(
            "s3",
            endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
            aws_access_key_id=R2_ACCESS_KEY_ID,
            aws_secret_access_key=R2_SECRET_ACCESS_KEY,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        await asyncio.to_thread(
            self.s3.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        public_url = f"{self.public_url}/{key}"
        logger.info(f"Uploaded to R2: {public_url}")
        return public_url


def create_storage(backend: Optional[str] = None, supabase_client=None) -> StorageBackend:
    """Pick the storage backend from STORAGE_BACKEND (supabase | r2)."""
    backend = (backend or STORAGE_BACKEND).lower()
    if backend == "r2":
        return R2Storage()
    if backend == "supabase":
        if supabase_client is None:
            from .repository import get_service_client
            supabase_client = get_service_client()
        return SupabaseStorage(supabase_client)
    raise ValueError(f"Unknown STORAGE_BACKEND: {backend}")
