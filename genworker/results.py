"""Durable homes for generated artifacts: a local directory or an R2 (S3-compatible) bucket."""
import asyncio
import logging
from pathlib import Path
from typing import Optional

import boto3
import httpx
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .models import Quality

log = logging.getLogger(__name__)

CONTENT_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "png": "image/png",
    "jpg": "image/jpeg",
    "webp": "image/webp",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "txt": "text/plain",
}


class ResultStorageError(Exception):
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def object_key(job_id: str, quality: Quality, fmt: str) -> str:
    return f"{Quality(quality).value}/{job_id}.{fmt or 'bin'}"


async def fetch_bytes(url: str, timeout: float = 300.0) -> bytes:
    """Download a provider-hosted result. Raises httpx.HTTPError on any transport or status failure."""
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content


class LocalResultStorage:
    def __init__(self, results_dir, public_base_url: str = ""):
        self.results_dir = Path(results_dir)
        self.public_base_url = public_base_url.rstrip("/")

    async def save(self, job_id: str, quality: Quality, data: bytes, fmt: str) -> str:
        key = object_key(job_id, quality, fmt)
        path = self.results_dir / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise ResultStorageError(f"Could not write {path}: {e}") from e
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return path.resolve().as_uri()


class R2ResultStorage:
    def __init__(
        self,
        bucket: str,
        endpoint_url: str,
        access_key_id: str,
        secret_access_key: str,
        public_base: str = "",
        client=None,
    ):
        # endpoint must be the S3 API host, not the public domain
        endpoint_url = endpoint_url.rstrip("/")
        if bucket and endpoint_url.endswith(f"/{bucket}"):
            endpoint_url = endpoint_url[: -(len(bucket) + 1)]
        self.bucket = bucket
        self.public_base = public_base.rstrip("/")
        self._s3 = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name="auto",
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    def _upload(self, key: str, data: bytes, content_type: str) -> str:
        self._s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        if self.public_base:
            return f"{self.public_base}/{key}"
        # 7 days, the SigV4 maximum
        return self._s3.generate_presigned_url(
            "get_object", Params={"Bucket": self.bucket, "Key": key}, ExpiresIn=7 * 24 * 3600
        )

    async def save(self, job_id: str, quality: Quality, data: bytes, fmt: str) -> str:
        key = object_key(job_id, quality, fmt)
        content_type = CONTENT_TYPES.get(fmt, "application/octet-stream")
        try:
            return await asyncio.to_thread(self._upload, key, data, content_type)
        except (BotoCoreError, ClientError) as e:
            raise ResultStorageError(f"Upload of {key} failed: {e}") from e


def build_storage(settings: Settings, client=None):
    if settings.storage == "r2":
        return R2ResultStorage(
            bucket=settings.r2_bucket,
            endpoint_url=settings.r2_endpoint_url,
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
            public_base=settings.r2_public_base,
            client=client,
        )
    if settings.storage != "local":
        raise ValueError(f"Unknown result storage {settings.storage!r} (expected 'local' or 'r2')")
    return LocalResultStorage(settings.results_dir, settings.public_base_url)


def describe(storage) -> Optional[str]:
    if isinstance(storage, R2ResultStorage):
        return f"r2://{storage.bucket}"
    if isinstance(storage, LocalResultStorage):
        return str(storage.results_dir)
    return None
