"""Blob storage for pipeline outputs: Cloudflare R2 or a local directory."""

import asyncio
import base64
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse
import httpx
import boto3
from botocore.config import Config
import structlog

from mediajobs.config import settings
from mediajobs.services.errors import FatalEngineError, error_classifier

logger = structlog.get_logger()


def decode_data_url(url: str) -> bytes:
    """Decode a base64 data: URL."""
    header, _, payload = url.partition(",")
    if ";base64" not in header:
        return unquote(payload).encode()
    return base64.b64decode(payload)


class BlobStorage(ABC):
    """Upload, download and delete blobs addressed by bucket and key."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    @abstractmethod
    async def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        """Store data and return a URL for it."""

    @abstractmethod
    async def delete(self, bucket: str, key: str) -> None:
        ...

    async def download(self, url: str) -> bytes:
        """Fetch http(s), data: or file: URLs."""
        if url.startswith("data:"):
            return decode_data_url(url)
        if url.startswith("file:"):
            return Path(unquote(urlparse(url).path)).read_bytes()
        try:
            async with httpx.AsyncClient(timeout=120.0, follow_redirects=True, transport=self._transport) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            raise error_classifier.to_engine_error(e, engine="blob-download") from e


class R2BlobStorage(BlobStorage):
    """S3-compatible Cloudflare R2 bucket access through boto3."""

    def __init__(
        self,
        account_id: str,
        access_key_id: str,
        secret_access_key: str,
        public_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(transport=transport)
        self.public_url = public_url.rstrip("/") if public_url else None
        self.endpoint = f"https://{account_id}.r2.cloudflarestorage.com"
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(signature_version="s3v4"),
            region_name="auto",
        )

    def _url(self, bucket: str, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        return f"{self.endpoint}/{bucket}/{key}"

    async def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        logger.info("Uploaded to R2", bucket=bucket, key=key, size=len(data))
        return self._url(bucket, key)

    async def delete(self, bucket: str, key: str) -> None:
        await asyncio.to_thread(self._client.delete_object, Bucket=bucket, Key=key)


class LocalBlobStorage(BlobStorage):
    """Filesystem-backed storage for development and tests."""

    def __init__(self, root: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport=transport)
        self.root = Path(root or settings.local_storage_dir)

    def _path(self, bucket: str, key: str) -> Path:
        path = (self.root / bucket / key).resolve()
        if self.root.resolve() not in path.parents:
            raise FatalEngineError(f"Invalid storage key: {key}", engine="blob-storage")
        return path

    async def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        path = self._path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info("Stored blob locally", path=str(path), size=len(data))
        return path.as_uri()

    async def delete(self, bucket: str, key: str) -> None:
        self._path(bucket, key).unlink(missing_ok=True)


def build_blob_storage() -> BlobStorage:
    """R2 when credentials are configured, local directory otherwise."""
    if settings.r2_enabled:
        return R2BlobStorage(
            account_id=settings.r2_account_id,
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
            public_url=settings.r2_public_url,
        )
    logger.warning("R2 not configured, storing outputs locally", root=settings.local_storage_dir)
    return LocalBlobStorage()
