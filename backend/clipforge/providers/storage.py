"""Durable object storage backends."""
import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional, Protocol

import boto3
import httpx

from clipforge.utils.http import send

logger = logging.getLogger(__name__)


class DurableStorage(Protocol):
    """Put/get of binary blobs by key; every stored blob gets a fetchable URL."""

    async def put_file(self, key: str, path: Path, content_type: str) -> str:
        """Store a local file under ``key`` and return its public URL."""

    async def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under ``key`` and return its public URL."""

    async def read_bytes(self, url: str) -> bytes:
        """Fetch the blob behind a URL previously returned by this storage."""

    def local_path(self, url: str) -> Optional[Path]:
        """Filesystem path for a URL, when the blob is stored locally."""


class LocalStorage:
    """Stores blobs under a directory served by the API at ``/media``."""

    def __init__(self, root: Path, public_base_url: str, http_client: httpx.AsyncClient):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = public_base_url.rstrip("/") + "/media"
        self._http = http_client

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes storage root: {key}")
        return path

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def local_path(self, url: str) -> Optional[Path]:
        prefix = self.base_url + "/"
        if not url.startswith(prefix):
            return None
        return self._path_for(url[len(prefix):])

    async def put_file(self, key: str, path: Path, content_type: str) -> str:
        target = self._path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, path, target)
        logger.debug(f"Stored {key} ({target.stat().st_size} bytes)")
        return self.url_for(key)

    async def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        target = self._path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_bytes, data)
        return self.url_for(key)

    async def read_bytes(self, url: str) -> bytes:
        path = self.local_path(url)
        if path is not None:
            return await asyncio.to_thread(path.read_bytes)
        response = await send(self._http, "GET", url, "storage", follow_redirects=True)
        return response.content


class S3Storage:
    """Stores blobs in an S3 bucket with public-read URLs."""

    def __init__(
        self,
        bucket: str,
        region: str,
        http_client: httpx.AsyncClient,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client=None,
    ):
        if not bucket or not region:
            raise ValueError("S3 storage requires s3_bucket and s3_region")
        self.bucket = bucket
        self.region = region
        self.base_url = (public_base_url or f"https://{bucket}.s3.{region}.amazonaws.com").rstrip("/")
        self._http = http_client
        self._s3 = client or boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def local_path(self, url: str) -> Optional[Path]:
        return None

    async def put_file(self, key: str, path: Path, content_type: str) -> str:
        # upload_file streams from disk in multipart chunks
        await asyncio.to_thread(
            self._s3.upload_file,
            str(path),
            self.bucket,
            key,
            ExtraArgs={"ContentType": content_type},
        )
        return self.url_for(key)

    async def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        await asyncio.to_thread(
            self._s3.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        return self.url_for(key)

    async def read_bytes(self, url: str) -> bytes:
        prefix = self.base_url + "/"
        if url.startswith(prefix):
            key = url[len(prefix):]
            obj = await asyncio.to_thread(self._s3.get_object, Bucket=self.bucket, Key=key)
            return await asyncio.to_thread(obj["Body"].read)
        response = await send(self._http, "GET", url, "storage", follow_redirects=True)
        return response.content
