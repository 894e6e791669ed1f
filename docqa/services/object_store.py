"""Raw PDF storage: a local directory or an S3-compatible bucket (AWS S3, Cloudflare R2)."""

import asyncio
import re
import time
from pathlib import Path
from typing import Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import StorageError

logger = structlog.get_logger(__name__)

_UNSAFE = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_filename(file_name: str) -> str:
    return _UNSAFE.sub("_", file_name)


def generate_key(owner_id: str, file_name: str, now_ms: Optional[int] = None) -> str:
    """``pdfs/{owner}/{epoch_ms}-{sanitized filename}``"""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"pdfs/{sanitize_filename(owner_id)}/{stamp}-{sanitize_filename(file_name)}"


class LocalObjectStore:
    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def _write(self, key: str, content: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    async def put(self, key: str, content: bytes, content_type: str = "application/pdf") -> str:
        try:
            await asyncio.to_thread(self._write, key, content)
        except OSError as e:
            raise StorageError(f"Failed to store file: {e}") from e
        return key

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._path(key).unlink, missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete file: {e}") from e


class S3ObjectStore:
    """boto3 is blocking; every call runs in a worker thread."""

    def __init__(self, bucket: str, endpoint_url: str = "", access_key_id: str = "",
                 secret_access_key: str = "", client=None):
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            region_name="auto" if endpoint_url else None,
        )

    async def put(self, key: str, content: bytes, content_type: str = "application/pdf") -> str:
        try:
            await asyncio.to_thread(
                self.client.put_object, Bucket=self.bucket, Key=key, Body=content, ContentType=content_type
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to upload {key}: {e}") from e
        return key

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e
