"""
Blob storage for uploaded source documents.

Every backend implements the same two calls: ``put(key, data)`` returns a
locator string and ``get(locator)`` returns the bytes behind it. The backend
is chosen once at startup from the ``storage`` config section; call sites
never branch on it. Both calls block, so async callers run them through
``asyncio.to_thread``.

Locators:
- Local filesystem: ``file://<absolute path>``
- S3: ``s3://<bucket>/<key>``
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .exceptions import StorageError

logger = logging.getLogger(__name__)

FILE_SCHEME = "file://"
S3_SCHEME = "s3://"


class Storage(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Store ``data`` under ``key`` and return its locator."""

    @abstractmethod
    def get(self, locator: str) -> bytes:
        """Return the bytes behind a locator produced by ``put``."""


class LocalStorage(Storage):
    def __init__(self, root: Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve_key(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root):
            raise StorageError(f"Storage key escapes the storage root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        path = self._resolve_key(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Local file save failed for {key}: {e}") from e
        logger.info(f"Local file save successful: {path}")
        return f"{FILE_SCHEME}{path}"

    def get(self, locator: str) -> bytes:
        if not locator.startswith(FILE_SCHEME):
            raise StorageError(f"Not a local storage locator: {locator}")
        path = Path(locator[len(FILE_SCHEME):]).resolve()
        if not path.is_relative_to(self.root):
            raise StorageError(f"Locator points outside the storage root: {locator}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Local file read failed for {locator}: {e}") from e


class S3Storage(Storage):
    def __init__(self, bucket: str, client=None):
        if not bucket:
            raise ValueError("S3 storage requires a bucket name")
        self.bucket = bucket
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 upload failed for s3://{self.bucket}/{key}: {e}") from e
        logger.info(f"Upload successful: s3://{self.bucket}/{key}")
        return f"{S3_SCHEME}{self.bucket}/{key}"

    def get(self, locator: str) -> bytes:
        if not locator.startswith(S3_SCHEME):
            raise StorageError(f"Not an S3 locator: {locator}")
        bucket, _, key = locator[len(S3_SCHEME):].partition("/")
        if not bucket or not key:
            raise StorageError(f"Malformed S3 locator: {locator}")
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 download failed for {locator}: {e}") from e


def build_storage(config: DictConfig) -> Storage:
    backend = config.storage.backend
    if backend == "local":
        return LocalStorage(Path(config.storage.local_root))
    if backend == "s3":
        return S3Storage(config.storage.s3_bucket)
    raise ValueError(f"Unknown storage backend: {backend}")
