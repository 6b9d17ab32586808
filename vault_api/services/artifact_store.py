"""
Artifact Storage
================

Where serialized artifacts live, separate from the database rows that
describe them.

- LocalArtifactStore: files under a directory
- S3ArtifactStore: AWS S3 or MinIO via boto3
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import ClientError

from vault_api.config import Settings


logger = logging.getLogger(__name__)


class ArtifactStore(ABC):
    """Async key/value store for artifact bytes."""

    @abstractmethod
    async def put(self, key: str, data: bytes) -> None:
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Artifact bytes, or None when the key is absent."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass


class LocalArtifactStore(ArtifactStore):
    """Artifacts as files under `root`; keys may contain '/'."""

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Artifact key escapes store root: {key!r}")
        return path

    def _write(self, key: str, data: bytes):
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

    def _read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_bytes()

    def _remove(self, key: str) -> bool:
        path = self._path(key)
        if not path.is_file():
            return False
        path.unlink()
        return True

    async def put(self, key: str, data: bytes) -> None:
        await asyncio.to_thread(self._write, key, data)

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._read, key)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._remove, key)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).is_file)


class S3ArtifactStore(ArtifactStore):
    """
    Artifacts in an S3-compatible bucket (AWS S3 or MinIO).

    The bucket is created on first use if it does not exist.
    """

    def __init__(self, bucket: str, client=None, prefix: str = ""):
        self.client = client
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._bucket_checked = False

    @classmethod
    def from_settings(cls, settings: Settings) -> 'S3ArtifactStore':
        client = boto3.client(
            's3',
            endpoint_url=settings.s3_endpoint,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            region_name=settings.s3_region,
        )
        return cls(settings.s3_bucket, client=client, prefix=settings.s3_prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def _ensure_bucket_exists(self):
        if self._bucket_checked:
            return
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code')
            if error_code not in ('404', 'NoSuchBucket'):
                raise
            self.client.create_bucket(Bucket=self.bucket)
            logger.info("Created bucket: %s", self.bucket)
        self._bucket_checked = True

    def _put(self, key: str, data: bytes):
        self._ensure_bucket_exists()
        self.client.put_object(
            Bucket=self.bucket,
            Key=self._key(key),
            Body=data,
            ContentType="application/octet-stream",
        )

    def _get(self, key: str) -> Optional[bytes]:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._key(key))
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('404', 'NoSuchKey'):
                return None
            raise
        return response['Body'].read()

    def _head(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._key(key))
            return True
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise

    def _delete(self, key: str) -> bool:
        if not self._head(key):
            return False
        self.client.delete_object(Bucket=self.bucket, Key=self._key(key))
        return True

    async def put(self, key: str, data: bytes) -> None:
        await asyncio.to_thread(self._put, key, data)

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._get, key)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete, key)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._head, key)


def create_artifact_store(settings: Settings) -> ArtifactStore:
    """Build the store named by `settings.artifact_store`."""
    if settings.artifact_store == "local":
        return LocalArtifactStore(settings.artifact_dir)
    if settings.artifact_store == "s3":
        return S3ArtifactStore.from_settings(settings)
    raise ValueError(f"Unknown artifact store: {settings.artifact_store}")
