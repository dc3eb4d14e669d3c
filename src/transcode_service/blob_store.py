"""Blob store adapters for staging inputs and publishing outputs.

The blob store is an external system; this module only wraps it behind a
narrow interface:
- S3BlobStore talks to S3 (or an S3-compatible server) through boto3
- LocalBlobStore maps keys onto a directory tree for development and tests
"""

import json
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import BlobNotFoundError, BlobStoreError
from .models import BlobStoreConfig

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
}


class BlobStore(ABC):
    """Abstract object storage keyed by string locators."""

    @abstractmethod
    def download(self, key: str, dest: Path) -> int:
        """Copy object ``key`` to local path ``dest``.

        Returns:
            Number of bytes written

        Raises:
            BlobNotFoundError: If the key does not exist
            BlobStoreError: On any other storage failure
        """
        pass

    @abstractmethod
    def upload(self, src: Path, key: str, metadata: Optional[Dict[str, str]] = None) -> str:
        """Store local file ``src`` under ``key``, overwriting any existing object.

        Returns:
            Location string of the stored object
        """
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Return True if an object is stored under ``key``."""
        pass


class S3BlobStore(BlobStore):
    """boto3-backed blob store for S3 and S3-compatible servers."""

    def __init__(self, bucket: str, client):
        self.bucket = bucket
        self.client = client

    @classmethod
    def from_config(cls, config: BlobStoreConfig) -> "S3BlobStore":
        session = boto3.session.Session(
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
        )
        client = session.client(
            "s3",
            endpoint_url=config.endpoint_url,
            config=BotoConfig(
                s3={"addressing_style": "path"},
                signature_version="s3v4",
            ),
        )
        return cls(config.bucket, client)

    def download(self, key: str, dest: Path) -> int:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(self.bucket, key, str(dest))
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                raise BlobNotFoundError(key) from e
            raise BlobStoreError(f"Failed to download s3://{self.bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"Failed to download s3://{self.bucket}/{key}: {e}") from e
        return dest.stat().st_size

    def upload(self, src: Path, key: str, metadata: Optional[Dict[str, str]] = None) -> str:
        extra = {}
        if metadata:
            extra["Metadata"] = {k: str(v) for k, v in metadata.items()}
        content_type = CONTENT_TYPES.get(Path(key).suffix.lower())
        if content_type:
            extra["ContentType"] = content_type
        try:
            self.client.upload_file(str(src), self.bucket, key, ExtraArgs=extra or None)
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"Failed to upload s3://{self.bucket}/{key}: {e}") from e
        return f"s3://{self.bucket}/{key}"

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return False
            raise BlobStoreError(f"Failed to stat s3://{self.bucket}/{key}: {e}") from e
        return True


class LocalBlobStore(BlobStore):
    """Directory-backed blob store.

    Keys are relative paths under ``root``. Metadata is written next to the
    object as ``<name>.metadata.json``.
    """

    METADATA_SUFFIX = ".metadata.json"

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key.lstrip("/")).resolve()
        if root not in path.parents:
            raise BlobStoreError(f"Key escapes blob store root: {key}")
        return path

    def download(self, key: str, dest: Path) -> int:
        src = self._path(key)
        if not src.is_file():
            raise BlobNotFoundError(key)
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dest)
        return dest.stat().st_size

    def upload(self, src: Path, key: str, metadata: Optional[Dict[str, str]] = None) -> str:
        target = self._path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copyfile(src, target)
            if metadata is not None:
                meta_path = target.with_name(target.name + self.METADATA_SUFFIX)
                meta_path.write_text(json.dumps(metadata, indent=2, sort_keys=True))
        except OSError as e:
            raise BlobStoreError(f"Failed to store {key}: {e}") from e
        return str(target)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def read_metadata(self, key: str) -> Dict[str, str]:
        """Return metadata stored alongside ``key`` (empty if none)."""
        target = self._path(key)
        meta_path = target.with_name(target.name + self.METADATA_SUFFIX)
        if not meta_path.exists():
            return {}
        return json.loads(meta_path.read_text())


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def build_blob_store(config: BlobStoreConfig) -> BlobStore:
    """Create the blob store selected by configuration."""
    if config.backend == "s3":
        logger.debug("Using S3 blob store bucket=%s endpoint=%s", config.bucket, config.endpoint_url)
        return S3BlobStore.from_config(config)
    logger.debug("Using local blob store root=%s", config.local_root)
    return LocalBlobStore(config.local_root)
