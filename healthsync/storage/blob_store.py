"""Object storage adapters.

The pipeline only needs three primitives, all keyed by a logical path such as
``data/{user_id}/weight.json``:

- read_stream(key): binary file-like object over a (possibly huge) object
- read_json(key): parsed JSON document, or BlobNotFoundError
- write_json(key, value, timeout): replace a JSON document

GCSBlobStore is used in production; LocalBlobStore mirrors the same key layout
on the local filesystem for the import script.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, BinaryIO, Optional

from google.api_core.exceptions import NotFound
from google.cloud import storage

from healthsync.config.settings import GCS_BUCKET_NAME, STREAM_CHUNK_SIZE, WRITE_TIMEOUT_SECONDS
from healthsync.exceptions import BlobNotFoundError

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Minimal object storage interface used by the ingestion pipeline."""

    @abstractmethod
    def read_stream(self, key: str) -> BinaryIO:
        """Open an object for streaming binary reads."""

    @abstractmethod
    def read_json(self, key: str) -> Any:
        """Download and decode a JSON document."""

    @abstractmethod
    def write_json(self, key: str, value: Any, timeout: float = WRITE_TIMEOUT_SECONDS) -> None:
        """Serialize ``value`` and store it as ``application/json``."""


class GCSBlobStore(BlobStore):
    """Google Cloud Storage backed blob store."""

    def __init__(
        self,
        bucket_name: str = GCS_BUCKET_NAME,
        credentials_path: Optional[str] = None,
        chunk_size: int = STREAM_CHUNK_SIZE
    ):
        """
        Initialize with GCS bucket name and optional credentials.

        Args:
            bucket_name: GCS bucket holding uploads and per-user data
            credentials_path: Path to service account JSON (optional)
            chunk_size: Bytes fetched per ranged request when streaming
        """
        self.bucket_name = bucket_name
        self.chunk_size = chunk_size

        if credentials_path:
            self.client = storage.Client.from_service_account_json(credentials_path)
        else:
            self.client = storage.Client()

        self.bucket = self.client.bucket(bucket_name)

    def read_stream(self, key: str) -> BinaryIO:
        blob = self.bucket.blob(key)
        try:
            blob.reload()
        except NotFound:
            raise BlobNotFoundError(key)

        size_mb = (blob.size or 0) / 1024 / 1024
        logger.info(f"Streaming gs://{self.bucket_name}/{key} ({size_mb:.1f} MB)")
        return blob.open("rb", chunk_size=self.chunk_size)

    def read_json(self, key: str) -> Any:
        blob = self.bucket.blob(key)
        try:
            content = blob.download_as_text()
        except NotFound:
            raise BlobNotFoundError(key)
        return json.loads(content)

    def write_json(self, key: str, value: Any, timeout: float = WRITE_TIMEOUT_SECONDS) -> None:
        blob = self.bucket.blob(key)
        blob.upload_from_string(
            json.dumps(value),
            content_type="application/json",
            timeout=timeout
        )
        logger.debug(f"Wrote gs://{self.bucket_name}/{key}")


class LocalBlobStore(BlobStore):
    """Filesystem blob store: keys are paths relative to ``root``."""

    def __init__(self, root):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / key

    def read_stream(self, key: str) -> BinaryIO:
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFoundError(key)
        logger.info(f"Streaming {path} ({path.stat().st_size / 1024 / 1024:.1f} MB)")
        return open(path, "rb")

    def read_json(self, key: str) -> Any:
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFoundError(key)
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def write_json(self, key: str, value: Any, timeout: float = WRITE_TIMEOUT_SECONDS) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write then rename so readers never see a half-written document
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(value, f)
        os.replace(tmp_path, path)
