"""
Blob storage for generated invoice documents.

Two backends share one contract: a local directory for development and tests,
and an S3 bucket (or LocalStack via ``S3_ENDPOINT_URL``) for deployments.
"""

from pathlib import Path
from typing import Optional, Protocol

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .logging_config import get_logger

logger = get_logger("storage")


class StorageError(Exception):
    """Raised by a backend when a blob operation fails."""


class BlobStorage(Protocol):
    def put(self, path: str, content: bytes) -> str: ...

    def exists(self, path: str) -> bool: ...

    def delete(self, path: str) -> None: ...

    def url(self, path: str) -> str: ...

    def size(self, path: str) -> Optional[int]: ...

    def read(self, path: str) -> bytes: ...


class LocalBlobStorage:
    """Files under ``root``; paths are relative and use forward slashes"""

    def __init__(self, root: str, base_url: str = "/storage"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        full = (self.root / path).resolve()
        if self.root.resolve() not in full.parents:
            raise StorageError(f"Path escapes storage root: {path}")
        return full

    def put(self, path: str, content: bytes) -> str:
        full = self._resolve(path)
        try:
            full.parent.mkdir(parents=True, exist_ok=True)
            full.write_bytes(content)
        except OSError as exc:
            raise StorageError(f"Failed to write {path}: {exc}") from exc
        return path

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def delete(self, path: str) -> None:
        try:
            self._resolve(path).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {path}: {exc}") from exc

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def size(self, path: str) -> Optional[int]:
        full = self._resolve(path)
        return full.stat().st_size if full.is_file() else None

    def read(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc


class S3BlobStorage:
    """Objects in a single bucket, keyed by the relative path"""

    def __init__(self, bucket: str, client=None, endpoint_url: Optional[str] = None):
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
        )

    def put(self, path: str, content: bytes) -> str:
        try:
            self.client.put_object(Bucket=self.bucket, Key=path, Body=content, ContentType="application/pdf")
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to upload {path} to S3: {exc}") from exc
        return path

    def _head(self, path: str) -> Optional[dict]:
        try:
            return self.client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return None
            raise StorageError(f"Failed to inspect {path} in S3: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to inspect {path} in S3: {exc}") from exc

    def exists(self, path: str) -> bool:
        return self._head(path) is not None

    def delete(self, path: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=path)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to delete {path} from S3: {exc}") from exc

    def url(self, path: str) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object", Params={"Bucket": self.bucket, "Key": path}, ExpiresIn=3600
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to sign URL for {path}: {exc}") from exc

    def size(self, path: str) -> Optional[int]:
        head = self._head(path)
        return head.get("ContentLength") if head else None

    def read(self, path: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=path)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to download {path} from S3: {exc}") from exc


def build_storage(settings: Settings) -> BlobStorage:
    if settings.STORAGE_BACKEND == "s3":
        logger.info(f"Using S3 blob storage, bucket={settings.S3_BUCKET_NAME}")
        return S3BlobStorage(settings.S3_BUCKET_NAME, endpoint_url=settings.S3_ENDPOINT_URL)
    logger.info(f"Using local blob storage at {settings.STORAGE_ROOT}")
    return LocalBlobStorage(settings.STORAGE_ROOT, settings.STORAGE_BASE_URL)
