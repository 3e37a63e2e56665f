"""Object storage for permanent media (S3/MinIO, or the filesystem in development)."""

import logging
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from reconciler.config import Settings, get_settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the storage provider rejects or fails an operation."""

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        super().__init__(message)


class StorageService:
    """Service for managing object storage (S3 or an S3-compatible endpoint)."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()
        self._client = None
        self._bucket = self._settings.s3_bucket

    @property
    def client(self):
        """Lazy initialization of S3 client."""
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self._settings.s3_endpoint or None,
                aws_access_key_id=self._settings.s3_access_key or None,
                aws_secret_access_key=self._settings.s3_secret_key or None,
                region_name=self._settings.s3_region,
                config=Config(signature_version="s3v4"),
            )
            if self._settings.s3_endpoint:
                self._ensure_bucket()
        return self._client

    def _ensure_bucket(self):
        """Create bucket if it doesn't exist (self-hosted endpoints only)."""
        try:
            self._client.head_bucket(Bucket=self._bucket)
        except ClientError:
            self._client.create_bucket(Bucket=self._bucket)

    def upload(self, data: bytes, key: str, content_type: str) -> str:
        """
        Upload bytes under a key.

        Objects are written with server-side encryption and a long cache
        lifetime; they are immutable once written.

        Returns:
            URL the object is served from
        """
        extra_args = {
            "ContentType": content_type,
            "CacheControl": self._settings.storage_cache_control,
        }
        if self._settings.storage_server_side_encryption:
            extra_args["ServerSideEncryption"] = self._settings.storage_server_side_encryption
        if self._settings.storage_public_read:
            extra_args["ACL"] = "public-read"

        try:
            self.client.put_object(Bucket=self._bucket, Key=key, Body=data, **extra_args)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to upload {key}: {e}", key=key) from e

        return self.public_url(key)

    def delete(self, key: str) -> bool:
        """Delete an object. Returns False if the provider refused."""
        try:
            self.client.delete_object(Bucket=self._bucket, Key=key)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Failed to delete {key}: {e}")
            return False

    def public_url(self, key: str) -> str:
        """URL for a key, honouring a CDN base URL when configured."""
        if self._settings.s3_public_base_url:
            return f"{self._settings.s3_public_base_url.rstrip('/')}/{key}"
        if self._settings.s3_endpoint:
            return f"{self._settings.s3_endpoint.rstrip('/')}/{self._bucket}/{key}"
        return f"https://{self._bucket}.s3.{self._settings.s3_region}.amazonaws.com/{key}"

    def health_check(self) -> bool:
        """Check if storage is accessible."""
        try:
            self.client.head_bucket(Bucket=self._bucket)
            return True
        except Exception:
            return False


class LocalStorageService:
    """Filesystem storage with the same contract, for local development."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()
        self.base_path = Path(self._settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}", key=key)
        return path

    def upload(self, data: bytes, key: str, content_type: str) -> str:
        path = self._path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}", key=key) from e
        return self.public_url(key)

    def delete(self, key: str) -> bool:
        path = self._path_for(key)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def read(self, key: str) -> bytes:
        return self._path_for(key).read_bytes()

    def public_url(self, key: str) -> str:
        return f"{self._settings.local_storage_base_url.rstrip('/')}/{key}"

    def health_check(self) -> bool:
        return self.base_path.is_dir()


def get_storage_service(settings: Optional[Settings] = None):
    """Build the storage backend selected by configuration."""
    settings = settings or get_settings()
    if settings.storage_backend == "local":
        logger.info(f"Using local storage at {settings.local_storage_path}")
        return LocalStorageService(settings)
    return StorageService(settings)
