"""Object storage for receipt images.

Two backends, selected by ``settings.storage_backend``:

1. **minio** (default): an S3-compatible bucket reached through the MinIO client.
2. **filesystem**: buckets laid out as directories under
   ``settings.storage_directory``.

Objects are addressed as ``"<bucket>/<key>"``, which is the form persisted in
``Receipt.image_path``. A missing object is a fatal ``ImageNotFoundError``;
any other storage failure is a retryable ``StorageUnavailableError``.
"""

import logging
import time
import uuid
from functools import lru_cache
from io import BytesIO
from pathlib import Path

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError as TransportError

from src.config import get_settings
from src.errors import ImageNotFoundError, StorageUnavailableError

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/heif": "heif",
}
EXTENSION_MIME_TYPES = {ext: mime for mime, ext in MIME_EXTENSIONS.items()} | {"jpeg": "image/jpeg"}

MISSING_OBJECT_CODES = frozenset({"NoSuchKey", "NoSuchBucket"})


def mime_type_for(path: str) -> str | None:
    """Infer the MIME type of a stored object from its extension."""
    suffix = Path(path).suffix.lower().lstrip(".")
    return EXTENSION_MIME_TYPES.get(suffix)


def upload_key(extension: str) -> str:
    """Build a collision-free key for a new upload."""
    return f"uploads/{uuid.uuid4()}-{int(time.time() * 1000)}.{extension}"


def split_image_path(image_path: str) -> tuple[str, str]:
    """Split ``"<bucket>/<key>"`` into its parts."""
    bucket, _, key = image_path.partition("/")
    if not bucket or not key:
        raise ImageNotFoundError(f"Invalid image path: {image_path}")
    return bucket, key


class ObjectStore:
    """Bucket/key object store. New objects go to ``self.bucket``."""

    bucket: str

    def save(self, key: str, data: bytes) -> str:
        """Write ``data`` under ``key`` in the default bucket.

        Returns:
            The ``"<bucket>/<key>"`` path of the stored object.
        """
        raise NotImplementedError

    def load(self, image_path: str) -> bytes:
        """Read an object; a missing object is fatal, other errors are not."""
        raise NotImplementedError

    def delete(self, image_path: str) -> None:
        """Remove an object if it exists."""
        raise NotImplementedError


class FilesystemObjectStore(ObjectStore):
    """Buckets as directories on local disk."""

    def __init__(self, root: str | Path | None = None, bucket: str | None = None) -> None:
        settings = get_settings()
        self.root = Path(root or settings.storage_directory).resolve()
        self.bucket = bucket or settings.storage_bucket

    def _resolve(self, image_path: str) -> Path:
        bucket, key = split_image_path(image_path)
        path = (self.root / bucket / key).resolve()
        if not path.is_relative_to(self.root):
            raise ImageNotFoundError(f"Invalid image path: {image_path}")
        return path

    def save(self, key: str, data: bytes) -> str:
        image_path = f"{self.bucket}/{key}"
        path = self._resolve(image_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to store {image_path}: {e}") from e
        logger.debug(f"Stored {image_path} ({len(data)} bytes)")
        return image_path

    def load(self, image_path: str) -> bytes:
        path = self._resolve(image_path)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise ImageNotFoundError(f"Failed to download image: {image_path}") from e
        except OSError as e:
            raise StorageUnavailableError(f"Failed to read {image_path}: {e}") from e

    def delete(self, image_path: str) -> None:
        path = self._resolve(image_path)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to delete {image_path}: {e}")


class MinioObjectStore(ObjectStore):
    """Buckets in an S3-compatible object store."""

    def __init__(self, client: Minio | None = None, bucket: str | None = None) -> None:
        settings = get_settings()
        self.bucket = bucket or settings.storage_bucket
        self.client = client or Minio(
            settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_use_ssl,
        )

    def ensure_bucket(self) -> None:
        """Create the default bucket if it does not exist yet."""
        try:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
                logger.info(f"Created bucket {self.bucket}")
        except (S3Error, TransportError) as e:
            raise StorageUnavailableError(f"Failed to ensure bucket {self.bucket}: {e}") from e

    def save(self, key: str, data: bytes) -> str:
        image_path = f"{self.bucket}/{key}"
        try:
            self.client.put_object(
                self.bucket,
                key,
                BytesIO(data),
                len(data),
                content_type=mime_type_for(key) or "application/octet-stream",
            )
        except (S3Error, TransportError) as e:
            raise StorageUnavailableError(f"Failed to store {image_path}: {e}") from e
        logger.debug(f"Stored {image_path} ({len(data)} bytes)")
        return image_path

    def load(self, image_path: str) -> bytes:
        bucket, key = split_image_path(image_path)
        try:
            response = self.client.get_object(bucket, key)
        except S3Error as e:
            if e.code in MISSING_OBJECT_CODES:
                raise ImageNotFoundError(f"Failed to download image: {image_path}") from e
            raise StorageUnavailableError(f"Failed to read {image_path}: {e}") from e
        except TransportError as e:
            raise StorageUnavailableError(f"Failed to read {image_path}: {e}") from e

        try:
            return response.read()
        except TransportError as e:
            raise StorageUnavailableError(f"Failed to read {image_path}: {e}") from e
        finally:
            response.close()
            response.release_conn()

    def delete(self, image_path: str) -> None:
        bucket, key = split_image_path(image_path)
        try:
            self.client.remove_object(bucket, key)
        except (S3Error, TransportError) as e:
            logger.warning(f"Failed to delete {image_path}: {e}")


@lru_cache
def get_object_store() -> ObjectStore:
    """Get the configured object store (cached)."""
    settings = get_settings()
    if settings.storage_backend == "filesystem":
        return FilesystemObjectStore()

    store = MinioObjectStore()
    try:
        store.ensure_bucket()
    except StorageUnavailableError as e:
        # Requests that touch storage will surface the outage themselves
        logger.warning(str(e))
    return store
