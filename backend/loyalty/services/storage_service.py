"""Storage service abstraction.

Supports two backends selected via ``settings.STORAGE_BACKEND``:

1. **minio** (default): Uses the MinIO S3-compatible object storage.
2. **filesystem**: Stores files under ``settings.STORAGE_DIRECTORY`` on disk.

Receipt rows persist a *relative key* (``customer_id/uuid_filename``).
The upload flow that writes objects lives outside this service; the
points pipeline only reads images for OCR and deletes them once a
receipt has been processed.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from minio import Minio
from minio.error import S3Error

from loyalty.core.config import settings

logger = logging.getLogger(__name__)


class StorageService:
    """Unified storage service (MinIO or filesystem)."""

    def __init__(self, backend: Optional[str] = None, base_dir: Optional[str] = None) -> None:
        self.backend = (backend or settings.STORAGE_BACKEND or "minio").lower()
        if self.backend == "minio":
            self._client = Minio(
                settings.MINIO_ENDPOINT,
                access_key=settings.MINIO_ACCESS_KEY,
                secret_key=settings.MINIO_SECRET_KEY,
                secure=bool(settings.MINIO_USE_SSL),
            )
            self.bucket = settings.MINIO_BUCKET_NAME
        else:
            self.backend = "filesystem"
            base_path = Path(base_dir or settings.STORAGE_DIRECTORY)
            if not base_path.is_absolute():
                repo_root = Path(__file__).resolve().parents[3]
                base_path = (repo_root / base_path).resolve()
            self.base_dir = base_path

    def get_full_path(self, relative_path: str) -> Path:
        """Resolve a stored file's full path (filesystem only)."""
        full = (self.base_dir / relative_path).resolve()
        if self.base_dir.resolve() not in full.parents:
            raise ValueError(f"Storage key escapes base directory: {relative_path}")
        return full

    def load(self, key: str) -> bytes:
        """Return the raw bytes stored under ``key``.

        Raises ``FileNotFoundError`` when no object exists.
        """
        if self.backend == "minio":
            try:
                resp = self._client.get_object(self.bucket, key)
            except S3Error as e:
                if e.code in ("NoSuchKey", "NoSuchObject"):
                    raise FileNotFoundError(key) from e
                raise
            try:
                data = resp.read()
                logger.debug("[storage] MinIO get ok key=%s bytes=%d", key, len(data))
                return data
            finally:
                resp.close()
                resp.release_conn()
        return self.get_full_path(key).read_bytes()

    def delete(self, key: str) -> bool:
        """Delete the object stored under ``key``.

        Returns False when there was nothing to delete; other errors
        propagate so the caller can retry.
        """
        if self.backend == "minio":
            try:
                self._client.stat_object(self.bucket, key)
            except S3Error as e:
                if e.code in ("NoSuchKey", "NoSuchObject"):
                    return False
                raise
            self._client.remove_object(self.bucket, key)
            logger.info("[storage] MinIO object removed: %s", key)
            return True

        path = self.get_full_path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("[storage] FS removed: %s", path)
        return True
