from __future__ import annotations

import io
import logging
from datetime import timedelta
from pathlib import Path
from typing import Protocol

from minio import Minio
from minio.error import S3Error

from orderdesk.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


class LabelStorageError(RuntimeError):
    pass


class LabelStore(Protocol):
    backend: str

    def upload(self, object_key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> None:
        ...

    def public_url(self, object_key: str) -> str:
        ...


def _join_url(base: str, object_key: str) -> str:
    return f"{base.rstrip('/')}/{object_key.lstrip('/')}"


class LocalLabelStore:
    backend = "local"

    def __init__(self, root: Path, public_base_url: str | None = None):
        self.root = root
        self.public_base_url = public_base_url

    def _path(self, object_key: str) -> Path:
        return self.root / object_key

    def upload(self, object_key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> None:
        path = self._path(object_key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise LabelStorageError(f"cannot write {path}: {exc}") from exc

    def public_url(self, object_key: str) -> str:
        if self.public_base_url:
            return _join_url(self.public_base_url, object_key)
        path = self._path(object_key)
        if not path.exists():
            raise LabelStorageError(f"label {object_key} not found")
        return path.resolve().as_uri()


class MinioLabelStore:
    backend = "minio"

    def __init__(
        self,
        endpoint: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        secure: bool = False,
        public_base_url: str | None = None,
        url_expiry_seconds: int = 3600,
    ):
        self.client = Minio(endpoint, access_key=access_key, secret_key=secret_key, secure=secure)
        self.bucket = bucket
        self.public_base_url = public_base_url
        self.url_expiry = timedelta(seconds=url_expiry_seconds)
        self._bucket_ready = False

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
        self._bucket_ready = True

    def upload(self, object_key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> None:
        try:
            self._ensure_bucket()
            self.client.put_object(
                bucket_name=self.bucket,
                object_name=object_key,
                data=io.BytesIO(data),
                length=len(data),
                content_type=content_type,
            )
        except S3Error as exc:
            raise LabelStorageError(f"upload rejected: {exc.code}") from exc
        except Exception as exc:  # urllib3 connection errors do not share a base with S3Error
            raise LabelStorageError(f"upload failed: {exc}") from exc

    def public_url(self, object_key: str) -> str:
        if self.public_base_url:
            return _join_url(self.public_base_url, f"{self.bucket}/{object_key}")
        try:
            return self.client.presigned_get_object(self.bucket, object_key, expires=self.url_expiry)
        except Exception as exc:
            raise LabelStorageError(f"cannot sign url for {object_key}: {exc}") from exc


def build_label_store(settings: Settings | None = None) -> LabelStore:
    settings = settings or get_settings()
    if settings.label_backend == "minio":
        return MinioLabelStore(
            endpoint=settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            bucket=settings.minio_bucket,
            secure=settings.minio_secure,
            public_base_url=settings.labels_public_base_url,
            url_expiry_seconds=settings.minio_url_expiry_seconds,
        )
    return LocalLabelStore(settings.labels_dir, settings.labels_public_base_url)
