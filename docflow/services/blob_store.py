"""Blob storage adapters (Google Cloud Storage and in-memory)."""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from google.api_core import exceptions as gexc
from google.cloud import storage

from docflow.errors import AuthenticationError, AuthorizationError, DocflowError, NotFoundError
from docflow.services.interfaces import BlobStore, FileRef, UploadOptions

LOG = logging.getLogger("docflow.blob_store")


class BlobExistsError(DocflowError):
    code = "ALREADY_EXISTS"
    public_message = "An object with different content already exists"


def _translate(exc: Exception, bucket: str, path: str) -> Exception:
    if isinstance(exc, gexc.NotFound):
        return NotFoundError(f"gs://{bucket}/{path} not found", bucket=bucket, path=path)
    if isinstance(exc, gexc.Unauthorized):
        return AuthenticationError(f"unauthenticated for gs://{bucket}")
    if isinstance(exc, gexc.Forbidden):
        return AuthorizationError(f"access denied for gs://{bucket}/{path}")
    return exc


def _archive_metadata(bucket: str, path: str, retention_days: int) -> dict[str, str]:
    now = datetime.now(timezone.utc)
    return {
        "archived_from": f"gs://{bucket}/{path}",
        "archived_at": now.isoformat(),
        "retention_days": str(retention_days),
        "retain_until": (now + timedelta(days=retention_days)).isoformat(),
    }


class GCSBlobStore(BlobStore):
    """Google Cloud Storage implementation; SDK calls run in worker threads."""

    def __init__(
        self,
        *,
        archive_bucket: str,
        client: Any | None = None,
        kms_key_name: str | None = None,
    ) -> None:
        self._client = client or storage.Client()
        self._archive_bucket = archive_bucket
        self._kms_key = kms_key_name

    def _blob(self, bucket: str, path: str):
        blob = self._client.bucket(bucket).blob(path)
        if self._kms_key:
            setattr(blob, "kms_key_name", self._kms_key)
        return blob

    async def upload(
        self, bucket: str, path: str, data: bytes, options: UploadOptions | None = None
    ) -> FileRef:
        return await asyncio.to_thread(self._upload_sync, bucket, path, data, options or UploadOptions())

    def _upload_sync(self, bucket: str, path: str, data: bytes, options: UploadOptions) -> FileRef:
        blob = self._blob(bucket, path)
        if options.metadata:
            blob.metadata = dict(options.metadata)
        kwargs: Dict[str, Any] = {"content_type": options.content_type}
        if options.if_not_exists:
            kwargs["if_generation_match"] = 0
        try:
            blob.upload_from_string(data, **kwargs)
        except gexc.PreconditionFailed as exc:
            existing = blob.download_as_bytes()
            if existing != data:
                raise BlobExistsError(f"gs://{bucket}/{path} exists with different content") from exc
            LOG.info("blob_upload_idempotent", extra={"bucket": bucket, "path": path})
        except gexc.GoogleAPICallError as exc:
            raise _translate(exc, bucket, path) from exc
        generation = getattr(blob, "generation", None)
        return FileRef(
            bucket=bucket,
            path=path,
            size_bytes=len(data),
            generation=str(generation) if generation is not None else None,
        )

    async def download(self, bucket: str, path: str) -> bytes:
        return await asyncio.to_thread(self._download_sync, bucket, path)

    def _download_sync(self, bucket: str, path: str) -> bytes:
        try:
            return self._blob(bucket, path).download_as_bytes()
        except gexc.GoogleAPICallError as exc:
            raise _translate(exc, bucket, path) from exc

    async def delete(self, bucket: str, path: str) -> None:
        await asyncio.to_thread(self._delete_sync, bucket, path)

    def _delete_sync(self, bucket: str, path: str) -> None:
        try:
            self._blob(bucket, path).delete()
        except gexc.NotFound:
            LOG.debug("blob_delete_missing", extra={"bucket": bucket, "path": path})
        except gexc.GoogleAPICallError as exc:
            raise _translate(exc, bucket, path) from exc

    async def move_to_archive(self, bucket: str, path: str, retention_days: int) -> FileRef:
        if retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        return await asyncio.to_thread(self._archive_sync, bucket, path, retention_days)

    def _archive_sync(self, bucket: str, path: str, retention_days: int) -> FileRef:
        source_bucket = self._client.bucket(bucket)
        source = source_bucket.blob(path)
        archive_path = f"{bucket}/{path}"
        destination_bucket = self._client.bucket(self._archive_bucket)
        try:
            copied = source_bucket.copy_blob(source, destination_bucket, archive_path)
            copied.metadata = _archive_metadata(bucket, path, retention_days)
            copied.patch()
            source.delete()
        except gexc.GoogleAPICallError as exc:
            raise _translate(exc, bucket, path) from exc
        LOG.info(
            "blob_archived",
            extra={"bucket": bucket, "path": path, "archive_bucket": self._archive_bucket},
        )
        return FileRef(
            bucket=self._archive_bucket,
            path=archive_path,
            size_bytes=int(getattr(copied, "size", 0) or 0),
        )


class InMemoryBlobStore(BlobStore):
    """Dictionary-backed blob store for tests and local runs."""

    def __init__(self, *, archive_bucket: str = "archive") -> None:
        self.objects: Dict[tuple[str, str], bytes] = {}
        self.metadata: Dict[tuple[str, str], dict[str, str]] = {}
        self._archive_bucket = archive_bucket
        self._generation = 0
        self._lock = threading.Lock()

    async def upload(
        self, bucket: str, path: str, data: bytes, options: UploadOptions | None = None
    ) -> FileRef:
        opts = options or UploadOptions()
        key = (bucket, path)
        with self._lock:
            if opts.if_not_exists and key in self.objects and self.objects[key] != data:
                raise BlobExistsError(f"{bucket}/{path} exists with different content")
            self.objects[key] = bytes(data)
            self.metadata[key] = dict(opts.metadata)
            self._generation += 1
            return FileRef(bucket=bucket, path=path, size_bytes=len(data), generation=str(self._generation))

    async def download(self, bucket: str, path: str) -> bytes:
        with self._lock:
            try:
                return self.objects[(bucket, path)]
            except KeyError:
                raise NotFoundError(f"{bucket}/{path} not found", bucket=bucket, path=path) from None

    async def delete(self, bucket: str, path: str) -> None:
        with self._lock:
            self.objects.pop((bucket, path), None)
            self.metadata.pop((bucket, path), None)

    async def move_to_archive(self, bucket: str, path: str, retention_days: int) -> FileRef:
        if retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        with self._lock:
            data = self.objects.pop((bucket, path), None)
            if data is None:
                raise NotFoundError(f"{bucket}/{path} not found", bucket=bucket, path=path)
            self.metadata.pop((bucket, path), None)
            archive_key = (self._archive_bucket, f"{bucket}/{path}")
            self.objects[archive_key] = data
            self.metadata[archive_key] = _archive_metadata(bucket, path, retention_days)
            return FileRef(bucket=archive_key[0], path=archive_key[1], size_bytes=len(data))


__all__ = ["BlobExistsError", "GCSBlobStore", "InMemoryBlobStore"]
