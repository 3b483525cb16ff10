from __future__ import annotations

import json
import mimetypes
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from hashlib import md5
from pathlib import Path
from typing import Iterator, Sequence
from uuid import uuid4

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .logging import get_logger


DEFAULT_READ_CHUNK = 1024 * 1024


class StorageError(RuntimeError):
    """Raised when the blob backend rejects or fails a call."""


class ObjectNotFound(StorageError):
    pass


@dataclass(slots=True)
class StorageStat:
    size_bytes: int | None
    etag: str | None = None
    content_type: str | None = None


@dataclass(slots=True, frozen=True)
class CompletedPart:
    part_number: int
    etag: str


class BlobStore(ABC):
    """Multipart-capable object store used by the upload services.

    Calls are blocking; async callers wrap them in ``asyncio.to_thread``.
    """

    @abstractmethod
    def create_multipart(self, key: str, *, content_type: str) -> str:
        """Open a multipart object at ``key`` and return the backend upload id."""

    @abstractmethod
    def upload_part(self, key: str, upload_id: str, part_number: int, payload: bytes) -> str:
        """Store one part and return its ETag."""

    @abstractmethod
    def complete_multipart(self, key: str, upload_id: str, parts: Sequence[CompletedPart]) -> StorageStat: ...

    @abstractmethod
    def iter_bytes(self, key: str, *, chunk_size: int = DEFAULT_READ_CHUNK) -> Iterator[bytes]: ...

    @abstractmethod
    def stat(self, key: str) -> StorageStat: ...

    def read_bytes(self, key: str) -> bytes:
        return b"".join(self.iter_bytes(key))


def _check_part_order(parts: Sequence[CompletedPart]) -> None:
    if not parts:
        raise StorageError("multipart_upload_has_no_parts")
    numbers = [part.part_number for part in parts]
    if numbers != sorted(set(numbers)):
        raise StorageError("parts_not_in_ascending_order")


class LocalBlobStore(BlobStore):
    """Filesystem-backed store suitable for development and tests.

    In-flight parts are staged under ``.multipart/<upload_id>/`` and concatenated
    on completion, mirroring S3 semantics closely enough for the upload services.
    """

    def __init__(self, base_path: Path):
        self.base_path = base_path
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.staging_root = self.base_path / ".multipart"
        self.logger = get_logger(component="local_blob_store")

    def _resolve(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"key_outside_store:{key}")
        return path

    def _staging(self, upload_id: str) -> Path:
        return self.staging_root / upload_id

    def create_multipart(self, key: str, *, content_type: str) -> str:
        self._resolve(key)
        upload_id = uuid4().hex
        staging = self._staging(upload_id)
        try:
            staging.mkdir(parents=True)
            (staging / "upload.json").write_text(json.dumps({"key": key, "content_type": content_type}), encoding="utf-8")
        except OSError as exc:
            raise StorageError(str(exc)) from exc
        return upload_id

    def _load_staging(self, key: str, upload_id: str) -> Path:
        staging = self._staging(upload_id)
        manifest = staging / "upload.json"
        if not manifest.exists():
            raise StorageError(f"no_such_upload:{upload_id}")
        if json.loads(manifest.read_text(encoding="utf-8"))["key"] != key:
            raise StorageError(f"upload_key_mismatch:{upload_id}")
        return staging

    def upload_part(self, key: str, upload_id: str, part_number: int, payload: bytes) -> str:
        if part_number < 1:
            raise StorageError(f"invalid_part_number:{part_number}")
        staging = self._load_staging(key, upload_id)
        try:
            (staging / f"{part_number:05d}.part").write_bytes(payload)
        except OSError as exc:
            raise StorageError(str(exc)) from exc
        return f'"{md5(payload, usedforsecurity=False).hexdigest()}"'

    def complete_multipart(self, key: str, upload_id: str, parts: Sequence[CompletedPart]) -> StorageStat:
        _check_part_order(parts)
        staging = self._load_staging(key, upload_id)
        target = self._resolve(key)
        sources: list[Path] = []
        for part in parts:
            source = staging / f"{part.part_number:05d}.part"
            if not source.exists():
                raise StorageError(f"missing_part:{part.part_number}")
            etag = f'"{md5(source.read_bytes(), usedforsecurity=False).hexdigest()}"'
            if etag != part.etag:
                raise StorageError(f"etag_mismatch:{part.part_number}")
            sources.append(source)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("wb") as handle:
                for source in sources:
                    with source.open("rb") as chunk:
                        shutil.copyfileobj(chunk, handle)
            shutil.rmtree(staging)
        except OSError as exc:
            raise StorageError(str(exc)) from exc
        self.logger.info("multipart_assembled", key=key, parts=len(parts))
        return self.stat(key)

    def iter_bytes(self, key: str, *, chunk_size: int = DEFAULT_READ_CHUNK) -> Iterator[bytes]:
        path = self._resolve(key)
        if not path.is_file():
            raise ObjectNotFound(key)
        with path.open("rb") as handle:
            while chunk := handle.read(chunk_size):
                yield chunk

    def stat(self, key: str) -> StorageStat:
        path = self._resolve(key)
        if not path.is_file():
            raise ObjectNotFound(key)
        content_type, _ = mimetypes.guess_type(path.name)
        return StorageStat(size_bytes=path.stat().st_size, content_type=content_type)


class S3BlobStore(BlobStore):
    """S3 (or S3-compatible) multipart store backed by boto3."""

    def __init__(self, bucket: str, *, client: object | None = None, region: str | None = None, endpoint_url: str | None = None,
                 access_key_id: str | None = None, secret_access_key: str | None = None):
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
        )
        self.logger = get_logger(component="s3_blob_store", bucket=bucket)

    def create_multipart(self, key: str, *, content_type: str) -> str:
        try:
            response = self.client.create_multipart_upload(Bucket=self.bucket, Key=key, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            self.logger.error("s3_create_multipart_failed", key=key, error=str(exc))
            raise StorageError(str(exc)) from exc
        upload_id = response.get("UploadId")
        if not upload_id:
            raise StorageError("s3_returned_no_upload_id")
        self.logger.info("s3_multipart_opened", key=key)
        return upload_id

    def upload_part(self, key: str, upload_id: str, part_number: int, payload: bytes) -> str:
        try:
            response = self.client.upload_part(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=payload,
                ContentLength=len(payload),
            )
        except (BotoCoreError, ClientError) as exc:
            self.logger.error("s3_upload_part_failed", key=key, part_number=part_number, error=str(exc))
            raise StorageError(str(exc)) from exc
        etag = response.get("ETag")
        if not etag:
            raise StorageError("s3_returned_no_etag")
        return etag

    def complete_multipart(self, key: str, upload_id: str, parts: Sequence[CompletedPart]) -> StorageStat:
        _check_part_order(parts)
        try:
            response = self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": [{"PartNumber": p.part_number, "ETag": p.etag} for p in parts]},
            )
        except (BotoCoreError, ClientError) as exc:
            self.logger.error("s3_complete_multipart_failed", key=key, error=str(exc))
            raise StorageError(str(exc)) from exc
        self.logger.info("s3_multipart_completed", key=key, parts=len(parts))
        return StorageStat(size_bytes=None, etag=response.get("ETag"))

    def iter_bytes(self, key: str, *, chunk_size: int = DEFAULT_READ_CHUNK) -> Iterator[bytes]:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                raise ObjectNotFound(key) from exc
            raise StorageError(str(exc)) from exc
        except BotoCoreError as exc:
            raise StorageError(str(exc)) from exc
        body = response["Body"]
        try:
            yield from body.iter_chunks(chunk_size=chunk_size)
        except BotoCoreError as exc:
            raise StorageError(str(exc)) from exc
        finally:
            body.close()

    def stat(self, key: str) -> StorageStat:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404", "NotFound"}:
                raise ObjectNotFound(key) from exc
            raise StorageError(str(exc)) from exc
        except BotoCoreError as exc:
            raise StorageError(str(exc)) from exc
        return StorageStat(
            size_bytes=response.get("ContentLength"),
            etag=response.get("ETag"),
            content_type=response.get("ContentType"),
        )


def get_storage(settings: Settings) -> BlobStore:
    if settings.storage_backend == "local":
        return LocalBlobStore(base_path=Path(settings.local_storage_base_path))
    if settings.storage_backend == "s3":
        if not settings.s3_bucket:
            raise ValueError("SPECIMENS_S3_BUCKET is required for the s3 storage backend")
        return S3BlobStore(
            settings.s3_bucket,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
            access_key_id=settings.secrets.aws_access_key_id,
            secret_access_key=settings.secrets.aws_secret_access_key,
        )
    raise ValueError(f"Unsupported storage backend: {settings.storage_backend}")


__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "S3BlobStore",
    "StorageStat",
    "CompletedPart",
    "StorageError",
    "ObjectNotFound",
    "get_storage",
]
