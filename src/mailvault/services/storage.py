"""Object store integration for archived content and export containers.

This module provides an S3-compatible client wrapper for:
- Raw message blobs (.eml) written by ingestion
- Attachment blobs, content-deduplicated by SHA-256
- Export containers streamed by the export pipeline

ObjectStoreClient is a thin synchronous boto3 wrapper bound to one bucket.
S3StorageGateway exposes it to async services through asyncio.to_thread,
implementing the StorageGateway protocol the compliance services depend on.

Example:
    from mailvault.core.settings import get_settings
    from mailvault.services.storage import S3StorageGateway

    settings = get_settings()
    storage = S3StorageGateway.from_settings(settings)

    await storage.put("mailvault/exports/123/export.zip", stream)
    async for chunk in storage.iter_chunks(record.storage_path):
        ...
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, BinaryIO, Protocol, runtime_checkable

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import ClientError

from mailvault.core.errors import TransientError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from mypy_boto3_s3 import S3Client

    from mailvault.core.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


@dataclass(frozen=True)
class UploadResult:
    """Result of an upload operation.

    Attributes:
        key: The object key in the bucket.
        bucket: The bucket name.
        size_bytes: Size of the uploaded content in bytes.
        sha256_digest: SHA-256 hex digest, when the content was buffered.
        etag: S3 ETag, when returned by the upload.
    """

    key: str
    bucket: str
    size_bytes: int
    sha256_digest: str | None = None
    etag: str | None = None


@dataclass(frozen=True)
class ObjectMetadata:
    """Metadata for a stored object.

    Attributes:
        key: The object key in the bucket.
        bucket: The bucket name.
        size_bytes: Size of the object in bytes.
        content_type: MIME type of the content.
        sha256_digest: SHA-256 digest if stored in metadata.
        etag: S3 ETag.
    """

    key: str
    bucket: str
    size_bytes: int
    content_type: str
    sha256_digest: str | None
    etag: str


class StorageError(TransientError):
    """Base exception for storage operations.

    Storage failures are retryable from the job queue's point of view.

    Attributes:
        message: Human-readable error description.
        bucket: The bucket involved in the operation.
        key: The object key involved (if applicable).
        operation: The operation that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        bucket: str | None = None,
        key: str | None = None,
        operation: str | None = None,
    ) -> None:
        """Initialize storage error with context.

        Args:
            message: Error description.
            bucket: Bucket name (if applicable).
            key: Object key (if applicable).
            operation: Operation name (e.g., 'put', 'get').
        """
        self.bucket = bucket
        self.key = key
        self.operation = operation
        super().__init__(message)


class ObjectNotFoundError(StorageError):
    """Raised when an object does not exist."""


class BucketNotFoundError(StorageError):
    """Raised when a bucket does not exist."""


class IntegrityError(StorageError):
    """Raised when content integrity verification fails."""


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class ObjectStoreClient:
    """S3-compatible object storage client bound to a single bucket.

    The client uses synchronous boto3 under the hood; async callers go
    through S3StorageGateway, which runs each call in a worker thread.
    """

    def __init__(
        self,
        endpoint_url: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        region: str = "us-east-1",
        *,
        upload_part_size: int = 8 * 1024 * 1024,
        connect_timeout: float = 5.0,
        read_timeout: float = 60.0,
        max_retries: int = 3,
    ) -> None:
        """Initialize the object store client.

        Args:
            endpoint_url: S3-compatible endpoint URL (e.g., http://localhost:9000).
            access_key: S3 access key ID.
            secret_key: S3 secret access key.
            bucket: Bucket holding all MailVault objects.
            region: AWS region (use us-east-1 for MinIO).
            upload_part_size: Multipart chunk size for streamed uploads.
            connect_timeout: Connection timeout in seconds.
            read_timeout: Read timeout in seconds.
            max_retries: Maximum retry attempts for transient failures.
        """
        self._endpoint_url = endpoint_url
        self.bucket = bucket

        config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": max_retries, "mode": "standard"},
            signature_version="s3v4",
        )

        self._client: S3Client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=config,
        )

        # Streams of unknown length are uploaded in parts of this size;
        # threads=False keeps reads from the source stream sequential
        self._transfer_config = TransferConfig(
            multipart_threshold=upload_part_size,
            multipart_chunksize=upload_part_size,
            use_threads=False,
        )

        logger.debug(
            "Initialized ObjectStoreClient for endpoint=%s bucket=%s",
            endpoint_url,
            bucket,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> ObjectStoreClient:
        """Create client from application settings.

        Args:
            settings: Settings instance (s3 and storage groups are used).

        Returns:
            Configured ObjectStoreClient instance.
        """
        return cls(
            endpoint_url=settings.s3.endpoint,
            access_key=settings.s3.access_key.get_secret_value(),
            secret_key=settings.s3.secret_key.get_secret_value(),
            bucket=settings.s3.bucket,
            region=settings.s3.region,
            upload_part_size=settings.storage.upload_part_size,
        )

    def put_bytes(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
    ) -> UploadResult:
        """Upload a buffered object, recording its SHA-256 in metadata.

        Raises:
            BucketNotFoundError: If bucket does not exist.
            StorageError: If upload fails.
        """
        sha256_digest = hashlib.sha256(data).hexdigest()

        try:
            response = self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={"sha256-digest": sha256_digest},
            )
        except ClientError as e:
            raise self._wrap(e, key, "put") from e

        logger.debug("Uploaded %s/%s (%d bytes)", self.bucket, key, len(data))

        return UploadResult(
            key=key,
            bucket=self.bucket,
            size_bytes=len(data),
            sha256_digest=sha256_digest,
            etag=response.get("ETag"),
        )

    def put_stream(
        self,
        key: str,
        stream: BinaryIO,
        *,
        content_type: str = "application/octet-stream",
    ) -> UploadResult:
        """Upload a stream of unknown length with a multipart upload.

        The stream is read sequentially until EOF; this call blocks until
        the upload completes or the stream raises.

        Raises:
            StorageError: If upload fails.
        """
        counter = _CountingReader(stream)
        try:
            self._client.upload_fileobj(
                counter,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
                Config=self._transfer_config,
            )
        except ClientError as e:
            raise self._wrap(e, key, "put_stream") from e

        logger.debug("Streamed %s/%s (%d bytes)", self.bucket, key, counter.bytes_read)
        return UploadResult(key=key, bucket=self.bucket, size_bytes=counter.bytes_read)

    def get_bytes(self, key: str, *, expected_digest: str | None = None) -> bytes:
        """Download an object fully, optionally verifying its SHA-256.

        Raises:
            ObjectNotFoundError: If object does not exist.
            IntegrityError: If digest verification fails.
            StorageError: If download fails.
        """
        body = self.open_stream(key)
        try:
            data = body.read()
        finally:
            body.close()

        if expected_digest:
            computed = hashlib.sha256(data).hexdigest()
            if computed != expected_digest:
                raise IntegrityError(
                    f"Content integrity check failed: expected {expected_digest[:16]}..., "
                    f"got {computed[:16]}...",
                    bucket=self.bucket,
                    key=key,
                    operation="get",
                )
        return data

    def open_stream(self, key: str) -> Any:
        """Open an object for sequential reading.

        Returns:
            botocore StreamingBody; the caller must close it.

        Raises:
            ObjectNotFoundError: If object does not exist.
            StorageError: If the request fails.
        """
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise self._wrap(e, key, "get") from e
        return response["Body"]

    def delete(self, key: str) -> None:
        """Delete an object. Deleting a missing object is not an error.

        Raises:
            StorageError: If delete fails.
        """
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise self._wrap(e, key, "delete") from e
        logger.debug("Deleted %s/%s", self.bucket, key)

    def exists(self, key: str) -> bool:
        """Check if an object exists.

        Raises:
            StorageError: If check fails for reasons other than not found.
        """
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return False
            raise self._wrap(e, key, "exists") from e

    def get_metadata(self, key: str) -> ObjectMetadata:
        """Get object metadata without downloading content.

        Raises:
            ObjectNotFoundError: If object does not exist.
            StorageError: If metadata retrieval fails.
        """
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise self._wrap(e, key, "get_metadata") from e

        return ObjectMetadata(
            key=key,
            bucket=self.bucket,
            size_bytes=response.get("ContentLength", 0),
            content_type=response.get("ContentType", "application/octet-stream"),
            sha256_digest=response.get("Metadata", {}).get("sha256-digest"),
            etag=response.get("ETag", ""),
        )

    def _wrap(self, error: ClientError, key: str, operation: str) -> StorageError:
        code = _error_code(error)
        if code in _NOT_FOUND_CODES:
            return ObjectNotFoundError(
                f"Object does not exist: {self.bucket}/{key}",
                bucket=self.bucket,
                key=key,
                operation=operation,
            )
        if code == "NoSuchBucket":
            return BucketNotFoundError(
                f"Bucket does not exist: {self.bucket}",
                bucket=self.bucket,
                key=key,
                operation=operation,
            )
        return StorageError(
            f"{operation} failed: {error}",
            bucket=self.bucket,
            key=key,
            operation=operation,
        )


class _CountingReader:
    """File-like wrapper counting bytes handed to boto3."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        self.bytes_read += len(data)
        return data


@runtime_checkable
class StorageGateway(Protocol):
    """Async object storage used by the compliance services.

    Stream arguments to put() may block on read (the export pipeline feeds
    them from a producer coroutine), so implementations must consume them
    off the event loop.
    """

    async def put(
        self,
        path: str,
        data: bytes | BinaryIO,
        *,
        content_type: str = "application/octet-stream",
    ) -> UploadResult: ...

    async def get(self, path: str) -> bytes: ...

    def iter_chunks(
        self, path: str, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> AsyncIterator[bytes]: ...

    async def delete(self, path: str) -> None: ...

    async def exists(self, path: str) -> bool: ...


class S3StorageGateway:
    """StorageGateway over ObjectStoreClient, one worker thread per call."""

    def __init__(self, client: ObjectStoreClient) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> S3StorageGateway:
        return cls(ObjectStoreClient.from_settings(settings))

    @property
    def client(self) -> ObjectStoreClient:
        return self._client

    async def put(
        self,
        path: str,
        data: bytes | BinaryIO,
        *,
        content_type: str = "application/octet-stream",
    ) -> UploadResult:
        if isinstance(data, bytes | bytearray):
            return await asyncio.to_thread(
                self._client.put_bytes, path, bytes(data), content_type=content_type
            )
        return await asyncio.to_thread(
            self._client.put_stream, path, data, content_type=content_type
        )

    async def get(self, path: str) -> bytes:
        return await asyncio.to_thread(self._client.get_bytes, path)

    async def iter_chunks(
        self, path: str, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> AsyncIterator[bytes]:
        """Yield an object's content in chunks, holding one open stream."""
        body = await asyncio.to_thread(self._client.open_stream, path)
        try:
            while True:
                chunk = await asyncio.to_thread(body.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._client.delete, path)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._client.exists, path)
