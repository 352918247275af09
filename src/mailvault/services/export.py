"""Export pipeline: targeted and full-archive zip exports.

An export streams a zip container straight into object storage. The zip
writer (producer) runs on the event loop, handing each write to a worker
thread, and pushes compressed bytes into a bounded ChunkPipe; the storage
upload (consumer) reads the other end concurrently. Memory use is bounded
by the pipe size plus the spool thresholds, whatever the export size.

Container layout, in entry order:
- metadata.json: job identity, format and snapshot instant
- payload: eml/... entries (eml, json), attachments/... (json), or export.mbox
- export.json (json format): one array item per record
- manifest.jsonl: one JSON object per record
- summary.json: final record and attachment counts

Records are enumerated in (archived_at, record_id) order, one content
stream open at a time.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import queue
import shutil
import tempfile
import threading
import uuid
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC
from email.utils import format_datetime
from typing import TYPE_CHECKING, Any, BinaryIO, Self, cast

from sqlalchemy import func, select

from mailvault.core.errors import NotFoundError, TransientError, ValidationError
from mailvault.db.models.archive import (
    ArchivedRecord,
    Attachment,
    IngestionSource,
    RecordAttachment,
)
from mailvault.db.models.base import AuditActionType, ExportFormat, ExportStatus, utcnow
from mailvault.db.models.compliance import EdiscoveryCase, HoldMembership, LegalHold
from mailvault.db.models.exports import ArchiveExportJob, ExportJob
from mailvault.services.audit_log import AuditLedgerService
from mailvault.services.job_queue import JobType, Queues
from mailvault.services.records import chunked, iter_record_batches, load_records
from mailvault.services.storage_paths import (
    archive_export_storage_path,
    attachment_entry_path,
    build_source_folder_name,
    eml_entry_path,
    export_storage_path,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping, Sequence
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from mailvault.core.config import Settings
    from mailvault.services.job_queue import JobQueueService
    from mailvault.services.storage import StorageGateway, UploadResult

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

MBOX_ENTRY = "export.mbox"
JSON_ENTRY = "export.json"
MANIFEST_ENTRY = "manifest.jsonl"
METADATA_ENTRY = "metadata.json"
SUMMARY_ENTRY = "summary.json"

DEFAULT_BATCH_SIZE = 200
DEFAULT_PIPE_MAX_CHUNKS = 32
DEFAULT_SPOOL_MAX_BYTES = 8 * 1024 * 1024
COPY_CHUNK_SIZE = 1024 * 1024

# Seconds between checks of the opposite side while blocked on the pipe
_PIPE_POLL_SECONDS = 0.1

_EOF = object()

_SELECTORS = ("holdId", "caseId", "recordIds")


def parse_format(value: ExportFormat | str) -> ExportFormat:
    """Raises ValidationError for anything but eml, mbox or json."""
    try:
        return ExportFormat(value)
    except ValueError as e:
        raise ValidationError("Unsupported export format.") from e


def mbox_separator(sender_email: str | None, sent_at: datetime) -> bytes:
    """mbox 'From ' line: sender (or 'unknown') and the RFC 2822 UTC send date."""
    stamp = format_datetime(sent_at.astimezone(UTC), usegmt=True)
    return f"From {sender_email or 'unknown'} {stamp}\n".encode()


def _json_bytes(value: Any, *, indent: int | None = None) -> bytes:
    return json.dumps(value, indent=indent, ensure_ascii=False).encode("utf-8")


class ChunkPipe:
    """Bounded, thread-safe byte pipe between a writer and a reader thread.

    The writer end only exposes write/flush/close, so zipfile treats it as
    non-seekable and emits data descriptors. The reader end is a file-like
    object with read(size). Either side can fail the other: abort() makes
    pending and future reads raise, and close_reader() makes writes raise
    BrokenPipeError.
    """

    def __init__(self, max_chunks: int = DEFAULT_PIPE_MAX_CHUNKS) -> None:
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=max_chunks)
        self._error: BaseException | None = None
        self._reader_closed = threading.Event()
        self.writer = _PipeWriter(self)
        self.reader = _PipeReader(self)

    def abort(self, error: BaseException) -> None:
        """Fail the reader (the producer gave up)."""
        self._error = error
        self._reader_closed.set()
        with contextlib.suppress(queue.Full):
            self._queue.put_nowait(_EOF)

    def close_reader(self) -> None:
        """Stop accepting writes (the consumer is gone)."""
        self._reader_closed.set()

    def _put(self, item: Any) -> None:
        while True:
            if self._reader_closed.is_set():
                raise BrokenPipeError("Export upload is no longer reading")
            try:
                self._queue.put(item, timeout=_PIPE_POLL_SECONDS)
                return
            except queue.Full:
                continue

    def _get(self) -> Any:
        while True:
            if self._error is not None:
                raise self._error
            try:
                return self._queue.get(timeout=_PIPE_POLL_SECONDS)
            except queue.Empty:
                continue


class _PipeWriter:
    def __init__(self, pipe: ChunkPipe) -> None:
        self._pipe = pipe
        self._closed = False

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ValueError("write to closed pipe")
        if data:
            self._pipe._put(bytes(data))
        return len(data)

    def flush(self) -> None:
        return None

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._pipe._put(_EOF)


class _PipeReader:
    def __init__(self, pipe: ChunkPipe) -> None:
        self._pipe = pipe
        self._buffer = bytearray()
        self._eof = False

    def readable(self) -> bool:
        return True

    def read(self, size: int | None = -1) -> bytes:
        if size is None:
            size = -1
        while not self._eof and (size < 0 or len(self._buffer) < size):
            item = self._pipe._get()
            if item is _EOF:
                if self._pipe._error is not None:
                    raise self._pipe._error
                self._eof = True
                break
            self._buffer += item

        if size < 0 or size >= len(self._buffer):
            data = bytes(self._buffer)
            self._buffer.clear()
        else:
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
        return data


class _EntryWriter:
    """Async handle on one open zip entry."""

    def __init__(self, handle: BinaryIO) -> None:
        self._handle = handle

    async def write(self, data: bytes) -> None:
        if data:
            await asyncio.to_thread(self._handle.write, data)

    async def close(self) -> None:
        await asyncio.to_thread(self._handle.close)


class ExportContainer:
    """Zip container streamed into storage while it is being written.

    Use as an async context manager. On a clean exit the central directory
    is written and the upload awaited; on error the upload is aborted and
    the original error propagates.

    Example:
        async with ExportContainer(storage, path) as container:
            await container.write_json("metadata.json", {...})
            await container.write_stream("eml/a.eml", storage.iter_chunks(src))
        result = container.upload_result
    """

    def __init__(
        self,
        storage: StorageGateway,
        path: str,
        *,
        max_chunks: int = DEFAULT_PIPE_MAX_CHUNKS,
    ) -> None:
        self._storage = storage
        self._path = path
        self._pipe = ChunkPipe(max_chunks)
        self._zip: zipfile.ZipFile | None = None
        self._upload: asyncio.Task[UploadResult] | None = None
        self.upload_result: UploadResult | None = None

    async def __aenter__(self) -> ExportContainer:
        self._upload = asyncio.create_task(
            self._storage.put(self._path, self._pipe.reader, content_type="application/zip")
        )
        self._upload.add_done_callback(lambda _task: self._pipe.close_reader())
        self._zip = zipfile.ZipFile(self._pipe.writer, mode="w", compression=zipfile.ZIP_DEFLATED)
        return self

    async def __aexit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        if exc is None:
            try:
                await asyncio.to_thread(self._finish_zip)
            except BaseException as finish_error:
                await self._abort_upload(finish_error)
                raise
            self.upload_result = await self._require_upload()
            return
        await self._abort_upload(exc)

    async def _abort_upload(self, exc: BaseException) -> None:
        """Stop the upload after a producer failure, surfacing its cause."""
        self._pipe.abort(RuntimeError(f"Export aborted: {exc!r}"))
        if self._zip is not None:
            # The pipe refuses writes now, so the central directory is dropped
            with contextlib.suppress(Exception):
                self._zip.close()
        try:
            await self._require_upload()
        except Exception as upload_error:
            # The producer only saw a broken pipe; the upload error is the cause
            if isinstance(exc, BrokenPipeError):
                raise upload_error from exc
            logger.debug("Export upload aborted: path=%s, error=%s", self._path, upload_error)

    def _require_upload(self) -> asyncio.Task[UploadResult]:
        if self._upload is None:
            raise RuntimeError("ExportContainer used outside its context")
        return self._upload

    async def write_bytes(self, name: str, data: bytes) -> None:
        await asyncio.to_thread(self._require_zip().writestr, name, data)

    async def write_json(self, name: str, value: Any) -> None:
        await self.write_bytes(name, _json_bytes(value, indent=2))

    async def open_entry(self, name: str) -> _EntryWriter:
        handle = await asyncio.to_thread(self._require_zip().open, name, "w", force_zip64=True)
        return _EntryWriter(handle)

    async def write_stream(self, name: str, chunks: AsyncIterator[bytes]) -> None:
        entry = await self.open_entry(name)
        try:
            async for chunk in chunks:
                await entry.write(chunk)
        finally:
            await entry.close()

    async def copy_file(self, name: str, source: BinaryIO) -> None:
        """Copy a local (spool) file into an entry from its start."""
        zf = self._require_zip()

        def _copy() -> None:
            source.seek(0)
            with zf.open(name, "w", force_zip64=True) as dest:
                shutil.copyfileobj(source, dest, COPY_CHUNK_SIZE)

        await asyncio.to_thread(_copy)

    def _finish_zip(self) -> None:
        self._require_zip().close()
        self._pipe.writer.close()

    def _require_zip(self) -> zipfile.ZipFile:
        if self._zip is None:
            raise RuntimeError("ExportContainer used outside its context")
        return self._zip


@dataclass(frozen=True, slots=True)
class ExportCounts:
    email_count: int
    attachment_count: int


class _RecordWriter:
    """Writes the per-record payload, export.json and manifest.jsonl."""

    def __init__(
        self,
        session: AsyncSession,
        storage: StorageGateway,
        container: ExportContainer,
        fmt: ExportFormat,
        spool_max_bytes: int,
    ) -> None:
        self._session = session
        self._storage = storage
        self._container = container
        self._format = fmt
        self._manifest = tempfile.SpooledTemporaryFile(max_size=spool_max_bytes, mode="w+b")
        self._json_items = (
            tempfile.SpooledTemporaryFile(max_size=spool_max_bytes, mode="w+b")
            if fmt == ExportFormat.JSON
            else None
        )
        self._mbox: _EntryWriter | None = None
        self._source_names: dict[uuid.UUID, str] = {}
        self._seen_attachments: set[uuid.UUID] = set()
        self.email_count = 0

    @property
    def attachment_count(self) -> int:
        return len(self._seen_attachments)

    async def start(self) -> None:
        if self._format == ExportFormat.MBOX:
            self._mbox = await self._container.open_entry(MBOX_ENTRY)
        if self._json_items is not None:
            self._json_items.write(b"[")

    async def write_batch(self, records: Sequence[ArchivedRecord]) -> None:
        attachments = await self._attachments_for(records)
        await self._load_source_names({record.source_id for record in records})
        for record in records:
            await self._write_record(record, attachments.get(record.record_id, []))

    async def finish(self) -> None:
        if self._mbox is not None:
            await self._mbox.close()
            self._mbox = None
        if self._json_items is not None:
            self._json_items.write(b"]")
            await self._container.copy_file(JSON_ENTRY, self._json_items)
        await self._container.copy_file(MANIFEST_ENTRY, self._manifest)

    def close(self) -> None:
        self._manifest.close()
        if self._json_items is not None:
            self._json_items.close()

    async def _write_record(self, record: ArchivedRecord, attachments: list[Attachment]) -> None:
        source_name = self._source_names.get(record.source_id, "source")
        source_folder = build_source_folder_name(source_name, record.source_id)
        eml_path = eml_entry_path(source_folder, record.mailbox_path, record.record_id)

        if self._format in (ExportFormat.EML, ExportFormat.JSON):
            await self._container.write_stream(
                eml_path, self._storage.iter_chunks(record.storage_path)
            )
        elif self._mbox is not None:
            await self._mbox.write(mbox_separator(record.sender_email, record.sent_at))
            async for chunk in self._storage.iter_chunks(record.storage_path):
                await self._mbox.write(chunk)
            await self._mbox.write(b"\n\n")

        attachment_items = []
        for attachment in attachments:
            export_path = attachment_entry_path(attachment.attachment_id, attachment.filename)
            if attachment.attachment_id not in self._seen_attachments:
                self._seen_attachments.add(attachment.attachment_id)
                if self._format == ExportFormat.JSON:
                    await self._container.write_stream(
                        export_path, self._storage.iter_chunks(attachment.storage_path)
                    )
            attachment_items.append(
                {
                    "id": str(attachment.attachment_id),
                    "filename": attachment.filename,
                    "mimeType": attachment.mime_type,
                    "sizeBytes": attachment.size_bytes,
                    "contentHash": attachment.content_hash,
                    "exportPath": export_path,
                }
            )

        is_mbox = self._format == ExportFormat.MBOX
        entry = {
            "id": str(record.record_id),
            "sourceId": str(record.source_id),
            "sourceName": source_name,
            "ownerEmail": record.owner_email,
            "senderEmail": record.sender_email,
            "subject": record.subject,
            "sentAt": record.sent_at.isoformat(),
            "archivedAt": record.archived_at.isoformat(),
            "contentHash": record.content_hash,
            "emlPath": None if is_mbox else eml_path,
            "mboxPath": MBOX_ENTRY if is_mbox else None,
            "attachments": [
                {
                    **item,
                    "exportPath": item["exportPath"]
                    if self._format == ExportFormat.JSON
                    else None,
                }
                for item in attachment_items
            ],
        }
        self._manifest.write(_json_bytes(entry) + b"\n")

        if self._json_items is not None:
            if self.email_count:
                self._json_items.write(b",")
            self._json_items.write(
                _json_bytes(
                    {
                        key: value
                        for key, value in entry.items()
                        if key not in ("mboxPath", "attachments")
                    }
                    | {"attachments": attachment_items}
                )
            )

        self.email_count += 1

    async def _attachments_for(
        self, records: Sequence[ArchivedRecord]
    ) -> dict[uuid.UUID, list[Attachment]]:
        result = await self._session.execute(
            select(RecordAttachment.record_id, Attachment)
            .join(Attachment, RecordAttachment.attachment_id == Attachment.attachment_id)
            .where(RecordAttachment.record_id.in_([r.record_id for r in records]))
            .order_by(Attachment.filename, Attachment.attachment_id)
        )
        by_record: dict[uuid.UUID, list[Attachment]] = {}
        for record_id, attachment in result.all():
            by_record.setdefault(record_id, []).append(attachment)
        return by_record

    async def _load_source_names(self, source_ids: set[uuid.UUID]) -> None:
        missing = [sid for sid in source_ids if sid not in self._source_names]
        if not missing:
            return
        result = await self._session.execute(
            select(IngestionSource.source_id, IngestionSource.name).where(
                IngestionSource.source_id.in_(missing)
            )
        )
        for source_id, name in result.all():
            self._source_names[source_id] = name


async def write_export(
    *,
    session: AsyncSession,
    storage: StorageGateway,
    path: str,
    fmt: ExportFormat,
    metadata: Mapping[str, Any],
    batches: AsyncIterator[Sequence[ArchivedRecord]],
    max_chunks: int = DEFAULT_PIPE_MAX_CHUNKS,
    spool_max_bytes: int = DEFAULT_SPOOL_MAX_BYTES,
) -> ExportCounts:
    """Build a container from record batches and upload it to path.

    Args:
        session: Database session (attachments and source names).
        storage: Source of record blobs and destination of the container.
        path: Destination object key.
        fmt: Payload format.
        metadata: Content of metadata.json; exportJobId and snapshotAt are
            repeated in summary.json.
        batches: Records in (archived_at, record_id) order.
        max_chunks: Pipe capacity between the zip writer and the upload.
        spool_max_bytes: In-memory size of each spool before it spills to disk.

    Returns:
        Number of records and distinct attachments exported.
    """
    async with ExportContainer(storage, path, max_chunks=max_chunks) as container:
        await container.write_json(METADATA_ENTRY, dict(metadata))

        writer = _RecordWriter(session, storage, container, fmt, spool_max_bytes)
        try:
            await writer.start()
            async for batch in batches:
                await writer.write_batch(batch)
            await writer.finish()
        finally:
            writer.close()

        counts = ExportCounts(
            email_count=writer.email_count,
            attachment_count=writer.attachment_count,
        )
        await container.write_json(
            SUMMARY_ENTRY,
            {
                "exportJobId": metadata.get("exportJobId"),
                "snapshotAt": metadata.get("snapshotAt"),
                "format": fmt.value,
                "emailCount": counts.email_count,
                "attachmentCount": counts.attachment_count,
            },
        )
    return counts


@dataclass(frozen=True, slots=True)
class ExportJobPage:
    items: list[Any]
    total: int
    page: int
    limit: int


class _ExportRunner(ABC):
    """Shared lifecycle of export jobs: pending -> running -> completed | failed.

    Each transition is committed together with its audit entry, so a
    failed run stays recorded even though the caller's transaction is
    rolled back when the error propagates.

    A TransientError on an attempt before the last leaves the job running
    with its error message and re-raises for the queue to retry; the next
    delivery resumes it. The last attempt, or any other error, marks the
    job failed.
    """

    target_type: str
    export_type: str

    def __init__(
        self,
        session: AsyncSession,
        storage: StorageGateway,
        *,
        folder_name: str = "mailvault",
        batch_size: int = DEFAULT_BATCH_SIZE,
        pipe_max_chunks: int = DEFAULT_PIPE_MAX_CHUNKS,
        spool_max_bytes: int = DEFAULT_SPOOL_MAX_BYTES,
        job_queue: JobQueueService | None = None,
        ledger: AuditLedgerService | None = None,
    ) -> None:
        self._session = session
        self._storage = storage
        self._folder_name = folder_name
        self._batch_size = batch_size
        self._pipe_max_chunks = pipe_max_chunks
        self._spool_max_bytes = spool_max_bytes
        self._job_queue = job_queue
        self._ledger = ledger or AuditLedgerService(session)

    @classmethod
    def from_settings(
        cls,
        session: AsyncSession,
        storage: StorageGateway,
        settings: Settings,
        *,
        job_queue: JobQueueService | None = None,
    ) -> Self:
        return cls(
            session,
            storage,
            folder_name=settings.storage.folder_name,
            batch_size=settings.export.batch_size,
            pipe_max_chunks=settings.export.pipe_max_chunks,
            spool_max_bytes=settings.export.spool_max_bytes,
            job_queue=job_queue,
        )

    async def _run(
        self,
        job: ExportJob | ArchiveExportJob,
        job_id: uuid.UUID,
        *,
        final_attempt: bool = True,
    ) -> ExportJob | ArchiveExportJob:
        if job.status.is_terminal:
            logger.info(
                "Export job already finished, skipping: job_id=%s, status=%s",
                job_id,
                job.status.value,
            )
            return job

        model = type(job)
        if job.status == ExportStatus.RUNNING:
            logger.info(
                "Resuming export job: job_id=%s, previous_error=%s",
                job_id,
                job.error_message,
            )
        else:
            job.status = ExportStatus.RUNNING
            job.started_at = utcnow()
            await self._audit_status(job_id, {"status": ExportStatus.RUNNING.value})
        job.error_message = None
        await self._session.commit()
        await self._session.refresh(job)
        fmt = job.format
        try:
            snapshot_at = self._snapshot_at(job)
            path = self._storage_path(job_id)
            metadata = {
                "exportJobId": str(job_id),
                "exportType": self.export_type,
                "snapshotAt": snapshot_at.isoformat(),
                "format": fmt.value,
                "createdBy": job.created_by,
                "createdAt": job.created_at.isoformat(),
            }
            counts = await write_export(
                session=self._session,
                storage=self._storage,
                path=path,
                fmt=fmt,
                metadata=metadata,
                batches=self._batches(job),
                max_chunks=self._pipe_max_chunks,
                spool_max_bytes=self._spool_max_bytes,
            )
        except Exception as e:
            if isinstance(e, TransientError) and not final_attempt:
                await self._record_attempt_failure(model, job_id, e)
            else:
                await self._mark_failed(model, job_id, e)
            raise

        job.status = ExportStatus.COMPLETED
        job.file_path = path
        job.record_count = counts.email_count
        job.attachment_count = counts.attachment_count
        job.completed_at = utcnow()
        await self._audit_status(
            job_id,
            {
                "status": ExportStatus.COMPLETED.value,
                "emailCount": counts.email_count,
                "attachmentCount": counts.attachment_count,
            },
        )
        await self._session.commit()
        await self._session.refresh(job)

        logger.info(
            "Export completed: job_id=%s, format=%s, emails=%d, attachments=%d",
            job_id,
            fmt.value,
            counts.email_count,
            counts.attachment_count,
        )
        return job

    async def _mark_failed(
        self,
        model: type[ExportJob] | type[ArchiveExportJob],
        job_id: uuid.UUID,
        error: Exception,
    ) -> None:
        logger.error("Export job failed: job_id=%s, error=%s", job_id, error)
        message = str(error) or type(error).__name__

        await self._session.rollback()
        job = await self._session.get(model, job_id)
        if job is None:
            return
        job.status = ExportStatus.FAILED
        job.error_message = message
        job.completed_at = utcnow()
        await self._audit_status(job_id, {"status": ExportStatus.FAILED.value, "error": message})
        await self._session.commit()

    async def _record_attempt_failure(
        self,
        model: type[ExportJob] | type[ArchiveExportJob],
        job_id: uuid.UUID,
        error: Exception,
    ) -> None:
        """Keep the job running with the error, for the next delivery to resume."""
        logger.warning("Export attempt failed, will retry: job_id=%s, error=%s", job_id, error)

        await self._session.rollback()
        job = await self._session.get(model, job_id)
        if job is None:
            return
        job.error_message = str(error) or type(error).__name__
        await self._session.commit()

    async def _audit_status(self, job_id: uuid.UUID, details: dict[str, Any]) -> None:
        await self._ledger.append(
            actor_identifier=SYSTEM_ACTOR,
            action_type=AuditActionType.UPDATE,
            target_type=self.target_type,
            target_id=job_id,
            actor_ip=SYSTEM_ACTOR,
            details=details,
        )

    async def _enqueue(self, job_type: JobType, payload: dict[str, Any]) -> None:
        if self._job_queue is not None:
            await self._job_queue.enqueue(job_type, payload, queue=Queues.COMPLIANCE)

    @abstractmethod
    def _snapshot_at(self, job: Any) -> datetime: ...

    @abstractmethod
    def _storage_path(self, job_id: uuid.UUID) -> str: ...

    @abstractmethod
    def _batches(self, job: Any) -> AsyncIterator[Sequence[ArchivedRecord]]: ...


class ExportService(_ExportRunner):
    """Targeted exports of a hold, a case or an explicit list of records.

    Example:
        service = ExportService(session, storage, job_queue=queue)
        job = await service.create_export_job(
            export_format="eml", query={"holdId": str(hold_id)}, actor="alice"
        )
        await session.commit()
        # later, in the worker
        await service.run_export_job(job.export_job_id)
    """

    target_type = "ExportJob"
    export_type = "targeted"

    async def create_export_job(
        self,
        *,
        export_format: ExportFormat | str,
        query: Mapping[str, Any],
        actor: str,
        case_id: uuid.UUID | None = None,
        actor_ip: str | None = None,
    ) -> ExportJob:
        """Persist a pending export job and enqueue it.

        Raises:
            ValidationError: Unsupported format, or not exactly one selector.
            NotFoundError: Unknown hold or case.
        """
        fmt = parse_format(export_format)
        normalized = await self._normalize_query(query)
        if case_id is None and "caseId" in normalized:
            case_id = uuid.UUID(normalized["caseId"])

        job = ExportJob(
            case_id=case_id,
            format=fmt,
            status=ExportStatus.PENDING,
            query=normalized,
            created_by=actor,
        )
        self._session.add(job)
        await self._session.flush()

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.CREATE,
            target_type=self.target_type,
            target_id=job.export_job_id,
            actor_ip=actor_ip,
            details={"format": fmt.value, "caseId": str(case_id) if case_id else None},
        )
        await self._enqueue(JobType.EXPORT_JOB, {"exportJobId": str(job.export_job_id)})
        return job

    async def run_export_job(
        self,
        export_job_id: uuid.UUID,
        *,
        attempt: int = 1,
        max_attempts: int = 1,
    ) -> ExportJob:
        """Build and upload the container for a pending or resumed job.

        A job already completed or failed is returned untouched.

        Args:
            export_job_id: Job to run.
            attempt: Delivery attempt of the queue job, starting at 1.
            max_attempts: Attempt limit of the queue job.

        Raises:
            NotFoundError: Unknown job.
            Exception: Whatever failed the export. The job is marked failed
                first unless a later attempt may still succeed.
        """
        job = await self.get_export_job(export_job_id)
        result = await self._run(job, export_job_id, final_attempt=attempt >= max_attempts)
        return cast(ExportJob, result)

    async def get_export_job(self, export_job_id: uuid.UUID) -> ExportJob:
        job = await self._session.get(ExportJob, export_job_id)
        if job is None:
            raise NotFoundError("Export job", export_job_id)
        return job

    async def list_export_jobs(
        self,
        page: int = 1,
        limit: int = 20,
        case_id: uuid.UUID | None = None,
    ) -> ExportJobPage:
        """Export jobs, newest first, optionally for one case."""
        page = max(page, 1)
        count_query = select(func.count()).select_from(ExportJob)
        query = select(ExportJob).order_by(ExportJob.created_at.desc())
        if case_id is not None:
            count_query = count_query.where(ExportJob.case_id == case_id)
            query = query.where(ExportJob.case_id == case_id)

        total = (await self._session.execute(count_query)).scalar_one()
        result = await self._session.execute(query.limit(limit).offset((page - 1) * limit))
        return ExportJobPage(
            items=list(result.scalars().all()), total=total, page=page, limit=limit
        )

    async def resolve_record_ids(self, query: Mapping[str, Any]) -> list[uuid.UUID]:
        """Record ids selected by a normalized query, first-seen order, no duplicates."""
        ids: list[uuid.UUID] = []
        if query.get("holdId"):
            result = await self._session.execute(
                select(HoldMembership.record_id)
                .where(
                    HoldMembership.hold_id == uuid.UUID(query["holdId"]),
                    HoldMembership.removed_at.is_(None),
                )
                .order_by(HoldMembership.matched_at, HoldMembership.record_id)
            )
            ids = list(result.scalars().all())
        elif query.get("caseId"):
            result = await self._session.execute(
                select(HoldMembership.record_id)
                .join(LegalHold, HoldMembership.hold_id == LegalHold.hold_id)
                .where(
                    LegalHold.case_id == uuid.UUID(query["caseId"]),
                    HoldMembership.removed_at.is_(None),
                )
                .order_by(LegalHold.applied_at, HoldMembership.matched_at, HoldMembership.record_id)
            )
            ids = list(result.scalars().all())
        elif query.get("recordIds"):
            ids = [uuid.UUID(value) for value in query["recordIds"]]
        return list(dict.fromkeys(ids))

    async def _normalize_query(self, query: Mapping[str, Any]) -> dict[str, Any]:
        """Exactly one selector, ids canonicalized, referenced hold/case checked."""
        present = [key for key in _SELECTORS if query.get(key)]
        if len(present) != 1:
            raise ValidationError(
                "Export query requires exactly one of holdId, caseId or recordIds."
            )
        key = present[0]
        value = query[key]

        if key == "recordIds":
            if isinstance(value, str) or not isinstance(value, list | tuple):
                raise ValidationError("recordIds must be a list of record ids.")
            return {"recordIds": [str(_parse_uuid(item, key)) for item in value]}

        parsed = _parse_uuid(value, key)
        model = LegalHold if key == "holdId" else EdiscoveryCase
        if await self._session.get(model, parsed) is None:
            raise NotFoundError("Legal hold" if key == "holdId" else "Compliance case", parsed)
        return {key: str(parsed)}

    def _snapshot_at(self, job: ExportJob) -> datetime:
        return job.started_at or utcnow()

    def _storage_path(self, job_id: uuid.UUID) -> str:
        return export_storage_path(self._folder_name, job_id)

    async def _batches(self, job: ExportJob) -> AsyncIterator[Sequence[ArchivedRecord]]:
        ids = await self.resolve_record_ids(job.query)

        # Ids that no longer exist (deleted since) drop out here
        keys: list[tuple[datetime, uuid.UUID]] = []
        for chunk in chunked(ids):
            result = await self._session.execute(
                select(ArchivedRecord.archived_at, ArchivedRecord.record_id).where(
                    ArchivedRecord.record_id.in_(chunk)
                )
            )
            keys.extend((archived_at, record_id) for archived_at, record_id in result.all())
        keys.sort()

        ordered = [record_id for _, record_id in keys]
        for chunk in chunked(ordered, self._batch_size):
            records = await load_records(self._session, chunk)
            batch = [records[record_id] for record_id in chunk if record_id in records]
            if batch:
                yield batch


class ArchiveExportService(_ExportRunner):
    """Full archive exports as of a fixed snapshot instant."""

    target_type = "ArchiveExportJob"
    export_type = "archive"

    async def create_archive_export_job(
        self,
        *,
        export_format: ExportFormat | str,
        actor: str,
        snapshot_at: datetime | None = None,
        actor_ip: str | None = None,
    ) -> ArchiveExportJob:
        """Persist a pending archive export job and enqueue it.

        Raises:
            ValidationError: Unsupported format.
        """
        fmt = parse_format(export_format)
        job = ArchiveExportJob(
            format=fmt,
            status=ExportStatus.PENDING,
            snapshot_at=snapshot_at or utcnow(),
            created_by=actor,
        )
        self._session.add(job)
        await self._session.flush()

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.CREATE,
            target_type=self.target_type,
            target_id=job.archive_export_job_id,
            actor_ip=actor_ip,
            details={"format": fmt.value, "snapshotAt": job.snapshot_at.isoformat()},
        )
        await self._enqueue(
            JobType.ARCHIVE_EXPORT_JOB,
            {"archiveExportJobId": str(job.archive_export_job_id)},
        )
        return job

    async def run_archive_export_job(
        self,
        archive_export_job_id: uuid.UUID,
        *,
        attempt: int = 1,
        max_attempts: int = 1,
    ) -> ArchiveExportJob:
        """Export every record archived at or before the job's snapshot.

        Retries follow run_export_job.
        """
        job = await self.get_archive_export_job(archive_export_job_id)
        result = await self._run(
            job, archive_export_job_id, final_attempt=attempt >= max_attempts
        )
        return cast(ArchiveExportJob, result)

    async def get_archive_export_job(self, archive_export_job_id: uuid.UUID) -> ArchiveExportJob:
        job = await self._session.get(ArchiveExportJob, archive_export_job_id)
        if job is None:
            raise NotFoundError("Archive export job", archive_export_job_id)
        return job

    async def list_archive_export_jobs(self, page: int = 1, limit: int = 20) -> ExportJobPage:
        page = max(page, 1)
        total = (
            await self._session.execute(select(func.count()).select_from(ArchiveExportJob))
        ).scalar_one()
        result = await self._session.execute(
            select(ArchiveExportJob)
            .order_by(ArchiveExportJob.created_at.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        return ExportJobPage(
            items=list(result.scalars().all()), total=total, page=page, limit=limit
        )

    def _snapshot_at(self, job: ArchiveExportJob) -> datetime:
        return job.snapshot_at

    def _storage_path(self, job_id: uuid.UUID) -> str:
        return archive_export_storage_path(self._folder_name, job_id)

    def _batches(self, job: ArchiveExportJob) -> AsyncIterator[Sequence[ArchivedRecord]]:
        return iter_record_batches(
            self._session,
            ArchivedRecord.archived_at <= job.snapshot_at,
            self._batch_size,
        )


def _parse_uuid(value: Any, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise ValidationError(f"Invalid {field}: {value}") from e
