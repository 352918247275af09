"""Archived record queries shared by holds, retention and exports."""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

from sqlalchemy import and_, or_, select

from mailvault.db.models.archive import ArchivedRecord

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncIterator, Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql.elements import ColumnElement

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 500

# Upper bound on bound parameters per IN (...) list
IN_CLAUSE_CHUNK = 500


def chunked(items: Sequence[T], size: int = IN_CLAUSE_CHUNK) -> Iterable[Sequence[T]]:
    """Split a sequence into consecutive slices of at most size items."""
    for start in range(0, len(items), size):
        yield items[start : start + size]


async def iter_record_batches(
    session: AsyncSession,
    clause: ColumnElement[bool],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> AsyncIterator[list[ArchivedRecord]]:
    """Yield records matching clause in (archived_at, record_id) order.

    Uses keyset pagination so that each batch is an independent, bounded
    query and no server-side cursor is held open between batches.

    Args:
        session: Database session.
        clause: Filter over ArchivedRecord.
        batch_size: Maximum records per batch.

    Yields:
        Non-empty lists of records.
    """
    last: ArchivedRecord | None = None
    while True:
        stmt = (
            select(ArchivedRecord)
            .where(clause)
            .order_by(ArchivedRecord.archived_at, ArchivedRecord.record_id)
            .limit(batch_size)
        )
        if last is not None:
            stmt = stmt.where(
                or_(
                    ArchivedRecord.archived_at > last.archived_at,
                    and_(
                        ArchivedRecord.archived_at == last.archived_at,
                        ArchivedRecord.record_id > last.record_id,
                    ),
                )
            )

        result = await session.execute(stmt)
        batch = list(result.scalars().all())
        if not batch:
            return
        yield batch
        if len(batch) < batch_size:
            return
        last = batch[-1]


async def load_records(
    session: AsyncSession, record_ids: Sequence[uuid.UUID]
) -> dict[uuid.UUID, ArchivedRecord]:
    """Load records by id; missing ids are absent from the result."""
    records: dict[uuid.UUID, ArchivedRecord] = {}
    for chunk in chunked(record_ids):
        result = await session.execute(
            select(ArchivedRecord).where(ArchivedRecord.record_id.in_(chunk))
        )
        for record in result.scalars().all():
            records[record.record_id] = record
    return records
