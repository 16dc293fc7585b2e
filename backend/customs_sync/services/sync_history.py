"""SyncHistoryService: append-only log of completed sync phases.

Static methods, same as an audit logger: callers pass their own session.
"""

import uuid
from datetime import date

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from customs_sync.models.sync_job import SyncHistoryEntry

LIST_PHASE = "list"
DETAIL_PHASE = "detail"


class SyncHistoryService:

    @staticmethod
    async def record(
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        phase: str,
        date_from: date,
        date_to: date,
        items_count: int,
        errors_count: int = 0,
        summary: str | None = None,
        job_id: uuid.UUID | None = None,
    ) -> SyncHistoryEntry:
        entry = SyncHistoryEntry(
            id=uuid.uuid4(),
            company_id=company_id,
            job_id=job_id,
            phase=phase,
            date_from=date_from,
            date_to=date_to,
            items_count=items_count,
            errors_count=errors_count,
            summary=summary,
        )
        db.add(entry)
        await db.flush()
        return entry

    @staticmethod
    async def list_entries(
        db: AsyncSession, company_id: uuid.UUID, limit: int = 50
    ) -> list[SyncHistoryEntry]:
        result = await db.execute(
            select(SyncHistoryEntry)
            .where(SyncHistoryEntry.company_id == company_id)
            .order_by(SyncHistoryEntry.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def last_successful(db: AsyncSession, company_id: uuid.UUID) -> SyncHistoryEntry | None:
        """Most recent list phase that ran clean or brought in declarations."""
        return (await db.execute(
            select(SyncHistoryEntry)
            .where(
                SyncHistoryEntry.company_id == company_id,
                SyncHistoryEntry.phase == LIST_PHASE,
                or_(SyncHistoryEntry.errors_count == 0, SyncHistoryEntry.items_count > 0),
            )
            .order_by(SyncHistoryEntry.created_at.desc())
            .limit(1)
        )).scalar_one_or_none()
