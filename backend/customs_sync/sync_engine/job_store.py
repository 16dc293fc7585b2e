"""Read-modify-write steps on the SyncJob row.

Every helper works inside the caller's session; the caller commits. Updates
that change ``status`` are conditional on the job still processing, so a
terminal job is never resurrected.
"""

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from customs_sync.models.declaration import Declaration
from customs_sync.models.sync_job import SyncJob, SyncJobFailure, SyncJobStatus
from customs_sync.sync_engine.chunks import Chunk

ERROR_MESSAGE_LIMIT = 500
FAILURE_MESSAGE_LIMIT = 2000


async def get_job_status(db: AsyncSession, job_id: uuid.UUID) -> SyncJobStatus | None:
    return (await db.execute(
        select(SyncJob.status).where(SyncJob.id == job_id)
    )).scalar_one_or_none()


async def find_active_job(db: AsyncSession, company_id: uuid.UUID) -> SyncJob | None:
    return (await db.execute(
        select(SyncJob).where(
            SyncJob.company_id == company_id,
            SyncJob.status == SyncJobStatus.PROCESSING,
        ).limit(1)
    )).scalar_one_or_none()


async def find_latest_job(db: AsyncSession, company_id: uuid.UUID) -> SyncJob | None:
    active = await find_active_job(db, company_id)
    if active is not None:
        return active
    return (await db.execute(
        select(SyncJob)
        .where(SyncJob.company_id == company_id)
        .order_by(SyncJob.created_at.desc())
        .limit(1)
    )).scalar_one_or_none()


async def advance_chunk_progress(db: AsyncSession, job_id: uuid.UUID, failed: bool) -> None:
    values = {"completed_chunks": SyncJob.completed_chunks + 1}
    if failed:
        values["failed_chunk_count"] = SyncJob.failed_chunk_count + 1
    await db.execute(update(SyncJob).where(SyncJob.id == job_id).values(**values))


async def record_chunk_failure(
    db: AsyncSession,
    job_id: uuid.UUID,
    chunk: Chunk,
    message: str,
    code: str,
    retry_attempts: int,
    is_retried: bool,
) -> SyncJobFailure:
    failure = SyncJobFailure(
        id=uuid.uuid4(),
        job_id=job_id,
        chunk_index=chunk.index,
        chunk_start=chunk.start,
        chunk_end=chunk.end,
        error_message=(message or "Unknown error")[:FAILURE_MESSAGE_LIMIT],
        error_code=code,
        retry_attempts=retry_attempts,
        is_retried=is_retried,
    )
    db.add(failure)
    await advance_chunk_progress(db, job_id, failed=True)
    return failure


async def set_detail_progress(db: AsyncSession, job_id: uuid.UUID, completed: int) -> None:
    await db.execute(
        update(SyncJob).where(SyncJob.id == job_id).values(completed_detail_targets=completed)
    )


async def count_detail_targets(
    db: AsyncSession, company_id: uuid.UUID, date_from: date, date_to: date
) -> int:
    """Distinct guids in the range still lacking detail; a progress estimate."""
    return (await db.execute(
        select(func.count(func.distinct(Declaration.customs_id))).where(
            Declaration.company_id == company_id,
            Declaration.has_detail.is_(False),
            Declaration.customs_id.is_not(None),
            Declaration.date >= date_from,
            Declaration.date <= date_to,
        )
    )).scalar() or 0


async def finish_job(db: AsyncSession, job_id: uuid.UUID, status: SyncJobStatus, **values) -> bool:
    """Move a processing job to a terminal status; False if it already left processing."""
    result = await db.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.status == SyncJobStatus.PROCESSING)
        .values(status=status, finished_at=datetime.now(timezone.utc), **values)
    )
    return result.rowcount > 0


async def mark_job_error(db: AsyncSession, job_id: uuid.UUID, message: str) -> bool:
    return await finish_job(
        db, job_id, SyncJobStatus.ERROR,
        error_message=(message or "Sync job failed")[:ERROR_MESSAGE_LIMIT],
    )


async def fail_interrupted_jobs(db: AsyncSession, message: str = "Sync job interrupted by restart") -> int:
    """Mark every job still processing as ``error``; run once at startup, before any job is spawned."""
    result = await db.execute(
        update(SyncJob)
        .where(SyncJob.status == SyncJobStatus.PROCESSING)
        .values(
            status=SyncJobStatus.ERROR,
            error_message=message[:ERROR_MESSAGE_LIMIT],
            finished_at=datetime.now(timezone.utc),
        )
    )
    return result.rowcount
