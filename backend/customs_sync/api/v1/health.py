from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from customs_sync.config import APP_VERSION, settings
from customs_sync.dependencies import get_db
from customs_sync.models.declaration import Declaration
from customs_sync.models.sync_job import SyncJob, SyncJobStatus
from customs_sync.schemas.health import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        db_status = "unhealthy"

    redis_status = "healthy"
    try:
        import redis.asyncio as aioredis

        r = aioredis.from_url(settings.redis_url)
        await r.ping()
        await r.aclose()
    except Exception:
        redis_status = "unhealthy"

    overall = "healthy" if db_status == "healthy" and redis_status == "healthy" else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        timestamp=datetime.now(timezone.utc),
        environment=settings.environment,
        version=APP_VERSION,
    )


@router.get("/metrics")
async def get_metrics(db: AsyncSession = Depends(get_db)) -> dict:
    """Sync job and declaration counters."""
    jobs_by_status = dict((await db.execute(
        select(SyncJob.status, func.count(SyncJob.id)).group_by(SyncJob.status)
    )).all())
    total_declarations = (await db.execute(select(func.count(Declaration.id)))).scalar() or 0
    with_detail = (await db.execute(
        select(func.count(Declaration.id)).where(Declaration.has_detail.is_(True))
    )).scalar() or 0

    return {
        "sync_jobs": {status.value: jobs_by_status.get(status, 0) for status in SyncJobStatus},
        "declarations": {
            "total": total_declarations,
            "with_detail": with_detail,
            "detail_coverage": round(with_detail / max(total_declarations, 1), 3),
        },
    }
