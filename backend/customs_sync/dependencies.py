import uuid

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from customs_sync.config import settings
from customs_sync.database import get_db, get_session_factory
from customs_sync.models.company import Company, MemberRole
from customs_sync.services.statistics_cache import StatisticsCache
from customs_sync.sync_engine.controller import CompanyAccess, SyncJobController

# Re-export get_db for use in Depends()
get_db = get_db


def get_statistics_cache() -> StatisticsCache:
    return StatisticsCache(settings.redis_url, settings.statistics_cache_prefix)


def get_sync_controller(request: Request) -> SyncJobController:
    return SyncJobController(
        settings,
        get_session_factory(),
        request.app.state.supervisor,
        statistics=get_statistics_cache(),
    )


async def get_company_access(
    x_company_id: uuid.UUID = Header(...),
    x_member_role: MemberRole = Header(...),
    db: AsyncSession = Depends(get_db),
) -> CompanyAccess:
    """Company scope and role forwarded by the authenticating gateway."""
    company = await db.get(Company, x_company_id)
    if company is None:
        raise HTTPException(status_code=404, detail="Company not found")
    return CompanyAccess.from_company(company, x_member_role)
