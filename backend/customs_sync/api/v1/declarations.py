"""Declaration endpoints: backfill worklist and explicit detail refetch."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from customs_sync.customs_gateway.client import GatewayError
from customs_sync.dependencies import get_company_access, get_db, get_sync_controller
from customs_sync.models.declaration import Declaration
from customs_sync.schemas.declaration import DeclarationListItem, MissingDetailsResponse
from customs_sync.sync_engine.controller import CompanyAccess, SyncJobController
from customs_sync.sync_engine.errors import (
    DeclarationNotFoundError,
    SyncAuthorizationError,
    SyncError,
)

router = APIRouter()

MISSING_DETAILS_LIMIT = 500

# Everything except the stored payload
_LIST_COLUMNS = (
    Declaration.id,
    Declaration.customs_id,
    Declaration.mrn,
    Declaration.status,
    Declaration.date,
    Declaration.sender_name,
    Declaration.recipient_name,
    Declaration.declarant_name,
    Declaration.has_detail,
    Declaration.updated_at,
)


@router.get("/missing-details", response_model=MissingDetailsResponse)
async def list_missing_details(
    access: CompanyAccess = Depends(get_company_access),
    db: AsyncSession = Depends(get_db),
) -> MissingDetailsResponse:
    """Declarations that still have only list data (newest first, capped at 500)."""
    conditions = (
        Declaration.company_id == access.company_id,
        Declaration.has_detail.is_(False),
    )
    total = (await db.execute(select(func.count(Declaration.id)).where(*conditions))).scalar_one()
    rows = (await db.execute(
        select(*_LIST_COLUMNS)
        .where(*conditions)
        .order_by(Declaration.date.desc())
        .limit(MISSING_DETAILS_LIMIT)
    )).mappings().all()
    return MissingDetailsResponse(
        declarations=[DeclarationListItem.model_validate(dict(row)) for row in rows],
        total=total,
        limit=MISSING_DETAILS_LIMIT,
    )


@router.post("/{guid}/details", response_model=DeclarationListItem)
async def refetch_details(
    guid: str,
    access: CompanyAccess = Depends(get_company_access),
    controller: SyncJobController = Depends(get_sync_controller),
) -> DeclarationListItem:
    """Fetch the detail document again and overwrite the stored one."""
    try:
        declaration = await controller.refetch_detail(access, guid)
    except SyncAuthorizationError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except DeclarationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=f"Customs API error ({e.code}): {e.message}")
    return DeclarationListItem.model_validate(declaration)
