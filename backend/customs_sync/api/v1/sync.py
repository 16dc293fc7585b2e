"""Sync job endpoints: start, observe, cancel, history and per-company settings."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from customs_sync.config import settings
from customs_sync.dependencies import get_company_access, get_db, get_sync_controller
from customs_sync.models.company import Company, MemberRole, role_at_least
from customs_sync.models.sync_job import SyncJob
from customs_sync.schemas.sync import (
    IncrementalSyncResponse,
    PeriodSyncRequest,
    StagedSyncRequest,
    SyncHistoryEntryResponse,
    SyncJobFailureResponse,
    SyncJobStartedResponse,
    SyncJobStatusResponse,
    SyncSettingsPayload,
    SyncSettingsResponse,
)
from customs_sync.services.sync_history import SyncHistoryService
from customs_sync.sync_engine.chunks import resolve_chunk_days, resolve_detail_pacing_seconds
from customs_sync.sync_engine.controller import CompanyAccess, JobStatusView, SyncJobController
from customs_sync.sync_engine.errors import (
    DeclarationNotFoundError,
    SyncAlreadyRunningError,
    SyncAuthorizationError,
    SyncError,
    SyncJobNotFoundError,
)
from customs_sync.sync_engine.stage_marker import next_stage_after

router = APIRouter()


def _http_error(e: SyncError) -> HTTPException:
    if isinstance(e, SyncAuthorizationError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, (SyncJobNotFoundError, DeclarationNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SyncAlreadyRunningError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _started(job: SyncJob) -> SyncJobStartedResponse:
    return SyncJobStartedResponse(
        job_id=job.id,
        status=job.status.value,
        total_chunks=job.total_chunks,
        date_from=job.date_from,
        date_to=job.date_to,
        stage=job.stage,
        stage_label=job.stage_label,
        next_stage=next_stage_after(job.stage) if job.stage else None,
    )


def _status(view: JobStatusView) -> SyncJobStatusResponse:
    job = view.job
    return SyncJobStatusResponse(
        job_id=job.id,
        status=job.status.value,
        phase=job.phase.value,
        date_from=job.date_from,
        date_to=job.date_to,
        total_chunks=job.total_chunks,
        completed_chunks=job.completed_chunks,
        total_detail_targets=job.total_detail_targets,
        completed_detail_targets=job.completed_detail_targets,
        failed_chunk_count=job.failed_chunk_count,
        stage=job.stage,
        stage_label=job.stage_label,
        next_stage=job.next_stage,
        status_note=view.status_note,
        error_message=job.error_message,
        hint=view.hint,
        failures=[SyncJobFailureResponse.model_validate(f) for f in view.failures],
        created_at=job.created_at,
        finished_at=job.finished_at,
    )


@router.post("/period", response_model=SyncJobStartedResponse, status_code=202)
async def start_period_sync(
    request: PeriodSyncRequest,
    access: CompanyAccess = Depends(get_company_access),
    controller: SyncJobController = Depends(get_sync_controller),
) -> SyncJobStartedResponse:
    """Sync an explicit period of at most 45 days."""
    try:
        job = await controller.start_period_sync(access, request.date_from, request.date_to)
    except SyncError as e:
        raise _http_error(e)
    return _started(job)


@router.post("/staged", response_model=SyncJobStartedResponse, status_code=202)
async def start_staged_sync(
    request: StagedSyncRequest,
    access: CompanyAccess = Depends(get_company_access),
    controller: SyncJobController = Depends(get_sync_controller),
) -> SyncJobStartedResponse:
    """Sync one of the fixed look-back windows (stage 1 = last week ... 5 = full period)."""
    try:
        job = await controller.start_staged_sync(access, request.stage)
    except SyncError as e:
        raise _http_error(e)
    return _started(job)


@router.post("/incremental", response_model=IncrementalSyncResponse)
async def start_incremental_sync(
    access: CompanyAccess = Depends(get_company_access),
    controller: SyncJobController = Depends(get_sync_controller),
) -> IncrementalSyncResponse:
    try:
        result = await controller.start_incremental_sync(access)
    except SyncError as e:
        raise _http_error(e)
    return IncrementalSyncResponse(
        message=result.message,
        job=_started(result.job) if result.job else None,
    )


@router.get("/jobs/active", response_model=SyncJobStatusResponse)
async def get_active_job(
    access: CompanyAccess = Depends(get_company_access),
    controller: SyncJobController = Depends(get_sync_controller),
) -> SyncJobStatusResponse:
    """The running job, or the most recent one when nothing is running."""
    try:
        view = await controller.get_job_status(access.company_id)
    except SyncError as e:
        raise _http_error(e)
    return _status(view)


@router.post("/jobs/active/cancel", response_model=SyncJobStatusResponse)
async def cancel_active_job(
    access: CompanyAccess = Depends(get_company_access),
    controller: SyncJobController = Depends(get_sync_controller),
) -> SyncJobStatusResponse:
    try:
        job = await controller.cancel_active_job(access)
        view = await controller.get_job_status(access.company_id, job.id)
    except SyncError as e:
        raise _http_error(e)
    return _status(view)


@router.get("/jobs/{job_id}", response_model=SyncJobStatusResponse)
async def get_job(
    job_id: uuid.UUID,
    access: CompanyAccess = Depends(get_company_access),
    controller: SyncJobController = Depends(get_sync_controller),
) -> SyncJobStatusResponse:
    try:
        view = await controller.get_job_status(access.company_id, job_id)
    except SyncError as e:
        raise _http_error(e)
    return _status(view)


@router.get("/history", response_model=list[SyncHistoryEntryResponse])
async def get_history(
    limit: int = 50,
    access: CompanyAccess = Depends(get_company_access),
    db: AsyncSession = Depends(get_db),
) -> list[SyncHistoryEntryResponse]:
    entries = await SyncHistoryService.list_entries(db, access.company_id, min(max(limit, 1), 200))
    return [SyncHistoryEntryResponse.model_validate(e) for e in entries]


def _settings_response(overrides: dict | None) -> SyncSettingsResponse:
    return SyncSettingsResponse(
        chunk_days=resolve_chunk_days(settings, overrides),
        request_delay_seconds=resolve_detail_pacing_seconds(settings, overrides),
        overrides=overrides or {},
    )


@router.get("/settings", response_model=SyncSettingsResponse)
async def get_sync_settings(
    access: CompanyAccess = Depends(get_company_access),
) -> SyncSettingsResponse:
    return _settings_response(access.sync_settings)


@router.put("/settings", response_model=SyncSettingsResponse)
async def update_sync_settings(
    payload: SyncSettingsPayload,
    access: CompanyAccess = Depends(get_company_access),
    db: AsyncSession = Depends(get_db),
) -> SyncSettingsResponse:
    """Owner-only: per-company chunk size and detail pacing."""
    if not role_at_least(access.role, MemberRole.OWNER):
        raise HTTPException(status_code=403, detail="Only company owners can change sync settings")

    company = await db.get(Company, access.company_id)
    overrides = dict(company.sync_settings or {})
    overrides.update(payload.model_dump(exclude_unset=True))
    company.sync_settings = {k: v for k, v in overrides.items() if v is not None}
    await db.flush()
    return _settings_response(company.sync_settings)
