"""Pydantic schemas for sync job endpoints."""

import uuid
from datetime import date, datetime

from pydantic import BaseModel, Field


class PeriodSyncRequest(BaseModel):
    date_from: date
    date_to: date


class StagedSyncRequest(BaseModel):
    stage: int = Field(default=1, ge=1, le=5)


class SyncJobStartedResponse(BaseModel):
    job_id: uuid.UUID
    status: str
    total_chunks: int
    date_from: date
    date_to: date
    stage: int | None = None
    stage_label: str | None = None
    next_stage: int | None = None


class IncrementalSyncResponse(BaseModel):
    message: str
    job: SyncJobStartedResponse | None = None


class SyncJobFailureResponse(BaseModel):
    chunk_index: int
    chunk_start: date
    chunk_end: date
    error_message: str
    error_code: str
    retry_attempts: int
    is_retried: bool

    model_config = {"from_attributes": True}


class SyncJobStatusResponse(BaseModel):
    job_id: uuid.UUID
    status: str
    phase: str
    date_from: date
    date_to: date
    total_chunks: int
    completed_chunks: int
    total_detail_targets: int
    completed_detail_targets: int
    failed_chunk_count: int
    stage: int | None = None
    stage_label: str | None = None
    next_stage: int | None = None
    status_note: str | None = None
    error_message: str | None = None
    hint: str | None = None
    failures: list[SyncJobFailureResponse] = Field(default_factory=list)
    created_at: datetime | None = None
    finished_at: datetime | None = None


class SyncHistoryEntryResponse(BaseModel):
    id: uuid.UUID
    job_id: uuid.UUID | None = None
    phase: str
    items_count: int
    errors_count: int
    date_from: date
    date_to: date
    summary: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class SyncSettingsPayload(BaseModel):
    chunk_days: int | None = Field(default=None, ge=1, le=45)
    request_delay_seconds: int | None = Field(default=None, ge=1, le=10)


class SyncSettingsResponse(BaseModel):
    chunk_days: int
    request_delay_seconds: float
    overrides: dict = Field(default_factory=dict)
