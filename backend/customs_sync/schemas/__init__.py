from customs_sync.schemas.declaration import DeclarationListItem, MissingDetailsResponse
from customs_sync.schemas.health import HealthResponse
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

__all__ = [
    "DeclarationListItem",
    "MissingDetailsResponse",
    "HealthResponse",
    "IncrementalSyncResponse",
    "PeriodSyncRequest",
    "StagedSyncRequest",
    "SyncHistoryEntryResponse",
    "SyncJobFailureResponse",
    "SyncJobStartedResponse",
    "SyncJobStatusResponse",
    "SyncSettingsPayload",
    "SyncSettingsResponse",
]
