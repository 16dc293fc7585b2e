from customs_sync.models.base import Base, TimestampMixin
from customs_sync.models.company import Company, MemberRole, ROLE_HIERARCHY, role_at_least
from customs_sync.models.declaration import (
    Declaration,
    DeclarationStatus,
    DeclarationSummaryRecord,
)
from customs_sync.models.sync_job import (
    SyncHistoryEntry,
    SyncJob,
    SyncJobFailure,
    SyncJobStatus,
    SyncPhase,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "Company",
    "MemberRole",
    "ROLE_HIERARCHY",
    "role_at_least",
    "Declaration",
    "DeclarationStatus",
    "DeclarationSummaryRecord",
    "SyncJob",
    "SyncJobFailure",
    "SyncJobStatus",
    "SyncPhase",
    "SyncHistoryEntry",
]
