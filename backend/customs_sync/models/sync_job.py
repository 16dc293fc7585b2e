"""ORM models for sync jobs, their per-chunk failures and the sync history log."""

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from customs_sync.models.base import Base, TimestampMixin


class SyncJobStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not SyncJobStatus.PROCESSING


class SyncPhase(str, enum.Enum):
    LISTING = "listing"
    DETAILING = "detailing"
    COMPLETED = "completed"


class SyncJob(TimestampMixin, Base):
    __tablename__ = "sync_jobs"
    __table_args__ = (
        # At most one running job per company
        Index(
            "uq_sync_jobs_company_processing",
            "company_id",
            unique=True,
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[SyncJobStatus] = mapped_column(
        SAEnum(SyncJobStatus, name="sync_job_status",
               values_callable=lambda e: [m.value for m in e]),
        default=SyncJobStatus.PROCESSING,
        nullable=False,
    )
    phase: Mapped[SyncPhase] = mapped_column(
        SAEnum(SyncPhase, name="sync_phase", values_callable=lambda e: [m.value for m in e]),
        default=SyncPhase.LISTING,
        nullable=False,
    )
    date_from: Mapped[date] = mapped_column(Date, nullable=False)
    date_to: Mapped[date] = mapped_column(Date, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_chunks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_chunk_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_detail_targets: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_detail_targets: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Staged runs only
    stage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stage_label: Mapped[str | None] = mapped_column(String(100), nullable=True)
    next_stage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    failures: Mapped[list["SyncJobFailure"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", order_by="SyncJobFailure.chunk_index"
    )


class SyncJobFailure(Base):
    __tablename__ = "sync_job_failures"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_start: Mapped[date] = mapped_column(Date, nullable=False)
    chunk_end: Mapped[date] = mapped_column(Date, nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_code: Mapped[str] = mapped_column(String(50), nullable=False)
    retry_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_retried: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    job: Mapped["SyncJob"] = relationship(back_populates="failures")


class SyncHistoryEntry(Base):
    """Append-only record of one completed sync phase."""

    __tablename__ = "sync_history"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    job_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    items_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    date_from: Mapped[date] = mapped_column(Date, nullable=False)
    date_to: Mapped[date] = mapped_column(Date, nullable=False)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
