"""ORM models for persisted customs declarations and their derived summary rows."""

import enum
import uuid
import datetime as dt

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from customs_sync.models.base import Base, TimestampMixin


class DeclarationStatus(str, enum.Enum):
    PROCESSING = "PROCESSING"
    CLEARED = "CLEARED"
    REJECTED = "REJECTED"


class Declaration(TimestampMixin, Base):
    __tablename__ = "declarations"
    __table_args__ = (
        Index("ix_declarations_company_customs_id", "company_id", "customs_id"),
        Index("ix_declarations_company_mrn", "company_id", "mrn"),
        Index("ix_declarations_company_date_detail", "company_id", "date", "has_detail"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False
    )
    customs_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    mrn: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[DeclarationStatus] = mapped_column(
        SAEnum(DeclarationStatus, name="declaration_status",
               values_callable=lambda e: [m.value for m in e]),
        default=DeclarationStatus.PROCESSING,
        nullable=False,
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    sender_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    recipient_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    declarant_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # Legacy bare XML or a JSON envelope, see sync_engine/payload.py
    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_detail: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class DeclarationSummaryRecord(Base):
    """Denormalized per-declaration row used by listings and statistics."""

    __tablename__ = "declaration_summaries"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    declaration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("declarations.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    customs_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    mrn: Mapped[str | None] = mapped_column(String(100), nullable=True)
    declaration_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    transport_names: Mapped[str | None] = mapped_column(Text, nullable=True)
    customs_office: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sender_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    recipient_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    declarant_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    registered_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    has_detail: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    mapped_fields: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
