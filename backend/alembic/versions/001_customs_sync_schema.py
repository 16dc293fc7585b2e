"""Companies, declarations, summaries, sync jobs, failures and history

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("edrpou", sa.String(20), nullable=True),
        sa.Column("customs_token", sa.Text, nullable=True),
        sa.Column("sync_settings", sa.JSON, nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "declarations",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "company_id", UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("customs_id", sa.String(100), nullable=True),
        sa.Column("mrn", sa.String(100), nullable=True),
        sa.Column(
            "status",
            sa.Enum("PROCESSING", "CLEARED", "REJECTED", name="declaration_status"),
            nullable=False,
            server_default="PROCESSING",
        ),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("sender_name", sa.String(500), nullable=True),
        sa.Column("recipient_name", sa.String(500), nullable=True),
        sa.Column("declarant_name", sa.String(500), nullable=True),
        sa.Column("raw_payload", sa.Text, nullable=True),
        sa.Column("has_detail", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_declarations_company_customs_id", "declarations", ["company_id", "customs_id"])
    op.create_index("ix_declarations_company_mrn", "declarations", ["company_id", "mrn"])
    op.create_index(
        "ix_declarations_company_date_detail", "declarations", ["company_id", "date", "has_detail"]
    )

    op.create_table(
        "declaration_summaries",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "declaration_id", UUID(as_uuid=True),
            sa.ForeignKey("declarations.id", ondelete="CASCADE"), nullable=False, unique=True,
        ),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("customs_id", sa.String(100), nullable=True),
        sa.Column("mrn", sa.String(100), nullable=True),
        sa.Column("declaration_type", sa.String(100), nullable=True),
        sa.Column("transport_names", sa.Text, nullable=True),
        sa.Column("customs_office", sa.String(100), nullable=True),
        sa.Column("sender_name", sa.String(500), nullable=True),
        sa.Column("recipient_name", sa.String(500), nullable=True),
        sa.Column("declarant_name", sa.String(500), nullable=True),
        sa.Column("registered_at", sa.DateTime, nullable=True),
        sa.Column("has_detail", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("mapped_fields", sa.JSON, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "sync_jobs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "company_id", UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True,
        ),
        sa.Column(
            "status",
            sa.Enum("processing", "completed", "cancelled", "error", name="sync_job_status"),
            nullable=False,
            server_default="processing",
        ),
        sa.Column(
            "phase",
            sa.Enum("listing", "detailing", "completed", name="sync_phase"),
            nullable=False,
            server_default="listing",
        ),
        sa.Column("date_from", sa.Date, nullable=False),
        sa.Column("date_to", sa.Date, nullable=False),
        sa.Column("total_chunks", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completed_chunks", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_chunk_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_detail_targets", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completed_detail_targets", sa.Integer, nullable=False, server_default="0"),
        sa.Column("stage", sa.Integer, nullable=True),
        sa.Column("stage_label", sa.String(100), nullable=True),
        sa.Column("next_stage", sa.Integer, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    # One running job per company
    op.create_index(
        "uq_sync_jobs_company_processing",
        "sync_jobs",
        ["company_id"],
        unique=True,
        postgresql_where=sa.text("status = 'processing'"),
    )

    op.create_table(
        "sync_job_failures",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "job_id", UUID(as_uuid=True),
            sa.ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False, index=True,
        ),
        sa.Column("chunk_index", sa.Integer, nullable=False),
        sa.Column("chunk_start", sa.Date, nullable=False),
        sa.Column("chunk_end", sa.Date, nullable=False),
        sa.Column("error_message", sa.Text, nullable=False),
        sa.Column("error_code", sa.String(50), nullable=False),
        sa.Column("retry_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_retried", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "sync_history",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "company_id", UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True,
        ),
        sa.Column("job_id", UUID(as_uuid=True), nullable=True),
        sa.Column("phase", sa.String(20), nullable=False),
        sa.Column("items_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("errors_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("date_from", sa.Date, nullable=False),
        sa.Column("date_to", sa.Date, nullable=False),
        sa.Column("summary", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("sync_history")
    op.drop_table("sync_job_failures")
    op.drop_index("uq_sync_jobs_company_processing", table_name="sync_jobs")
    op.drop_table("sync_jobs")
    op.drop_table("declaration_summaries")
    op.drop_index("ix_declarations_company_date_detail", table_name="declarations")
    op.drop_index("ix_declarations_company_mrn", table_name="declarations")
    op.drop_index("ix_declarations_company_customs_id", table_name="declarations")
    op.drop_table("declarations")
    op.drop_table("companies")
    op.execute("DROP TYPE IF EXISTS sync_phase")
    op.execute("DROP TYPE IF EXISTS sync_job_status")
    op.execute("DROP TYPE IF EXISTS declaration_status")
