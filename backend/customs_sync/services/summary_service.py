"""Keeps the denormalized ``declaration_summaries`` row in step with its declaration."""

import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from customs_sync.customs_gateway.list_parser import DeclarationSummary, parse_registered_at
from customs_sync.models.declaration import Declaration, DeclarationSummaryRecord
from customs_sync.sync_engine.payload import StoredPayload, decode_payload

logger = logging.getLogger("customs.summary")

_DETAIL_REGISTERED_RE = re.compile(r"<ccd_registered>\s*([^<]+?)\s*</ccd_registered>", re.IGNORECASE)

# Maps a full detail document to domain fields; None when it cannot be mapped
DetailMapper = Callable[[str], dict[str, Any] | None]


class DeclarationSummaryService:
    def __init__(self, detail_mapper: DetailMapper | None = None):
        self.detail_mapper = detail_mapper

    async def refresh(
        self,
        db: AsyncSession,
        declaration: Declaration,
        payload: StoredPayload | None = None,
    ) -> DeclarationSummaryRecord:
        """Rebuild the summary row from the declaration and its stored payload."""
        if payload is None:
            payload = decode_payload(declaration.raw_payload)

        summary = DeclarationSummary.from_item(payload.list_data) if payload.list_data else None
        registered_at = parse_registered_at(summary.registered) if summary else None
        if registered_at is None and payload.detail_data:
            match = _DETAIL_REGISTERED_RE.search(payload.detail_data)
            registered_at = parse_registered_at(match.group(1)) if match else None

        mapped = None
        if payload.detail_data and self.detail_mapper is not None:
            try:
                mapped = self.detail_mapper(payload.detail_data)
            except Exception as e:
                logger.warning("Detail mapper failed for declaration %s: %s", declaration.id, e)

        record = (await db.execute(
            select(DeclarationSummaryRecord).where(
                DeclarationSummaryRecord.declaration_id == declaration.id
            )
        )).scalar_one_or_none()
        if record is None:
            record = DeclarationSummaryRecord(
                declaration_id=declaration.id, company_id=declaration.company_id
            )
            db.add(record)

        record.customs_id = declaration.customs_id
        record.mrn = declaration.mrn
        record.sender_name = declaration.sender_name
        record.recipient_name = declaration.recipient_name
        record.declarant_name = declaration.declarant_name
        record.registered_at = registered_at
        record.has_detail = payload.detail_data is not None
        if summary is not None:
            record.declaration_type = summary.declaration_type
            record.transport_names = summary.transport_names
            record.customs_office = summary.customs_office
        if mapped is not None:
            record.mapped_fields = mapped
        record.updated_at = datetime.now(timezone.utc)
        await db.flush()
        return record
