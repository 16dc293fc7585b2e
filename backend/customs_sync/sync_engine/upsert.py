"""Merging list-phase and detail-phase results into persisted declarations."""

import logging
import uuid
from datetime import date

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from customs_sync.customs_gateway.list_parser import DeclarationSummary, parse_registered_at
from customs_sync.models.declaration import Declaration, DeclarationStatus
from customs_sync.services.summary_service import DeclarationSummaryService
from customs_sync.sync_engine.payload import (
    decode_payload,
    encode_payload,
    with_detail_data,
    with_list_data,
)

logger = logging.getLogger("customs.upsert")

_CLEARED_CODES = {"R", "10", "11"}
_REJECTED_CODES = {"N", "F", "90"}


def derive_status(code: str | None) -> DeclarationStatus:
    code = (code or "").strip()
    if code in _CLEARED_CODES:
        return DeclarationStatus.CLEARED
    if code in _REJECTED_CODES:
        return DeclarationStatus.REJECTED
    return DeclarationStatus.PROCESSING


def parse_registration_date(raw: str | None) -> date | None:
    registered = parse_registered_at(raw)
    return registered.date() if registered else None


async def find_declaration(
    db: AsyncSession, company_id: uuid.UUID, guid: str | None, mrn: str | None
) -> Declaration | None:
    conditions = []
    if guid:
        conditions.append(Declaration.customs_id == guid)
    if mrn:
        conditions.append(Declaration.mrn == mrn)
    if not conditions:
        return None
    return (await db.execute(
        select(Declaration)
        .where(Declaration.company_id == company_id, or_(*conditions))
        .order_by(Declaration.created_at)
        .limit(1)
    )).scalar_one_or_none()


async def upsert_declaration(
    db: AsyncSession,
    company_id: uuid.UUID,
    summary: DeclarationSummary,
    summaries: DeclarationSummaryService,
) -> Declaration | None:
    """Create or update the declaration for one list item.

    A record that already holds detail data only gets its status, date and
    names refreshed; the stored payload is left as is.
    """
    if not summary.guid and not summary.mrn:
        logger.warning("Skipping list item without guid and MRN: %s", summary.raw)
        return None

    status = derive_status(summary.status_code)
    registered_on = parse_registration_date(summary.registered)
    declaration = await find_declaration(db, company_id, summary.guid, summary.mrn)

    if declaration is None:
        payload = with_list_data(decode_payload(None), summary.raw)
        declaration = Declaration(
            id=uuid.uuid4(),
            company_id=company_id,
            customs_id=summary.guid,
            mrn=summary.mrn,
            status=status,
            date=registered_on or date.today(),
            sender_name=summary.sender_name,
            recipient_name=summary.recipient_name,
            declarant_name=summary.declarant_name,
            raw_payload=encode_payload(payload),
            has_detail=False,
        )
        db.add(declaration)
        await db.flush()
        await summaries.refresh(db, declaration, payload)
        return declaration

    declaration.status = status
    declaration.date = registered_on or declaration.date
    declaration.sender_name = summary.sender_name or declaration.sender_name
    declaration.recipient_name = summary.recipient_name or declaration.recipient_name
    declaration.declarant_name = summary.declarant_name or declaration.declarant_name
    if not declaration.customs_id and summary.guid:
        declaration.customs_id = summary.guid
    if not declaration.mrn and summary.mrn:
        declaration.mrn = summary.mrn

    payload = decode_payload(declaration.raw_payload)
    if payload.detail_data is None:
        payload = with_list_data(payload, summary.raw)
        declaration.raw_payload = encode_payload(payload)
    await db.flush()
    await summaries.refresh(db, declaration, payload)
    return declaration


async def merge_detail(
    db: AsyncSession,
    declaration: Declaration,
    detail_xml: str,
    summaries: DeclarationSummaryService,
    force: bool = False,
) -> bool:
    """Attach a detail document, keeping the list-phase data.

    Existing detail data is only replaced when ``force`` is set.
    """
    payload = decode_payload(declaration.raw_payload)
    if payload.detail_data is not None and not force:
        return False

    payload = with_detail_data(payload, detail_xml)
    declaration.raw_payload = encode_payload(payload)
    declaration.has_detail = True
    await db.flush()
    await summaries.refresh(db, declaration, payload)
    return True
