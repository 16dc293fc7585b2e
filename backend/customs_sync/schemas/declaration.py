"""Pydantic schemas for declaration endpoints."""

import datetime as dt
import uuid

from pydantic import BaseModel


class DeclarationListItem(BaseModel):
    id: uuid.UUID
    customs_id: str | None = None
    mrn: str | None = None
    status: str
    date: dt.date
    sender_name: str | None = None
    recipient_name: str | None = None
    declarant_name: str | None = None
    has_detail: bool
    updated_at: dt.datetime | None = None

    model_config = {"from_attributes": True}


class MissingDetailsResponse(BaseModel):
    declarations: list[DeclarationListItem]
    total: int
    limit: int
