"""ORM model for companies (the sync scope) and member roles."""

import enum
import uuid

from sqlalchemy import JSON, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from customs_sync.models.base import Base, TimestampMixin


class MemberRole(str, enum.Enum):
    OWNER = "OWNER"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"


ROLE_HIERARCHY = {
    MemberRole.OWNER: 3,
    MemberRole.MEMBER: 2,
    MemberRole.VIEWER: 1,
}


def role_at_least(role: MemberRole, required: MemberRole) -> bool:
    return ROLE_HIERARCHY[role] >= ROLE_HIERARCHY[required]


class Company(TimestampMixin, Base):
    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    edrpou: Mapped[str | None] = mapped_column(String(20), nullable=True)
    # Fernet ciphertext, see services/credentials.py
    customs_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_settings: Mapped[dict | None] = mapped_column(JSON, nullable=True)
