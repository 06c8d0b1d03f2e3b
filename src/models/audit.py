"""Audit models: the event trail and the per-session transcripts.

Both tables are append-only — no updates or deletes.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, CreatedMixin


class AuditLog(CreatedMixin, Base):
    """Immutable audit trail entry, one per SystemEvent."""

    __tablename__ = "audit_log"

    # Event classification
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Context (all nullable — not every event relates to a session or actor)
    session_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), index=True)
    actor_id: Mapped[str | None] = mapped_column(String(100), comment="Applicant ID, admin ID, or 'system'")
    actor_role: Mapped[str | None] = mapped_column(String(50), comment="applicant, sponsor, admin, system")

    # Event data — flexible JSONB payload
    data: Mapped[dict[str, Any] | None] = mapped_column(JSONB)

    def __repr__(self) -> str:
        return f"<AuditLog event={self.event_type} session={self.session_id}>"


class SessionTranscript(CreatedMixin, Base):
    """The timestamped log of one application session, written once when it ends."""

    __tablename__ = "session_transcripts"

    session_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, unique=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    transcript: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<SessionTranscript session={self.session_id} outcome={self.outcome}>"
