"""SQLAlchemy ORM models for the entry review bot.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from src.models.audit import AuditLog, SessionTranscript
from src.models.base import Base
from src.models.denylist import DenyListEntry
from src.models.enums import (
    DenyCategory,
    DenyStatus,
    Edition,
    SessionOutcome,
    SessionState,
)

__all__ = [
    "AuditLog",
    "Base",
    "DenyCategory",
    "DenyListEntry",
    "DenyStatus",
    "Edition",
    "SessionOutcome",
    "SessionState",
    "SessionTranscript",
]
