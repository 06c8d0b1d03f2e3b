"""DenyListEntry model — nationalities and identity handles refused entry.

Entries are invalidated, never deleted, so the history of who was listed
and when stays queryable.
"""

from __future__ import annotations

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, TimestampMixin


class DenyListEntry(TimestampMixin, Base):
    """One deny-list row; ``value`` is stored case-folded."""

    __tablename__ = "deny_list"
    __table_args__ = (UniqueConstraint("category", "value", name="uq_deny_list_category_value"),)

    category: Mapped[str] = mapped_column(String(20), nullable=False, index=True, comment="nationality or identity")
    value: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", comment="active or invalid")
    reason: Mapped[str | None] = mapped_column(String(500))
    added_by: Mapped[str | None] = mapped_column(String(100), comment="Admin Telegram ID")

    def __repr__(self) -> str:
        return f"<DenyListEntry {self.category}={self.value} status={self.status}>"
