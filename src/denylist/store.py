"""Deny-list store — nationalities and identity handles that are refused entry.

Backed by the ``deny_list`` table. Reads go through an in-memory snapshot
that is loaded lazily on first use, reloaded after every write and whenever
it is older than the refresh interval. Values are compared case-folded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.admin.events import emit
from src.errors import ExternalServiceError
from src.models.denylist import DenyListEntry
from src.models.enums import DenyCategory, DenyStatus
from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

_DEFAULT_REFRESH_SECONDS = 300


class DenyChange(str, Enum):
    """Result of an add/remove command."""

    ADDED = "added"
    DUPLICATE = "duplicate"
    REACTIVATED = "reactivated"
    INVALIDATED = "invalidated"
    NOT_FOUND = "not_found"


def normalize_value(value: str) -> str:
    return value.strip().casefold()


class DenyListStore:
    """DenyList collaborator: ``is_listed(category, value)`` plus admin writes."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | None = None,
        refresh_interval: float = _DEFAULT_REFRESH_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._refresh_interval = refresh_interval
        self._snapshot: dict[DenyCategory, frozenset[str]] | None = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    def _factory(self) -> Callable[[], AsyncSession]:
        if self._session_factory is None:
            from src.db.engine import async_session_factory

            self._session_factory = async_session_factory
        return self._session_factory

    # ── Reads ─────────────────────────────────────────────────────────

    async def is_listed(self, category: DenyCategory, value: str | None) -> bool:
        if not value or not value.strip():
            return False
        snapshot = await self._current_snapshot()
        return normalize_value(value) in snapshot.get(category, frozenset())

    async def list_active(self, category: DenyCategory | None = None) -> list[DenyListEntry]:
        stmt = select(DenyListEntry).where(DenyListEntry.status == DenyStatus.ACTIVE.value)
        if category is not None:
            stmt = stmt.where(DenyListEntry.category == category.value)
        stmt = stmt.order_by(DenyListEntry.category, DenyListEntry.value)
        async with self._factory()() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def _current_snapshot(self) -> dict[DenyCategory, frozenset[str]]:
        stale = time.monotonic() - self._loaded_at > self._refresh_interval
        if self._snapshot is not None and not stale:
            return self._snapshot

        async with self._lock:
            if self._snapshot is not None and time.monotonic() - self._loaded_at <= self._refresh_interval:
                return self._snapshot
            try:
                await self.reload()
            except Exception as exc:
                if self._snapshot is None:
                    raise ExternalServiceError("Deny-list could not be loaded") from exc
                logger.exception("Deny-list refresh failed, keeping the previous snapshot")
        return self._snapshot

    async def reload(self) -> None:
        rows = await self._fetch_active()
        snapshot: dict[DenyCategory, set[str]] = {c: set() for c in DenyCategory}
        for category, value in rows:
            try:
                snapshot[DenyCategory(category)].add(normalize_value(value))
            except ValueError:
                logger.warning("Ignoring deny-list row with unknown category %r", category)
        self._snapshot = {c: frozenset(v) for c, v in snapshot.items()}
        self._loaded_at = time.monotonic()
        logger.info(
            "Deny-list loaded: %d nationalities, %d identities",
            len(self._snapshot[DenyCategory.NATIONALITY]),
            len(self._snapshot[DenyCategory.IDENTITY]),
        )

    async def _fetch_active(self) -> list[tuple[str, str]]:
        stmt = select(DenyListEntry.category, DenyListEntry.value).where(
            DenyListEntry.status == DenyStatus.ACTIVE.value,
        )
        async with self._factory()() as db:
            result = await db.execute(stmt)
            return [(row[0], row[1]) for row in result.all()]

    # ── Writes ────────────────────────────────────────────────────────

    async def add(
        self,
        category: DenyCategory,
        value: str,
        reason: str | None = None,
        added_by: str | None = None,
    ) -> DenyChange:
        normalized = normalize_value(value)
        async with self._factory()() as db:
            entry = await self._find(db, category, normalized)
            if entry is None:
                db.add(DenyListEntry(
                    category=category.value,
                    value=normalized,
                    status=DenyStatus.ACTIVE.value,
                    reason=reason,
                    added_by=added_by,
                ))
                change = DenyChange.ADDED
            elif entry.status == DenyStatus.ACTIVE.value:
                change = DenyChange.DUPLICATE
            else:
                entry.status = DenyStatus.ACTIVE.value
                entry.reason = reason or entry.reason
                entry.added_by = added_by or entry.added_by
                change = DenyChange.REACTIVATED
            if change != DenyChange.DUPLICATE:
                await db.commit()

        await self._after_write(category, normalized, change, added_by)
        return change

    async def remove(self, category: DenyCategory, value: str, removed_by: str | None = None) -> DenyChange:
        normalized = normalize_value(value)
        async with self._factory()() as db:
            entry = await self._find(db, category, normalized)
            if entry is None or entry.status != DenyStatus.ACTIVE.value:
                change = DenyChange.NOT_FOUND
            else:
                entry.status = DenyStatus.INVALID.value
                await db.commit()
                change = DenyChange.INVALIDATED

        await self._after_write(category, normalized, change, removed_by)
        return change

    async def _find(self, db: AsyncSession, category: DenyCategory, normalized: str) -> DenyListEntry | None:
        stmt = select(DenyListEntry).where(
            DenyListEntry.category == category.value,
            DenyListEntry.value == normalized,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _after_write(self, category: DenyCategory, value: str, change: DenyChange, actor: str | None) -> None:
        if change in (DenyChange.DUPLICATE, DenyChange.NOT_FOUND):
            return
        logger.info("Deny-list %s: %s=%s by %s", change.value, category.value, value, actor)
        await emit(SystemEvent(
            event_type=EventType.DENYLIST_UPDATED,
            actor_id=actor,
            actor_role="admin" if actor else "system",
            data={"category": category.value, "value": value, "change": change.value},
            source_module="denylist.store",
        ))
        await self.reload()


# Module-level singleton
deny_list = DenyListStore()
