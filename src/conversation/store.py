"""In-memory owner of every in-flight application session.

Sessions live only while an application is being reviewed; what outlives
them is the transcript handed to the auditor when they end. Other
components keep session *ids*, never session objects, and look the session
up again after every await.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from src.config import settings
from src.conversation.states import IDLE_EXEMPT_STATES
from src.models.enums import Edition, SessionOutcome, SessionState
from src.schemas.application import Application

logger = logging.getLogger(__name__)

# async def record(session_id, outcome, lines) -> None
Auditor = Callable[[uuid.UUID, SessionOutcome, list[str]], Coroutine[Any, Any, None]]

_DISPLAY_TZ = ZoneInfo(settings.workflow.display_timezone)


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Answers:
    """What the applicant typed, in the order it is asked."""

    edition: Edition | None = None
    identity: str | None = None
    nationality: str | None = None
    period: str | None = None
    companions: list[str] = field(default_factory=list)
    sponsor: str | None = None
    frozen: bool = False

    def set(self, name: str, value: object) -> None:
        if self.frozen:
            msg = f"Answers are frozen, cannot set {name!r}"
            raise RuntimeError(msg)
        setattr(self, name, value)

    def as_extraction_input(self) -> str:
        """Flatten the answers into the text handed to the extractor."""
        lines = [
            f"Identity: {self.identity or ''}",
            f"Nationality: {self.nationality or ''}",
            f"Purpose and period: {self.period or ''}",
        ]
        if self.companions:
            lines.append(f"Companions: {', '.join(self.companions)}")
        if self.sponsor:
            lines.append(f"Sponsors: {self.sponsor}")
        return "\n".join(lines)

    def summary(self) -> str:
        edition = self.edition.value if self.edition else "-"
        return "\n".join([
            f"Edition: {edition}",
            f"Identity: {self.identity or '-'}",
            f"Nationality: {self.nationality or '-'}",
            f"Period and purpose: {self.period or '-'}",
            f"Companions: {', '.join(self.companions) if self.companions else 'none'}",
            f"Sponsor: {self.sponsor or 'none'}",
        ])


@dataclass
class Session:
    """One application conversation between the bot and an applicant in a thread."""

    thread_id: str
    applicant_id: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    state: SessionState = SessionState.START
    answers: Answers = field(default_factory=Answers)
    audit_log: list[str] = field(default_factory=list)
    last_activity_at: datetime = field(default_factory=utcnow)

    outcome: SessionOutcome | None = None
    application: Application | None = None   # frozen once a verdict is pending
    busy: bool = False                       # an inspection is in flight

    def log(self, text: str, at: datetime | None = None) -> None:
        stamp = (at or utcnow()).astimezone(_DISPLAY_TZ).strftime("%Y-%m-%d %H:%M:%S")
        self.audit_log.append(f"[{stamp}] {text}")

    def touch(self, at: datetime | None = None) -> None:
        self.last_activity_at = at or utcnow()

    def snapshot(self) -> tuple[SessionState, Answers]:
        return self.state, copy.deepcopy(self.answers)

    def restore(self, snap: tuple[SessionState, Answers]) -> None:
        self.state, self.answers = snap[0], copy.deepcopy(snap[1])


class SessionStore:
    """Owns sessions by id, enforces one session per (thread, applicant), evicts idle ones."""

    def __init__(self, auditor: Auditor | None = None) -> None:
        self._auditor = auditor
        self._sessions: dict[uuid.UUID, Session] = {}
        self._by_pair: dict[tuple[str, str], uuid.UUID] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def create(self, thread_id: str, applicant_id: str, now: datetime | None = None) -> Session:
        """Open a session for the pair, or return the one already open."""
        existing = self.find(thread_id, applicant_id)
        if existing is not None:
            return existing

        session = Session(thread_id=thread_id, applicant_id=applicant_id)
        session.touch(now)
        session.log("Session started", now)
        self._sessions[session.id] = session
        self._by_pair[(thread_id, applicant_id)] = session.id
        logger.info("Session %s opened (thread=%s applicant=%s)", session.id, thread_id, applicant_id)
        return session

    def find(self, thread_id: str, applicant_id: str) -> Session | None:
        session_id = self._by_pair.get((thread_id, applicant_id))
        return self._sessions.get(session_id) if session_id is not None else None

    def get(self, session_id: uuid.UUID) -> Session | None:
        return self._sessions.get(session_id)

    def count(self, state: SessionState | None = None) -> int:
        if state is None:
            return len(self._sessions)
        return sum(1 for s in self._sessions.values() if s.state == state)

    async def close(self, session: Session, outcome: SessionOutcome, now: datetime | None = None) -> bool:
        """Remove a session that reached a terminal outcome and flush its transcript.

        Returns False if the session was already gone (e.g. evicted meanwhile).
        """
        if self._sessions.get(session.id) is not session:
            logger.info("Session %s already closed, skipping %s", session.id, outcome.value)
            return False
        self._detach(session)
        session.outcome = outcome
        session.log(f"Session ended: {outcome.value}", now)
        await self._flush(session)
        return True

    async def sweep(self, now: datetime, idle_threshold: timedelta) -> list[Session]:
        """Evict sessions idle for longer than ``idle_threshold``.

        Sessions waiting on sponsors are skipped; their round has its own deadline.
        """
        expired = [
            s for s in self._sessions.values()
            if s.state not in IDLE_EXEMPT_STATES and now - s.last_activity_at > idle_threshold
        ]
        for session in expired:
            self._detach(session)
            session.outcome = SessionOutcome.TIMEOUT
            session.log("Idle timeout", now)
            session.log(f"Session ended: {SessionOutcome.TIMEOUT.value}", now)
            logger.info("Session %s evicted after %s idle", session.id, now - session.last_activity_at)
            await self._flush(session)
        return expired

    def _detach(self, session: Session) -> None:
        self._sessions.pop(session.id, None)
        if self._by_pair.get((session.thread_id, session.applicant_id)) == session.id:
            del self._by_pair[(session.thread_id, session.applicant_id)]

    async def _flush(self, session: Session) -> None:
        if self._auditor is None or session.outcome is None:
            return
        try:
            await self._auditor(session.id, session.outcome, list(session.audit_log))
        except Exception:
            logger.exception("Failed to record transcript for session %s", session.id)
