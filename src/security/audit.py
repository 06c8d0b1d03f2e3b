"""Audit trail: every SystemEvent, plus one transcript per ended session.

``audit_on_event`` is registered as a global subscriber (receives ALL
events) and persists them to the audit_log table. ``TranscriptAuditor``
implements the Auditor collaborator of the session store: it stores the
transcript in session_transcripts and forwards it to the log chat.

Never raises — failures are logged but never propagate to the workflow.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable

from src.db.engine import async_session_factory
from src.models.audit import AuditLog, SessionTranscript
from src.models.enums import SessionOutcome
from src.schemas.events import SystemEvent

logger = logging.getLogger(__name__)

# async def sink(session_id, outcome, transcript_text) -> None
TranscriptSink = Callable[[uuid.UUID, SessionOutcome, str], Awaitable[None]]


async def audit_on_event(event: SystemEvent) -> None:
    """Write a SystemEvent to the audit_log table.

    Called by the event system for every emitted event.
    Failures are logged and swallowed — audit logging must never
    crash the main application flow.
    """
    try:
        async with async_session_factory() as db:
            audit = AuditLog(
                event_type=event.event_type.value,
                session_id=event.session_id,
                actor_id=event.actor_id,
                actor_role=event.actor_role,
                data=event.data,
            )
            db.add(audit)
            await db.commit()
    except Exception:
        logger.exception(
            "Failed to persist audit event: %s (session=%s)",
            event.event_type.value,
            event.session_id,
        )


class TranscriptAuditor:
    """Auditor.record(session_id, outcome, lines): persist, then forward to the sinks."""

    def __init__(self, session_factory: Callable | None = None) -> None:
        self._session_factory = session_factory or async_session_factory
        self._sinks: list[TranscriptSink] = []

    def add_sink(self, sink: TranscriptSink) -> None:
        self._sinks.append(sink)

    async def record(self, session_id: uuid.UUID, outcome: SessionOutcome, lines: list[str]) -> None:
        transcript = "\n".join(lines)

        try:
            async with self._session_factory() as db:
                db.add(SessionTranscript(
                    session_id=session_id,
                    outcome=outcome.value,
                    transcript=transcript,
                ))
                await db.commit()
        except Exception:
            logger.exception("Failed to persist transcript for session %s", session_id)

        for sink in self._sinks:
            try:
                await sink(session_id, outcome, transcript)
            except Exception:
                logger.exception("Transcript sink %s failed for session %s", getattr(sink, "__name__", sink), session_id)

        logger.info("Transcript recorded: session=%s outcome=%s lines=%d", session_id, outcome.value, len(lines))


# Module-level singleton
transcript_auditor = TranscriptAuditor()
