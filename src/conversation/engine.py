"""Session workflow — the brain of the entry bot.

Receives applicant messages, button clicks and sponsor replies from the
channel adapter, moves sessions through the FSM, runs the inspection when
the applicant confirms and finalizes the outcome (notify, publish, audit).

Only this module changes a Session after looking it up in the store, and
it looks the session up again after every await before acting on it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from src.admin.events import emit
from src.config import settings
from src.conversation import messages
from src.conversation.fsm import FSM
from src.conversation.interaction import Interaction
from src.conversation.states import TEXT_INPUT_FIELDS
from src.conversation.store import Answers, Session, SessionStore, utcnow
from src.errors import ExternalServiceError, UserInputError
from src.inspection.pipeline import InspectionPipeline
from src.models.enums import Edition, InspectionStep, SessionOutcome, SessionState, SponsorAnswer, UiAction
from src.schemas.application import Application, Verdict
from src.schemas.events import EventType, SystemEvent
from src.schemas.messages import OutgoingMessage
from src.sponsors.confirmation import SponsorConfirmation, SponsorRound

if TYPE_CHECKING:
    from src.channels.telegram import TelegramGateway

logger = logging.getLogger(__name__)

_MAX_ANSWER_LENGTH = 500
_LIST_SPLIT = re.compile(r"[,\n、，]+")

Handler = Callable[..., Awaitable[None]]


def parse_list_answer(text: str) -> list[str]:
    """Split a comma/newline separated answer; "none" means an empty list."""
    if text.strip().casefold() in messages.NO_ANSWER_WORDS:
        return []
    return [item.strip() for item in _LIST_SPLIT.split(text) if item.strip()]


def _parse_id(value: uuid.UUID | str) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(hex=value)
    except (ValueError, TypeError):
        return None


def _discard_late_result(task: asyncio.Task[Verdict]) -> None:
    """Consume the result of an inspection that lost the timeout race."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Late inspection failed after timeout: %r", exc)
    else:
        logger.info("Late inspection result discarded")


class SessionWorkflow:
    """Orchestrates every application session.

    Entry points used by the channel adapter:
        on_applicant_message(thread_id, applicant_id, text)
        on_ui_action(session_id, action_kind, payload)
        on_sponsor_reply(round_id, sponsor_id, answer)
        tick(now)
    """

    def __init__(
        self,
        store: SessionStore,
        pipeline: InspectionPipeline,
        gateway: TelegramGateway,
        inspection_timeout: float | None = None,
        idle_timeout: float | None = None,
        sponsor_round_ttl: int | None = None,
        start_keyword: str | None = None,
    ) -> None:
        self.store = store
        self._pipeline = pipeline
        self._gateway = gateway
        self._inspection_timeout = inspection_timeout or settings.workflow.inspection_timeout_seconds
        self._idle_timeout = timedelta(seconds=idle_timeout or settings.workflow.idle_timeout_seconds)
        self._start_keyword = (start_keyword or settings.telegram.start_keyword).strip().casefold()
        self.last_tick_at: datetime | None = None
        self.sponsors = SponsorConfirmation(
            gateway.send_direct,
            self._on_round_resolved,
            ttl_seconds=sponsor_round_ttl,
        )

    def is_start_request(self, text: str) -> bool:
        return text.strip().casefold() == self._start_keyword

    # ── Applicant messages ───────────────────────────────────────────

    async def on_applicant_message(self, thread_id: str, applicant_id: str, text: str) -> None:
        """Free text from an applicant. Ignored unless it starts or answers an application."""
        session = self.store.find(thread_id, applicant_id)
        if session is None:
            if self.is_start_request(text):
                await self.start_application(thread_id, applicant_id)
            return

        interaction = Interaction(self._gateway, thread_id)
        if self.is_start_request(text):
            await interaction.complete(messages.prompt_for(session, note=messages.ALREADY_IN_PROGRESS))
            return

        await emit(SystemEvent(
            event_type=EventType.MESSAGE_RECEIVED,
            session_id=session.id,
            actor_id=applicant_id,
            actor_role="applicant",
            data={"text_length": len(text), "state": session.state.value},
            source_module="conversation.engine",
        ))
        await self._guarded(session.id, interaction, self._handle_text, text)

    async def start_application(self, thread_id: str, applicant_id: str) -> Session:
        """Open a session for the pair, or point the applicant at the open one."""
        interaction = Interaction(self._gateway, thread_id)
        existing = self.store.find(thread_id, applicant_id)
        if existing is not None:
            await interaction.complete(messages.prompt_for(existing, note=messages.ALREADY_IN_PROGRESS))
            return existing

        session = self.store.create(thread_id, applicant_id)
        await emit(SystemEvent(
            event_type=EventType.SESSION_STARTED,
            session_id=session.id,
            actor_id=applicant_id,
            actor_role="applicant",
            data={"thread_id": thread_id},
            source_module="conversation.engine",
        ))
        await interaction.complete(messages.prompt_for(session))
        return session

    async def _handle_text(self, session: Session, interaction: Interaction, text: str) -> None:
        field = TEXT_INPUT_FIELDS.get(session.state)
        if field is None:
            # Not a free-text state: ask the same question again
            if session.busy:
                await interaction.complete(OutgoingMessage(text=messages.STILL_INSPECTING))
            else:
                await interaction.complete(messages.prompt_for(session))
            return

        answer = text.strip()
        if not answer:
            raise UserInputError(messages.EMPTY_ANSWER)
        if len(answer) > _MAX_ANSWER_LENGTH:
            raise UserInputError(f"Please keep your answer under {_MAX_ANSWER_LENGTH} characters.")

        if field == "companions":
            session.answers.set(field, parse_list_answer(answer))
        elif field == "sponsor":
            names = parse_list_answer(answer)
            session.answers.set(field, ", ".join(names) if names else None)
        else:
            session.answers.set(field, answer)
        session.log(f"Answer {field}: {answer}")

        await self._advance(session, "answered")
        await interaction.complete(messages.prompt_for(session))

    # ── Buttons ──────────────────────────────────────────────────────

    def check_ui_action(self, session_id: uuid.UUID | str, actor_id: str | None = None) -> str | None:
        """Why a click on this session's buttons would be refused, or None if it is accepted."""
        session = self._lookup(session_id)
        if session is None:
            return messages.SESSION_GONE
        if actor_id is not None and actor_id != session.applicant_id:
            return messages.NOT_YOUR_SESSION
        return None

    async def on_ui_action(
        self,
        session_id: uuid.UUID | str,
        action_kind: str,
        payload: str = "",
        actor_id: str | None = None,
    ) -> str | None:
        """A button click. Returns a short notice for the clicker when nothing was done."""
        notice = self.check_ui_action(session_id, actor_id)
        session = self._lookup(session_id)
        if notice is not None or session is None:
            return notice or messages.SESSION_GONE

        interaction = Interaction(self._gateway, session.thread_id)
        try:
            action = UiAction(action_kind)
        except ValueError:
            logger.warning("Unknown UI action %r for session %s", action_kind, session.id)
            await interaction.complete(messages.prompt_for(session))
            return None

        await self._guarded(session.id, interaction, self._handle_action, action, payload)
        return None

    async def _handle_action(self, session: Session, interaction: Interaction, action: UiAction, payload: str) -> None:
        state = session.state

        if action == UiAction.CANCEL and FSM(session.id, state).can_transition("cancel"):
            session.log("Cancelled by applicant")
            await self._advance(session, "cancel")
            await self._finish(session, SessionOutcome.CANCELLED, OutgoingMessage(text=messages.CANCELLED), interaction)
            return

        if action == UiAction.BEGIN and state == SessionState.START:
            await self._advance(session, "begin")
            await interaction.complete(messages.prompt_for(session))
            return

        if action == UiAction.EDITION and state == SessionState.EDITION_SELECT:
            try:
                edition = Edition(payload)
            except ValueError as exc:
                raise UserInputError("Please choose one of the editions below.") from exc
            session.answers.set("edition", edition)
            session.log(f"Answer edition: {edition.value}")
            await self._advance(session, "edition_selected")
            await interaction.complete(messages.prompt_for(session))
            return

        if state == SessionState.CONFIRM_PENDING and action in (UiAction.CONFIRM, UiAction.EDIT):
            if session.busy:
                await interaction.complete(OutgoingMessage(text=messages.STILL_INSPECTING))
            elif action == UiAction.EDIT:
                session.log("Editing answers")
                await self._advance(session, "edit")
                await interaction.complete(messages.prompt_for(session))
            else:
                await self._confirm(session, interaction)
            return

        # Stale or out-of-order click: repeat the current question
        logger.info("Ignoring %s in state %s (session=%s)", action.value, state.value, session.id)
        await interaction.complete(messages.prompt_for(session))

    # ── Inspection ───────────────────────────────────────────────────

    async def _confirm(self, session: Session, interaction: Interaction) -> None:
        session_id = session.id
        session.busy = True
        session.log("Application confirmed, inspection started")
        await interaction.acknowledge(OutgoingMessage(text=messages.INSPECTING))

        task = asyncio.create_task(self._pipeline.inspect(
            session.answers.as_extraction_input(),
            session.answers.edition or Edition.PRIMARY,
            session_id=session_id,
            log=lambda line: self._log(session_id, line),
            progress=lambda step: self._progress(session_id, interaction, step),
        ))
        try:
            done, _ = await asyncio.wait({task}, timeout=self._inspection_timeout)
        finally:
            current = self.store.get(session_id)
            if current is not None:
                current.busy = False

        session = self.store.get(session_id)
        if task not in done:
            # The pipeline keeps running; its result is dropped when it arrives
            task.add_done_callback(_discard_late_result)
            if session is None:
                return
            await emit(SystemEvent(
                event_type=EventType.INSPECTION_TIMEOUT,
                session_id=session_id,
                data={"timeout_seconds": self._inspection_timeout},
                source_module="conversation.engine",
            ))
            session.log(f"Inspection timed out after {self._inspection_timeout:g}s")
            await self._advance(session, "timeout")
            await self._finish(session, SessionOutcome.TIMEOUT, OutgoingMessage(text=messages.TIMED_OUT), interaction)
            return

        verdict = task.result()
        if session is None or session.state != SessionState.CONFIRM_PENDING:
            logger.info("Session %s changed during inspection, verdict dropped", session_id)
            return
        await self._apply_verdict(session, verdict, interaction)

    async def _apply_verdict(self, session: Session, verdict: Verdict, interaction: Interaction) -> None:
        if verdict.is_pending and verdict.application is not None:
            session.application = verdict.application
            session.answers.frozen = True
            await self._advance(session, "await_sponsor")
            await interaction.complete(OutgoingMessage(text=messages.SPONSOR_WAIT))
            await self._open_round(session, verdict.application, verdict.pending_sponsor_ids or [])
            return

        if verdict.approved and verdict.application is not None:
            session.application = verdict.application
            session.answers.frozen = True
            session.log("Verdict: approved")
            await self._advance(session, "approve")
            await self._finish(session, SessionOutcome.APPROVED, messages.approval(verdict.application), interaction)
            return

        reason = verdict.reason or "Your application could not be approved."
        session.log(f"Verdict: rejected ({verdict.rejection.value if verdict.rejection else 'unknown'}): {reason}")
        await self._advance(session, "reject")
        await self._finish(session, SessionOutcome.REJECTED, messages.rejection(reason), interaction)

    # ── Sponsors ─────────────────────────────────────────────────────

    async def _open_round(self, session: Session, application: Application, sponsor_ids: list[str]) -> None:
        session_id = session.id
        session.log(f"Sponsor confirmation requested from: {', '.join(sponsor_ids)}")
        rnd = await self.sponsors.open(session_id, sponsor_ids, application, messages.sponsor_request(application))
        if self.store.get(session_id) is None:
            self.sponsors.discard(rnd.id)

    async def on_sponsor_reply(self, round_id: uuid.UUID | str, sponsor_id: str, answer: str) -> str:
        """A sponsor clicked yes/no. Returns the notice shown to the sponsor."""
        rid = _parse_id(round_id)
        try:
            parsed = SponsorAnswer(answer)
        except ValueError:
            logger.warning("Invalid sponsor answer %r for round %s", answer, round_id)
            return "Unrecognized answer."
        if rid is None or self.sponsors.get(rid) is None:
            logger.info("Sponsor reply for closed round %s from %s", round_id, sponsor_id)
            return "This request is no longer open."

        try:
            accepted = await self.sponsors.record_response(rid, sponsor_id, parsed)
        except Exception:
            logger.exception("Failed to handle sponsor reply for round %s", rid)
            return messages.GENERIC_ERROR
        if not accepted:
            return "This request is not addressed to you."
        return "Thank you, your answer was recorded."

    async def _on_round_resolved(self, rnd: SponsorRound, approved: bool, reason: str | None) -> None:
        session = self.store.get(rnd.application_ref)
        if session is None or session.state != SessionState.SPONSOR_WAIT:
            logger.info("Round %s resolved but session %s is gone", rnd.id, rnd.application_ref)
            return

        answers = ", ".join(f"{s}={a.value}" for s, a in rnd.responses.items()) or "none"
        session.log(f"Sponsor round resolved ({'approved' if approved else 'rejected'}); answers: {answers}")
        if approved:
            await self._advance(session, "approve")
            await self._finish(session, SessionOutcome.APPROVED, messages.approval(rnd.application))
        else:
            await self._advance(session, "reject")
            await self._finish(
                session,
                SessionOutcome.REJECTED,
                messages.rejection(reason or "Your sponsors did not confirm your visit."),
            )

    # ── Timers ───────────────────────────────────────────────────────

    async def tick(self, now: datetime | None = None) -> None:
        """Evict idle sessions and expire overdue sponsor rounds."""
        now = now or utcnow()
        self.last_tick_at = now
        for session in await self.store.sweep(now, self._idle_timeout):
            await emit(SystemEvent(
                event_type=EventType.SESSION_EXPIRED,
                session_id=session.id,
                data={"state": session.state.value},
                source_module="conversation.engine",
            ))
            await Interaction(self._gateway, session.thread_id).complete(
                messages.idle_timeout(self._idle_timeout.total_seconds()),
            )

        try:
            await self.sponsors.expire(now)
        except Exception:
            logger.exception("Sponsor round expiry failed")

    # ── Internals ────────────────────────────────────────────────────

    async def _guarded(self, session_id: uuid.UUID, interaction: Interaction, handler: Handler, *args: object) -> None:
        """Run a handler; on failure restore the session and tell the applicant once."""
        session = self.store.get(session_id)
        if session is None:
            await interaction.complete(OutgoingMessage(text=messages.SESSION_GONE))
            return

        session.touch()
        snapshot = session.snapshot()
        try:
            await handler(session, interaction, *args)
        except UserInputError as exc:
            current = self._restore(session_id, snapshot, f"Invalid input: {exc}")
            if current is not None:
                await interaction.complete(messages.prompt_for(current, note=str(exc)))
        except ExternalServiceError as exc:
            logger.warning("External service failure in session %s: %s", session_id, exc)
            current = self._restore(session_id, snapshot, f"External service error: {exc}")
            await interaction.complete(self._error_reply(current, messages.RETRY_LATER))
        except Exception as exc:
            logger.exception("Unhandled error in session %s", session_id)
            current = self._restore(session_id, snapshot, f"Error: {exc!r}")
            await emit(SystemEvent(
                event_type=EventType.SYSTEM_ERROR,
                session_id=session_id,
                data={"error": repr(exc), "handler": getattr(handler, "__name__", "?")},
                source_module="conversation.engine",
            ))
            await interaction.complete(self._error_reply(current, messages.GENERIC_ERROR))

    @staticmethod
    def _error_reply(session: Session | None, notice: str) -> OutgoingMessage:
        """The notice plus the question still pending, buttons included."""
        if session is None:
            return OutgoingMessage(text=notice)
        return messages.prompt_for(session, note=notice)

    def _restore(self, session_id: uuid.UUID, snapshot: tuple[SessionState, Answers], line: str) -> Session | None:
        session = self.store.get(session_id)
        if session is None:
            return None
        session.restore(snapshot)
        session.busy = False
        session.log(line)
        return session

    def _lookup(self, session_id: uuid.UUID | str) -> Session | None:
        sid = _parse_id(session_id)
        return self.store.get(sid) if sid is not None else None

    def _log(self, session_id: uuid.UUID, line: str) -> None:
        session = self.store.get(session_id)
        if session is not None:
            session.log(line)

    async def _progress(self, session_id: uuid.UUID, interaction: Interaction, step: InspectionStep) -> None:
        session = self.store.get(session_id)
        if session is None or not session.busy:
            return
        session.log(f"Inspection step: {step.value}")
        await interaction.progress(OutgoingMessage(text=messages.INSPECTION_STEPS[step]))

    async def _advance(self, session: Session, trigger: str) -> None:
        fsm = FSM(session_id=session.id, initial_state=session.state)
        old_state = session.state
        await fsm.transition(trigger)
        session.state = fsm.current_state
        session.touch()
        session.log(f"State {old_state.value} -> {session.state.value}")

    async def _finish(
        self,
        session: Session,
        outcome: SessionOutcome,
        message: OutgoingMessage,
        interaction: Interaction | None = None,
    ) -> None:
        """Close the session, then notify (and publish on approval) exactly once."""
        application = session.application
        if not await self.store.close(session, outcome):
            return

        await emit(SystemEvent(
            event_type=EventType.SESSION_ENDED,
            session_id=session.id,
            actor_id=session.applicant_id,
            actor_role="applicant",
            data={"outcome": outcome.value},
            source_module="conversation.engine",
        ))

        await (interaction or Interaction(self._gateway, session.thread_id)).complete(message)

        if outcome == SessionOutcome.APPROVED and application is not None:
            try:
                await self._gateway.announce(messages.publication(application))
            except Exception:
                logger.exception("Failed to publish approval for session %s", session.id)
