"""Sponsor confirmation rounds.

When an application names residents it will meet, each of them must
confirm it. A round collects one yes/no per sponsor:

    any "no"            -> rejected immediately
    "yes" from everyone -> approved
    deadline passed     -> rejected (checked by ``expire``)

The owner is told exactly once through ``on_resolved``; the round is then
discarded and any later reply to it is ignored.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from src.admin.events import emit
from src.config import settings
from src.models.enums import SponsorAnswer
from src.schemas.application import Application
from src.schemas.events import EventType, SystemEvent
from src.schemas.messages import Button, OutgoingMessage

logger = logging.getLogger(__name__)

SPONSOR_DECLINED = "A resident you named did not confirm your visit, so the application was rejected."
SPONSOR_EXPIRED = "Your sponsors did not confirm in time, so the application was rejected."

SendDirect = Callable[[str, OutgoingMessage], Awaitable[None]]
# on_resolved(round, approved, reason)
OnResolved = Callable[["SponsorRound", bool, str | None], Awaitable[None]]


@dataclass
class SponsorRound:
    """One confirmation request sent to every sponsor of an application."""

    application_ref: uuid.UUID
    sponsor_ids: list[str]
    application: Application
    opened_at: datetime
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    responses: dict[str, SponsorAnswer] = field(default_factory=dict)

    @property
    def declined(self) -> bool:
        return SponsorAnswer.NO in self.responses.values()

    @property
    def all_confirmed(self) -> bool:
        return all(self.responses.get(s) == SponsorAnswer.YES for s in self.sponsor_ids)


def sponsor_prompt(round_id: uuid.UUID, text: str) -> OutgoingMessage:
    return OutgoingMessage(
        text=text,
        buttons=[
            Button(label="Yes", kind="sponsor", target=round_id.hex, payload=SponsorAnswer.YES.value),
            Button(label="No", kind="sponsor", target=round_id.hex, payload=SponsorAnswer.NO.value),
        ],
    )


class SponsorConfirmation:
    """Tracks open rounds and resolves each one exactly once."""

    def __init__(self, send_direct: SendDirect, on_resolved: OnResolved, ttl_seconds: int | None = None) -> None:
        self._send_direct = send_direct
        self._on_resolved = on_resolved
        self._ttl = timedelta(seconds=ttl_seconds or settings.workflow.sponsor_round_ttl_seconds)
        self._rounds: dict[uuid.UUID, SponsorRound] = {}

    def __len__(self) -> int:
        return len(self._rounds)

    def get(self, round_id: uuid.UUID) -> SponsorRound | None:
        return self._rounds.get(round_id)

    async def open(
        self,
        application_ref: uuid.UUID,
        sponsor_ids: list[str],
        application: Application,
        prompt: str,
        now: datetime | None = None,
    ) -> SponsorRound:
        """Register a round and send the yes/no prompt to every sponsor."""
        rnd = SponsorRound(
            application_ref=application_ref,
            sponsor_ids=list(dict.fromkeys(sponsor_ids)),
            application=application,
            opened_at=now or datetime.now(UTC),
        )
        self._rounds[rnd.id] = rnd
        logger.info("Sponsor round %s opened for session %s (%d sponsors)", rnd.id, application_ref, len(rnd.sponsor_ids))

        await emit(SystemEvent(
            event_type=EventType.SPONSOR_ROUND_OPENED,
            session_id=application_ref,
            data={"round_id": str(rnd.id), "sponsors": rnd.sponsor_ids},
            source_module="sponsors.confirmation",
        ))

        message = sponsor_prompt(rnd.id, prompt)
        for sponsor_id in rnd.sponsor_ids:
            try:
                await self._send_direct(sponsor_id, message)
            except Exception:
                # Unreachable sponsors never answer; the round deadline covers them
                logger.exception("Could not deliver sponsor prompt to %s (round %s)", sponsor_id, rnd.id)
        return rnd

    async def record_response(self, round_id: uuid.UUID, sponsor_id: str, answer: SponsorAnswer) -> bool:
        """Store a sponsor's answer; returns False if it was ignored."""
        rnd = self._rounds.get(round_id)
        if rnd is None:
            logger.info("Reply from %s for unknown or resolved round %s ignored", sponsor_id, round_id)
            return False
        if sponsor_id not in rnd.sponsor_ids:
            logger.warning("Reply from %s who is not a sponsor of round %s ignored", sponsor_id, round_id)
            return False

        rnd.responses[sponsor_id] = answer
        logger.info("Sponsor %s answered %s for round %s", sponsor_id, answer.value, round_id)
        await emit(SystemEvent(
            event_type=EventType.SPONSOR_RESPONSE,
            session_id=rnd.application_ref,
            actor_id=sponsor_id,
            actor_role="sponsor",
            data={"round_id": str(round_id), "answer": answer.value},
            source_module="sponsors.confirmation",
        ))

        if rnd.declined:
            await self._resolve(rnd, approved=False, reason=SPONSOR_DECLINED)
        elif rnd.all_confirmed:
            await self._resolve(rnd, approved=True, reason=None)
        return True

    async def expire(self, now: datetime) -> list[SponsorRound]:
        """Reject every round older than the deadline."""
        overdue = [r for r in self._rounds.values() if now - r.opened_at > self._ttl]
        for rnd in overdue:
            await emit(SystemEvent(
                event_type=EventType.SPONSOR_ROUND_EXPIRED,
                session_id=rnd.application_ref,
                data={"round_id": str(rnd.id), "answered": len(rnd.responses)},
                source_module="sponsors.confirmation",
            ))
            await self._resolve(rnd, approved=False, reason=SPONSOR_EXPIRED)
        return overdue

    def discard(self, round_id: uuid.UUID) -> None:
        """Drop a round without resolving it (its session is gone)."""
        if self._rounds.pop(round_id, None) is not None:
            logger.info("Sponsor round %s discarded", round_id)

    async def _resolve(self, rnd: SponsorRound, approved: bool, reason: str | None) -> None:
        if self._rounds.pop(rnd.id, None) is None:
            return
        logger.info("Sponsor round %s resolved: %s", rnd.id, "approved" if approved else "rejected")
        await emit(SystemEvent(
            event_type=EventType.SPONSOR_ROUND_RESOLVED,
            session_id=rnd.application_ref,
            data={"round_id": str(rnd.id), "approved": approved},
            source_module="sponsors.confirmation",
        ))
        await self._on_resolved(rnd, approved, reason)
