"""Reply bookkeeping for one inbound event.

An applicant message or button click gets at most one acknowledgement and
exactly one final reply, whichever code path produces it. The response
state is checked before every outward message.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.models.enums import ResponseState
from src.schemas.messages import OutgoingMessage

if TYPE_CHECKING:
    from src.channels.telegram import TelegramGateway

logger = logging.getLogger(__name__)


class Interaction:
    """unanswered -> acknowledged -> completed, never backwards."""

    def __init__(self, notifier: TelegramGateway, thread_id: str) -> None:
        self._notifier = notifier
        self.thread_id = thread_id
        self.state = ResponseState.UNANSWERED

    @property
    def completed(self) -> bool:
        return self.state == ResponseState.COMPLETED

    async def acknowledge(self, message: OutgoingMessage) -> bool:
        """Send an interim reply; ignored once anything has been sent."""
        if self.state != ResponseState.UNANSWERED:
            return False
        self.state = ResponseState.ACKNOWLEDGED
        await self._send(message)
        return True

    async def progress(self, message: OutgoingMessage) -> bool:
        """Send an update between the acknowledgement and the final reply."""
        if self.state != ResponseState.ACKNOWLEDGED:
            return False
        await self._send(message)
        return True

    async def complete(self, message: OutgoingMessage) -> bool:
        """Send the final reply; ignored if the event was already answered."""
        if self.state == ResponseState.COMPLETED:
            logger.debug("Reply for thread %s already completed, dropping: %s", self.thread_id, message.text[:60])
            return False
        self.state = ResponseState.COMPLETED
        await self._send(message)
        return True

    async def _send(self, message: OutgoingMessage) -> None:
        try:
            await self._notifier.send_to_applicant(self.thread_id, message)
        except Exception:
            logger.exception("Could not deliver reply to thread %s", self.thread_id)
