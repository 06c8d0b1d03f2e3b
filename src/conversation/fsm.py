"""Finite state machine for the application session.

The FSM validates transitions and emits state-change events.
Handlers ask it for the next state; they never assign states on their own.
"""

from __future__ import annotations

import logging
import uuid

from src.admin.events import emit
from src.conversation.states import TRANSITIONS
from src.models.enums import SessionState
from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)


class FSM:
    """Manages state transitions for a single session."""

    def __init__(
        self,
        session_id: uuid.UUID,
        initial_state: SessionState = SessionState.START,
    ) -> None:
        self.session_id = session_id
        self.current_state = initial_state

    def can_transition(self, trigger: str) -> bool:
        """Check if a trigger is valid from the current state."""
        return trigger in TRANSITIONS.get(self.current_state, {})

    async def transition(self, trigger: str) -> SessionState:
        """Execute a state transition.

        Raises:
            ValueError: If the trigger is not valid from the current state.
        """
        old_state = self.current_state
        state_transitions = TRANSITIONS.get(old_state, {})
        if trigger not in state_transitions:
            msg = (
                f"Invalid transition: {old_state.value} --{trigger}--> ??? "
                f"(valid: {list(state_transitions.keys())})"
            )
            raise ValueError(msg)
        self.current_state = state_transitions[trigger]

        logger.info(
            "State transition: %s --%s--> %s (session=%s)",
            old_state.value,
            trigger,
            self.current_state.value,
            self.session_id,
        )

        await emit(SystemEvent(
            event_type=EventType.SESSION_STATE_CHANGED,
            session_id=self.session_id,
            data={
                "from_state": old_state.value,
                "to_state": self.current_state.value,
                "trigger": trigger,
            },
            source_module="conversation.fsm",
        ))

        return self.current_state
