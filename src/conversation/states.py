"""FSM state definitions and transition map.

The application session follows a strict state machine. Handlers in the
engine only ever move a session along these edges.
"""

from __future__ import annotations

from src.models.enums import SessionState

# Transition map: {current_state: {trigger_name: next_state}}
TRANSITIONS: dict[SessionState, dict[str, SessionState]] = {
    SessionState.START: {
        "begin": SessionState.EDITION_SELECT,
        "cancel": SessionState.CANCELLED,
    },
    SessionState.EDITION_SELECT: {
        "edition_selected": SessionState.IDENTITY_INPUT,
        "cancel": SessionState.CANCELLED,
    },
    SessionState.IDENTITY_INPUT: {
        "answered": SessionState.NATIONALITY_INPUT,
        "cancel": SessionState.CANCELLED,
    },
    SessionState.NATIONALITY_INPUT: {
        "answered": SessionState.PERIOD_INPUT,
        "cancel": SessionState.CANCELLED,
    },
    SessionState.PERIOD_INPUT: {
        "answered": SessionState.COMPANIONS_INPUT,
        "cancel": SessionState.CANCELLED,
    },
    SessionState.COMPANIONS_INPUT: {
        "answered": SessionState.SPONSOR_INPUT,
        "cancel": SessionState.CANCELLED,
    },
    SessionState.SPONSOR_INPUT: {
        "answered": SessionState.CONFIRM_PENDING,
        "cancel": SessionState.CANCELLED,
    },
    SessionState.CONFIRM_PENDING: {
        "edit": SessionState.EDITION_SELECT,
        "approve": SessionState.APPROVED,
        "reject": SessionState.REJECTED,
        "timeout": SessionState.TIMED_OUT,
        "await_sponsor": SessionState.SPONSOR_WAIT,
    },
    SessionState.SPONSOR_WAIT: {
        "approve": SessionState.APPROVED,
        "reject": SessionState.REJECTED,
    },
    SessionState.APPROVED: {},
    SessionState.REJECTED: {},
    SessionState.TIMED_OUT: {},
    SessionState.CANCELLED: {},
}

# States that read a free-text answer, and the answer field each one fills.
TEXT_INPUT_FIELDS: dict[SessionState, str] = {
    SessionState.IDENTITY_INPUT: "identity",
    SessionState.NATIONALITY_INPUT: "nationality",
    SessionState.PERIOD_INPUT: "period",
    SessionState.COMPANIONS_INPUT: "companions",
    SessionState.SPONSOR_INPUT: "sponsor",
}

# Sessions parked here wait on sponsors, not on the applicant.
IDLE_EXEMPT_STATES: frozenset[SessionState] = frozenset({SessionState.SPONSOR_WAIT})
