"""Domain enums used across SQLAlchemy models, Pydantic schemas and the workflow.

All enums use str mixin for JSON serialization and readable audit rows.
"""

from __future__ import annotations

from enum import Enum


class Edition(str, Enum):
    """Game edition the applicant plays — selects the identity registry."""

    PRIMARY = "java"
    SECONDARY = "bedrock"


class SessionState(str, Enum):
    """FSM states of one application session."""

    START = "start"
    EDITION_SELECT = "edition_select"
    IDENTITY_INPUT = "identity_input"
    NATIONALITY_INPUT = "nationality_input"
    PERIOD_INPUT = "period_input"
    COMPANIONS_INPUT = "companions_input"
    SPONSOR_INPUT = "sponsor_input"
    CONFIRM_PENDING = "confirm_pending"
    SPONSOR_WAIT = "sponsor_wait"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class SessionOutcome(str, Enum):
    """Final outcome recorded in the transcript of an ended session."""

    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class UiAction(str, Enum):
    """Button / menu actions an applicant can send for a session."""

    BEGIN = "begin"
    CANCEL = "cancel"
    EDITION = "edition"
    CONFIRM = "confirm"
    EDIT = "edit"


class SponsorAnswer(str, Enum):
    """A sponsor's reply to a confirmation prompt."""

    YES = "yes"
    NO = "no"


class RejectionKind(str, Enum):
    """Why the inspection pipeline refused an application."""

    POLICY = "policy"              # deny-list hit or business rule
    UNVERIFIED = "unverified"      # identity could not be found
    INPUT = "input"                # unparsable or incomplete application
    SERVICE = "service"            # an external service failed


class InspectionStep(str, Enum):
    """Pipeline stages reported to the applicant while an inspection runs."""

    EXTRACTION = "extraction"
    DENY_LIST = "deny_list"
    IDENTITY = "identity"
    COMPANIONS = "companions"
    SPONSORS = "sponsors"
    RULES = "rules"


class DenyCategory(str, Enum):
    """What a deny-list entry matches against."""

    NATIONALITY = "nationality"
    IDENTITY = "identity"


class DenyStatus(str, Enum):
    """Deny-list entries are never deleted, only invalidated."""

    ACTIVE = "active"
    INVALID = "invalid"


class ResponseState(str, Enum):
    """How far the reply to one inbound event has progressed."""

    UNANSWERED = "unanswered"
    ACKNOWLEDGED = "acknowledged"
    COMPLETED = "completed"
