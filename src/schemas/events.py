"""SystemEvent schema — the core event type that flows through the entire system.

Every action emits a SystemEvent. Subscribers (audit logger, admin bot)
consume these events asynchronously.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the system."""

    # Session lifecycle
    SESSION_STARTED = "session.started"
    SESSION_STATE_CHANGED = "session.state_changed"
    SESSION_ENDED = "session.ended"
    SESSION_EXPIRED = "session.expired"

    # Messages
    MESSAGE_RECEIVED = "message.received"

    # Inspection
    INSPECTION_STARTED = "inspection.started"
    INSPECTION_COMPLETED = "inspection.completed"
    INSPECTION_TIMEOUT = "inspection.timeout"

    # Sponsor confirmation
    SPONSOR_ROUND_OPENED = "sponsor.round_opened"
    SPONSOR_RESPONSE = "sponsor.response"
    SPONSOR_ROUND_RESOLVED = "sponsor.round_resolved"
    SPONSOR_ROUND_EXPIRED = "sponsor.round_expired"

    # External integrations
    EXTERNAL_API_CALL = "external.api_call"
    EXTERNAL_API_RESPONSE = "external.api_response"

    # LLM
    LLM_REQUEST = "llm.request"
    LLM_RESPONSE = "llm.response"
    LLM_ERROR = "llm.error"

    # Admin
    ADMIN_ACCESS = "admin.access"
    DENYLIST_UPDATED = "admin.denylist_updated"

    # System
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    SYSTEM_ERROR = "system.error"


class SystemEvent(BaseModel):
    """Core event that flows through the entire system.

    Immutable once created. Consumed by:
    - audit_on_event → writes to audit_log table
    - AdminBot → pushes notable events to the log chat
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Context (optional — not every event has a session)
    session_id: uuid.UUID | None = None
    actor_id: str | None = None
    actor_role: str | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    # Metadata
    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}
