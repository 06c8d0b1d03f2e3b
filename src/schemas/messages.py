"""Channel-neutral outgoing message shape.

The workflow describes what to say and which buttons to offer; the channel
adapter decides how to render it (inline keyboards on Telegram).
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class Button(BaseModel):
    """One clickable option. ``kind`` + ``target`` + ``payload`` become the callback data."""

    label: str
    kind: str
    target: str
    payload: str = ""

    @property
    def callback_data(self) -> str:
        return f"{self.kind}:{self.target}:{self.payload}"


class OutgoingMessage(BaseModel):
    """Text plus an optional row of buttons."""

    text: str
    buttons: list[Button] = Field(default_factory=list)

    model_config = {"frozen": True}


def parse_callback_data(data: str) -> tuple[str, str, str] | None:
    """Split ``kind:target:payload``; returns None for foreign callback data."""
    parts = data.split(":", 2)
    if len(parts) != 3 or not parts[0] or not parts[1]:
        return None
    return parts[0], parts[1], parts[2]
