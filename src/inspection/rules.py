"""Business rules applied to an extracted application.

Pure functions — no I/O. The pipeline calls ``check_business_rules`` last,
after every deny-list and registry check has passed.
"""

from __future__ import annotations

import math
from datetime import datetime, tzinfo
from zoneinfo import ZoneInfo

from src.config import settings
from src.schemas.application import Application

# ── Applicant-facing reasons ─────────────────────────────────────────

STAY_TOO_LONG = (
    "The requested stay is too long and has been rejected. Stays longer than "
    "{days} days are not granted in one application: apply for {days} days and "
    "submit a new application before it expires."
)
MISSING_FIELDS = (
    "Your application is incomplete. Please provide your handle, nationality, "
    "purpose of visit, and a valid arrival and departure date."
)

REQUIRED_FIELDS = ("identity", "nationality", "purpose", "start", "end")


def parse_instant(value: str | None, default_tz: tzinfo | None = None) -> datetime | None:
    """Parse an ISO 8601 date or datetime; naive values get ``default_tz``.

    Returns None for anything that does not parse.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz or ZoneInfo(settings.workflow.display_timezone))
    return parsed


def stay_hours(start: datetime, end: datetime) -> int:
    """Length of the stay in whole hours, rounded up."""
    return math.ceil((end - start).total_seconds() / 3600)


def check_business_rules(application: Application, max_stay_days: int | None = None) -> str | None:
    """Return the rejection reason, or None if the application passes.

    The duration rule is evaluated before the required-fields rule, so an
    over-long stay is reported even if another field is missing.
    """
    days = max_stay_days or settings.workflow.max_stay_days
    start = parse_instant(application.start)
    end = parse_instant(application.end)

    if start is not None and end is not None and stay_hours(start, end) > days * 24:
        return STAY_TOO_LONG.format(days=days)

    if any(not getattr(application, name) for name in REQUIRED_FIELDS):
        return MISSING_FIELDS
    # Present but unparsable, or ending before it starts
    if start is None or end is None or end < start:
        return MISSING_FIELDS
    return None
