"""Pydantic schemas for the structured application and the inspection verdict.

Pure data classes — no DB dependencies, no network dependencies.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from src.models.enums import Edition, RejectionKind

# Handles typed with this prefix belong to the secondary edition.
SECONDARY_PREFIX = "BE_"


def strip_edition_prefix(handle: str) -> str:
    """Remove the secondary-edition marker so the handle can be looked up."""
    return handle[len(SECONDARY_PREFIX):] if handle.startswith(SECONDARY_PREFIX) else handle


def edition_for_handle(handle: str, declared: Edition) -> Edition:
    """A prefixed handle is always secondary; otherwise trust the declared edition."""
    return Edition.SECONDARY if handle.startswith(SECONDARY_PREFIX) else declared


class Companion(BaseModel):
    """Someone travelling with the applicant."""

    handle: str
    nationality: str | None = None

    @field_validator("nationality", mode="before")
    @classmethod
    def blank_nationality(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip() or None
        return v


class Application(BaseModel):
    """Normalized application as produced by the text extractor."""

    identity: str | None = None
    nationality: str | None = None
    purpose: str | None = None
    start: str | None = None       # ISO 8601 as extracted, parsed by the rules
    end: str | None = None
    companions: list[Companion] = Field(default_factory=list)
    sponsors: list[str] = Field(default_factory=list)

    # Filled in by the workflow / pipeline, not by the extractor
    edition: Edition = Edition.PRIMARY
    sponsor_refs: list[str] = Field(default_factory=list)

    @field_validator("companions", mode="before")
    @classmethod
    def coerce_companions(cls, v: object) -> object:
        """Accept bare handles as well as {handle, nationality} objects; null means none."""
        if v is None:
            return []
        if not isinstance(v, list):
            return v
        companions: list[object] = []
        for c in v:
            if isinstance(c, str):
                c = {"handle": c}
            if isinstance(c, dict):
                handle = c.get("handle")
                if not isinstance(handle, str) or not handle.strip():
                    continue
                c = {**c, "handle": handle.strip()}
            elif not c:
                continue
            companions.append(c)
        return companions

    @field_validator("sponsors", mode="before")
    @classmethod
    def coerce_sponsors(cls, v: object) -> object:
        if v is None:
            return []
        if not isinstance(v, list):
            return v
        return [s.strip() for s in v if isinstance(s, str) and s.strip()]

    @field_validator("identity", "nationality", "purpose", "start", "end", mode="before")
    @classmethod
    def blank_to_none(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v


class Verdict(BaseModel):
    """Outcome of one inspection.

    Exactly one of ``reason`` (rejection) or ``application`` (approval) is set,
    except for a pending verdict, which carries the application together with
    the sponsors that still have to confirm it.
    """

    approved: bool
    reason: str | None = None
    rejection: RejectionKind | None = None
    application: Application | None = None
    pending_sponsor_ids: list[str] | None = None

    @property
    def is_pending(self) -> bool:
        return bool(self.pending_sponsor_ids)

    @classmethod
    def approve(cls, application: Application) -> Verdict:
        return cls(approved=True, application=application)

    @classmethod
    def reject(cls, reason: str, kind: RejectionKind = RejectionKind.POLICY) -> Verdict:
        return cls(approved=False, reason=reason, rejection=kind)

    @classmethod
    def pending(cls, application: Application, sponsor_ids: list[str]) -> Verdict:
        return cls(approved=False, application=application, pending_sponsor_ids=list(sponsor_ids))
