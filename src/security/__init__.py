"""Security module — audit trail and session transcripts."""

from src.security.audit import audit_on_event, transcript_auditor

__all__ = ["audit_on_event", "transcript_auditor"]
