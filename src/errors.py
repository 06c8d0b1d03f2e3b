"""Exception hierarchy for the review workflow.

Policy rejections are not exceptions: the inspection pipeline returns them
as Verdict values. Only the classes below cross component boundaries.
"""

from __future__ import annotations


class EntryBotError(Exception):
    """Base class for all errors raised by this package."""


class UserInputError(EntryBotError):
    """An applicant answer is empty or malformed; the same step is asked again."""


class ExternalServiceError(EntryBotError):
    """A collaborator (LLM, registry, verifier) failed to produce an answer."""


class ExtractionError(ExternalServiceError):
    """The text extractor returned nothing usable."""


class RegistryUnavailableError(ExternalServiceError):
    """The citizen registry could not be reached or answered with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
