"""Inspection pipeline — turns raw answers into a Verdict.

Ordered checks, short-circuiting on the first rejection:

    1. extraction            (LLM -> Application)
    2. nationality deny-list
    3. identity deny-list
    4. identity existence    (edition registry, BE_ prefix forces secondary)
    5. companions            (deny-list, existence, nationality match)
    6. sponsor matching      (citizen registry)
    7. business rules        (stay length, then required fields)
    8. pending if any sponsor resolved, otherwise approve

Policy and input problems are returned as Verdict values. Only
ExternalServiceError (e.g. the deny-list cannot be loaded) escapes.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable

from src.admin.events import emit
from src.denylist.store import DenyListStore
from src.errors import ExtractionError, RegistryUnavailableError
from src.inspection.rules import MISSING_FIELDS, check_business_rules
from src.integrations.identity.service import IdentityVerifier
from src.integrations.sponsors.client import SponsorRegistry, normalize_name
from src.llm.extractor import TextExtractor
from src.models.enums import DenyCategory, Edition, InspectionStep, RejectionKind
from src.schemas.application import Application, Verdict, edition_for_handle, strip_edition_prefix
from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

# ── Applicant-facing reasons ─────────────────────────────────────────

PARSE_FAILED = "We could not parse your application. Please submit it again."
NATIONALITY_DENIED = "Entry cannot be granted to applicants of the declared nationality for security reasons."
IDENTITY_DENIED = "Entry cannot be granted to the handle {handle} for security reasons."
IDENTITY_UNVERIFIED = "We couldn't verify the account {handle}. Please check the spelling."
COMPANION_DENIED = "Your companion {handle} cannot be granted entry for security reasons."
COMPANION_UNVERIFIED = "We couldn't verify your companion's account {handle}. Please check the spelling."
COMPANION_NATIONALITY = (
    "Your companion {handle} has a different nationality from yours. "
    "Companions of another nationality must apply separately."
)
REGISTRY_FAILED = "We could not reach the resident registry to check your sponsors. Please try again later."

LogFn = Callable[[str], None]
ProgressFn = Callable[[InspectionStep], Awaitable[None]]


def _no_log(_: str) -> None:
    return None


async def _no_progress(_: InspectionStep) -> None:
    return None


class InspectionPipeline:
    """Runs every check for one confirm attempt."""

    def __init__(
        self,
        extractor: TextExtractor,
        deny_list: DenyListStore,
        verifier: IdentityVerifier,
        registry: SponsorRegistry,
        max_stay_days: int | None = None,
    ) -> None:
        self._extractor = extractor
        self._deny_list = deny_list
        self._verifier = verifier
        self._registry = registry
        self._max_stay_days = max_stay_days

    async def inspect(
        self,
        raw_text: str,
        edition: Edition,
        session_id: uuid.UUID | None = None,
        log: LogFn = _no_log,
        progress: ProgressFn = _no_progress,
    ) -> Verdict:
        await emit(SystemEvent(
            event_type=EventType.INSPECTION_STARTED,
            session_id=session_id,
            data={"edition": edition.value},
            source_module="inspection.pipeline",
        ))

        verdict = await self._run(raw_text, edition, log, progress)

        await emit(SystemEvent(
            event_type=EventType.INSPECTION_COMPLETED,
            session_id=session_id,
            data={
                "approved": verdict.approved,
                "pending": verdict.is_pending,
                "rejection": verdict.rejection.value if verdict.rejection else None,
            },
            source_module="inspection.pipeline",
        ))
        return verdict

    async def _run(self, raw_text: str, edition: Edition, log: LogFn, progress: ProgressFn) -> Verdict:
        # 1. Extraction
        await progress(InspectionStep.EXTRACTION)
        try:
            application = await self._extractor.extract(raw_text)
        except ExtractionError as exc:
            log(f"Extraction failed: {exc}")
            logger.warning("Extraction failed: %s", exc)
            return Verdict.reject(PARSE_FAILED, RejectionKind.INPUT)
        log(f"Extracted: {application.model_dump_json(exclude={'sponsor_refs'})}")

        # 2-3. Deny-lists
        await progress(InspectionStep.DENY_LIST)
        if await self._deny_list.is_listed(DenyCategory.NATIONALITY, application.nationality):
            log(f"Deny-list hit (nationality): {application.nationality}")
            return Verdict.reject(NATIONALITY_DENIED)
        if application.identity and await self._is_denied_handle(application.identity):
            log(f"Deny-list hit (identity): {application.identity}")
            return Verdict.reject(IDENTITY_DENIED.format(handle=application.identity))

        # 4. Identity existence
        if not application.identity:
            log("No identity handle in application")
            return Verdict.reject(MISSING_FIELDS, RejectionKind.INPUT)
        await progress(InspectionStep.IDENTITY)
        application.edition = edition_for_handle(application.identity, edition)
        if not await self._verifier.exists(application.edition, strip_edition_prefix(application.identity)):
            log(f"Identity not found ({application.edition.value}): {application.identity}")
            return Verdict.reject(IDENTITY_UNVERIFIED.format(handle=application.identity), RejectionKind.UNVERIFIED)

        # 5. Companions
        if application.companions:
            await progress(InspectionStep.COMPANIONS)
        rejection = await self._check_companions(application, edition, log)
        if rejection is not None:
            return rejection

        # 6. Sponsors
        if application.sponsors:
            await progress(InspectionStep.SPONSORS)
            try:
                matches = await self._registry.match(application.sponsors)
            except RegistryUnavailableError as exc:
                log(f"Sponsor registry failure: {exc}")
                return Verdict.reject(REGISTRY_FAILED, RejectionKind.SERVICE)
            refs: list[str] = []
            for name in application.sponsors:
                ref = matches.get(normalize_name(name))
                if ref is None:
                    log(f"Sponsor not matched, dropped: {name}")
                elif ref not in refs:
                    refs.append(ref)
            application.sponsor_refs = refs

        # 7. Business rules
        await progress(InspectionStep.RULES)
        reason = check_business_rules(application, self._max_stay_days)
        if reason is not None:
            log(f"Business rule rejection: {reason}")
            return Verdict.reject(reason, RejectionKind.INPUT if reason == MISSING_FIELDS else RejectionKind.POLICY)

        # 8. Sponsors confirm, or approve outright
        if application.sponsor_refs:
            log(f"Awaiting sponsors: {', '.join(application.sponsor_refs)}")
            return Verdict.pending(application, application.sponsor_refs)
        return Verdict.approve(application)

    async def _is_denied_handle(self, handle: str) -> bool:
        stripped = strip_edition_prefix(handle)
        if await self._deny_list.is_listed(DenyCategory.IDENTITY, handle):
            return True
        return stripped != handle and await self._deny_list.is_listed(DenyCategory.IDENTITY, stripped)

    async def _check_companions(self, application: Application, edition: Edition, log: LogFn) -> Verdict | None:
        for companion in application.companions:
            handle = companion.handle.strip()
            if not handle:
                continue
            if await self._is_denied_handle(handle):
                log(f"Deny-list hit (companion): {handle}")
                return Verdict.reject(COMPANION_DENIED.format(handle=handle))

            companion_edition = edition_for_handle(handle, edition)
            if not await self._verifier.exists(companion_edition, strip_edition_prefix(handle)):
                log(f"Companion not found ({companion_edition.value}): {handle}")
                return Verdict.reject(COMPANION_UNVERIFIED.format(handle=handle), RejectionKind.UNVERIFIED)

            if (
                companion.nationality
                and application.nationality
                and companion.nationality.strip().casefold() != application.nationality.strip().casefold()
            ):
                log(f"Companion nationality mismatch: {handle} ({companion.nationality})")
                return Verdict.reject(COMPANION_NATIONALITY.format(handle=handle))
        return None
