"""Tests for the inspection pipeline and the business rules.

Covers:
- Check order and short-circuiting (deny-lists before registries)
- BE_ prefix forcing the secondary registry
- Companion checks, with and without a declared nationality
- Sponsor matching (dedupe, unmatched names dropped, registry failure)
- Stay length boundary (744h passes, 745h fails) and rule ordering
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.errors import ExtractionError, RegistryUnavailableError
from src.inspection import check_business_rules, parse_instant, stay_hours
from src.inspection.pipeline import (
    COMPANION_DENIED,
    COMPANION_NATIONALITY,
    COMPANION_UNVERIFIED,
    IDENTITY_DENIED,
    IDENTITY_UNVERIFIED,
    NATIONALITY_DENIED,
    PARSE_FAILED,
    REGISTRY_FAILED,
    InspectionPipeline,
)
from src.inspection.rules import MISSING_FIELDS, STAY_TOO_LONG
from src.models.enums import DenyCategory, Edition, InspectionStep, RejectionKind
from src.schemas.application import Application, Companion
from src.schemas.events import EventType

JST = timezone(timedelta(hours=9))


# ── Helpers ──────────────────────────────────────────────────────────


def _application(**overrides) -> Application:
    data = {
        "identity": "steve",
        "nationality": "Freeland",
        "purpose": "sightseeing",
        "start": "2026-05-01T10:00:00",
        "end": "2026-05-03T18:00:00",
    }
    data.update(overrides)
    return Application(**data)


def _make_pipeline(
    application: Application | None = None,
    *,
    listed: set[tuple[DenyCategory, str]] | None = None,
    missing: set[str] | None = None,
    matches: dict[str, str] | None = None,
    extract_error: Exception | None = None,
    registry_error: Exception | None = None,
):
    extractor = MagicMock()
    extractor.extract = AsyncMock(return_value=application or _application(), side_effect=extract_error)

    deny_list = MagicMock()
    deny_list.is_listed = AsyncMock(side_effect=lambda category, value: (category, value) in (listed or set()))

    verifier = MagicMock()
    verifier.exists = AsyncMock(side_effect=lambda edition, handle: handle not in (missing or set()))

    registry = MagicMock()
    registry.match = AsyncMock(return_value=matches or {}, side_effect=registry_error)

    pipeline = InspectionPipeline(extractor, deny_list, verifier, registry, max_stay_days=31)
    return pipeline, extractor, deny_list, verifier, registry


@pytest.fixture(autouse=True)
def mock_emit():
    with patch("src.inspection.pipeline.emit", new_callable=AsyncMock) as emit:
        yield emit


# ── Pipeline ─────────────────────────────────────────────────────────


class TestExtraction:

    @pytest.mark.asyncio()
    async def test_extraction_failure_is_input_rejection(self):
        pipeline, *_ = _make_pipeline(extract_error=ExtractionError("bad json"))
        lines: list[str] = []

        verdict = await pipeline.inspect("raw", Edition.PRIMARY, log=lines.append)

        assert not verdict.approved
        assert verdict.reason == PARSE_FAILED
        assert verdict.rejection == RejectionKind.INPUT
        assert any("Extraction failed" in line for line in lines)

    @pytest.mark.asyncio()
    async def test_events_emitted(self, mock_emit):
        pipeline, *_ = _make_pipeline()
        await pipeline.inspect("raw", Edition.PRIMARY)

        types = [call[0][0].event_type for call in mock_emit.call_args_list]
        assert types == [EventType.INSPECTION_STARTED, EventType.INSPECTION_COMPLETED]
        assert mock_emit.call_args_list[1][0][0].data["approved"] is True


class TestDenyLists:

    @pytest.mark.asyncio()
    async def test_nationality_hit_stops_before_registries(self):
        pipeline, _, _, verifier, registry = _make_pipeline(
            _application(nationality="Graystone", sponsors=["Taro"]),
            listed={(DenyCategory.NATIONALITY, "Graystone")},
        )
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)

        assert verdict.reason == NATIONALITY_DENIED
        assert verdict.rejection == RejectionKind.POLICY
        verifier.exists.assert_not_awaited()
        registry.match.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_identity_hit(self):
        pipeline, _, _, verifier, _ = _make_pipeline(listed={(DenyCategory.IDENTITY, "steve")})
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)

        assert verdict.reason == IDENTITY_DENIED.format(handle="steve")
        verifier.exists.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_identity_hit_through_prefix(self):
        pipeline, *_ = _make_pipeline(
            _application(identity="BE_steve"),
            listed={(DenyCategory.IDENTITY, "steve")},
        )
        verdict = await pipeline.inspect("raw", Edition.SECONDARY)
        assert verdict.reason == IDENTITY_DENIED.format(handle="BE_steve")


class TestIdentity:

    @pytest.mark.asyncio()
    async def test_prefixed_handle_uses_secondary_registry(self):
        pipeline, _, _, verifier, _ = _make_pipeline(_application(identity="BE_steve"), missing={"steve"})
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)

        verifier.exists.assert_awaited_once_with(Edition.SECONDARY, "steve")
        assert verdict.reason == IDENTITY_UNVERIFIED.format(handle="BE_steve")
        assert verdict.rejection == RejectionKind.UNVERIFIED

    @pytest.mark.asyncio()
    async def test_declared_edition_used_without_prefix(self):
        pipeline, _, _, verifier, _ = _make_pipeline()
        verdict = await pipeline.inspect("raw", Edition.SECONDARY)

        verifier.exists.assert_awaited_once_with(Edition.SECONDARY, "steve")
        assert verdict.approved
        assert verdict.application.edition == Edition.SECONDARY

    @pytest.mark.asyncio()
    async def test_missing_identity(self):
        pipeline, _, _, verifier, _ = _make_pipeline(_application(identity=None))
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)

        assert verdict.reason == MISSING_FIELDS
        assert verdict.rejection == RejectionKind.INPUT
        verifier.exists.assert_not_awaited()


class TestCompanions:

    @pytest.mark.asyncio()
    async def test_denied_companion(self):
        pipeline, *_ = _make_pipeline(
            _application(companions=["alex"]),
            listed={(DenyCategory.IDENTITY, "alex")},
        )
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)
        assert verdict.reason == COMPANION_DENIED.format(handle="alex")

    @pytest.mark.asyncio()
    async def test_unknown_companion(self):
        pipeline, _, _, verifier, _ = _make_pipeline(_application(companions=["alex", "BE_sam"]), missing={"sam"})
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)

        assert verdict.reason == COMPANION_UNVERIFIED.format(handle="BE_sam")
        assert verdict.rejection == RejectionKind.UNVERIFIED
        verifier.exists.assert_any_await(Edition.PRIMARY, "alex")
        verifier.exists.assert_any_await(Edition.SECONDARY, "sam")

    @pytest.mark.asyncio()
    async def test_companion_with_other_nationality(self):
        app = _application(companions=[Companion(handle="alex", nationality="Graystone")])
        pipeline, *_ = _make_pipeline(app)
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)

        assert verdict.reason == COMPANION_NATIONALITY.format(handle="alex")
        assert verdict.rejection == RejectionKind.POLICY

    @pytest.mark.asyncio()
    async def test_companion_with_same_nationality_any_case(self):
        app = _application(companions=[Companion(handle="alex", nationality=" freeland ")])
        pipeline, *_ = _make_pipeline(app)
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)
        assert verdict.approved

    @pytest.mark.asyncio()
    async def test_companion_without_nationality_passes(self):
        pipeline, *_ = _make_pipeline(_application(companions=["alex"]))
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)
        assert verdict.approved


class TestSponsors:

    @pytest.mark.asyncio()
    async def test_matched_sponsors_make_verdict_pending(self):
        pipeline, _, _, _, registry = _make_pipeline(
            _application(sponsors=["Taro", "Hanako", "Ghost"]),
            matches={"Taro": "111", "Hanako": "222"},
        )
        lines: list[str] = []
        verdict = await pipeline.inspect("raw", Edition.PRIMARY, log=lines.append)

        registry.match.assert_awaited_once_with(["Taro", "Hanako", "Ghost"])
        assert verdict.is_pending
        assert not verdict.approved
        assert verdict.pending_sponsor_ids == ["111", "222"]
        assert verdict.application.sponsor_refs == ["111", "222"]
        assert any("Sponsor not matched, dropped: Ghost" in line for line in lines)

    @pytest.mark.asyncio()
    async def test_duplicate_refs_collapsed(self):
        pipeline, *_ = _make_pipeline(
            _application(sponsors=["Taro", "Taro "]),
            matches={"Taro": "111"},
        )
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)
        assert verdict.pending_sponsor_ids == ["111"]

    @pytest.mark.asyncio()
    async def test_no_match_approves(self):
        pipeline, *_ = _make_pipeline(_application(sponsors=["Ghost"]), matches={})
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)
        assert verdict.approved
        assert not verdict.is_pending

    @pytest.mark.asyncio()
    async def test_registry_failure_is_service_rejection(self):
        pipeline, *_ = _make_pipeline(
            _application(sponsors=["Taro"]),
            registry_error=RegistryUnavailableError("down", status_code=503),
        )
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)
        assert verdict.reason == REGISTRY_FAILED
        assert verdict.rejection == RejectionKind.SERVICE

    @pytest.mark.asyncio()
    async def test_no_sponsors_skips_registry(self):
        pipeline, _, _, _, registry = _make_pipeline()
        await pipeline.inspect("raw", Edition.PRIMARY)
        registry.match.assert_not_awaited()


class TestBusinessRulesInPipeline:

    @pytest.mark.asyncio()
    async def test_long_stay_is_policy_rejection(self):
        pipeline, *_ = _make_pipeline(_application(start="2026-05-01T00:00:00", end="2026-06-15T00:00:00"))
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)
        assert verdict.reason == STAY_TOO_LONG.format(days=31)
        assert verdict.rejection == RejectionKind.POLICY

    @pytest.mark.asyncio()
    async def test_missing_purpose_is_input_rejection(self):
        pipeline, *_ = _make_pipeline(_application(purpose=None))
        verdict = await pipeline.inspect("raw", Edition.PRIMARY)
        assert verdict.reason == MISSING_FIELDS
        assert verdict.rejection == RejectionKind.INPUT


class TestProgress:

    @pytest.mark.asyncio()
    async def test_every_step_reported_in_order(self):
        app = _application(companions=[Companion(handle="alex")], sponsors=["Taro"])
        pipeline, *_ = _make_pipeline(app, matches={"Taro": "s1"})
        steps = AsyncMock()

        verdict = await pipeline.inspect("raw", Edition.PRIMARY, progress=steps)

        assert verdict.is_pending
        assert [c[0][0] for c in steps.await_args_list] == [
            InspectionStep.EXTRACTION,
            InspectionStep.DENY_LIST,
            InspectionStep.IDENTITY,
            InspectionStep.COMPANIONS,
            InspectionStep.SPONSORS,
            InspectionStep.RULES,
        ]

    @pytest.mark.asyncio()
    async def test_optional_steps_skipped(self):
        pipeline, *_ = _make_pipeline()
        steps = AsyncMock()
        await pipeline.inspect("raw", Edition.PRIMARY, progress=steps)

        reported = [c[0][0] for c in steps.await_args_list]
        assert InspectionStep.COMPANIONS not in reported
        assert InspectionStep.SPONSORS not in reported
        assert reported[-1] == InspectionStep.RULES

    @pytest.mark.asyncio()
    async def test_stops_at_rejecting_step(self):
        pipeline, *_ = _make_pipeline(listed={(DenyCategory.NATIONALITY, "Freeland")})
        steps = AsyncMock()
        await pipeline.inspect("raw", Edition.PRIMARY, progress=steps)

        assert [c[0][0] for c in steps.await_args_list] == [InspectionStep.EXTRACTION, InspectionStep.DENY_LIST]


# ── Rules ────────────────────────────────────────────────────────────


class TestStayDuration:

    def test_744_hours_passes(self):
        app = _application(start="2026-05-01T00:00:00", end="2026-06-01T00:00:00")
        assert check_business_rules(app, max_stay_days=31) is None

    def test_745_hours_fails(self):
        app = _application(start="2026-05-01T00:00:00", end="2026-06-01T01:00:00")
        assert check_business_rules(app, max_stay_days=31) == STAY_TOO_LONG.format(days=31)

    def test_partial_hour_rounds_up(self):
        app = _application(start="2026-05-01T00:00:00", end="2026-06-01T00:00:01")
        assert check_business_rules(app, max_stay_days=31) == STAY_TOO_LONG.format(days=31)

    def test_duration_checked_before_required_fields(self):
        app = _application(purpose=None, start="2026-05-01T00:00:00", end="2026-07-01T00:00:00")
        assert check_business_rules(app, max_stay_days=31) == STAY_TOO_LONG.format(days=31)

    def test_stay_hours(self):
        start = datetime(2026, 5, 1, tzinfo=UTC)
        assert stay_hours(start, start + timedelta(hours=2)) == 2
        assert stay_hours(start, start + timedelta(hours=2, minutes=1)) == 3


class TestRequiredFields:

    @pytest.mark.parametrize("name", ["identity", "nationality", "purpose", "start", "end"])
    def test_each_field_required(self, name):
        assert check_business_rules(_application(**{name: None})) == MISSING_FIELDS

    def test_unparsable_date(self):
        assert check_business_rules(_application(start="next friday")) == MISSING_FIELDS

    def test_end_before_start(self):
        app = _application(start="2026-05-03T00:00:00", end="2026-05-01T00:00:00")
        assert check_business_rules(app) == MISSING_FIELDS

    def test_valid(self):
        assert check_business_rules(_application()) is None


class TestParseInstant:

    def test_zulu_suffix(self):
        assert parse_instant("2026-05-01T10:00:00Z") == datetime(2026, 5, 1, 10, tzinfo=UTC)

    def test_naive_gets_default_zone(self):
        parsed = parse_instant("2026-05-01T10:00:00", default_tz=JST)
        assert parsed.tzinfo is JST
        assert parsed.hour == 10

    def test_date_only(self):
        assert parse_instant("2026-05-01", default_tz=UTC) == datetime(2026, 5, 1, tzinfo=UTC)

    @pytest.mark.parametrize("value", [None, "", "tomorrow", "2026-13-01"])
    def test_unparsable(self, value):
        assert parse_instant(value) is None
