"""Tests for criteria versioning."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from hunt_engine.matching.models import HuntStatus
from hunt_engine.storage.repos import (
    HuntAlertDTO,
    HuntAlertRepository,
    HuntMatchDTO,
    HuntMatchRepository,
    HuntRepository,
    MatchView,
)
from hunt_engine.versioning import CriteriaVersionTracker, criteria_changes, is_stale


def _match(listing_id: str, version: int = 1) -> HuntMatchDTO:
    return HuntMatchDTO(
        hunt_id="hunt-1",
        listing_id=listing_id,
        criteria_version=version,
        source="pickles",
        source_tier=1,
        decision="BUY",
        identity_score=Decimal("10"),
        priority_score=1,
        rank_position=1,
    )


@pytest.fixture
async def seeded(async_session: AsyncSession, make_hunt_dto) -> AsyncSession:
    """Hunt at v1 with two matches and one alert."""
    await HuntRepository(async_session).insert(make_hunt_dto())
    await HuntMatchRepository(async_session).upsert_many([_match("pickles:1"), _match("pickles:2")])
    await HuntAlertRepository(async_session).insert_if_absent(
        HuntAlertDTO(
            hunt_id="hunt-1",
            listing_id="pickles:1",
            criteria_version=1,
            alert_type="BUY",
            dedup_key="k" * 64,
            payload={},
        )
    )
    await async_session.commit()
    return async_session


class TestCriteriaChanges:
    """Tests for change detection."""

    def test_detects_changed_criteria_only(self, make_hunt_dto) -> None:
        current = make_hunt_dto()

        changed = criteria_changes(
            current,
            {"year": 2022, "badge": "SR5", "priority": 9, "proven_exit_value": 50000},
        )

        assert changed == {"year"}

    def test_list_fields_compare_by_value(self, make_hunt_dto) -> None:
        current = make_hunt_dto()

        assert criteria_changes(current, {"sources_enabled": ["pickles", "carsales"]}) == set()
        assert criteria_changes(current, {"sources_enabled": ["pickles"]}) == {"sources_enabled"}

    def test_is_stale(self) -> None:
        assert is_stale(1, 2) is True
        assert is_stale(2, 2) is False


class TestCriteriaVersionTracker:
    """Tests for CriteriaVersionTracker."""

    @pytest.mark.asyncio
    async def test_year_edit_marks_matches_stale(self, seeded: AsyncSession, now) -> None:
        tracker = CriteriaVersionTracker(seeded)

        result = await tracker.apply_edit("hunt-1", {"year": 2022}, now=now)
        await seeded.commit()

        assert result.version_bumped is True
        assert result.criteria_version == 2
        assert result.changed_fields == frozenset({"year"})
        assert result.stale_matches == 2
        assert result.stale_alerts == 1

        matches = HuntMatchRepository(seeded)
        audit = await matches.list_for_hunt("hunt-1")
        assert all(m.is_stale for m in audit)
        assert await matches.list_view("hunt-1", MatchView.LIVE) == []
        assert await HuntAlertRepository(seeded).list_for_hunt("hunt-1") == []

        hunt = await HuntRepository(seeded).get("hunt-1")
        assert hunt is not None
        assert hunt.year == 2022
        assert hunt.criteria_version == 2

    @pytest.mark.asyncio
    async def test_lifecycle_edit_keeps_version(self, seeded: AsyncSession, now) -> None:
        tracker = CriteriaVersionTracker(seeded)

        result = await tracker.apply_edit(
            "hunt-1",
            {"priority": 5, "status": HuntStatus.PAUSED, "expires_at": now + timedelta(days=30)},
            now=now,
        )
        await seeded.commit()

        assert result.version_bumped is False
        assert result.criteria_version == 1
        assert len(await HuntMatchRepository(seeded).list_view("hunt-1")) == 2

    @pytest.mark.asyncio
    async def test_same_value_edit_keeps_version(self, seeded: AsyncSession, now) -> None:
        result = await CriteriaVersionTracker(seeded).apply_edit(
            "hunt-1", {"year": 2021, "make": "Toyota"}, now=now
        )

        assert result.version_bumped is False

    @pytest.mark.asyncio
    async def test_rejects_unknown_fields(self, seeded: AsyncSession) -> None:
        with pytest.raises(ValueError, match="not editable"):
            await CriteriaVersionTracker(seeded).apply_edit("hunt-1", {"criteria_version": 7})

    @pytest.mark.asyncio
    async def test_rejects_bad_status(self, seeded: AsyncSession) -> None:
        with pytest.raises(ValueError):
            await CriteriaVersionTracker(seeded).apply_edit("hunt-1", {"status": "archived"})

    @pytest.mark.asyncio
    async def test_missing_hunt(self, async_session: AsyncSession) -> None:
        with pytest.raises(LookupError):
            await CriteriaVersionTracker(async_session).apply_edit("missing", {"year": 2020})

    @pytest.mark.asyncio
    async def test_reset_results(self, seeded: AsyncSession, now) -> None:
        hunts = HuntRepository(seeded)
        await hunts.mark_scanned("hunt-1", at=now)

        result = await CriteriaVersionTracker(seeded).reset_results("hunt-1", now=now)
        await seeded.commit()

        assert result.version_bumped is True
        assert result.criteria_version == 2
        assert result.stale_matches == 2
        hunt = await hunts.get("hunt-1")
        assert hunt is not None
        assert hunt.last_scan_at is None

    @pytest.mark.asyncio
    async def test_reset_missing_hunt(self, async_session: AsyncSession) -> None:
        with pytest.raises(LookupError):
            await CriteriaVersionTracker(async_session).reset_results("missing")
