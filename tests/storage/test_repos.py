"""Tests for storage repositories."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from hunt_engine.matching.models import HuntStatus, ResolvedIdentity, UnresolvedIdentity
from hunt_engine.storage.repos import (
    HuntAlertDTO,
    HuntAlertRepository,
    HuntMatchDTO,
    HuntMatchRepository,
    HuntRepository,
    HuntScanDTO,
    HuntScanRepository,
    ListingDTO,
    ListingRepository,
    MatchView,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def make_match():
    def _make(listing_id: str = "pickles:1001", **overrides) -> HuntMatchDTO:
        values = {
            "hunt_id": "hunt-1",
            "listing_id": listing_id,
            "criteria_version": 1,
            "source": "pickles",
            "source_tier": 1,
            "decision": "BUY",
            "identity_score": Decimal("10.00"),
            "priority_score": 1000,
            "rank_position": 1,
            "asking_price": Decimal("45000"),
            "gap_dollars": Decimal("5000"),
            "gap_pct": Decimal("10.000"),
            "reasons": ("gap $5,000 (10.000%)",),
        }
        values.update(overrides)
        return HuntMatchDTO(**values)

    return _make


@pytest.fixture
def make_alert():
    def _make(dedup_key: str = "a" * 64, **overrides) -> HuntAlertDTO:
        values = {
            "hunt_id": "hunt-1",
            "listing_id": "pickles:1001",
            "criteria_version": 1,
            "alert_type": "BUY",
            "dedup_key": dedup_key,
            "payload": {"asking_price": "45000", "make": "Toyota"},
        }
        values.update(overrides)
        return HuntAlertDTO(**values)

    return _make


def stored_listing(listing_id: str, **overrides) -> ListingDTO:
    values = {
        "listing_id": listing_id,
        "source": "pickles",
        "url": f"https://www.pickles.com.au/used/details/cars/{listing_id.split(':')[-1]}",
        "make": "Toyota",
        "model": "Hilux",
        "variant": "SR5",
        "year": 2021,
        "price": "45000",
        "state": "QLD",
    }
    values.update(overrides)
    return ListingDTO(**values)


# ============================================================================
# HuntRepository Tests
# ============================================================================


class TestHuntRepository:
    """Tests for HuntRepository."""

    @pytest.mark.asyncio
    async def test_get_not_found(self, async_session: AsyncSession) -> None:
        assert await HuntRepository(async_session).get("missing") is None

    @pytest.mark.asyncio
    async def test_insert_and_get(self, async_session: AsyncSession, make_hunt_dto) -> None:
        repo = HuntRepository(async_session)
        await repo.insert(make_hunt_dto(must_have_tokens=("canopy",), states=("QLD", "NSW")))
        await async_session.commit()

        hunt = await repo.get("hunt-1")

        assert hunt is not None
        assert hunt.criteria_version == 1
        assert hunt.sources_enabled == ("pickles", "carsales")
        assert hunt.must_have_tokens == ("canopy",)
        assert hunt.states == ("QLD", "NSW")
        assert hunt.proven_exit_value == Decimal("50000")
        assert hunt.criteria_updated_at is not None
        assert hunt.criteria_updated_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_to_snapshot(self, async_session: AsyncSession, make_hunt_dto) -> None:
        repo = HuntRepository(async_session)
        dto = await repo.insert(make_hunt_dto(engine_code="1GD", include_private=True))

        snapshot = dto.to_snapshot()

        assert snapshot.hunt_id == "hunt-1"
        assert snapshot.target.engine_code == "1GD"
        assert snapshot.status is HuntStatus.ACTIVE
        assert snapshot.source_scope == ("pickles", "carsales", "gumtree_private")

    @pytest.mark.asyncio
    async def test_bump_criteria_version(self, async_session: AsyncSession, make_hunt_dto, now) -> None:
        repo = HuntRepository(async_session)
        await repo.insert(make_hunt_dto())

        assert await repo.bump_criteria_version("hunt-1", now=now) == 2
        assert await repo.bump_criteria_version("hunt-1", now=now) == 3
        assert await repo.get_criteria_version("hunt-1") == 3

    @pytest.mark.asyncio
    async def test_bump_missing_hunt(self, async_session: AsyncSession, now) -> None:
        with pytest.raises(LookupError):
            await HuntRepository(async_session).bump_criteria_version("missing", now=now)

    @pytest.mark.asyncio
    async def test_list_due(self, async_session: AsyncSession, make_hunt_dto, now) -> None:
        repo = HuntRepository(async_session)
        await repo.insert(make_hunt_dto(id="never-scanned"))
        await repo.insert(make_hunt_dto(id="recent", last_scan_at=now - timedelta(minutes=10)))
        await repo.insert(make_hunt_dto(id="overdue", last_scan_at=now - timedelta(hours=2), priority=5))
        await repo.insert(make_hunt_dto(id="paused", status="paused"))
        await repo.insert(make_hunt_dto(id="expired", expires_at=now - timedelta(days=1)))
        await async_session.commit()

        due = await repo.list_due(now=now)

        assert [h.id for h in due] == ["overdue", "never-scanned"]

    @pytest.mark.asyncio
    async def test_expire_overdue(self, async_session: AsyncSession, make_hunt_dto, now) -> None:
        repo = HuntRepository(async_session)
        await repo.insert(make_hunt_dto(id="old", expires_at=now - timedelta(minutes=1)))
        await repo.insert(make_hunt_dto(id="current", expires_at=now + timedelta(days=1)))
        await async_session.commit()

        assert await repo.expire_overdue(now=now) == 1
        await async_session.commit()

        old = await repo.get("old")
        current = await repo.get("current")
        assert old is not None and old.status == "expired"
        assert current is not None and current.status == "active"


# ============================================================================
# ListingRepository Tests
# ============================================================================


class TestListingRepository:
    """Tests for ListingRepository."""

    @pytest.mark.asyncio
    async def test_upsert_keeps_first_seen(self, async_session: AsyncSession, now) -> None:
        repo = ListingRepository(async_session)
        await repo.upsert(stored_listing("pickles:1", first_seen_at=now - timedelta(days=5)))
        await repo.upsert(stored_listing("pickles:1", price="44000", first_seen_at=now))
        await async_session.commit()

        listing = await repo.get("pickles:1")

        assert listing is not None
        assert listing.price == "44000"
        assert listing.first_seen_at == now - timedelta(days=5)

    @pytest.mark.asyncio
    async def test_list_for_hunt_filters(self, async_session: AsyncSession, make_hunt) -> None:
        repo = ListingRepository(async_session)
        await repo.upsert(stored_listing("pickles:1"))
        await repo.upsert(stored_listing("pickles:2", year=2018))
        await repo.upsert(stored_listing("pickles:3", make="Ford", model="Ranger"))
        await repo.upsert(stored_listing("pickles:4", status="sold"))
        await repo.upsert(stored_listing("carsales:5", source="carsales"))
        await repo.upsert(stored_listing("pickles:6", is_private=True))
        await repo.upsert(
            stored_listing("pickles:7", identity_resolved=False, make=None, raw_text="hilux sr5 ute")
        )
        await async_session.commit()

        rows = await repo.list_for_hunt(source="Pickles", hunt=make_hunt())

        assert sorted(r.listing_id for r in rows) == ["pickles:1", "pickles:7"]

    @pytest.mark.asyncio
    async def test_list_for_hunt_state_scope(self, async_session: AsyncSession, make_hunt) -> None:
        repo = ListingRepository(async_session)
        await repo.upsert(stored_listing("pickles:1", state="QLD"))
        await repo.upsert(stored_listing("pickles:2", state="WA"))
        await async_session.commit()

        hunt = make_hunt(geo_mode="states", states=("qld",))
        rows = await repo.list_for_hunt(source="pickles", hunt=hunt)

        assert [r.listing_id for r in rows] == ["pickles:1"]

    def test_to_candidate(self) -> None:
        resolved = stored_listing("pickles:1", source_tier=1).to_candidate()
        unresolved = stored_listing(
            "pickles:2", identity_resolved=False, variant=None, raw_text="dual cab 4x4"
        ).to_candidate()

        assert isinstance(resolved.identity, ResolvedIdentity)
        assert resolved.identity.year == 2021
        assert resolved.price == "45000"
        assert isinstance(unresolved.identity, UnresolvedIdentity)
        assert unresolved.identity.raw_text == "Toyota Hilux dual cab 4x4"


# ============================================================================
# HuntMatchRepository Tests
# ============================================================================


class TestHuntMatchRepository:
    """Tests for HuntMatchRepository."""

    @pytest.mark.asyncio
    async def test_upsert_overwrites_same_version(
        self, async_session: AsyncSession, make_hunt_dto, make_match
    ) -> None:
        await HuntRepository(async_session).insert(make_hunt_dto())
        repo = HuntMatchRepository(async_session)
        await repo.upsert_many([make_match(decision="WATCH", asking_price=Decimal("48500"))])
        await repo.upsert_many([make_match()])
        await async_session.commit()

        matches = await repo.list_for_hunt("hunt-1")

        assert len(matches) == 1
        assert matches[0].decision == "BUY"
        assert matches[0].asking_price == Decimal("45000")
        assert matches[0].reasons == ("gap $5,000 (10.000%)",)

    @pytest.mark.asyncio
    async def test_upsert_empty(self, async_session: AsyncSession) -> None:
        assert await HuntMatchRepository(async_session).upsert_many([]) == 0

    @pytest.mark.asyncio
    async def test_list_view_filters(self, async_session: AsyncSession, make_hunt_dto, make_match) -> None:
        await HuntRepository(async_session).insert(make_hunt_dto())
        repo = HuntMatchRepository(async_session)
        await repo.upsert_many(
            [
                make_match("a", decision="BUY", priority_score=400, rank_position=1),
                make_match("b", decision="WATCH", priority_score=300, rank_position=2),
                make_match("c", decision="UNVERIFIED", priority_score=200, rank_position=3),
                make_match("d", decision="IGNORE", priority_score=100, rank_position=4),
            ]
        )
        await async_session.commit()

        live = await repo.list_view("hunt-1", MatchView.LIVE)
        opportunities = await repo.list_view("hunt-1", MatchView.OPPORTUNITIES)
        unverified = await repo.list_view("hunt-1", MatchView.UNVERIFIED)
        rejected = await repo.list_view("hunt-1", MatchView.REJECTED)
        limited = await repo.list_view("hunt-1", MatchView.LIVE, limit=1)

        assert [m.listing_id for m in live] == ["a", "b", "c"]
        assert [m.listing_id for m in opportunities] == ["a", "b"]
        assert [m.listing_id for m in unverified] == ["c"]
        assert [m.listing_id for m in rejected] == ["d"]
        assert [m.listing_id for m in limited] == ["a"]

    @pytest.mark.asyncio
    async def test_candidate_counts(self, async_session: AsyncSession, make_hunt_dto, make_match) -> None:
        await HuntRepository(async_session).insert(make_hunt_dto())
        repo = HuntMatchRepository(async_session)
        await repo.upsert_many(
            [
                make_match("a", decision="BUY"),
                make_match("b", decision="WATCH", source_tier=2),
                make_match("c", decision="UNVERIFIED", source_tier=3),
                make_match("d", decision="IGNORE"),
            ]
        )
        await async_session.commit()

        counts = await repo.candidate_counts("hunt-1")

        assert counts.total == 4
        assert counts.live_matches == 3
        assert counts.opportunities == 2
        assert counts.by_tier == {"auction": 1, "marketplace": 1, "dealer": 1}

    @pytest.mark.asyncio
    async def test_old_versions_excluded_and_marked_stale(
        self, async_session: AsyncSession, make_hunt_dto, make_match, now
    ) -> None:
        hunts = HuntRepository(async_session)
        await hunts.insert(make_hunt_dto())
        repo = HuntMatchRepository(async_session)
        await repo.upsert_many([make_match("old")])
        await hunts.bump_criteria_version("hunt-1", now=now)
        await repo.upsert_many([make_match("new", criteria_version=2)])
        await async_session.commit()

        # Excluded by version even before the sweep runs.
        assert [m.listing_id for m in await repo.list_view("hunt-1")] == ["new"]
        assert [m.listing_id for m in await repo.list_for_hunt("hunt-1", include_stale=False)] == ["new"]

        assert await repo.mark_stale("hunt-1", below_version=2) == 1
        await async_session.commit()

        audit = await repo.list_for_hunt("hunt-1")
        assert [(m.listing_id, m.is_stale) for m in audit] == [("old", True), ("new", False)]

    @pytest.mark.asyncio
    async def test_clear_cheapest(self, async_session: AsyncSession, make_hunt_dto, make_match) -> None:
        await HuntRepository(async_session).insert(make_hunt_dto())
        repo = HuntMatchRepository(async_session)
        await repo.upsert_many([make_match("a", is_cheapest=True)])

        await repo.clear_cheapest("hunt-1", 1)
        await async_session.commit()

        match = await repo.get("hunt-1", "a", 1)
        assert match is not None
        assert match.is_cheapest is False


# ============================================================================
# HuntAlertRepository Tests
# ============================================================================


class TestHuntAlertRepository:
    """Tests for HuntAlertRepository."""

    @pytest.mark.asyncio
    async def test_insert_if_absent(self, async_session: AsyncSession, make_hunt_dto, make_alert) -> None:
        await HuntRepository(async_session).insert(make_hunt_dto())
        repo = HuntAlertRepository(async_session)

        first = await repo.insert_if_absent(make_alert())
        second = await repo.insert_if_absent(make_alert(alert_type="WATCH"))
        await async_session.commit()

        assert first is not None
        assert second is None
        alerts = await repo.list_for_hunt("hunt-1")
        assert len(alerts) == 1
        assert alerts[0].payload == {"asking_price": "45000", "make": "Toyota"}

    @pytest.mark.asyncio
    async def test_acknowledge_once(self, async_session: AsyncSession, make_hunt_dto, make_alert, now) -> None:
        await HuntRepository(async_session).insert(make_hunt_dto())
        repo = HuntAlertRepository(async_session)
        alert_id = await repo.insert_if_absent(make_alert())
        assert alert_id is not None

        assert await repo.acknowledge(alert_id, at=now) is True
        assert await repo.acknowledge(alert_id, at=now) is False
        assert await repo.acknowledge(9999) is False

        # An acknowledged alert still blocks its dedup key.
        assert await repo.insert_if_absent(make_alert()) is None
        await async_session.commit()

        alert = await repo.get_by_dedup_key("a" * 64)
        assert alert is not None
        assert alert.acknowledged_at == now

    @pytest.mark.asyncio
    async def test_mark_stale(self, async_session: AsyncSession, make_hunt_dto, make_alert) -> None:
        await HuntRepository(async_session).insert(make_hunt_dto(criteria_version=2))
        repo = HuntAlertRepository(async_session)
        await repo.insert_if_absent(make_alert("a" * 64))
        await repo.insert_if_absent(make_alert("b" * 64, criteria_version=2))

        assert await repo.mark_stale("hunt-1", below_version=2) == 1
        await async_session.commit()

        live = await repo.list_for_hunt("hunt-1")
        everything = await repo.list_for_hunt("hunt-1", include_stale=True)
        assert [a.criteria_version for a in live] == [2]
        assert len(everything) == 2

    @pytest.mark.asyncio
    async def test_live_read_skips_unswept_old_versions(
        self, async_session: AsyncSession, make_hunt_dto, make_alert
    ) -> None:
        await HuntRepository(async_session).insert(make_hunt_dto(criteria_version=2))
        repo = HuntAlertRepository(async_session)
        await repo.insert_if_absent(make_alert("a" * 64))
        await async_session.commit()

        assert await repo.list_for_hunt("hunt-1") == []
        assert len(await repo.list_for_hunt("hunt-1", include_stale=True)) == 1


# ============================================================================
# HuntScanRepository Tests
# ============================================================================


class TestHuntScanRepository:
    """Tests for HuntScanRepository."""

    @pytest.mark.asyncio
    async def test_insert_complete_latest(self, async_session: AsyncSession, make_hunt_dto, now) -> None:
        await HuntRepository(async_session).insert(make_hunt_dto())
        repo = HuntScanRepository(async_session)
        earlier = now - timedelta(hours=1)
        await repo.insert(
            HuntScanDTO(
                id="scan-1",
                hunt_id="hunt-1",
                criteria_version=1,
                status="ok",
                started_at=earlier,
                completed_at=earlier,
            )
        )
        running = HuntScanDTO(
            id="scan-2", hunt_id="hunt-1", criteria_version=1, status="running", started_at=now
        )
        await repo.insert(running)

        running.status = "ok"
        running.completed_at = now + timedelta(seconds=5)
        running.candidates_checked = 12
        running.matches_found = 3
        running.alerts_emitted = 2
        running.metadata = {"warnings": []}
        await repo.complete(running)
        await async_session.commit()

        latest = await repo.latest("hunt-1")
        assert latest is not None
        assert latest.id == "scan-2"
        assert latest.status == "ok"
        assert latest.candidates_checked == 12
        assert latest.metadata == {"warnings": []}

    @pytest.mark.asyncio
    async def test_complete_is_write_once(self, async_session: AsyncSession, make_hunt_dto, now) -> None:
        await HuntRepository(async_session).insert(make_hunt_dto())
        repo = HuntScanRepository(async_session)
        scan = HuntScanDTO(
            id="scan-1", hunt_id="hunt-1", criteria_version=1, status="running", started_at=now
        )
        await repo.insert(scan)

        scan.status = "ok"
        scan.completed_at = now
        await repo.complete(scan)
        scan.status = "error"
        await repo.complete(scan)
        await async_session.commit()

        stored = await repo.get("scan-1")
        assert stored is not None
        assert stored.status == "ok"
