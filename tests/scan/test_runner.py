"""Tests for the hunt scan runner."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from hunt_engine.matching.models import ErrorCode, ScanStatus
from hunt_engine.scan.lock import HuntScanLock
from hunt_engine.scan.runner import HuntNotFoundError, HuntScanner, ScanOutcome
from hunt_engine.scan.sources import SourceRegistry, SourceUnavailableError, StaticCandidateSource
from hunt_engine.storage.database import DatabaseManager
from hunt_engine.storage.repos import (
    HuntAlertRepository,
    HuntMatchRepository,
    HuntRepository,
    HuntScanRepository,
    MatchView,
)
from hunt_engine.versioning import CriteriaVersionTracker


class FailingSource:
    def __init__(self, name: str) -> None:
        self.name = name

    async def fetch(self, hunt):
        raise SourceUnavailableError(self.name, "HTTP 503")


class SlowSource:
    def __init__(self, name: str, delay: float) -> None:
        self.name = name
        self.delay = delay

    async def fetch(self, hunt):
        await asyncio.sleep(self.delay)
        return []


class EditingSource:
    """Edits the hunt's criteria while its listings are being fetched."""

    def __init__(self, db: DatabaseManager, listings) -> None:
        self.name = "pickles"
        self.db = db
        self.listings = listings

    async def fetch(self, hunt):
        async with self.db.get_async_session() as session:
            await CriteriaVersionTracker(session).apply_edit(hunt.hunt_id, {"year": 2022})
        return list(self.listings)


@pytest.fixture
def listings(make_listing, now):
    return [
        make_listing(listing_id="pickles:1", price=45000),
        make_listing(listing_id="pickles:2", price=48500),
        make_listing(listing_id="pickles:3", price=None),
        make_listing(listing_id="pickles:4", model="Prado"),
    ]


@pytest.fixture
def scanner_for(db: DatabaseManager):
    def _build(*sources, **kwargs) -> HuntScanner:
        return HuntScanner(db, SourceRegistry(sources), **kwargs)

    return _build


async def _scan_row(db: DatabaseManager, scan_id: str):
    async with db.get_async_session() as session:
        return await HuntScanRepository(session).get(scan_id)


# ============================================================================
# Happy path
# ============================================================================


class TestScan:
    """Tests for HuntScanner.scan."""

    @pytest.mark.asyncio
    async def test_scan_classifies_and_records(
        self, db, insert_hunt, scanner_for, listings, make_listing, now
    ) -> None:
        await insert_hunt()
        scanner = scanner_for(
            StaticCandidateSource("pickles", listings),
            StaticCandidateSource(
                "carsales",
                [
                    make_listing(
                        listing_id="carsales:9",
                        source="carsales",
                        url="https://www.carsales.com.au/cars/details/9",
                        price=44000,
                    )
                ],
            ),
        )

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.status is ScanStatus.OK
        assert outcome.exit_code == 0
        assert outcome.candidates_checked == 5
        assert (outcome.buy, outcome.watch, outcome.unverified, outcome.ignored) == (2, 1, 1, 1)
        assert outcome.matches_found == 4
        assert outcome.alerts_emitted == 3

        row = await _scan_row(db, outcome.scan_id)
        assert row is not None
        assert row.status == "ok"
        assert row.completed_at is not None
        assert row.matches_found == 4
        assert row.metadata["sources_scanned"] == ["carsales", "pickles"]
        assert row.metadata["rejection_reasons"] == {"NO_PRICE": 1, "SERIES_MISMATCH": 1}

        async with db.get_async_session() as session:
            live = await HuntMatchRepository(session).list_view("hunt-1", MatchView.LIVE)
            hunt = await HuntRepository(session).get("hunt-1")
        # Auction tier first, then marketplace.
        assert [m.listing_id for m in live] == ["pickles:1", "pickles:2", "pickles:3", "carsales:9"]
        assert [m.listing_id for m in live if m.is_cheapest] == ["carsales:9"]
        assert hunt is not None
        assert hunt.last_scan_at == now

    @pytest.mark.asyncio
    async def test_rerun_emits_no_new_alerts(self, db, insert_hunt, scanner_for, listings, now) -> None:
        await insert_hunt()
        scanner = scanner_for(StaticCandidateSource("pickles", listings), StaticCandidateSource("carsales"))

        first = await scanner.scan("hunt-1", now=now)
        second = await scanner.scan("hunt-1", now=now + timedelta(hours=1))

        assert first.alerts_emitted == 2
        assert second.alerts_emitted == 0
        assert second.status is ScanStatus.OK
        async with db.get_async_session() as session:
            assert len(await HuntAlertRepository(session).list_for_hunt("hunt-1")) == 2
            assert len(await HuntMatchRepository(session).list_for_hunt("hunt-1")) == 4

    @pytest.mark.asyncio
    async def test_duplicate_listing_ids_counted_once(
        self, insert_hunt, scanner_for, make_listing, now
    ) -> None:
        await insert_hunt()
        same = make_listing(listing_id="pickles:1")
        scanner = scanner_for(
            StaticCandidateSource("pickles", [same, same]),
            StaticCandidateSource("carsales", [same]),
        )

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.candidates_checked == 1

    @pytest.mark.asyncio
    async def test_small_batches_write_every_match(
        self, db, insert_hunt, scanner_for, listings, now
    ) -> None:
        await insert_hunt()
        scanner = scanner_for(
            StaticCandidateSource("pickles", listings),
            StaticCandidateSource("carsales"),
            match_write_batch_size=1,
        )

        await scanner.scan("hunt-1", now=now)

        async with db.get_async_session() as session:
            assert len(await HuntMatchRepository(session).list_for_hunt("hunt-1")) == 4

    @pytest.mark.asyncio
    async def test_missing_hunt_raises(self, scanner_for, now) -> None:
        with pytest.raises(HuntNotFoundError):
            await scanner_for().scan("missing", now=now)

    def test_batch_size_must_be_positive(self, db) -> None:
        with pytest.raises(ValueError):
            HuntScanner(db, SourceRegistry(), match_write_batch_size=0)


# ============================================================================
# Partial and failed scans
# ============================================================================


class TestScanFailures:
    """Tests for failure isolation and error outcomes."""

    @pytest.mark.asyncio
    async def test_one_source_down_is_partial(self, db, insert_hunt, scanner_for, listings, now) -> None:
        await insert_hunt()
        scanner = scanner_for(StaticCandidateSource("pickles", listings), FailingSource("carsales"))

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.status is ScanStatus.OK
        assert outcome.partial is True
        assert outcome.exit_code == 2
        assert outcome.candidates_checked == 4
        assert any("carsales" in w for w in outcome.warnings)

        row = await _scan_row(db, outcome.scan_id)
        assert row is not None
        assert row.metadata["source_coverage"]["carsales"]["status"] == "unavailable"
        assert row.metadata["sources_scanned"] == ["pickles"]

    @pytest.mark.asyncio
    async def test_edit_during_scan_supersedes_results(self, db, insert_hunt, scanner_for, listings, now) -> None:
        await insert_hunt(sources_enabled=("pickles",))
        scanner = scanner_for(EditingSource(db, listings))

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.status is ScanStatus.OK
        assert outcome.criteria_version == 1
        assert outcome.exit_code == 2
        assert any("v2" in w for w in outcome.warnings)

        async with db.get_async_session() as session:
            matches = HuntMatchRepository(session)
            alerts = HuntAlertRepository(session)
            assert await HuntRepository(session).get_criteria_version("hunt-1") == 2
            assert await matches.list_view("hunt-1", MatchView.LIVE) == []
            assert await matches.list_for_hunt("hunt-1", include_stale=False) == []
            assert await alerts.list_for_hunt("hunt-1") == []
            audit = await matches.list_for_hunt("hunt-1")
            superseded = await alerts.list_for_hunt("hunt-1", include_stale=True)
        assert len(audit) == 4
        assert all(m.is_stale for m in audit)
        assert len(superseded) == 2
        assert all(a.is_stale for a in superseded)

    @pytest.mark.asyncio
    async def test_unregistered_source_is_partial(self, insert_hunt, scanner_for, listings, now) -> None:
        await insert_hunt()
        scanner = scanner_for(StaticCandidateSource("pickles", listings))

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.exit_code == 2
        assert outcome.warnings == ("source carsales unavailable: no source registered",)

    @pytest.mark.asyncio
    async def test_all_sources_down(self, db, insert_hunt, scanner_for, now) -> None:
        await insert_hunt()
        scanner = scanner_for(FailingSource("pickles"), FailingSource("carsales"))

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.status is ScanStatus.ERROR
        assert outcome.error_code is ErrorCode.SOURCE_UNAVAILABLE
        assert outcome.exit_code == 1

        row = await _scan_row(db, outcome.scan_id)
        assert row is not None
        assert row.status == "error"
        assert row.metadata["error_code"] == "SOURCE_UNAVAILABLE"
        async with db.get_async_session() as session:
            hunt = await HuntRepository(session).get("hunt-1")
        assert hunt is not None
        assert hunt.last_scan_at is None

    @pytest.mark.asyncio
    async def test_no_sources_in_scope(self, insert_hunt, scanner_for, now) -> None:
        await insert_hunt(sources_enabled=())

        outcome = await scanner_for().scan("hunt-1", now=now)

        assert outcome.error_code is ErrorCode.SOURCE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_invalid_config_writes_nothing(self, db, insert_hunt, scanner_for, listings, now) -> None:
        await insert_hunt(proven_exit_value=None)
        scanner = scanner_for(StaticCandidateSource("pickles", listings), StaticCandidateSource("carsales"))

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.status is ScanStatus.ERROR
        assert outcome.error_code is ErrorCode.INVALID_HUNT_CONFIG
        assert "proven_exit_value" in (outcome.error_message or "")
        async with db.get_async_session() as session:
            assert await HuntMatchRepository(session).list_for_hunt("hunt-1") == []
            assert await HuntAlertRepository(session).list_for_hunt("hunt-1") == []

    @pytest.mark.asyncio
    async def test_malformed_price_is_partial(self, insert_hunt, scanner_for, make_listing, now) -> None:
        await insert_hunt()
        scanner = scanner_for(
            StaticCandidateSource("pickles", [make_listing(listing_id="pickles:1", price="call me")]),
            StaticCandidateSource("carsales"),
        )

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.status is ScanStatus.OK
        assert outcome.unverified == 1
        assert outcome.exit_code == 2
        assert outcome.warnings == ("listing pickles:1: malformed input",)

    @pytest.mark.asyncio
    async def test_candidate_cap(self, insert_hunt, scanner_for, make_listing, now) -> None:
        await insert_hunt()
        batch = [make_listing(listing_id=f"pickles:{i}") for i in range(5)]
        scanner = scanner_for(
            StaticCandidateSource("pickles", batch),
            StaticCandidateSource("carsales"),
            max_candidates_per_source=3,
        )

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.candidates_checked == 3
        assert outcome.partial is True

    @pytest.mark.asyncio
    async def test_timeout(self, db, insert_hunt, scanner_for, now) -> None:
        await insert_hunt()
        scanner = scanner_for(
            SlowSource("pickles", 5.0),
            StaticCandidateSource("carsales"),
            timeout_seconds=0.05,
        )

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.status is ScanStatus.ERROR
        assert outcome.error_code is ErrorCode.SCAN_TIMEOUT
        row = await _scan_row(db, outcome.scan_id)
        assert row is not None
        assert row.status == "error"

    @pytest.mark.asyncio
    async def test_storage_failure(self, insert_hunt, scanner_for, listings, now, monkeypatch) -> None:
        await insert_hunt()

        async def broken_upsert(self, dtos):
            raise OperationalError("INSERT INTO hunt_matches", {}, Exception("disk full"))

        monkeypatch.setattr(HuntMatchRepository, "upsert_many", broken_upsert)
        scanner = scanner_for(StaticCandidateSource("pickles", listings), StaticCandidateSource("carsales"))

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.status is ScanStatus.ERROR
        assert outcome.error_code is ErrorCode.STORAGE_WRITE_FAILURE
        assert outcome.alerts_emitted == 0


# ============================================================================
# Locking and scheduling
# ============================================================================


class TestScanLocking:
    """Tests for the per-hunt scan lock."""

    @pytest.mark.asyncio
    async def test_held_lock_skips(self, insert_hunt, scanner_for, now) -> None:
        await insert_hunt()
        redis = AsyncMock()
        redis.set.return_value = None
        scanner = scanner_for(lock=HuntScanLock(redis))

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.status is ScanStatus.SKIPPED
        assert outcome.scan_id is None
        assert outcome.exit_code == 0
        redis.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_lock_released_after_scan(self, insert_hunt, scanner_for, listings, now) -> None:
        await insert_hunt()
        redis = AsyncMock()
        redis.set.return_value = True
        redis.eval.return_value = 1
        scanner = scanner_for(
            StaticCandidateSource("pickles", listings),
            StaticCandidateSource("carsales"),
            lock=HuntScanLock(redis),
        )

        outcome = await scanner.scan("hunt-1", now=now)

        assert outcome.status is ScanStatus.OK
        redis.set.assert_awaited_once()
        redis.eval.assert_awaited_once()


class TestScanDue:
    """Tests for HuntScanner.scan_due."""

    @pytest.mark.asyncio
    async def test_scans_due_hunts_and_expires_overdue(
        self, db, insert_hunt, scanner_for, listings, now
    ) -> None:
        await insert_hunt(id="due", priority=1)
        await insert_hunt(id="fresh", last_scan_at=now - timedelta(minutes=5))
        await insert_hunt(id="overdue", expires_at=now - timedelta(hours=1))
        scanner = scanner_for(StaticCandidateSource("pickles", listings), StaticCandidateSource("carsales"))

        outcomes = await scanner.scan_due(now=now)

        assert [o.hunt_id for o in outcomes] == ["due"]
        assert all(isinstance(o, ScanOutcome) for o in outcomes)
        async with db.get_async_session() as session:
            overdue = await HuntRepository(session).get("overdue")
        assert overdue is not None
        assert overdue.status == "expired"

    @pytest.mark.asyncio
    async def test_nothing_due(self, scanner_for, now) -> None:
        assert await scanner_for().scan_due(now=now) == []


class TestScanOutcome:
    """Tests for ScanOutcome."""

    def test_exit_codes(self) -> None:
        ok = ScanOutcome(scan_id="s", hunt_id="h", status=ScanStatus.OK)
        partial = ScanOutcome(scan_id="s", hunt_id="h", status=ScanStatus.OK, warnings=("w",))
        failed = ScanOutcome(
            scan_id="s",
            hunt_id="h",
            status=ScanStatus.ERROR,
            error_code=ErrorCode.SCAN_TIMEOUT,
        )

        assert (ok.exit_code, partial.exit_code, failed.exit_code) == (0, 2, 1)
        assert partial.to_dict()["partial"] is True
        assert failed.to_dict()["error_code"] == "SCAN_TIMEOUT"
