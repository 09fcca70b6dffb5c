"""Hunt scan runner.

This module implements the `scan` and `scan-due` commands:
- Load one immutable hunt snapshot per scan
- Fetch candidates from every source in scope (failures isolated per source)
- Gate, price and classify each candidate, then rank them
- Persist matches in committed batches and emit deduplicated alerts
- Record the scan in the audit trail whatever the outcome
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from hunt_engine.alerter.dedup import AlertDeduplicator
from hunt_engine.matching.classifier import DecisionClassifier, evaluate_candidate, validate_hunt_config
from hunt_engine.matching.identity_gate import IdentityGate
from hunt_engine.matching.models import (
    BlockedReason,
    CandidateListing,
    Decision,
    ErrorCode,
    Evaluation,
    HuntSnapshot,
    InvalidHuntConfigError,
    RankedCandidate,
    ScanStatus,
)
from hunt_engine.matching.ranker import SourceRanker
from hunt_engine.scan.lock import HuntScanLock, ScanAlreadyRunningError
from hunt_engine.scan.recorder import ScanRunRecorder
from hunt_engine.scan.sources import CandidateSource, SourceRegistry, StoredListingSource
from hunt_engine.storage.database import DatabaseManager
from hunt_engine.storage.repos import (
    HuntAlertDTO,
    HuntMatchDTO,
    HuntMatchRepository,
    HuntRepository,
)
from hunt_engine.versioning import CriteriaVersionTracker

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from hunt_engine.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_MATCH_WRITE_BATCH_SIZE = 200
DEFAULT_MAX_CANDIDATES_PER_SOURCE = 500


class ScanError(RuntimeError):
    """A scan failed as a whole."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.INTERNAL) -> None:
        super().__init__(message)
        self.code = code


class HuntNotFoundError(ScanError):
    def __init__(self, hunt_id: str) -> None:
        super().__init__(f"Hunt {hunt_id} not found", ErrorCode.INVALID_HUNT_CONFIG)
        self.hunt_id = hunt_id


class StorageWriteError(ScanError):
    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorCode.STORAGE_WRITE_FAILURE)


@dataclass(frozen=True)
class ScanOutcome:
    scan_id: str | None
    hunt_id: str
    status: ScanStatus
    criteria_version: int | None = None
    candidates_checked: int = 0
    matches_found: int = 0
    buy: int = 0
    watch: int = 0
    unverified: int = 0
    ignored: int = 0
    alerts_emitted: int = 0
    warnings: tuple[str, ...] = ()
    error_code: ErrorCode | None = None
    error_message: str | None = None

    @property
    def partial(self) -> bool:
        """Completed, but some sources or candidates were skipped."""
        return self.status is ScanStatus.OK and bool(self.warnings)

    @property
    def exit_code(self) -> int:
        if self.status is ScanStatus.ERROR:
            return 1
        return 2 if self.partial else 0

    def to_dict(self) -> dict[str, object]:
        return {
            "scan_id": self.scan_id,
            "hunt_id": self.hunt_id,
            "status": self.status.value,
            "partial": self.partial,
            "criteria_version": self.criteria_version,
            "candidates_checked": self.candidates_checked,
            "matches_found": self.matches_found,
            "buy": self.buy,
            "watch": self.watch,
            "unverified": self.unverified,
            "ignored": self.ignored,
            "alerts_emitted": self.alerts_emitted,
            "warnings": list(self.warnings),
            "error_code": self.error_code.value if self.error_code else None,
            "error_message": self.error_message,
        }


def _match_dto(hunt: HuntSnapshot, scan_id: str, candidate: RankedCandidate, now: datetime) -> HuntMatchDTO:
    evaluation = candidate.evaluation
    listing = evaluation.listing
    gap = evaluation.gap
    return HuntMatchDTO(
        hunt_id=hunt.hunt_id,
        listing_id=listing.listing_id,
        criteria_version=hunt.criteria_version,
        scan_id=scan_id,
        source=listing.source,
        source_tier=evaluation.source_tier.value,
        url=listing.url,
        decision=evaluation.decision.value,
        blocked_reason=evaluation.blocked_reason.value if evaluation.blocked_reason else None,
        identity_score=Decimal(str(evaluation.gate.score)),
        identity_verified=evaluation.gate.verified,
        asking_price=gap.price,
        gap_dollars=gap.gap_dollars,
        gap_pct=gap.gap_pct,
        listing_age_days=gap.listing_age_days,
        priority_score=candidate.priority_score,
        rank_position=candidate.rank_position,
        is_cheapest=candidate.is_cheapest,
        reasons=evaluation.classification.reasons,
        first_seen_at=listing.first_seen_at,
        matched_at=now,
    )


class HuntScanner:
    """Runs scan cycles for hunts.

    Scans of one hunt are serialized by the optional Redis lock; alerts stay
    at-most-once without it because their dedup keys are unique in storage.

    Example:
        ```python
        scanner = HuntScanner(db, SourceRegistry([StaticCandidateSource("pickles", listings)]))
        outcome = await scanner.scan(hunt_id)
        print(outcome.to_dict())
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        sources: SourceRegistry,
        *,
        gate: IdentityGate | None = None,
        classifier: DecisionClassifier | None = None,
        ranker: SourceRanker | None = None,
        lock: HuntScanLock | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        match_write_batch_size: int = DEFAULT_MATCH_WRITE_BATCH_SIZE,
        max_candidates_per_source: int = DEFAULT_MAX_CANDIDATES_PER_SOURCE,
    ) -> None:
        if match_write_batch_size < 1:
            raise ValueError("match_write_batch_size must be >= 1")
        self.db = db
        self.sources = sources
        self.gate = gate or IdentityGate()
        self.classifier = classifier or DecisionClassifier()
        self.ranker = ranker or SourceRanker()
        self.lock = lock
        self.timeout_seconds = timeout_seconds
        self.match_write_batch_size = match_write_batch_size
        self.max_candidates_per_source = max_candidates_per_source

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        db: DatabaseManager,
        *,
        sources: list[CandidateSource] | None = None,
        redis: Redis | None = None,
    ) -> HuntScanner:
        """Wire a scanner from settings.

        Source names without an explicit collaborator read the ``listings``
        table.
        """
        scan = settings.scan
        registry = SourceRegistry(
            sources or (),
            fallback=lambda name: StoredListingSource(
                db,
                name,
                year_window=scan.listing_year_window,
                limit=scan.max_candidates_per_source,
            ),
        )
        lock = None
        if scan.lock_enabled and redis is not None:
            lock = HuntScanLock(redis, ttl_seconds=scan.lock_ttl_seconds)
        return cls(
            db,
            registry,
            gate=IdentityGate(
                weights=settings.identity.weights(),
                verified_threshold=settings.identity.verified_threshold,
                unresolved_score_cap=settings.identity.unresolved_score_cap,
                unknown_field_credit=settings.identity.unknown_field_credit,
                max_year_drift=settings.identity.max_year_drift,
            ),
            classifier=DecisionClassifier(require_verified_for_buy=settings.decision.require_verified_for_buy),
            lock=lock,
            timeout_seconds=scan.timeout_seconds,
            match_write_batch_size=scan.match_write_batch_size,
            max_candidates_per_source=scan.max_candidates_per_source,
        )

    async def scan(self, hunt_id: str, *, now: datetime | None = None) -> ScanOutcome:
        """Run one scan cycle for a hunt.

        Failures after the scan has started are recorded and returned as an
        ``error`` outcome rather than raised.

        Raises:
            HuntNotFoundError: If the hunt does not exist.
        """
        now = now or datetime.now(UTC)
        if self.lock is None:
            return await self._scan(hunt_id, now)
        try:
            async with self.lock.hold(hunt_id):
                return await self._scan(hunt_id, now)
        except ScanAlreadyRunningError as e:
            logger.info("Skipping hunt %s: %s", hunt_id, e)
            return ScanOutcome(scan_id=None, hunt_id=hunt_id, status=ScanStatus.SKIPPED, warnings=(str(e),))

    async def scan_due(self, *, now: datetime | None = None, limit: int = 20) -> list[ScanOutcome]:
        """Expire overdue hunts, then scan due hunts one after another in priority order."""
        now = now or datetime.now(UTC)
        async with self.db.get_async_session() as session:
            repo = HuntRepository(session)
            await repo.expire_overdue(now=now)
            due = await repo.list_due(now=now, limit=limit)
        logger.info("%d hunts due for scanning", len(due))

        outcomes: list[ScanOutcome] = []
        for hunt in due:
            try:
                outcomes.append(await self.scan(hunt.id, now=now))
            except HuntNotFoundError as e:
                logger.warning("Skipping due hunt: %s", e)
        return outcomes

    async def _scan(self, hunt_id: str, now: datetime) -> ScanOutcome:
        async with self.db.get_async_session() as session:
            dto = await HuntRepository(session).get(hunt_id)
        if dto is None:
            raise HuntNotFoundError(hunt_id)

        recorder = ScanRunRecorder(self.db, hunt_id, dto.criteria_version)
        await recorder.start(now=now)

        emitted: list[HuntAlertDTO] = []
        error_code: ErrorCode | None = None
        error_message: str | None = None
        try:
            async with asyncio.timeout(self.timeout_seconds):
                hunt = dto.to_snapshot()
                await self._run(hunt, recorder, emitted, now)
        except TimeoutError:
            error_code = ErrorCode.SCAN_TIMEOUT
            error_message = f"Scan exceeded {self.timeout_seconds:g}s"
        except InvalidHuntConfigError as e:
            error_code, error_message = ErrorCode.INVALID_HUNT_CONFIG, str(e)
        except ScanError as e:
            error_code, error_message = e.code, str(e)
        except Exception as e:
            logger.exception("Scan of hunt %s failed unexpectedly", hunt_id)
            error_code, error_message = ErrorCode.INTERNAL, f"{type(e).__name__}: {e}"

        if error_code is None:
            await recorder.finish_ok(len(emitted))
            status = ScanStatus.OK
        else:
            try:
                await recorder.finish_error(error_code, error_message or "", alerts_emitted=len(emitted))
            except SQLAlchemyError:
                logger.exception("Could not record failure of scan %s", recorder.scan_id)
            status = ScanStatus.ERROR

        counts = recorder.decision_counts
        return ScanOutcome(
            scan_id=recorder.scan_id,
            hunt_id=hunt_id,
            status=status,
            criteria_version=dto.criteria_version,
            candidates_checked=recorder.candidates_checked,
            matches_found=recorder.matches_found,
            buy=counts[Decision.BUY.value],
            watch=counts[Decision.WATCH.value],
            unverified=counts[Decision.UNVERIFIED.value],
            ignored=counts[Decision.IGNORE.value],
            alerts_emitted=len(emitted),
            warnings=tuple(recorder.warnings),
            error_code=error_code,
            error_message=error_message,
        )

    async def _run(
        self,
        hunt: HuntSnapshot,
        recorder: ScanRunRecorder,
        emitted: list[HuntAlertDTO],
        now: datetime,
    ) -> None:
        validate_hunt_config(hunt)
        listings = await self._fetch(hunt, recorder)

        evaluations: list[Evaluation] = []
        for listing in listings:
            evaluation = evaluate_candidate(hunt, listing, gate=self.gate, classifier=self.classifier, now=now)
            recorder.observe(evaluation)
            if evaluation.blocked_reason is BlockedReason.MALFORMED_INPUT:
                recorder.add_warning(f"listing {listing.listing_id}: malformed input")
            elif evaluation.blocked_reason is BlockedReason.CLASSIFIER_FALLBACK:
                recorder.add_warning(f"listing {listing.listing_id}: {ErrorCode.CLASSIFICATION_AMBIGUOUS.value}")
            evaluations.append(evaluation)

        ranked = self.ranker.rank(evaluations)
        await self._write_matches(hunt, recorder.scan_id, ranked, now)

        try:
            async with self.db.get_async_session() as session:
                new_alerts = await AlertDeduplicator(session).emit(hunt, ranked, now=now)
                await HuntRepository(session).mark_scanned(hunt.hunt_id, at=now)
        except SQLAlchemyError as e:
            raise StorageWriteError(f"Failed to write alerts: {e}") from e
        emitted.extend(new_alerts)
        await self._settle_version(hunt, recorder)

    async def _settle_version(self, hunt: HuntSnapshot, recorder: ScanRunRecorder) -> None:
        """Sweep this scan's rows if the criteria were edited while it ran.

        The edit's own sweep cannot see rows committed after it, so the
        version is re-read once everything is written.
        """
        try:
            async with self.db.get_async_session() as session:
                current = await HuntRepository(session).get_criteria_version(hunt.hunt_id)
                if current is None or current <= hunt.criteria_version:
                    return
                stale_matches, stale_alerts = await CriteriaVersionTracker(session).sweep(hunt.hunt_id, current)
        except SQLAlchemyError as e:
            raise StorageWriteError(f"Failed to sweep superseded results: {e}") from e
        logger.warning(
            "Hunt %s criteria moved v%d -> v%d during scan; %d matches and %d alerts marked stale",
            hunt.hunt_id,
            hunt.criteria_version,
            current,
            stale_matches,
            stale_alerts,
        )
        recorder.add_warning(f"criteria changed to v{current} during scan; results superseded")

    async def _fetch(self, hunt: HuntSnapshot, recorder: ScanRunRecorder) -> list[CandidateListing]:
        scope = hunt.source_scope
        if not scope:
            raise ScanError(f"Hunt {hunt.hunt_id} has no sources in scope", ErrorCode.SOURCE_UNAVAILABLE)

        available: list[tuple[str, CandidateSource]] = []
        for name in scope:
            source = self.sources.resolve(name)
            if source is None:
                recorder.record_source(name, "unavailable", error="no source registered")
                recorder.add_warning(f"source {name} unavailable: no source registered")
            else:
                available.append((name, source))

        results = await asyncio.gather(*(source.fetch(hunt) for _, source in available), return_exceptions=True)

        by_id: dict[str, CandidateListing] = {}
        healthy = 0
        for (name, _), result in zip(available, results):
            if isinstance(result, Exception):
                recorder.record_source(name, "unavailable", error=str(result))
                recorder.add_warning(f"source {name} unavailable: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            healthy += 1
            batch = result
            if len(batch) > self.max_candidates_per_source:
                recorder.add_warning(
                    f"source {name} returned {len(batch)} candidates; kept {self.max_candidates_per_source}"
                )
                batch = batch[: self.max_candidates_per_source]
            recorder.record_source(name, "ok", count=len(batch))
            for listing in batch:
                by_id.setdefault(listing.listing_id, listing)

        if healthy == 0:
            raise ScanError(f"All sources unavailable for hunt {hunt.hunt_id}", ErrorCode.SOURCE_UNAVAILABLE)
        logger.info("Hunt %s: %d unique candidates from %d sources", hunt.hunt_id, len(by_id), healthy)
        return list(by_id.values())

    async def _write_matches(
        self,
        hunt: HuntSnapshot,
        scan_id: str,
        ranked: list[RankedCandidate],
        now: datetime,
    ) -> None:
        dtos = [_match_dto(hunt, scan_id, candidate, now) for candidate in ranked]
        batch_size = self.match_write_batch_size
        written = 0
        try:
            async with self.db.get_async_session() as session:
                repo = HuntMatchRepository(session)
                await repo.clear_cheapest(hunt.hunt_id, hunt.criteria_version)
                written += await repo.upsert_many(dtos[:batch_size])
            for start in range(batch_size, len(dtos), batch_size):
                async with self.db.get_async_session() as session:
                    written += await HuntMatchRepository(session).upsert_many(dtos[start : start + batch_size])
        except SQLAlchemyError as e:
            raise StorageWriteError(f"Failed to write matches after {written} of {len(dtos)}: {e}") from e
        logger.debug("Wrote %d matches for hunt %s", written, hunt.hunt_id)
