"""Repository pattern implementations for data access.

This module provides data access abstractions for hunts, candidate
listings, hunt matches, hunt alerts and hunt scans.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from hunt_engine.matching.models import (
    CandidateListing,
    Decision,
    HuntSnapshot,
    HuntStatus,
    IdentityTarget,
    MustHaveMode,
    ResolvedIdentity,
    SourceTier,
    UnresolvedIdentity,
)
from hunt_engine.storage.models import (
    HuntAlertModel,
    HuntMatchModel,
    HuntModel,
    HuntScanModel,
    ListingModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _json_list(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(str(v) for v in json.loads(raw))


def _dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """Return an INSERT supporting ON CONFLICT for the session's dialect."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


# ============================================================================
# Hunts
# ============================================================================


@dataclass
class HuntDTO:
    """Data transfer object for hunts."""

    id: str
    dealer_id: str
    make: str
    model: str
    status: str = HuntStatus.ACTIVE.value
    priority: int = 0
    year: int | None = None
    model_root: str | None = None
    series_family: str | None = None
    variant_family: str | None = None
    badge: str | None = None
    badge_tier: int | None = None
    body_type: str | None = None
    engine_family: str | None = None
    engine_code: str | None = None
    cab_type: str | None = None
    cylinders: int | None = None
    engine_litres: Decimal | None = None
    fuel: str | None = None
    transmission: str | None = None
    drivetrain: str | None = None
    km: int | None = None
    km_tolerance_pct: Decimal | None = None
    proven_exit_method: str | None = None
    proven_exit_value: Decimal | None = None
    min_gap_abs_buy: Decimal = Decimal("3000")
    min_gap_pct_buy: Decimal = Decimal("5")
    min_gap_abs_watch: Decimal = Decimal("1500")
    min_gap_pct_watch: Decimal = Decimal("2.5")
    max_listing_age_days_buy: int = 14
    max_listing_age_days_watch: int = 45
    sources_enabled: tuple[str, ...] = ()
    include_private: bool = False
    states: tuple[str, ...] = ()
    radius_km: int | None = None
    geo_mode: str = "national"
    must_have_tokens: tuple[str, ...] = ()
    must_have_mode: str = MustHaveMode.SOFT.value
    scan_interval_minutes: int = 60
    last_scan_at: datetime | None = None
    expires_at: datetime | None = None
    notes: str | None = None
    criteria_version: int = 1
    criteria_updated_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: HuntModel) -> HuntDTO:
        return cls(
            id=model.id,
            dealer_id=model.dealer_id,
            make=model.make,
            model=model.model,
            status=model.status,
            priority=model.priority,
            year=model.year,
            model_root=model.model_root,
            series_family=model.series_family,
            variant_family=model.variant_family,
            badge=model.badge,
            badge_tier=model.badge_tier,
            body_type=model.body_type,
            engine_family=model.engine_family,
            engine_code=model.engine_code,
            cab_type=model.cab_type,
            cylinders=model.cylinders,
            engine_litres=model.engine_litres,
            fuel=model.fuel,
            transmission=model.transmission,
            drivetrain=model.drivetrain,
            km=model.km,
            km_tolerance_pct=model.km_tolerance_pct,
            proven_exit_method=model.proven_exit_method,
            proven_exit_value=model.proven_exit_value,
            min_gap_abs_buy=model.min_gap_abs_buy,
            min_gap_pct_buy=model.min_gap_pct_buy,
            min_gap_abs_watch=model.min_gap_abs_watch,
            min_gap_pct_watch=model.min_gap_pct_watch,
            max_listing_age_days_buy=model.max_listing_age_days_buy,
            max_listing_age_days_watch=model.max_listing_age_days_watch,
            sources_enabled=_json_list(model.sources_enabled_json),
            include_private=model.include_private,
            states=_json_list(model.states_json),
            radius_km=model.radius_km,
            geo_mode=model.geo_mode,
            must_have_tokens=_json_list(model.must_have_tokens_json),
            must_have_mode=model.must_have_mode,
            scan_interval_minutes=model.scan_interval_minutes,
            last_scan_at=ensure_utc(model.last_scan_at),
            expires_at=ensure_utc(model.expires_at),
            notes=model.notes,
            criteria_version=model.criteria_version,
            criteria_updated_at=ensure_utc(model.criteria_updated_at),
            created_at=ensure_utc(model.created_at),
        )

    def to_snapshot(self) -> HuntSnapshot:
        """Freeze the hunt's criteria for one scan."""
        return HuntSnapshot(
            hunt_id=self.id,
            dealer_id=self.dealer_id,
            criteria_version=self.criteria_version,
            target=IdentityTarget(
                make=self.make,
                model=self.model,
                year=self.year,
                model_root=self.model_root,
                series_family=self.series_family,
                variant_family=self.variant_family,
                badge=self.badge,
                badge_tier=self.badge_tier,
                body_type=self.body_type,
                engine_family=self.engine_family,
                engine_code=self.engine_code,
                cab_type=self.cab_type,
                cylinders=self.cylinders,
                engine_litres=self.engine_litres,
                fuel=self.fuel,
                transmission=self.transmission,
                drivetrain=self.drivetrain,
            ),
            proven_exit_value=self.proven_exit_value,
            proven_exit_method=self.proven_exit_method,
            min_gap_abs_buy=self.min_gap_abs_buy,
            min_gap_pct_buy=self.min_gap_pct_buy,
            min_gap_abs_watch=self.min_gap_abs_watch,
            min_gap_pct_watch=self.min_gap_pct_watch,
            max_listing_age_days_buy=self.max_listing_age_days_buy,
            max_listing_age_days_watch=self.max_listing_age_days_watch,
            km=self.km,
            km_tolerance_pct=self.km_tolerance_pct,
            sources_enabled=self.sources_enabled,
            include_private=self.include_private,
            states=self.states,
            radius_km=self.radius_km,
            geo_mode=self.geo_mode,
            must_have_tokens=self.must_have_tokens,
            must_have_mode=MustHaveMode(self.must_have_mode),
            status=HuntStatus(self.status),
        )


# Columns stored as JSON text, keyed by the DTO attribute they back.
HUNT_JSON_COLUMNS = {
    "sources_enabled": "sources_enabled_json",
    "states": "states_json",
    "must_have_tokens": "must_have_tokens_json",
}


def hunt_column_values(values: dict[str, Any]) -> dict[str, Any]:
    """Translate DTO-level hunt values into column values."""
    out: dict[str, Any] = {}
    for key, value in values.items():
        if key in HUNT_JSON_COLUMNS:
            out[HUNT_JSON_COLUMNS[key]] = json.dumps(list(value or ()))
        elif isinstance(value, Enum):
            out[key] = value.value
        else:
            out[key] = value
    return out


class HuntRepository:
    """Repository for hunt configuration and scheduling state."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: HuntDTO) -> HuntDTO:
        now = datetime.now(UTC)
        values = {
            k: v
            for k, v in dto.__dict__.items()
            if k not in ("criteria_updated_at", "created_at")
        }
        model = HuntModel(
            **hunt_column_values(values),
            criteria_updated_at=dto.criteria_updated_at or now,
            created_at=dto.created_at or now,
        )
        self.session.add(model)
        await self.session.flush()
        return HuntDTO.from_model(model)

    async def get(self, hunt_id: str) -> HuntDTO | None:
        result = await self.session.execute(select(HuntModel).where(HuntModel.id == hunt_id))
        model = result.scalar_one_or_none()
        return HuntDTO.from_model(model) if model else None

    async def update_fields(self, hunt_id: str, values: dict[str, Any]) -> int:
        """Write raw hunt column changes (no versioning)."""
        if not values:
            return 0
        result = await self.session.execute(
            update(HuntModel)
            .where(HuntModel.id == hunt_id)
            .values(**hunt_column_values(values), updated_at=datetime.now(UTC))
        )
        return int(result.rowcount or 0)

    async def bump_criteria_version(self, hunt_id: str, *, now: datetime) -> int:
        """Atomically increment the criteria version and return the new value.

        Raises:
            LookupError: If the hunt does not exist.
        """
        result = await self.session.execute(
            update(HuntModel)
            .where(HuntModel.id == hunt_id)
            .values(
                criteria_version=HuntModel.criteria_version + 1,
                criteria_updated_at=now,
                updated_at=now,
            )
        )
        if not result.rowcount:
            raise LookupError(f"Hunt {hunt_id} not found")
        version = await self.session.scalar(
            select(HuntModel.criteria_version).where(HuntModel.id == hunt_id)
        )
        return int(version)

    async def get_criteria_version(self, hunt_id: str) -> int | None:
        version = await self.session.scalar(
            select(HuntModel.criteria_version).where(HuntModel.id == hunt_id)
        )
        return int(version) if version is not None else None

    async def mark_scanned(self, hunt_id: str, *, at: datetime) -> None:
        await self.session.execute(
            update(HuntModel).where(HuntModel.id == hunt_id).values(last_scan_at=at)
        )

    async def list_due(self, *, now: datetime, limit: int = 20) -> list[HuntDTO]:
        """Active, unexpired hunts whose scan interval has elapsed, by priority."""
        result = await self.session.execute(
            select(HuntModel)
            .where(HuntModel.status == HuntStatus.ACTIVE.value)
            .order_by(HuntModel.priority.desc(), HuntModel.last_scan_at.asc(), HuntModel.id)
        )
        due: list[HuntDTO] = []
        for model in result.scalars().all():
            dto = HuntDTO.from_model(model)
            if dto.expires_at is not None and dto.expires_at <= now:
                continue
            if dto.last_scan_at is not None and dto.last_scan_at > now - timedelta(
                minutes=dto.scan_interval_minutes
            ):
                continue
            due.append(dto)
            if len(due) >= limit:
                break
        return due

    async def expire_overdue(self, *, now: datetime) -> int:
        """Move active hunts past their expiry to ``expired``."""
        result = await self.session.execute(
            update(HuntModel)
            .where(
                (HuntModel.status == HuntStatus.ACTIVE.value)
                & (HuntModel.expires_at.is_not(None))
                & (HuntModel.expires_at <= now)
            )
            .values(status=HuntStatus.EXPIRED.value, updated_at=now)
        )
        count = int(result.rowcount or 0)
        if count:
            logger.info("Expired %d overdue hunts", count)
        return count


# ============================================================================
# Listings
# ============================================================================


@dataclass
class ListingDTO:
    """Data transfer object for stored candidate listings."""

    listing_id: str
    source: str
    url: str | None = None
    source_tier: int | None = None
    identity_resolved: bool = True
    make: str | None = None
    model: str | None = None
    variant: str | None = None
    year: int | None = None
    km: int | None = None
    model_root: str | None = None
    series_family: str | None = None
    badge: str | None = None
    badge_tier: int | None = None
    body_type: str | None = None
    engine_family: str | None = None
    engine_code: str | None = None
    cab_type: str | None = None
    cylinders: int | None = None
    engine_litres: Decimal | None = None
    fuel: str | None = None
    transmission: str | None = None
    drivetrain: str | None = None
    raw_text: str | None = None
    price: str | None = None
    state: str | None = None
    suburb: str | None = None
    is_private: bool = False
    status: str = "active"
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ListingModel) -> ListingDTO:
        values = {name: getattr(model, name) for name in cls.__dataclass_fields__}
        values["first_seen_at"] = ensure_utc(model.first_seen_at)
        values["last_seen_at"] = ensure_utc(model.last_seen_at)
        return cls(**values)

    def to_candidate(self) -> CandidateListing:
        """Build the engine's view of this listing."""
        if self.identity_resolved:
            identity: ResolvedIdentity | UnresolvedIdentity = ResolvedIdentity(
                make=self.make,
                model=self.model,
                variant=self.variant,
                year=self.year,
                km=self.km,
                model_root=self.model_root,
                series_family=self.series_family,
                badge=self.badge,
                badge_tier=self.badge_tier,
                body_type=self.body_type,
                engine_family=self.engine_family,
                engine_code=self.engine_code,
                cab_type=self.cab_type,
                cylinders=self.cylinders,
                engine_litres=self.engine_litres,
                fuel=self.fuel,
                transmission=self.transmission,
                drivetrain=self.drivetrain,
            )
        else:
            parts = (self.make, self.model, self.variant, self.raw_text)
            identity = UnresolvedIdentity(raw_text=" ".join(p for p in parts if p))
        return CandidateListing(
            listing_id=self.listing_id,
            source=self.source,
            identity=identity,
            url=self.url,
            price=self.price,
            source_tier=SourceTier(self.source_tier) if self.source_tier else None,
            text=self.raw_text or "",
            state=self.state,
            suburb=self.suburb,
            first_seen_at=self.first_seen_at,
            is_private=self.is_private,
        )


class ListingRepository:
    """Repository for listings written by ingestion and read by scans."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: ListingDTO) -> None:
        now = datetime.now(UTC)
        values = dict(dto.__dict__)
        values["first_seen_at"] = dto.first_seen_at or now
        values["last_seen_at"] = dto.last_seen_at or now
        stmt = _dialect_insert(self.session, ListingModel).values(**values, created_at=now, updated_at=now)
        refreshed = {
            name: getattr(stmt.excluded, name)
            for name in values
            if name not in ("listing_id", "first_seen_at")
        }
        stmt = stmt.on_conflict_do_update(
            index_elements=["listing_id"],
            set_={**refreshed, "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def get(self, listing_id: str) -> ListingDTO | None:
        result = await self.session.execute(
            select(ListingModel).where(ListingModel.listing_id == listing_id)
        )
        model = result.scalar_one_or_none()
        return ListingDTO.from_model(model) if model else None

    async def list_for_hunt(
        self,
        *,
        source: str,
        hunt: HuntSnapshot,
        year_window: int = 1,
        limit: int = 500,
    ) -> list[ListingDTO]:
        """Active listings of one source that could plausibly match the hunt.

        Filters on make, year window and state scope; unresolved listings
        without a make are always included so the gate can score them.
        """
        make = hunt.target.make.strip().upper()
        stmt = select(ListingModel).where(
            (sa.func.lower(ListingModel.source) == source.lower())
            & (ListingModel.status == "active")
            & (
                (sa.func.upper(ListingModel.make) == make)
                | (ListingModel.make.is_(None) & ListingModel.identity_resolved.is_(False))
            )
        )
        if hunt.target.year is not None:
            stmt = stmt.where(
                ListingModel.year.is_(None)
                | ListingModel.year.between(hunt.target.year - year_window, hunt.target.year + year_window)
            )
        if hunt.geo_mode == "states" and hunt.states:
            stmt = stmt.where(
                ListingModel.state.is_(None)
                | sa.func.upper(ListingModel.state).in_([s.upper() for s in hunt.states])
            )
        if not hunt.include_private:
            stmt = stmt.where(ListingModel.is_private.is_(False))
        stmt = stmt.order_by(ListingModel.first_seen_at.desc(), ListingModel.listing_id).limit(limit)
        result = await self.session.execute(stmt)
        return [ListingDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Hunt matches
# ============================================================================


class MatchView(str, Enum):
    """Read-side filters over current-version, non-stale matches."""

    LIVE = "live"
    OPPORTUNITIES = "opportunities"
    UNVERIFIED = "unverified"
    REJECTED = "rejected"


_VIEW_DECISIONS = {
    MatchView.LIVE: (Decision.BUY.value, Decision.WATCH.value, Decision.UNVERIFIED.value),
    MatchView.OPPORTUNITIES: (Decision.BUY.value, Decision.WATCH.value),
    MatchView.UNVERIFIED: (Decision.UNVERIFIED.value,),
    MatchView.REJECTED: (Decision.IGNORE.value,),
}


@dataclass
class HuntMatchDTO:
    """Data transfer object for hunt matches."""

    hunt_id: str
    listing_id: str
    criteria_version: int
    source: str
    source_tier: int
    decision: str
    identity_score: Decimal
    priority_score: int
    rank_position: int
    scan_id: str | None = None
    url: str | None = None
    blocked_reason: str | None = None
    identity_verified: bool = False
    asking_price: Decimal | None = None
    gap_dollars: Decimal | None = None
    gap_pct: Decimal | None = None
    listing_age_days: int | None = None
    is_cheapest: bool = False
    is_stale: bool = False
    reasons: tuple[str, ...] = ()
    first_seen_at: datetime | None = None
    matched_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: HuntMatchModel) -> HuntMatchDTO:
        return cls(
            id=model.id,
            hunt_id=model.hunt_id,
            listing_id=model.listing_id,
            criteria_version=model.criteria_version,
            scan_id=model.scan_id,
            source=model.source,
            source_tier=model.source_tier,
            url=model.url,
            decision=model.decision,
            blocked_reason=model.blocked_reason,
            identity_score=model.identity_score,
            identity_verified=model.identity_verified,
            asking_price=model.asking_price,
            gap_dollars=model.gap_dollars,
            gap_pct=model.gap_pct,
            listing_age_days=model.listing_age_days,
            priority_score=model.priority_score,
            rank_position=model.rank_position,
            is_cheapest=model.is_cheapest,
            is_stale=model.is_stale,
            reasons=_json_list(model.reasons_json),
            first_seen_at=ensure_utc(model.first_seen_at),
            matched_at=ensure_utc(model.matched_at),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "listing_id": self.listing_id,
            "source": self.source,
            "source_tier": self.source_tier,
            "decision": self.decision,
            "blocked_reason": self.blocked_reason,
            "identity_score": str(self.identity_score),
            "asking_price": str(self.asking_price) if self.asking_price is not None else None,
            "gap_dollars": str(self.gap_dollars) if self.gap_dollars is not None else None,
            "gap_pct": str(self.gap_pct) if self.gap_pct is not None else None,
            "listing_age_days": self.listing_age_days,
            "rank_position": self.rank_position,
            "is_cheapest": self.is_cheapest,
            "criteria_version": self.criteria_version,
            "url": self.url,
            "reasons": list(self.reasons),
        }


@dataclass
class CandidateCounts:
    """Per-hunt counts over current-version, non-stale matches."""

    total: int = 0
    buy: int = 0
    watch: int = 0
    unverified: int = 0
    ignore: int = 0
    by_tier: dict[str, int] = field(default_factory=dict)

    @property
    def live_matches(self) -> int:
        return self.total - self.ignore

    @property
    def opportunities(self) -> int:
        return self.buy + self.watch

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "buy": self.buy,
            "watch": self.watch,
            "unverified": self.unverified,
            "ignore": self.ignore,
            "live_matches": self.live_matches,
            "opportunities": self.opportunities,
            "by_tier": dict(self.by_tier),
        }


class HuntMatchRepository:
    """Repository for per-version hunt matches."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert_many(self, dtos: list[HuntMatchDTO]) -> int:
        """Insert or overwrite matches keyed by (hunt, listing, criteria version)."""
        if not dtos:
            return 0
        now = datetime.now(UTC)
        rows = [
            {
                "hunt_id": dto.hunt_id,
                "listing_id": dto.listing_id,
                "criteria_version": dto.criteria_version,
                "scan_id": dto.scan_id,
                "source": dto.source,
                "source_tier": dto.source_tier,
                "url": dto.url,
                "decision": dto.decision,
                "blocked_reason": dto.blocked_reason,
                "identity_score": dto.identity_score,
                "identity_verified": dto.identity_verified,
                "asking_price": dto.asking_price,
                "gap_dollars": dto.gap_dollars,
                "gap_pct": dto.gap_pct,
                "listing_age_days": dto.listing_age_days,
                "priority_score": dto.priority_score,
                "rank_position": dto.rank_position,
                "is_cheapest": dto.is_cheapest,
                "is_stale": False,
                "reasons_json": json.dumps(list(dto.reasons)),
                "first_seen_at": dto.first_seen_at,
                "matched_at": dto.matched_at or now,
            }
            for dto in dtos
        ]
        stmt = _dialect_insert(self.session, HuntMatchModel).values(rows)
        overwritten = (
            "scan_id",
            "source",
            "source_tier",
            "url",
            "decision",
            "blocked_reason",
            "identity_score",
            "identity_verified",
            "asking_price",
            "gap_dollars",
            "gap_pct",
            "listing_age_days",
            "priority_score",
            "rank_position",
            "is_cheapest",
            "reasons_json",
            "first_seen_at",
            "matched_at",
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["hunt_id", "listing_id", "criteria_version"],
            set_={name: getattr(stmt.excluded, name) for name in overwritten},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return len(dtos)

    async def clear_cheapest(self, hunt_id: str, criteria_version: int) -> None:
        """Reset ``is_cheapest`` before a scan writes its own flag."""
        await self.session.execute(
            update(HuntMatchModel)
            .where(
                (HuntMatchModel.hunt_id == hunt_id)
                & (HuntMatchModel.criteria_version == criteria_version)
                & (HuntMatchModel.is_cheapest.is_(True))
            )
            .values(is_cheapest=False)
        )

    async def mark_stale(self, hunt_id: str, *, below_version: int) -> int:
        """Flag matches from older criteria versions as stale (never deleted)."""
        result = await self.session.execute(
            update(HuntMatchModel)
            .where(
                (HuntMatchModel.hunt_id == hunt_id)
                & (HuntMatchModel.criteria_version < below_version)
                & (HuntMatchModel.is_stale.is_(False))
            )
            .values(is_stale=True)
        )
        return int(result.rowcount or 0)

    async def get(self, hunt_id: str, listing_id: str, criteria_version: int) -> HuntMatchDTO | None:
        result = await self.session.execute(
            select(HuntMatchModel).where(
                (HuntMatchModel.hunt_id == hunt_id)
                & (HuntMatchModel.listing_id == listing_id)
                & (HuntMatchModel.criteria_version == criteria_version)
            )
        )
        model = result.scalar_one_or_none()
        return HuntMatchDTO.from_model(model) if model else None

    async def list_for_hunt(self, hunt_id: str, *, include_stale: bool = True) -> list[HuntMatchDTO]:
        """Matches of a hunt; all versions (audit view) or only current ones."""
        if include_stale:
            stmt = select(HuntMatchModel).where(HuntMatchModel.hunt_id == hunt_id)
        else:
            stmt = self._current_rows(hunt_id)
        stmt = stmt.order_by(HuntMatchModel.criteria_version, HuntMatchModel.rank_position)
        result = await self.session.execute(stmt)
        return [HuntMatchDTO.from_model(m) for m in result.scalars().all()]

    def _current_rows(self, hunt_id: str) -> sa.Select[Any]:
        # Version comparison keeps results correct even before a sweep runs.
        return (
            select(HuntMatchModel)
            .join(HuntModel, HuntModel.id == HuntMatchModel.hunt_id)
            .where(
                (HuntMatchModel.hunt_id == hunt_id)
                & (HuntMatchModel.is_stale.is_(False))
                & (HuntMatchModel.criteria_version == HuntModel.criteria_version)
            )
        )

    async def list_view(
        self,
        hunt_id: str,
        view: MatchView = MatchView.LIVE,
        *,
        limit: int | None = None,
    ) -> list[HuntMatchDTO]:
        """Current matches for one read-side view, in rank order."""
        stmt = (
            self._current_rows(hunt_id)
            .where(HuntMatchModel.decision.in_(_VIEW_DECISIONS[view]))
            .order_by(
                HuntMatchModel.priority_score.desc(),
                HuntMatchModel.rank_position.asc(),
                HuntMatchModel.listing_id,
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [HuntMatchDTO.from_model(m) for m in result.scalars().all()]

    async def candidate_counts(self, hunt_id: str) -> CandidateCounts:
        rows = self._current_rows(hunt_id).subquery()
        result = await self.session.execute(
            select(rows.c.decision, rows.c.source_tier, sa.func.count()).group_by(
                rows.c.decision, rows.c.source_tier
            )
        )
        counts = CandidateCounts(by_tier={tier.name.lower(): 0 for tier in SourceTier})
        for decision, tier, count in result.all():
            counts.total += count
            if decision == Decision.BUY.value:
                counts.buy += count
            elif decision == Decision.WATCH.value:
                counts.watch += count
            elif decision == Decision.UNVERIFIED.value:
                counts.unverified += count
            else:
                counts.ignore += count
            if decision != Decision.IGNORE.value:
                counts.by_tier[SourceTier(tier).name.lower()] += count
        return counts


# ============================================================================
# Hunt alerts
# ============================================================================


@dataclass
class HuntAlertDTO:
    """Data transfer object for hunt alerts."""

    hunt_id: str
    listing_id: str
    criteria_version: int
    alert_type: str
    dedup_key: str
    payload: dict[str, Any]
    is_stale: bool = False
    acknowledged_at: datetime | None = None
    created_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: HuntAlertModel) -> HuntAlertDTO:
        return cls(
            id=model.id,
            hunt_id=model.hunt_id,
            listing_id=model.listing_id,
            criteria_version=model.criteria_version,
            alert_type=model.alert_type,
            dedup_key=model.dedup_key,
            payload=json.loads(model.payload_json),
            is_stale=model.is_stale,
            acknowledged_at=ensure_utc(model.acknowledged_at),
            created_at=ensure_utc(model.created_at),
        )


class HuntAlertRepository:
    """Repository for deduplicated hunt alerts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: HuntAlertDTO) -> int | None:
        """Insert an alert unless its dedup key already exists.

        Returns:
            The new row id, or None when the alert was a duplicate.
        """
        stmt = (
            _dialect_insert(self.session, HuntAlertModel)
            .values(
                hunt_id=dto.hunt_id,
                listing_id=dto.listing_id,
                criteria_version=dto.criteria_version,
                alert_type=dto.alert_type,
                dedup_key=dto.dedup_key,
                payload_json=json.dumps(dto.payload, sort_keys=True),
                is_stale=False,
                created_at=dto.created_at or datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["dedup_key"])
            .returning(HuntAlertModel.id)
        )
        result = await self.session.execute(stmt)
        alert_id = result.scalar_one_or_none()
        return int(alert_id) if alert_id is not None else None

    async def get_by_dedup_key(self, dedup_key: str) -> HuntAlertDTO | None:
        result = await self.session.execute(
            select(HuntAlertModel).where(HuntAlertModel.dedup_key == dedup_key)
        )
        model = result.scalar_one_or_none()
        return HuntAlertDTO.from_model(model) if model else None

    async def mark_stale(self, hunt_id: str, *, below_version: int) -> int:
        result = await self.session.execute(
            update(HuntAlertModel)
            .where(
                (HuntAlertModel.hunt_id == hunt_id)
                & (HuntAlertModel.criteria_version < below_version)
                & (HuntAlertModel.is_stale.is_(False))
            )
            .values(is_stale=True)
        )
        return int(result.rowcount or 0)

    async def acknowledge(self, alert_id: int, *, at: datetime | None = None) -> bool:
        """Set ``acknowledged_at`` once; returns False if missing or already acknowledged."""
        result = await self.session.execute(
            update(HuntAlertModel)
            .where((HuntAlertModel.id == alert_id) & (HuntAlertModel.acknowledged_at.is_(None)))
            .values(acknowledged_at=at or datetime.now(UTC))
        )
        return bool(result.rowcount)

    async def list_for_hunt(self, hunt_id: str, *, include_stale: bool = False) -> list[HuntAlertDTO]:
        """Alerts of a hunt; by default only live ones under the current criteria version."""
        stmt = select(HuntAlertModel).where(HuntAlertModel.hunt_id == hunt_id)
        if not include_stale:
            stmt = stmt.join(HuntModel, HuntModel.id == HuntAlertModel.hunt_id).where(
                HuntAlertModel.is_stale.is_(False)
                & (HuntAlertModel.criteria_version == HuntModel.criteria_version)
            )
        stmt = stmt.order_by(HuntAlertModel.created_at, HuntAlertModel.id)
        result = await self.session.execute(stmt)
        return [HuntAlertDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Hunt scans
# ============================================================================


@dataclass
class HuntScanDTO:
    """Data transfer object for the scan audit trail."""

    id: str
    hunt_id: str
    criteria_version: int
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    candidates_checked: int = 0
    matches_found: int = 0
    alerts_emitted: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, model: HuntScanModel) -> HuntScanDTO:
        return cls(
            id=model.id,
            hunt_id=model.hunt_id,
            criteria_version=model.criteria_version,
            status=model.status,
            started_at=ensure_utc(model.started_at),
            completed_at=ensure_utc(model.completed_at),
            candidates_checked=model.candidates_checked,
            matches_found=model.matches_found,
            alerts_emitted=model.alerts_emitted,
            error_message=model.error_message,
            metadata=json.loads(model.metadata_json or "{}"),
        )


class HuntScanRepository:
    """Repository for hunt scan audit rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: HuntScanDTO) -> None:
        model = HuntScanModel(
            id=dto.id,
            hunt_id=dto.hunt_id,
            criteria_version=dto.criteria_version,
            status=dto.status,
            started_at=dto.started_at,
            completed_at=dto.completed_at,
            candidates_checked=dto.candidates_checked,
            matches_found=dto.matches_found,
            alerts_emitted=dto.alerts_emitted,
            error_message=dto.error_message,
            metadata_json=json.dumps(dto.metadata, sort_keys=True),
        )
        self.session.add(model)
        await self.session.flush()

    async def complete(self, dto: HuntScanDTO) -> None:
        """Write the final status of a running scan."""
        await self.session.execute(
            update(HuntScanModel)
            .where((HuntScanModel.id == dto.id) & (HuntScanModel.completed_at.is_(None)))
            .values(
                status=dto.status,
                completed_at=dto.completed_at,
                candidates_checked=dto.candidates_checked,
                matches_found=dto.matches_found,
                alerts_emitted=dto.alerts_emitted,
                error_message=dto.error_message,
                metadata_json=json.dumps(dto.metadata, sort_keys=True),
            )
        )

    async def get(self, scan_id: str) -> HuntScanDTO | None:
        result = await self.session.execute(select(HuntScanModel).where(HuntScanModel.id == scan_id))
        model = result.scalar_one_or_none()
        return HuntScanDTO.from_model(model) if model else None

    async def latest(self, hunt_id: str) -> HuntScanDTO | None:
        result = await self.session.execute(
            select(HuntScanModel)
            .where(HuntScanModel.hunt_id == hunt_id)
            .order_by(HuntScanModel.started_at.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return HuntScanDTO.from_model(model) if model else None
