"""Data models for the matching module.

Hunts and listings are represented here as immutable values. A scan takes one
:class:`HuntSnapshot` at start time and evaluates every :class:`CandidateListing`
against it, so a concurrent hunt edit can never change the criteria mid-scan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum


class Decision(str, Enum):
    """Per-candidate classification outcome."""

    BUY = "BUY"
    WATCH = "WATCH"
    UNVERIFIED = "UNVERIFIED"
    IGNORE = "IGNORE"

    @property
    def rank(self) -> int:
        """Return the ordering weight (BUY highest)."""
        return _DECISION_RANK[self]

    @property
    def is_opportunity(self) -> bool:
        return self in (Decision.BUY, Decision.WATCH)


_DECISION_RANK = {
    Decision.BUY: 3,
    Decision.WATCH: 2,
    Decision.UNVERIFIED: 1,
    Decision.IGNORE: 0,
}


class BlockedReason(str, Enum):
    """Why a candidate was rejected or could not be promoted."""

    SERIES_MISMATCH = "SERIES_MISMATCH"
    YEAR_MISMATCH = "YEAR_MISMATCH"
    ENGINE_MISMATCH = "ENGINE_MISMATCH"
    BODY_MISMATCH = "BODY_MISMATCH"
    CAB_MISMATCH = "CAB_MISMATCH"
    BADGE_MISMATCH = "BADGE_MISMATCH"
    MISSING_REQUIRED_TOKEN = "MISSING_REQUIRED_TOKEN"
    NOT_A_LISTING = "NOT_A_LISTING"
    NO_PRICE = "NO_PRICE"
    LOW_IDENTITY_CONFIDENCE = "LOW_IDENTITY_CONFIDENCE"
    GAP_INSUFFICIENT = "GAP_INSUFFICIENT"
    STALE_LISTING = "STALE_LISTING"
    CLASSIFIER_FALLBACK = "CLASSIFIER_FALLBACK"
    MALFORMED_INPUT = "MALFORMED_INPUT"


class SourceTier(int, Enum):
    """Listing source class; lower value ranks first."""

    AUCTION = 1
    MARKETPLACE = 2
    DEALER = 3


class MustHaveMode(str, Enum):
    SOFT = "soft"
    STRICT = "strict"


class HuntStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DONE = "done"
    EXPIRED = "expired"


class ScanStatus(str, Enum):
    RUNNING = "running"
    OK = "ok"
    ERROR = "error"
    SKIPPED = "skipped"


class ErrorCode(str, Enum):
    """Error taxonomy surfaced in scan metadata and CLI output."""

    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
    INVALID_HUNT_CONFIG = "INVALID_HUNT_CONFIG"
    STORAGE_WRITE_FAILURE = "STORAGE_WRITE_FAILURE"
    CLASSIFICATION_AMBIGUOUS = "CLASSIFICATION_AMBIGUOUS"
    SCAN_TIMEOUT = "SCAN_TIMEOUT"
    INTERNAL = "INTERNAL"


class InvalidHuntConfigError(ValueError):
    """Raised when a hunt cannot be scanned as configured."""


@dataclass(frozen=True)
class ResolvedIdentity:
    """Structured vehicle identity extracted by an ingestion collaborator.

    Any tag may be None when the source did not expose it; the gate treats
    a missing tag as unknown rather than as a mismatch.
    """

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


@dataclass(frozen=True)
class UnresolvedIdentity:
    """Identity available only as free text (title, description, snippet)."""

    raw_text: str


IdentityFields = ResolvedIdentity | UnresolvedIdentity


@dataclass(frozen=True)
class IdentityTarget:
    """The vehicle a hunt is looking for."""

    make: str
    model: str
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


@dataclass(frozen=True)
class HuntSnapshot:
    """Immutable view of a hunt's criteria, read once at scan start.

    Attributes:
        hunt_id: Hunt identifier.
        dealer_id: Owning dealer.
        criteria_version: Version tagged onto every match and alert written
            by the scan that took this snapshot.
        target: Identity target.
        proven_exit_value: Dealer's proven resale price; None makes the hunt
            unscannable.
        min_gap_abs_buy / min_gap_pct_buy: BUY gap thresholds (inclusive).
        min_gap_abs_watch / min_gap_pct_watch: WATCH gap thresholds (inclusive).
        max_listing_age_days_buy / max_listing_age_days_watch: Freshness
            ceilings (inclusive).
        sources_enabled: Source names in scope.
        include_private: Also scan private-seller marketplace listings.
        states: Geo scope when ``geo_mode`` is ``"states"``.
        must_have_tokens: Keywords that must appear in the listing text.
        must_have_mode: ``strict`` rejects on any missing token, ``soft``
            only reduces the identity score.
    """

    hunt_id: str
    dealer_id: str
    criteria_version: int
    target: IdentityTarget
    proven_exit_value: Decimal | None
    min_gap_abs_buy: Decimal
    min_gap_pct_buy: Decimal
    min_gap_abs_watch: Decimal
    min_gap_pct_watch: Decimal
    max_listing_age_days_buy: int
    max_listing_age_days_watch: int
    proven_exit_method: str | None = None
    km: int | None = None
    km_tolerance_pct: Decimal | None = None
    sources_enabled: tuple[str, ...] = ()
    include_private: bool = False
    states: tuple[str, ...] = ()
    radius_km: int | None = None
    geo_mode: str = "national"
    must_have_tokens: tuple[str, ...] = ()
    must_have_mode: MustHaveMode = MustHaveMode.SOFT
    status: HuntStatus = HuntStatus.ACTIVE

    @property
    def source_scope(self) -> tuple[str, ...]:
        """Return normalized source names to scan, private sellers included if enabled."""
        names = [s.strip().lower() for s in self.sources_enabled if s.strip()]
        if self.include_private and "gumtree_private" not in names:
            names.append("gumtree_private")
        return tuple(dict.fromkeys(names))


@dataclass(frozen=True)
class CandidateListing:
    """A vehicle observed from a source, as handed over by ingestion.

    ``price`` is kept as delivered (number, numeric string or None); it is
    parsed per candidate so a malformed value only affects this listing.
    """

    listing_id: str
    source: str
    identity: IdentityFields
    url: str | None = None
    price: Decimal | int | float | str | None = None
    source_tier: SourceTier | None = None
    text: str = ""
    state: str | None = None
    suburb: str | None = None
    first_seen_at: datetime | None = None
    is_private: bool = False

    @property
    def is_resolved(self) -> bool:
        return isinstance(self.identity, ResolvedIdentity)

    @property
    def searchable_text(self) -> str:
        """Return all free text attached to the listing, upper-cased."""
        parts = [self.text]
        if isinstance(self.identity, UnresolvedIdentity):
            parts.append(self.identity.raw_text)
        else:
            parts.extend(
                str(v)
                for v in (
                    self.identity.make,
                    self.identity.model,
                    self.identity.variant,
                    self.identity.badge,
                )
                if v
            )
        return " ".join(p for p in parts if p).upper()


@dataclass(frozen=True)
class GateResult:
    """Outcome of the identity gate.

    Attributes:
        passed: False only for hard mismatches and non-listings.
        score: 0-10 identity score.
        verified: True when passed and score reaches the verified threshold.
        blocked_reason: Set exactly when ``passed`` is False.
        checks: Credit granted per sub-check, keyed by check name.
        notes: Short human-readable notes (e.g. "cab unknown").
    """

    passed: bool
    score: float
    verified: bool
    blocked_reason: BlockedReason | None = None
    checks: dict[str, float] = field(default_factory=dict)
    notes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "passed": self.passed,
            "score": self.score,
            "verified": self.verified,
            "blocked_reason": self.blocked_reason.value if self.blocked_reason else None,
            "checks": dict(self.checks),
            "notes": list(self.notes),
        }


@dataclass(frozen=True)
class PriceGap:
    """Gap between proven exit and asking price, plus listing age."""

    price: Decimal | None
    gap_dollars: Decimal | None
    gap_pct: Decimal | None
    listing_age_days: int | None
    proven_exit_value: Decimal | None = None

    @property
    def has_price(self) -> bool:
        return self.price is not None

    def clears(self, min_gap_abs: Decimal, min_gap_pct: Decimal) -> bool:
        """Both thresholds hold, inclusive.

        The percentage is compared exactly (``gap * 100 >= pct * exit``);
        ``gap_pct`` is rounded for storage and display only.
        """
        if self.gap_dollars is None or self.proven_exit_value is None:
            return False
        if self.gap_dollars < min_gap_abs:
            return False
        return self.gap_dollars * 100 >= min_gap_pct * self.proven_exit_value


@dataclass(frozen=True)
class Classification:
    decision: Decision
    blocked_reason: BlockedReason | None = None
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class Evaluation:
    """Gate, gap and decision for one (hunt, listing) pair."""

    listing: CandidateListing
    gate: GateResult
    gap: PriceGap
    classification: Classification
    source_tier: SourceTier

    @property
    def decision(self) -> Decision:
        return self.classification.decision

    @property
    def blocked_reason(self) -> BlockedReason | None:
        return self.classification.blocked_reason


@dataclass(frozen=True)
class RankedCandidate:
    """An evaluation placed in the display order for its hunt."""

    evaluation: Evaluation
    rank_position: int
    priority_score: int
    is_cheapest: bool = False

    @property
    def listing(self) -> CandidateListing:
        return self.evaluation.listing

    @property
    def decision(self) -> Decision:
        return self.evaluation.decision
