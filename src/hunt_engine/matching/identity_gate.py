"""Identity gate: vehicle-specification compatibility between hunt and listing.

The gate answers two questions for every candidate:

1. Is this listing definitely *not* the vehicle the dealer is hunting
   (a different series, engine, body, cab or badge, or a model year too
   far from the hunt's)? If so it is blocked.
2. How confident are we that it *is* the vehicle? This becomes the 0-10
   identity score used by the classifier and the ranker.

Listings that only carry free text are never blocked on identity grounds;
their score is capped below the verified threshold instead, so they surface
as UNVERIFIED rather than disappearing as false negatives.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from hunt_engine.matching.models import (
    BlockedReason,
    CandidateListing,
    GateResult,
    HuntSnapshot,
    IdentityTarget,
    MustHaveMode,
    ResolvedIdentity,
    SourceTier,
    UnresolvedIdentity,
)
from hunt_engine.matching.ranker import resolve_source_tier

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_VERIFIED_THRESHOLD = 6.0
DEFAULT_UNRESOLVED_SCORE_CAP = 4.0
DEFAULT_UNKNOWN_FIELD_CREDIT = 0.5
DEFAULT_MAX_YEAR_DRIFT = 3
DEFAULT_KM_TOLERANCE_PCT = Decimal("25")

# Default weights for each sub-check
DEFAULT_WEIGHTS = {
    "series": 3.0,
    "year": 1.5,
    "engine": 2.0,
    "body": 2.0,
    "badge": 1.5,
    "km": 1.0,
    "must_have": 1.5,
}

CHECK_ORDER = ("series", "year", "engine", "body", "badge", "km", "must_have")

# Fraction of the year weight by distance from the hunt year (1.5 / 1.0 / 0.5 at the default weight).
YEAR_PROXIMITY_CREDIT = {0: 1.0, 1: 2 / 3, 2: 1 / 3}

LOCKED_CAB_TYPES = frozenset({"SINGLE", "DUAL", "EXTRA"})

# Longest first so "N LINE PREMIUM" wins over "N LINE" and "GXL" over "GX".
BADGE_VOCABULARY = (
    "N LINE PREMIUM",
    "N LINE PRM",
    "N PREMIUM",
    "N LINE",
    "HEV",
    "BEV",
    "PREMIUM",
    "ELITE",
    "ACTIVE",
    "GXL",
    "GX",
    "VX",
    "SAHARA",
    "SR5",
    "SR",
    "WORKMATE",
    "WILDTRAK",
    "XLT",
    "ROGUE",
    "RUGGED",
    "BASE",
)

# (pattern, points) per series family; a family wins with >= 2 points and a
# strict lead over every other family.
SERIES_SIGNALS: dict[str, tuple[tuple[re.Pattern[str], int], ...]] = {
    "LC70": (
        (re.compile(r"70\s*SERIES|LC\s*70\b"), 2),
        (re.compile(r"[VG]DJ7\d|HZJ7\d|FJ7\d"), 3),
        (re.compile(r"TROOP\s*(Y|CARRIER)"), 2),
        (re.compile(r"\b7[689]\s*SER"), 3),
        (re.compile(r"LC7[689]\b"), 3),
    ),
    "LC200": (
        (re.compile(r"200\s*SERIES|LC\s*200\b"), 2),
        (re.compile(r"[UV]DJ20\d|URJ20\d"), 3),
    ),
    "LC300": (
        (re.compile(r"300\s*SERIES|LC\s*300\b"), 2),
        (re.compile(r"[FV]JA300|GRJ300"), 3),
        (re.compile(r"GR\s*SPORT"), 2),
    ),
}
_SERIES_CONTEXT = re.compile(r"LAND\s*CRUISER|CRUISER")
_TEXT_YEAR = re.compile(r"\b(19[89]\d|20[0-4]\d)\b")

_EDITORIAL_URL = re.compile(
    r"/(news|reviews?|guides?|specs?|pricing|advice|car-news)(/|-|$)",
    re.IGNORECASE,
)


class _Outcome(Enum):
    MATCH = "match"
    UNCONSTRAINED = "unconstrained"
    UNKNOWN = "unknown"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class _Check:
    outcome: _Outcome
    reason: BlockedReason | None = None
    credit_fraction: float | None = None
    note: str | None = None


def normalize_tag(value: object) -> str | None:
    """Normalize an identity tag for comparison ("cab-chassis" == "CAB CHASSIS")."""
    if value is None:
        return None
    text = re.sub(r"[\s_\-/]+", " ", str(value)).strip().upper()
    if not text or text == "UNKNOWN":
        return None
    return text


def _compact(value: object) -> str | None:
    norm = normalize_tag(value)
    return norm.replace(" ", "") if norm else None


def _engine_code_root(value: object) -> str | None:
    norm = normalize_tag(value)
    return norm.split(" ")[0] if norm else None


def _compare(expected: str | None, actual: str | None) -> _Outcome:
    if expected is None:
        return _Outcome.UNCONSTRAINED
    if actual is None:
        return _Outcome.UNKNOWN
    return _Outcome.MATCH if expected == actual else _Outcome.MISMATCH


def _merge(*outcomes: _Outcome) -> _Outcome:
    if _Outcome.MISMATCH in outcomes:
        return _Outcome.MISMATCH
    if _Outcome.MATCH in outcomes:
        return _Outcome.MATCH
    if _Outcome.UNKNOWN in outcomes:
        return _Outcome.UNKNOWN
    return _Outcome.UNCONSTRAINED


def detect_series(text: str) -> str | None:
    """Detect a series family from free text using weighted keyword signals.

    Returns None unless the text is about a Land Cruiser and one family has a
    clear lead.
    """
    upper = text.upper()
    if not _SERIES_CONTEXT.search(upper):
        return None
    points = {
        family: sum(pts for pattern, pts in signals if pattern.search(upper))
        for family, signals in SERIES_SIGNALS.items()
    }
    best = max(points, key=lambda family: points[family])
    if points[best] < 2:
        return None
    if any(p >= points[best] for family, p in points.items() if family != best):
        return None
    return best


def extract_badge(text: str | None) -> str | None:
    """Extract the first known badge from variant or listing text."""
    norm = normalize_tag(text)
    if not norm:
        return None
    padded = f" {norm} "
    for badge in BADGE_VOCABULARY:
        if f" {badge} " in padded:
            return badge
    return None


class IdentityGate:
    """Evaluates a candidate listing's identity against a hunt's target.

    Sub-checks run in a fixed order (series/model-root, year, engine,
    body/cab, badge, km, must-have tokens). Each contributes its weight when
    it matches or when the hunt does not constrain it, a fraction of its
    weight when the listing does not expose the field, and nothing on a
    mismatch. The first hard mismatch in check order becomes the
    ``blocked_reason``.

    Year and km are graded rather than all-or-nothing. A year one or two
    off earns part of the year weight; further than ``max_year_drift`` off
    blocks a resolved listing. Odometer readings within the hunt's
    ``km_tolerance_pct`` above target earn full credit, up to twice the
    tolerance earns half, and beyond that nothing; km never blocks.

    Scoring Formula:
        score = sum(credit[check]) / sum(weight[check]) * 10
        if identity is unresolved: score = min(score, unresolved_score_cap)
        verified = passed AND resolved AND score >= verified_threshold

    Example:
        ```python
        gate = IdentityGate()
        result = gate.evaluate(hunt, listing)
        if not result.passed:
            print(result.blocked_reason)
        ```
    """

    def __init__(
        self,
        *,
        weights: Mapping[str, float] | None = None,
        verified_threshold: float = DEFAULT_VERIFIED_THRESHOLD,
        unresolved_score_cap: float = DEFAULT_UNRESOLVED_SCORE_CAP,
        unknown_field_credit: float = DEFAULT_UNKNOWN_FIELD_CREDIT,
        max_year_drift: int = DEFAULT_MAX_YEAR_DRIFT,
    ) -> None:
        """Initialize the identity gate.

        Args:
            weights: Per-check weights; missing keys fall back to defaults.
            verified_threshold: Minimum score for a verified identity.
            unresolved_score_cap: Ceiling applied to free-text identities.
                Must be below ``verified_threshold``.
            unknown_field_credit: Fraction of a check's weight granted when
                the listing does not expose the field.
            max_year_drift: Largest model-year difference a resolved
                listing may have before it is blocked.

        Raises:
            ValueError: If weights are unknown/negative or the cap is not
                below the verified threshold.
        """
        merged = dict(DEFAULT_WEIGHTS)
        if weights:
            unknown = set(weights) - set(DEFAULT_WEIGHTS)
            if unknown:
                raise ValueError(f"Unknown identity weight(s): {sorted(unknown)}")
            merged.update({k: float(v) for k, v in weights.items()})
        if any(w < 0 for w in merged.values()) or sum(merged.values()) <= 0:
            raise ValueError("Identity weights must be non-negative and sum to > 0")
        if unresolved_score_cap >= verified_threshold:
            raise ValueError("unresolved_score_cap must be below verified_threshold")
        if not 0.0 <= unknown_field_credit <= 1.0:
            raise ValueError("unknown_field_credit must be within [0, 1]")
        if max_year_drift < 0:
            raise ValueError("max_year_drift must be >= 0")

        self.weights = merged
        self.verified_threshold = verified_threshold
        self.unresolved_score_cap = unresolved_score_cap
        self.unknown_field_credit = unknown_field_credit
        self.max_year_drift = max_year_drift

    def evaluate(self, hunt: HuntSnapshot, listing: CandidateListing) -> GateResult:
        """Evaluate one listing against the hunt snapshot.

        Args:
            hunt: Criteria snapshot taken at scan start.
            listing: Candidate listing from an ingestion collaborator.

        Returns:
            GateResult with pass/fail, score and blocked reason.
        """
        text = listing.searchable_text
        if self._is_non_listing(hunt.target, listing, text):
            return GateResult(
                passed=False,
                score=0.0,
                verified=False,
                blocked_reason=BlockedReason.NOT_A_LISTING,
                notes=("no price and no identity, or editorial page",),
            )

        identity = listing.identity
        if isinstance(identity, ResolvedIdentity):
            checks = {
                "series": self._check_series(hunt.target, identity, text),
                "year": self._check_year(hunt.target.year, identity.year),
                "engine": self._check_engine(hunt.target, identity),
                "body": self._check_body(hunt.target, identity),
                "badge": self._check_badge(hunt.target, identity),
                "km": self._check_km(hunt, identity.km),
            }
        else:
            checks = self._check_unresolved(hunt, identity, text)
        checks["must_have"] = self._check_must_have(hunt, text)

        credits: dict[str, float] = {}
        notes: list[str] = []
        blocked: BlockedReason | None = None
        for name in CHECK_ORDER:
            check = checks[name]
            credits[name] = round(self._credit(name, check), 3)
            if check.note:
                notes.append(check.note)
            if blocked is None and check.outcome is _Outcome.MISMATCH and check.reason is not None:
                blocked = check.reason

        score = sum(credits.values()) / sum(self.weights.values()) * 10.0
        if isinstance(identity, UnresolvedIdentity):
            score = min(score, self.unresolved_score_cap)
        score = round(min(max(score, 0.0), 10.0), 2)

        passed = blocked is None
        verified = passed and listing.is_resolved and score >= self.verified_threshold
        return GateResult(
            passed=passed,
            score=score,
            verified=verified,
            blocked_reason=blocked,
            checks=credits,
            notes=tuple(notes),
        )

    def _credit(self, name: str, check: _Check) -> float:
        weight = self.weights[name]
        if check.credit_fraction is not None:
            return weight * check.credit_fraction
        if check.outcome in (_Outcome.MATCH, _Outcome.UNCONSTRAINED):
            return weight
        if check.outcome is _Outcome.UNKNOWN:
            return weight * self.unknown_field_credit
        return 0.0

    @staticmethod
    def _is_non_listing(target: IdentityTarget, listing: CandidateListing, text: str) -> bool:
        tier = listing.source_tier or resolve_source_tier(listing.source, listing.url)
        if tier is SourceTier.DEALER and listing.url and _EDITORIAL_URL.search(listing.url):
            return True
        if listing.price is not None and str(listing.price).strip():
            return False
        identity = listing.identity
        if isinstance(identity, ResolvedIdentity):
            return not any((identity.make, identity.model, identity.variant, identity.year))
        words = {w for w in (_compact(target.make), _compact(target.model)) if w}
        compact_text = text.replace(" ", "")
        return not any(w in compact_text for w in words)

    def _check_series(self, target: IdentityTarget, identity: ResolvedIdentity, text: str) -> _Check:
        make = _compare(_compact(target.make), _compact(identity.make))
        model = self._compare_model(target.model, identity.model)

        listing_series = normalize_tag(identity.series_family)
        if listing_series is None and target.series_family:
            listing_series = detect_series(text)
        series = _compare(_compact(target.series_family), _compact(listing_series))
        root = _compare(_compact(target.model_root), _compact(identity.model_root))

        if _Outcome.MISMATCH in (make, model):
            outcome = _Outcome.MISMATCH
        elif target.series_family or target.model_root:
            outcome = _merge(series, root)
        else:
            outcome = _merge(make, model)
        note = f"series {listing_series}" if outcome is _Outcome.MISMATCH and listing_series else None
        return _Check(outcome, BlockedReason.SERIES_MISMATCH, note=note)

    @staticmethod
    def _compare_model(expected: str | None, actual: str | None) -> _Outcome:
        exp = _compact(expected)
        act = _compact(actual)
        if exp is None:
            return _Outcome.UNCONSTRAINED
        if act is None:
            return _Outcome.UNKNOWN
        return _Outcome.MATCH if act.startswith(exp) or exp.startswith(act) else _Outcome.MISMATCH

    @staticmethod
    def _check_engine(target: IdentityTarget, identity: ResolvedIdentity) -> _Check:
        family = _compare(_compact(target.engine_family), _compact(identity.engine_family))
        code = _compare(_engine_code_root(target.engine_code), _engine_code_root(identity.engine_code))
        outcome = _merge(family, code)
        note = None
        if code is _Outcome.MISMATCH:
            note = f"engine {identity.engine_code} != {target.engine_code}"
        return _Check(outcome, BlockedReason.ENGINE_MISMATCH, note=note)

    @staticmethod
    def _check_body(target: IdentityTarget, identity: ResolvedIdentity) -> _Check:
        body = _compare(_compact(target.body_type), _compact(identity.body_type))
        if body is _Outcome.MISMATCH:
            return _Check(body, BlockedReason.BODY_MISMATCH)

        target_cab = normalize_tag(target.cab_type)
        if target_cab not in LOCKED_CAB_TYPES:
            return _Check(body, BlockedReason.BODY_MISMATCH)
        cab = _compare(target_cab, normalize_tag(identity.cab_type))
        if cab is _Outcome.MISMATCH:
            return _Check(cab, BlockedReason.CAB_MISMATCH)
        note = "cab unknown, verify" if cab is _Outcome.UNKNOWN else None
        return _Check(_merge(body, cab), BlockedReason.CAB_MISMATCH, note=note)

    @staticmethod
    def _check_badge(target: IdentityTarget, identity: ResolvedIdentity) -> _Check:
        listing_badge = normalize_tag(identity.badge) or extract_badge(identity.variant)
        badge = _compare(normalize_tag(target.badge), listing_badge)
        if badge is _Outcome.MISMATCH:
            return _Check(badge, BlockedReason.BADGE_MISMATCH, note=f"badge {listing_badge}")
        if target.badge_tier is not None and identity.badge_tier is not None:
            distance = abs(target.badge_tier - identity.badge_tier)
            if distance > 1:
                return _Check(_Outcome.UNKNOWN, credit_fraction=0.0, note="badge tier differs")
            if distance == 1 and badge is not _Outcome.MATCH:
                return _Check(_Outcome.UNKNOWN)
        return _Check(badge, BlockedReason.BADGE_MISMATCH)

    def _check_year(self, target_year: int | None, year: int | None) -> _Check:
        if target_year is None:
            return _Check(_Outcome.UNCONSTRAINED)
        if year is None:
            return _Check(_Outcome.UNKNOWN)
        drift = abs(year - target_year)
        if drift == 0:
            return _Check(_Outcome.MATCH)
        if drift > self.max_year_drift:
            return _Check(_Outcome.MISMATCH, BlockedReason.YEAR_MISMATCH, note=f"year {year}")
        return _Check(
            _Outcome.UNKNOWN,
            credit_fraction=YEAR_PROXIMITY_CREDIT.get(drift, 0.0),
            note=f"year {year}",
        )

    @staticmethod
    def _check_km(hunt: HuntSnapshot, km: int | None) -> _Check:
        if hunt.km is None:
            return _Check(_Outcome.UNCONSTRAINED)
        if km is None:
            return _Check(_Outcome.UNKNOWN)
        tolerance = hunt.km_tolerance_pct if hunt.km_tolerance_pct is not None else DEFAULT_KM_TOLERANCE_PCT
        allowance = Decimal(hunt.km) * tolerance / 100
        if km <= hunt.km + allowance:
            return _Check(_Outcome.MATCH)
        fraction = 0.5 if km <= hunt.km + 2 * allowance else 0.0
        return _Check(_Outcome.UNKNOWN, credit_fraction=fraction, note=f"km {km:,}")

    def _check_unresolved(
        self,
        hunt: HuntSnapshot,
        identity: UnresolvedIdentity,
        text: str,
    ) -> dict[str, _Check]:
        # Text-derived signals only earn credit; they never block.
        target = hunt.target
        checks: dict[str, _Check] = {}
        if target.series_family:
            detected = detect_series(text)
            outcome = _compare(_compact(target.series_family), _compact(detected))
            fraction = 0.0 if outcome is _Outcome.MISMATCH else None
            note = f"text suggests {detected}" if outcome is _Outcome.MISMATCH else None
            checks["series"] = _Check(
                _Outcome.UNKNOWN if outcome is _Outcome.MISMATCH else outcome,
                credit_fraction=fraction,
                note=note,
            )
        else:
            words = [w for w in (_compact(target.make), _compact(target.model)) if w]
            compact_text = text.replace(" ", "")
            found = bool(words) and all(w in compact_text for w in words)
            checks["series"] = _Check(_Outcome.MATCH if found else _Outcome.UNKNOWN)

        year_match = _TEXT_YEAR.search(identity.raw_text or "")
        year = self._check_year(target.year, int(year_match.group(1)) if year_match else None)
        if year.outcome is _Outcome.MISMATCH:
            year = _Check(_Outcome.UNKNOWN, credit_fraction=0.0, note=year.note)
        checks["year"] = year
        checks["km"] = _Check(_Outcome.UNKNOWN if hunt.km is not None else _Outcome.UNCONSTRAINED)

        target_engine = target.engine_family or target.engine_code
        checks["engine"] = _Check(_Outcome.UNKNOWN if target_engine else _Outcome.UNCONSTRAINED)
        target_body = target.body_type or target.cab_type
        checks["body"] = _Check(_Outcome.UNKNOWN if target_body else _Outcome.UNCONSTRAINED)

        badge = _compare(normalize_tag(target.badge), extract_badge(identity.raw_text))
        checks["badge"] = _Check(
            _Outcome.UNKNOWN if badge is _Outcome.MISMATCH else badge,
            credit_fraction=0.0 if badge is _Outcome.MISMATCH else None,
        )
        return checks

    @staticmethod
    def _check_must_have(hunt: HuntSnapshot, text: str) -> _Check:
        tokens = [t for t in (normalize_tag(tok) for tok in hunt.must_have_tokens) if t]
        if not tokens:
            return _Check(_Outcome.UNCONSTRAINED)
        haystack = f" {normalize_tag(text) or ''} "
        missing = [t for t in tokens if f" {t} " not in haystack]
        if missing and hunt.must_have_mode is MustHaveMode.STRICT:
            return _Check(
                _Outcome.MISMATCH,
                BlockedReason.MISSING_REQUIRED_TOKEN,
                note=f"missing {', '.join(missing)}",
            )
        fraction = (len(tokens) - len(missing)) / len(tokens)
        outcome = _Outcome.MATCH if not missing else _Outcome.UNKNOWN
        return _Check(outcome, credit_fraction=fraction)
