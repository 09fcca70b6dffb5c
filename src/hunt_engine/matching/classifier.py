"""Decision classifier: BUY / WATCH / UNVERIFIED / IGNORE per candidate.

Classification is a pure function of the hunt snapshot, the identity gate
result and the price gap, so repeated evaluation of identical inputs always
yields the identical decision and reason.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from hunt_engine.matching.identity_gate import IdentityGate
from hunt_engine.matching.models import (
    BlockedReason,
    CandidateListing,
    Classification,
    Decision,
    Evaluation,
    GateResult,
    HuntSnapshot,
    InvalidHuntConfigError,
    PriceGap,
)
from hunt_engine.matching.price_gap import coerce_price, compute_price_gap
from hunt_engine.matching.ranker import resolve_source_tier

logger = logging.getLogger(__name__)


def validate_hunt_config(hunt: HuntSnapshot) -> None:
    """Check that a hunt can be scanned.

    Raises:
        InvalidHuntConfigError: If the proven exit value is missing or any
            threshold is malformed.
    """
    problems: list[str] = []
    if hunt.proven_exit_value is None:
        problems.append("proven_exit_value is required")
    elif hunt.proven_exit_value <= 0:
        problems.append("proven_exit_value must be > 0")

    for name in ("min_gap_abs_buy", "min_gap_abs_watch"):
        value = getattr(hunt, name)
        if value is None or value < 0:
            problems.append(f"{name} must be >= 0")
    for name in ("min_gap_pct_buy", "min_gap_pct_watch"):
        value = getattr(hunt, name)
        if value is None or not Decimal(0) <= value <= Decimal(100):
            problems.append(f"{name} must be within [0, 100]")
    for name in ("max_listing_age_days_buy", "max_listing_age_days_watch"):
        value = getattr(hunt, name)
        if value is None or value < 0:
            problems.append(f"{name} must be >= 0")

    if not hunt.target.make or not hunt.target.model:
        problems.append("make and model are required")

    if problems:
        raise InvalidHuntConfigError(f"Hunt {hunt.hunt_id}: " + "; ".join(problems))


class DecisionClassifier:
    """Assigns one decision per (hunt, listing) pair.

    Rules, first match wins:
        1. gate failed -> IGNORE (gate's blocked reason)
        2. no price -> UNVERIFIED (NO_PRICE)
        3. both BUY gaps cleared and age within BUY ceiling -> BUY
        4. both WATCH gaps cleared and age within WATCH ceiling -> WATCH
        5. identity not verified -> UNVERIFIED (LOW_IDENTITY_CONFIDENCE)
        6. IGNORE (GAP_INSUFFICIENT, or STALE_LISTING when only age failed)

    All comparisons are inclusive. A listing without a first-seen time is
    treated as fresh.
    """

    def __init__(self, *, require_verified_for_buy: bool = False) -> None:
        """Initialize the classifier.

        Args:
            require_verified_for_buy: When True, a candidate whose identity
                is not verified can reach WATCH at best.
        """
        self.require_verified_for_buy = require_verified_for_buy

    def classify(self, hunt: HuntSnapshot, gate: GateResult, gap: PriceGap) -> Classification:
        if not gate.passed:
            reason = gate.blocked_reason or BlockedReason.CLASSIFIER_FALLBACK
            return Classification(Decision.IGNORE, reason, gate.notes)

        if not gap.has_price or gap.gap_dollars is None or gap.gap_pct is None:
            return Classification(Decision.UNVERIFIED, BlockedReason.NO_PRICE, ("no asking price",))

        age = gap.listing_age_days or 0
        reasons = self._reasons(gate, gap)

        buy_gap_ok = gap.clears(hunt.min_gap_abs_buy, hunt.min_gap_pct_buy)
        buy_age_ok = age <= hunt.max_listing_age_days_buy
        watch_gap_ok = gap.clears(hunt.min_gap_abs_watch, hunt.min_gap_pct_watch)
        watch_age_ok = age <= hunt.max_listing_age_days_watch

        if buy_gap_ok and buy_age_ok:
            if gate.verified or not self.require_verified_for_buy:
                return Classification(Decision.BUY, None, reasons)
        if watch_gap_ok and watch_age_ok:
            return Classification(Decision.WATCH, None, reasons)
        if not gate.verified:
            return Classification(Decision.UNVERIFIED, BlockedReason.LOW_IDENTITY_CONFIDENCE, reasons)
        if not buy_gap_ok and not watch_gap_ok:
            return Classification(Decision.IGNORE, BlockedReason.GAP_INSUFFICIENT, reasons)
        if (buy_gap_ok and not buy_age_ok) or (watch_gap_ok and not watch_age_ok):
            return Classification(Decision.IGNORE, BlockedReason.STALE_LISTING, reasons)

        logger.error(
            "Classifier fell through all rules for hunt=%s gap=%s pct=%s age=%s verified=%s",
            hunt.hunt_id,
            gap.gap_dollars,
            gap.gap_pct,
            age,
            gate.verified,
        )
        return Classification(Decision.IGNORE, BlockedReason.CLASSIFIER_FALLBACK, reasons)

    @staticmethod
    def _reasons(gate: GateResult, gap: PriceGap) -> tuple[str, ...]:
        parts = [
            f"gap ${gap.gap_dollars:,.0f} ({gap.gap_pct}%)",
            f"identity {gate.score:.1f}/10",
        ]
        if gap.listing_age_days is not None:
            parts.append(f"listed {gap.listing_age_days}d")
        parts.extend(gate.notes)
        return tuple(parts)


def evaluate_candidate(
    hunt: HuntSnapshot,
    listing: CandidateListing,
    *,
    gate: IdentityGate,
    classifier: DecisionClassifier,
    now: datetime,
) -> Evaluation:
    """Run gate, gap and classifier for one candidate.

    A failure inside a single candidate (typically a malformed price) never
    propagates: the candidate is downgraded to UNVERIFIED with reason
    MALFORMED_INPUT, unless the identity gate already rejected it.
    """
    tier = listing.source_tier or resolve_source_tier(listing.source, listing.url)
    empty_gap = PriceGap(price=None, gap_dollars=None, gap_pct=None, listing_age_days=None)
    gate_result: GateResult | None = None
    try:
        gate_result = gate.evaluate(hunt, listing)
        if not gate_result.passed:
            classification = classifier.classify(hunt, gate_result, empty_gap)
            return Evaluation(listing, gate_result, empty_gap, classification, tier)
        if hunt.proven_exit_value is None:
            raise InvalidHuntConfigError(f"Hunt {hunt.hunt_id}: proven_exit_value is required")
        price = coerce_price(listing.price)
        gap = compute_price_gap(price, hunt.proven_exit_value, listing.first_seen_at, now)
        classification = classifier.classify(hunt, gate_result, gap)
    except InvalidHuntConfigError:
        raise
    except Exception as e:
        logger.warning(
            "Candidate %s (%s) downgraded to UNVERIFIED: %s",
            listing.listing_id,
            listing.source,
            e,
            exc_info=True,
        )
        fallback_gate = gate_result or GateResult(passed=True, score=0.0, verified=False)
        classification = Classification(Decision.UNVERIFIED, BlockedReason.MALFORMED_INPUT, (str(e),))
        return Evaluation(listing, fallback_gate, empty_gap, classification, tier)

    return Evaluation(listing, gate_result, gap, classification, tier)
