"""Source-tier ranking of evaluated candidates.

Display order is auction before marketplace before dealer, then decision,
then identity score, then price. The same order is encoded into a single
integer ``priority_score`` so storage can sort without recomputing it.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Iterable
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from hunt_engine.matching.models import Decision, Evaluation, RankedCandidate, SourceTier

logger = logging.getLogger(__name__)

AUCTION_SOURCES = ("pickles", "manheim", "grays", "lloyds", "slattery")
MARKETPLACE_SOURCES = ("carsales", "autotrader", "gumtree", "facebook", "drive")

# Field widths of the priority encoding.
PRICE_CEILING_CENTS = 10**10
_PRICE_SPAN = PRICE_CEILING_CENTS + 1
_IDENTITY_SPAN = 1001  # identity score in hundredths, 0..1000
_DECISION_SPAN = 4

_LOT_ID = re.compile(r"/(?:lot|lots|item|items|vehicle|vehicles|details)/(?:[^/?#]*/)*?(\d{4,})")
_FAR_FUTURE = datetime.max.replace(tzinfo=UTC)


def resolve_source_tier(source: str | None, url: str | None = None) -> SourceTier:
    """Classify a source by name, falling back to the listing URL host.

    Args:
        source: Source name as reported by ingestion (e.g. "pickles").
        url: Listing URL.

    Returns:
        AUCTION, MARKETPLACE or DEALER (the default for anything unknown).
    """
    haystack = f"{source or ''} {url or ''}".lower()
    if any(name in haystack for name in AUCTION_SOURCES):
        return SourceTier.AUCTION
    if any(name in haystack for name in MARKETPLACE_SOURCES):
        return SourceTier.MARKETPLACE
    return SourceTier.DEALER


def canonical_listing_id(source: str, url: str | None, lot_id: str | None = None) -> str:
    """Build a stable listing identifier.

    Auction listings are keyed by their lot number so the same lot seen via
    two URLs collapses to one listing; everything else hashes the URL.

    Raises:
        ValueError: If neither a lot id nor a URL is available.
    """
    name = source.strip().lower()
    if lot_id:
        return f"{name}:{lot_id}"
    if not url:
        raise ValueError("canonical_listing_id requires a lot id or a url")
    if resolve_source_tier(name, url) is SourceTier.AUCTION:
        match = _LOT_ID.search(url)
        if match:
            return f"{name}:{match.group(1)}"
    digest = hashlib.md5(url.strip().encode("utf-8"), usedforsecurity=False).hexdigest()
    return f"{name}:{digest}"


def _price_cents(price: Decimal | None) -> int | None:
    if price is None:
        return None
    return int((price * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def encode_priority(
    tier: SourceTier,
    decision: Decision,
    identity_score: float,
    price: Decimal | None,
) -> int:
    """Encode the rank key as one integer; larger means earlier in the list.

    Layout (most significant first): inverted tier, decision rank, identity
    score in hundredths, inverted price in cents. Missing prices sort last
    within their group.
    """
    tier_part = SourceTier.DEALER.value - tier.value
    identity_part = max(0, min(_IDENTITY_SPAN - 1, int(round(identity_score * 100))))
    cents = _price_cents(price)
    price_part = 0 if cents is None else PRICE_CEILING_CENTS - max(0, min(cents, PRICE_CEILING_CENTS))
    return ((tier_part * _DECISION_SPAN + decision.rank) * _IDENTITY_SPAN + identity_part) * _PRICE_SPAN + price_part


class SourceRanker:
    """Orders a hunt's evaluated candidates into a total order.

    Sort key (ascending = higher priority):
        (source_tier, -decision_rank, -identity_score, price, first_seen_at, listing_id)

    The trailing listing id only matters for exact duplicates on every other
    field and keeps the order total.
    """

    def rank(self, evaluations: Iterable[Evaluation]) -> list[RankedCandidate]:
        ordered = sorted(evaluations, key=self.sort_key)

        cheapest_index: int | None = None
        cheapest_cents: int | None = None
        for index, evaluation in enumerate(ordered):
            cents = _price_cents(evaluation.gap.price)
            if evaluation.decision is Decision.IGNORE or cents is None:
                continue
            if cheapest_cents is None or cents < cheapest_cents:
                cheapest_index, cheapest_cents = index, cents

        ranked = [
            RankedCandidate(
                evaluation=evaluation,
                rank_position=index + 1,
                priority_score=encode_priority(
                    evaluation.source_tier,
                    evaluation.decision,
                    evaluation.gate.score,
                    evaluation.gap.price,
                ),
                is_cheapest=index == cheapest_index,
            )
            for index, evaluation in enumerate(ordered)
        ]
        logger.debug("Ranked %d candidates", len(ranked))
        return ranked

    @staticmethod
    def sort_key(evaluation: Evaluation) -> tuple[int, int, float, float, datetime, str]:
        cents = _price_cents(evaluation.gap.price)
        first_seen = evaluation.listing.first_seen_at
        if first_seen is not None and first_seen.tzinfo is None:
            first_seen = first_seen.replace(tzinfo=UTC)
        return (
            evaluation.source_tier.value,
            -evaluation.decision.rank,
            -round(evaluation.gate.score, 2),
            float("inf") if cents is None else float(cents),
            first_seen or _FAR_FUTURE,
            evaluation.listing.listing_id,
        )
