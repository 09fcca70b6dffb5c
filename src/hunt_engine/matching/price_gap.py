"""Price gap and listing freshness calculation."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from hunt_engine.matching.models import PriceGap

_PRICE_NOISE = re.compile(r"[\s$,]|AUD|AU\$", re.IGNORECASE)
_SECONDS_PER_DAY = 86_400


class InvalidPriceError(ValueError):
    """Raised when a listing price cannot be interpreted."""


def coerce_price(value: Decimal | int | float | str | None) -> Decimal | None:
    """Parse a listing price as delivered by ingestion.

    Accepts numbers and strings such as ``"$45,000"`` or ``"AUD 45000.00"``.
    Blank strings mean no price.

    Raises:
        InvalidPriceError: For unparsable, non-finite, zero or negative values.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidPriceError(f"Invalid price: {value!r}")
    if isinstance(value, str):
        cleaned = _PRICE_NOISE.sub("", value)
        if not cleaned:
            return None
        raw: object = cleaned
    else:
        raw = value
    try:
        price = Decimal(str(raw))
    except InvalidOperation as e:
        raise InvalidPriceError(f"Invalid price: {value!r}") from e
    if not price.is_finite() or price <= 0:
        raise InvalidPriceError(f"Invalid price: {value!r}")
    return price


def listing_age_days(first_seen_at: datetime | None, now: datetime) -> int | None:
    """Whole days since first seen; naive timestamps are treated as UTC."""
    if first_seen_at is None:
        return None
    if first_seen_at.tzinfo is None:
        first_seen_at = first_seen_at.replace(tzinfo=UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    elapsed = (now - first_seen_at).total_seconds()
    if elapsed <= 0:
        return 0
    return int(elapsed // _SECONDS_PER_DAY)


def compute_price_gap(
    price: Decimal | None,
    proven_exit_value: Decimal,
    first_seen_at: datetime | None,
    now: datetime,
) -> PriceGap:
    """Compute the gap between a hunt's proven exit and a candidate's price.

    ``gap_dollars`` is positive when the candidate is cheaper than the proven
    exit. ``gap_pct`` is relative to the proven exit and rounded to three
    decimals for storage; threshold checks go through ``PriceGap.clears``,
    which compares the exact ratio. Both are None when the price is absent.

    Args:
        price: Parsed asking price, or None.
        proven_exit_value: Hunt's proven resale price (must be > 0).
        first_seen_at: When the listing was first observed.
        now: Evaluation time.

    Returns:
        PriceGap with gap and age annotations.
    """
    if proven_exit_value <= 0:
        raise ValueError("proven_exit_value must be > 0")
    age = listing_age_days(first_seen_at, now)
    if price is None:
        return PriceGap(price=None, gap_dollars=None, gap_pct=None, listing_age_days=age)

    gap_dollars = proven_exit_value - price
    gap_pct = (gap_dollars / proven_exit_value * 100).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP)
    return PriceGap(
        price=price,
        gap_dollars=gap_dollars,
        gap_pct=gap_pct,
        listing_age_days=age,
        proven_exit_value=proven_exit_value,
    )
