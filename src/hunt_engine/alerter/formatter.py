"""Alert payload snapshots and one-line summaries.

The payload is frozen into the alert row at creation time so later listing
or hunt changes never rewrite what the dealer was told.
"""

from __future__ import annotations

from decimal import Decimal

from hunt_engine.matching.models import HuntSnapshot, RankedCandidate, ResolvedIdentity
from hunt_engine.storage.repos import HuntAlertDTO


def format_money(amount: Decimal | str | None) -> str:
    """Format a dollar amount with thousands separators and no cents."""
    if amount is None:
        return "n/a"
    return f"${Decimal(str(amount)):,.0f}"


def _str_or_none(value: object) -> str | None:
    return str(value) if value is not None else None


def build_alert_payload(hunt: HuntSnapshot, candidate: RankedCandidate) -> dict[str, object]:
    """Snapshot identity, price and gap of a candidate at alert time."""
    evaluation = candidate.evaluation
    listing = evaluation.listing
    identity = listing.identity
    if isinstance(identity, ResolvedIdentity):
        year = identity.year
        make = identity.make or hunt.target.make
        model = identity.model or hunt.target.model
        variant = identity.variant
        km = identity.km
    else:
        year = None
        make = hunt.target.make
        model = hunt.target.model
        variant = identity.raw_text[:120] or None
        km = None

    return {
        "year": year,
        "make": make,
        "model": model,
        "variant": variant,
        "km": km,
        "asking_price": _str_or_none(evaluation.gap.price),
        "proven_exit_value": _str_or_none(hunt.proven_exit_value),
        "gap_dollars": _str_or_none(evaluation.gap.gap_dollars),
        "gap_pct": _str_or_none(evaluation.gap.gap_pct),
        "listing_age_days": evaluation.gap.listing_age_days,
        "match_score": evaluation.gate.score,
        "identity_verified": evaluation.gate.verified,
        "reasons": list(evaluation.classification.reasons),
        "source": listing.source,
        "source_tier": evaluation.source_tier.value,
        "rank_position": candidate.rank_position,
        "is_cheapest": candidate.is_cheapest,
        "listing_url": listing.url,
        "state": listing.state,
        "suburb": listing.suburb,
    }


def format_alert_line(alert: HuntAlertDTO) -> str:
    """Render an alert as a single human-readable line."""
    p = alert.payload
    vehicle = " ".join(str(v) for v in (p.get("year"), p.get("make"), p.get("model"), p.get("variant")) if v)
    gap_pct = p.get("gap_pct")
    gap = format_money(p.get("gap_dollars"))  # type: ignore[arg-type]
    if gap_pct is not None:
        gap = f"{gap} / {Decimal(str(gap_pct)):.1f}%"
    location = ", ".join(str(v) for v in (p.get("suburb"), p.get("state")) if v)
    parts = [
        f"{alert.alert_type}: {vehicle}",
        format_money(p.get("asking_price")),  # type: ignore[arg-type]
        f"gap {gap}",
        str(p.get("source") or ""),
    ]
    if location:
        parts.append(location)
    return " | ".join(part for part in parts if part)
