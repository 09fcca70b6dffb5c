"""Candidate sources consumed by the scanner.

Ingestion (crawling, rate limiting, retries) lives outside the engine. A
source only has to hand over an already-fetched batch of candidate listings
for a hunt, or raise :class:`SourceUnavailableError`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError

from hunt_engine.matching.models import (
    CandidateListing,
    HuntSnapshot,
    ResolvedIdentity,
    SourceTier,
    UnresolvedIdentity,
)
from hunt_engine.matching.ranker import canonical_listing_id
from hunt_engine.storage.database import DatabaseManager
from hunt_engine.storage.repos import ListingRepository

logger = logging.getLogger(__name__)

_RESOLVED_FIELDS = (
    "make",
    "model",
    "variant",
    "year",
    "km",
    "model_root",
    "series_family",
    "badge",
    "badge_tier",
    "body_type",
    "engine_family",
    "engine_code",
    "cab_type",
    "cylinders",
    "engine_litres",
    "fuel",
    "transmission",
    "drivetrain",
)
_INT_FIELDS = frozenset({"year", "km", "badge_tier", "cylinders"})
_STRUCTURED_TAGS = frozenset(_RESOLVED_FIELDS) - {"make", "model", "variant", "year", "km"}


class SourceUnavailableError(RuntimeError):
    """A source failed to return candidates for this scan."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class CandidateSource(Protocol):
    """Anything that can hand over a batch of listings for a hunt."""

    name: str

    async def fetch(self, hunt: HuntSnapshot) -> list[CandidateListing]: ...


@dataclass
class StaticCandidateSource:
    """In-memory source (tests, JSONL imports)."""

    name: str
    listings: list[CandidateListing] = field(default_factory=list)

    async def fetch(self, hunt: HuntSnapshot) -> list[CandidateListing]:
        return list(self.listings)


class StoredListingSource:
    """Reads one source's listings from the ``listings`` table."""

    def __init__(
        self,
        db: DatabaseManager,
        name: str,
        *,
        year_window: int = 1,
        limit: int = 500,
    ) -> None:
        self.db = db
        self.name = name
        self.year_window = year_window
        self.limit = limit

    async def fetch(self, hunt: HuntSnapshot) -> list[CandidateListing]:
        try:
            async with self.db.get_async_session() as session:
                rows = await ListingRepository(session).list_for_hunt(
                    source=self.name,
                    hunt=hunt,
                    year_window=self.year_window,
                    limit=self.limit,
                )
        except SQLAlchemyError as e:
            raise SourceUnavailableError(self.name, str(e)) from e
        return [row.to_candidate() for row in rows]


class SourceRegistry:
    """Maps source names to collaborators.

    Names without a registered source are built with ``fallback`` when one
    is configured; otherwise they are reported as unavailable by the scanner.
    """

    def __init__(
        self,
        sources: Iterable[CandidateSource] = (),
        *,
        fallback: Callable[[str], CandidateSource] | None = None,
    ) -> None:
        self._sources: dict[str, CandidateSource] = {}
        self._fallback = fallback
        for source in sources:
            self.register(source)

    def register(self, source: CandidateSource) -> None:
        self._sources[source.name.strip().lower()] = source

    def resolve(self, name: str) -> CandidateSource | None:
        key = name.strip().lower()
        source = self._sources.get(key)
        if source is None and self._fallback is not None:
            source = self._fallback(key)
            self._sources[key] = source
        return source

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._sources))


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def listing_from_dict(data: dict[str, Any]) -> CandidateListing:
    """Build a candidate listing from an ingestion record.

    Records carrying any structured identity tag (series, engine, body, badge
    and so on) or an explicit ``identity_resolved: true`` become resolved
    identities; everything else is treated as free text.

    Raises:
        ValueError: If the record has no source, or neither an id nor a URL.
    """
    source = str(data.get("source") or "").strip().lower()
    if not source:
        raise ValueError("listing record is missing 'source'")
    url = data.get("url")
    listing_id = data.get("listing_id") or canonical_listing_id(source, url, data.get("lot_id"))

    text = " ".join(str(data[k]) for k in ("title", "description", "text") if data.get(k))
    resolved_flag = data.get("identity_resolved")
    has_tags = any(data.get(k) not in (None, "") for k in _STRUCTURED_TAGS)
    if resolved_flag is True or (resolved_flag is None and has_tags):
        values: dict[str, Any] = {}
        for name in _RESOLVED_FIELDS:
            value = data.get(name)
            if value in (None, ""):
                continue
            if name in _INT_FIELDS:
                value = int(value)
            elif name == "engine_litres":
                value = Decimal(str(value))
            values[name] = value
        identity: ResolvedIdentity | UnresolvedIdentity = ResolvedIdentity(**values)
    else:
        parts = [data.get("year"), data.get("make"), data.get("model"), data.get("variant"), text]
        identity = UnresolvedIdentity(raw_text=" ".join(str(p) for p in parts if p))

    tier = data.get("source_tier")
    return CandidateListing(
        listing_id=str(listing_id),
        source=source,
        identity=identity,
        url=url,
        price=data.get("price"),
        source_tier=SourceTier(int(tier)) if tier else None,
        text=text,
        state=data.get("state"),
        suburb=data.get("suburb"),
        first_seen_at=_parse_datetime(data.get("first_seen_at")),
        is_private=bool(data.get("is_private", False)),
    )


def load_jsonl_listings(path: Path) -> list[StaticCandidateSource]:
    """Load a JSON-lines export into one static source per source name.

    Unparsable lines are skipped with a warning.
    """
    grouped: dict[str, list[CandidateListing]] = {}
    with path.open(encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                listing = listing_from_dict(json.loads(line))
            except (ValueError, TypeError) as e:
                logger.warning("Skipping %s:%d: %s", path, line_no, e)
                continue
            grouped.setdefault(listing.source, []).append(listing)
    return [StaticCandidateSource(name, listings) for name, listings in sorted(grouped.items())]
