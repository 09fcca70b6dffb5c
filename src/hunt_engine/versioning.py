"""Criteria versioning for hunts.

Every edit that changes what a hunt is looking for (identity, km, price
truth, thresholds, freshness, scope or must-have tokens) increments the
hunt's ``criteria_version`` and flags every match and alert written under an
older version as stale. Stale rows are kept for audit; live views exclude
them. Edits to lifecycle fields (status, priority, scan interval, expiry,
notes) never bump the version.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from hunt_engine.matching.models import HuntStatus, MustHaveMode
from hunt_engine.storage.repos import (
    HuntAlertRepository,
    HuntDTO,
    HuntMatchRepository,
    HuntRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

IDENTITY_FIELDS = frozenset(
    {
        "make",
        "model",
        "year",
        "model_root",
        "series_family",
        "variant_family",
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
        "km",
        "km_tolerance_pct",
    }
)

THRESHOLD_FIELDS = frozenset(
    {
        "proven_exit_method",
        "proven_exit_value",
        "min_gap_abs_buy",
        "min_gap_pct_buy",
        "min_gap_abs_watch",
        "min_gap_pct_watch",
        "max_listing_age_days_buy",
        "max_listing_age_days_watch",
    }
)

SCOPE_FIELDS = frozenset(
    {
        "sources_enabled",
        "include_private",
        "states",
        "radius_km",
        "geo_mode",
        "must_have_tokens",
        "must_have_mode",
    }
)

CRITERIA_FIELDS = IDENTITY_FIELDS | THRESHOLD_FIELDS | SCOPE_FIELDS

LIFECYCLE_FIELDS = frozenset({"status", "priority", "scan_interval_minutes", "expires_at", "notes"})

EDITABLE_FIELDS = CRITERIA_FIELDS | LIFECYCLE_FIELDS

_LIST_FIELDS = frozenset({"sources_enabled", "states", "must_have_tokens"})


def _normalize(name: str, value: Any) -> Any:
    if isinstance(value, Enum):
        value = value.value
    if name in _LIST_FIELDS:
        return tuple(str(v) for v in (value or ()))
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return Decimal(str(value))
    return value


def criteria_changes(current: HuntDTO, changes: Mapping[str, Any]) -> set[str]:
    """Return the criteria fields whose value actually differs from ``current``."""
    changed: set[str] = set()
    for name, value in changes.items():
        if name not in CRITERIA_FIELDS:
            continue
        if _normalize(name, getattr(current, name)) != _normalize(name, value):
            changed.add(name)
    return changed


def is_stale(row_version: int, current_version: int) -> bool:
    """A match or alert is stale once the hunt has moved past its version."""
    return row_version < current_version


@dataclass(frozen=True)
class EditResult:
    hunt_id: str
    criteria_version: int
    version_bumped: bool
    changed_fields: frozenset[str]
    stale_matches: int = 0
    stale_alerts: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "hunt_id": self.hunt_id,
            "criteria_version": self.criteria_version,
            "version_bumped": self.version_bumped,
            "changed_fields": sorted(self.changed_fields),
            "stale_matches": self.stale_matches,
            "stale_alerts": self.stale_alerts,
        }


class CriteriaVersionTracker:
    """Applies hunt edits and keeps matches/alerts consistent with them.

    All writes happen in the caller's session, so the edit, the version
    bump and the stale sweep commit or roll back together.

    Example:
        ```python
        async with db.get_async_session() as session:
            tracker = CriteriaVersionTracker(session)
            result = await tracker.apply_edit(hunt_id, {"year": 2021})
        ```
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.hunts = HuntRepository(session)
        self.matches = HuntMatchRepository(session)
        self.alerts = HuntAlertRepository(session)

    async def apply_edit(
        self,
        hunt_id: str,
        changes: Mapping[str, Any],
        *,
        now: datetime | None = None,
    ) -> EditResult:
        """Write a hunt edit, bumping the criteria version when criteria change.

        Raises:
            ValueError: For unknown fields or invalid enum values.
            LookupError: If the hunt does not exist.
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {sorted(unknown)}")
        if "status" in changes:
            HuntStatus(_normalize("status", changes["status"]))
        if "must_have_mode" in changes:
            MustHaveMode(_normalize("must_have_mode", changes["must_have_mode"]))

        current = await self.hunts.get(hunt_id)
        if current is None:
            raise LookupError(f"Hunt {hunt_id} not found")

        now = now or datetime.now(UTC)
        changed = criteria_changes(current, changes)
        await self.hunts.update_fields(hunt_id, dict(changes))
        if not changed:
            return EditResult(
                hunt_id=hunt_id,
                criteria_version=current.criteria_version,
                version_bumped=False,
                changed_fields=frozenset(),
            )

        version = await self.hunts.bump_criteria_version(hunt_id, now=now)
        stale_matches, stale_alerts = await self.sweep(hunt_id, version)
        logger.info(
            "Hunt %s criteria v%d -> v%d (%s); %d matches and %d alerts marked stale",
            hunt_id,
            current.criteria_version,
            version,
            ", ".join(sorted(changed)),
            stale_matches,
            stale_alerts,
        )
        return EditResult(
            hunt_id=hunt_id,
            criteria_version=version,
            version_bumped=True,
            changed_fields=frozenset(changed),
            stale_matches=stale_matches,
            stale_alerts=stale_alerts,
        )

    async def reset_results(self, hunt_id: str, *, now: datetime | None = None) -> EditResult:
        """Force a version bump so the next scan starts from a clean slate.

        Also clears ``last_scan_at`` so the hunt is due immediately.
        """
        now = now or datetime.now(UTC)
        version = await self.hunts.bump_criteria_version(hunt_id, now=now)
        await self.hunts.update_fields(hunt_id, {"last_scan_at": None})
        stale_matches, stale_alerts = await self.sweep(hunt_id, version)
        logger.info(
            "Hunt %s results reset at v%d; %d matches and %d alerts marked stale",
            hunt_id,
            version,
            stale_matches,
            stale_alerts,
        )
        return EditResult(
            hunt_id=hunt_id,
            criteria_version=version,
            version_bumped=True,
            changed_fields=frozenset(),
            stale_matches=stale_matches,
            stale_alerts=stale_alerts,
        )

    async def sweep(self, hunt_id: str, current_version: int) -> tuple[int, int]:
        """Flag every match and alert below ``current_version`` as stale."""
        stale_matches = await self.matches.mark_stale(hunt_id, below_version=current_version)
        stale_alerts = await self.alerts.mark_stale(hunt_id, below_version=current_version)
        return stale_matches, stale_alerts
