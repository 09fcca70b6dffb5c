"""Alert deduplication.

An alert is identified by the four-tuple (hunt, listing, decision, criteria
version). Its hashed dedup key is unique in storage, so writing an alert is
an insert-if-absent: two concurrent scans of the same hunt cannot both emit
it, and re-running an unchanged scan emits nothing. Because the decision is
part of the key, a listing that moves BUY -> WATCH -> BUY under one criteria
version alerts once per distinct decision.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from hunt_engine.alerter.formatter import build_alert_payload
from hunt_engine.matching.models import Decision, HuntSnapshot, RankedCandidate
from hunt_engine.storage.repos import HuntAlertDTO, HuntAlertRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ALERT_DECISIONS = (Decision.BUY, Decision.WATCH)


def compute_dedup_key(hunt_id: str, listing_id: str, decision: Decision | str, criteria_version: int) -> str:
    """Deterministic SHA-256 key over (hunt, listing, decision, version)."""
    decision_value = decision.value if isinstance(decision, Decision) else str(decision).upper()
    raw = "|".join((hunt_id, listing_id, decision_value, str(int(criteria_version))))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class AlertDeduplicator:
    """Turns ranked BUY/WATCH candidates into at-most-once alert rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.alerts = HuntAlertRepository(session)

    @staticmethod
    def plan(
        hunt: HuntSnapshot,
        ranked: Iterable[RankedCandidate],
        *,
        now: datetime | None = None,
    ) -> list[HuntAlertDTO]:
        """Build candidate alert rows for every BUY/WATCH decision."""
        created_at = now or datetime.now(UTC)
        planned: list[HuntAlertDTO] = []
        for candidate in ranked:
            if candidate.decision not in ALERT_DECISIONS:
                continue
            listing_id = candidate.listing.listing_id
            planned.append(
                HuntAlertDTO(
                    hunt_id=hunt.hunt_id,
                    listing_id=listing_id,
                    criteria_version=hunt.criteria_version,
                    alert_type=candidate.decision.value,
                    dedup_key=compute_dedup_key(
                        hunt.hunt_id, listing_id, candidate.decision, hunt.criteria_version
                    ),
                    payload=build_alert_payload(hunt, candidate),
                    created_at=created_at,
                )
            )
        return planned

    async def emit(
        self,
        hunt: HuntSnapshot,
        ranked: Iterable[RankedCandidate],
        *,
        now: datetime | None = None,
    ) -> list[HuntAlertDTO]:
        """Insert planned alerts; return only the ones that were new."""
        emitted: list[HuntAlertDTO] = []
        for dto in self.plan(hunt, ranked, now=now):
            alert_id = await self.alerts.insert_if_absent(dto)
            if alert_id is None:
                logger.debug("Suppressed duplicate alert %s for hunt %s", dto.dedup_key[:12], hunt.hunt_id)
                continue
            dto.id = alert_id
            emitted.append(dto)
        if emitted:
            logger.info("Emitted %d new alerts for hunt %s", len(emitted), hunt.hunt_id)
        return emitted
