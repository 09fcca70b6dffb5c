"""Scan audit trail.

Each scan gets one ``hunt_scans`` row, written ``running`` when the scan
starts and completed exactly once with ``ok`` or ``error``. The start and
finish writes use their own sessions so the row survives a failed scan.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import UTC, datetime
from typing import Any

from hunt_engine.matching.models import Decision, ErrorCode, Evaluation, ScanStatus
from hunt_engine.storage.database import DatabaseManager
from hunt_engine.storage.repos import HuntScanDTO, HuntScanRepository

logger = logging.getLogger(__name__)


class ScanRunRecorder:
    """Accumulates counters for one scan and persists them.

    Example:
        ```python
        recorder = ScanRunRecorder(db, hunt.hunt_id, hunt.criteria_version)
        await recorder.start()
        for evaluation in evaluations:
            recorder.observe(evaluation)
        await recorder.finish_ok(alerts_emitted=2)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        hunt_id: str,
        criteria_version: int,
        *,
        scan_id: str | None = None,
    ) -> None:
        self.db = db
        self.hunt_id = hunt_id
        self.criteria_version = criteria_version
        self.scan_id = scan_id or str(uuid.uuid4())
        self.started_at: datetime | None = None
        self.finished = False

        self.candidates_checked = 0
        self.decision_counts: Counter[str] = Counter({d.value: 0 for d in Decision})
        self.rejection_reasons: Counter[str] = Counter()
        self.source_coverage: dict[str, dict[str, Any]] = {}
        self.warnings: list[str] = []

    @property
    def matches_found(self) -> int:
        """BUY + WATCH + UNVERIFIED."""
        return self.candidates_checked - self.decision_counts[Decision.IGNORE.value]

    async def start(self, *, now: datetime | None = None) -> None:
        self.started_at = now or datetime.now(UTC)
        async with self.db.get_async_session() as session:
            await HuntScanRepository(session).insert(
                HuntScanDTO(
                    id=self.scan_id,
                    hunt_id=self.hunt_id,
                    criteria_version=self.criteria_version,
                    status=ScanStatus.RUNNING.value,
                    started_at=self.started_at,
                )
            )
        logger.info("Scan %s started for hunt %s (v%d)", self.scan_id, self.hunt_id, self.criteria_version)

    def observe(self, evaluation: Evaluation) -> None:
        self.candidates_checked += 1
        self.decision_counts[evaluation.decision.value] += 1
        reason = evaluation.blocked_reason
        if reason is not None:
            self.rejection_reasons[reason.value] += 1

    def record_source(
        self,
        name: str,
        status: str,
        count: int = 0,
        error: str | None = None,
    ) -> None:
        entry: dict[str, Any] = {"status": status, "count": count}
        if error:
            entry["error"] = error
        self.source_coverage[name] = entry

    def add_warning(self, message: str) -> None:
        logger.warning("Scan %s: %s", self.scan_id, message)
        self.warnings.append(message)

    def metadata(self, error_code: ErrorCode | None = None) -> dict[str, Any]:
        return {
            "sources_scanned": sorted(
                name for name, entry in self.source_coverage.items() if entry["status"] == "ok"
            ),
            "source_coverage": self.source_coverage,
            "rejection_reasons": dict(sorted(self.rejection_reasons.items())),
            "warnings": list(self.warnings),
            "decision_counts": dict(self.decision_counts),
            "error_code": error_code.value if error_code else None,
        }

    async def finish_ok(self, alerts_emitted: int, *, now: datetime | None = None) -> HuntScanDTO:
        dto = self._final(ScanStatus.OK, alerts_emitted=alerts_emitted, now=now)
        await self._complete(dto)
        logger.info(
            "Scan %s ok: %d checked, %d matches, %d alerts",
            self.scan_id,
            dto.candidates_checked,
            dto.matches_found,
            alerts_emitted,
        )
        return dto

    async def finish_error(
        self,
        code: ErrorCode,
        message: str,
        *,
        alerts_emitted: int = 0,
        now: datetime | None = None,
    ) -> HuntScanDTO:
        dto = self._final(
            ScanStatus.ERROR,
            alerts_emitted=alerts_emitted,
            error_code=code,
            error_message=message,
            now=now,
        )
        await self._complete(dto)
        logger.error("Scan %s failed [%s]: %s", self.scan_id, code.value, message)
        return dto

    def _final(
        self,
        status: ScanStatus,
        *,
        alerts_emitted: int,
        error_code: ErrorCode | None = None,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> HuntScanDTO:
        if self.started_at is None:
            raise RuntimeError(f"Scan {self.scan_id} was never started")
        if self.finished:
            raise RuntimeError(f"Scan {self.scan_id} already finished")
        return HuntScanDTO(
            id=self.scan_id,
            hunt_id=self.hunt_id,
            criteria_version=self.criteria_version,
            status=status.value,
            started_at=self.started_at,
            completed_at=now or datetime.now(UTC),
            candidates_checked=self.candidates_checked,
            matches_found=self.matches_found,
            alerts_emitted=alerts_emitted,
            error_message=error_message,
            metadata=self.metadata(error_code),
        )

    async def _complete(self, dto: HuntScanDTO) -> None:
        async with self.db.get_async_session() as session:
            await HuntScanRepository(session).complete(dto)
        self.finished = True
