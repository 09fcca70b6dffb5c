"""SQLAlchemy models for persistent storage.

This module defines the database schema for hunts, the candidate listings
they are matched against, and the engine's outputs: per-version matches,
deduplicated alerts and the scan audit trail.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class HuntModel(Base):
    """A dealer's standing search target.

    Identity and threshold columns are versioned through ``criteria_version``;
    lifecycle columns (status, priority, scan interval, notes) are not.
    """

    __tablename__ = "hunts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    dealer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Identity target
    make: Mapped[str] = mapped_column(String(64), nullable=False)
    model: Mapped[str] = mapped_column(String(64), nullable=False)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    model_root: Mapped[str | None] = mapped_column(String(64), nullable=True)
    series_family: Mapped[str | None] = mapped_column(String(32), nullable=True)
    variant_family: Mapped[str | None] = mapped_column(String(64), nullable=True)
    badge: Mapped[str | None] = mapped_column(String(32), nullable=True)
    badge_tier: Mapped[int | None] = mapped_column(Integer, nullable=True)
    body_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    engine_family: Mapped[str | None] = mapped_column(String(32), nullable=True)
    engine_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    cab_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    cylinders: Mapped[int | None] = mapped_column(Integer, nullable=True)
    engine_litres: Mapped[Decimal | None] = mapped_column(Numeric(4, 1), nullable=True)
    fuel: Mapped[str | None] = mapped_column(String(16), nullable=True)
    transmission: Mapped[str | None] = mapped_column(String(16), nullable=True)
    drivetrain: Mapped[str | None] = mapped_column(String(16), nullable=True)
    km: Mapped[int | None] = mapped_column(Integer, nullable=True)
    km_tolerance_pct: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)

    # Price truth and decision thresholds
    proven_exit_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    proven_exit_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    min_gap_abs_buy: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("3000"))
    min_gap_pct_buy: Mapped[Decimal] = mapped_column(Numeric(6, 3), nullable=False, default=Decimal("5"))
    min_gap_abs_watch: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("1500"))
    min_gap_pct_watch: Mapped[Decimal] = mapped_column(Numeric(6, 3), nullable=False, default=Decimal("2.5"))
    max_listing_age_days_buy: Mapped[int] = mapped_column(Integer, nullable=False, default=14)
    max_listing_age_days_watch: Mapped[int] = mapped_column(Integer, nullable=False, default=45)

    # Source and geo scope (JSON arrays)
    sources_enabled_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    include_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    states_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    radius_km: Mapped[int | None] = mapped_column(Integer, nullable=True)
    geo_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="national")

    must_have_tokens_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    must_have_mode: Mapped[str] = mapped_column(String(8), nullable=False, default="soft")

    # Scheduling
    scan_interval_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    last_scan_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    criteria_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    criteria_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_hunts_status_priority", "status", "priority"),
        Index("idx_hunts_dealer", "dealer_id"),
    )


class ListingModel(Base):
    """Candidate listing as stored by ingestion collaborators (read-only here)."""

    __tablename__ = "listings"

    listing_id: Mapped[str] = mapped_column(String(160), primary_key=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    source_tier: Mapped[int | None] = mapped_column(Integer, nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)

    identity_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    make: Mapped[str | None] = mapped_column(String(64), nullable=True)
    model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    variant: Mapped[str | None] = mapped_column(String(128), nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    km: Mapped[int | None] = mapped_column(Integer, nullable=True)
    model_root: Mapped[str | None] = mapped_column(String(64), nullable=True)
    series_family: Mapped[str | None] = mapped_column(String(32), nullable=True)
    badge: Mapped[str | None] = mapped_column(String(32), nullable=True)
    badge_tier: Mapped[int | None] = mapped_column(Integer, nullable=True)
    body_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    engine_family: Mapped[str | None] = mapped_column(String(32), nullable=True)
    engine_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    cab_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    cylinders: Mapped[int | None] = mapped_column(Integer, nullable=True)
    engine_litres: Mapped[Decimal | None] = mapped_column(Numeric(4, 1), nullable=True)
    fuel: Mapped[str | None] = mapped_column(String(16), nullable=True)
    transmission: Mapped[str | None] = mapped_column(String(16), nullable=True)
    drivetrain: Mapped[str | None] = mapped_column(String(16), nullable=True)
    raw_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Raw as delivered; parsed per candidate during a scan.
    price: Mapped[str | None] = mapped_column(String(32), nullable=True)
    state: Mapped[str | None] = mapped_column(String(8), nullable=True)
    suburb: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")

    first_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_listings_source_make_model", "source", "make", "model"),
        Index("idx_listings_first_seen", "first_seen_at"),
    )


class HuntMatchModel(Base):
    """Evaluation of one listing for one hunt under one criteria version."""

    __tablename__ = "hunt_matches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hunt_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("hunts.id", ondelete="CASCADE"), nullable=False
    )
    listing_id: Mapped[str] = mapped_column(String(160), nullable=False)
    criteria_version: Mapped[int] = mapped_column(Integer, nullable=False)
    scan_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    source: Mapped[str] = mapped_column(String(64), nullable=False)
    source_tier: Mapped[int] = mapped_column(Integer, nullable=False)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)

    decision: Mapped[str] = mapped_column(String(16), nullable=False)
    blocked_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    identity_score: Mapped[Decimal] = mapped_column(Numeric(4, 2), nullable=False)
    identity_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    asking_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    gap_dollars: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    gap_pct: Mapped[Decimal | None] = mapped_column(Numeric(8, 3), nullable=True)
    listing_age_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    priority_score: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rank_position: Mapped[int] = mapped_column(Integer, nullable=False)
    is_cheapest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reasons_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    first_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    matched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "hunt_id",
            "listing_id",
            "criteria_version",
            name="uq_hunt_matches_hunt_listing_version",
        ),
        Index("idx_hunt_matches_hunt_live", "hunt_id", "is_stale", "decision"),
        Index("idx_hunt_matches_hunt_priority", "hunt_id", "priority_score"),
    )


class HuntAlertModel(Base):
    """BUY/WATCH alert, unique per (hunt, listing, decision, criteria version)."""

    __tablename__ = "hunt_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hunt_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("hunts.id", ondelete="CASCADE"), nullable=False
    )
    listing_id: Mapped[str] = mapped_column(String(160), nullable=False)
    criteria_version: Mapped[int] = mapped_column(Integer, nullable=False)
    alert_type: Mapped[str] = mapped_column(String(8), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    is_stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("dedup_key", name="uq_hunt_alerts_dedup_key"),
        Index("idx_hunt_alerts_hunt_created", "hunt_id", "created_at"),
    )


class HuntScanModel(Base):
    """Append-only audit row for one scan execution."""

    __tablename__ = "hunt_scans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    hunt_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("hunts.id", ondelete="CASCADE"), nullable=False
    )
    criteria_version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    candidates_checked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matches_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    alerts_emitted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    __table_args__ = (Index("idx_hunt_scans_hunt_started", "hunt_id", "started_at"),)
