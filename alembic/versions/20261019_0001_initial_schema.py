"""Initial schema for hunts, listings, matches, alerts and scans.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Hunts table
    op.create_table(
        "hunts",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("dealer_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("make", sa.String(64), nullable=False),
        sa.Column("model", sa.String(64), nullable=False),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("model_root", sa.String(64), nullable=True),
        sa.Column("series_family", sa.String(32), nullable=True),
        sa.Column("variant_family", sa.String(64), nullable=True),
        sa.Column("badge", sa.String(32), nullable=True),
        sa.Column("badge_tier", sa.Integer(), nullable=True),
        sa.Column("body_type", sa.String(32), nullable=True),
        sa.Column("engine_family", sa.String(32), nullable=True),
        sa.Column("engine_code", sa.String(32), nullable=True),
        sa.Column("cab_type", sa.String(16), nullable=True),
        sa.Column("cylinders", sa.Integer(), nullable=True),
        sa.Column("engine_litres", sa.Numeric(4, 1), nullable=True),
        sa.Column("fuel", sa.String(16), nullable=True),
        sa.Column("transmission", sa.String(16), nullable=True),
        sa.Column("drivetrain", sa.String(16), nullable=True),
        sa.Column("km", sa.Integer(), nullable=True),
        sa.Column("km_tolerance_pct", sa.Numeric(5, 2), nullable=True),
        sa.Column("proven_exit_method", sa.String(32), nullable=True),
        sa.Column("proven_exit_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("min_gap_abs_buy", sa.Numeric(12, 2), nullable=False, server_default="3000"),
        sa.Column("min_gap_pct_buy", sa.Numeric(6, 3), nullable=False, server_default="5"),
        sa.Column("min_gap_abs_watch", sa.Numeric(12, 2), nullable=False, server_default="1500"),
        sa.Column("min_gap_pct_watch", sa.Numeric(6, 3), nullable=False, server_default="2.5"),
        sa.Column("max_listing_age_days_buy", sa.Integer(), nullable=False, server_default="14"),
        sa.Column("max_listing_age_days_watch", sa.Integer(), nullable=False, server_default="45"),
        sa.Column("sources_enabled_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("include_private", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("states_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("radius_km", sa.Integer(), nullable=True),
        sa.Column("geo_mode", sa.String(16), nullable=False, server_default="national"),
        sa.Column("must_have_tokens_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("must_have_mode", sa.String(8), nullable=False, server_default="soft"),
        sa.Column("scan_interval_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("last_scan_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("criteria_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("criteria_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_hunts_status_priority", "hunts", ["status", "priority"])
    op.create_index("idx_hunts_dealer", "hunts", ["dealer_id"])

    # Listings table (written by ingestion)
    op.create_table(
        "listings",
        sa.Column("listing_id", sa.String(160), nullable=False),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column("source_tier", sa.Integer(), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("identity_resolved", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("make", sa.String(64), nullable=True),
        sa.Column("model", sa.String(64), nullable=True),
        sa.Column("variant", sa.String(128), nullable=True),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("km", sa.Integer(), nullable=True),
        sa.Column("model_root", sa.String(64), nullable=True),
        sa.Column("series_family", sa.String(32), nullable=True),
        sa.Column("badge", sa.String(32), nullable=True),
        sa.Column("badge_tier", sa.Integer(), nullable=True),
        sa.Column("body_type", sa.String(32), nullable=True),
        sa.Column("engine_family", sa.String(32), nullable=True),
        sa.Column("engine_code", sa.String(32), nullable=True),
        sa.Column("cab_type", sa.String(16), nullable=True),
        sa.Column("cylinders", sa.Integer(), nullable=True),
        sa.Column("engine_litres", sa.Numeric(4, 1), nullable=True),
        sa.Column("fuel", sa.String(16), nullable=True),
        sa.Column("transmission", sa.String(16), nullable=True),
        sa.Column("drivetrain", sa.String(16), nullable=True),
        sa.Column("raw_text", sa.Text(), nullable=True),
        sa.Column("price", sa.String(32), nullable=True),
        sa.Column("state", sa.String(8), nullable=True),
        sa.Column("suburb", sa.String(64), nullable=True),
        sa.Column("is_private", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("listing_id"),
    )
    op.create_index("idx_listings_source_make_model", "listings", ["source", "make", "model"])
    op.create_index("idx_listings_first_seen", "listings", ["first_seen_at"])

    # Hunt matches table
    op.create_table(
        "hunt_matches",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("hunt_id", sa.String(36), nullable=False),
        sa.Column("listing_id", sa.String(160), nullable=False),
        sa.Column("criteria_version", sa.Integer(), nullable=False),
        sa.Column("scan_id", sa.String(36), nullable=True),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column("source_tier", sa.Integer(), nullable=False),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("decision", sa.String(16), nullable=False),
        sa.Column("blocked_reason", sa.String(32), nullable=True),
        sa.Column("identity_score", sa.Numeric(4, 2), nullable=False),
        sa.Column("identity_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("asking_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("gap_dollars", sa.Numeric(12, 2), nullable=True),
        sa.Column("gap_pct", sa.Numeric(8, 3), nullable=True),
        sa.Column("listing_age_days", sa.Integer(), nullable=True),
        sa.Column("priority_score", sa.BigInteger(), nullable=False),
        sa.Column("rank_position", sa.Integer(), nullable=False),
        sa.Column("is_cheapest", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_stale", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reasons_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("matched_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["hunt_id"], ["hunts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "hunt_id",
            "listing_id",
            "criteria_version",
            name="uq_hunt_matches_hunt_listing_version",
        ),
    )
    op.create_index("idx_hunt_matches_hunt_live", "hunt_matches", ["hunt_id", "is_stale", "decision"])
    op.create_index("idx_hunt_matches_hunt_priority", "hunt_matches", ["hunt_id", "priority_score"])

    # Hunt alerts table
    op.create_table(
        "hunt_alerts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("hunt_id", sa.String(36), nullable=False),
        sa.Column("listing_id", sa.String(160), nullable=False),
        sa.Column("criteria_version", sa.Integer(), nullable=False),
        sa.Column("alert_type", sa.String(8), nullable=False),
        sa.Column("dedup_key", sa.String(64), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("is_stale", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["hunt_id"], ["hunts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedup_key", name="uq_hunt_alerts_dedup_key"),
    )
    op.create_index("idx_hunt_alerts_hunt_created", "hunt_alerts", ["hunt_id", "created_at"])

    # Hunt scans table
    op.create_table(
        "hunt_scans",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("hunt_id", sa.String(36), nullable=False),
        sa.Column("criteria_version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="running"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("candidates_checked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("matches_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("alerts_emitted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.ForeignKeyConstraint(["hunt_id"], ["hunts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_hunt_scans_hunt_started", "hunt_scans", ["hunt_id", "started_at"])


def downgrade() -> None:
    op.drop_index("idx_hunt_scans_hunt_started", table_name="hunt_scans")
    op.drop_table("hunt_scans")
    op.drop_index("idx_hunt_alerts_hunt_created", table_name="hunt_alerts")
    op.drop_table("hunt_alerts")
    op.drop_index("idx_hunt_matches_hunt_priority", table_name="hunt_matches")
    op.drop_index("idx_hunt_matches_hunt_live", table_name="hunt_matches")
    op.drop_table("hunt_matches")
    op.drop_index("idx_listings_first_seen", table_name="listings")
    op.drop_index("idx_listings_source_make_model", table_name="listings")
    op.drop_table("listings")
    op.drop_index("idx_hunts_dealer", table_name="hunts")
    op.drop_index("idx_hunts_status_priority", table_name="hunts")
    op.drop_table("hunts")
