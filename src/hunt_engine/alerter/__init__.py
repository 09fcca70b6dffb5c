"""Alerter - alert deduplication and payload formatting."""

from hunt_engine.alerter.dedup import ALERT_DECISIONS, AlertDeduplicator, compute_dedup_key
from hunt_engine.alerter.formatter import build_alert_payload, format_alert_line, format_money

__all__ = [
    "ALERT_DECISIONS",
    "AlertDeduplicator",
    "build_alert_payload",
    "compute_dedup_key",
    "format_alert_line",
    "format_money",
]
