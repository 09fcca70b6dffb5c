"""Command line entry point: ``python -m hunt_engine <command>``.

Every command prints one JSON document to stdout; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from dataclasses import asdict
from pathlib import Path

from pydantic import ValidationError
from redis.asyncio import Redis

from hunt_engine.alerter.formatter import format_alert_line
from hunt_engine.config import Settings, get_settings
from hunt_engine.logging_config import configure_logging
from hunt_engine.scan.runner import HuntNotFoundError, HuntScanner
from hunt_engine.scan.sources import load_jsonl_listings
from hunt_engine.storage.database import DatabaseManager
from hunt_engine.storage.repos import (
    HuntAlertRepository,
    HuntMatchRepository,
    HuntScanRepository,
    MatchView,
)
from hunt_engine.versioning import CriteriaVersionTracker

logger = logging.getLogger("hunt_engine")


def _print(document: object) -> None:
    print(json.dumps(document, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hunt_engine", description="Dealer hunt matching and decision engine")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema (development only)")

    scan = sub.add_parser("scan", help="Run one scan for a hunt")
    scan.add_argument("--hunt-id", required=True)
    scan.add_argument("--listings", type=Path, help="JSON-lines file of candidate listings")

    due = sub.add_parser("scan-due", help="Scan every hunt whose interval has elapsed")
    due.add_argument("--limit", type=int, default=None)

    reset = sub.add_parser("reset", help="Bump the criteria version and mark old results stale")
    reset.add_argument("--hunt-id", required=True)

    matches = sub.add_parser("matches", help="List current matches in rank order")
    matches.add_argument("--hunt-id", required=True)
    matches.add_argument("--view", choices=[v.value for v in MatchView], default=MatchView.LIVE.value)
    matches.add_argument("--limit", type=int, default=None)

    alerts = sub.add_parser("alerts", help="List alerts and the last scan of a hunt")
    alerts.add_argument("--hunt-id", required=True)
    alerts.add_argument("--all", action="store_true", help="Include stale and superseded alerts")

    ack = sub.add_parser("ack", help="Acknowledge an alert")
    target = ack.add_mutually_exclusive_group(required=True)
    target.add_argument("--alert-id", type=int)
    target.add_argument("--dedup-key")
    return parser


def _database(settings: Settings) -> DatabaseManager:
    return DatabaseManager(
        settings.database.url,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
        echo=settings.database.echo,
    )


async def _init_db(settings: Settings, args: argparse.Namespace) -> int:
    db = _database(settings)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()
    _print({"status": "ok"})
    return 0


async def _scan(settings: Settings, args: argparse.Namespace) -> int:
    db = _database(settings)
    redis = Redis.from_url(settings.redis.url) if settings.scan.lock_enabled else None
    try:
        sources = load_jsonl_listings(args.listings) if args.listings else None
        scanner = HuntScanner.from_settings(settings, db, sources=sources, redis=redis)
        if args.command == "scan":
            try:
                outcome = await scanner.scan(args.hunt_id)
            except HuntNotFoundError as e:
                _print({"hunt_id": args.hunt_id, "status": "error", "error_code": e.code.value, "error_message": str(e)})
                return 1
            _print(outcome.to_dict())
            return outcome.exit_code

        outcomes = await scanner.scan_due(limit=args.limit or settings.scan.due_batch_limit)
        _print({"scanned": len(outcomes), "outcomes": [o.to_dict() for o in outcomes]})
        codes = {o.exit_code for o in outcomes}
        if 1 in codes:
            return 1
        return 2 if 2 in codes else 0
    finally:
        if redis is not None:
            await redis.aclose()
        await db.dispose_async()


async def _reset(settings: Settings, args: argparse.Namespace) -> int:
    db = _database(settings)
    try:
        async with db.get_async_session() as session:
            result = await CriteriaVersionTracker(session).reset_results(args.hunt_id)
    except LookupError as e:
        _print({"hunt_id": args.hunt_id, "status": "error", "error_message": str(e)})
        return 1
    finally:
        await db.dispose_async()
    _print(result.to_dict())
    return 0


async def _matches(settings: Settings, args: argparse.Namespace) -> int:
    db = _database(settings)
    try:
        async with db.get_async_session() as session:
            repo = HuntMatchRepository(session)
            rows = await repo.list_view(args.hunt_id, MatchView(args.view), limit=args.limit)
            counts = await repo.candidate_counts(args.hunt_id)
    finally:
        await db.dispose_async()
    _print(
        {
            "hunt_id": args.hunt_id,
            "view": args.view,
            "counts": counts.to_dict(),
            "matches": [row.to_dict() for row in rows],
        }
    )
    return 0


async def _alerts(settings: Settings, args: argparse.Namespace) -> int:
    db = _database(settings)
    try:
        async with db.get_async_session() as session:
            alerts = await HuntAlertRepository(session).list_for_hunt(args.hunt_id, include_stale=args.all)
            last_scan = await HuntScanRepository(session).latest(args.hunt_id)
    finally:
        await db.dispose_async()
    _print(
        {
            "hunt_id": args.hunt_id,
            "last_scan": asdict(last_scan) if last_scan else None,
            "alerts": [{**asdict(alert), "line": format_alert_line(alert)} for alert in alerts],
        }
    )
    return 0


async def _ack(settings: Settings, args: argparse.Namespace) -> int:
    db = _database(settings)
    try:
        async with db.get_async_session() as session:
            repo = HuntAlertRepository(session)
            alert_id = args.alert_id
            if args.dedup_key is not None:
                alert = await repo.get_by_dedup_key(args.dedup_key)
                alert_id = alert.id if alert else None
            acknowledged = alert_id is not None and await repo.acknowledge(alert_id)
    finally:
        await db.dispose_async()
    document: dict[str, object] = {"alert_id": alert_id, "acknowledged": acknowledged}
    if args.dedup_key is not None:
        document["dedup_key"] = args.dedup_key
    _print(document)
    return 0 if acknowledged else 1


_COMMANDS = {
    "init-db": _init_db,
    "scan": _scan,
    "scan-due": _scan,
    "reset": _reset,
    "matches": _matches,
    "alerts": _alerts,
    "ack": _ack,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = get_settings()
        settings.validate_requirements(command=args.command)
    except (ValidationError, ValueError) as e:
        configure_logging()
        logger.error("Invalid configuration: %s", e)
        return 1

    configure_logging(settings.get_logging_level(), settings.log_format)
    logger.debug("Settings: %s", settings.redacted_summary())
    return asyncio.run(_COMMANDS[args.command](settings, args))


if __name__ == "__main__":
    sys.exit(main())
