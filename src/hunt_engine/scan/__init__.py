"""Scan layer - sources, run recording, locking and the scan runner."""

from hunt_engine.scan.lock import HuntScanLock, ScanAlreadyRunningError
from hunt_engine.scan.recorder import ScanRunRecorder
from hunt_engine.scan.runner import (
    HuntNotFoundError,
    HuntScanner,
    ScanError,
    ScanOutcome,
    StorageWriteError,
)
from hunt_engine.scan.sources import (
    CandidateSource,
    SourceRegistry,
    SourceUnavailableError,
    StaticCandidateSource,
    StoredListingSource,
    listing_from_dict,
    load_jsonl_listings,
)

__all__ = [
    "CandidateSource",
    "HuntNotFoundError",
    "HuntScanLock",
    "HuntScanner",
    "ScanAlreadyRunningError",
    "ScanError",
    "ScanOutcome",
    "ScanRunRecorder",
    "SourceRegistry",
    "SourceUnavailableError",
    "StaticCandidateSource",
    "StorageWriteError",
    "StoredListingSource",
    "listing_from_dict",
    "load_jsonl_listings",
]
