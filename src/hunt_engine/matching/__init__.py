"""Matching layer - identity gate, price gap, classification and ranking."""

from hunt_engine.matching.classifier import (
    DecisionClassifier,
    evaluate_candidate,
    validate_hunt_config,
)
from hunt_engine.matching.identity_gate import IdentityGate, detect_series, extract_badge
from hunt_engine.matching.models import (
    BlockedReason,
    CandidateListing,
    Classification,
    Decision,
    ErrorCode,
    Evaluation,
    GateResult,
    HuntSnapshot,
    HuntStatus,
    IdentityFields,
    IdentityTarget,
    InvalidHuntConfigError,
    MustHaveMode,
    PriceGap,
    RankedCandidate,
    ResolvedIdentity,
    ScanStatus,
    SourceTier,
    UnresolvedIdentity,
)
from hunt_engine.matching.price_gap import InvalidPriceError, coerce_price, compute_price_gap
from hunt_engine.matching.ranker import (
    SourceRanker,
    canonical_listing_id,
    encode_priority,
    resolve_source_tier,
)

__all__ = [
    "BlockedReason",
    "CandidateListing",
    "Classification",
    "Decision",
    "DecisionClassifier",
    "ErrorCode",
    "Evaluation",
    "GateResult",
    "HuntSnapshot",
    "HuntStatus",
    "IdentityFields",
    "IdentityGate",
    "IdentityTarget",
    "InvalidHuntConfigError",
    "InvalidPriceError",
    "MustHaveMode",
    "PriceGap",
    "RankedCandidate",
    "ResolvedIdentity",
    "ScanStatus",
    "SourceRanker",
    "SourceTier",
    "UnresolvedIdentity",
    "canonical_listing_id",
    "coerce_price",
    "compute_price_gap",
    "detect_series",
    "encode_priority",
    "evaluate_candidate",
    "extract_badge",
    "resolve_source_tier",
    "validate_hunt_config",
]
