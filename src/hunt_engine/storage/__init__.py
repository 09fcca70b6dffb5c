"""Storage layer - Database schemas and repositories."""

from hunt_engine.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from hunt_engine.storage.models import (
    Base,
    HuntAlertModel,
    HuntMatchModel,
    HuntModel,
    HuntScanModel,
    ListingModel,
)
from hunt_engine.storage.repos import (
    CandidateCounts,
    HuntAlertDTO,
    HuntAlertRepository,
    HuntDTO,
    HuntMatchDTO,
    HuntMatchRepository,
    HuntRepository,
    HuntScanDTO,
    HuntScanRepository,
    ListingDTO,
    ListingRepository,
    MatchView,
)

__all__ = [
    "Base",
    "CandidateCounts",
    "DatabaseManager",
    "HuntAlertDTO",
    "HuntAlertModel",
    "HuntAlertRepository",
    "HuntDTO",
    "HuntMatchDTO",
    "HuntMatchModel",
    "HuntMatchRepository",
    "HuntModel",
    "HuntRepository",
    "HuntScanDTO",
    "HuntScanModel",
    "HuntScanRepository",
    "ListingDTO",
    "ListingModel",
    "ListingRepository",
    "MatchView",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
