"""Pytest configuration and fixtures."""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from hunt_engine.matching.models import (
    CandidateListing,
    HuntSnapshot,
    IdentityTarget,
    ResolvedIdentity,
)
from hunt_engine.storage.database import DatabaseManager
from hunt_engine.storage.models import Base
from hunt_engine.storage.repos import HuntDTO, HuntRepository

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

_TARGET_FIELDS = frozenset(IdentityTarget.__dataclass_fields__)
_IDENTITY_FIELDS = frozenset(ResolvedIdentity.__dataclass_fields__)


def build_hunt(**overrides: Any) -> HuntSnapshot:
    """2021 Toyota Hilux SR5 hunt, exit $50,000, BUY at $3,000/5%, WATCH at $1,000/2%."""
    target_values = {k: overrides.pop(k) for k in list(overrides) if k in _TARGET_FIELDS}
    target = IdentityTarget(
        **{"make": "Toyota", "model": "Hilux", "year": 2021, "badge": "SR5", **target_values}
    )
    values: dict[str, Any] = {
        "hunt_id": "hunt-1",
        "dealer_id": "dealer-1",
        "criteria_version": 1,
        "target": target,
        "proven_exit_value": Decimal("50000"),
        "min_gap_abs_buy": Decimal("3000"),
        "min_gap_pct_buy": Decimal("5"),
        "min_gap_abs_watch": Decimal("1000"),
        "min_gap_pct_watch": Decimal("2"),
        "max_listing_age_days_buy": 14,
        "max_listing_age_days_watch": 45,
        "sources_enabled": ("pickles", "carsales"),
    }
    values.update(overrides)
    return HuntSnapshot(**values)


def build_listing(**overrides: Any) -> CandidateListing:
    """Pickles lot for a matching 2021 Hilux SR5 at $45,000, first seen 3 days ago."""
    identity = overrides.pop("identity", None)
    if identity is None:
        identity_values = {k: overrides.pop(k) for k in list(overrides) if k in _IDENTITY_FIELDS}
        identity = ResolvedIdentity(
            **{
                "make": "Toyota",
                "model": "Hilux",
                "variant": "SR5 Double Cab",
                "year": 2021,
                "km": 42000,
                "badge": "SR5",
                **identity_values,
            }
        )
    values: dict[str, Any] = {
        "listing_id": "pickles:1001",
        "source": "pickles",
        "identity": identity,
        "url": "https://www.pickles.com.au/used/details/cars/1001",
        "price": Decimal("45000"),
        "first_seen_at": NOW - timedelta(days=3),
        "state": "QLD",
        "suburb": "Yatala",
    }
    values.update(overrides)
    return CandidateListing(**values)


def build_hunt_dto(**overrides: Any) -> HuntDTO:
    values: dict[str, Any] = {
        "id": "hunt-1",
        "dealer_id": "dealer-1",
        "make": "Toyota",
        "model": "Hilux",
        "year": 2021,
        "badge": "SR5",
        "proven_exit_value": Decimal("50000"),
        "min_gap_abs_watch": Decimal("1000"),
        "min_gap_pct_watch": Decimal("2"),
        "sources_enabled": ("pickles", "carsales"),
    }
    values.update(overrides)
    return HuntDTO(**values)


@pytest.fixture
def now() -> datetime:
    """Fixed evaluation time."""
    return NOW


@pytest.fixture
def make_hunt() -> Callable[..., HuntSnapshot]:
    return build_hunt


@pytest.fixture
def make_listing() -> Callable[..., CandidateListing]:
    return build_listing


@pytest.fixture
def make_hunt_dto() -> Callable[..., HuntDTO]:
    return build_hunt_dto


# ============================================================================
# Database fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def db(async_engine) -> DatabaseManager:
    """DatabaseManager over the in-memory engine (one session at a time)."""
    return DatabaseManager.from_engine(async_engine)


@pytest.fixture
def insert_hunt(db) -> Callable[..., Awaitable[HuntDTO]]:
    """Insert a hunt through its own committed session."""

    async def _insert(**overrides: Any) -> HuntDTO:
        async with db.get_async_session() as session:
            return await HuntRepository(session).insert(build_hunt_dto(**overrides))

    return _insert
