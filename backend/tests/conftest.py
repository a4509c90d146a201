"""Pytest configuration and fixtures for FinOps Autopilot tests."""

import random
import uuid
from typing import Any, AsyncGenerator, Callable
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  (registers tables on Base.metadata)
from app.core.config import Settings
from app.core.database import Base
from app.crud import cloud_resource as resource_crud
from app.models.recommendation import RecommendationType
from app.schemas.recommendation import RecommendationDraft
from app.schemas.resource import CloudResourceCreate, ResourceSnapshot
from app.services.collaborators import InMemoryEventBroadcaster, SimulatedMutationExecutor
from app.services.recommendation_state import RecommendationStateMachine
from app.services.risk_classifier import priority_for_risk

# Use SQLite in-memory database for tests (faster and no setup needed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TENANT_ID = "tenant-test"


@pytest.fixture
async def engine():
    """Create async engine for tests with SQLite in-memory database."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,  # StaticPool for in-memory SQLite
        connect_args={"check_same_thread": False},  # Required for SQLite
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after tests
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine (what the services receive)."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session
        # Rollback to clean up any changes (but allows commits during test)
        await session.rollback()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with deterministic randomness and no external endpoints."""
    return Settings(
        APP_ENV="test",
        DATABASE_URL=TEST_DATABASE_URL,
        SYSTEM_TENANT_ID=TENANT_ID,
        AGENT_RANDOM_SEED=42,
        TRANSACTION_BASE_DELAY_SECONDS=0.0,
        VECTOR_STORE_URL="",
        SLACK_WEBHOOK_URL="",
    )


@pytest.fixture
def rng() -> random.Random:
    """Seeded random source."""
    return random.Random(1234)


@pytest.fixture
def make_snapshot() -> Callable[..., ResourceSnapshot]:
    """Factory for resource snapshots."""

    def _make(
        resource_type: str = "ec2",
        metrics: dict[str, Any] | None = None,
        config: dict[str, Any] | None = None,
        monthly_cost: float | None = 100.0,
        resource_id: str | None = None,
        tenant_id: str = TENANT_ID,
    ) -> ResourceSnapshot:
        return ResourceSnapshot(
            resource_id=resource_id or f"{resource_type}-{uuid.uuid4().hex[:8]}",
            tenant_id=tenant_id,
            resource_type=resource_type,
            config=config or {},
            metrics=metrics,
            monthly_cost=monthly_cost,
        )

    return _make


@pytest.fixture
def make_draft() -> Callable[..., RecommendationDraft]:
    """Factory for recommendation drafts."""

    def _make(
        resource_id: str = "vol-0001",
        recommendation_type: RecommendationType = RecommendationType.DELETE_UNATTACHED,
        risk_level: int = 2,
        monthly_savings: float = 40.0,
        tenant_id: str = TENANT_ID,
        resource_type: str = "ebs",
    ) -> RecommendationDraft:
        return RecommendationDraft(
            tenant_id=tenant_id,
            resource_id=resource_id,
            resource_type=resource_type,
            type=recommendation_type,
            priority=priority_for_risk(risk_level),
            title=f"Recommendation for {resource_id}",
            description="test",
            current_config={"state": "available", "size": 100},
            recommended_config={"action": "DELETE"},
            projected_monthly_savings=monthly_savings,
            risk_level=risk_level,
        )

    return _make


@pytest.fixture
def seed_resources(session_factory) -> Callable[..., Any]:
    """Insert resources into the inventory table and commit."""

    async def _seed(*resources: CloudResourceCreate, tenant_id: str = TENANT_ID) -> None:
        async with session_factory() as session, session.begin():
            await resource_crud.bulk_upsert_resources(session, tenant_id, list(resources))

    return _seed


@pytest.fixture
def broadcaster() -> InMemoryEventBroadcaster:
    return InMemoryEventBroadcaster()


@pytest.fixture
def notifier() -> AsyncMock:
    """Notifier double recording every event."""
    return AsyncMock()


@pytest.fixture
def mutation_executor() -> SimulatedMutationExecutor:
    return SimulatedMutationExecutor()


@pytest.fixture
def state_machine(session_factory, mutation_executor, broadcaster, notifier) -> RecommendationStateMachine:
    """State machine wired to the test database with instant retries."""
    return RecommendationStateMachine(
        session_factory,
        mutation_executor=mutation_executor,
        broadcaster=broadcaster,
        notifier=notifier,
        max_retries=3,
        base_delay=0.0,
        sleep=AsyncMock(),
    )
