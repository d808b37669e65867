"""
Pytest configuration and fixtures for PostPilot tests.

Provides:
- Async test database with SQLite
- Stores, execution ledger and job scheduler bound to the test database
- Test client for API testing
- Factory fixtures for creating test data
"""

import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from postpilot.config import AppConfig, Settings, get_config
from postpilot.core.scheduler import JobScheduler, get_job_scheduler
from postpilot.dependencies import get_experiment_store
from postpilot.main import app
from postpilot.models import Base, Experiment
from postpilot.services.experiment_store import ExperimentStore
from postpilot.services.job_ledger import ExecutionLedger
from postpilot.services.job_state_store import JobStateStore

# Settings-level URL; engines are created per test in db_engine
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# Override settings for testing
class TestSettings(Settings):
    database_url: str = TEST_DATABASE_URL
    debug: bool = True
    scheduler_enabled: bool = False
    discord_webhook_url: str = "https://discord.test/api/webhooks/1/token"


@pytest.fixture
def test_settings() -> TestSettings:
    """Get test settings."""
    return TestSettings()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """
    Create async test database engine.

    File-backed so concurrent sessions each get their own connection.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def ledger(session_factory) -> ExecutionLedger:
    return ExecutionLedger(session_factory)


@pytest.fixture
def job_states(session_factory) -> JobStateStore:
    return JobStateStore(session_factory)


@pytest.fixture
def experiment_store(session_factory) -> ExperimentStore:
    return ExperimentStore(session_factory)


@pytest_asyncio.fixture
async def job_scheduler(ledger, job_states) -> AsyncGenerator[JobScheduler, None]:
    """Empty job scheduler; tests register their own jobs."""
    scheduler = JobScheduler(ledger, job_states=job_states)
    yield scheduler
    await scheduler.wait_idle(timeout=1.0)


@pytest_asyncio.fixture
async def client(
    job_scheduler: JobScheduler,
    experiment_store: ExperimentStore,
    test_settings: TestSettings,
) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client with scheduler, store and config overrides."""
    app.dependency_overrides[get_config] = lambda: AppConfig(test_settings, data={})
    app.dependency_overrides[get_job_scheduler] = lambda: job_scheduler
    app.dependency_overrides[get_experiment_store] = lambda: experiment_store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================================
# Factory Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def experiment_factory(experiment_store: ExperimentStore):
    """
    Factory for creating experiments.

    `variants` is a list of (label, sent, opened) tuples. Counters are
    recorded after the experiment starts, so they need `start=True`.
    """

    async def _create_experiment(
        name: str | None = None,
        variants: list[tuple[str, int, int]] | None = None,
        start: bool = True,
        confidence_level: int = 95,
        min_sample_size: int = 100,
    ) -> Experiment:
        if name is None:
            name = f"Subject test {uuid.uuid4().hex[:8]}"
        if variants is None:
            variants = [("A", 0, 0), ("B", 0, 0)]

        experiment = await experiment_store.create_experiment(
            name=name,
            confidence_level=confidence_level,
            min_sample_size=min_sample_size,
        )
        created = [
            await experiment_store.add_variant(experiment.id, label=label)
            for label, _, _ in variants
        ]

        if start:
            await experiment_store.start_experiment(experiment.id)
            for variant, (_, sent, opened) in zip(created, variants, strict=True):
                if sent or opened:
                    await experiment_store.increment_variant_counters(
                        variant.id, sent=sent, opened=opened
                    )

        return await experiment_store.get_experiment(experiment.id)

    return _create_experiment
