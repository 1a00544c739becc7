# tests/conftest.py
from __future__ import annotations

import os

# Settings are read lazily, but the required ones must exist before any test imports them.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./unused.db")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("ADMIN_API_TOKEN", "test-admin-token")
# Retries become eligible immediately so tests can drive them without waiting.
os.environ.setdefault("JOB_BACKOFF_BASE_SECONDS", "0")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from jobs.permits import build_permit_pools
from models import Base
from services.cost_governance import BudgetAlerter
from services.metrics import JobMetrics


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def pools():
    return build_permit_pools()


@pytest.fixture
def sink() -> JobMetrics:
    return JobMetrics()


@pytest.fixture(autouse=True)
def fresh_budget_alerter(monkeypatch):
    alerter = BudgetAlerter()
    monkeypatch.setattr("jobs.handlers.budget_alerter", alerter)
    return alerter


@pytest.fixture
def screenshot_root(tmp_path, monkeypatch):
    from api.app.config import get_settings

    root = tmp_path / "screenshots"
    monkeypatch.setattr(get_settings(), "screenshot_storage_path", str(root))
    return root
