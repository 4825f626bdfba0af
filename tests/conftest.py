"""Test configuration: a per-test SQLite database and a queue wired to it."""

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.models.base import Base
from app.models.webhook import WebhookJob
from app.services.webhook_handlers import build_default_registry
from app.services.webhook_queue import WebhookQueueService


def _sqlite_engine(path):
    # File-backed so concurrent sessions get their own connections
    return create_async_engine(f"sqlite+aiosqlite:///{path}")


@pytest.fixture
async def engine(tmp_path):
    engine = _sqlite_engine(tmp_path / "webhooks.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def broken_session_factory(tmp_path):
    """Session factory for a database with no tables; every query fails."""
    engine = _sqlite_engine(tmp_path / "empty.db")
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def handlers():
    return build_default_registry()


@pytest.fixture
def queue(session_factory, handlers):
    return WebhookQueueService(session_factory, handlers, job_timeout=5.0)


@pytest.fixture
def set_job_fields(session_factory):
    """Write columns directly, bypassing the queue's state machine."""

    async def _set(job_id: str, **values):
        async with session_factory() as db:
            await db.execute(
                update(WebhookJob)
                .where(WebhookJob.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    return _set
