"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from ticketflow.config import Settings
from ticketflow.db import create_engine, init_db
from ticketflow.engine import TicketEngine
from ticketflow.models import Board
from ticketflow.storage import SqlAlchemyStorage


@pytest.fixture
def test_settings() -> Settings:
    """Settings pointing at a throwaway in-memory database."""
    return Settings(db_url="sqlite+aiosqlite://", redis_publish_enabled=False)


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine(test_settings.async_database_url, echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def storage(db_engine: AsyncEngine) -> SqlAlchemyStorage:
    return SqlAlchemyStorage.from_engine(db_engine)


@pytest_asyncio.fixture
async def engine(storage: SqlAlchemyStorage, test_settings: Settings) -> TicketEngine:
    return TicketEngine(storage, config=test_settings)


@pytest_asyncio.fixture
async def board(engine: TicketEngine) -> Board:
    return await engine.create_board({"name": "Platform", "workflow_id": "kanban"})
