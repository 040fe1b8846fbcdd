import pytest
from unittest.mock import AsyncMock
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

# Ensure models are imported
from overachiever import models  # noqa: F401
from overachiever.services.steam_client import SteamClient


@pytest.fixture(name="db_engine")
async def db_engine_fixture():
    """
    Creates an in-memory SQLite database shared by every session of a test.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(name="session_factory")
def session_factory_fixture(db_engine):
    return sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(name="session")
async def session_fixture(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(name="steam_client")
def steam_client_fixture():
    """
    SteamClient stand-in: every call succeeds with no data unless a test
    says otherwise.
    """
    client = AsyncMock(spec=SteamClient)
    client.get_owned_games.return_value = []
    client.get_recently_played.return_value = []
    client.get_player_achievements.return_value = []
    client.get_schema_for_game.return_value = []
    return client
