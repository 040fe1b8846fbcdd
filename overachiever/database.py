from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy import text, inspect
import logging
import os
from overachiever.settings import settings

logger = logging.getLogger(__name__)

# Ensure data directory exists for file-backed SQLite
if settings.DATABASE_URL.startswith("sqlite+aiosqlite:///"):
    _db_dir = os.path.dirname(settings.DATABASE_URL.replace("sqlite+aiosqlite:///", ""))
    if _db_dir:
        os.makedirs(_db_dir, exist_ok=True)


engine = create_async_engine(settings.DATABASE_URL, echo=False, future=True)
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Columns added after the first release: (table, column, DDL type)
_ADDED_COLUMNS = [
    ("run_history", "unplayed_games", "INTEGER NOT NULL DEFAULT 0"),
    ("user_games", "last_achievement_scrape", "DATETIME"),
]


async def migrate_db(connection):
    """
    Check for missing columns and add them safely.
    """
    try:

        def do_inspect(conn):
            inspector = inspect(conn)
            return {
                table: [c["name"] for c in inspector.get_columns(table)]
                for table in {t for t, _, _ in _ADDED_COLUMNS}
                if inspector.has_table(table)
            }

        columns_by_table = await connection.run_sync(do_inspect)

        for table, column, ddl in _ADDED_COLUMNS:
            if table in columns_by_table and column not in columns_by_table[table]:
                logger.info(f"Migrating DB: Adding '{column}' column to '{table}' table.")
                await connection.execute(
                    text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
                )

    except Exception as e:
        logger.error(f"Migration Check Failed: {e}", exc_info=True)


async def init_db(db_engine=None):
    db_engine = db_engine or engine
    async with db_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        await migrate_db(conn)


async def get_session() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session
