from sqlalchemy import Column, String, DateTime, JSON, event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from pathlib import Path
import logging

from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== KEY-VALUE STORE ====================


class KeyValueEntry(Base):
    """One persisted collection, stored as a JSON document under a well-known key"""

    __tablename__ = "kv_store"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ==================== DATABASE SETUP ====================


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for better concurrent access (WAL mode, busy timeout)."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")  # Allow concurrent reads during writes
    cursor.execute("PRAGMA busy_timeout=30000")  # Wait up to 30s when locked (ms)
    cursor.close()


def _ensure_sqlite_parent(database_url: str) -> None:
    prefix = "sqlite+aiosqlite:///"
    if not database_url.startswith(prefix):
        return
    path_part = database_url[len(prefix) :]
    if not path_part or path_part == ":memory:":
        return
    Path(path_part).parent.mkdir(parents=True, exist_ok=True)


def create_engine_for(database_url: str) -> AsyncEngine:
    """Build the async engine; SQLite files get WAL + busy timeout pragmas."""
    engine_kw: dict = {"echo": False}
    is_sqlite = "sqlite" in database_url
    if is_sqlite:
        engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked
        _ensure_sqlite_parent(database_url)

    engine = create_async_engine(database_url, **engine_kw)
    if is_sqlite and ":memory:" not in database_url:
        event.listens_for(engine.sync_engine, "connect")(_set_sqlite_pragma)
    return engine


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_database(engine: AsyncEngine) -> None:
    """Create the key-value table if it does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized at %s", engine.url)
