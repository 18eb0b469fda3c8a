from sqlalchemy import Column, String, Integer, DateTime, Text, event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from pathlib import Path
import logging

from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== CREDENTIALS ====================


class BrokerCredentialRow(Base):
    """Single-row table holding the broker login."""

    __tablename__ = "broker_credentials"

    id = Column(Integer, primary_key=True, default=1)
    username = Column(String, nullable=False)
    api_key = Column(Text, nullable=False)  # enc:v1: when a secrets key is set
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class CloudTokenRow(Base):
    """Single-row table holding the activated cloud identity."""

    __tablename__ = "cloud_tokens"

    id = Column(Integer, primary_key=True, default=1)
    bot_id = Column(String, nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    device_fingerprint = Column(String, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ==================== DATABASE SETUP ====================


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for concurrent access (WAL mode, busy timeout)."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def build_engine(database_url: str) -> AsyncEngine:
    engine_kw: dict = {"echo": False}
    is_sqlite = "sqlite" in database_url
    if is_sqlite:
        engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked
    engine = create_async_engine(database_url, **engine_kw)
    if is_sqlite and ":memory:" not in database_url:
        event.listens_for(engine.sync_engine, "connect")(_set_sqlite_pragma)
    return engine


def build_sessionmaker(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_database(engine: AsyncEngine) -> None:
    """Create credential tables if they do not exist."""
    if engine.url.get_backend_name() == "sqlite" and engine.url.database not in (None, "", ":memory:"):
        Path(engine.url.database).parent.mkdir(parents=True, exist_ok=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Credential database ready")
