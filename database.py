"""
Database engine and session factory for the settlement service.

PostgreSQL in production, SQLite for local development and tests. Sessions
are request-scoped; transaction boundaries live in utils.atomic_transactions.
"""

import logging
from typing import Generator, Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None) -> Engine:
    """Create an engine for the configured backend"""
    url = database_url or Config.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # In-memory databases live inside one connection; share it across sessions
            options["poolclass"] = StaticPool
        sqlite_engine = create_engine(url, **options)

        @event.listens_for(sqlite_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return sqlite_engine

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=Config.DB_POOL_SIZE,
        max_overflow=Config.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=30,
        connect_args={
            "connect_timeout": 10,
            "application_name": "bountyvault_settlement",  # visible in pg_stat_activity
        },
    )


engine = build_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(bind: Optional[Engine] = None) -> bool:
    """Create missing tables; returns False when the schema could not be created"""
    target = bind or engine
    try:
        logger.info(f"🏗️ Creating settlement schema ({len(Base.metadata.tables)} tables)...")
        Base.metadata.create_all(bind=target, checkfirst=True)
        logger.info(f"✅ Database schema verified: {len(inspect(target).get_table_names())} tables available")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request-scoped session"""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def check_connection() -> bool:
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"❌ Database connection check failed: {e}")
        return False
