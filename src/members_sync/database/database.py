"""Engine and transactional session handling for the members cache store."""

import os
from typing import Generator, Optional
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base
from ..config.settings import get_settings
from ..utils.logging import get_logger


logger = get_logger("database")


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_memory_sqlite(url: str) -> bool:
    return _is_sqlite(url) and (":memory:" in url or url.rstrip("/") == "sqlite:")


def _build_engine(database_url: str) -> Engine:
    if _is_memory_sqlite(database_url):
        # one shared connection, otherwise every session sees an empty database
        return create_engine(
            database_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False}
        )

    if _is_sqlite(database_url):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 20}
        )

        # The service and the one-off sync script may share one file
        @event.listens_for(engine, "connect")
        def _enable_wal(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        return engine

    return create_engine(database_url, pool_pre_ping=True, pool_recycle=300)


class DatabaseManager:
    """Owns the engine and hands out commit-or-rollback sessions."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or get_settings().database.url
        self.engine = _build_engine(self.database_url)

        # documents handed out by the store stay readable after commit
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

        logger.info("Database manager initialized", database_url=self.engine.url.render_as_string(hide_password=True))

    def create_tables(self):
        """Create the cache, activity, state and run-log tables if missing."""
        if _is_sqlite(self.database_url) and not _is_memory_sqlite(self.database_url):
            db_dir = os.path.dirname(self.database_url.replace("sqlite:///", "", 1))
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

        try:
            Base.metadata.create_all(bind=self.engine)
        except Exception as e:
            logger.error("Failed to create database tables", error=str(e))
            raise

        logger.info("Database tables ready", tables=sorted(Base.metadata.tables))

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """One transaction: committed on success, rolled back on any error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("Database transaction rolled back", error=str(e))
            raise
        finally:
            session.close()

    def test_connection(self) -> bool:
        """Run ``SELECT 1``; False when the database is unreachable."""
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("Database connection test failed", error=str(e))
            return False
        return True


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get the global database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def init_database(database_url: Optional[str] = None, create_tables: bool = True) -> DatabaseManager:
    """Replace the global manager, create tables and check connectivity.

    Raises:
        RuntimeError: If the database cannot be reached
    """
    global _db_manager
    _db_manager = DatabaseManager(database_url)

    if create_tables:
        _db_manager.create_tables()

    if not _db_manager.test_connection():
        raise RuntimeError(f"Failed to establish database connection: {database_url or 'configured URL'}")

    return _db_manager


def close_database():
    """Dispose of the global engine's connections."""
    global _db_manager
    if _db_manager:
        _db_manager.engine.dispose()
        _db_manager = None
        logger.info("Database connections closed")
