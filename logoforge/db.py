"""
logoforge/db.py

Database connection management.

Design principles:
    1. Environment-driven: DATABASE_URL from the hosting platform
    2. Connection pooling: Sized for container workloads
    3. One Database handle per app, passed to the services that need it
    4. Provider-agnostic: PostgreSQL in production, SQLite for tests/dev

Usage:
    from logoforge.db import Database

    database = Database(settings.database_url)
    database.create_all()

    with database.session() as db:
        account = db.get(CreditAccount, user_id)
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

DEV_DATABASE_URL = 'sqlite:///logoforge_dev.db'

# Connection pool settings optimized for container workloads
POOL_CONFIG = {
    'poolclass': QueuePool,
    'pool_size': 5,           # Connections to keep open
    'max_overflow': 10,       # Extra connections under load
    'pool_timeout': 30,       # Seconds to wait for connection
    'pool_recycle': 1800,     # Recycle connections after 30 min
    'pool_pre_ping': True,    # Test connections before using
}

# Writers wait on the SQLite file lock instead of failing immediately
SQLITE_CONNECT_ARGS = {
    'check_same_thread': False,
    'timeout': 30,
}


def normalize_database_url(url: Optional[str]) -> str:
    """
    Normalize a database URL.

    Heroku/Railway style 'postgres://' URLs are rewritten to 'postgresql://'
    which SQLAlchemy 2.0 requires. An empty URL falls back to a local
    SQLite file for development.
    """
    if not url:
        logger.warning("[DB] DATABASE_URL not set, using dev fallback %s", DEV_DATABASE_URL)
        return DEV_DATABASE_URL

    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)

    return url


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine with settings appropriate for the backend."""
    if url.startswith('sqlite'):
        engine = create_engine(url, echo=echo, connect_args=SQLITE_CONNECT_ARGS)

        @event.listens_for(engine, 'connect')
        def on_connect(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute('PRAGMA foreign_keys=ON')
            cursor.close()

        return engine

    return create_engine(url, echo=echo, **POOL_CONFIG)


# =============================================================================
# DATABASE HANDLE
# =============================================================================

class Database:
    """
    Engine plus session factory for one application instance.

    Every request handler and background worker opens its own short-lived
    session through session(); nothing is shared between threads except
    the connection pool.
    """

    def __init__(self, url: Optional[str] = None, echo: bool = False):
        self.url = normalize_database_url(url)
        self.engine = build_engine(self.url, echo=echo)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions with automatic cleanup.

        Callers commit explicitly; anything left uncommitted is rolled back.

        Usage:
            with database.session() as db:
                db.add(entry)
                db.commit()
        """
        session = self._session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self):
        """Create all tables (idempotent - only creates if missing)."""
        from logoforge.models import Base
        Base.metadata.create_all(self.engine)
        logger.info("[DB] Tables ensured on %s", self.dialect)

    def drop_all(self):
        """Drop all tables. Only for development/testing."""
        from logoforge.models import Base
        Base.metadata.drop_all(self.engine)
        logger.warning("[DB] All tables dropped")

    def check_connection(self) -> bool:
        """Check if database is reachable (for /health)."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text('SELECT 1'))
            return True
        except Exception as e:
            logger.error("[DB] Health check failed: %s", e)
            return False

    def dispose(self):
        self.engine.dispose()
