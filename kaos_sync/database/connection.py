"""
Database Connection Module
Handles connection pooling and session management using SQLAlchemy.
"""

import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from kaos_sync.config_manager import ConfigManager
from kaos_sync.utils.logger import get_logger

logger = get_logger(__name__)


class DatabaseConnection:
    """Manages database connections with connection pooling."""

    def __init__(self, url: Optional[str] = None):
        """
        Initialize the engine.

        Args:
            url: SQLAlchemy URL; built from the 'database' config section when omitted
        """
        self._engine: Engine = None
        self._session_factory = None
        self._initialize_engine(url)

    def _initialize_engine(self, url: Optional[str]) -> None:
        """Create SQLAlchemy engine with connection pooling."""
        db_config = {} if url else ConfigManager().get_database_config()
        db_url = url or db_config.get('url') or self._build_connection_url(db_config)
        echo = os.getenv('SQL_ECHO', 'false').lower() == 'true'

        if db_url.startswith('sqlite'):
            # Single shared connection so in-memory databases survive across sessions
            self._engine = create_engine(
                db_url,
                poolclass=StaticPool,
                connect_args={'check_same_thread': False},
                echo=echo
            )
        else:
            logger.info(f"Initializing database connection to {db_config.get('host')}:{db_config.get('port')}/{db_config.get('name')}")
            self._engine = create_engine(
                db_url,
                poolclass=QueuePool,
                pool_size=db_config.get('pool_size', 5),
                max_overflow=db_config.get('max_overflow', 10),
                pool_timeout=db_config.get('pool_timeout', 30),
                pool_pre_ping=True,
                echo=echo
            )

        # Rows returned from a scope stay readable after it closes
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

        logger.info("Database engine initialized successfully")

    def _build_connection_url(self, db_config: dict) -> str:
        """Build PostgreSQL connection URL from config."""
        host = db_config.get('host', 'localhost')
        port = db_config.get('port', 5432)
        name = db_config.get('name', 'kaos')
        user = db_config.get('user', 'kaos')
        password = db_config.get('password', '')

        return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}"

    @property
    def engine(self) -> Engine:
        """Get the SQLAlchemy engine."""
        return self._engine

    def create_all(self) -> None:
        """Create every table defined on the model metadata."""
        from kaos_sync.database.models import Base
        Base.metadata.create_all(self._engine)

    def get_session(self) -> Session:
        """Create a new database session."""
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope around a series of operations.

        Usage:
            with db.session_scope() as session:
                session.query(...)
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    def check_connection(self) -> bool:
        """
        Check if database connection is healthy.

        Returns:
            bool: True if connection is healthy, False otherwise.
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.debug("Database connection health check passed")
            return True
        except Exception as e:
            logger.error(f"Database connection health check failed: {e}")
            return False

    def dispose(self) -> None:
        """Dispose of the connection pool."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database connection pool disposed")


_db: Optional[DatabaseConnection] = None


def get_db() -> DatabaseConnection:
    """Get the shared database connection, creating it from config on first use."""
    global _db
    if _db is None:
        _db = DatabaseConnection()
    return _db


def set_db(db: Optional[DatabaseConnection]) -> None:
    """Replace the shared database connection (used by scripts and tests)."""
    global _db
    _db = db


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Convenience function to get a database session.

    Usage:
        with get_session() as session:
            session.query(...)
    """
    db = get_db()
    with db.session_scope() as session:
        yield session
