"""
Database connection and session management.

`Store` is an explicitly constructed handle (engine + session factory)
that is passed down to every component. There are no module-level
engines: tests build a Store on in-memory SQLite and inject it.
"""
from contextlib import contextmanager
from typing import Iterator, Optional
import functools
import logging
import time

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, DBAPIError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)


def _normalize_url(url: str) -> str:
    # Some hosting providers still hand out postgres:// URLs
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql://', 1)
    return url


class Store:
    """Relational store handle with read/write/upsert semantics."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @classmethod
    def from_url(cls, url: str, pool_size: int = 5, echo: bool = False,
                 max_retries: int = 3, retry_delay: float = 1.0) -> "Store":
        """
        Build a Store and verify connectivity with retries.

        Raises:
            RuntimeError: If connection fails after all retries
        """
        url = _normalize_url(url)
        if url.startswith('sqlite'):
            kwargs = {'connect_args': {'check_same_thread': False}}
            if ':memory:' in url or url in ('sqlite://', 'sqlite:///'):
                kwargs['poolclass'] = StaticPool
        else:
            kwargs = {'pool_pre_ping': True, 'pool_size': pool_size, 'pool_recycle': 3600}

        for attempt in range(max_retries):
            try:
                engine = create_engine(url, echo=echo, **kwargs)
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                logger.info(f"Database initialized: {url.split('@')[1] if '@' in url else url.split(':')[0]}")
                return cls(engine)
            except (OperationalError, DBAPIError) as e:
                logger.warning(f"Database connection attempt {attempt + 1}/{max_retries} failed: {e}")
                if attempt < max_retries - 1:
                    time.sleep(retry_delay * (attempt + 1))
                else:
                    logger.error(f"Database initialization failed after {max_retries} attempts")
                    raise RuntimeError(f"Failed to connect to database: {e}") from e
        raise RuntimeError("unreachable")

    @classmethod
    def from_settings(cls, settings) -> "Store":
        return cls.from_url(settings.database_url, pool_size=settings.database_pool_size,
                            echo=settings.database_echo)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Transactional session scope: commit on success, roll back on error.

        Usage:
            with store.session() as db:
                db.add(row)
        """
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def create_all(self):
        """Create all tables. Use migrations for long-lived production databases."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created")

    def dispose(self):
        self.engine.dispose()


def with_db_retry(func=None, *, max_retries: int = 3, retry_delay: float = 1.0):
    """
    Decorator that retries database operations on connection errors.

    Usage:
        @with_db_retry
        def load(store, ...):
            ...
    """
    if func is None:
        return functools.partial(with_db_retry, max_retries=max_retries, retry_delay=retry_delay)

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        for attempt in range(max_retries):
            try:
                return func(*args, **kwargs)
            except (OperationalError, DBAPIError) as e:
                error_msg = str(e).lower()
                is_connection_error = any(pattern in error_msg for pattern in [
                    'closed the connection', 'connection refused', 'timeout',
                    'connection reset', 'server terminated', 'cannot reconnect',
                    'connection timed out', 'broken pipe', 'database is locked',
                ])
                if is_connection_error and attempt < max_retries - 1:
                    wait_time = retry_delay * (2 ** attempt)
                    logger.warning(f"Database operation failed (attempt {attempt + 1}/{max_retries}): {e}")
                    time.sleep(wait_time)
                    continue
                raise
        raise RuntimeError("unreachable")

    return wrapper
