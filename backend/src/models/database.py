"""Engine and session factories.

Nothing here connects at import time. Process entry points (the API lifespan,
the worker entrypoint, Celery tasks) build an engine from settings, own it, and
dispose it on shutdown.
"""

import logging
import time
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from src.models.base import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create a sync engine for the job store."""
    if database_url.startswith("sqlite"):
        # Local/test store; SQLite serializes writers so claims stay atomic
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    return create_engine(
        database_url,
        echo=echo,
        pool_size=5,
        max_overflow=0,
        pool_pre_ping=True,  # Check connection health before use
        pool_recycle=1800,
        pool_timeout=30,
    )


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, class_=Session, expire_on_commit=False)


def init_db(engine: Engine, max_retries: int = 5, retry_delay: float = 2.0) -> None:
    """Create tables, retrying while the database comes up."""
    for attempt in range(max_retries):
        try:
            Base.metadata.create_all(engine)
            return
        except OperationalError as e:
            if attempt < max_retries - 1:
                logger.warning(
                    f"DB connection attempt {attempt + 1}/{max_retries} failed: {e}. "
                    f"Retrying in {retry_delay} seconds..."
                )
                time.sleep(retry_delay)
                retry_delay *= 2  # Exponential backoff
            else:
                logger.error(f"Failed to connect to database after {max_retries} attempts")
                raise


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Commit on success, roll back on error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
