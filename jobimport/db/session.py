import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from jobimport.core.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
SessionLocal = None

Base = declarative_base()


def _report_connection_failure(url: str, exc: Exception) -> None:
    """Log high-signal diagnostics when the service cannot reach its database."""
    logger.warning("Could not connect to database: %s", exc)
    logger.warning("The service will start but database operations will fail until the connection succeeds.")

    try:
        parsed = make_url(url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning("Unable to parse DATABASE_URL (%s); skipping detailed diagnostics.", parse_error)
        return

    masked_url = parsed._replace(password="***" if parsed.password else None)
    logger.warning(
        "Database connection settings: dialect=%s driver=%s host=%s port=%s database=%s user=%s SKIP_DB_INIT=%r",
        masked_url.get_backend_name(),
        masked_url.get_driver_name() or "default",
        masked_url.host or "localhost",
        masked_url.port or "(default)",
        masked_url.database,
        masked_url.username,
        os.getenv("SKIP_DB_INIT"),
    )


def _build_engine(url: str) -> Engine:
    kwargs = {}
    if url.startswith("sqlite"):
        # Worker threads share the engine with request handlers
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_pre_ping"] = True
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        try:
            _engine = _build_engine(settings.database_url)
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(settings.database_url, e)
            # Create the engine anyway so callers can proceed (may still fail later).
            _engine = _build_engine(settings.database_url)
    return _engine


def configure_engine(url: str) -> Engine:
    """Point the module at a different database, disposing any existing engine."""
    global _engine, SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = _build_engine(url)
    SessionLocal = None
    return _engine


def get_session_local():
    global SessionLocal
    if SessionLocal is None:
        engine = get_engine()
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    return SessionLocal


@contextmanager
def session_scope() -> Iterator[Session]:
    """Run a unit of work in one transaction, rolling back on any error."""
    session = get_session_local()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_tables() -> None:
    """Create all ORM tables that do not exist yet."""
    # Registers the models on Base.metadata
    from jobimport.db import models  # noqa: F401

    Base.metadata.create_all(bind=get_engine())
