import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.pool import StaticPool

from content_import.core.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def _report_connection_failure(database_url: str, exc: Exception) -> None:
    try:
        url = make_url(database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning("Could not connect to database (%s); unparseable URL: %s", exc, parse_error)
        return

    masked_url = url._replace(password="***" if url.password else None)
    logger.warning(
        "Could not connect to database %s (dialect=%s, host=%s): %s. "
        "Job and document stores backed by SQL will fail until it is reachable.",
        masked_url.database,
        masked_url.get_backend_name(),
        masked_url.host or "localhost",
        exc,
    )


def build_engine(database_url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def _connect(database_url: str) -> Engine:
    engine = build_engine(database_url)
    try:
        # Test connection eagerly so failures surface at startup.
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        _report_connection_failure(database_url, e)
    return engine


def get_engine(database_url: Optional[str] = None) -> Engine:
    """Shared engine for the configured database; other URLs get their own engine."""
    global _engine
    url = database_url or settings.database_url
    if url != settings.database_url:
        return _connect(url)
    if _engine is None:
        _engine = _connect(url)
    return _engine
