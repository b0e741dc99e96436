"""
questline.database.engine — Database Connection & Session Helper
=================================================================

One synchronous SQLAlchemy engine per process.  FastAPI runs the plain
``def`` route handlers on its worker thread pool, so blocking psycopg2
calls never stall the event loop and no async engine is needed.

All mutual exclusion for the ledger is delegated to the database
(conditional ``UPDATE`` and ``UNIQUE`` constraints); this module only
hands out connections and sessions.

Usage::

    from questline.database.engine import create_db_engine, init_db, get_session

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS + seed

    with get_session(engine) as session:
        session.add(Quest(id="q1", title="Hello", reward_points=50))
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from questline.database.models import Base

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from ``DATABASE_URL``.

    Pool sizing mirrors a small API deployment:
    * ``pool_size=5`` — five persistent connections.
    * ``max_overflow=10`` — up to 10 extra connections under load.
    * ``pool_timeout=10`` — a saturated pool surfaces as a transient error
      after 10 s instead of hanging the request.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.

    Raises
    ------
    RuntimeError
        If neither *url* nor ``DATABASE_URL`` is set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info("Database engine created → %s", engine.url.host or engine.url.database)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine, ranks: tuple[tuple[str, int], ...] | None = None) -> None:
    """Create all tables and seed the default settings.

    Safe to call on every startup.  *ranks* (usually ``QuestlineConfig.ranks``)
    overrides the built-in rank table on first seed only.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` remains as a safety net for dev/test.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    from questline.database.seed import seed_default_achievements, seed_default_settings

    seed_default_settings(engine, ranks=ranks)
    seed_default_achievements(engine)


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """Yield a :class:`Session` that commits on success and rolls back on
    exception.

    Usage::

        with get_session(engine) as session:
            session.add(Account(id="u-1"))
            # commit happens automatically on block exit
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
