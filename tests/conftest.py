"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of questline.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively; render it as TEXT and let the JSON
# type's processors handle (de)serialisation.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from questline.database.models import (  # noqa: E402
    AchievementTemplate,
    Base,
    Quest,
    VerificationCode,
)
from questline.engine.cache import ConfigCache  # noqa: E402
from questline.services.degraded_log import DegradedLog  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all Questline tables.

    StaticPool shares the single in-memory database across threads
    (FastAPI's TestClient runs sync routes on a worker thread).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine for tests that race real connections.

    Each pooled connection is a separate SQLite connection, so conditional
    updates and unique constraints are exercised across transactions.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
        pool_size=10,
        max_overflow=10,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def cache(db_engine: Engine) -> ConfigCache:
    """A real ConfigCache over the in-memory DB (default rank table)."""
    c = ConfigCache(db_engine)
    c.load_all()
    return c


@pytest.fixture
def dlog() -> DegradedLog:
    """A private degraded log so tests don't share the process singleton."""
    return DegradedLog(capacity=100)


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------
def make_quest(
    engine: Engine,
    quest_id: str = "q-1",
    reward_points: int = 50,
    *,
    title: str | None = None,
    active: bool = True,
    requires_code: bool = False,
    codes: list[str] | None = None,
) -> str:
    """Insert a quest (and optional verification codes); return its id."""
    with Session(engine) as session:
        session.add(Quest(
            id=quest_id,
            title=title or f"Quest {quest_id}",
            reward_points=reward_points,
            active=active,
            requires_code=requires_code,
        ))
        session.flush()
        for code in codes or []:
            session.add(VerificationCode(quest_id=quest_id, code=code, active=True))
        session.commit()
    return quest_id


def make_template(
    engine: Engine,
    name: str,
    trigger_type: str,
    trigger_config: dict,
    xp_reward: int = 0,
    active: bool = True,
) -> int:
    """Insert an achievement template; return its id."""
    with Session(engine) as session:
        template = AchievementTemplate(
            name=name,
            trigger_type=trigger_type,
            trigger_config=trigger_config,
            xp_reward=xp_reward,
            active=active,
        )
        session.add(template)
        session.commit()
        return template.id


def make_token(sub: str = "user-1", is_admin: bool = False, username: str = "Tester") -> str:
    """Create a signed JWT for API tests."""
    import jwt

    from questline.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": is_admin},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )
