"""
questline.services.leaderboard_service — Leaderboard Projection
================================================================

``leaderboard_entries`` is a denormalised copy of ``accounts.xp`` /
``accounts.rank``.  It is a cache: it may lag the ledger, and can be
rebuilt from ``accounts`` at any time.

The per-account upsert copies values **from the accounts row inside the
database** rather than from values held in Python, so two racing
projections for the same account both write whatever is current and the
last writer never regresses the entry to a stale total.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, delete, func, select, text
from sqlalchemy.orm import Session

from questline.database.engine import get_session
from questline.database.models import LeaderboardEntry

logger = logging.getLogger(__name__)

_PROJECT_ONE = text("""
    INSERT INTO leaderboard_entries (account_id, display_name, xp, rank, updated_at)
    SELECT id, display_name, xp, rank, CURRENT_TIMESTAMP
    FROM accounts
    WHERE id = :account_id
    ON CONFLICT (account_id) DO UPDATE SET
        display_name = excluded.display_name,
        xp = excluded.xp,
        rank = excluded.rank,
        updated_at = excluded.updated_at
""")

_PROJECT_ALL = text("""
    INSERT INTO leaderboard_entries (account_id, display_name, xp, rank, updated_at)
    SELECT id, display_name, xp, rank, CURRENT_TIMESTAMP
    FROM accounts
""")


def project_account(engine: Engine, account_id: str) -> bool:
    """Upsert the leaderboard entry for *account_id* from its account row.

    Returns False if the account doesn't exist.
    """
    with get_session(engine) as session:
        result = session.execute(
            _PROJECT_ONE, {"account_id": account_id},
        )
        return result.rowcount > 0


def rebuild_leaderboard(engine: Engine) -> dict:
    """Replace every leaderboard entry with a fresh copy of ``accounts``.

    Runs in one transaction: readers see the old or the new board, never a
    half-built one.
    """
    with get_session(engine) as session:
        session.execute(delete(LeaderboardEntry))
        result = session.execute(_PROJECT_ALL)
        count = result.rowcount

    logger.info("Leaderboard rebuilt: %d entries", count)
    return {"entries": count, "timestamp": datetime.now(UTC).isoformat()}


def top_entries(engine: Engine, limit: int = 50) -> list[dict]:
    """Highest-XP entries with 1-based positions (ties broken by account id)."""
    with Session(engine) as session:
        rows = session.scalars(
            select(LeaderboardEntry)
            .order_by(LeaderboardEntry.xp.desc(), LeaderboardEntry.account_id)
            .limit(limit)
        ).all()
        return [
            {
                "position": i,
                "account_id": r.account_id,
                "display_name": r.display_name,
                "xp": r.xp,
                "rank": r.rank,
                "updated_at": r.updated_at.isoformat() if r.updated_at else None,
            }
            for i, r in enumerate(rows, start=1)
        ]


def get_position(engine: Engine, account_id: str) -> int | None:
    """1-based leaderboard position of *account_id*, or None if not projected."""
    with Session(engine) as session:
        entry = session.get(LeaderboardEntry, account_id)
        if entry is None:
            return None
        ahead = session.scalar(
            select(func.count()).select_from(LeaderboardEntry).where(
                (LeaderboardEntry.xp > entry.xp)
                | ((LeaderboardEntry.xp == entry.xp)
                   & (LeaderboardEntry.account_id < entry.account_id))
            )
        )
        return int(ahead) + 1
