"""
questline.database.seed — Default Settings & Achievement Seeder
================================================================

Baseline rows inserted on first startup so the service can award XP
immediately: the versioned rank table and a small starter set of
achievement templates.

Idempotent — only inserts keys / names that don't already exist.  Values
changed later by an operator are never overwritten.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine, select

from questline.constants import (
    DEFAULT_RANK_VERSION,
    DEFAULT_RANKS,
    SETTING_RANK_THRESHOLDS,
    SETTING_RANK_VERSION,
)
from questline.database.engine import get_session
from questline.database.models import AchievementTemplate, Setting

logger = logging.getLogger(__name__)


def _rank_rows(ranks: tuple[tuple[str, int], ...]) -> list[dict]:
    return [{"name": name, "min_xp": min_xp} for name, min_xp in ranks]


# ---------------------------------------------------------------------------
# Default settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    SETTING_RANK_THRESHOLDS: (
        _rank_rows(DEFAULT_RANKS), "ranks",
        "Ordered rank table: [{name, min_xp}], ascending, first min_xp = 0",
    ),
    SETTING_RANK_VERSION: (
        DEFAULT_RANK_VERSION, "ranks",
        "Bump whenever ranks.thresholds changes",
    ),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


# ---------------------------------------------------------------------------
# Starter achievements
# ---------------------------------------------------------------------------
DEFAULT_ACHIEVEMENTS: list[dict] = [
    {
        "name": "First Steps",
        "description": "Complete your first quest",
        "trigger_type": "quests_completed",
        "trigger_config": {"count": 1},
        "xp_reward": 25,
    },
    {
        "name": "Quest Hunter",
        "description": "Complete 10 quests",
        "trigger_type": "quests_completed",
        "trigger_config": {"count": 10},
        "xp_reward": 100,
    },
    {
        "name": "Thousand Club",
        "description": "Reach 1,000 XP",
        "trigger_type": "xp_milestone",
        "trigger_config": {"threshold": 1000},
        "xp_reward": 0,
    },
    {
        "name": "Code Breaker",
        "description": "Redeem your first verification code",
        "trigger_type": "codes_redeemed",
        "trigger_config": {"count": 1},
        "xp_reward": 25,
    },
    {
        "name": "On a Roll",
        "description": "Complete quests on 3 consecutive days",
        "trigger_type": "completion_streak",
        "trigger_config": {"days": 3},
        "xp_reward": 50,
    },
]


# ---------------------------------------------------------------------------
# Seeders
# ---------------------------------------------------------------------------
def seed_default_settings(
    engine: Engine, ranks: tuple[tuple[str, int], ...] | None = None,
) -> int:
    """Insert default settings that don't yet exist.

    *ranks* replaces the built-in rank table for the initial insert only.
    Returns the number of rows inserted.
    """
    defaults = dict(DEFAULT_SETTINGS)
    if ranks:
        _, category, desc = defaults[SETTING_RANK_THRESHOLDS]
        defaults[SETTING_RANK_THRESHOLDS] = (_rank_rows(ranks), category, desc)

    inserted = 0
    with get_session(engine) as session:
        for key, (value, category, desc) in defaults.items():
            if session.get(Setting, key) is None:
                session.add(Setting(
                    key=key,
                    value_json=json.dumps(value),
                    category=category,
                    description=desc,
                ))
                inserted += 1

    if inserted:
        logger.info("Seeded %d default settings.", inserted)
    return inserted


def seed_default_achievements(engine: Engine) -> int:
    """Insert the starter achievement templates whose names are missing."""
    inserted = 0
    with get_session(engine) as session:
        existing = set(session.scalars(select(AchievementTemplate.name)).all())
        for spec in DEFAULT_ACHIEVEMENTS:
            if spec["name"] in existing:
                continue
            session.add(AchievementTemplate(**spec))
            inserted += 1

    if inserted:
        logger.info("Seeded %d default achievement templates.", inserted)
    return inserted
