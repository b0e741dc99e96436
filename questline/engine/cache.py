"""
questline.engine.cache — In-Memory Policy Cache
================================================

Holds the active :class:`~questline.engine.ranks.RankTable`, the active
achievement templates and the parsed ``settings`` rows, so the award path
never re-reads policy tables per request.  Operators change policy in the
database and call :meth:`ConfigCache.handle_notify` (or the reload admin
endpoint) to refresh.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from questline.constants import (
    DEFAULT_RANK_VERSION,
    SETTING_RANK_THRESHOLDS,
    SETTING_RANK_VERSION,
)
from questline.database.models import AchievementTemplate, Setting
from questline.engine.ranks import DEFAULT_RANK_TABLE, RankTable

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Tables whose changes invalidate part of the cache
RELOADABLE_TABLES: frozenset[str] = frozenset({"achievement_templates", "settings"})


class ConfigCache:
    """Thread-safe in-memory cache for rank policy, achievements and settings.

    Usage:
        cache = ConfigCache(engine)
        cache.load_all()

        table = cache.rank_table
        templates = cache.get_active_achievements()
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock()

        self._rank_table: RankTable = DEFAULT_RANK_TABLE
        self._achievements: list[AchievementTemplate] = []
        # key → parsed JSON value
        self._settings: dict[str, Any] = {}

    # -------------------------------------------------------------------
    # Cache loading
    # -------------------------------------------------------------------
    def load_all(self) -> None:
        """Load every cached table from the DB.  Call on startup."""
        self._load_settings()
        self._load_rank_table()
        self._load_achievements()
        logger.info(
            "ConfigCache loaded: rank table v%d (%d tiers), "
            "%d achievement templates, %d settings",
            self._rank_table.version,
            len(self._rank_table),
            len(self._achievements),
            len(self._settings),
        )

    def _load_achievements(self) -> None:
        with Session(self._engine) as session:
            templates = list(session.scalars(
                select(AchievementTemplate)
                .where(AchievementTemplate.active.is_(True))
                .order_by(AchievementTemplate.id)
            ).all())
            for t in templates:
                session.expunge(t)
        with self._lock:
            self._achievements = templates

    def _load_settings(self) -> None:
        with Session(self._engine) as session:
            rows = session.scalars(select(Setting)).all()
            parsed: dict[str, Any] = {}
            for row in rows:
                try:
                    parsed[row.key] = json.loads(row.value_json)
                except (json.JSONDecodeError, TypeError):
                    parsed[row.key] = row.value_json
        with self._lock:
            self._settings = parsed

    def _load_rank_table(self) -> None:
        """Rebuild the rank table from the parsed settings.

        A malformed table is rejected and the previous one stays active.
        """
        rows = self.get_setting(SETTING_RANK_THRESHOLDS)
        if rows is None:
            return
        version = self.get_int(SETTING_RANK_VERSION, DEFAULT_RANK_VERSION)
        try:
            table = RankTable.from_setting(rows, version=version)
        except (KeyError, TypeError, ValueError):
            logger.exception(
                "Invalid %s setting; keeping rank table v%d",
                SETTING_RANK_THRESHOLDS, self.rank_table.version,
            )
            return
        with self._lock:
            self._rank_table = table

    # -------------------------------------------------------------------
    # Cache reads (thread-safe)
    # -------------------------------------------------------------------
    @property
    def rank_table(self) -> RankTable:
        with self._lock:
            return self._rank_table

    def get_active_achievements(self) -> list[AchievementTemplate]:
        with self._lock:
            return list(self._achievements)

    def get_achievement(self, achievement_id: int) -> AchievementTemplate | None:
        with self._lock:
            for t in self._achievements:
                if t.id == achievement_id:
                    return t
        return None

    # -------------------------------------------------------------------
    # Typed setting accessors (thread-safe)
    # -------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return the parsed JSON value for *key*, or *default*."""
        with self._lock:
            return self._settings.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return int(val)
        except (TypeError, ValueError):
            return default

    # -------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------
    def handle_notify(self, table_name: str) -> None:
        """Reload the part of the cache backed by *table_name*."""
        logger.info("Config change notification: %s", table_name)
        if table_name == "settings":
            self._load_settings()
            self._load_rank_table()
        elif table_name == "achievement_templates":
            self._load_achievements()
        else:
            logger.warning("Ignoring notification for unknown table %r", table_name)
