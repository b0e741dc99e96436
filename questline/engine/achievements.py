"""
questline.engine.achievements — Achievement Predicate Registry
===============================================================

Each :class:`~questline.database.models.TriggerType` maps to a pure handler
``(trigger_config, ctx) -> bool``.  Predicates see only aggregate stats
recomputed from the ledger on every event, never a running counter, so
re-evaluating after a retry cannot double count.

This module is pure calculation, with no database I/O.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Protocol

from questline.database.models import TriggerType

logger = logging.getLogger(__name__)


class TemplateLike(Protocol):
    id: int
    name: str
    trigger_type: str
    trigger_config: dict | None


# ---------------------------------------------------------------------------
# Achievement Context — passed to every trigger handler
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AchievementContext:
    """Aggregate account state after the current award.

    Parameters
    ----------
    xp : Total XP.
    rank_ordinal : Ordinal of the current rank (0 = lowest tier).
    rank_name : Name of the current rank.
    quests_completed : Number of completed quests (progress path).
    codes_redeemed : Number of verification codes redeemed.
    streak_days : Consecutive UTC days with a completion, ending at the
        most recent one.
    """

    xp: int = 0
    rank_ordinal: int = 0
    rank_name: str = ""
    quests_completed: int = 0
    codes_redeemed: int = 0
    streak_days: int = 0


# ---------------------------------------------------------------------------
# Trigger handlers — pure functions (config, ctx) → bool
# ---------------------------------------------------------------------------
def _check_quests_completed(config: dict, ctx: AchievementContext) -> bool:
    """Config: {"count": 10}"""
    count = config.get("count")
    if count is None:
        return False
    return ctx.quests_completed >= count


def _check_xp_milestone(config: dict, ctx: AchievementContext) -> bool:
    """Config: {"threshold": 5000}"""
    threshold = config.get("threshold", config.get("value"))
    if threshold is None:
        return False
    return ctx.xp >= threshold


def _check_completion_streak(config: dict, ctx: AchievementContext) -> bool:
    """Config: {"days": 7}"""
    days = config.get("days")
    if days is None or days <= 0:
        return False
    return ctx.streak_days >= days


def _check_codes_redeemed(config: dict, ctx: AchievementContext) -> bool:
    """Config: {"count": 1}"""
    count = config.get("count")
    if count is None:
        return False
    return ctx.codes_redeemed >= count


def _check_rank_reached(config: dict, ctx: AchievementContext) -> bool:
    """Fires once the account holds a given tier or any tier above it.

    Config: {"ordinal": 2} or {"rank": "Achiever"}.  A rank name is only
    matched exactly; ordinal comparison needs the ordinal form.
    """
    ordinal = config.get("ordinal")
    if ordinal is not None:
        return ctx.rank_ordinal >= ordinal
    name = config.get("rank")
    if not name:
        return False
    return ctx.rank_name == name


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------
TRIGGER_HANDLERS: dict[str, Callable[[dict, AchievementContext], bool]] = {
    TriggerType.QUESTS_COMPLETED: _check_quests_completed,
    TriggerType.XP_MILESTONE: _check_xp_milestone,
    TriggerType.COMPLETION_STREAK: _check_completion_streak,
    TriggerType.CODES_REDEEMED: _check_codes_redeemed,
    TriggerType.RANK_REACHED: _check_rank_reached,
    # TriggerType.MANUAL is never auto-triggered
}


# ---------------------------------------------------------------------------
# Main check function
# ---------------------------------------------------------------------------
def check_achievements(
    templates: Iterable[TemplateLike],
    ctx: AchievementContext,
    already_earned: set[int],
) -> list[int]:
    """Return the ids of templates newly satisfied by *ctx*.

    Templates in *already_earned* and those with no registered handler
    (``manual`` or unknown trigger types) are skipped.
    """
    newly_earned: list[int] = []

    for template in templates:
        if template.id in already_earned:
            continue

        handler = TRIGGER_HANDLERS.get(template.trigger_type)
        if handler is None:
            continue

        config = template.trigger_config or {}
        if handler(config, ctx):
            newly_earned.append(template.id)
            logger.debug(
                "Achievement predicate satisfied: %s (id=%d)",
                template.name, template.id,
            )

    return newly_earned


# ---------------------------------------------------------------------------
# Aggregate helpers
# ---------------------------------------------------------------------------
def _utc_day(ts: datetime | date) -> date:
    if isinstance(ts, datetime):
        # Naive datetimes are assumed to already be UTC
        if ts.tzinfo is not None:
            ts = ts.astimezone(UTC)
        return ts.date()
    return ts


def current_streak(timestamps: Sequence[datetime | date]) -> int:
    """Consecutive calendar days with activity, ending at the latest one.

    Datetimes are reduced to their (UTC) date; duplicates on the same day
    count once.  An empty sequence has a streak of 0.
    """
    days = sorted({_utc_day(ts) for ts in timestamps}, reverse=True)
    if not days:
        return 0

    streak = 1
    for newer, older in zip(days, days[1:]):
        if newer - older != timedelta(days=1):
            break
        streak += 1
    return streak
