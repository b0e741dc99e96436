"""
questline.constants — Shared Constants
=======================================

Single source of truth for XP source kinds, setting keys and the default
rank table.  Import from here instead of duplicating string literals in
services and routes.
"""

from __future__ import annotations

import enum


# ---------------------------------------------------------------------------
# XP source kinds (xp_transactions.source)
# ---------------------------------------------------------------------------
class XpSource(enum.StrEnum):
    """Where an XP award came from.

    The first three are *settled* sources: each award is tied to a gate row
    (completion, redemption, unlocked achievement) whose ``paid_at`` column
    is flipped in the same transaction as the XP increment.
    """
    QUEST_COMPLETION = "quest_completion"
    CODE_REDEMPTION = "code_redemption"
    ACHIEVEMENT_BONUS = "achievement_bonus"
    MANUAL_AWARD = "manual_award"


# ---------------------------------------------------------------------------
# Completion gate
# ---------------------------------------------------------------------------
COMPLETION_THRESHOLD = 100
"""Progress (percent) a CompletionRecord must reach before it may complete."""

MAX_PROGRESS = 100


# ---------------------------------------------------------------------------
# Setting keys (settings table)
# ---------------------------------------------------------------------------
SETTING_RANK_THRESHOLDS = "ranks.thresholds"
SETTING_RANK_VERSION = "ranks.version"


# ---------------------------------------------------------------------------
# Default rank table — (name, minimum XP), ascending
# ---------------------------------------------------------------------------
DEFAULT_RANKS: tuple[tuple[str, int], ...] = (
    ("Novice", 0),
    ("Explorer", 1_000),
    ("Achiever", 5_000),
    ("Champion", 15_000),
    ("Legend", 50_000),
)

DEFAULT_RANK_VERSION = 1
