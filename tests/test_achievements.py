"""
tests/test_achievements.py — Achievement Predicate Tests
=========================================================
Pure tests for the trigger handler registry, check_achievements() and the
completion streak helper.  No database.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from questline.database.models import TriggerType
from questline.engine.achievements import (
    TRIGGER_HANDLERS,
    AchievementContext,
    check_achievements,
    current_streak,
)


@dataclass
class FakeTemplate:
    id: int
    name: str
    trigger_type: str
    trigger_config: dict | None


class TestHandlers:
    def test_quests_completed(self):
        handler = TRIGGER_HANDLERS[TriggerType.QUESTS_COMPLETED]
        assert handler({"count": 3}, AchievementContext(quests_completed=3))
        assert not handler({"count": 3}, AchievementContext(quests_completed=2))
        assert not handler({}, AchievementContext(quests_completed=99))

    def test_xp_milestone(self):
        handler = TRIGGER_HANDLERS[TriggerType.XP_MILESTONE]
        assert handler({"threshold": 1000}, AchievementContext(xp=1000))
        assert not handler({"threshold": 1000}, AchievementContext(xp=999))

    def test_completion_streak(self):
        handler = TRIGGER_HANDLERS[TriggerType.COMPLETION_STREAK]
        assert handler({"days": 3}, AchievementContext(streak_days=4))
        assert not handler({"days": 3}, AchievementContext(streak_days=2))
        assert not handler({"days": 0}, AchievementContext(streak_days=10))

    def test_codes_redeemed(self):
        handler = TRIGGER_HANDLERS[TriggerType.CODES_REDEEMED]
        assert handler({"count": 1}, AchievementContext(codes_redeemed=1))
        assert not handler({"count": 1}, AchievementContext(codes_redeemed=0))

    def test_rank_reached_by_ordinal(self):
        handler = TRIGGER_HANDLERS[TriggerType.RANK_REACHED]
        assert handler({"ordinal": 1}, AchievementContext(rank_ordinal=2))
        assert not handler({"ordinal": 3}, AchievementContext(rank_ordinal=2))

    def test_rank_reached_by_name(self):
        handler = TRIGGER_HANDLERS[TriggerType.RANK_REACHED]
        assert handler({"rank": "Explorer"}, AchievementContext(rank_name="Explorer"))
        assert not handler({"rank": "Explorer"}, AchievementContext(rank_name="Novice"))

    def test_manual_never_registered(self):
        assert TriggerType.MANUAL not in TRIGGER_HANDLERS


class TestCheckAchievements:
    TEMPLATES = [
        FakeTemplate(1, "First Steps", "quests_completed", {"count": 1}),
        FakeTemplate(2, "Thousand Club", "xp_milestone", {"threshold": 1000}),
        FakeTemplate(3, "Hand Picked", "manual", {}),
        FakeTemplate(4, "Mystery", "not_a_trigger", {"count": 1}),
    ]

    def test_returns_newly_satisfied(self):
        ctx = AchievementContext(xp=1200, quests_completed=1)
        assert check_achievements(self.TEMPLATES, ctx, set()) == [1, 2]

    def test_skips_already_earned(self):
        ctx = AchievementContext(xp=1200, quests_completed=1)
        assert check_achievements(self.TEMPLATES, ctx, {1}) == [2]

    def test_manual_and_unknown_never_fire(self):
        ctx = AchievementContext(xp=10**9, quests_completed=10**6)
        assert 3 not in check_achievements(self.TEMPLATES, ctx, set())
        assert 4 not in check_achievements(self.TEMPLATES, ctx, set())

    def test_null_config_treated_as_empty(self):
        templates = [FakeTemplate(9, "Broken", "quests_completed", None)]
        assert check_achievements(templates, AchievementContext(quests_completed=5), set()) == []


class TestCurrentStreak:
    def test_empty(self):
        assert current_streak([]) == 0

    def test_single_day(self):
        assert current_streak([date(2026, 3, 1)]) == 1

    def test_consecutive_days(self):
        days = [date(2026, 3, 1) + timedelta(days=i) for i in range(5)]
        assert current_streak(days) == 5

    def test_gap_resets_streak(self):
        days = [date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 4), date(2026, 3, 5)]
        assert current_streak(days) == 2

    def test_same_day_counts_once(self):
        stamps = [
            datetime(2026, 3, 1, 9, 0, tzinfo=UTC),
            datetime(2026, 3, 1, 23, 0, tzinfo=UTC),
            datetime(2026, 3, 2, 1, 0, tzinfo=UTC),
        ]
        assert current_streak(stamps) == 2

    def test_aware_timestamps_use_utc_day(self):
        plus_ten = timezone(timedelta(hours=10))
        # 2026-03-02 05:00 +10:00 is 2026-03-01 19:00 UTC
        stamps = [datetime(2026, 3, 2, 5, 0, tzinfo=plus_ten), datetime(2026, 3, 2, 12, 0)]
        assert current_streak(stamps) == 2

    @pytest.mark.parametrize("order", ["asc", "desc"])
    def test_order_independent(self, order):
        days = [date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 3)]
        if order == "desc":
            days.reverse()
        assert current_streak(days) == 3
