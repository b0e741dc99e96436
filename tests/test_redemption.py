"""
tests/test_redemption.py — Verification-Code Redemption Tests
==============================================================
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from conftest import make_quest, make_template
from questline.database.models import Account, RedemptionRecord
from questline.engine.cache import ConfigCache
from questline.exceptions import (
    CodeNotConfigured,
    CodeNotRequired,
    DuplicateRedemption,
    InvalidCode,
    QuestInactive,
    ValidationFailed,
)
from questline.services import completion_service, ledger_store
from questline.services.completion_service import codes_match
from questline.services.degraded_log import DegradedLog


def _redeem(engine, cache, dlog, code, account_id="u-1", quest_id="q-c"):
    return completion_service.redeem_code(engine, cache, account_id, quest_id, code, dlog=dlog)


def _redemptions(engine) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(RedemptionRecord))


class TestCodesMatch:
    @pytest.mark.parametrize("supplied", ["ABC123", "abc123", "  aBc123 ", "abc123\n"])
    def test_case_and_whitespace_insensitive(self, supplied):
        assert codes_match("ABC123", supplied)

    def test_mismatch(self):
        assert not codes_match("ABC123", "ABC124")


class TestRedeemCode:
    def test_redeems_and_awards(self, db_engine, cache, dlog):
        make_quest(db_engine, "q-c", 100, title="Find the Beacon", requires_code=True,
                   codes=["ABC123"])

        result = _redeem(db_engine, cache, dlog, "abc123")

        body = result.to_dict()
        assert body["success"] is True
        assert body["message"] == 'Quest "Find the Beacon" completed successfully!'
        assert body["xpAwarded"] == 100
        assert body["questTitle"] == "Find the Beacon"
        assert body["newXpTotal"] == 100
        assert not body["degraded"]

        record = ledger_store.get_account_stats(db_engine, "u-1")
        assert record.codes_redeemed == 1

    def test_duplicate_rejected_without_second_award(self, db_engine, cache, dlog):
        make_quest(db_engine, "q-c", 100, requires_code=True, codes=["ABC123"])
        _redeem(db_engine, cache, dlog, "ABC123")

        with pytest.raises(DuplicateRedemption) as excinfo:
            _redeem(db_engine, cache, dlog, "ABC123")

        assert excinfo.value.status_code == 400
        assert excinfo.value.message == "You have already completed this quest"
        assert ledger_store.get_account(db_engine, "u-1").xp == 100
        assert _redemptions(db_engine) == 1

    def test_invalid_code_changes_nothing(self, db_engine, cache, dlog):
        make_quest(db_engine, "q-c", 100, requires_code=True, codes=["ABC123"])

        with pytest.raises(InvalidCode):
            _redeem(db_engine, cache, dlog, "WRONG")

        assert _redemptions(db_engine) == 0
        assert ledger_store.get_account(db_engine, "u-1") is None

    def test_blank_code_is_validation_error(self, db_engine, cache, dlog):
        make_quest(db_engine, "q-c", 100, requires_code=True, codes=["ABC123"])
        with pytest.raises(ValidationFailed, match="userInputCode"):
            _redeem(db_engine, cache, dlog, "   ")

    def test_quest_without_code_requirement(self, db_engine, cache, dlog):
        make_quest(db_engine, "q-c", 100)
        with pytest.raises(CodeNotRequired):
            _redeem(db_engine, cache, dlog, "ABC123")

    def test_no_active_code(self, db_engine, cache, dlog):
        make_quest(db_engine, "q-c", 100, requires_code=True)
        with pytest.raises(CodeNotConfigured):
            _redeem(db_engine, cache, dlog, "ABC123")

    def test_inactive_quest(self, db_engine, cache, dlog):
        make_quest(db_engine, "q-c", 100, active=False, requires_code=True, codes=["ABC123"])
        with pytest.raises(QuestInactive):
            _redeem(db_engine, cache, dlog, "ABC123")

    def test_unlocks_code_achievement(self, db_engine, dlog):
        make_template(db_engine, "Code Breaker", "codes_redeemed", {"count": 1}, xp_reward=25)
        cache = ConfigCache(db_engine)
        cache.load_all()
        make_quest(db_engine, "q-c", 100, requires_code=True, codes=["ABC123"])

        result = _redeem(db_engine, cache, dlog, "ABC123")

        assert [a["name"] for a in result.unlocked_achievements] == ["Code Breaker"]
        assert result.new_xp_total == 125


class TestAwardFailure:
    def test_award_failure_is_degraded_success(self, db_engine, cache, dlog):
        make_quest(db_engine, "q-c", 100, requires_code=True, codes=["ABC123"])

        with patch.object(
            ledger_store, "award_xp",
            side_effect=OperationalError("UPDATE", {}, Exception("timeout")),
        ):
            result = _redeem(db_engine, cache, dlog, "ABC123")

        assert result.degraded
        assert result.warnings == ["xp_award_pending"]
        assert result.new_xp_total is None
        body = result.to_dict()
        assert body["success"] is True
        assert body["newXpTotal"] is None
        assert body["newRank"] is None
        assert ledger_store.get_account(db_engine, "u-1").xp == 0
        assert [e["step"] for e in dlog.get_entries()] == ["award"]

        # Redeeming again is still refused; the payment is left to reconciliation
        with pytest.raises(DuplicateRedemption):
            _redeem(db_engine, cache, dlog, "ABC123")


class TestConcurrentRedemption:
    def test_only_one_redemption_wins(self, file_engine):
        cache = ConfigCache(file_engine)
        cache.load_all()
        dlog = DegradedLog()
        make_quest(file_engine, "q-c", 100, requires_code=True, codes=["ABC123"])
        ledger_store.ensure_account(file_engine, "u-1")

        def attempt(_):
            try:
                completion_service.redeem_code(
                    file_engine, cache, "u-1", "q-c", "abc123", dlog=dlog,
                )
                return "ok"
            except DuplicateRedemption:
                return "duplicate"

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(attempt, range(6)))

        assert outcomes.count("ok") == 1
        assert outcomes.count("duplicate") == 5
        assert _redemptions(file_engine) == 1
        with Session(file_engine) as session:
            assert session.get(Account, "u-1").xp == 100
