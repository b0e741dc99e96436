"""
questline.services.completion_service — Completion & Redemption Coordinator
============================================================================

Orchestrates one completion attempt end to end:

    validate quest → atomic gate → award XP → achievements → leaderboard → audit

The gate (``mark_completed`` or ``insert_redemption``) is the single point
of mutual exclusion: exactly one of N concurrent requests for the same
(account, quest) or (account, code) passes it, and only that request ever
reaches the award step.  Everything after the award is *propagation*: a
failure there is logged, recorded in the degraded log and reported with
``degraded=true``, never turned into an error for the caller.

The two entry points share the propagation tail but differ on what
happens when the award itself fails after the gate:

* Progress path (:func:`complete_quest`) — ``RewardPending`` (500,
  retryable).  The completion stays gated-but-unpaid and the
  reconciliation sweep settles it.
* Code path (:func:`redeem_code`) — success with ``degraded=true``; the
  redemption is likewise settled by reconciliation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError

from questline.constants import COMPLETION_THRESHOLD, XpSource
from questline.engine.achievements import AchievementContext, check_achievements
from questline.engine.cache import ConfigCache
from questline.exceptions import (
    CodeNotConfigured,
    CodeNotRequired,
    CodeRequired,
    InvalidCode,
    QuestInactive,
    QuestlineError,
    QuestNotFound,
    RewardPending,
    ValidationFailed,
)
from questline.services import ledger_store
from questline.services.audit_service import AuditEntry, append_transactions
from questline.services.degraded_log import (
    STEP_ACHIEVEMENTS,
    STEP_AUDIT,
    STEP_AWARD,
    STEP_LEADERBOARD,
    DegradedLog,
    get_degraded_log,
)
from questline.services.leaderboard_service import project_account
from questline.services.ledger_store import AwardOutcome

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
def achievement_ids(unlocked: list[dict]) -> list[str]:
    """``unlockedAchievements`` carries template ids as strings."""
    return [str(a["id"]) for a in unlocked]


@dataclass
class Propagation:
    """What happened after the primary award."""

    final: AwardOutcome | None = None
    unlocked: list[dict] = field(default_factory=list)
    bonus_xp: int = 0
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass
class CompletionResult:
    user_id: str
    quest_id: str
    xp_awarded: int
    new_xp_total: int
    leveled_up: bool
    new_rank: str
    completed_at: datetime
    unlocked_achievements: list[dict] = field(default_factory=list)
    bonus_xp: int = 0
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "questId": self.quest_id,
            "xpAwarded": self.xp_awarded,
            "bonusXp": self.bonus_xp,
            "newXpTotal": self.new_xp_total,
            "leveledUp": self.leveled_up,
            "newRank": self.new_rank,
            "unlockedAchievements": achievement_ids(self.unlocked_achievements),
            "achievements": self.unlocked_achievements,
            "completedAt": self.completed_at.isoformat(),
            "degraded": self.degraded,
            "warnings": self.warnings,
        }


@dataclass
class RedemptionResult:
    """Outcome of one code redemption.

    When the XP award fails after the redemption row committed, the result
    is returned with ``degraded=True`` and warning ``xp_award_pending``;
    ``new_xp_total`` and ``new_rank`` are then ``None`` (``null`` in the
    response) because no award has been applied yet.  Reconciliation pays
    it later.
    """

    quest_id: str
    quest_title: str
    xp_awarded: int
    new_xp_total: int | None = None
    leveled_up: bool = False
    new_rank: str | None = None
    unlocked_achievements: list[dict] = field(default_factory=list)
    bonus_xp: int = 0
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return f'Quest "{self.quest_title}" completed successfully!'

    def to_dict(self) -> dict:
        return {
            "success": True,
            "message": self.message,
            "xpAwarded": self.xp_awarded,
            "questTitle": self.quest_title,
            "questId": self.quest_id,
            "bonusXp": self.bonus_xp,
            "newXpTotal": self.new_xp_total,
            "leveledUp": self.leveled_up,
            "newRank": self.new_rank,
            "unlockedAchievements": achievement_ids(self.unlocked_achievements),
            "achievements": self.unlocked_achievements,
            "degraded": self.degraded,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Propagation after the award
# ---------------------------------------------------------------------------
def _unlock_achievements(
    engine: Engine,
    cache: ConfigCache,
    account_id: str,
    prop: Propagation,
    audit: list[AuditEntry],
) -> None:
    """Unlock every newly satisfied achievement and pay its bonus.

    Bonus XP can satisfy further predicates (an ``xp_milestone`` reached
    through another achievement's bonus), so evaluation repeats until no
    new template fires.  Each template can unlock at most once, which
    bounds the loop by the template count.
    """
    rank_table = cache.rank_table
    templates = cache.get_active_achievements()
    by_id = {t.id: t for t in templates}

    for _ in range(len(templates)):
        stats = ledger_store.get_account_stats(engine, account_id)
        rank = rank_table.rank_for(stats.xp)
        ctx = AchievementContext(
            xp=stats.xp,
            rank_ordinal=rank.ordinal,
            rank_name=rank.name,
            quests_completed=stats.quests_completed,
            codes_redeemed=stats.codes_redeemed,
            streak_days=stats.streak_days,
        )
        new_ids = check_achievements(templates, ctx, set(stats.earned))
        if not new_ids:
            return

        for achievement_id in new_ids:
            # Only the call that inserts the row may pay the bonus
            if not ledger_store.insert_account_achievement(engine, account_id, achievement_id):
                continue
            template = by_id[achievement_id]
            outcome = ledger_store.award_xp(
                engine, rank_table, account_id, template.xp_reward,
                XpSource.ACHIEVEMENT_BONUS, str(achievement_id),
            )
            prop.final = outcome
            prop.bonus_xp += template.xp_reward
            prop.unlocked.append({
                "id": template.id,
                "name": template.name,
                "description": template.description,
                "xpReward": template.xp_reward,
            })
            if template.xp_reward:
                audit.append(AuditEntry(
                    account_id, template.xp_reward, XpSource.ACHIEVEMENT_BONUS,
                    str(achievement_id), {"achievement": template.name},
                ))
            logger.info("Achievement unlocked: %s → %s", template.name, account_id)


def propagate(
    engine: Engine,
    cache: ConfigCache,
    account_id: str,
    primary: AuditEntry,
    dlog: DegradedLog,
) -> Propagation:
    """Run the post-award steps.  Never raises for storage failures."""
    prop = Propagation()
    audit = [primary]

    def degrade(step: str, exc: Exception, flag: bool = True) -> None:
        logger.warning(
            "Degraded %s step for %s (%s:%s): %s",
            step, account_id, primary.source, primary.source_id, exc,
        )
        dlog.record(step, account_id, primary.source, primary.source_id, exc)
        prop.warnings.append(f"{step}_failed")
        if flag:
            prop.degraded = True

    try:
        _unlock_achievements(engine, cache, account_id, prop, audit)
    except (SQLAlchemyError, QuestlineError) as exc:
        degrade(STEP_ACHIEVEMENTS, exc)

    try:
        project_account(engine, account_id)
    except SQLAlchemyError as exc:
        degrade(STEP_LEADERBOARD, exc)

    # Audit failures are logged only; the response is not marked degraded
    try:
        append_transactions(engine, audit)
    except SQLAlchemyError as exc:
        degrade(STEP_AUDIT, exc, flag=False)

    return prop


def _require_active_quest(engine: Engine, quest_id: str):
    quest = ledger_store.get_quest(engine, quest_id)
    if quest is None:
        raise QuestNotFound(quest_id=quest_id)
    if not quest.active:
        raise QuestInactive(quest_id=quest_id)
    return quest


# ---------------------------------------------------------------------------
# Progress path
# ---------------------------------------------------------------------------
def record_quest_progress(
    engine: Engine,
    cache: ConfigCache,
    account_id: str,
    quest_id: str,
    progress: int,
    display_name: str | None = None,
) -> dict:
    """Start *quest_id* if needed and raise its progress monotonically."""
    _require_active_quest(engine, quest_id)
    ledger_store.ensure_account(engine, account_id, display_name, cache.rank_table)
    stored = ledger_store.record_progress(engine, account_id, quest_id, progress)
    return {"questId": quest_id, "progress": stored}


def complete_quest(
    engine: Engine,
    cache: ConfigCache,
    account_id: str,
    quest_id: str,
    threshold: int = COMPLETION_THRESHOLD,
    display_name: str | None = None,
    dlog: DegradedLog | None = None,
) -> CompletionResult:
    """Complete *quest_id* for *account_id* and credit its reward once.

    Raises
    ------
    QuestNotFound, QuestInactive, CodeRequired
        Quest validation failed; no state changed.
    AlreadyCompleted, NotReady
        The completion gate refused the transition.
    RewardPending
        The gate committed but the XP award failed; safe to retry.
    """
    dlog = dlog or get_degraded_log()

    quest = _require_active_quest(engine, quest_id)
    if quest.requires_code:
        raise CodeRequired(quest_id=quest_id)

    ledger_store.ensure_account(engine, account_id, display_name, cache.rank_table)
    completed_at = ledger_store.mark_completed(engine, account_id, quest_id, threshold)

    try:
        outcome = ledger_store.award_xp(
            engine, cache.rank_table, account_id, quest.reward_points,
            XpSource.QUEST_COMPLETION, quest_id,
        )
    except (SQLAlchemyError, QuestlineError) as exc:
        logger.exception("XP award failed after completing %s for %s", quest_id, account_id)
        dlog.record(STEP_AWARD, account_id, XpSource.QUEST_COMPLETION, quest_id, exc)
        raise RewardPending(account_id=account_id, quest_id=quest_id) from exc

    prop = propagate(
        engine, cache, account_id,
        AuditEntry(account_id, quest.reward_points, XpSource.QUEST_COMPLETION, quest_id),
        dlog,
    )
    final = prop.final or outcome

    logger.info(
        "Quest %s completed by %s: +%d XP (+%d bonus) → %d",
        quest_id, account_id, quest.reward_points, prop.bonus_xp, final.new_total,
    )
    return CompletionResult(
        user_id=account_id,
        quest_id=quest_id,
        xp_awarded=quest.reward_points,
        new_xp_total=final.new_total,
        leveled_up=cache.rank_table.leveled_up(outcome.old_rank, final.new_rank),
        new_rank=final.new_rank.name,
        completed_at=completed_at,
        unlocked_achievements=prop.unlocked,
        bonus_xp=prop.bonus_xp,
        degraded=prop.degraded,
        warnings=prop.warnings,
    )


# ---------------------------------------------------------------------------
# Verification-code path
# ---------------------------------------------------------------------------
def codes_match(expected: str, supplied: str) -> bool:
    """Case-insensitive comparison ignoring surrounding whitespace."""
    return expected.strip().upper() == supplied.strip().upper()


def redeem_code(
    engine: Engine,
    cache: ConfigCache,
    account_id: str,
    quest_id: str,
    user_input_code: str,
    display_name: str | None = None,
    dlog: DegradedLog | None = None,
) -> RedemptionResult:
    """Redeem the active verification code of *quest_id* for *account_id*.

    Raises
    ------
    ValidationFailed
        *user_input_code* is blank.
    QuestNotFound, QuestInactive, CodeNotRequired
        Quest validation failed.
    CodeNotConfigured
        The quest has no active code.
    InvalidCode
        The supplied code doesn't match; no state changed.
    DuplicateRedemption
        This account already redeemed the code.
    """
    dlog = dlog or get_degraded_log()

    if not user_input_code or not user_input_code.strip():
        raise ValidationFailed("Missing required field: userInputCode")

    quest = _require_active_quest(engine, quest_id)
    if not quest.requires_code:
        raise CodeNotRequired(quest_id=quest_id)

    code = ledger_store.get_active_code(engine, quest_id)
    if code is None:
        raise CodeNotConfigured(quest_id=quest_id)
    if not codes_match(code.code, user_input_code):
        logger.info("Invalid verification code for quest %s from %s", quest_id, account_id)
        raise InvalidCode(quest_id=quest_id)

    ledger_store.ensure_account(engine, account_id, display_name, cache.rank_table)
    ledger_store.insert_redemption(engine, account_id, code.id, quest_id)

    result = RedemptionResult(
        quest_id=quest_id, quest_title=quest.title, xp_awarded=quest.reward_points,
    )

    try:
        outcome = ledger_store.award_xp(
            engine, cache.rank_table, account_id, quest.reward_points,
            XpSource.CODE_REDEMPTION, str(code.id),
        )
    except (SQLAlchemyError, QuestlineError) as exc:
        logger.exception(
            "XP award failed after redeeming code %d for %s; left for reconciliation",
            code.id, account_id,
        )
        dlog.record(STEP_AWARD, account_id, XpSource.CODE_REDEMPTION, code.id, exc)
        result.degraded = True
        result.warnings.append("xp_award_pending")
        return result

    prop = propagate(
        engine, cache, account_id,
        AuditEntry(
            account_id, quest.reward_points, XpSource.CODE_REDEMPTION, str(code.id),
            {"quest_id": quest_id},
        ),
        dlog,
    )
    final = prop.final or outcome

    result.new_xp_total = final.new_total
    result.leveled_up = cache.rank_table.leveled_up(outcome.old_rank, final.new_rank)
    result.new_rank = final.new_rank.name
    result.unlocked_achievements = prop.unlocked
    result.bonus_xp = prop.bonus_xp
    result.degraded = prop.degraded
    result.warnings = prop.warnings

    logger.info(
        "Code redeemed for quest %s by %s: +%d XP → %d",
        quest_id, account_id, quest.reward_points, final.new_total,
    )
    return result
