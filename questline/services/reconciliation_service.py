"""
questline.services.reconciliation_service — Unpaid Gate Sweep & Rank Drift
===========================================================================

Settles the one partial-failure state the coordinator can leave behind:
a gate row (completion, redemption, unlocked achievement) that committed
while its XP award did not, i.e. ``paid_at IS NULL``.

How it works:
    1. Select every gated-but-unpaid row together with the reward it owes.
    2. Pay each through :func:`~questline.services.ledger_store.award_xp`
       with the *original* source kind, so the ``paid_at`` flip still
       guards it.  A row another worker paid in the meantime is refused
       with ``AlreadyPaid`` and counted as skipped, never paid twice.
    3. Run the coordinator's propagation tail for the settled award:
       achievements the event earned, the leaderboard entry and the
       audit row.

Rank drift (``accounts.rank`` disagreeing with the active rank table, e.g.
after an operator edited the thresholds) is reported by
:func:`find_rank_drift` and corrected by :func:`reconcile_ranks`.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from questline.constants import XpSource
from questline.database.engine import get_session
from questline.database.models import (
    Account,
    AccountAchievement,
    AchievementTemplate,
    CompletionRecord,
    Quest,
    RedemptionRecord,
)
from questline.engine.cache import ConfigCache
from questline.engine.ranks import RankTable
from questline.exceptions import AlreadyPaid, QuestlineError
from questline.services import ledger_store
from questline.services.audit_service import AuditEntry
from questline.services.completion_service import achievement_ids, propagate
from questline.services.degraded_log import DegradedLog, get_degraded_log
from questline.services.leaderboard_service import project_account

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------
def find_unpaid(engine: Engine) -> list[dict]:
    """Every gate row whose award has not been paid, oldest first per kind."""
    unpaid: list[dict] = []

    with Session(engine) as session:
        completions = session.execute(
            select(
                CompletionRecord.account_id,
                CompletionRecord.quest_id,
                Quest.reward_points,
            )
            .join(Quest, Quest.id == CompletionRecord.quest_id)
            .where(
                CompletionRecord.completed.is_(True),
                CompletionRecord.paid_at.is_(None),
            )
            .order_by(CompletionRecord.completed_at)
        ).all()
        unpaid.extend(
            {
                "account_id": row.account_id,
                "source": XpSource.QUEST_COMPLETION.value,
                "source_id": row.quest_id,
                "amount": row.reward_points,
            }
            for row in completions
        )

        redemptions = session.execute(
            select(
                RedemptionRecord.account_id,
                RedemptionRecord.code_id,
                Quest.reward_points,
            )
            .join(Quest, Quest.id == RedemptionRecord.quest_id)
            .where(RedemptionRecord.paid_at.is_(None))
            .order_by(RedemptionRecord.redeemed_at)
        ).all()
        unpaid.extend(
            {
                "account_id": row.account_id,
                "source": XpSource.CODE_REDEMPTION.value,
                "source_id": str(row.code_id),
                "amount": row.reward_points,
            }
            for row in redemptions
        )

        achievements = session.execute(
            select(
                AccountAchievement.account_id,
                AccountAchievement.achievement_id,
                AchievementTemplate.xp_reward,
            )
            .join(
                AchievementTemplate,
                AchievementTemplate.id == AccountAchievement.achievement_id,
            )
            .where(AccountAchievement.paid_at.is_(None))
            .order_by(AccountAchievement.earned_at)
        ).all()
        unpaid.extend(
            {
                "account_id": row.account_id,
                "source": XpSource.ACHIEVEMENT_BONUS.value,
                "source_id": str(row.achievement_id),
                "amount": row.xp_reward,
            }
            for row in achievements
        )

    return unpaid


def find_rank_drift(engine: Engine, rank_table: RankTable) -> list[dict]:
    """Accounts whose stored rank differs from ``rank_table.rank_for(xp)``."""
    drift: list[dict] = []
    with Session(engine) as session:
        rows = session.execute(select(Account.id, Account.xp, Account.rank)).all()
    for row in rows:
        expected = rank_table.rank_for(row.xp).name
        if row.rank != expected:
            drift.append({
                "account_id": row.id,
                "xp": row.xp,
                "stored": row.rank,
                "expected": expected,
            })
    return drift


def reconciliation_report(engine: Engine, cache: ConfigCache) -> dict:
    """Read-only view of everything :func:`settle_unpaid` would touch."""
    rank_table = cache.rank_table
    unpaid = find_unpaid(engine)
    drift = find_rank_drift(engine, rank_table)
    return {
        "unpaid": unpaid,
        "unpaid_xp": sum(item["amount"] for item in unpaid),
        "rank_drift": drift,
        "rank_table_version": rank_table.version,
        "timestamp": datetime.now(UTC).isoformat(),
    }


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------
def settle_unpaid(engine: Engine, cache: ConfigCache, dlog: DegradedLog | None = None) -> dict:
    """Pay every gated-but-unpaid award exactly once.

    Each settled award then runs the same propagation tail as a live
    request: achievements, leaderboard projection and the audit row.

    Returns ``{"checked": N, "settled": M, "skipped": K, "failed": F, ...}``.
    """
    dlog = dlog or get_degraded_log()
    rank_table = cache.rank_table
    unpaid = find_unpaid(engine)
    settlements: list[dict] = []
    skipped = 0
    failed: list[dict] = []

    for item in unpaid:
        source = XpSource(item["source"])
        try:
            outcome = ledger_store.award_xp(
                engine, rank_table, item["account_id"], item["amount"],
                source, item["source_id"],
            )
        except AlreadyPaid:
            skipped += 1
            continue
        except (SQLAlchemyError, QuestlineError) as exc:
            logger.exception(
                "Reconciliation could not pay %s:%s for %s",
                source, item["source_id"], item["account_id"],
            )
            failed.append({**item, "error": str(exc)})
            continue

        # Achievements earned by this event were never evaluated: the award
        # failed before the propagation tail ran
        prop = propagate(
            engine, cache, item["account_id"],
            AuditEntry(
                item["account_id"], item["amount"], source, item["source_id"],
                {"reconciled": True},
            ),
            dlog,
        )
        final = prop.final or outcome
        settlements.append({
            **item,
            "new_total": final.new_total,
            "rank": final.new_rank.name,
            "unlockedAchievements": achievement_ids(prop.unlocked),
            "degraded": prop.degraded,
        })

    if settlements or failed:
        logger.warning(
            "Reconciliation: settled %d/%d unpaid awards (%d skipped, %d failed)",
            len(settlements), len(unpaid), skipped, len(failed),
        )
    else:
        logger.info("Reconciliation: no unpaid awards (%d checked)", len(unpaid))

    return {
        "checked": len(unpaid),
        "settled": len(settlements),
        "skipped": skipped,
        "failed": failed,
        "settlements": settlements,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def reconcile_ranks(engine: Engine, rank_table: RankTable) -> dict:
    """Rewrite ``accounts.rank`` wherever it disagrees with *rank_table*.

    The rank is recomputed in SQL from the current ``xp`` in one statement,
    so a concurrent award can't be overwritten with a stale rank.
    """
    drift = find_rank_drift(engine, rank_table)
    if drift:
        expected = rank_table.rank_case(Account.xp)
        with get_session(engine) as session:
            session.execute(
                update(Account).where(Account.rank != expected).values(rank=expected),
                execution_options={"synchronize_session": False},
            )
        for row in drift:
            try:
                project_account(engine, row["account_id"])
            except SQLAlchemyError:
                logger.warning(
                    "Rank repaired for %s but leaderboard projection failed",
                    row["account_id"], exc_info=True,
                )
        logger.warning(
            "Rank reconciliation (table v%d): corrected %d accounts: %s",
            rank_table.version, len(drift), drift,
        )
    else:
        logger.info("Rank reconciliation (table v%d): all ranks match", rank_table.version)

    return {
        "corrected": len(drift),
        "corrections": drift,
        "rank_table_version": rank_table.version,
        "timestamp": datetime.now(UTC).isoformat(),
    }
