"""
questline.services.ledger_store — Atomic Ledger Primitives
===========================================================

The only code allowed to change an account's XP or flip a gate row.
Every primitive here is a single short transaction whose correctness rests
on the database, not on Python-side locking:

* :func:`award_xp` — ``UPDATE accounts SET xp = xp + :amount`` with the rank
  recomputed in the same statement, preceded (for settled sources) by a
  conditional flip of the gate row's ``paid_at``.
* :func:`mark_completed` — ``UPDATE … WHERE completed = false AND
  progress >= :threshold``.  Whoever changes the row wins; every other
  concurrent caller sees ``rowcount == 0``.
* :func:`insert_redemption` — plain ``INSERT`` guarded by the
  ``(account_id, code_id)`` UNIQUE constraint.
* :func:`insert_account_achievement` — ``INSERT … ON CONFLICT DO NOTHING``;
  the returned flag says whether *this* call unlocked it.

Failures are classified **after** the conditional statement has lost,
never by a read before it.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import Engine, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from questline.constants import COMPLETION_THRESHOLD, MAX_PROGRESS, XpSource
from questline.database.engine import get_session
from questline.database.models import (
    Account,
    AccountAchievement,
    AchievementTemplate,
    CompletionRecord,
    Quest,
    RedemptionRecord,
    VerificationCode,
)
from questline.engine.achievements import current_streak
from questline.engine.ranks import Rank, RankTable
from questline.exceptions import (
    AccountNotFound,
    AlreadyCompleted,
    AlreadyPaid,
    DuplicateRedemption,
    InvalidAmount,
    NotReady,
    UngatedAward,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AwardOutcome:
    """Result of one :func:`award_xp` call."""

    new_total: int
    old_rank: Rank
    new_rank: Rank
    rank_changed: bool


@dataclass(frozen=True, slots=True)
class AccountStats:
    """Aggregate stats recomputed from the ledger for achievement checks."""

    xp: int
    rank: str
    quests_completed: int
    codes_redeemed: int
    streak_days: int
    earned: frozenset[int] = field(default_factory=frozenset)


# ORM UPDATEs here never need the identity map refreshed
_NO_SYNC = {"synchronize_session": False}


def _now() -> datetime:
    return datetime.now(UTC)


def _dialect_insert(engine: Engine):
    """Return the dialect-specific ``insert`` supporting ON CONFLICT."""
    if engine.dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif engine.dialect.name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(
            f"ON CONFLICT inserts are not supported on {engine.dialect.name!r}"
        )
    return insert


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------
def ensure_account(
    engine: Engine,
    account_id: str,
    display_name: str | None = None,
    rank_table: RankTable | None = None,
) -> bool:
    """Create the account row if it doesn't exist.  Returns True if created."""
    insert = _dialect_insert(engine)
    values: dict = {"id": account_id, "xp": 0, "display_name": display_name}
    if rank_table is not None:
        values["rank"] = rank_table.lowest.name
    stmt = insert(Account.__table__).values(**values).on_conflict_do_nothing(
        index_elements=["id"],
    )
    with get_session(engine) as session:
        created = session.execute(stmt).rowcount == 1
    if created:
        logger.info("Account %s created", account_id)
    return created


def get_account(engine: Engine, account_id: str) -> Account | None:
    with Session(engine) as session:
        account = session.get(Account, account_id)
        if account is not None:
            session.expunge(account)
        return account


# ---------------------------------------------------------------------------
# XP award — the only XP mutation in the system
# ---------------------------------------------------------------------------
def _flip_gate(session: Session, account_id: str, source: XpSource, source_id: str) -> None:
    """Set ``paid_at`` on the gate row backing this award, exactly once."""
    now = _now()
    if source == XpSource.QUEST_COMPLETION:
        model = CompletionRecord
        stmt = update(CompletionRecord).where(
            CompletionRecord.account_id == account_id,
            CompletionRecord.quest_id == source_id,
            CompletionRecord.completed.is_(True),
            CompletionRecord.paid_at.is_(None),
        )
        key = (CompletionRecord.account_id == account_id,
               CompletionRecord.quest_id == source_id,
               CompletionRecord.completed.is_(True))
    elif source == XpSource.CODE_REDEMPTION:
        model = RedemptionRecord
        stmt = update(RedemptionRecord).where(
            RedemptionRecord.account_id == account_id,
            RedemptionRecord.code_id == int(source_id),
            RedemptionRecord.paid_at.is_(None),
        )
        key = (RedemptionRecord.account_id == account_id,
               RedemptionRecord.code_id == int(source_id))
    elif source == XpSource.ACHIEVEMENT_BONUS:
        model = AccountAchievement
        stmt = update(AccountAchievement).where(
            AccountAchievement.account_id == account_id,
            AccountAchievement.achievement_id == int(source_id),
            AccountAchievement.paid_at.is_(None),
        )
        key = (AccountAchievement.account_id == account_id,
               AccountAchievement.achievement_id == int(source_id))
    else:
        return

    if session.execute(stmt.values(paid_at=now), execution_options=_NO_SYNC).rowcount == 1:
        return

    exists = session.scalar(select(func.count()).select_from(model).where(*key))
    if exists:
        raise AlreadyPaid(account_id=account_id, source=str(source), source_id=source_id)
    raise UngatedAward(account_id=account_id, source=str(source), source_id=source_id)


def award_xp(
    engine: Engine,
    rank_table: RankTable,
    account_id: str,
    amount: int,
    source: XpSource,
    source_id: str,
) -> AwardOutcome:
    """Add *amount* XP to *account_id* and recompute its rank atomically.

    For settled sources (quest completion, code redemption, achievement
    bonus) the backing gate row's ``paid_at`` is flipped in the same
    transaction; an award whose gate was already paid is refused.

    Raises
    ------
    InvalidAmount
        *amount* is negative.
    AlreadyPaid
        The gate row for this source was already paid.
    UngatedAward
        A settled source has no gate row.
    AccountNotFound
        The account row does not exist.
    """
    if amount < 0:
        raise InvalidAmount(amount=amount)
    source = XpSource(source)
    source_id = str(source_id)

    new_xp_expr = Account.xp + amount
    stmt = (
        update(Account)
        .where(Account.id == account_id)
        .values(
            xp=new_xp_expr,
            rank=rank_table.rank_case(new_xp_expr),
            updated_at=_now(),
        )
        .returning(Account.xp)
    )

    with get_session(engine) as session:
        _flip_gate(session, account_id, source, source_id)
        new_total = session.execute(stmt, execution_options=_NO_SYNC).scalar_one_or_none()
        if new_total is None:
            raise AccountNotFound(account_id=account_id)

    old_rank = rank_table.rank_for(new_total - amount)
    new_rank = rank_table.rank_for(new_total)
    outcome = AwardOutcome(
        new_total=new_total,
        old_rank=old_rank,
        new_rank=new_rank,
        rank_changed=rank_table.leveled_up(old_rank, new_rank),
    )
    logger.info(
        "Awarded %d XP to %s (%s:%s) → %d [%s]%s",
        amount, account_id, source, source_id, new_total, new_rank.name,
        " rank up" if outcome.rank_changed else "",
    )
    return outcome


# ---------------------------------------------------------------------------
# Completion gate
# ---------------------------------------------------------------------------
def start_quest(engine: Engine, account_id: str, quest_id: str) -> bool:
    """Create the (account, quest) CompletionRecord at progress 0 if missing."""
    insert = _dialect_insert(engine)
    stmt = insert(CompletionRecord.__table__).values(
        account_id=account_id, quest_id=quest_id, progress=0,
        completed=False, started_at=_now(),
    ).on_conflict_do_nothing(
        index_elements=["account_id", "quest_id"],
    )
    with get_session(engine) as session:
        return session.execute(stmt).rowcount == 1


def record_progress(engine: Engine, account_id: str, quest_id: str, progress: int) -> int:
    """Raise the stored progress to *progress* (clamped to 0–100).

    Progress never moves backwards.  Returns the stored progress.

    Raises
    ------
    AlreadyCompleted
        The record is already completed.
    """
    progress = max(0, min(MAX_PROGRESS, int(progress)))
    start_quest(engine, account_id, quest_id)

    with get_session(engine) as session:
        session.execute(
            update(CompletionRecord)
            .where(
                CompletionRecord.account_id == account_id,
                CompletionRecord.quest_id == quest_id,
                CompletionRecord.completed.is_(False),
                CompletionRecord.progress < progress,
            )
            .values(progress=progress),
            execution_options=_NO_SYNC,
        )
        record = session.get(CompletionRecord, (account_id, quest_id))
        if record.completed:
            raise AlreadyCompleted(account_id=account_id, quest_id=quest_id)
        return record.progress


def mark_completed(
    engine: Engine,
    account_id: str,
    quest_id: str,
    threshold: int = COMPLETION_THRESHOLD,
) -> datetime:
    """Atomically transition the CompletionRecord to completed.

    Returns the ``completed_at`` timestamp written by this call.

    Raises
    ------
    AlreadyCompleted
        Another request (or an earlier one) already completed it.
    NotReady
        The quest was never started or its progress is below *threshold*.
    """
    completed_at = _now()
    stmt = (
        update(CompletionRecord)
        .where(
            CompletionRecord.account_id == account_id,
            CompletionRecord.quest_id == quest_id,
            CompletionRecord.completed.is_(False),
            CompletionRecord.progress >= threshold,
        )
        .values(completed=True, completed_at=completed_at)
    )
    with get_session(engine) as session:
        if session.execute(stmt, execution_options=_NO_SYNC).rowcount == 1:
            return completed_at
        row = session.execute(
            select(CompletionRecord.completed, CompletionRecord.progress).where(
                CompletionRecord.account_id == account_id,
                CompletionRecord.quest_id == quest_id,
            )
        ).first()

    if row is None:
        raise NotReady("Quest has not been started", account_id=account_id, quest_id=quest_id)
    if row.completed:
        raise AlreadyCompleted(account_id=account_id, quest_id=quest_id)
    raise NotReady(
        f"Quest progress is {row.progress}%, {threshold}% required",
        account_id=account_id, quest_id=quest_id,
    )


# ---------------------------------------------------------------------------
# Redemption gate
# ---------------------------------------------------------------------------
def insert_redemption(engine: Engine, account_id: str, code_id: int, quest_id: str) -> int:
    """Record that *account_id* redeemed *code_id*.  Returns the record id.

    Raises
    ------
    DuplicateRedemption
        The UNIQUE (account_id, code_id) constraint rejected the insert.
    """
    try:
        with get_session(engine) as session:
            record = RedemptionRecord(
                account_id=account_id, code_id=code_id, quest_id=quest_id,
                redeemed_at=_now(),
            )
            session.add(record)
            session.flush()
            return record.id
    except IntegrityError as exc:
        raise DuplicateRedemption(account_id=account_id, code_id=code_id) from exc


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------
def insert_account_achievement(engine: Engine, account_id: str, achievement_id: int) -> bool:
    """Idempotently unlock an achievement.  True only for the call that inserted it."""
    insert = _dialect_insert(engine)
    stmt = insert(AccountAchievement.__table__).values(
        account_id=account_id, achievement_id=achievement_id, earned_at=_now(),
    ).on_conflict_do_nothing(
        index_elements=["account_id", "achievement_id"],
    )
    with get_session(engine) as session:
        return session.execute(stmt).rowcount == 1


def list_account_achievements(engine: Engine, account_id: str) -> list[dict]:
    """Unlocked achievements for *account_id*, oldest first."""
    with Session(engine) as session:
        rows = session.execute(
            select(AccountAchievement, AchievementTemplate)
            .join(AchievementTemplate, AchievementTemplate.id == AccountAchievement.achievement_id)
            .where(AccountAchievement.account_id == account_id)
            .order_by(AccountAchievement.earned_at, AccountAchievement.achievement_id)
        ).all()
        return [
            {
                "id": template.id,
                "name": template.name,
                "description": template.description,
                "xpReward": template.xp_reward,
                "earnedAt": earned.earned_at.isoformat() if earned.earned_at else None,
                "paid": earned.paid_at is not None,
            }
            for earned, template in rows
        ]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_quest(engine: Engine, quest_id: str) -> Quest | None:
    with Session(engine) as session:
        quest = session.get(Quest, quest_id)
        if quest is not None:
            session.expunge(quest)
        return quest


def get_active_code(engine: Engine, quest_id: str) -> VerificationCode | None:
    """First active verification code for *quest_id* (lowest id), if any."""
    with Session(engine) as session:
        code = session.scalars(
            select(VerificationCode)
            .where(
                VerificationCode.quest_id == quest_id,
                VerificationCode.active.is_(True),
            )
            .order_by(VerificationCode.id)
            .limit(1)
        ).first()
        if code is not None:
            session.expunge(code)
        return code


def get_completion(engine: Engine, account_id: str, quest_id: str) -> CompletionRecord | None:
    with Session(engine) as session:
        record = session.get(CompletionRecord, (account_id, quest_id))
        if record is not None:
            session.expunge(record)
        return record


def get_account_stats(engine: Engine, account_id: str) -> AccountStats:
    """Recompute aggregate stats for *account_id* from the ledger tables.

    Raises
    ------
    AccountNotFound
        The account row does not exist.
    """
    with Session(engine) as session:
        account = session.get(Account, account_id)
        if account is None:
            raise AccountNotFound(account_id=account_id)

        completed_at: Sequence[datetime] = session.scalars(
            select(CompletionRecord.completed_at).where(
                CompletionRecord.account_id == account_id,
                CompletionRecord.completed.is_(True),
                CompletionRecord.completed_at.is_not(None),
            )
        ).all()
        redeemed_at: Sequence[datetime] = session.scalars(
            select(RedemptionRecord.redeemed_at)
            .where(RedemptionRecord.account_id == account_id)
        ).all()
        earned = session.scalars(
            select(AccountAchievement.achievement_id)
            .where(AccountAchievement.account_id == account_id)
        ).all()

        return AccountStats(
            xp=account.xp,
            rank=account.rank,
            quests_completed=len(completed_at),
            codes_redeemed=len(redeemed_at),
            streak_days=current_streak([*completed_at, *redeemed_at]),
            earned=frozenset(earned),
        )
