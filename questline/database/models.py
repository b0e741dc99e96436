"""
questline.database.models — SQLAlchemy 2.0 Data Models
=======================================================

Tables:
- accounts             — XP total + cached rank (authoritative)
- quests               — Reward points, active flag, code requirement
- verification_codes   — One-time codes attached to code-verified quests
- completion_records   — Per (account, quest) progress and completion gate
- redemption_records   — Per (account, code) redemption gate (UNIQUE)
- achievement_templates — Data-driven unlock predicates + bonus XP
- account_achievements — Unlocked achievements (existence = unlocked)
- leaderboard_entries  — Denormalised xp/rank projection (cache only)
- xp_transactions      — Append-only XP audit trail
- settings             — Key/JSON store (versioned rank table, tuning)

Every gate row (completion, redemption, achievement) carries ``paid_at``:
it is set in the same transaction as the XP increment, so a gated row with
``paid_at IS NULL`` is exactly the "gated but not yet paid" state the
reconciliation sweep looks for.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class TriggerType(enum.StrEnum):
    """Achievement unlock predicate kinds (achievement_templates.trigger_type)."""
    QUESTS_COMPLETED = "quests_completed"
    XP_MILESTONE = "xp_milestone"
    COMPLETION_STREAK = "completion_streak"
    CODES_REDEEMED = "codes_redeemed"
    RANK_REACHED = "rank_reached"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Questline ORM models."""


# ---------------------------------------------------------------------------
# Accounts — one row per authenticated identity
# ---------------------------------------------------------------------------
class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(100), default=None)
    xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rank: Mapped[str] = mapped_column(String(50), nullable=False, default="Novice")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    completions: Mapped[list[CompletionRecord]] = relationship(
        back_populates="account", cascade="all, delete-orphan"
    )
    achievements: Mapped[list[AccountAchievement]] = relationship(
        back_populates="account", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("xp >= 0", name="ck_accounts_xp_non_negative"),
        Index("ix_accounts_xp_desc", "xp"),
    )

    def __repr__(self) -> str:
        return f"<Account id={self.id!r} xp={self.xp} rank={self.rank!r}>"


# ---------------------------------------------------------------------------
# Quests
# ---------------------------------------------------------------------------
class Quest(Base):
    __tablename__ = "quests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    reward_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    requires_code: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    codes: Mapped[list[VerificationCode]] = relationship(
        back_populates="quest", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("reward_points >= 0", name="ck_quests_reward_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Quest id={self.id!r} title={self.title!r} active={self.active}>"


# ---------------------------------------------------------------------------
# VerificationCode — one-time codes for code-verified quests
# ---------------------------------------------------------------------------
class VerificationCode(Base):
    __tablename__ = "verification_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    quest_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("quests.id", ondelete="CASCADE"), nullable=False
    )
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    quest: Mapped[Quest] = relationship(back_populates="codes")

    __table_args__ = (
        Index("ix_verification_codes_quest_active", "quest_id", "active"),
    )

    def __repr__(self) -> str:
        # Never render the code itself
        return f"<VerificationCode id={self.id} quest={self.quest_id!r}>"


# ---------------------------------------------------------------------------
# CompletionRecord — the completion gate
# ---------------------------------------------------------------------------
class CompletionRecord(Base):
    __tablename__ = "completion_records"

    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )
    quest_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("quests.id", ondelete="CASCADE"), primary_key=True
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    account: Mapped[Account] = relationship(back_populates="completions")

    __table_args__ = (
        CheckConstraint(
            "progress >= 0 AND progress <= 100",
            name="ck_completion_records_progress_range",
        ),
        Index("ix_completion_records_unpaid", "completed", "paid_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CompletionRecord account={self.account_id!r} quest={self.quest_id!r} "
            f"progress={self.progress} completed={self.completed}>"
        )


# ---------------------------------------------------------------------------
# RedemptionRecord — the verification-code gate
# ---------------------------------------------------------------------------
class RedemptionRecord(Base):
    __tablename__ = "redemption_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    code_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("verification_codes.id", ondelete="CASCADE"),
        nullable=False,
    )
    quest_id: Mapped[str] = mapped_column(String(64), nullable=False)
    redeemed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        # Sole concurrency barrier for code redemption
        UniqueConstraint("account_id", "code_id", name="uq_redemption_account_code"),
        Index("ix_redemption_records_unpaid", "paid_at"),
    )

    def __repr__(self) -> str:
        return f"<RedemptionRecord account={self.account_id!r} code={self.code_id}>"


# ---------------------------------------------------------------------------
# AchievementTemplate — data-driven unlock predicates
# ---------------------------------------------------------------------------
class AchievementTemplate(Base):
    __tablename__ = "achievement_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    trigger_type: Mapped[str] = mapped_column(String(30), nullable=False, default="manual")
    trigger_config: Mapped[dict | None] = mapped_column(JSONB, default=dict)
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    earned_by: Mapped[list[AccountAchievement]] = relationship(back_populates="template")

    __table_args__ = (
        CheckConstraint("xp_reward >= 0", name="ck_achievement_templates_xp_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<AchievementTemplate id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# AccountAchievement — unlocked achievements
# ---------------------------------------------------------------------------
class AccountAchievement(Base):
    __tablename__ = "account_achievements"

    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )
    achievement_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("achievement_templates.id", ondelete="CASCADE"),
        primary_key=True,
    )
    earned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    account: Mapped[Account] = relationship(back_populates="achievements")
    template: Mapped[AchievementTemplate] = relationship(back_populates="earned_by")

    def __repr__(self) -> str:
        return (
            f"<AccountAchievement account={self.account_id!r} "
            f"achievement={self.achievement_id}>"
        )


# ---------------------------------------------------------------------------
# LeaderboardEntry — denormalised projection (never the source of truth)
# ---------------------------------------------------------------------------
class LeaderboardEntry(Base):
    __tablename__ = "leaderboard_entries"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(100), default=None)
    xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rank: Mapped[str] = mapped_column(String(50), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_leaderboard_entries_xp", "xp"),
    )

    def __repr__(self) -> str:
        return f"<LeaderboardEntry account={self.account_id!r} xp={self.xp}>"


# ---------------------------------------------------------------------------
# XpTransaction — append-only audit trail
# ---------------------------------------------------------------------------
class XpTransaction(Base):
    __tablename__ = "xp_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    source_id: Mapped[str] = mapped_column(String(100), nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_xp_transactions_account_time", "account_id", "timestamp"),
        Index("ix_xp_transactions_source", "source", "source_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<XpTransaction id={self.id} account={self.account_id!r} "
            f"amount={self.amount} source={self.source}>"
        )


# ---------------------------------------------------------------------------
# Setting — admin-configurable key-value store
# ---------------------------------------------------------------------------
class Setting(Base):
    """Key-value configuration store.

    Holds the versioned rank threshold table (``ranks.thresholds``,
    ``ranks.version``) so policy changes don't require a redeploy.  Values
    are JSON strings; :class:`~questline.engine.cache.ConfigCache` parses
    and caches them.
    """
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Setting key={self.key!r} category={self.category!r}>"
