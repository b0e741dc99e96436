"""Baseline reward ledger schema

Revision ID: 0f3c9a7d2b41
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0f3c9a7d2b41"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("xp", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rank", sa.String(50), nullable=False, server_default="Novice"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("xp >= 0", name="ck_accounts_xp_non_negative"),
    )
    op.create_index("ix_accounts_xp_desc", "accounts", ["xp"])

    op.create_table(
        "quests",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("reward_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("requires_code", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("reward_points >= 0", name="ck_quests_reward_non_negative"),
    )

    op.create_table(
        "verification_codes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "quest_id", sa.String(64),
            sa.ForeignKey("quests.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("code", sa.String(100), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_verification_codes_quest_active", "verification_codes", ["quest_id", "active"],
    )

    op.create_table(
        "completion_records",
        sa.Column(
            "account_id", sa.String(64),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "quest_id", sa.String(64),
            sa.ForeignKey("quests.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "progress >= 0 AND progress <= 100",
            name="ck_completion_records_progress_range",
        ),
    )
    op.create_index(
        "ix_completion_records_unpaid", "completion_records", ["completed", "paid_at"],
    )

    op.create_table(
        "redemption_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "account_id", sa.String(64),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "code_id", sa.Integer(),
            sa.ForeignKey("verification_codes.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("quest_id", sa.String(64), nullable=False),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("account_id", "code_id", name="uq_redemption_account_code"),
    )
    op.create_index("ix_redemption_records_unpaid", "redemption_records", ["paid_at"])

    op.create_table(
        "achievement_templates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_type", sa.String(30), nullable=False, server_default="manual"),
        sa.Column("trigger_config", postgresql.JSONB(), nullable=True),
        sa.Column("xp_reward", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("xp_reward >= 0", name="ck_achievement_templates_xp_non_negative"),
    )

    op.create_table(
        "account_achievements",
        sa.Column(
            "account_id", sa.String(64),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "achievement_id", sa.Integer(),
            sa.ForeignKey("achievement_templates.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("earned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "leaderboard_entries",
        sa.Column("account_id", sa.String(64), primary_key=True),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("xp", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rank", sa.String(50), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_leaderboard_entries_xp", "leaderboard_entries", ["xp"])

    op.create_table(
        "xp_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("source_id", sa.String(100), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_xp_transactions_account_time", "xp_transactions", ["account_id", "timestamp"],
    )
    op.create_index("ix_xp_transactions_source", "xp_transactions", ["source", "source_id"])

    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text(), nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("settings")
    op.drop_index("ix_xp_transactions_source", table_name="xp_transactions")
    op.drop_index("ix_xp_transactions_account_time", table_name="xp_transactions")
    op.drop_table("xp_transactions")
    op.drop_index("ix_leaderboard_entries_xp", table_name="leaderboard_entries")
    op.drop_table("leaderboard_entries")
    op.drop_table("account_achievements")
    op.drop_table("achievement_templates")
    op.drop_index("ix_redemption_records_unpaid", table_name="redemption_records")
    op.drop_table("redemption_records")
    op.drop_index("ix_completion_records_unpaid", table_name="completion_records")
    op.drop_table("completion_records")
    op.drop_index("ix_verification_codes_quest_active", table_name="verification_codes")
    op.drop_table("verification_codes")
    op.drop_table("quests")
    op.drop_index("ix_accounts_xp_desc", table_name="accounts")
    op.drop_table("accounts")
