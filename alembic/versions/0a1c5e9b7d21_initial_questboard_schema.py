"""Initial Questboard schema

Revision ID: 0a1c5e9b7d21
Revises:
Create Date: 2026-10-19 09:12:04.418207

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '0a1c5e9b7d21'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
    )


def upgrade() -> None:
    """Create gamification and activity tables."""

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("account_type", sa.String(30), nullable=False, server_default="regular"),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("total_xp", sa.Integer, server_default="0"),
        sa.Column("level", sa.Integer, server_default="1"),
        sa.Column("monthly_xp", sa.Integer, server_default="0"),
        sa.Column("current_streak", sa.Integer, server_default="0"),
        sa.Column("longest_streak", sa.Integer, server_default="0"),
        sa.Column("last_activity_date", sa.Date, nullable=True),
        _created_at(),
        sa.CheckConstraint("total_xp >= 0", name="ck_users_total_xp_nonneg"),
    )
    op.create_index("ix_users_total_xp", "users", ["total_xp"])
    op.create_index("ix_users_monthly_xp", "users", ["monthly_xp"])

    # --- badges ---
    op.create_table(
        "badges",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("icon", sa.String(20), nullable=True),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("rarity", sa.String(20), nullable=False, server_default="common"),
        sa.Column("requirement_type", sa.String(50), nullable=True),
        sa.Column("requirement_value", sa.Integer, nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("is_hidden", sa.Boolean, server_default=sa.false()),
        sa.Column("sort_order", sa.Integer, server_default="0"),
        _created_at(),
    )

    op.create_table(
        "user_badges",
        sa.Column("user_id", sa.BigInteger,
                  sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("badge_id", sa.Integer,
                  sa.ForeignKey("badges.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("source", sa.String(20), nullable=False, server_default="auto"),
        sa.Column("earned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # --- missions ---
    op.create_table(
        "missions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("xp_reward", sa.Integer, nullable=False, server_default="0"),
        sa.Column("badge_id", sa.Integer,
                  sa.ForeignKey("badges.id", ondelete="SET NULL"), nullable=True),
        sa.Column("requirements", postgresql.JSONB, nullable=False),
        sa.Column("reset_frequency", sa.String(20), nullable=False, server_default="never"),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sort_order", sa.Integer, server_default="0"),
        _created_at(),
        sa.CheckConstraint("xp_reward >= 0", name="ck_missions_xp_reward_nonneg"),
    )
    op.create_index("ix_missions_active_type", "missions", ["is_active", "type"])
    op.create_index("ix_missions_reset_frequency", "missions", ["reset_frequency"])

    op.create_table(
        "mission_progress",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger,
                  sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("mission_id", sa.Integer,
                  sa.ForeignKey("missions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reset_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "mission_id", name="uq_mission_progress_user_mission"),
        sa.CheckConstraint("progress >= 0", name="ck_mission_progress_nonneg"),
    )
    op.create_index("ix_mission_progress_mission", "mission_progress", ["mission_id"])

    # --- xp ledger ---
    op.create_table(
        "xp_transactions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger,
                  sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("xp_amount", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(50), nullable=False),
        sa.Column("related_entity_type", sa.String(30), nullable=True),
        sa.Column("related_entity_id", sa.BigInteger, nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        _created_at(),
    )
    op.create_index("ix_xp_transactions_user_time", "xp_transactions", ["user_id", "created_at"])
    op.create_index("ix_xp_transactions_time", "xp_transactions", ["created_at"])

    # --- feature unlocks ---
    op.create_table(
        "feature_unlocks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("unlock_type", sa.String(20), nullable=False),
        sa.Column("unlock_value", sa.Integer, nullable=False),
        sa.Column("category", sa.String(20), nullable=False, server_default="feature"),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
    )
    op.create_table(
        "user_unlocks",
        sa.Column("user_id", sa.BigInteger,
                  sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("unlock_id", sa.Integer,
                  sa.ForeignKey("feature_unlocks.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("unlocked_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # --- leaderboards, audit, job leases ---
    op.create_table(
        "leaderboard_entries",
        sa.Column("board", sa.String(30), primary_key=True),
        sa.Column("rank", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.BigInteger,
                  sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("score", sa.BigInteger, nullable=False),
        sa.Column("secondary_score", sa.Integer, nullable=True),
        sa.Column("refreshed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_leaderboard_entries_user", "leaderboard_entries", ["user_id"])

    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.BigInteger, nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index("ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"])

    op.create_table(
        "job_locks",
        sa.Column("name", sa.String(50), primary_key=True),
        sa.Column("holder", sa.String(100), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
    )

    # --- activity tables (written by event producers) ---
    op.create_table(
        "establishments",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("zone", sa.String(50), nullable=True),
        sa.Column("latitude", sa.Float, nullable=True),
        sa.Column("longitude", sa.Float, nullable=True),
        _created_at(),
    )
    op.create_index("ix_establishments_zone", "establishments", ["zone"])

    op.create_table(
        "reviews",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger,
                  sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("establishment_id", sa.BigInteger,
                  sa.ForeignKey("establishments.id", ondelete="SET NULL"), nullable=True),
        sa.Column("content", sa.Text, nullable=False, server_default=""),
        sa.Column("rating", sa.Integer, nullable=True),
        sa.Column("has_photos", sa.Boolean, server_default=sa.false()),
        _created_at(),
    )
    op.create_index("ix_reviews_user_time", "reviews", ["user_id", "created_at"])

    op.create_table(
        "check_ins",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger,
                  sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("establishment_id", sa.BigInteger,
                  sa.ForeignKey("establishments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("verified", sa.Boolean, server_default=sa.false()),
        sa.Column("distance_m", sa.Float, nullable=True),
        _created_at(),
    )
    op.create_index("ix_check_ins_user_time", "check_ins", ["user_id", "created_at"])

    op.create_table(
        "review_votes",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("review_id", sa.BigInteger,
                  sa.ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False),
        sa.Column("voter_id", sa.BigInteger,
                  sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("vote_type", sa.String(20), nullable=False),
        _created_at(),
        sa.UniqueConstraint("review_id", "voter_id", name="uq_review_votes_review_voter"),
    )

    op.create_table(
        "user_follows",
        sa.Column("follower_id", sa.BigInteger,
                  sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("following_id", sa.BigInteger,
                  sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        _created_at(),
    )
    op.create_index("ix_user_follows_following", "user_follows", ["following_id"])

    op.create_table(
        "photo_uploads",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger,
                  sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("establishment_id", sa.BigInteger,
                  sa.ForeignKey("establishments.id", ondelete="SET NULL"), nullable=True),
        sa.Column("width", sa.Integer, nullable=True),
        sa.Column("height", sa.Integer, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        _created_at(),
    )
    op.create_index("ix_photo_uploads_user_status", "photo_uploads", ["user_id", "status"])


def downgrade() -> None:
    """Drop every Questboard table, children first."""
    for table in (
        "photo_uploads",
        "user_follows",
        "review_votes",
        "check_ins",
        "reviews",
        "establishments",
        "job_locks",
        "admin_log",
        "leaderboard_entries",
        "user_unlocks",
        "feature_unlocks",
        "xp_transactions",
        "mission_progress",
        "missions",
        "user_badges",
        "badges",
        "users",
    ):
        op.drop_table(table)
