"""
questboard.database.models — SQLAlchemy 2.0 Data Models
========================================================

Gamification tables (owned by the engine):
- users              — Accounts with cached XP / level / streak aggregates
- missions           — Completable task definitions (requirements JSONB)
- mission_progress   — One counter + completion flag per (user, mission)
- badges             — Achievement definitions
- user_badges        — Earned badges (composite PK → never duplicated)
- xp_transactions    — Append-only XP ledger
- feature_unlocks    — Level / XP / badge gated features
- user_unlocks       — Unlocked features per user
- leaderboard_entries — Derived ranked snapshots (disposable)
- admin_log          — Append-only audit trail
- job_locks          — Cross-process single-run leases for scheduled jobs

Activity tables (written by event producers, read by the engine):
- establishments, reviews, check_ins, review_votes, user_follows,
  photo_uploads
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
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
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Questboard ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class AccountType(enum.StrEnum):
    """Account categories.  Non-player types are configured in config.yaml."""
    REGULAR = "regular"
    ESTABLISHMENT_OWNER = "establishment_owner"
    EMPLOYEE = "employee"


class MissionType(enum.StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    NARRATIVE = "narrative"
    EVENT = "event"


class ResetFrequency(enum.StrEnum):
    """How often a mission's progress is zeroed."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    NEVER = "never"


class BadgeCategory(enum.StrEnum):
    EXPLORATION = "exploration"
    CONTRIBUTION = "contribution"
    SOCIAL = "social"
    QUALITY = "quality"
    TEMPORAL = "temporal"
    SECRET = "secret"


class BadgeRarity(enum.StrEnum):
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


class BadgeSource(enum.StrEnum):
    """How a badge ended up on a user."""
    MISSION = "mission"
    AUTO = "auto"
    ADMIN = "admin"


class UnlockType(enum.StrEnum):
    LEVEL = "level"
    XP = "xp"
    BADGE = "badge"


class UnlockCategory(enum.StrEnum):
    FEATURE = "feature"
    COSMETIC = "cosmetic"
    TITLE = "title"


class VoteType(enum.StrEnum):
    HELPFUL = "helpful"
    NOT_HELPFUL = "not_helpful"


class PhotoStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    MANUAL_AWARD = "MANUAL_AWARD"
    BADGE_GRANT = "BADGE_GRANT"
    JOB_RUN = "JOB_RUN"


# ---------------------------------------------------------------------------
# Users — accounts with cached gamification aggregates
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    account_type: Mapped[str] = mapped_column(
        String(30), nullable=False, default=AccountType.REGULAR.value
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Aggregates: kept in step with xp_transactions by xp_service.grant_xp
    total_xp: Mapped[int] = mapped_column(Integer, default=0)
    level: Mapped[int] = mapped_column(Integer, default=1)
    monthly_xp: Mapped[int] = mapped_column(Integer, default=0)
    current_streak: Mapped[int] = mapped_column(Integer, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, default=0)
    last_activity_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    badges: Mapped[list[UserBadge]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    progress: Mapped[list[MissionProgress]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("total_xp >= 0", name="ck_users_total_xp_nonneg"),
        Index("ix_users_total_xp", "total_xp"),
        Index("ix_users_monthly_xp", "monthly_xp"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.username!r} lvl={self.level}>"


# ---------------------------------------------------------------------------
# Badges — achievement definitions (reference data)
# ---------------------------------------------------------------------------
class Badge(Base):
    __tablename__ = "badges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    icon: Mapped[str | None] = mapped_column(String(20), nullable=True)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    rarity: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BadgeRarity.COMMON.value
    )
    # Evaluated by questboard.engine.badges.BADGE_RULES; None = manual/mission only
    requirement_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    requirement_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_hidden: Mapped[bool] = mapped_column(Boolean, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    earned_by: Mapped[list[UserBadge]] = relationship(back_populates="badge")

    def __repr__(self) -> str:
        return f"<Badge id={self.id} name={self.name!r} rarity={self.rarity}>"


class UserBadge(Base):
    __tablename__ = "user_badges"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    badge_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("badges.id", ondelete="CASCADE"), primary_key=True
    )
    source: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BadgeSource.AUTO.value
    )
    earned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped[User] = relationship(back_populates="badges")
    badge: Mapped[Badge] = relationship(back_populates="earned_by")

    def __repr__(self) -> str:
        return f"<UserBadge user={self.user_id} badge={self.badge_id}>"


# ---------------------------------------------------------------------------
# Missions — completable task definitions
# ---------------------------------------------------------------------------
class Mission(Base):
    __tablename__ = "missions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    badge_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("badges.id", ondelete="SET NULL"), nullable=True
    )
    # Validated into a Requirement variant by questboard.engine.requirements
    requirements: Mapped[dict] = mapped_column(JSONB, nullable=False)
    reset_frequency: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ResetFrequency.NEVER.value
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    badge: Mapped[Badge | None] = relationship()

    __table_args__ = (
        CheckConstraint("xp_reward >= 0", name="ck_missions_xp_reward_nonneg"),
        Index("ix_missions_active_type", "is_active", "type"),
        Index("ix_missions_reset_frequency", "reset_frequency"),
    )

    def __repr__(self) -> str:
        return f"<Mission id={self.id} name={self.name!r} type={self.type}>"


class MissionProgress(Base):
    __tablename__ = "mission_progress"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    mission_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("missions.id", ondelete="CASCADE"), nullable=False
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reset_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship(back_populates="progress")
    mission: Mapped[Mission] = relationship()

    __table_args__ = (
        UniqueConstraint("user_id", "mission_id", name="uq_mission_progress_user_mission"),
        CheckConstraint("progress >= 0", name="ck_mission_progress_nonneg"),
        Index("ix_mission_progress_mission", "mission_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<MissionProgress user={self.user_id} mission={self.mission_id} "
            f"progress={self.progress} completed={self.completed}>"
        )


# ---------------------------------------------------------------------------
# XpTransaction — append-only ledger
# ---------------------------------------------------------------------------
class XpTransaction(Base):
    __tablename__ = "xp_transactions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    xp_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    related_entity_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    related_entity_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_xp_transactions_user_time", "user_id", "created_at"),
        Index("ix_xp_transactions_time", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<XpTransaction id={self.id} user={self.user_id} xp={self.xp_amount}>"


# ---------------------------------------------------------------------------
# Feature unlocks — gated by level, XP or badge
# ---------------------------------------------------------------------------
class FeatureUnlock(Base):
    __tablename__ = "feature_unlocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    unlock_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # Level number, XP amount, or badge id depending on unlock_type
    unlock_value: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UnlockCategory.FEATURE.value
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<FeatureUnlock {self.name!r} {self.unlock_type}={self.unlock_value}>"


class UserUnlock(Base):
    __tablename__ = "user_unlocks"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    unlock_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("feature_unlocks.id", ondelete="CASCADE"), primary_key=True
    )
    unlocked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    unlock: Mapped[FeatureUnlock] = relationship()


# ---------------------------------------------------------------------------
# Leaderboard snapshots — derived, rebuilt wholesale
# ---------------------------------------------------------------------------
class LeaderboardEntry(Base):
    __tablename__ = "leaderboard_entries"

    board: Mapped[str] = mapped_column(String(30), primary_key=True)
    rank: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    score: Mapped[int] = mapped_column(BigInteger, nullable=False)
    secondary_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refreshed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    user: Mapped[User] = relationship()

    __table_args__ = (
        Index("ix_leaderboard_entries_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<LeaderboardEntry {self.board}#{self.rank} user={self.user_id}>"


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"


# ---------------------------------------------------------------------------
# JobLock — lease per scheduled job name
# ---------------------------------------------------------------------------
class JobLock(Base):
    __tablename__ = "job_locks"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    holder: Mapped[str | None] = mapped_column(String(100), nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<JobLock {self.name!r} holder={self.holder!r}>"


# ===========================================================================
# Activity tables — owned by event producers, read here for recounts and
# category leaderboards
# ===========================================================================
class Establishment(Base):
    __tablename__ = "establishments"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    zone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_establishments_zone", "zone"),
    )

    def __repr__(self) -> str:
        return f"<Establishment id={self.id} name={self.name!r} zone={self.zone}>"


class Review(Base):
    __tablename__ = "reviews"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    establishment_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("establishments.id", ondelete="SET NULL"), nullable=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    has_photos: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_reviews_user_time", "user_id", "created_at"),
    )


class CheckIn(Base):
    __tablename__ = "check_ins"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    establishment_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("establishments.id", ondelete="CASCADE"), nullable=False
    )
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    distance_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    establishment: Mapped[Establishment] = relationship()

    __table_args__ = (
        Index("ix_check_ins_user_time", "user_id", "created_at"),
    )


class ReviewVote(Base):
    __tablename__ = "review_votes"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    review_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False
    )
    voter_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    vote_type: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("review_id", "voter_id", name="uq_review_votes_review_voter"),
    )


class UserFollow(Base):
    __tablename__ = "user_follows"

    follower_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    following_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_user_follows_following", "following_id"),
    )


class PhotoUpload(Base):
    __tablename__ = "photo_uploads"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    establishment_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("establishments.id", ondelete="SET NULL"), nullable=True
    )
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PhotoStatus.PENDING.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_photo_uploads_user_status", "user_id", "status"),
    )
