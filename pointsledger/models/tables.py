from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from pointsledger.core.clock import utcnow
from pointsledger.core.database import Base


class Member(Base):
    """A platform user as far as the ledger knows them."""

    __tablename__ = "members"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="user")
    joined_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class PointBalance(Base):
    __tablename__ = "point_balances"
    __table_args__ = (
        CheckConstraint("total_points >= 0", name="ck_balance_total_nonnegative"),
        CheckConstraint("spent_points >= 0", name="ck_balance_spent_nonnegative"),
        CheckConstraint("spent_points <= total_points", name="ck_balance_not_overdrawn"),
    )

    user_id: Mapped[str] = mapped_column(ForeignKey("members.user_id"), primary_key=True)
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spent_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    @property
    def available_points(self) -> int:
        return self.total_points - self.spent_points


class PointTransaction(Base):
    """Append-only ledger row. Never updated or deleted once committed."""

    __tablename__ = "point_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_point_txn_idempotency"),
        CheckConstraint("points <> 0", name="ck_point_txn_nonzero"),
        Index("ix_point_txn_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("members.user_id"), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(40), nullable=False)
    reference_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    reference_type: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class UserActivity(Base):
    """One real-world event feeding a badge statistic (a lesson completed, a check-in...)."""

    __tablename__ = "user_activity"
    __table_args__ = (
        UniqueConstraint("user_id", "stat", "reference_id", name="uq_user_activity_reference"),
        Index("ix_user_activity_user_stat", "user_id", "stat"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("members.user_id"), nullable=False)
    stat: Mapped[str] = mapped_column(String(40), nullable=False)
    reference_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class UserStreak(Base):
    __tablename__ = "user_streaks"
    __table_args__ = (
        CheckConstraint("current_streak <= longest_streak", name="ck_streak_within_longest"),
    )

    user_id: Mapped[str] = mapped_column(ForeignKey("members.user_id"), primary_key=True)
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_login_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    streak_start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class Badge(Base):
    """Read-only catalog entry, synced from the in-code badge catalog at startup."""

    __tablename__ = "badges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    code: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    tier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    points_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    requirement_type: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    requirement_value: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class UserBadge(Base):
    __tablename__ = "user_badges"
    __table_args__ = (
        UniqueConstraint("user_id", "badge_id", name="uq_user_badge"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("members.user_id"), nullable=False, index=True)
    badge_id: Mapped[str] = mapped_column(ForeignKey("badges.id"), nullable=False)
    unlocked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class LeaderboardEntry(Base):
    """Derived projection, fully replaced on every refresh."""

    __tablename__ = "leaderboard_entries"

    rank: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_points: Mapped[int] = mapped_column(Integer, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False)
    badge_count: Mapped[int] = mapped_column(Integer, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    refreshed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
