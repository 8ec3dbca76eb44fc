import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import delete, func, select, text
from sqlalchemy.orm import Session

from pointsledger.core.clock import Clock, utcnow
from pointsledger.core.database import run_in_transaction
from pointsledger.models.achievement import LeaderboardEntryResponse
from pointsledger.models.tables import LeaderboardEntry, Member, PointBalance, UserBadge, UserStreak
from pointsledger.services.rules import level_for

logger = logging.getLogger(__name__)

# Members with these roles never appear on the board
EXCLUDED_ROLES = ("admin", "service")


def ranking_key(total_points: int, current_streak: int, joined_at: datetime, user_id: str):
    """Total order: points desc, streak desc, earlier joiner first, then user id."""
    return (-total_points, -current_streak, joined_at, user_id)


def lock_for_rebuild(session: Session) -> None:
    """Serialize concurrent rebuilds; plain readers of the board are not blocked.

    SQLite units of work already hold the write lock from ``BEGIN IMMEDIATE``.
    """
    if session.get_bind().dialect.name == "postgresql":
        session.execute(text("LOCK TABLE leaderboard_entries IN EXCLUSIVE MODE"))


class LeaderboardAggregator:
    """Ranked projection of balances, rebuilt wholesale and read from the projection."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock = utcnow,
        max_limit: int = 100,
        max_retries: int = 3,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.max_limit = max_limit
        self.max_retries = max_retries

    def refresh(self) -> int:
        """Replace every leaderboard row in one transaction. Safe to run at any time."""

        def work(session: Session) -> int:
            lock_for_rebuild(session)
            now = self.clock()
            badge_counts = (
                select(UserBadge.user_id, func.count(UserBadge.id).label("badge_count"))
                .group_by(UserBadge.user_id)
                .subquery()
            )
            rows = session.execute(
                select(
                    Member.user_id,
                    Member.display_name,
                    Member.avatar_url,
                    Member.joined_at,
                    PointBalance.total_points,
                    func.coalesce(UserStreak.current_streak, 0),
                    func.coalesce(badge_counts.c.badge_count, 0),
                )
                .join(PointBalance, PointBalance.user_id == Member.user_id)
                .outerjoin(UserStreak, UserStreak.user_id == Member.user_id)
                .outerjoin(badge_counts, badge_counts.c.user_id == Member.user_id)
                .where(Member.role.not_in(EXCLUDED_ROLES))
            ).all()

            ordered = sorted(rows, key=lambda r: ranking_key(r[4], r[5], r[3], r[0]))

            session.execute(delete(LeaderboardEntry))
            for rank, (user_id, name, avatar, joined_at, total, streak, badges) in enumerate(ordered, 1):
                session.add(LeaderboardEntry(
                    rank=rank,
                    user_id=user_id,
                    display_name=name,
                    avatar_url=avatar,
                    total_points=total,
                    level=level_for(total).level,
                    current_streak=streak,
                    badge_count=badges,
                    joined_at=joined_at,
                    refreshed_at=now,
                ))
            return len(ordered)

        count = run_in_transaction(self.session_factory, work, max_retries=self.max_retries)
        logger.info("Leaderboard refreshed with %s entries", count)
        return count

    def get_top(self, n: int = 10) -> List[LeaderboardEntryResponse]:
        n = max(1, min(int(n), self.max_limit))

        def work(session: Session) -> List[LeaderboardEntryResponse]:
            rows = session.scalars(select(LeaderboardEntry).order_by(LeaderboardEntry.rank).limit(n)).all()
            return [LeaderboardEntryResponse.model_validate(row) for row in rows]

        return run_in_transaction(self.session_factory, work, max_retries=self.max_retries, readonly=True)

    def get_user_rank(self, user_id: str) -> Optional[LeaderboardEntryResponse]:
        def work(session: Session) -> Optional[LeaderboardEntryResponse]:
            row = session.scalar(select(LeaderboardEntry).where(LeaderboardEntry.user_id == user_id))
            return LeaderboardEntryResponse.model_validate(row) if row is not None else None

        return run_in_transaction(self.session_factory, work, max_retries=self.max_retries, readonly=True)

    def last_refreshed_at(self) -> Optional[datetime]:
        def work(session: Session) -> Optional[datetime]:
            return session.scalar(select(func.max(LeaderboardEntry.refreshed_at)))

        return run_in_transaction(self.session_factory, work, max_retries=self.max_retries, readonly=True)


class LeaderboardRefresher:
    """Rebuilds the leaderboard on a fixed interval, off the request path."""

    def __init__(self, aggregator: LeaderboardAggregator, interval_seconds: int):
        self.aggregator = aggregator
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def _loop(self):
        while True:
            try:
                await asyncio.to_thread(self.aggregator.refresh)
            except Exception:
                logger.exception("Scheduled leaderboard refresh failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.interval_seconds <= 0 or self._task is not None:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Leaderboard refresher started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
