import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from pointsledger.core.clock import Clock, utcnow
from pointsledger.core.config import Settings, settings as default_settings
from pointsledger.core.database import SessionLocal, run_in_transaction
from pointsledger.models.achievement import (
    BadgeProgress,
    BadgeResponse,
    BadgeStats,
    LeaderboardEntryResponse,
    StreakResponse,
    UnlockBadgeResult,
    UpdateStreakResult,
    UserBadgeResponse,
)
from pointsledger.models.points import AddPointsResult, BalanceResponse, SpendPointsResult, TransactionResponse
from pointsledger.services.badges import BadgeEvaluator, StatProvider
from pointsledger.services.guard import IdempotencyGuard
from pointsledger.services.leaderboard import LeaderboardAggregator
from pointsledger.services.ledger import Ledger
from pointsledger.services.members import upsert_member
from pointsledger.services.rules import RULES
from pointsledger.services.streaks import StreakTracker

logger = logging.getLogger(__name__)

# Runs a follow-up task: fn(*args). FastAPI's BackgroundTasks.add_task fits.
Scheduler = Callable[..., Any]


def run_now(fn: Callable, *args) -> None:
    fn(*args)


class GamificationService:
    """Entry point for collaborators: points, streaks, badges and the leaderboard."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Settings = default_settings,
        clock: Clock = utcnow,
        stat_providers: Sequence[StatProvider] = (),
        scheduler: Scheduler = run_now,
    ):
        self.session_factory = session_factory
        self.scheduler = scheduler
        self.settings = settings
        self.clock = clock

        self.guard = IdempotencyGuard(
            daily_point_limit=settings.daily_point_limit,
            rapid_action_threshold=settings.rapid_action_threshold,
            rapid_action_window_seconds=settings.rapid_action_window_seconds,
            daily_limit_policy=settings.daily_limit_policy,
        )
        self.ledger = Ledger(
            session_factory,
            self.guard,
            clock=clock,
            max_retries=settings.ledger_max_retries,
            retry_backoff_seconds=settings.ledger_retry_backoff_seconds,
        )
        self.badges = BadgeEvaluator(
            session_factory,
            self.ledger,
            clock=clock,
            stat_providers=stat_providers,
            max_retries=settings.ledger_max_retries,
            retry_backoff_seconds=settings.ledger_retry_backoff_seconds,
        )
        self.streaks = StreakTracker(
            session_factory,
            self.ledger,
            clock=clock,
            weekly_days=settings.streak_weekly_days,
            monthly_days=settings.streak_monthly_days,
            badge_evaluator=self.badges,
            max_retries=settings.ledger_max_retries,
            retry_backoff_seconds=settings.ledger_retry_backoff_seconds,
        )
        self.leaderboard = LeaderboardAggregator(
            session_factory,
            clock=clock,
            max_limit=settings.leaderboard_max_limit,
            max_retries=settings.ledger_max_retries,
        )

    def startup(self) -> None:
        """Sync the badge catalog and flag rules the daily cap makes unreachable"""
        self.badges.sync_catalog()
        if self.settings.daily_limit_policy == "reject":
            for action, rule in RULES.items():
                if rule.points is not None and rule.points > self.settings.daily_point_limit:
                    logger.warning(
                        "%s is worth %s points, above the daily limit of %s; it can never be awarded",
                        action.value, rule.points, self.settings.daily_point_limit,
                    )

    # Points

    def add_points(
        self,
        user_id: str,
        action_type,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
        schedule: Optional[Scheduler] = None,
    ) -> AddPointsResult:
        """Award points, then evaluate badges best-effort once the award is committed.

        ``schedule`` overrides the service scheduler for this call; the HTTP
        layer passes ``BackgroundTasks.add_task`` so badges run after the response.
        """
        result = self.ledger.add_points(
            user_id,
            action_type,
            reference_id=reference_id,
            reference_type=reference_type,
            idempotency_key=idempotency_key,
            description=description,
        )
        if result.awarded:
            (schedule or self.scheduler)(self.evaluate_badges_in_background, user_id)
        return result

    def spend_points(
        self,
        user_id: str,
        points: int,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> SpendPointsResult:
        return self.ledger.spend_points(
            user_id,
            points,
            reference_id=reference_id,
            reference_type=reference_type,
            description=description,
            idempotency_key=idempotency_key,
        )

    def get_balance(self, user_id: str) -> BalanceResponse:
        return self.ledger.get_balance(user_id)

    def get_transactions(self, user_id: str, limit: int = 20, offset: int = 0) -> List[TransactionResponse]:
        return self.ledger.get_transactions(user_id, limit=limit, offset=offset)

    def get_today_points(self, user_id: str) -> int:
        return self.ledger.get_today_points(user_id)

    # Streaks

    def update_streak(self, user_id: str, today: Optional[date] = None) -> UpdateStreakResult:
        return self.streaks.update_streak(user_id, today=today)

    def get_user_streak(self, user_id: str) -> StreakResponse:
        return self.streaks.get_user_streak(user_id)

    # Badges

    def check_and_unlock_badges(self, user_id: str) -> List[BadgeResponse]:
        return self.badges.check_and_unlock(user_id)

    def evaluate_badges_in_background(self, user_id: str) -> None:
        """Hook for background tasks after a balance-changing award"""
        self.badges.check_and_unlock_safely(user_id)

    def unlock_badge(self, user_id: str, code: str, schedule: Optional[Scheduler] = None) -> UnlockBadgeResult:
        result = self.badges.unlock_badge(user_id, code)
        # A granted badge and its reward can complete collection or points badges
        if result.success:
            (schedule or self.scheduler)(self.evaluate_badges_in_background, user_id)
        return result

    def get_all_badges(self) -> List[BadgeResponse]:
        return self.badges.get_all_badges()

    def get_user_badges(self, user_id: str) -> List[UserBadgeResponse]:
        return self.badges.get_user_badges(user_id)

    def get_badge_progress(self, user_id: str) -> List[BadgeProgress]:
        return self.badges.get_badge_progress(user_id)

    def get_badge_stats(self, user_id: str) -> BadgeStats:
        return self.badges.get_badge_stats(user_id)

    # Leaderboard

    def get_leaderboard(self, limit: int = 10) -> List[LeaderboardEntryResponse]:
        return self.leaderboard.get_top(limit)

    def refresh_leaderboard(self) -> int:
        return self.leaderboard.refresh()

    def get_user_rank(self, user_id: str) -> Optional[LeaderboardEntryResponse]:
        return self.leaderboard.get_user_rank(user_id)

    # Members

    def upsert_member(
        self,
        user_id: str,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        role: Optional[str] = None,
        joined_at: Optional[datetime] = None,
    ) -> Dict:
        def work(session: Session) -> Dict:
            member = upsert_member(
                session,
                user_id,
                self.clock(),
                display_name=display_name,
                avatar_url=avatar_url,
                role=role,
                joined_at=joined_at,
            )
            return {
                "user_id": member.user_id,
                "display_name": member.display_name,
                "avatar_url": member.avatar_url,
                "role": member.role,
                "joined_at": member.joined_at,
            }

        return run_in_transaction(self.session_factory, work, max_retries=self.settings.ledger_max_retries)

    def get_profile(self, user_id: str) -> Dict:
        """Complete gamification profile for a user"""
        rank = self.get_user_rank(user_id)
        return {
            "balance": self.get_balance(user_id),
            "today_points": self.get_today_points(user_id),
            "daily_point_limit": self.settings.daily_point_limit,
            "streak": self.get_user_streak(user_id),
            "badges": self.get_badge_stats(user_id),
            "recent_badges": self.get_user_badges(user_id)[:5],
            "rank": rank.rank if rank else None,
        }


_service: Optional[GamificationService] = None


# Dependency for getting the shared service
def get_gamification_service() -> GamificationService:
    global _service
    if _service is None:
        _service = GamificationService(SessionLocal)
    return _service
