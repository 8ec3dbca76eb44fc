import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pointsledger.core.clock import Clock, utcnow
from pointsledger.core.database import run_in_transaction
from pointsledger.core.exceptions import InvalidStreakDate
from pointsledger.models.achievement import StreakResponse, UpdateStreakResult
from pointsledger.models.tables import PointTransaction, UserStreak
from pointsledger.services.guard import DUPLICATE
from pointsledger.services.ledger import Ledger
from pointsledger.services.members import ensure_member
from pointsledger.services.rules import ActionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _StreakState:
    current_streak: int
    longest_streak: int
    streak_start_date: date
    changed: bool


class StreakTracker:
    """Consecutive-day login tracking, one state transition per user per UTC day."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        ledger: Ledger,
        clock: Clock = utcnow,
        weekly_days: int = 7,
        monthly_days: int = 30,
        badge_evaluator=None,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.05,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.clock = clock
        self.milestones: List[Tuple[ActionType, int]] = [
            (ActionType.WEEKLY_STREAK, weekly_days),
            (ActionType.MONTHLY_STREAK, monthly_days),
        ]
        self.badge_evaluator = badge_evaluator
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds

    def _lock_streak(self, session: Session, user_id: str) -> UserStreak:
        stmt = select(UserStreak).where(UserStreak.user_id == user_id).with_for_update()
        streak = session.scalar(stmt)
        if streak is not None:
            return streak

        now = self.clock()
        ensure_member(session, user_id, now)
        try:
            with session.begin_nested():
                session.add(UserStreak(user_id=user_id, current_streak=0, longest_streak=0, updated_at=now))
        except IntegrityError:
            pass
        return session.scalar(stmt)

    def update_streak(self, user_id: str, today: Optional[date] = None) -> UpdateStreakResult:
        """Record a login on ``today`` (UTC date) and pay any login/milestone points due.

        Calling it again on the same day changes nothing; pending awards from
        an earlier interrupted call are retried under their idempotency keys.
        """
        today = today or self.clock().date()

        def work(session: Session) -> _StreakState:
            streak = self._lock_streak(session, user_id)
            last = streak.last_login_date

            if last is not None and today < last:
                raise InvalidStreakDate(today, last)

            if last is not None and today == last:
                return _StreakState(streak.current_streak, streak.longest_streak, streak.streak_start_date, False)

            if last is not None and today == last + timedelta(days=1):
                streak.current_streak += 1
            else:
                # First login ever, or the run was broken by a gap
                streak.current_streak = 1
                streak.streak_start_date = today

            streak.longest_streak = max(streak.longest_streak, streak.current_streak)
            streak.last_login_date = today
            streak.updated_at = self.clock()
            return _StreakState(streak.current_streak, streak.longest_streak, streak.streak_start_date, True)

        state = run_in_transaction(
            self.session_factory,
            work,
            max_retries=self.max_retries,
            retry_backoff_seconds=self.retry_backoff_seconds,
        )
        if state.changed:
            logger.info("User %s login streak now %s (longest %s)", user_id, state.current_streak, state.longest_streak)

        points_earned = 0
        login = self.ledger.add_points(
            user_id,
            ActionType.DAILY_LOGIN,
            reference_id=today.isoformat(),
            reference_type="login",
            description="Daily login",
        )
        points_earned += login.points_added
        points_earned += self._award_milestones(user_id, state)

        badge_unlocked = None
        if self.badge_evaluator is not None:
            unlocked = self.badge_evaluator.check_and_unlock_safely(user_id)
            if unlocked:
                badge_unlocked = unlocked[0].code

        return UpdateStreakResult(
            current_streak=state.current_streak,
            longest_streak=state.longest_streak,
            points_earned=points_earned,
            badge_unlocked=badge_unlocked,
        )

    def _award_milestones(self, user_id: str, state: _StreakState) -> int:
        """Pay every milestone reached in the current run that has not been paid yet.

        Milestones are keyed by (run start, length), so each is paid at most
        once per run; one capped today is picked up by a later login.
        """
        run_prefix = f"{state.streak_start_date.isoformat()}:"
        earned = 0
        for action, interval in self.milestones:
            if interval <= 0 or state.current_streak < interval:
                continue
            paid = self._paid_milestones(user_id, action, run_prefix)
            for length in range(interval, state.current_streak + 1, interval):
                reference = f"{run_prefix}{length}"
                if reference in paid:
                    continue
                result = self.ledger.add_points(
                    user_id,
                    action,
                    reference_id=reference,
                    reference_type="streak",
                    description=f"{length}-day login streak",
                )
                earned += result.points_added
                if not result.awarded and result.reason != DUPLICATE:
                    break
        return earned

    def _paid_milestones(self, user_id: str, action: ActionType, run_prefix: str) -> set:
        def work(session: Session) -> set:
            rows = session.scalars(
                select(PointTransaction.reference_id).where(
                    PointTransaction.user_id == user_id,
                    PointTransaction.action_type == action.value,
                    PointTransaction.reference_id.startswith(run_prefix, autoescape=True),
                )
            ).all()
            return set(rows)

        return run_in_transaction(self.session_factory, work, max_retries=self.max_retries, readonly=True)

    def get_user_streak(self, user_id: str) -> StreakResponse:
        def work(session: Session) -> StreakResponse:
            streak = session.get(UserStreak, user_id)
            if streak is None:
                return StreakResponse()
            return StreakResponse(
                current_streak=streak.current_streak,
                longest_streak=streak.longest_streak,
                last_login_date=streak.last_login_date,
                streak_start_date=streak.streak_start_date,
            )

        return run_in_transaction(self.session_factory, work, max_retries=self.max_retries, readonly=True)
