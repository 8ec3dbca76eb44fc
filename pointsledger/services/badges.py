"""Badge catalog and the evaluator that unlocks badges from user statistics.

Unlocking is idempotent and irreversible: the (user, badge) unique
constraint decides races, and the reward award is keyed by the badge id so
running the evaluator again never pays twice. Evaluation is best-effort and
eventual; it never rolls back the action that triggered it.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pointsledger.core.clock import Clock, utcnow
from pointsledger.core.database import run_in_transaction
from pointsledger.models.achievement import (
    BadgeCategory,
    BadgeProgress,
    BadgeResponse,
    BadgeStats,
    CategoryStats,
    UnlockBadgeResult,
    UserBadgeResponse,
)
from pointsledger.models.tables import Badge, PointBalance, PointTransaction, UserActivity, UserBadge, UserStreak
from pointsledger.services.ledger import Ledger
from pointsledger.services.members import ensure_member
from pointsledger.services.rules import RULES, ActionType

logger = logging.getLogger(__name__)

BADGE_NAMESPACE = uuid.UUID("6f1c2d4e-8a3b-5c7d-9e0f-1a2b3c4d5e6f")

BADGE_NOT_FOUND = "badge_not_found"
ALREADY_UNLOCKED = "already_unlocked"

# A collaborator-supplied source of extra statistics, read inside the evaluation transaction
StatProvider = Callable[[Session, str], Mapping[str, int]]


@dataclass(frozen=True)
class BadgeDefinition:
    code: str
    name: str
    description: str
    category: BadgeCategory
    tier: int
    points_reward: int
    # No requirement: granted explicitly with unlock_badge (events, instructors)
    requirement_type: Optional[str] = None
    requirement_value: Optional[int] = None

    @property
    def id(self) -> str:
        return str(uuid.uuid5(BADGE_NAMESPACE, self.code))


BADGE_CATALOG: Sequence[BadgeDefinition] = (
    # Learning
    BadgeDefinition("FIRST_LESSON", "First Lesson", "Completed your first lesson", BadgeCategory.LEARNING, 1, 10, "lessons_completed", 1),
    BadgeDefinition("DILIGENT_LEARNER", "Diligent Learner", "Completed 10 lessons", BadgeCategory.LEARNING, 2, 50, "lessons_completed", 10),
    BadgeDefinition("COURSE_MASTER", "Course Master", "Completed 50 lessons", BadgeCategory.LEARNING, 3, 200, "lessons_completed", 50),
    BadgeDefinition("FINISHER", "Finisher", "Finished a whole course", BadgeCategory.LEARNING, 2, 50, "courses_completed", 1),
    BadgeDefinition("NOTE_TAKER", "Note Taker", "Shared 5 course notes", BadgeCategory.LEARNING, 1, 20, "notes", 5),
    # Workshops
    BadgeDefinition("FIRST_CHECKIN", "First Check-in", "Checked in to your first workshop", BadgeCategory.WORKSHOP, 1, 10, "checkins", 1),
    BadgeDefinition("WORKSHOP_REGULAR", "Workshop Regular", "Checked in to 5 workshops", BadgeCategory.WORKSHOP, 2, 50, "checkins", 5),
    BadgeDefinition("MAKER", "Maker", "Submitted your first workshop project", BadgeCategory.WORKSHOP, 1, 20, "submissions", 1),
    BadgeDefinition("PROLIFIC_MAKER", "Prolific Maker", "Submitted 10 workshop projects", BadgeCategory.WORKSHOP, 3, 200, "submissions", 10),
    BadgeDefinition("PODIUM", "Podium", "Placed top 3 in a workshop", BadgeCategory.WORKSHOP, 2, 50, "workshop_top3", 1),
    BadgeDefinition("INSTRUCTOR", "Instructor", "Led a workshop as its instructor", BadgeCategory.WORKSHOP, 3, 100),
    # Community
    BadgeDefinition("CURIOUS_MIND", "Curious Mind", "Asked 10 course questions", BadgeCategory.COMMUNITY, 1, 20, "questions", 10),
    BadgeDefinition("HELPFUL_PEER", "Helpful Peer", "Answered 10 questions", BadgeCategory.COMMUNITY, 2, 50, "answers", 10),
    BadgeDefinition("CONVERSATION_STARTER", "Conversation Starter", "Started 5 discussions", BadgeCategory.COMMUNITY, 2, 50, "discussions", 5),
    BadgeDefinition("TOOL_EXPLORER", "Tool Explorer", "Shared 5 AI tool experiences", BadgeCategory.COMMUNITY, 1, 20, "tool_experiences", 5),
    BadgeDefinition("CONNECTOR", "Connector", "Invited 3 friends", BadgeCategory.COMMUNITY, 2, 50, "invites", 3),
    # Achievements
    BadgeDefinition("ALL_SET", "All Set", "Completed your profile", BadgeCategory.ACHIEVEMENT, 1, 10, "profile_completed", 1),
    BadgeDefinition("WEEK_WARRIOR", "Week Warrior", "Logged in 7 days in a row", BadgeCategory.ACHIEVEMENT, 1, 30, "streak", 7),
    BadgeDefinition("UNSTOPPABLE", "Unstoppable", "Reached a 30-day login streak", BadgeCategory.ACHIEVEMENT, 3, 100, "longest_streak", 30),
    BadgeDefinition("POINT_COLLECTOR", "Point Collector", "Earned 1,000 points", BadgeCategory.ACHIEVEMENT, 2, 50, "total_points", 1000),
    BadgeDefinition("POINT_HOARDER", "Point Hoarder", "Earned 5,000 points", BadgeCategory.ACHIEVEMENT, 3, 100, "total_points", 5000),
    BadgeDefinition("COLLECTOR", "Collector", "Unlocked 10 badges", BadgeCategory.ACHIEVEMENT, 3, 100, "badges", 10),
    BadgeDefinition("LAUNCH_CREW", "Launch Crew", "Took part in the platform launch event", BadgeCategory.ACHIEVEMENT, 1, 20),
)

DERIVED_STATS = ("total_points", "available_points", "streak", "longest_streak", "badges")
KNOWN_STATS = frozenset({rule.stat for rule in RULES.values() if rule.stat} | set(DERIVED_STATS))


def validate_badge_catalog(catalog: Iterable[BadgeDefinition] = BADGE_CATALOG, known_stats=KNOWN_STATS) -> None:
    seen = set()
    for badge in catalog:
        if badge.code in seen:
            raise RuntimeError(f"Duplicate badge code: {badge.code}")
        seen.add(badge.code)
        if badge.tier not in (1, 2, 3):
            raise RuntimeError(f"{badge.code}: tier must be 1, 2 or 3")
        if badge.points_reward < 0:
            raise RuntimeError(f"{badge.code}: points reward cannot be negative")
        if badge.requirement_type is None:
            if badge.requirement_value is not None:
                raise RuntimeError(f"{badge.code}: requirement value without a requirement type")
            continue
        if badge.requirement_value is None or badge.requirement_value <= 0:
            raise RuntimeError(f"{badge.code}: requirement value must be positive")
        if badge.requirement_type not in known_stats:
            raise RuntimeError(f"{badge.code}: unknown requirement type {badge.requirement_type!r}")


validate_badge_catalog()


def _badge_response(row: Badge) -> BadgeResponse:
    return BadgeResponse.model_validate(row)


class BadgeEvaluator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        ledger: Ledger,
        clock: Clock = utcnow,
        catalog: Sequence[BadgeDefinition] = BADGE_CATALOG,
        stat_providers: Sequence[StatProvider] = (),
        max_passes: int = 3,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.05,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.clock = clock
        self.catalog = catalog
        self.stat_providers = list(stat_providers)
        self.max_passes = max_passes
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds

    def _run(self, work, readonly: bool = False):
        return run_in_transaction(
            self.session_factory,
            work,
            max_retries=self.max_retries,
            retry_backoff_seconds=self.retry_backoff_seconds,
            readonly=readonly,
        )

    def sync_catalog(self) -> int:
        """Write the in-code catalog to the badges table; badges dropped from the catalog are deactivated."""

        def work(session: Session) -> int:
            codes = set()
            for index, definition in enumerate(self.catalog):
                codes.add(definition.code)
                row = session.get(Badge, definition.id)
                if row is None:
                    row = Badge(id=definition.id, code=definition.code)
                    session.add(row)
                row.name = definition.name
                row.description = definition.description
                row.category = definition.category.value
                row.tier = definition.tier
                row.points_reward = definition.points_reward
                row.requirement_type = definition.requirement_type
                row.requirement_value = definition.requirement_value
                row.order_index = index
                row.is_active = True

            for row in session.scalars(select(Badge).where(Badge.code.not_in(codes))):
                row.is_active = False
            return len(codes)

        count = self._run(work)
        logger.info("Badge catalog synced (%s active badges)", count)
        return count

    def add_stat_provider(self, provider: StatProvider) -> None:
        self.stat_providers.append(provider)

    def build_snapshot(self, session: Session, user_id: str) -> Dict[str, int]:
        """Named statistics badge requirements are checked against."""
        stats: Dict[str, int] = {stat: 0 for stat in KNOWN_STATS}

        for stat, count in session.execute(
            select(UserActivity.stat, func.count(UserActivity.id))
            .where(UserActivity.user_id == user_id)
            .group_by(UserActivity.stat)
        ):
            stats[stat] = int(count)

        balance = session.get(PointBalance, user_id)
        if balance is not None:
            stats["total_points"] = balance.total_points
            stats["available_points"] = balance.available_points

        streak = session.get(UserStreak, user_id)
        if streak is not None:
            stats["streak"] = streak.current_streak
            stats["longest_streak"] = streak.longest_streak

        stats["badges"] = session.scalar(
            select(func.count(UserBadge.id)).where(UserBadge.user_id == user_id)
        ) or 0

        for provider in self.stat_providers:
            stats.update({name: int(value) for name, value in provider(session, user_id).items()})
        return stats

    def get_user_stats(self, user_id: str) -> Dict[str, int]:
        return self._run(lambda session: self.build_snapshot(session, user_id), readonly=True)

    def check_and_unlock(self, user_id: str) -> List[BadgeResponse]:
        """Unlock every badge whose requirement the user now meets.

        Returns only badges unlocked by this call. Passes repeat because a
        badge reward can itself push the user over a points or collection
        threshold.
        """
        self._settle_pending_rewards(user_id)

        unlocked: List[BadgeResponse] = []
        for _ in range(self.max_passes):
            newly = self._unlock_pass(user_id)
            if not newly:
                break
            for badge in newly:
                self._pay_reward(user_id, badge)
            unlocked.extend(newly)
        return unlocked

    def check_and_unlock_safely(self, user_id: str) -> List[BadgeResponse]:
        """Variant for background use: failures are logged, never raised."""
        try:
            return self.check_and_unlock(user_id)
        except Exception:
            logger.exception("Badge evaluation failed for user=%s", user_id)
            return []

    def unlock_badge(self, user_id: str, code: str) -> UnlockBadgeResult:
        """Grant one badge by code, whatever its requirement, and pay its reward.

        Used for badges no statistic can express (event attendance, leading a
        workshop). Granting an owned badge changes nothing.
        """
        code = code.strip().upper()

        def work(session: Session) -> UnlockBadgeResult:
            badge = session.scalar(select(Badge).where(Badge.code == code, Badge.is_active.is_(True)))
            if badge is None:
                return UnlockBadgeResult(success=False, error=BADGE_NOT_FOUND)
            ensure_member(session, user_id, self.clock())
            try:
                with session.begin_nested():
                    session.add(UserBadge(user_id=user_id, badge_id=badge.id, unlocked_at=self.clock()))
            except IntegrityError:
                return UnlockBadgeResult(success=False, badge=_badge_response(badge), error=ALREADY_UNLOCKED)
            return UnlockBadgeResult(success=True, badge=_badge_response(badge))

        result = self._run(work)
        if result.success:
            logger.info("User %s was granted badge %s", user_id, code)
            result.points_awarded = self._pay_reward(user_id, result.badge)
        return result

    def _unlock_pass(self, user_id: str) -> List[BadgeResponse]:
        def work(session: Session) -> List[BadgeResponse]:
            now = self.clock()
            stats = self.build_snapshot(session, user_id)
            owned = set(session.scalars(select(UserBadge.badge_id).where(UserBadge.user_id == user_id)))
            candidates = session.scalars(
                select(Badge).where(Badge.is_active.is_(True)).order_by(Badge.order_index)
            ).all()

            newly = []
            for badge in candidates:
                if badge.id in owned or badge.requirement_type is None:
                    continue
                if stats.get(badge.requirement_type, 0) < badge.requirement_value:
                    continue
                try:
                    with session.begin_nested():
                        session.add(UserBadge(user_id=user_id, badge_id=badge.id, unlocked_at=now))
                except IntegrityError:
                    # A concurrent evaluation unlocked it first
                    continue
                newly.append(_badge_response(badge))
            return newly

        newly = self._run(work)
        for badge in newly:
            logger.info("User %s unlocked badge %s", user_id, badge.code)
        return newly

    def _pay_reward(self, user_id: str, badge: BadgeResponse) -> int:
        if badge.points_reward <= 0:
            return 0
        result = self.ledger.add_points(
            user_id,
            ActionType.BADGE_REWARD,
            reference_id=badge.id,
            reference_type="badge",
            idempotency_key=badge.id,
            description=f"Badge unlocked: {badge.name}",
            points=badge.points_reward,
        )
        if not result.awarded:
            logger.info("Reward for badge %s deferred for user=%s: %s", badge.code, user_id, result.reason)
        return result.points_added

    def _settle_pending_rewards(self, user_id: str) -> None:
        """Retry rewards of unlocked badges that an earlier cap or failure left unpaid."""

        def work(session: Session) -> List[BadgeResponse]:
            paid = select(PointTransaction.idempotency_key).where(
                PointTransaction.user_id == user_id,
                PointTransaction.action_type == ActionType.BADGE_REWARD.value,
            )
            rows = session.scalars(
                select(Badge)
                .join(UserBadge, UserBadge.badge_id == Badge.id)
                .where(
                    UserBadge.user_id == user_id,
                    Badge.points_reward > 0,
                    Badge.id.not_in(paid),
                )
                .order_by(UserBadge.unlocked_at)
            ).all()
            return [_badge_response(row) for row in rows]

        for badge in self._run(work, readonly=True):
            self._pay_reward(user_id, badge)

    def get_all_badges(self) -> List[BadgeResponse]:
        def work(session: Session) -> List[BadgeResponse]:
            rows = session.scalars(
                select(Badge).where(Badge.is_active.is_(True)).order_by(Badge.category, Badge.order_index)
            ).all()
            return [_badge_response(row) for row in rows]

        return self._run(work, readonly=True)

    def get_user_badges(self, user_id: str) -> List[UserBadgeResponse]:
        def work(session: Session) -> List[UserBadgeResponse]:
            rows = session.execute(
                select(Badge, UserBadge.unlocked_at)
                .join(UserBadge, UserBadge.badge_id == Badge.id)
                .where(UserBadge.user_id == user_id)
                .order_by(UserBadge.unlocked_at.desc(), UserBadge.id.desc())
            ).all()
            return [UserBadgeResponse(badge=_badge_response(badge), unlocked_at=unlocked_at) for badge, unlocked_at in rows]

        return self._run(work, readonly=True)

    def get_badge_stats(self, user_id: str) -> BadgeStats:
        all_badges = self.get_all_badges()
        unlocked_ids = {ub.badge.id for ub in self.get_user_badges(user_id)}

        by_category: Dict[str, CategoryStats] = {}
        for badge in all_badges:
            entry = by_category.setdefault(badge.category.value, CategoryStats())
            entry.total += 1
            if badge.id in unlocked_ids:
                entry.unlocked += 1

        return BadgeStats(
            total=len(all_badges),
            unlocked=sum(1 for badge in all_badges if badge.id in unlocked_ids),
            by_category=by_category,
        )

    def get_badge_progress(self, user_id: str) -> List[BadgeProgress]:
        """Progress toward every badge the user can still earn from their stats"""
        stats = self.get_user_stats(user_id)
        unlocked_ids = {ub.badge.id for ub in self.get_user_badges(user_id)}

        progress = []
        for badge in self.get_all_badges():
            if badge.id in unlocked_ids or badge.requirement_type is None:
                continue
            requirement = badge.requirement_value
            current = min(stats.get(badge.requirement_type, 0), requirement)
            progress.append(BadgeProgress(
                badge=badge,
                progress=current,
                requirement=requirement,
                percentage=round(current / requirement * 100, 1),
            ))
        return progress
