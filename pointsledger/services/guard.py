"""Duplicate suppression and rate limits for prospective awards.

``collect_facts`` runs inside the ledger's unit of work, after the user's
balance row is locked, so the counts it reads cannot move under it.
``evaluate`` is a pure function of those facts.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pointsledger.core.clock import day_bounds
from pointsledger.models.tables import PointTransaction
from pointsledger.services.rules import RULES, ActionRule, ActionType

DUPLICATE = "duplicate"
DAILY_ACTION_LIMIT = "daily_action_limit"
RATE_LIMITED = "rate_limited"
DAILY_POINT_LIMIT = "daily_point_limit"

# What happens when an award would cross the global daily cap
REJECT = "reject"
PARTIAL = "partial"


@dataclass(frozen=True)
class GuardFacts:
    duplicate: bool
    action_count_today: int
    recent_throttled_count: int
    points_today: int


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    reason: Optional[str] = None
    points: int = 0


def derive_idempotency_key(
    action_type: ActionType,
    reference_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Optional[str]:
    """Explicit keys win; otherwise a reference makes (user, action, reference) the key."""
    if idempotency_key:
        return idempotency_key.strip()[:200]
    if reference_id:
        return f"{action_type.value}:{reference_id}"[:200]
    return None


class IdempotencyGuard:
    def __init__(
        self,
        daily_point_limit: int,
        rapid_action_threshold: int,
        rapid_action_window_seconds: int,
        daily_limit_policy: str = REJECT,
    ):
        if daily_limit_policy not in (REJECT, PARTIAL):
            raise ValueError(f"Unknown daily limit policy: {daily_limit_policy!r}")
        self.daily_point_limit = daily_point_limit
        self.daily_limit_policy = daily_limit_policy
        self.rapid_action_threshold = rapid_action_threshold
        self.rapid_action_window = timedelta(seconds=rapid_action_window_seconds)
        self._throttled_actions = [a.value for a, r in RULES.items() if r.throttled]

    def collect_facts(
        self,
        session: Session,
        user_id: str,
        action_type: ActionType,
        idempotency_key: Optional[str],
        now: datetime,
    ) -> GuardFacts:
        duplicate = False
        if idempotency_key:
            duplicate = session.scalar(
                select(PointTransaction.id).where(
                    PointTransaction.user_id == user_id,
                    PointTransaction.idempotency_key == idempotency_key,
                )
            ) is not None

        start, end = day_bounds(now.date())
        today = (
            PointTransaction.user_id == user_id,
            PointTransaction.created_at >= start,
            PointTransaction.created_at < end,
        )

        action_count_today = session.scalar(
            select(func.count(PointTransaction.id)).where(
                *today, PointTransaction.action_type == action_type.value
            )
        ) or 0

        points_today = session.scalar(
            select(func.coalesce(func.sum(PointTransaction.points), 0)).where(
                *today, PointTransaction.points > 0
            )
        ) or 0

        recent_throttled_count = session.scalar(
            select(func.count(PointTransaction.id)).where(
                PointTransaction.user_id == user_id,
                PointTransaction.created_at > now - self.rapid_action_window,
                PointTransaction.points > 0,
                PointTransaction.action_type.in_(self._throttled_actions),
            )
        ) or 0

        return GuardFacts(
            duplicate=duplicate,
            action_count_today=int(action_count_today),
            recent_throttled_count=int(recent_throttled_count),
            points_today=int(points_today),
        )

    def evaluate(self, facts: GuardFacts, rule: ActionRule, points: int) -> GuardDecision:
        if facts.duplicate:
            return GuardDecision(False, DUPLICATE)

        if rule.daily_limit is not None and facts.action_count_today >= rule.daily_limit:
            return GuardDecision(False, DAILY_ACTION_LIMIT)

        if rule.throttled and facts.recent_throttled_count >= self.rapid_action_threshold:
            return GuardDecision(False, RATE_LIMITED)

        headroom = self.daily_point_limit - facts.points_today
        if points > headroom:
            if self.daily_limit_policy == PARTIAL and headroom > 0:
                return GuardDecision(True, DAILY_POINT_LIMIT, points=headroom)
            return GuardDecision(False, DAILY_POINT_LIMIT)

        return GuardDecision(True, points=points)
