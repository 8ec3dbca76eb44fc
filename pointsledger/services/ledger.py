"""The system of record for points.

Every award or spend is one transaction: lock the user's balance row, ask
the guard, append a ``PointTransaction`` and move the balance by the same
amount, commit. ``total_points`` is the sum of positive transactions and
``spent_points`` the negated sum of negative ones, always.
"""
import logging
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pointsledger.core.clock import Clock, day_bounds, utcnow
from pointsledger.core.database import run_in_transaction
from pointsledger.core.exceptions import InvalidPointsAmount
from pointsledger.models.points import (
    AddPointsResult,
    BalanceResponse,
    SpendPointsResult,
    TransactionResponse,
)
from pointsledger.models.tables import PointBalance, PointTransaction
from pointsledger.services.guard import DUPLICATE, RATE_LIMITED, IdempotencyGuard, derive_idempotency_key
from pointsledger.services.members import lock_balance, record_activity
from pointsledger.services.rules import RULES, ActionType, level_for, parse_action_type, points_to_next_level

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE = "insufficient_balance"
MAX_PAGE_SIZE = 100


def balance_response(user_id: str, balance: Optional[PointBalance]) -> BalanceResponse:
    total = balance.total_points if balance else 0
    spent = balance.spent_points if balance else 0
    level = level_for(total)
    return BalanceResponse(
        user_id=user_id,
        total_points=total,
        available_points=total - spent,
        spent_points=spent,
        level=level.level,
        level_name=level.name,
        points_to_next_level=points_to_next_level(total),
    )


class Ledger:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        guard: IdempotencyGuard,
        clock: Clock = utcnow,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.05,
    ):
        self.session_factory = session_factory
        self.guard = guard
        self.clock = clock
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

    def add_points(
        self,
        user_id: str,
        action_type,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
        points: Optional[int] = None,
    ) -> AddPointsResult:
        """Award the catalog value of ``action_type`` to a user, at most once per key.

        ``points`` is only accepted for actions whose amount the system
        decides (badge rewards). Raises ``UnknownActionType`` for action types
        the catalog does not know; guard rejections come back as
        ``awarded=False`` results.
        """
        action = parse_action_type(action_type)
        rule = RULES[action]
        if rule.debit:
            raise InvalidPointsAmount(f"{action.value} is recorded through spend_points")
        if rule.points is None:
            if points is None or points <= 0:
                raise InvalidPointsAmount(f"{action.value} needs a positive points amount")
            amount = int(points)
        else:
            if points is not None and points != rule.points:
                raise InvalidPointsAmount(f"{action.value} is worth a fixed {rule.points} points")
            amount = rule.points

        key = derive_idempotency_key(action, reference_id, idempotency_key)

        def work(session: Session) -> AddPointsResult:
            now = self.clock()
            balance = lock_balance(session, user_id, now)

            facts = self.guard.collect_facts(session, user_id, action, key, now)
            decision = self.guard.evaluate(facts, rule, amount)

            # Stats count the real-world event even when its points are capped, but not throttled spam
            if rule.stat and decision.reason not in (DUPLICATE, RATE_LIMITED):
                record_activity(session, user_id, rule.stat, reference_id, now)

            if not decision.allowed:
                return AddPointsResult(
                    awarded=False,
                    points_added=0,
                    new_balance=balance.available_points,
                    reason=decision.reason,
                )

            txn = PointTransaction(
                user_id=user_id,
                points=decision.points,
                action_type=action.value,
                reference_id=reference_id,
                reference_type=reference_type,
                idempotency_key=key,
                description=(description or "")[:255] or None,
                created_at=now,
            )
            session.add(txn)
            balance.total_points += decision.points
            balance.updated_at = now
            session.flush()

            return AddPointsResult(
                awarded=True,
                points_added=decision.points,
                new_balance=balance.available_points,
                reason=decision.reason,
                transaction_id=txn.id,
            )

        try:
            result = self._run(work)
        except IntegrityError:
            # A concurrent request committed the same idempotency key first
            logger.info("Duplicate award suppressed by constraint: user=%s action=%s key=%s", user_id, action.value, key)
            return AddPointsResult(
                awarded=False,
                points_added=0,
                new_balance=self.get_balance(user_id).available_points,
                reason=DUPLICATE,
            )

        if result.awarded:
            logger.info(
                "Awarded %s points to user=%s for %s (balance %s)",
                result.points_added, user_id, action.value, result.new_balance,
            )
        else:
            logger.debug("Award rejected for user=%s action=%s: %s", user_id, action.value, result.reason)
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
        if points is None or int(points) <= 0:
            raise InvalidPointsAmount("Points to spend must be greater than 0")
        points = int(points)
        # Buying the same item twice is two purchases; only an explicit key makes a retry
        key = derive_idempotency_key(ActionType.SPEND, None, idempotency_key)

        def work(session: Session) -> SpendPointsResult:
            now = self.clock()
            balance = lock_balance(session, user_id, now)

            if key is not None:
                existing = session.scalar(
                    select(PointTransaction.id).where(
                        PointTransaction.user_id == user_id,
                        PointTransaction.idempotency_key == key,
                    )
                )
                if existing is not None:
                    return SpendPointsResult(
                        success=True,
                        new_balance=balance.available_points,
                        duplicate=True,
                        transaction_id=existing,
                    )

            # Checked under the row lock, so no other spend can slip in between
            if points > balance.available_points:
                return SpendPointsResult(
                    success=False,
                    new_balance=balance.available_points,
                    error=INSUFFICIENT_BALANCE,
                )

            txn = PointTransaction(
                user_id=user_id,
                points=-points,
                action_type=ActionType.SPEND.value,
                reference_id=reference_id,
                reference_type=reference_type,
                idempotency_key=key,
                description=(description or "")[:255] or None,
                created_at=now,
            )
            session.add(txn)
            balance.spent_points += points
            balance.updated_at = now
            session.flush()

            return SpendPointsResult(success=True, new_balance=balance.available_points, transaction_id=txn.id)

        try:
            result = self._run(work)
        except IntegrityError:
            logger.info("Duplicate spend suppressed by constraint: user=%s key=%s", user_id, key)
            return SpendPointsResult(
                success=True,
                new_balance=self.get_balance(user_id).available_points,
                duplicate=True,
            )

        if result.success and not result.duplicate:
            logger.info("User %s spent %s points (balance %s)", user_id, points, result.new_balance)
        elif not result.success:
            logger.info("Spend of %s points refused for user=%s: %s", points, user_id, result.error)
        return result

    def get_balance(self, user_id: str) -> BalanceResponse:
        """Current balance; a user seen for the first time gets a zero balance row."""

        def work(session: Session) -> BalanceResponse:
            balance = session.get(PointBalance, user_id)
            if balance is None:
                balance = lock_balance(session, user_id, self.clock())
            return balance_response(user_id, balance)

        return self._run(work)

    def get_transactions(self, user_id: str, limit: int = 20, offset: int = 0) -> List[TransactionResponse]:
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = max(0, int(offset))

        def work(session: Session) -> List[TransactionResponse]:
            rows = session.scalars(
                select(PointTransaction)
                .where(PointTransaction.user_id == user_id)
                .order_by(PointTransaction.created_at.desc(), PointTransaction.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return [TransactionResponse.model_validate(row) for row in rows]

        return self._run(work, readonly=True)

    def get_today_points(self, user_id: str) -> int:
        """Positive points earned so far today (UTC), for 'x / 300 today' displays"""
        start, end = day_bounds(self.clock().date())

        def work(session: Session) -> int:
            total = session.scalar(
                select(func.coalesce(func.sum(PointTransaction.points), 0)).where(
                    PointTransaction.user_id == user_id,
                    PointTransaction.created_at >= start,
                    PointTransaction.created_at < end,
                    PointTransaction.points > 0,
                )
            )
            return int(total or 0)

        return self._run(work, readonly=True)
