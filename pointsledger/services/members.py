from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pointsledger.core.clock import to_naive_utc
from pointsledger.models.tables import Member, PointBalance, UserActivity


def ensure_member(session: Session, user_id: str, now: datetime) -> Member:
    """Fetch the member row, creating it on first touch (joined_at = now)."""
    member = session.get(Member, user_id)
    if member is not None:
        return member
    try:
        with session.begin_nested():
            session.add(Member(user_id=user_id, role="user", joined_at=now))
    except IntegrityError:
        # Another request created it first
        pass
    return session.get(Member, user_id)


def lock_balance(session: Session, user_id: str, now: datetime) -> PointBalance:
    """Return the user's balance row locked for the rest of the transaction.

    The lock is what serializes awards and spends for one user; different
    users never contend.
    """
    stmt = select(PointBalance).where(PointBalance.user_id == user_id).with_for_update()
    balance = session.scalar(stmt)
    if balance is not None:
        return balance

    ensure_member(session, user_id, now)
    try:
        with session.begin_nested():
            session.add(PointBalance(user_id=user_id, total_points=0, spent_points=0, created_at=now, updated_at=now))
    except IntegrityError:
        pass
    return session.scalar(stmt)


def record_activity(session: Session, user_id: str, stat: str, reference_id: Optional[str], now: datetime) -> bool:
    """Count one real-world event towards a badge statistic; repeats of a reference count once."""
    if reference_id is not None:
        exists = session.scalar(
            select(UserActivity.id).where(
                UserActivity.user_id == user_id,
                UserActivity.stat == stat,
                UserActivity.reference_id == reference_id,
            )
        )
        if exists is not None:
            return False
    try:
        with session.begin_nested():
            session.add(UserActivity(user_id=user_id, stat=stat, reference_id=reference_id, created_at=now))
    except IntegrityError:
        return False
    return True


def upsert_member(
    session: Session,
    user_id: str,
    now: datetime,
    display_name: Optional[str] = None,
    avatar_url: Optional[str] = None,
    role: Optional[str] = None,
    joined_at: Optional[datetime] = None,
) -> Member:
    if joined_at is not None:
        joined_at = to_naive_utc(joined_at)
    member = ensure_member(session, user_id, joined_at or now)
    if display_name is not None:
        member.display_name = display_name
    if avatar_url is not None:
        member.avatar_url = avatar_url
    if role is not None:
        member.role = role
    if joined_at is not None:
        member.joined_at = joined_at
    return member
