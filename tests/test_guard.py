import pytest

from pointsledger.services.guard import (
    DAILY_ACTION_LIMIT,
    DAILY_POINT_LIMIT,
    DUPLICATE,
    PARTIAL,
    RATE_LIMITED,
    GuardFacts,
    IdempotencyGuard,
    derive_idempotency_key,
)
from pointsledger.services.rules import RULES, ActionType


def make_guard(policy="reject"):
    return IdempotencyGuard(
        daily_point_limit=300,
        rapid_action_threshold=10,
        rapid_action_window_seconds=60,
        daily_limit_policy=policy,
    )


def facts(duplicate=False, action_count_today=0, recent_throttled_count=0, points_today=0):
    return GuardFacts(duplicate, action_count_today, recent_throttled_count, points_today)


def test_derive_idempotency_key():
    assert derive_idempotency_key(ActionType.COMMENT, "c-1") == "COMMENT:c-1"
    assert derive_idempotency_key(ActionType.COMMENT, "c-1", "explicit") == "explicit"
    assert derive_idempotency_key(ActionType.COMMENT) is None


def test_allows_fresh_award():
    decision = make_guard().evaluate(facts(), RULES[ActionType.COMMENT], 5)
    assert decision.allowed
    assert decision.points == 5
    assert decision.reason is None


def test_duplicate_wins_over_other_limits():
    decision = make_guard().evaluate(
        facts(duplicate=True, action_count_today=20, points_today=300),
        RULES[ActionType.COMMENT],
        5,
    )
    assert not decision.allowed
    assert decision.reason == DUPLICATE


def test_per_action_daily_limit():
    decision = make_guard().evaluate(facts(action_count_today=20), RULES[ActionType.COMMENT], 5)
    assert decision.reason == DAILY_ACTION_LIMIT


def test_rapid_actions_are_throttled():
    decision = make_guard().evaluate(facts(recent_throttled_count=10), RULES[ActionType.COMMENT], 5)
    assert decision.reason == RATE_LIMITED


def test_system_awards_skip_throttle():
    decision = make_guard().evaluate(facts(recent_throttled_count=50), RULES[ActionType.DAILY_LOGIN], 5)
    assert decision.allowed


def test_daily_point_limit_rejects_whole_award():
    decision = make_guard().evaluate(facts(points_today=260), RULES[ActionType.WORKSHOP_CHECKIN], 50)
    assert not decision.allowed
    assert decision.reason == DAILY_POINT_LIMIT


def test_award_landing_exactly_on_the_limit_is_allowed():
    decision = make_guard().evaluate(facts(points_today=250), RULES[ActionType.WORKSHOP_CHECKIN], 50)
    assert decision.allowed


def test_partial_policy_pays_remaining_headroom():
    decision = make_guard(PARTIAL).evaluate(facts(points_today=260), RULES[ActionType.WORKSHOP_CHECKIN], 50)
    assert decision.allowed
    assert decision.points == 40
    assert decision.reason == DAILY_POINT_LIMIT


def test_partial_policy_rejects_when_no_headroom_left():
    decision = make_guard(PARTIAL).evaluate(facts(points_today=300), RULES[ActionType.COMMENT], 5)
    assert not decision.allowed


def test_unknown_policy_is_rejected():
    with pytest.raises(ValueError):
        make_guard("sometimes")
