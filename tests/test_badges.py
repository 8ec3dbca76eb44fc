import threading

import pytest
from sqlalchemy import func, select

from pointsledger.models.achievement import BadgeCategory
from pointsledger.models.tables import UserBadge
from pointsledger.services.badges import BADGE_CATALOG, BadgeDefinition, validate_badge_catalog


def complete_lesson(service, clock, n):
    clock.advance(minutes=1)
    return service.ledger.add_points("alice", "LESSON_MARK_COMPLETE", reference_id=f"lesson-{n}", reference_type="lesson")


def codes(badges):
    return [badge.code for badge in badges]


def test_catalog_is_valid_and_synced(service):
    validate_badge_catalog()
    badges = service.get_all_badges()
    assert len(badges) == len(BADGE_CATALOG)
    assert {b.code for b in badges} == {d.code for d in BADGE_CATALOG}
    assert {b.id for b in badges} == {d.id for d in BADGE_CATALOG}


def test_catalog_rejects_unknown_requirement():
    bogus = BadgeDefinition("BOGUS", "Bogus", "", BadgeCategory.LEARNING, 1, 0, "no_such_stat", 1)
    with pytest.raises(RuntimeError):
        validate_badge_catalog([bogus])


def test_tenth_lesson_unlocks_diligent_learner_once(service, clock):
    complete_lesson(service, clock, 1)
    assert codes(service.check_and_unlock_badges("alice")) == ["FIRST_LESSON"]

    for n in range(2, 10):
        complete_lesson(service, clock, n)
        assert service.check_and_unlock_badges("alice") == []

    complete_lesson(service, clock, 10)
    assert codes(service.check_and_unlock_badges("alice")) == ["DILIGENT_LEARNER"]

    complete_lesson(service, clock, 11)
    assert service.check_and_unlock_badges("alice") == []

    owned = codes(ub.badge for ub in service.get_user_badges("alice"))
    assert sorted(owned) == ["DILIGENT_LEARNER", "FIRST_LESSON"]


def test_capped_lessons_still_count_and_reward_is_paid_later(service, clock):
    for n in range(1, 11):
        complete_lesson(service, clock, n)

    # Six lessons fit under the daily cap; the rest earn nothing today
    assert service.get_balance("alice").total_points == 300
    assert codes(service.check_and_unlock_badges("alice")) == ["FIRST_LESSON", "DILIGENT_LEARNER"]
    assert service.get_balance("alice").total_points == 300

    clock.advance(days=1)
    assert service.check_and_unlock_badges("alice") == []
    assert service.get_balance("alice").total_points == 300 + 10 + 50

    rewards = [t for t in service.get_transactions("alice", limit=50) if t.action_type == "BADGE_REWARD"]
    assert len(rewards) == 2


def test_repeated_reference_counts_once(service, clock):
    complete_lesson(service, clock, 1)
    complete_lesson(service, clock, 1)
    assert service.badges.get_user_stats("alice")["lessons_completed"] == 1


def test_progress_lists_only_locked_badges(service, clock):
    for n in range(1, 4):
        complete_lesson(service, clock, n)
    service.check_and_unlock_badges("alice")

    progress = {p.badge.code: p for p in service.get_badge_progress("alice")}
    assert "FIRST_LESSON" not in progress
    assert progress["DILIGENT_LEARNER"].progress == 3
    assert progress["DILIGENT_LEARNER"].requirement == 10
    assert progress["DILIGENT_LEARNER"].percentage == 30.0


def test_badge_stats_by_category(service, clock):
    complete_lesson(service, clock, 1)
    service.check_and_unlock_badges("alice")

    stats = service.get_badge_stats("alice")
    assert stats.total == len(BADGE_CATALOG)
    assert stats.unlocked == 1
    assert stats.by_category["learning"].unlocked == 1
    assert stats.by_category["workshop"].unlocked == 0


def test_stat_provider_feeds_requirements(service):
    service.badges.add_stat_provider(lambda session, user_id: {"invites": 3})
    assert "CONNECTOR" in codes(service.check_and_unlock_badges("alice"))


def test_safe_evaluation_logs_and_returns_nothing(service):
    def broken(session, user_id):
        raise RuntimeError("stats backend down")

    service.badges.add_stat_provider(broken)
    assert service.badges.check_and_unlock_safely("alice") == []


def test_awards_through_the_service_evaluate_badges(service):
    result = service.add_points("alice", "WORKSHOP_CHECKIN", reference_id="ws-1")

    assert result.awarded
    assert codes(ub.badge for ub in service.get_user_badges("alice")) == ["FIRST_CHECKIN"]
    assert service.get_balance("alice").total_points == 60


def test_award_can_defer_badge_evaluation(service):
    pending = []
    service.add_points("alice", "WORKSHOP_CHECKIN", reference_id="ws-1", schedule=lambda fn, *args: pending.append((fn, args)))

    assert service.get_user_badges("alice") == []
    for fn, args in pending:
        fn(*args)
    assert codes(ub.badge for ub in service.get_user_badges("alice")) == ["FIRST_CHECKIN"]


def test_rejected_award_does_not_evaluate_badges(service):
    pending = []
    service.add_points("alice", "WORKSHOP_CHECKIN", reference_id="ws-1", schedule=lambda fn, *args: pending.append(fn))
    service.add_points("alice", "WORKSHOP_CHECKIN", reference_id="ws-1", schedule=lambda fn, *args: pending.append(fn))
    assert len(pending) == 1


def test_unlock_badge_by_code_pays_reward_once(service):
    granted = service.unlock_badge("alice", "instructor")
    assert granted.success
    assert granted.badge.code == "INSTRUCTOR"
    assert granted.points_awarded == 100

    again = service.unlock_badge("alice", "INSTRUCTOR")
    assert not again.success
    assert again.error == "already_unlocked"
    assert again.points_awarded == 0
    assert service.get_balance("alice").total_points == 100


def test_unlock_unknown_badge(service):
    result = service.unlock_badge("alice", "NO_SUCH_BADGE")
    assert not result.success
    assert result.error == "badge_not_found"


def test_manual_badges_are_never_unlocked_from_stats(service):
    service.badges.add_stat_provider(lambda session, user_id: {"lessons_completed": 10_000})
    unlocked = codes(service.check_and_unlock_badges("alice"))

    assert "INSTRUCTOR" not in unlocked
    assert "LAUNCH_CREW" not in unlocked
    assert "INSTRUCTOR" not in {p.badge.code for p in service.get_badge_progress("alice")}


def test_catalog_accepts_badge_without_requirement():
    manual = BadgeDefinition("HOST", "Host", "Hosted a meetup", BadgeCategory.COMMUNITY, 1, 10)
    validate_badge_catalog([manual])

    half = BadgeDefinition("HALF", "Half", "", BadgeCategory.COMMUNITY, 1, 10, None, 5)
    with pytest.raises(RuntimeError):
        validate_badge_catalog([half])


def test_throttled_spam_does_not_count_toward_badges(service):
    results = [service.ledger.add_points("alice", "COMMENT") for _ in range(12)]

    assert sum(1 for r in results if r.awarded) == 10
    assert service.badges.get_user_stats("alice")["comments"] == 10


def test_concurrent_evaluations_unlock_once(service, clock, session_factory):
    complete_lesson(service, clock, 1)
    unlocked = []

    def evaluate():
        unlocked.extend(service.check_and_unlock_badges("alice"))

    threads = [threading.Thread(target=evaluate) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert codes(unlocked) == ["FIRST_LESSON"]
    with session_factory() as session:
        rows = session.scalar(select(func.count(UserBadge.id)).where(UserBadge.user_id == "alice"))
    assert rows == 1
    rewards = [t for t in service.get_transactions("alice", limit=50) if t.action_type == "BADGE_REWARD"]
    assert len(rewards) == 1
