"""Rule catalog: what each action is worth and how often it may pay out.

The table is static and validated at import time. Raw strings coming from
outside the service become ``ActionType`` only through ``parse_action_type``.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, NamedTuple, Optional

from pointsledger.core.exceptions import UnknownActionType


class ActionType(str, Enum):
    # Participation
    PROFILE_COMPLETE = "PROFILE_COMPLETE"
    DAILY_LOGIN = "DAILY_LOGIN"
    WEEKLY_STREAK = "WEEKLY_STREAK"
    MONTHLY_STREAK = "MONTHLY_STREAK"
    INVITE_USER = "INVITE_USER"
    # Workshops
    WORKSHOP_CHECKIN = "WORKSHOP_CHECKIN"
    WORKSHOP_SUBMISSION = "WORKSHOP_SUBMISSION"
    WORKSHOP_PREVIEW = "WORKSHOP_PREVIEW"
    WORKSHOP_REALTIME = "WORKSHOP_REALTIME"
    WORKSHOP_REVIEW = "WORKSHOP_REVIEW"
    WORKSHOP_ITERATION = "WORKSHOP_ITERATION"
    WORKSHOP_TOP3 = "WORKSHOP_TOP3"
    WORKSHOP_INSTRUCTOR = "WORKSHOP_INSTRUCTOR"
    WORKSHOP_FEEDBACK = "WORKSHOP_FEEDBACK"
    WORKSHOP_FEEDBACK_QUALITY = "WORKSHOP_FEEDBACK_QUALITY"
    # Recorded courses
    LESSON_MARK_COMPLETE = "LESSON_MARK_COMPLETE"
    COURSE_REVIEW = "COURSE_REVIEW"
    COURSE_QUESTION = "COURSE_QUESTION"
    COURSE_ANSWER = "COURSE_ANSWER"
    COURSE_FEATURED = "COURSE_FEATURED"
    COURSE_NOTE = "COURSE_NOTE"
    COURSE_MARATHON = "COURSE_MARATHON"
    COURSE_50_PERCENT = "COURSE_50_PERCENT"
    COURSE_100_PERCENT = "COURSE_100_PERCENT"
    # AI tool directory
    TOOL_EXPERIENCE = "TOOL_EXPERIENCE"
    TOOL_RATING = "TOOL_RATING"
    TOOL_CASE = "TOOL_CASE"
    TOOL_COMPARISON = "TOOL_COMPARISON"
    TOOL_REVIEW = "TOOL_REVIEW"
    # Community
    ARTICLE_READ = "ARTICLE_READ"
    ARTICLE_READ_MONTHLY = "ARTICLE_READ_MONTHLY"
    DISCUSSION_POST = "DISCUSSION_POST"
    DISCUSSION_LEAD = "DISCUSSION_LEAD"
    COMMENT = "COMMENT"
    # System
    BADGE_REWARD = "BADGE_REWARD"
    SPEND = "SPEND"


@dataclass(frozen=True)
class ActionRule:
    # None means the amount is supplied by the system at award time
    points: Optional[int]
    daily_limit: Optional[int] = None
    # Named user statistic this action feeds (used by badge requirements)
    stat: Optional[str] = None
    # Qualifiers the calling feature checks before awarding
    min_content_length: Optional[int] = None
    min_seconds: Optional[int] = None
    debit: bool = False
    # System-issued awards are exempt from the rapid-action throttle
    throttled: bool = True


DAILY_POINT_LIMIT = 300

MIN_COMMENT_LENGTH = 20
MIN_REVIEW_LENGTH = 50
MIN_READING_SECONDS = 120

RULES: Mapping[ActionType, ActionRule] = {
    ActionType.PROFILE_COMPLETE: ActionRule(20, stat="profile_completed"),
    ActionType.DAILY_LOGIN: ActionRule(5, daily_limit=1, throttled=False),
    ActionType.WEEKLY_STREAK: ActionRule(50, daily_limit=1, throttled=False),
    ActionType.MONTHLY_STREAK: ActionRule(200, daily_limit=1, throttled=False),
    ActionType.INVITE_USER: ActionRule(80, stat="invites"),

    ActionType.WORKSHOP_CHECKIN: ActionRule(50, stat="checkins"),
    ActionType.WORKSHOP_SUBMISSION: ActionRule(200, stat="submissions"),
    ActionType.WORKSHOP_PREVIEW: ActionRule(30),
    ActionType.WORKSHOP_REALTIME: ActionRule(10, daily_limit=5),
    ActionType.WORKSHOP_REVIEW: ActionRule(50, stat="workshop_reviews", min_content_length=MIN_REVIEW_LENGTH),
    ActionType.WORKSHOP_ITERATION: ActionRule(100),
    ActionType.WORKSHOP_TOP3: ActionRule(80, stat="workshop_top3"),
    ActionType.WORKSHOP_INSTRUCTOR: ActionRule(400),
    ActionType.WORKSHOP_FEEDBACK: ActionRule(10),
    ActionType.WORKSHOP_FEEDBACK_QUALITY: ActionRule(30),

    ActionType.LESSON_MARK_COMPLETE: ActionRule(50, stat="lessons_completed"),
    ActionType.COURSE_REVIEW: ActionRule(50, stat="course_reviews", min_content_length=MIN_REVIEW_LENGTH),
    ActionType.COURSE_QUESTION: ActionRule(15, daily_limit=10, stat="questions", min_content_length=MIN_COMMENT_LENGTH),
    ActionType.COURSE_ANSWER: ActionRule(30, stat="answers", min_content_length=MIN_COMMENT_LENGTH),
    ActionType.COURSE_FEATURED: ActionRule(80),
    ActionType.COURSE_NOTE: ActionRule(80, stat="notes"),
    ActionType.COURSE_MARATHON: ActionRule(100, daily_limit=1),
    ActionType.COURSE_50_PERCENT: ActionRule(100),
    ActionType.COURSE_100_PERCENT: ActionRule(300, stat="courses_completed"),

    ActionType.TOOL_EXPERIENCE: ActionRule(30, stat="tool_experiences"),
    ActionType.TOOL_RATING: ActionRule(5, daily_limit=10, stat="tool_ratings"),
    ActionType.TOOL_CASE: ActionRule(120),
    ActionType.TOOL_COMPARISON: ActionRule(100),
    ActionType.TOOL_REVIEW: ActionRule(150, min_content_length=MIN_REVIEW_LENGTH),

    ActionType.ARTICLE_READ: ActionRule(5, daily_limit=5, stat="articles_read", min_seconds=MIN_READING_SECONDS),
    ActionType.ARTICLE_READ_MONTHLY: ActionRule(10),
    ActionType.DISCUSSION_POST: ActionRule(50, stat="discussions"),
    ActionType.DISCUSSION_LEAD: ActionRule(100),
    ActionType.COMMENT: ActionRule(5, daily_limit=20, stat="comments", min_content_length=MIN_COMMENT_LENGTH),

    ActionType.BADGE_REWARD: ActionRule(None, throttled=False),
    ActionType.SPEND: ActionRule(None, debit=True, throttled=False),
}


def validate_catalog(rules: Mapping[ActionType, ActionRule] = RULES) -> None:
    missing = [action.value for action in ActionType if action not in rules]
    if missing:
        raise RuntimeError(f"Point rules missing for: {', '.join(missing)}")

    for action, rule in rules.items():
        if rule.points is not None and rule.points <= 0:
            raise RuntimeError(f"{action.value}: fixed point values must be positive")
        if rule.daily_limit is not None and rule.daily_limit <= 0:
            raise RuntimeError(f"{action.value}: daily limit must be positive")
        if rule.debit and rule.points is not None:
            raise RuntimeError(f"{action.value}: debit actions take their amount from the caller")


validate_catalog()


def parse_action_type(raw) -> ActionType:
    if isinstance(raw, ActionType):
        return raw
    try:
        return ActionType(str(raw).strip().upper())
    except ValueError:
        raise UnknownActionType(raw) from None


def get_rule(action_type) -> ActionRule:
    return RULES[parse_action_type(action_type)]


def check_qualifier(action_type, content_length: Optional[int] = None, seconds_spent: Optional[int] = None) -> bool:
    """Whether a piece of content or a visit is substantial enough to earn points.

    Calling features run this before ``add_points``; the ledger itself only
    enforces frequency and duplication.
    """
    rule = get_rule(action_type)
    if rule.min_content_length is not None and (content_length or 0) < rule.min_content_length:
        return False
    if rule.min_seconds is not None and (seconds_spent or 0) < rule.min_seconds:
        return False
    return True


# ---------------------------------------------------------------------------
# Levels
# ---------------------------------------------------------------------------

class Level(NamedTuple):
    level: int
    name: str
    min_points: int


LEVELS: List[Level] = [
    Level(1, "Observer", 0),
    Level(2, "Learner", 100),
    Level(3, "Practitioner", 500),
    Level(4, "AI Navigator", 2000),
]


def level_for(total_points: int) -> Level:
    current = LEVELS[0]
    for level in LEVELS:
        if total_points >= level.min_points:
            current = level
    return current


def points_to_next_level(total_points: int) -> Optional[int]:
    """Points still needed for the next level, None at the top level"""
    current = level_for(total_points)
    for level in LEVELS:
        if level.level == current.level + 1:
            return level.min_points - total_points
    return None


def rules_table() -> List[Dict]:
    return [
        {
            "action_type": action.value,
            "points": rule.points,
            "daily_limit": rule.daily_limit,
            "stat": rule.stat,
            "min_content_length": rule.min_content_length,
            "min_seconds": rule.min_seconds,
        }
        for action, rule in RULES.items()
        if not rule.debit
    ]
