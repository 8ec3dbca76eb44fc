import pytest

from pointsledger.core.exceptions import UnknownActionType
from pointsledger.services.rules import (
    RULES,
    ActionRule,
    ActionType,
    check_qualifier,
    level_for,
    parse_action_type,
    points_to_next_level,
    rules_table,
    validate_catalog,
)


def test_every_action_type_has_a_rule():
    assert set(RULES) == set(ActionType)


def test_catalog_values():
    assert RULES[ActionType.WORKSHOP_CHECKIN].points == 50
    assert RULES[ActionType.COMMENT].points == 5
    assert RULES[ActionType.COMMENT].daily_limit == 20
    assert RULES[ActionType.DAILY_LOGIN].daily_limit == 1
    assert RULES[ActionType.BADGE_REWARD].points is None


def test_parse_action_type_accepts_any_case():
    assert parse_action_type("workshop_checkin") is ActionType.WORKSHOP_CHECKIN
    assert parse_action_type(" COMMENT ") is ActionType.COMMENT
    assert parse_action_type(ActionType.SPEND) is ActionType.SPEND


def test_parse_action_type_rejects_unknown():
    with pytest.raises(UnknownActionType) as exc:
        parse_action_type("MADE_UP_ACTION")
    assert exc.value.action_type == "MADE_UP_ACTION"


def test_validate_catalog_rejects_missing_rules():
    partial = {ActionType.COMMENT: ActionRule(5)}
    with pytest.raises(RuntimeError):
        validate_catalog(partial)


def test_validate_catalog_rejects_non_positive_points():
    broken = dict(RULES)
    broken[ActionType.COMMENT] = ActionRule(0)
    with pytest.raises(RuntimeError):
        validate_catalog(broken)


def test_check_qualifier():
    assert check_qualifier(ActionType.COMMENT, content_length=19) is False
    assert check_qualifier(ActionType.COMMENT, content_length=20) is True
    assert check_qualifier(ActionType.ARTICLE_READ, seconds_spent=60) is False
    assert check_qualifier(ActionType.ARTICLE_READ, seconds_spent=120) is True
    assert check_qualifier(ActionType.WORKSHOP_CHECKIN) is True


@pytest.mark.parametrize("total,level,name", [
    (0, 1, "Observer"),
    (99, 1, "Observer"),
    (100, 2, "Learner"),
    (500, 3, "Practitioner"),
    (2500, 4, "AI Navigator"),
])
def test_level_for(total, level, name):
    assert level_for(total).level == level
    assert level_for(total).name == name


def test_points_to_next_level():
    assert points_to_next_level(40) == 60
    assert points_to_next_level(2000) is None


def test_rules_table_hides_debits():
    actions = {row["action_type"] for row in rules_table()}
    assert "SPEND" not in actions
    assert "WORKSHOP_CHECKIN" in actions
