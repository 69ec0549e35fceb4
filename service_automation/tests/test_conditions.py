"""
Unit tests for condition evaluation.
"""

from unittest.mock import patch

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_automation.app.rules.conditions import (
    evaluate_conditions, evaluate_condition, parse_conditions,
    should_trigger_on_update, matches_stage_change
)
from service_automation.app.rules.models import (
    Condition, ConditionGroup, ConditionOperator, MatchMode, Record
)
from shared.errors import ValidationError


def make_record(**overrides) -> Record:
    payload = {
        "id": "rec-1",
        "org_id": "org-1",
        "module_id": "leads",
        "title": "Acme Corp",
        "status": "open",
        "stage": "new",
        "owner_id": "agent-1",
        "email": "buyer@acme.example",
        "tags": ["inbound", "vip"],
        "data": {"amount": 5000, "region": "EMEA", "close_date": "2024-06-01", "notes": ""},
    }
    payload.update(overrides)
    return Record.from_dict(payload)


class TestConditionParsing:
    """Test cases for condition tree parsing."""

    def test_parse_match_rules_shape(self):
        group = parse_conditions({
            "match": "any",
            "rules": [{"field": "stage", "operator": "eq", "value": "new"}],
        })

        assert group.match == MatchMode.ANY
        assert len(group.rules) == 1
        assert group.rules[0].operator == ConditionOperator.EQ

    def test_parse_logic_conditions_shape(self):
        group = parse_conditions({
            "logic": "OR",
            "conditions": [{"field": "stage", "operator": "equals", "value": "new"}],
        })

        assert group.match == MatchMode.ANY
        assert group.rules[0].operator == ConditionOperator.EQ

    def test_parse_bare_list_means_all(self):
        group = parse_conditions([
            {"field": "stage", "operator": "eq", "value": "new"},
            {"field": "amount", "operator": "greater_than", "value": 10},
        ])

        assert group.match == MatchMode.ALL
        assert [r.operator for r in group.rules] == [ConditionOperator.EQ, ConditionOperator.GT]

    def test_parse_empty(self):
        assert parse_conditions(None).rules == []
        assert parse_conditions({}).rules == []

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            parse_conditions([{"field": "stage", "operator": "resembles", "value": "new"}])

    def test_missing_field_rejected(self):
        with pytest.raises(ValidationError):
            parse_conditions([{"operator": "eq", "value": "new"}])

    def test_in_requires_list(self):
        with pytest.raises(ValidationError):
            parse_conditions([{"field": "stage", "operator": "in", "value": "new"}])


class TestConditionEvaluation:
    """Test cases for evaluating condition trees."""

    def test_empty_group_matches(self):
        assert evaluate_conditions(ConditionGroup(), make_record()) is True

    def test_equals_is_case_insensitive(self):
        condition = Condition(field="region", operator=ConditionOperator.EQ, value="emea")
        assert evaluate_condition(condition, make_record()) is True

    def test_equals_coerces_numbers(self):
        condition = Condition(field="amount", operator=ConditionOperator.EQ, value="5000")
        assert evaluate_condition(condition, make_record()) is True

    def test_none_only_equals_none(self):
        condition = Condition(field="missing", operator=ConditionOperator.EQ, value="")
        assert evaluate_condition(condition, make_record()) is False

        condition = Condition(field="missing", operator=ConditionOperator.EQ, value=None)
        assert evaluate_condition(condition, make_record()) is True

    def test_contains_on_lists_and_strings(self):
        record = make_record()
        assert evaluate_condition(Condition("tags", ConditionOperator.CONTAINS, "VIP"), record) is True
        assert evaluate_condition(Condition("title", ConditionOperator.CONTAINS, "acme"), record) is True
        assert evaluate_condition(Condition("tags", ConditionOperator.NOT_CONTAINS, "cold"), record) is True

    def test_starts_and_ends_with(self):
        record = make_record()
        assert evaluate_condition(Condition("email", ConditionOperator.STARTS_WITH, "buyer"), record) is True
        assert evaluate_condition(Condition("email", ConditionOperator.ENDS_WITH, ".example"), record) is True
        assert evaluate_condition(Condition("phone", ConditionOperator.STARTS_WITH, "+1"), record) is False

    def test_in_and_not_in(self):
        record = make_record()
        assert evaluate_condition(Condition("stage", ConditionOperator.IN, ["new", "qualified"]), record) is True
        assert evaluate_condition(Condition("stage", ConditionOperator.NOT_IN, ["won", "lost"]), record) is True

    def test_numeric_comparisons(self):
        record = make_record()
        assert evaluate_condition(Condition("amount", ConditionOperator.GT, 1000), record) is True
        assert evaluate_condition(Condition("amount", ConditionOperator.GTE, 5000), record) is True
        assert evaluate_condition(Condition("amount", ConditionOperator.LT, 1000), record) is False
        assert evaluate_condition(Condition("amount", ConditionOperator.LTE, "5000"), record) is True

    def test_date_comparisons(self):
        record = make_record()
        assert evaluate_condition(Condition("close_date", ConditionOperator.LT, "2024-07-01"), record) is True
        assert evaluate_condition(Condition("close_date", ConditionOperator.GT, "2024-07-01"), record) is False

    def test_uncomparable_values_do_not_match(self):
        record = make_record()
        assert evaluate_condition(Condition("region", ConditionOperator.GT, 10), record) is False
        assert evaluate_condition(Condition("missing", ConditionOperator.LT, 10), record) is False

    def test_empty_and_null_operators(self):
        record = make_record()
        assert evaluate_condition(Condition("notes", ConditionOperator.IS_EMPTY), record) is True
        assert evaluate_condition(Condition("notes", ConditionOperator.IS_NOT_NULL), record) is True
        assert evaluate_condition(Condition("missing", ConditionOperator.IS_NULL), record) is True
        assert evaluate_condition(Condition("tags", ConditionOperator.NOT_EMPTY), record) is True

    def test_dotted_data_path(self):
        record = make_record(data={"company": {"size": 250}})
        assert evaluate_condition(Condition("company.size", ConditionOperator.GT, 100), record) is True
        assert evaluate_condition(Condition("data.company.size", ConditionOperator.GT, 100), record) is True

    def test_nested_groups(self):
        tree = {
            "match": "all",
            "rules": [
                {"field": "amount", "operator": "gt", "value": 1000},
                {
                    "match": "any",
                    "rules": [
                        {"field": "region", "operator": "eq", "value": "apac"},
                        {"field": "tags", "operator": "contains", "value": "vip"},
                    ],
                },
            ],
        }
        assert evaluate_conditions(tree, make_record()) is True
        assert evaluate_conditions(tree, make_record(tags=[])) is False

    def test_contains_on_dict_field_checks_keys(self):
        record = make_record(data={"meta": {"source": "web"}})
        assert evaluate_condition(Condition("meta", ConditionOperator.CONTAINS, "SOURCE"), record) is True
        assert evaluate_condition(Condition("meta", ConditionOperator.CONTAINS, ["source"]), record) is False
        assert evaluate_condition(Condition("meta", ConditionOperator.NOT_CONTAINS, {"a": 1}), record) is True

    def test_all_stops_at_first_false(self):
        tree = [
            {"field": "amount", "operator": "lt", "value": 10},
            {"field": "region", "operator": "eq", "value": "emea"},
        ]
        with patch("service_automation.app.rules.conditions.evaluate_condition",
                   wraps=evaluate_condition) as spy:
            assert evaluate_conditions(tree, make_record()) is False
        assert spy.call_count == 1

    def test_any_stops_at_first_true(self):
        tree = {"match": "any", "rules": [
            {"field": "amount", "operator": "gt", "value": 10},
            {"field": "region", "operator": "eq", "value": "apac"},
        ]}
        with patch("service_automation.app.rules.conditions.evaluate_condition",
                   wraps=evaluate_condition) as spy:
            assert evaluate_conditions(tree, make_record()) is True
        assert spy.call_count == 1


class TestChangeOperators:
    """Test cases for operators comparing against the previous record."""

    def test_changed_requires_previous_record(self):
        condition = Condition("stage", ConditionOperator.CHANGED)
        assert evaluate_condition(condition, make_record(), None) is False

    def test_changed(self):
        condition = Condition("stage", ConditionOperator.CHANGED)
        assert evaluate_condition(condition, make_record(stage="qualified"), make_record()) is True
        assert evaluate_condition(condition, make_record(), make_record()) is False

    def test_changed_to(self):
        condition = Condition("stage", ConditionOperator.CHANGED_TO, "qualified")
        assert evaluate_condition(condition, make_record(stage="qualified"), make_record()) is True
        assert evaluate_condition(condition, make_record(stage="won"), make_record()) is False

    def test_changed_from_uses_previous_value(self):
        condition = Condition("stage", ConditionOperator.CHANGED_FROM, value=None, previous_value="new")
        assert evaluate_condition(condition, make_record(stage="won"), make_record()) is True

        condition = Condition("stage", ConditionOperator.CHANGED_FROM, value="lost")
        assert evaluate_condition(condition, make_record(stage="won"), make_record()) is False


class TestTriggerGates:
    """Test cases for update and stage-change trigger gates."""

    def test_no_watch_fields_always_triggers(self):
        assert should_trigger_on_update({}, make_record(), make_record()) is True

    def test_watch_fields(self):
        config = {"watch_fields": ["amount"]}
        changed = make_record(data={"amount": 10, "region": "EMEA"})

        assert should_trigger_on_update(config, changed, make_record()) is True
        assert should_trigger_on_update(config, make_record(title="Renamed"), make_record()) is False
        assert should_trigger_on_update({"watchFields": ["title"]}, make_record(title="Renamed"),
                                        make_record()) is True

    def test_stage_change_requires_actual_change(self):
        assert matches_stage_change({}, make_record(), make_record()) is False
        assert matches_stage_change({}, make_record(stage="won"), None) is False
        assert matches_stage_change({}, make_record(stage="won"), make_record()) is True

    def test_stage_change_from_to_lists(self):
        config = {"from_stages": ["new"], "to_stages": ["qualified"]}

        assert matches_stage_change(config, make_record(stage="qualified"), make_record()) is True
        assert matches_stage_change(config, make_record(stage="won"), make_record()) is False
        assert matches_stage_change(config, make_record(stage="qualified"),
                                    make_record(stage="contacted")) is False
