"""Tests for condition evaluation, trigger matching and definition parsing."""

import pytest

from src.automation.domain import (
    Condition,
    ConditionEvaluator,
    FieldDelta,
    LifecycleEvent,
    RuleDefinitionParser,
    TimeWindow,
    Trigger,
    TriggerMatcher,
)
from src.automation.domain.templates import get_template
from src.config import OPEN_STATUSES, ConditionOperator, TicketStatus, TriggerType
from src.core import RuleDefinitionException
from tests.helpers import NOW, make_ticket


def cond(field, operator, value):
    return Condition(field=field, operator=ConditionOperator(operator), value=value)


class TestConditionEvaluator:
    """Tests for ConditionEvaluator."""

    def test_equals_matches_string_field(self):
        ticket = make_ticket(priority="urgent")
        assert ConditionEvaluator.evaluate_condition(cond("priority", "equals", "urgent"), ticket)
        assert not ConditionEvaluator.evaluate_condition(cond("priority", "equals", "low"), ticket)

    def test_equals_is_case_sensitive(self):
        ticket = make_ticket(priority="urgent")
        assert not ConditionEvaluator.evaluate_condition(cond("priority", "equals", "Urgent"), ticket)

    def test_not_equals(self):
        ticket = make_ticket(status="open")
        assert ConditionEvaluator.evaluate_condition(cond("status", "not_equals", "closed"), ticket)
        assert not ConditionEvaluator.evaluate_condition(cond("status", "not_equals", "open"), ticket)

    def test_contains_is_case_insensitive_substring(self):
        ticket = make_ticket(subject="VPN connection drops")
        assert ConditionEvaluator.evaluate_condition(cond("subject", "contains", "vpn"), ticket)
        assert ConditionEvaluator.evaluate_condition(cond("subject", "not_contains", "printer"), ticket)

    def test_contains_on_tags_is_membership(self):
        ticket = make_ticket(tags=("vip", "billing"))
        assert ConditionEvaluator.evaluate_condition(cond("tags", "contains", "vip"), ticket)
        # Membership, not substring of a tag
        assert not ConditionEvaluator.evaluate_condition(cond("tags", "contains", "bill"), ticket)
        assert ConditionEvaluator.evaluate_condition(cond("tags", "not_contains", "legal"), ticket)

    def test_numeric_comparisons(self):
        ticket = make_ticket(tags=("a", "b", "c"))
        assert ConditionEvaluator.evaluate_condition(cond("tagsCount", "greater_than", "2"), ticket)
        assert ConditionEvaluator.evaluate_condition(cond("tags_count", "less_than", "4"), ticket)
        assert not ConditionEvaluator.evaluate_condition(cond("tags_count", "greater_than", "3"), ticket)

    def test_unparsable_numbers_are_false(self):
        ticket = make_ticket(priority="high")
        assert not ConditionEvaluator.evaluate_condition(cond("priority", "greater_than", "1"), ticket)
        assert not ConditionEvaluator.evaluate_condition(cond("tags_count", "less_than", "many"), ticket)

    def test_missing_field_is_false_not_error(self):
        ticket = make_ticket()
        assert not ConditionEvaluator.evaluate_condition(cond("nonexistent", "equals", "x"), ticket)
        assert not ConditionEvaluator.evaluate_condition(cond("nonexistent", "not_equals", "x"), ticket)

    def test_none_field_is_false(self):
        ticket = make_ticket(assigned_to=None)
        assert not ConditionEvaluator.evaluate_condition(cond("assignedTo", "equals", "agent-1"), ticket)
        assert not ConditionEvaluator.evaluate_condition(cond("assignedTo", "not_equals", "agent-1"), ticket)

    def test_ticket_prefix_and_alias(self):
        ticket = make_ticket(assigned_to="agent-7")
        assert ConditionEvaluator.evaluate_condition(cond("ticket.assignedTo", "equals", "agent-7"), ticket)

    def test_empty_conditions_are_vacuously_true(self):
        assert ConditionEvaluator.evaluate([], make_ticket())

    def test_all_conditions_must_hold(self):
        ticket = make_ticket(priority="urgent", category="network")
        conditions = [
            cond("priority", "equals", "urgent"),
            cond("category", "equals", "network"),
        ]
        assert ConditionEvaluator.evaluate(conditions, ticket)
        conditions.append(cond("status", "equals", "closed"))
        assert not ConditionEvaluator.evaluate(conditions, ticket)

    def test_reference_fields_prefer_display_name(self):
        ticket = make_ticket(category="64f0c0ffee", category_name="technical")

        assert ConditionEvaluator.evaluate_condition(cond("category", "equals", "technical"), ticket)
        assert not ConditionEvaluator.evaluate_condition(cond("category", "equals", "64f0c0ffee"), ticket)
        assert ConditionEvaluator.evaluate_condition(cond("categoryId", "equals", "64f0c0ffee"), ticket)

    def test_reference_fields_fall_back_to_id(self):
        ticket = make_ticket(assigned_to="agent-3")

        assert ConditionEvaluator.evaluate_condition(cond("assignedTo", "equals", "agent-3"), ticket)
        assert ConditionEvaluator.evaluate_condition(cond("assigned_to_id", "equals", "agent-3"), ticket)

    def test_category_template_matches_populated_category(self):
        template = get_template("auto-assign-by-category")
        conditions = [
            cond(c.field, c.operator.value, c.value) for c in template.conditions
        ]

        technical = make_ticket(category="64f0c0ffee", category_name="technical")
        billing = make_ticket(category="64f0beef", category_name="billing")

        assert ConditionEvaluator.evaluate(conditions, technical)
        assert not ConditionEvaluator.evaluate(conditions, billing)


class TestTriggerMatcher:
    """Tests for TriggerMatcher."""

    def test_type_must_match(self):
        trigger = Trigger(type=TriggerType.TICKET_CREATED)
        assert TriggerMatcher.matches(trigger, LifecycleEvent(TriggerType.TICKET_CREATED, "T1"))
        assert not TriggerMatcher.matches(trigger, LifecycleEvent(TriggerType.TICKET_UPDATED, "T1"))

    def test_status_changed_requires_status_delta(self):
        trigger = Trigger(type=TriggerType.STATUS_CHANGED)
        with_delta = LifecycleEvent(
            TriggerType.STATUS_CHANGED, "T1", delta=FieldDelta("status", "open", "resolved")
        )
        wrong_field = LifecycleEvent(
            TriggerType.STATUS_CHANGED, "T1", delta=FieldDelta("priority", "low", "high")
        )
        assert TriggerMatcher.matches(trigger, with_delta)
        assert not TriggerMatcher.matches(trigger, wrong_field)
        assert not TriggerMatcher.matches(trigger, LifecycleEvent(TriggerType.STATUS_CHANGED, "T1"))

    def test_target_value_param(self):
        trigger = Trigger(type=TriggerType.STATUS_CHANGED, params={"to": "resolved"})
        resolved = LifecycleEvent(
            TriggerType.STATUS_CHANGED, "T1", delta=FieldDelta("status", "open", "resolved")
        )
        closed = LifecycleEvent(
            TriggerType.STATUS_CHANGED, "T1", delta=FieldDelta("status", "open", "closed")
        )
        assert TriggerMatcher.matches(trigger, resolved)
        assert not TriggerMatcher.matches(trigger, closed)

    def test_assigned_changed_accepts_alias(self):
        trigger = Trigger(type=TriggerType.ASSIGNED_CHANGED)
        event = LifecycleEvent(
            TriggerType.ASSIGNED_CHANGED, "T1", delta=FieldDelta("assignedTo", None, "agent-1")
        )
        assert TriggerMatcher.matches(trigger, event)

    def test_time_based_fires_once_per_crossing(self):
        trigger = Trigger(type=TriggerType.TIME_BASED, params={"minutes": "120", "since": "created"})

        def scan(elapsed):
            return LifecycleEvent(
                TriggerType.TIME_BASED, "T1",
                minutes_since_created=elapsed, minutes_since_updated=0, window_minutes=1
            )

        assert not TriggerMatcher.matches(trigger, scan(119.5))
        assert TriggerMatcher.matches(trigger, scan(120.2))
        assert not TriggerMatcher.matches(trigger, scan(121.2))

    def test_time_based_since_updated(self):
        trigger = Trigger(type=TriggerType.TIME_BASED, params={"minutes": "30", "since": "updated"})
        event = LifecycleEvent(
            TriggerType.TIME_BASED, "T1", minutes_since_created=500, minutes_since_updated=30.5
        )
        assert TriggerMatcher.matches(trigger, event)

    def test_time_based_default_threshold(self):
        trigger = Trigger(type=TriggerType.TIME_BASED)
        event = LifecycleEvent(TriggerType.TIME_BASED, "T1", minutes_since_created=45)
        assert not TriggerMatcher.matches(trigger, event, default_minutes=60)
        assert TriggerMatcher.matches(trigger, event, default_minutes=30)


class TestRuleDefinitionParser:
    """Tests for RuleDefinitionParser."""

    def test_valid_definition(self):
        trigger, conditions, actions = RuleDefinitionParser.parse(
            "ticket_created",
            {},
            [{"field": "priority", "operator": "equals", "value": "urgent"}],
            [{"type": "assign_ticket", "parameters": {"assignee": "agent-1"}}],
        )
        assert trigger.type == TriggerType.TICKET_CREATED
        assert conditions[0].operator == ConditionOperator.EQUALS
        assert actions[0].parameters == {"assignee": "agent-1"}

    def test_values_are_stringified(self):
        _, conditions, actions = RuleDefinitionParser.parse(
            "ticket_updated",
            None,
            [{"field": "tags_count", "operator": "greater_than", "value": 3}],
            [{"type": "send_notification", "parameters": {"message": "hi", "urgent": True}}],
        )
        assert conditions[0].value == "3"
        assert actions[0].parameters["urgent"] == "true"

    def test_collects_every_error(self):
        with pytest.raises(RuleDefinitionException) as exc_info:
            RuleDefinitionParser.parse(
                "ticket_exploded",
                {},
                [{"field": "priority", "operator": "roughly", "value": "x"}],
                [{"type": "delete_ticket", "parameters": {}}],
            )
        errors = exc_info.value.errors
        assert len(errors) == 3
        assert any("trigger.type" in e for e in errors)
        assert any("conditions[0].operator" in e for e in errors)
        assert any("actions[0].type" in e for e in errors)

    def test_time_based_minutes_must_be_positive(self):
        with pytest.raises(RuleDefinitionException):
            RuleDefinitionParser.parse("time_based", {"minutes": "0"}, [], [])
        with pytest.raises(RuleDefinitionException):
            RuleDefinitionParser.parse("time_based", {"since": "resolved"}, [], [])

    def test_condition_field_required(self):
        with pytest.raises(RuleDefinitionException) as exc_info:
            RuleDefinitionParser.parse(
                "ticket_created", {}, [{"field": "", "operator": "equals", "value": "x"}], []
            )
        assert "conditions[0].field is required" in exc_info.value.errors


class TestTimeWindow:

    def test_plain_window_is_inclusive(self):
        window = TimeWindow("09:00", "17:00")
        assert window.contains(NOW.replace(hour=9, minute=0))
        assert window.contains(NOW.replace(hour=17, minute=0, second=59))
        assert not window.contains(NOW.replace(hour=17, minute=1))
        assert not window.contains(NOW.replace(hour=8, minute=59))

    def test_window_wraps_past_midnight(self):
        window = TimeWindow("22:00", "06:00")
        assert window.contains(NOW.replace(hour=23, minute=30))
        assert window.contains(NOW.replace(hour=5, minute=0))
        assert not window.contains(NOW.replace(hour=12))

    def test_window_is_read_in_its_time_zone(self):
        # 12:00 UTC is 07:00 in New York (EST on 2 March)
        window = TimeWindow("06:00", "08:00", "America/New_York")
        assert window.contains(NOW)
        assert not TimeWindow("06:00", "08:00").contains(NOW)

    def test_parser_accepts_missing_window(self):
        errors = []
        assert RuleDefinitionParser.parse_time_window(None, errors) is None
        assert RuleDefinitionParser.parse_time_window({}, errors) is None
        assert errors == []

    def test_parser_rejects_half_window(self):
        errors = []
        window = RuleDefinitionParser.parse_time_window({"start": "09:00"}, errors)
        assert window is None
        assert errors == ["time_window.end '' must be HH:MM (00:00-23:59)"]


class TestTicketStatus:

    def test_statuses_compare_as_strings(self):
        assert TicketStatus.IN_PROGRESS == "in-progress"
        assert TicketStatus("on-hold") is TicketStatus.ON_HOLD

    def test_open_statuses_are_plain_values(self):
        assert OPEN_STATUSES == ["open", "in-progress", "pending", "on-hold"]
        assert all(type(s) is str for s in OPEN_STATUSES)
