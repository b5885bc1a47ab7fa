"""Tests for AutomationOrchestrator."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.automation.application import AutomationOrchestrator
from src.automation.domain import EvaluationStage, FieldDelta, LifecycleEvent, TimeWindow
from src.config import ActionType, ConditionOperator, TriggerType
from src.core import RepositoryException, ResourceNotFoundException
from tests.helpers import NOW, make_rule, make_ticket


URGENT_ASSIGN = dict(
    trigger_type=TriggerType.TICKET_CREATED,
    conditions=[("priority", ConditionOperator.EQUALS, "urgent")],
    actions=[(ActionType.ASSIGN_TICKET, {"assignee": "agent-42"})],
)


def created(ticket_id="T1"):
    return LifecycleEvent(type=TriggerType.TICKET_CREATED, ticket_id=ticket_id)


@pytest.fixture
def notifying_orchestrator(
    rule_cache, repository, ticket_service, executor, config_provider, notification_service
):
    return AutomationOrchestrator(
        rule_cache=rule_cache,
        rule_repository=repository,
        ticket_service=ticket_service,
        executor=executor,
        config_provider=config_provider,
        notification_service=notification_service,
        scan_interval_seconds=60
    )


class TestRuleFiring:
    """One evaluation pass over active rules."""

    @pytest.mark.asyncio
    async def test_urgent_ticket_is_assigned_once(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule("urgent", **URGENT_ASSIGN))
        ticket_service.add(make_ticket(priority="urgent"))

        report = await orchestrator.handle_event(created())

        assert ticket_service.mutating_calls() == [("assign_ticket", ("T1", "agent-42"))]
        assert report.fired_rule_ids == ["urgent"]
        assert (await repository.get_by_id("urgent")).execution_count == 1

    @pytest.mark.asyncio
    async def test_low_priority_ticket_is_untouched(
        self, orchestrator, repository, ticket_service, notification_service
    ):
        await repository.create(make_rule("urgent", **URGENT_ASSIGN))
        ticket_service.add(make_ticket(priority="low"))

        report = await orchestrator.handle_event(created())

        assert ticket_service.mutating_calls() == []
        assert notification_service.calls == []
        assert report.evaluations[0].skipped_reason == "conditions_not_met"
        assert (await repository.get_by_id("urgent")).execution_count == 0

    @pytest.mark.asyncio
    async def test_inactive_rule_never_acts(self, orchestrator, repository, ticket_service, executor):
        await repository.create(make_rule("urgent", is_active=False, **URGENT_ASSIGN))
        ticket_service.add(make_ticket(priority="urgent"))
        executor.execute = AsyncMock(wraps=executor.execute)

        for event_type in TriggerType:
            await orchestrator.handle_event(LifecycleEvent(type=event_type, ticket_id="T1"))

        executor.execute.assert_not_called()
        assert ticket_service.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_count_is_one_per_firing_even_with_failures(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule(
            "three",
            actions=[
                (ActionType.ADD_TAG, {"tag": "triaged"}),
                (ActionType.ADD_TAG, {}),
                (ActionType.ADD_COMMENT, {"comment": "Tagged"}),
            ],
        ))

        report = await orchestrator.handle_event(created())

        evaluation = report.evaluations[0]
        assert evaluation.stage == EvaluationStage.RECORDED
        assert evaluation.failed_actions == 1
        stored = await repository.get_by_id("three")
        assert stored.execution_count == 1
        assert stored.failure_count == 1
        assert stored.last_error == "missing_parameter"

    @pytest.mark.asyncio
    async def test_missing_tag_parameter_does_not_raise(self, orchestrator, repository):
        await repository.create(make_rule("bad", actions=[(ActionType.ADD_TAG, {})]))

        report = await orchestrator.handle_event(created())

        result = report.evaluations[0].action_results[0]
        assert not result.success
        assert result.error == "missing_parameter"

    @pytest.mark.asyncio
    async def test_category_scoping(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule(
            "network-only",
            categories=["network"],
            actions=[(ActionType.ADD_TAG, {"tag": "net"})],
        ))
        ticket_service.add(make_ticket(category="hardware"))

        report = await orchestrator.handle_event(created())

        assert report.evaluations[0].skipped_reason == "out_of_scope"
        assert ticket_service.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_execution_order_and_stop_on_first_match(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule(
            "second", execution_order=2, actions=[(ActionType.ADD_TAG, {"tag": "second"})]
        ))
        await repository.create(make_rule(
            "first", execution_order=1, stop_on_first_match=True,
            actions=[(ActionType.ADD_TAG, {"tag": "first"})]
        ))

        report = await orchestrator.handle_event(created())

        assert report.fired_rule_ids == ["first"]
        assert ticket_service.mutating_calls()[0][1][1] == "first"
        assert (await repository.get_by_id("second")).execution_count == 0

    @pytest.mark.asyncio
    async def test_max_executions_cap(self, orchestrator, repository):
        await repository.create(make_rule(
            "once", max_executions=1, actions=[(ActionType.ADD_COMMENT, {"comment": "hi"})]
        ))

        first = await orchestrator.handle_event(created())
        second = await orchestrator.handle_event(created())

        assert first.fired_rule_ids == ["once"]
        assert second.fired_rule_ids == []
        assert (await repository.get_by_id("once")).execution_count == 1

    @pytest.mark.asyncio
    async def test_unknown_ticket_skips_pass(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule("any", actions=[(ActionType.ADD_TAG, {"tag": "x"})]))

        report = await orchestrator.handle_event(created("missing"))

        assert report.evaluations == []
        assert ticket_service.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_rule_store_failure_propagates(self, orchestrator, repository):
        await repository.create(make_rule("any", actions=[(ActionType.ADD_TAG, {"tag": "x"})]))
        repository.claim_execution = AsyncMock(side_effect=RepositoryException("db down"))

        with pytest.raises(RepositoryException):
            await orchestrator.handle_event(created())


class TestDerivedEvents:
    """Rule actions feed a bounded breadth-first event queue."""

    @pytest.mark.asyncio
    async def test_status_change_triggers_follow_up_rule(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule(
            "start", actions=[(ActionType.CHANGE_STATUS, {"value": "in-progress"})]
        ))
        await repository.create(make_rule(
            "follow-up",
            trigger_type=TriggerType.STATUS_CHANGED,
            trigger_params={"to": "in-progress"},
            actions=[(ActionType.ADD_COMMENT, {"comment": "Work started"})],
        ))

        report = await orchestrator.handle_event(created())

        assert report.processed_events >= 2
        assert report.fired_rule_ids == ["start", "follow-up"]
        assert ("add_comment", ("T1", "Work started")) in ticket_service.mutating_calls()

    @pytest.mark.asyncio
    async def test_loop_guard_drops_event_and_flags_rule(self, orchestrator, repository, ticket_service):
        ticket_service.add(make_ticket(status="pending"))
        await repository.create(make_rule(
            "reopen",
            trigger_type=TriggerType.STATUS_CHANGED,
            trigger_params={"to": "pending"},
            actions=[(ActionType.CHANGE_STATUS, {"value": "open"})],
        ))
        await repository.create(make_rule(
            "park",
            trigger_type=TriggerType.STATUS_CHANGED,
            trigger_params={"to": "open"},
            actions=[(ActionType.CHANGE_STATUS, {"value": "pending"})],
        ))

        report = await orchestrator.handle_event(LifecycleEvent(
            type=TriggerType.STATUS_CHANGED,
            ticket_id="T1",
            delta=FieldDelta("status", "open", "pending"),
        ))

        # Depths 0..5 processed, the depth-6 event is dropped
        assert report.processed_events == 6
        assert len(report.dropped_events) == 1
        dropped = report.dropped_events[0]
        assert dropped.depth == 6
        assert dropped.origin_rule_id == "park"

        park = await repository.get_by_id("park")
        reopen = await repository.get_by_id("reopen")
        assert park.execution_count == 3
        assert reopen.execution_count == 3
        assert park.last_error.startswith("loop_guard")


class TestDryRun:
    """test_rule evaluates without side effects."""

    @pytest.mark.asyncio
    async def test_dry_run_is_idempotent_and_side_effect_free(
        self, orchestrator, repository, ticket_service, notification_service
    ):
        await repository.create(make_rule("urgent", is_active=False, **URGENT_ASSIGN))
        ticket_service.add(make_ticket(priority="urgent"))

        results = [await orchestrator.test_rule("urgent", "T1") for _ in range(3)]

        assert results[0] == results[1] == results[2]
        assert results[0].matches_trigger
        assert results[0].matches_conditions
        assert results[0].should_execute
        assert ticket_service.mutating_calls() == []
        assert notification_service.calls == []
        assert (await repository.get_by_id("urgent")).execution_count == 0

    @pytest.mark.asyncio
    async def test_dry_run_reports_condition_mismatch(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule("urgent", **URGENT_ASSIGN))
        ticket_service.add(make_ticket(priority="low"))

        result = await orchestrator.test_rule("urgent", "T1")

        assert result.matches_trigger
        assert not result.matches_conditions
        assert not result.should_execute

    @pytest.mark.asyncio
    async def test_dry_run_delta_trigger_uses_current_value(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule(
            "resolved", trigger_type=TriggerType.STATUS_CHANGED, trigger_params={"to": "resolved"}
        ))
        ticket_service.add(make_ticket(status="open"))

        assert not (await orchestrator.test_rule("resolved", "T1")).matches_trigger

        ticket_service.add(make_ticket(status="resolved"))
        assert (await orchestrator.test_rule("resolved", "T1")).matches_trigger

    @pytest.mark.asyncio
    async def test_scheduled_trigger_counts_as_matched(self, orchestrator, repository):
        await repository.create(make_rule("sla", trigger_type=TriggerType.SLA_BREACHED))

        result = await orchestrator.test_rule("sla", "T1")

        assert result.matches_trigger

    @pytest.mark.asyncio
    async def test_unknown_rule_or_ticket(self, orchestrator, repository):
        await repository.create(make_rule("r"))

        with pytest.raises(ResourceNotFoundException):
            await orchestrator.test_rule("nope", "T1")
        with pytest.raises(ResourceNotFoundException):
            await orchestrator.test_rule("r", "nope")


class TestPeriodicScan:
    """run_scan synthesizes time-based and SLA events."""

    @pytest.mark.asyncio
    async def test_time_based_rule_fires_when_threshold_crossed(
        self, orchestrator, repository, ticket_service
    ):
        await repository.create(make_rule(
            "overdue",
            trigger_type=TriggerType.TIME_BASED,
            trigger_params={"minutes": "120", "since": "created"},
            conditions=[("status", ConditionOperator.EQUALS, "open")],
            actions=[(ActionType.ADD_TAG, {"tag": "overdue"})],
        ))
        ticket_service.add(make_ticket("T1", created_at=NOW - timedelta(minutes=120, seconds=10)))
        ticket_service.add(make_ticket("T2", created_at=NOW - timedelta(minutes=30)))
        ticket_service.add(make_ticket("T3", created_at=NOW - timedelta(minutes=300)))

        report = await orchestrator.run_scan(now=NOW)

        assert report.tickets_scanned == 3
        assert report.rules_fired == 1
        calls = ticket_service.mutating_calls()
        assert len(calls) == 1
        assert calls[0][0] == "update_tags"
        assert calls[0][1][:2] == ("T1", "overdue")

    @pytest.mark.asyncio
    async def test_sla_breach_within_window(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule(
            "breach",
            trigger_type=TriggerType.SLA_BREACHED,
            actions=[(ActionType.ESCALATE_TICKET, {"to": "supervisor"})],
        ))
        ticket_service.add(make_ticket("T1", sla_due_at=NOW - timedelta(seconds=30)))
        ticket_service.add(make_ticket("T2", sla_due_at=NOW - timedelta(minutes=10)))
        ticket_service.add(make_ticket("T3", sla_due_at=NOW + timedelta(minutes=10)))

        report = await orchestrator.run_scan(now=NOW)

        assert report.rules_fired == 1
        assert ("escalate", ("T1", "supervisor")) in ticket_service.mutating_calls()

    @pytest.mark.asyncio
    async def test_closed_tickets_are_not_scanned(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule(
            "overdue",
            trigger_type=TriggerType.TIME_BASED,
            trigger_params={"minutes": "120"},
            actions=[(ActionType.ADD_TAG, {"tag": "overdue"})],
        ))
        ticket_service.tickets.clear()
        ticket_service.add(make_ticket(
            "T1", status="closed", created_at=NOW - timedelta(minutes=120, seconds=10)
        ))

        report = await orchestrator.run_scan(now=NOW)

        assert report.tickets_scanned == 0
        assert ticket_service.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_scan_skipped_without_scheduled_rules(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule("created"))

        report = await orchestrator.run_scan(now=NOW)

        assert report.events_synthesized == 0
        assert all(name != "list_open_tickets" for name, _ in ticket_service.calls)

    @pytest.mark.asyncio
    async def test_execution_cap_holds_across_concurrent_scan_passes(
        self, orchestrator, repository, ticket_service
    ):
        await repository.create(make_rule(
            "breach-once",
            trigger_type=TriggerType.SLA_BREACHED,
            max_executions=1,
            actions=[(ActionType.ADD_COMMENT, {"comment": "SLA breached"})],
        ))
        ticket_service.tickets.clear()
        for index, seconds in enumerate((10, 20, 30), start=1):
            ticket_service.add(make_ticket(f"T{index}", sla_due_at=NOW - timedelta(seconds=seconds)))
        # Every pass loads the ticket before any of them records its firing
        ticket_service.delays["get_ticket_snapshot"] = 0.01

        report = await orchestrator.run_scan(now=NOW)

        assert report.events_synthesized == 3
        comments = [c for c in ticket_service.mutating_calls() if c[0] == "add_comment"]
        assert len(comments) == 1
        assert (await repository.get_by_id("breach-once")).execution_count == 1


class TestExecutionClaim:
    """The execution slot is claimed before any action runs."""

    @pytest.mark.asyncio
    async def test_rule_at_cap_in_store_is_skipped_before_actions(
        self, orchestrator, repository, ticket_service, rule_cache
    ):
        await repository.create(make_rule(
            "once", max_executions=1, actions=[(ActionType.ADD_COMMENT, {"comment": "hi"})]
        ))
        # Warm the snapshot while the rule still has room, then use it up behind its back
        await rule_cache.get_active_rules()
        await repository.claim_execution("once")

        report = await orchestrator.handle_event(created())

        assert report.evaluations[0].skipped_reason == "max_executions_reached"
        assert report.evaluations[0].stage == EvaluationStage.CONDITION_CHECK
        assert ticket_service.mutating_calls() == []
        assert (await repository.get_by_id("once")).execution_count == 1

    @pytest.mark.asyncio
    async def test_rule_deleted_mid_pass_is_skipped(self, orchestrator, repository, ticket_service, rule_cache):
        await repository.create(make_rule("gone", actions=[(ActionType.ADD_TAG, {"tag": "x"})]))
        await rule_cache.get_active_rules()
        await repository.delete("gone")

        report = await orchestrator.handle_event(created())

        assert report.evaluations[0].skipped_reason == "rule_deleted"
        assert ticket_service.mutating_calls() == []


class TestTimeWindow:
    """Rules with a time window only run inside it."""

    @pytest.mark.asyncio
    async def test_event_outside_window_is_skipped(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule(
            "office-hours",
            time_window=TimeWindow("09:00", "17:00"),
            actions=[(ActionType.ADD_TAG, {"tag": "office"})],
        ))

        evening = await orchestrator.handle_event(LifecycleEvent(
            type=TriggerType.TICKET_CREATED, ticket_id="T1", occurred_at=NOW.replace(hour=20)
        ))
        midday = await orchestrator.handle_event(LifecycleEvent(
            type=TriggerType.TICKET_CREATED, ticket_id="T1", occurred_at=NOW
        ))

        assert evening.evaluations[0].skipped_reason == "outside_time_window"
        assert midday.fired_rule_ids == ["office-hours"]
        assert len(ticket_service.mutating_calls()) == 1
        assert (await repository.get_by_id("office-hours")).execution_count == 1

    @pytest.mark.asyncio
    async def test_window_uses_rule_time_zone(self, orchestrator, repository):
        # 12:00 UTC is 21:00 in Tokyo
        await repository.create(make_rule(
            "tokyo-nights",
            time_window=TimeWindow("20:00", "02:00", "Asia/Tokyo"),
            actions=[(ActionType.ADD_TAG, {"tag": "night"})],
        ))

        report = await orchestrator.handle_event(LifecycleEvent(
            type=TriggerType.TICKET_CREATED, ticket_id="T1", occurred_at=NOW
        ))

        assert report.fired_rule_ids == ["tokyo-nights"]


class TestRunNotifications:
    """notify_on_success / notify_on_failure reach every recipient."""

    @pytest.mark.asyncio
    async def test_failed_run_notifies_recipients(
        self, notifying_orchestrator, repository, notification_service
    ):
        await repository.create(make_rule(
            "flaky",
            actions=[(ActionType.ADD_TAG, {})],
            notify_recipients=["ops@example.com", "lead@example.com"],
        ))

        await notifying_orchestrator.handle_event(created())

        calls = [c for c in notification_service.calls if c[0] == "send_notification"]
        assert [c[1][1] for c in calls] == ["ops@example.com", "lead@example.com"]
        message, _, context = calls[0][1]
        assert "1 failed action(s) on ticket T1: missing_parameter" in message
        assert context["succeeded"] is False

    @pytest.mark.asyncio
    async def test_success_is_silent_unless_asked(
        self, notifying_orchestrator, repository, notification_service
    ):
        await repository.create(make_rule(
            "quiet", actions=[(ActionType.ADD_TAG, {"tag": "ok"})],
            notify_recipients=["ops@example.com"],
        ))
        await repository.create(make_rule(
            "chatty", execution_order=1, actions=[(ActionType.ADD_TAG, {"tag": "ok"})],
            notify_on_success=True, notify_recipients=["ops@example.com"],
        ))

        await notifying_orchestrator.handle_event(created())

        messages = [c[1][0] for c in notification_service.calls]
        assert messages == ["Automation rule 'Rule chatty' ran on ticket T1"]

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_undo_the_run(
        self, notifying_orchestrator, repository, notification_service
    ):
        await repository.create(make_rule(
            "flaky", actions=[(ActionType.ADD_TAG, {})], notify_recipients=["ops@example.com"]
        ))
        notification_service.failures["send_notification"] = RuntimeError("smtp down")

        report = await notifying_orchestrator.handle_event(created())

        assert report.fired_rule_ids == ["flaky"]
        stored = await repository.get_by_id("flaky")
        assert stored.execution_count == 1
        assert stored.failure_count == 1


class TestManualExecution:
    """execute_rule runs one rule against one ticket outside the event flow."""

    @pytest.mark.asyncio
    async def test_execute_fires_and_records(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule("urgent", **URGENT_ASSIGN))
        ticket_service.add(make_ticket(priority="urgent"))

        evaluation = await orchestrator.execute_rule("urgent", "T1")

        assert evaluation.fired
        assert evaluation.stage == EvaluationStage.RECORDED
        assert ticket_service.mutating_calls() == [("assign_ticket", ("T1", "agent-42"))]
        assert (await repository.get_by_id("urgent")).execution_count == 1

    @pytest.mark.asyncio
    async def test_execute_keeps_every_gate(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule("off", is_active=False, **URGENT_ASSIGN))
        await repository.create(make_rule("urgent", **URGENT_ASSIGN))
        ticket_service.add(make_ticket(priority="low"))

        inactive = await orchestrator.execute_rule("off", "T1")
        mismatch = await orchestrator.execute_rule("urgent", "T1")

        assert inactive.skipped_reason == "inactive"
        assert mismatch.skipped_reason == "conditions_not_met"
        assert ticket_service.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_execute_time_based_rule_uses_ticket_age(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule(
            "old",
            trigger_type=TriggerType.TIME_BASED,
            trigger_params={"minutes": "60", "since": "created"},
            actions=[(ActionType.ADD_TAG, {"tag": "old"})],
        ))
        await repository.create(make_rule(
            "ancient",
            trigger_type=TriggerType.TIME_BASED,
            trigger_params={"minutes": "525600", "since": "created"},
            actions=[(ActionType.ADD_TAG, {"tag": "ancient"})],
        ))
        ticket_service.add(make_ticket(created_at=datetime.now(timezone.utc) - timedelta(hours=2)))

        assert (await orchestrator.execute_rule("old", "T1")).fired
        assert (await orchestrator.execute_rule("ancient", "T1")).skipped_reason == "trigger_mismatch"

    @pytest.mark.asyncio
    async def test_execute_follows_derived_events(self, orchestrator, repository, ticket_service):
        await repository.create(make_rule(
            "start", actions=[(ActionType.CHANGE_STATUS, {"value": "in-progress"})]
        ))
        await repository.create(make_rule(
            "follow-up",
            trigger_type=TriggerType.STATUS_CHANGED,
            trigger_params={"to": "in-progress"},
            actions=[(ActionType.ADD_COMMENT, {"comment": "Work started"})],
        ))

        await orchestrator.execute_rule("start", "T1")

        assert ("add_comment", ("T1", "Work started")) in ticket_service.mutating_calls()

    @pytest.mark.asyncio
    async def test_execute_unknown_rule_or_ticket(self, orchestrator, repository):
        await repository.create(make_rule("r"))

        with pytest.raises(ResourceNotFoundException):
            await orchestrator.execute_rule("nope", "T1")
        with pytest.raises(ResourceNotFoundException):
            await orchestrator.execute_rule("r", "nope")
