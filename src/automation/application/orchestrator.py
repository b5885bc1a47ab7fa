"""
Automation Orchestrator
=======================

Drives one evaluation cycle per lifecycle event:

    IDLE -> TRIGGER_CHECK -> CONDITION_CHECK -> ACTION_DISPATCH -> RECORDED

Derived events produced by rule actions are queued and processed
breadth-first after the current pass, up to the configured max depth.
Events past that depth are dropped, logged, and recorded as an error on
the rule that produced them.

Also hosts the periodic scan that synthesizes time-based and SLA events,
the side-effect-free dry run used by the management API, and manual
single-rule execution.
"""

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Deque, List, Optional, Tuple

from src.automation.application.executor import ActionExecutor
from src.automation.application.services import (
    IAutomationConfigProvider, INotificationService, IRuleCache, IRuleRepository,
    ITicketService,
)
from src.automation.domain import (
    AutomationConfig, AutomationRule, ConditionEvaluator, EvaluationStage,
    FieldDelta, LifecycleEvent, PassReport, RuleEvaluation, TestRuleResult,
    TicketSnapshot, TriggerMatcher,
)
from src.config import DELTA_TRIGGER_FIELDS, SCHEDULED_TRIGGERS, TriggerType
from src.core import ResourceNotFoundException
from src.shared.infrastructure.logging import get_context_logger, get_logger, log_latency


logger = get_logger(__name__)


@dataclass
class ScanReport:
    """Result of one periodic scan."""
    tickets_scanned: int = 0
    events_synthesized: int = 0
    rules_fired: int = 0


class AutomationOrchestrator:
    """
    Evaluates active rules against lifecycle events.

    Never raises for evaluation or action failures; only rule-store
    failures propagate to the caller.
    """

    def __init__(
        self,
        rule_cache: IRuleCache,
        rule_repository: IRuleRepository,
        ticket_service: ITicketService,
        executor: ActionExecutor,
        config_provider: IAutomationConfigProvider,
        scan_interval_seconds: int = 60,
        notification_service: Optional[INotificationService] = None
    ):
        self._cache = rule_cache
        self._rule_repo = rule_repository
        self._tickets = ticket_service
        self._executor = executor
        self._config_provider = config_provider
        self._scan_interval_seconds = scan_interval_seconds
        self._notifications = notification_service

    # ========== Event handling ==========

    async def handle_event(self, event: LifecycleEvent) -> PassReport:
        """
        Process an event and every derived event it causes.

        Returns:
            PassReport covering the whole breadth-first run
        """
        config = self._config_provider.get_config()
        log = get_context_logger(__name__, str(uuid.uuid4()))
        report = PassReport(event=event)
        queue: Deque[LifecycleEvent] = deque([event])

        with log_latency(
            log, "automation_event",
            event_type=event.type.value, ticket_id=event.ticket_id
        ):
            while queue:
                current = queue.popleft()
                report.processed_events += 1
                derived = await self._run_pass(current, config, report, log)

                for next_event in derived:
                    if next_event.depth > config.max_event_depth:
                        await self._drop_event(next_event, config, report, log)
                    else:
                        queue.append(next_event)

        return report

    async def _run_pass(
        self,
        event: LifecycleEvent,
        config: AutomationConfig,
        report: PassReport,
        log
    ) -> List[LifecycleEvent]:
        rules = await self._cache.get_active_rules()
        if not rules:
            return []

        try:
            ticket = await asyncio.wait_for(
                self._tickets.get_ticket_snapshot(event.ticket_id),
                timeout=config.action_timeout_seconds
            )
        except Exception as e:
            log.warning(
                "Could not load ticket snapshot, skipping pass",
                extra={"ticket_id": event.ticket_id, "error": str(e) or type(e).__name__}
            )
            return []
        if ticket is None:
            log.info("Ticket not found, skipping pass", extra={"ticket_id": event.ticket_id})
            return []

        derived: List[LifecycleEvent] = []
        for rule in rules:
            evaluation = await self._evaluate_rule(rule, event, ticket, config)
            report.evaluations.append(evaluation)
            if not evaluation.fired:
                continue

            derived.extend(
                r.derived_event for r in evaluation.action_results
                if r.success and r.derived_event is not None
            )
            log.info(
                "Automation rule fired",
                extra={
                    "rule_id": rule.id,
                    "ticket_id": ticket.id,
                    "event_type": event.type.value,
                    "depth": event.depth,
                    "failed_actions": evaluation.failed_actions,
                }
            )
            if rule.stop_on_first_match:
                break

        return derived

    async def _evaluate_rule(
        self,
        rule: AutomationRule,
        event: LifecycleEvent,
        ticket: TicketSnapshot,
        config: AutomationConfig
    ) -> RuleEvaluation:
        evaluation = RuleEvaluation(rule_id=rule.id)

        if not rule.is_active:
            evaluation.skipped_reason = "inactive"
            return evaluation
        if rule.is_exhausted:
            evaluation.skipped_reason = "max_executions_reached"
            return evaluation
        if not rule.in_time_window(event.occurred_at):
            evaluation.skipped_reason = "outside_time_window"
            return evaluation

        if not rule.applies_to(ticket):
            evaluation.skipped_reason = "out_of_scope"
            return evaluation

        evaluation.stage = EvaluationStage.TRIGGER_CHECK
        if not TriggerMatcher.matches(rule.trigger, event, config.default_time_based_minutes):
            evaluation.skipped_reason = "trigger_mismatch"
            return evaluation

        evaluation.stage = EvaluationStage.CONDITION_CHECK
        if not ConditionEvaluator.evaluate(rule.conditions, ticket):
            evaluation.skipped_reason = "conditions_not_met"
            return evaluation

        # The snapshot count may be stale; the store has the final say on the cap
        new_count = await self._rule_repo.claim_execution(
            rule.id, executed_at=datetime.now(timezone.utc)
        )
        if new_count is None:
            self._cache.invalidate()
            evaluation.skipped_reason = (
                "max_executions_reached" if rule.max_executions > 0 else "rule_deleted"
            )
            return evaluation

        evaluation.stage = EvaluationStage.ACTION_DISPATCH
        evaluation.action_results = await self._executor.execute(
            rule.actions, ticket, rule.id, depth=event.depth
        )

        failures = [r.error for r in evaluation.action_results if not r.success]
        await self._rule_repo.record_outcome(
            rule.id,
            succeeded=not failures,
            error=failures[0] if failures else None
        )
        evaluation.stage = EvaluationStage.RECORDED
        evaluation.fired = True

        if 0 < rule.max_executions <= new_count:
            self._cache.invalidate()

        await self._notify_run(rule, ticket, failures, config)
        return evaluation

    async def _notify_run(
        self,
        rule: AutomationRule,
        ticket: TicketSnapshot,
        failures: List[Optional[str]],
        config: AutomationConfig
    ) -> None:
        """Tell the rule's recipients how a run went; delivery problems are only logged."""
        if self._notifications is None or not rule.notify_recipients:
            return
        if failures and not rule.notify_on_failure:
            return
        if not failures and not rule.notify_on_success:
            return

        if failures:
            message = (
                f"Automation rule '{rule.name}' had {len(failures)} failed action(s) "
                f"on ticket {ticket.id}: {failures[0]}"
            )
        else:
            message = f"Automation rule '{rule.name}' ran on ticket {ticket.id}"
        context = {
            "rule_id": rule.id,
            "ticket_id": ticket.id,
            "succeeded": not failures,
            "failed_actions": len(failures),
        }

        for recipient in rule.notify_recipients:
            try:
                await asyncio.wait_for(
                    self._notifications.send_notification(message, recipient, context),
                    timeout=config.action_timeout_seconds
                )
            except Exception as e:
                logger.warning(
                    "Automation run notification failed",
                    extra={
                        "rule_id": rule.id,
                        "recipient": recipient,
                        "error": str(e) or type(e).__name__,
                    }
                )

    async def _drop_event(
        self,
        event: LifecycleEvent,
        config: AutomationConfig,
        report: PassReport,
        log
    ) -> None:
        report.dropped_events.append(event)
        error = (
            f"loop_guard: derived {event.type.value} event dropped at depth "
            f"{event.depth} (max {config.max_event_depth})"
        )
        log.warning(
            "Automation loop guard tripped",
            extra={
                "rule_id": event.origin_rule_id,
                "ticket_id": event.ticket_id,
                "event_type": event.type.value,
                "depth": event.depth,
            }
        )
        if event.origin_rule_id:
            await self._rule_repo.record_error(event.origin_rule_id, error)

    # ========== Periodic scan ==========

    async def run_scan(self, now: Optional[datetime] = None) -> ScanReport:
        """
        Synthesize time-based and SLA events for open tickets.

        The scan window equals the scan interval, so a threshold crossed
        between two scans fires exactly once.
        """
        now = now or datetime.now(timezone.utc)
        config = self._config_provider.get_config()
        report = ScanReport()

        rules = await self._cache.get_active_rules()
        wanted = {r.trigger.type for r in rules} & SCHEDULED_TRIGGERS
        if not wanted:
            return report

        tickets = await self._tickets.list_open_tickets(list(config.open_statuses))
        report.tickets_scanned = len(tickets)

        window = self._scan_interval_seconds / 60 if self._scan_interval_seconds > 0 else None
        events: List[LifecycleEvent] = []
        for ticket in tickets:
            if TriggerType.TIME_BASED in wanted:
                events.append(LifecycleEvent(
                    type=TriggerType.TIME_BASED,
                    ticket_id=ticket.id,
                    minutes_since_created=_minutes_between(ticket.created_at, now),
                    minutes_since_updated=_minutes_between(ticket.updated_at, now),
                    window_minutes=window,
                    occurred_at=now
                ))
            if TriggerType.SLA_BREACHED in wanted and self._sla_breached(ticket, config, now):
                events.append(LifecycleEvent(
                    type=TriggerType.SLA_BREACHED,
                    ticket_id=ticket.id,
                    occurred_at=now
                ))

        report.events_synthesized = len(events)
        if not events:
            return report

        outcomes = await asyncio.gather(*(self._handle_safely(e) for e in events))
        report.rules_fired = sum(len(o.fired_rule_ids) for o in outcomes if o is not None)

        logger.info(
            "Automation scan completed",
            extra={
                "tickets_scanned": report.tickets_scanned,
                "events_synthesized": report.events_synthesized,
                "rules_fired": report.rules_fired,
            }
        )
        return report

    def _sla_breached(
        self,
        ticket: TicketSnapshot,
        config: AutomationConfig,
        now: datetime
    ) -> bool:
        """
        A breach fires in the scan window where it happened.

        With a due date: the due date fell inside the window. Without one:
        the ticket carries a breached SLA status and was updated inside the
        window. Without a scan interval any current breach counts.
        """
        if self._scan_interval_seconds <= 0:
            if ticket.sla_due_at is not None:
                return ticket.sla_due_at <= now
            return config.is_sla_breached(ticket.sla_status)

        window_start = now - timedelta(seconds=self._scan_interval_seconds)
        if ticket.sla_due_at is not None:
            return window_start < ticket.sla_due_at <= now
        if config.is_sla_breached(ticket.sla_status) and ticket.updated_at is not None:
            return window_start < ticket.updated_at <= now
        return False

    async def _handle_safely(self, event: LifecycleEvent) -> Optional[PassReport]:
        try:
            return await self.handle_event(event)
        except Exception:
            logger.exception(
                "Automation event processing failed",
                extra={"ticket_id": event.ticket_id, "event_type": event.type.value}
            )
            return None

    # ========== Dry run and manual execution ==========

    async def test_rule(self, rule_id: str, ticket_id: str) -> TestRuleResult:
        """
        Evaluate a rule against a ticket without executing anything.

        Scheduled triggers (time-based, SLA) are treated as matched. For
        event-driven triggers an event of the rule's own type is synthesized
        whose delta moves the watched field to the ticket's current value.
        The active flag is ignored so rules can be checked before enabling.

        Raises:
            ResourceNotFoundException: Unknown rule or ticket
        """
        rule, ticket = await self._load_rule_and_ticket(rule_id, ticket_id)

        config = self._config_provider.get_config()
        if rule.trigger.type in SCHEDULED_TRIGGERS:
            matches_trigger = True
        else:
            matches_trigger = TriggerMatcher.matches(
                rule.trigger,
                self._synthesize_event(rule, ticket),
                config.default_time_based_minutes
            )

        matches_conditions = ConditionEvaluator.evaluate(rule.conditions, ticket)
        should_execute = (
            matches_trigger
            and matches_conditions
            and rule.applies_to(ticket)
            and rule.in_time_window(datetime.now(timezone.utc))
            and not rule.is_exhausted
        )
        return TestRuleResult(
            matches_trigger=matches_trigger,
            matches_conditions=matches_conditions,
            should_execute=should_execute
        )

    async def execute_rule(self, rule_id: str, ticket_id: str) -> RuleEvaluation:
        """
        Run one rule against one ticket now, with the full check-and-execute
        cycle of a real event: counters, notifications and derived events
        included.

        The event is synthesized as in the dry run, except that time-based
        triggers are checked against the ticket's current age.

        Raises:
            ResourceNotFoundException: Unknown rule or ticket
        """
        rule, ticket = await self._load_rule_and_ticket(rule_id, ticket_id)
        config = self._config_provider.get_config()

        evaluation = await self._evaluate_rule(
            rule, self._synthesize_event(rule, ticket), ticket, config
        )
        logger.info(
            "Automation rule executed manually",
            extra={
                "rule_id": rule.id,
                "ticket_id": ticket.id,
                "fired": evaluation.fired,
                "skipped_reason": evaluation.skipped_reason,
            }
        )

        for result in evaluation.action_results:
            if result.success and result.derived_event is not None:
                await self._handle_safely(result.derived_event)
        return evaluation

    async def _load_rule_and_ticket(
        self,
        rule_id: str,
        ticket_id: str
    ) -> Tuple[AutomationRule, TicketSnapshot]:
        rule = await self._rule_repo.get_by_id(rule_id)
        if rule is None:
            raise ResourceNotFoundException("Automation rule", rule_id)

        ticket = await self._tickets.get_ticket_snapshot(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        return rule, ticket

    @staticmethod
    def _synthesize_event(rule: AutomationRule, ticket: TicketSnapshot) -> LifecycleEvent:
        now = datetime.now(timezone.utc)
        delta = None
        watched = DELTA_TRIGGER_FIELDS.get(rule.trigger.type)
        if watched is not None:
            delta = FieldDelta(field=watched, from_value=None, to_value=getattr(ticket, watched))
        return LifecycleEvent(
            type=rule.trigger.type,
            ticket_id=ticket.id,
            delta=delta,
            minutes_since_created=_minutes_between(ticket.created_at, now),
            minutes_since_updated=_minutes_between(ticket.updated_at, now),
            occurred_at=now
        )


def _minutes_between(start: Optional[datetime], end: datetime) -> Optional[float]:
    if start is None:
        return None
    return (end - start).total_seconds() / 60
