"""
Automation Domain Entities
===========================

Pure Python domain entities for workflow automation.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from src.config import ActionType, ConditionOperator, TriggerType


@dataclass(frozen=True)
class Trigger:
    """The event clause of a rule."""
    type: TriggerType
    params: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Condition:
    """A field/operator/value predicate gating action execution."""
    field: str
    operator: ConditionOperator
    value: str


@dataclass(frozen=True)
class Action:
    """A single side-effecting operation dispatched on rule match."""
    type: ActionType
    parameters: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TimeWindow:
    """
    Daily HH:MM window, in `timezone`, outside which a rule does not run.

    `start` later than `end` wraps past midnight. Both ends are inclusive
    to the minute.
    """
    start: str
    end: str
    timezone: str = "UTC"

    def contains(self, moment: datetime) -> bool:
        local = moment.astimezone(ZoneInfo(self.timezone)).strftime("%H:%M")
        if self.start <= self.end:
            return self.start <= local <= self.end
        return local >= self.start or local <= self.end


@dataclass
class AutomationRule:
    """
    Automation rule entity.

    A stored trigger + conditions + actions definition. The orchestrator
    only reads rules; counters are advanced by the rule store in place.
    """

    id: str
    name: str
    trigger: Trigger
    created_by: str
    description: str = ""
    conditions: List[Condition] = field(default_factory=list)
    actions: List[Action] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    is_active: bool = True

    # Execution settings
    execution_order: int = 0
    max_executions: int = -1
    stop_on_first_match: bool = False
    time_window: Optional[TimeWindow] = None

    # Run notifications, sent to each of notify_recipients
    notify_on_success: bool = False
    notify_on_failure: bool = True
    notify_recipients: List[str] = field(default_factory=list)

    # Statistics
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_executed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success_rate(self) -> int:
        """Percentage of firings where every action succeeded."""
        total = self.success_count + self.failure_count
        return round(self.success_count / total * 100) if total > 0 else 0

    @property
    def is_exhausted(self) -> bool:
        """Check if the rule reached its execution cap."""
        return 0 < self.max_executions <= self.execution_count

    def in_time_window(self, moment: datetime) -> bool:
        return self.time_window is None or self.time_window.contains(moment)

    def applies_to(self, ticket: "TicketSnapshot") -> bool:
        """
        Category/tag scoping.

        A non-empty category set requires the ticket category to be in it;
        a non-empty tag set requires at least one shared tag.
        """
        if self.categories and ticket.category not in self.categories:
            return False
        if self.tags and not set(self.tags) & set(ticket.tags):
            return False
        return True


@dataclass(frozen=True)
class TicketSnapshot:
    """
    Read-only view of a ticket used as the field source for conditions.

    `category`, `assigned_to` and `created_by` hold ids; the `*_name`
    fields hold display names when the ticket service populated the
    reference. The engine never mutates a snapshot; every change goes
    through the ticket service.
    """

    id: str
    status: str
    priority: str
    subject: str = ""
    description: str = ""
    category: Optional[str] = None
    assigned_to: Optional[str] = None
    created_by: Optional[str] = None
    category_name: Optional[str] = None
    assigned_to_name: Optional[str] = None
    created_by_name: Optional[str] = None
    tags: Tuple[str, ...] = ()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    sla_due_at: Optional[datetime] = None
    sla_status: Optional[str] = None

    @property
    def tags_count(self) -> int:
        return len(self.tags)

    @property
    def age_minutes(self) -> Optional[int]:
        """Get ticket age in minutes."""
        if self.created_at is None:
            return None
        return int((datetime.now(timezone.utc) - self.created_at).total_seconds() / 60)


@dataclass(frozen=True)
class FieldDelta:
    """From/to transition carried by change events."""
    field: str
    from_value: Optional[str]
    to_value: Optional[str]


@dataclass(frozen=True)
class LifecycleEvent:
    """
    Notification that a ticket changed state.

    `depth` counts how many rule firings separate this event from the
    original ticket mutation; `origin_rule_id` names the rule whose action
    produced it.
    """

    type: TriggerType
    ticket_id: str
    delta: Optional[FieldDelta] = None
    depth: int = 0
    origin_rule_id: Optional[str] = None
    minutes_since_created: Optional[float] = None
    minutes_since_updated: Optional[float] = None
    window_minutes: Optional[float] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_derived(self) -> bool:
        return self.origin_rule_id is not None


@dataclass
class ActionResult:
    """Outcome of a single action."""
    action_type: ActionType
    success: bool
    error: Optional[str] = None
    derived_event: Optional[LifecycleEvent] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        result = {"action_type": self.action_type.value, "success": self.success}
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass(frozen=True)
class TestRuleResult:
    """Dry-run verdict for a rule against one ticket."""
    matches_trigger: bool
    matches_conditions: bool
    should_execute: bool

    __test__ = False


class EvaluationStage(str, Enum):
    """Furthest stage a rule reached during one evaluation cycle."""
    IDLE = "idle"
    TRIGGER_CHECK = "trigger_check"
    CONDITION_CHECK = "condition_check"
    ACTION_DISPATCH = "action_dispatch"
    RECORDED = "recorded"


@dataclass
class RuleEvaluation:
    """Per-rule trace of one evaluation cycle."""
    rule_id: str
    stage: EvaluationStage = EvaluationStage.IDLE
    fired: bool = False
    skipped_reason: Optional[str] = None
    action_results: List[ActionResult] = field(default_factory=list)

    @property
    def failed_actions(self) -> int:
        return sum(1 for r in self.action_results if not r.success)


@dataclass
class PassReport:
    """Everything one orchestration pass (and its derived passes) did."""
    event: LifecycleEvent
    evaluations: List[RuleEvaluation] = field(default_factory=list)
    processed_events: int = 0
    dropped_events: List[LifecycleEvent] = field(default_factory=list)

    @property
    def fired_rule_ids(self) -> List[str]:
        return [e.rule_id for e in self.evaluations if e.fired]
