"""
Automation Application DTOs
============================

Data Transfer Objects for the automation management API.

These Pydantic models handle serialization/deserialization for API requests
and responses. Rule vocabularies (trigger type, operator, action type) are
accepted as plain strings here and validated by the rule service, so the
same definition errors are reported whether a rule arrives over HTTP or
from in-process callers.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from src.automation.domain import (
    AutomationRule, FieldDelta, LifecycleEvent, PassReport,
    RuleEvaluation, RuleTemplate, TestRuleResult,
)
from src.config import BulkOperation, TriggerType


ConditionValue = Optional[Union[bool, int, float, str]]


# ========== Rule definition DTOs ==========

class TriggerDTO(BaseModel):
    """Trigger clause of a rule definition."""
    type: str = Field(..., description="Lifecycle event type the rule responds to")
    params: Dict[str, Any] = Field(default_factory=dict, description="Trigger-specific extras")


class ConditionDTO(BaseModel):
    """A field/operator/value predicate."""
    field: str = Field(..., description="Ticket field, e.g. 'priority' or 'assignedTo'")
    operator: str = Field(..., description="equals, not_equals, contains, not_contains, greater_than, less_than")
    value: ConditionValue = Field(None, description="Value compared against the field")


class ActionDTO(BaseModel):
    """A side-effecting action."""
    type: str = Field(..., description="Action type")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Action parameters")


class TimeWindowDTO(BaseModel):
    """Daily window in which a rule may run."""
    start: str = Field(..., description="HH:MM, inclusive")
    end: str = Field(..., description="HH:MM, inclusive; earlier than start wraps past midnight")
    timezone: str = Field(default="UTC", description="IANA time zone name")


class RuleCreateDTO(BaseModel):
    """Request model for creating a rule."""
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    trigger: TriggerDTO
    conditions: List[ConditionDTO] = Field(default_factory=list)
    actions: List[ActionDTO] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    is_active: bool = True
    execution_order: int = Field(default=0, description="Lower runs first")
    max_executions: int = Field(default=-1, ge=-1, description="-1 means unlimited")
    stop_on_first_match: bool = False
    time_window: Optional[TimeWindowDTO] = None
    notify_on_success: bool = False
    notify_on_failure: bool = True
    notify_recipients: List[str] = Field(default_factory=list, description="User ids told about each run")


class RuleUpdateDTO(BaseModel):
    """Request model for updating a rule; omitted fields are left unchanged."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    trigger: Optional[TriggerDTO] = None
    conditions: Optional[List[ConditionDTO]] = None
    actions: Optional[List[ActionDTO]] = None
    categories: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None
    execution_order: Optional[int] = None
    max_executions: Optional[int] = Field(None, ge=-1)
    stop_on_first_match: Optional[bool] = None
    time_window: Optional[TimeWindowDTO] = Field(None, description="null removes the window")
    notify_on_success: Optional[bool] = None
    notify_on_failure: Optional[bool] = None
    notify_recipients: Optional[List[str]] = None


class CloneTemplateRequest(BaseModel):
    """Overrides applied when cloning a template into a new rule."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    trigger_params: Optional[Dict[str, Any]] = None
    conditions: Optional[List[ConditionDTO]] = None
    actions: Optional[List[ActionDTO]] = None
    categories: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    is_active: bool = Field(default=False, description="Clones start inactive so they can be tested first")


class BulkOperationRequest(BaseModel):
    """Bulk activate/deactivate/delete."""
    operation: BulkOperation
    rule_ids: List[str] = Field(..., min_length=1)


class TestRuleRequest(BaseModel):
    """Dry-run request."""
    ticket_id: str = Field(..., min_length=1)

    __test__ = False


class ExecuteRuleRequest(BaseModel):
    """Manual run of one rule against one ticket."""
    ticket_id: str = Field(..., min_length=1)


class FieldDeltaDTO(BaseModel):
    field: str
    from_value: Optional[str] = None
    to_value: Optional[str] = None


class LifecycleEventRequest(BaseModel):
    """Lifecycle event submitted by an out-of-process producer."""
    type: TriggerType
    ticket_id: str = Field(..., min_length=1)
    delta: Optional[FieldDeltaDTO] = None

    def to_domain(self) -> LifecycleEvent:
        delta = None
        if self.delta is not None:
            delta = FieldDelta(
                field=self.delta.field,
                from_value=self.delta.from_value,
                to_value=self.delta.to_value
            )
        return LifecycleEvent(type=self.type, ticket_id=self.ticket_id, delta=delta)


# ========== Response DTOs ==========

class RuleResponse(BaseModel):
    """Response model for a rule."""
    id: str
    name: str
    description: str
    trigger: TriggerDTO
    conditions: List[ConditionDTO]
    actions: List[ActionDTO]
    categories: List[str]
    tags: List[str]
    is_active: bool
    execution_order: int
    max_executions: int
    stop_on_first_match: bool
    time_window: Optional[TimeWindowDTO] = None
    notify_on_success: bool
    notify_on_failure: bool
    notify_recipients: List[str]
    execution_count: int
    created_by: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, rule: AutomationRule) -> "RuleResponse":
        return cls(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            trigger=TriggerDTO(type=rule.trigger.type.value, params=dict(rule.trigger.params)),
            conditions=[
                ConditionDTO(field=c.field, operator=c.operator.value, value=c.value)
                for c in rule.conditions
            ],
            actions=[
                ActionDTO(type=a.type.value, parameters=dict(a.parameters))
                for a in rule.actions
            ],
            categories=list(rule.categories),
            tags=list(rule.tags),
            is_active=rule.is_active,
            execution_order=rule.execution_order,
            max_executions=rule.max_executions,
            stop_on_first_match=rule.stop_on_first_match,
            time_window=(
                TimeWindowDTO(**asdict(rule.time_window)) if rule.time_window else None
            ),
            notify_on_success=rule.notify_on_success,
            notify_on_failure=rule.notify_on_failure,
            notify_recipients=list(rule.notify_recipients),
            execution_count=rule.execution_count,
            created_by=rule.created_by,
            created_at=rule.created_at,
            updated_at=rule.updated_at
        )


class Pagination(BaseModel):
    limit: int
    offset: int
    total: int


class RuleListResponse(BaseModel):
    rules: List[RuleResponse]
    pagination: Pagination


class RuleStatsResponse(BaseModel):
    """Execution statistics for a rule."""
    rule_id: str
    total_executions: int
    success_count: int
    failure_count: int
    success_rate: int = Field(..., description="Percentage of firings with no failed action")
    last_executed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @classmethod
    def from_domain(cls, rule: AutomationRule) -> "RuleStatsResponse":
        return cls(
            rule_id=rule.id,
            total_executions=rule.execution_count,
            success_count=rule.success_count,
            failure_count=rule.failure_count,
            success_rate=rule.success_rate,
            last_executed_at=rule.last_executed_at,
            last_error=rule.last_error
        )


class TestRuleResponse(BaseModel):
    """Dry-run verdict."""
    rule_id: str
    ticket_id: str
    matches_trigger: bool
    matches_conditions: bool
    should_execute: bool

    __test__ = False

    @classmethod
    def from_domain(cls, rule_id: str, ticket_id: str, result: TestRuleResult) -> "TestRuleResponse":
        return cls(
            rule_id=rule_id,
            ticket_id=ticket_id,
            matches_trigger=result.matches_trigger,
            matches_conditions=result.matches_conditions,
            should_execute=result.should_execute
        )


class TemplateResponse(BaseModel):
    id: str
    name: str
    description: str
    trigger: TriggerDTO
    conditions: List[ConditionDTO]
    actions: List[ActionDTO]

    @classmethod
    def from_domain(cls, template: RuleTemplate) -> "TemplateResponse":
        definition = template.to_definition()
        return cls(id=template.id, **definition)


class TemplateListResponse(BaseModel):
    templates: List[TemplateResponse]


class BulkOperationResponse(BaseModel):
    operation: BulkOperation
    affected: int


class ActionResultResponse(BaseModel):
    action_type: str
    success: bool
    error: Optional[str] = None


class RuleEvaluationResponse(BaseModel):
    rule_id: str
    stage: str
    fired: bool
    skipped_reason: Optional[str] = None
    action_results: List[ActionResultResponse] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, evaluation: RuleEvaluation) -> "RuleEvaluationResponse":
        return cls(
            rule_id=evaluation.rule_id,
            stage=evaluation.stage.value,
            fired=evaluation.fired,
            skipped_reason=evaluation.skipped_reason,
            action_results=[
                ActionResultResponse(**r.to_dict()) for r in evaluation.action_results
            ]
        )


class EventProcessedResponse(BaseModel):
    """Outcome of an orchestration pass and its derived passes."""
    event_type: str
    ticket_id: str
    processed_events: int
    fired_rule_ids: List[str]
    dropped_events: int
    evaluations: List[RuleEvaluationResponse]

    @classmethod
    def from_domain(cls, report: PassReport) -> "EventProcessedResponse":
        return cls(
            event_type=report.event.type.value,
            ticket_id=report.event.ticket_id,
            processed_events=report.processed_events,
            fired_rule_ids=report.fired_rule_ids,
            dropped_events=len(report.dropped_events),
            evaluations=[RuleEvaluationResponse.from_domain(e) for e in report.evaluations]
        )


class ScanResponse(BaseModel):
    tickets_scanned: int
    events_synthesized: int
    rules_fired: int
