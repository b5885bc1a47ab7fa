"""
Rule Template Library
=====================

Starter rule configurations shipped with the system. Templates are
read-only; callers clone them into new rules and edit the clone.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from src.config import ActionType, ConditionOperator, TriggerType


# Parameter value a clone must replace before the rule can be created
PLACEHOLDER = ""


@dataclass(frozen=True)
class TemplateCondition:
    field: str
    operator: ConditionOperator
    value: str


@dataclass(frozen=True)
class TemplateAction:
    type: ActionType
    parameters: Mapping[str, str]


@dataclass(frozen=True)
class RuleTemplate:
    """Immutable starter configuration."""
    id: str
    name: str
    description: str
    trigger_type: TriggerType
    trigger_params: Mapping[str, str]
    conditions: Tuple[TemplateCondition, ...]
    actions: Tuple[TemplateAction, ...]

    def to_definition(self) -> Dict[str, Any]:
        """Return a fresh, mutable rule definition built from the template."""
        return {
            "name": self.name,
            "description": self.description,
            "trigger": {
                "type": self.trigger_type.value,
                "params": dict(self.trigger_params),
            },
            "conditions": [
                {"field": c.field, "operator": c.operator.value, "value": c.value}
                for c in self.conditions
            ],
            "actions": [
                {"type": a.type.value, "parameters": dict(a.parameters)}
                for a in self.actions
            ],
        }

    def placeholders(self) -> List[str]:
        """Action parameters left for the cloner to fill in, as `actions[i].parameters.name`."""
        return [
            f"actions[{index}].parameters.{name}"
            for index, action in enumerate(self.actions)
            for name, value in action.parameters.items()
            if value == PLACEHOLDER
        ]


def _params(**values: str) -> Mapping[str, str]:
    return MappingProxyType(dict(values))


BUILTIN_TEMPLATES: Tuple[RuleTemplate, ...] = (
    RuleTemplate(
        id="auto-assign-by-category",
        name="Auto-assign by category",
        description="Automatically assign new tickets based on category",
        trigger_type=TriggerType.TICKET_CREATED,
        trigger_params=_params(),
        conditions=(
            TemplateCondition("category", ConditionOperator.EQUALS, "technical"),
        ),
        actions=(
            TemplateAction(ActionType.ASSIGN_TICKET, _params(assignee=PLACEHOLDER)),
        ),
    ),
    RuleTemplate(
        id="escalate-overdue",
        name="Escalate overdue tickets",
        description="Escalate tickets still open 24 hours after creation",
        trigger_type=TriggerType.TIME_BASED,
        trigger_params=_params(minutes="1440", since="created"),
        conditions=(
            TemplateCondition("status", ConditionOperator.EQUALS, "open"),
        ),
        actions=(
            TemplateAction(ActionType.ESCALATE_TICKET, _params()),
            TemplateAction(
                ActionType.ADD_COMMENT,
                _params(comment="Ticket escalated due to overdue status"),
            ),
        ),
    ),
    RuleTemplate(
        id="auto-close-resolved",
        name="Auto-close resolved tickets",
        description="Close tickets 7 days after their last update while resolved",
        trigger_type=TriggerType.TIME_BASED,
        trigger_params=_params(minutes="10080", since="updated"),
        conditions=(
            TemplateCondition("status", ConditionOperator.EQUALS, "resolved"),
        ),
        actions=(
            TemplateAction(ActionType.CHANGE_STATUS, _params(value="closed")),
        ),
    ),
    RuleTemplate(
        id="high-priority-notification",
        name="High priority notification",
        description="Notify the team when an urgent ticket is created",
        trigger_type=TriggerType.TICKET_CREATED,
        trigger_params=_params(),
        conditions=(
            TemplateCondition("priority", ConditionOperator.EQUALS, "urgent"),
        ),
        actions=(
            TemplateAction(
                ActionType.SEND_NOTIFICATION,
                _params(message="High priority ticket created: {{ticket.subject}}", to="team"),
            ),
        ),
    ),
    RuleTemplate(
        id="sla-breach-escalation",
        name="Escalate SLA breaches",
        description="Escalate to a supervisor and tag the ticket when its SLA is breached",
        trigger_type=TriggerType.SLA_BREACHED,
        trigger_params=_params(),
        conditions=(),
        actions=(
            TemplateAction(ActionType.ESCALATE_TICKET, _params(to="supervisor")),
            TemplateAction(ActionType.ADD_TAG, _params(tag="sla-breached")),
            TemplateAction(
                ActionType.SEND_EMAIL,
                _params(template="sla_breach", to="supervisor"),
            ),
        ),
    ),
    RuleTemplate(
        id="reopen-on-comment",
        name="Reopen on customer reply",
        description="Move pending tickets back to open when a comment is added",
        trigger_type=TriggerType.COMMENT_ADDED,
        trigger_params=_params(),
        conditions=(
            TemplateCondition("status", ConditionOperator.EQUALS, "pending"),
        ),
        actions=(
            TemplateAction(ActionType.CHANGE_STATUS, _params(value="open")),
        ),
    ),
)

_TEMPLATES_BY_ID = MappingProxyType({t.id: t for t in BUILTIN_TEMPLATES})


def get_template(template_id: str) -> Optional[RuleTemplate]:
    return _TEMPLATES_BY_ID.get(template_id)
