"""
Automation Value Objects
=========================

Stateless rule semantics and immutable configuration for the automation
domain.

`ConditionEvaluator` and `TriggerMatcher` are pure: no I/O, no mutation,
same answer for the same inputs. The orchestrator's dry run depends on it.
"""

import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from src.config import (
    ActionType, ConditionOperator, TriggerType,
    DELTA_TRIGGER_FIELDS, OPEN_STATUSES, VALID_ACTION_TYPES,
    VALID_OPERATORS, VALID_TRIGGER_TYPES,
)
from src.core import RuleDefinitionException
from src.automation.domain.entities import (
    Action, Condition, LifecycleEvent, TicketSnapshot, TimeWindow, Trigger
)


_MISSING = object()

_CLOCK_TIME = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

# Help-desk UI field names mapped onto snapshot attributes
FIELD_ALIASES: Dict[str, str] = {
    "assignedTo": "assigned_to",
    "createdBy": "created_by",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "slaStatus": "sla_status",
    "slaDueAt": "sla_due_at",
    "tagsCount": "tags_count",
    "ageMinutes": "age_minutes",
    "categoryName": "category_name",
    "assignedToName": "assigned_to_name",
    "createdByName": "created_by_name",
}

# Reference fields compare by display name, falling back to the id
DISPLAY_NAMES: Dict[str, str] = {
    "category": "category_name",
    "assigned_to": "assigned_to_name",
    "created_by": "created_by_name",
}

# Explicit id lookups bypass the display name
ID_FIELDS: Dict[str, str] = {
    "category_id": "category",
    "categoryId": "category",
    "assigned_to_id": "assigned_to",
    "assignedToId": "assigned_to",
    "created_by_id": "created_by",
    "createdById": "created_by",
}

SNAPSHOT_FIELDS = frozenset({
    "id", "status", "priority", "subject", "description", "category",
    "assigned_to", "created_by", "category_name", "assigned_to_name",
    "created_by_name", "tags", "created_at", "updated_at",
    "sla_due_at", "sla_status", "tags_count", "age_minutes",
})


def stringify(value: Any) -> str:
    """Render a field value the way conditions compare it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(stringify(v) for v in value)
    return str(value)


def _parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


class ConditionEvaluator:
    """
    Pure functions for condition evaluation.

    Unresolvable fields and unparsable numbers fail closed: the condition is
    false, nothing is raised.
    """

    @staticmethod
    def resolve_field(ticket: TicketSnapshot, field_path: str) -> Any:
        """
        Resolve a dotted field reference against a snapshot.

        `category`, `assignedTo` and `createdBy` resolve to the display
        name when the snapshot has one, else to the id; `categoryId` and
        friends always resolve to the id. Returns the module-level
        `_MISSING` sentinel when the path does not name a snapshot field.
        """
        if not field_path:
            return _MISSING

        segments = field_path.split(".")
        if segments[0] == "ticket":
            segments = segments[1:]
        if not segments:
            return _MISSING

        if segments[0] in ID_FIELDS:
            head = ID_FIELDS[segments[0]]
        else:
            head = FIELD_ALIASES.get(segments[0], segments[0])
            if head in DISPLAY_NAMES and getattr(ticket, DISPLAY_NAMES[head]) is not None:
                head = DISPLAY_NAMES[head]
        if head not in SNAPSHOT_FIELDS:
            return _MISSING

        value: Any = getattr(ticket, head)
        for segment in segments[1:]:
            if isinstance(value, dict) and segment in value:
                value = value[segment]
            else:
                return _MISSING
        return value

    @staticmethod
    def evaluate_condition(condition: Condition, ticket: TicketSnapshot) -> bool:
        """Evaluate a single condition."""
        value = ConditionEvaluator.resolve_field(ticket, condition.field)
        if value is _MISSING or value is None:
            return False

        operator = condition.operator
        expected = condition.value
        is_collection = isinstance(value, (list, tuple, set, frozenset))

        if operator == ConditionOperator.EQUALS:
            return stringify(value) == expected
        if operator == ConditionOperator.NOT_EQUALS:
            return stringify(value) != expected
        if operator in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
            if is_collection:
                found = expected in {stringify(v) for v in value}
            else:
                found = expected.lower() in stringify(value).lower()
            return found if operator == ConditionOperator.CONTAINS else not found
        if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
            left = None if is_collection else _parse_number(value)
            right = _parse_number(expected)
            if left is None or right is None:
                return False
            return left > right if operator == ConditionOperator.GREATER_THAN else left < right

        return False

    @staticmethod
    def evaluate(conditions: Sequence[Condition], ticket: TicketSnapshot) -> bool:
        """AND of all conditions; an empty list is vacuously true."""
        return all(
            ConditionEvaluator.evaluate_condition(condition, ticket)
            for condition in conditions
        )


class TriggerMatcher:
    """
    Pure functions deciding whether an event satisfies a rule's trigger.

    Category/tag scoping is applied by the orchestrator, not here.
    """

    @staticmethod
    def matches(
        trigger: Trigger,
        event: LifecycleEvent,
        default_minutes: int = 60
    ) -> bool:
        if event.type != trigger.type:
            return False

        if trigger.type in DELTA_TRIGGER_FIELDS:
            delta = event.delta
            if delta is None:
                return False
            watched = DELTA_TRIGGER_FIELDS[trigger.type]
            if FIELD_ALIASES.get(delta.field, delta.field) != watched:
                return False
            target = trigger.params.get("to")
            if target and delta.to_value != target:
                return False
            return True

        if trigger.type == TriggerType.TIME_BASED:
            return TriggerMatcher._threshold_crossed(trigger, event, default_minutes)

        return True

    @staticmethod
    def _threshold_crossed(
        trigger: Trigger,
        event: LifecycleEvent,
        default_minutes: int
    ) -> bool:
        """
        Check whether elapsed time crossed the rule threshold in this window.

        Without a window (manually submitted event) any elapsed time at or
        past the threshold matches.
        """
        since = trigger.params.get("since", "created")
        elapsed = (
            event.minutes_since_updated if since == "updated"
            else event.minutes_since_created
        )
        if elapsed is None:
            return False

        threshold = float(trigger.params.get("minutes", default_minutes))
        if elapsed < threshold:
            return False
        if event.window_minutes is None:
            return True
        return elapsed < threshold + event.window_minutes


# ========== Definition parsing ==========

class RuleDefinitionParser:
    """
    Turns free-form rule definitions into typed domain objects.

    Every problem is collected and raised together as a
    RuleDefinitionException; nothing invalid reaches the rule store.
    """

    @staticmethod
    def parse_trigger(trigger_type: str, params: Optional[Dict[str, Any]], errors: List[str]) -> Optional[Trigger]:
        if trigger_type not in VALID_TRIGGER_TYPES:
            errors.append(
                f"trigger.type '{trigger_type}' must be one of {VALID_TRIGGER_TYPES}"
            )
            return None

        kind = TriggerType(trigger_type)
        clean = {str(k): str(v) for k, v in (params or {}).items() if v is not None}

        if kind in DELTA_TRIGGER_FIELDS and "to" in clean and not clean["to"].strip():
            errors.append("trigger.params.to must not be empty")

        if kind == TriggerType.TIME_BASED:
            if "minutes" in clean:
                try:
                    minutes = int(clean["minutes"])
                except ValueError:
                    minutes = 0
                if minutes <= 0:
                    errors.append("trigger.params.minutes must be a positive integer")
            if clean.get("since", "created") not in ("created", "updated"):
                errors.append("trigger.params.since must be 'created' or 'updated'")

        return Trigger(type=kind, params=clean)

    @staticmethod
    def parse_conditions(raw: Iterable[Dict[str, Any]], errors: List[str]) -> List[Condition]:
        conditions = []
        for index, item in enumerate(raw):
            field_name = str(item.get("field") or "").strip()
            operator = item.get("operator")
            if not field_name:
                errors.append(f"conditions[{index}].field is required")
            if operator not in VALID_OPERATORS:
                errors.append(
                    f"conditions[{index}].operator '{operator}' must be one of {VALID_OPERATORS}"
                )
                continue
            value = item.get("value")
            conditions.append(Condition(
                field=field_name,
                operator=ConditionOperator(operator),
                value="" if value is None else stringify(value)
            ))
        return conditions

    @staticmethod
    def parse_actions(raw: Iterable[Dict[str, Any]], errors: List[str]) -> List[Action]:
        actions = []
        for index, item in enumerate(raw):
            action_type = item.get("type")
            if action_type not in VALID_ACTION_TYPES:
                errors.append(
                    f"actions[{index}].type '{action_type}' must be one of {VALID_ACTION_TYPES}"
                )
                continue
            parameters = {
                str(k): stringify(v)
                for k, v in (item.get("parameters") or {}).items()
                if v is not None
            }
            actions.append(Action(type=ActionType(action_type), parameters=parameters))
        return actions

    @staticmethod
    def parse_time_window(raw: Optional[Dict[str, Any]], errors: List[str]) -> Optional[TimeWindow]:
        """A window needs both ends; a missing or empty one means always."""
        if not raw or not (raw.get("start") or raw.get("end")):
            return None

        start = str(raw.get("start") or "")
        end = str(raw.get("end") or "")
        zone = str(raw.get("timezone") or "UTC")
        valid = True
        for name, value in (("start", start), ("end", end)):
            if not _CLOCK_TIME.match(value):
                errors.append(f"time_window.{name} '{value}' must be HH:MM (00:00-23:59)")
                valid = False
        try:
            ZoneInfo(zone)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"time_window.timezone '{zone}' is not a known time zone")
            valid = False
        return TimeWindow(start=start, end=end, timezone=zone) if valid else None

    @classmethod
    def parse(
        cls,
        trigger_type: str,
        trigger_params: Optional[Dict[str, Any]],
        conditions: Iterable[Dict[str, Any]],
        actions: Iterable[Dict[str, Any]],
    ) -> tuple[Trigger, List[Condition], List[Action]]:
        """Parse all three clauses or raise with every problem found."""
        errors: List[str] = []
        trigger = cls.parse_trigger(trigger_type, trigger_params, errors)
        parsed_conditions = cls.parse_conditions(conditions, errors)
        parsed_actions = cls.parse_actions(actions, errors)
        if errors or trigger is None:
            raise RuleDefinitionException(errors)
        return trigger, parsed_conditions, parsed_actions


# ========== Engine configuration ==========

class AutomationConfig(BaseModel):
    """
    Engine tuning loaded from YAML.

    This is a value object - replaced wholesale on reload, never mutated.
    """
    max_event_depth: int = Field(default=5, ge=0, le=50)
    action_timeout_seconds: float = Field(default=5.0, gt=0, le=60)
    default_time_based_minutes: int = Field(default=60, ge=1)
    open_statuses: List[str] = Field(default_factory=lambda: list(OPEN_STATUSES))
    breached_sla_statuses: List[str] = Field(
        default_factory=lambda: ["response_breached", "resolution_breached", "breached"]
    )

    @field_validator("open_statuses")
    @classmethod
    def validate_open_statuses(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("open_statuses must list at least one status")
        return v

    def is_sla_breached(self, sla_status: Optional[str]) -> bool:
        return sla_status is not None and sla_status in self.breached_sla_statuses
