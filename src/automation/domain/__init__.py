"""
Automation Domain Layer
=======================

Domain layer for the workflow automation module.

Contains:
- Entities: Rules, ticket snapshots, lifecycle events, action results
- Value Objects: Condition evaluator, trigger matcher, definition parser,
  engine configuration
- Templates: Built-in starter rules

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from src.automation.domain.entities import (
    Trigger,
    Condition,
    Action,
    AutomationRule,
    TicketSnapshot,
    TimeWindow,
    FieldDelta,
    LifecycleEvent,
    ActionResult,
    TestRuleResult,
    EvaluationStage,
    RuleEvaluation,
    PassReport,
)
from src.automation.domain.value_objects import (
    ConditionEvaluator,
    TriggerMatcher,
    RuleDefinitionParser,
    AutomationConfig,
)
from src.automation.domain.templates import (
    RuleTemplate,
    BUILTIN_TEMPLATES,
    get_template,
)

__all__ = [
    # Entities
    "Trigger",
    "Condition",
    "Action",
    "AutomationRule",
    "TicketSnapshot",
    "TimeWindow",
    "FieldDelta",
    "LifecycleEvent",
    "ActionResult",
    "TestRuleResult",
    "EvaluationStage",
    "RuleEvaluation",
    "PassReport",
    # Value Objects & Services
    "ConditionEvaluator",
    "TriggerMatcher",
    "RuleDefinitionParser",
    "AutomationConfig",
    # Templates
    "RuleTemplate",
    "BUILTIN_TEMPLATES",
    "get_template",
]
