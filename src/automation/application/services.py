"""
Automation Application Services
================================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: rule management here, evaluation in the orchestrator
- Dependency Inversion: depend on abstractions (rule store, ticket service,
  notification service), not concrete implementations
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from src.automation.application.dto import (
    CloneTemplateRequest, RuleCreateDTO, RuleUpdateDTO,
)
from src.automation.domain import (
    AutomationConfig, AutomationRule, BUILTIN_TEMPLATES,
    RuleDefinitionParser, RuleTemplate, TicketSnapshot, get_template,
)
from src.config import BulkOperation, TagOperation
from src.core import ResourceNotFoundException, RuleDefinitionException
from src.shared.infrastructure.logging import get_logger


logger = get_logger(__name__)


def _clean_recipients(recipients: List[str]) -> List[str]:
    return list(dict.fromkeys(r.strip() for r in recipients if r and r.strip()))


# ========== Repository Interfaces (Dependency Inversion) ==========

class IRuleRepository(ABC):
    """Interface for automation rule storage."""

    @abstractmethod
    async def get_by_id(self, rule_id: str) -> Optional[AutomationRule]:
        """Get rule by ID."""

    @abstractmethod
    async def list(
        self,
        filters: dict,
        limit: int = 100,
        offset: int = 0
    ) -> List[AutomationRule]:
        """List rules with filters (is_active, trigger_type)."""

    @abstractmethod
    async def count(self, filters: dict) -> int:
        """Count rules matching filters."""

    @abstractmethod
    async def list_active(self) -> List[AutomationRule]:
        """All active rules, in evaluation order."""

    @abstractmethod
    async def create(self, rule: AutomationRule) -> AutomationRule:
        """Persist a new rule."""

    @abstractmethod
    async def update(self, rule: AutomationRule) -> AutomationRule:
        """Replace the definition of an existing rule."""

    @abstractmethod
    async def delete(self, rule_id: str) -> bool:
        """Delete a rule. Returns False if it did not exist."""

    @abstractmethod
    async def set_active(self, rule_ids: List[str], is_active: bool) -> int:
        """Activate/deactivate rules. Returns the number affected."""

    @abstractmethod
    async def delete_many(self, rule_ids: List[str]) -> int:
        """Delete rules. Returns the number affected."""

    @abstractmethod
    async def claim_execution(
        self,
        rule_id: str,
        executed_at: Optional[datetime] = None
    ) -> Optional[int]:
        """
        Atomically count one firing of a rule, unless it reached its cap.

        The check against max_executions and the increment happen in one
        step, so concurrent firings can never exceed the cap.

        Returns the new execution count, or None if the rule is gone or
        already at max_executions.
        """

    @abstractmethod
    async def record_outcome(
        self,
        rule_id: str,
        succeeded: bool,
        error: Optional[str] = None
    ) -> None:
        """Count a claimed firing as a success or a failure."""

    @abstractmethod
    async def record_error(self, rule_id: str, error: str) -> None:
        """Store an error against a rule without counting an execution."""


class ITicketService(ABC):
    """Interface for the external ticket service."""

    @abstractmethod
    async def get_ticket_snapshot(self, ticket_id: str) -> Optional[TicketSnapshot]:
        """Read-only view of a ticket, or None if unknown."""

    @abstractmethod
    async def list_open_tickets(self, statuses: List[str]) -> List[TicketSnapshot]:
        """Snapshots of every ticket whose status is in `statuses`."""

    @abstractmethod
    async def assign_ticket(self, ticket_id: str, assignee: Optional[str]) -> None:
        """Assign a ticket; None clears the assignee."""

    @abstractmethod
    async def update_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> None:
        """Patch ticket fields (status, priority)."""

    @abstractmethod
    async def update_tags(self, ticket_id: str, tag: str, operation: TagOperation) -> None:
        """Add or remove a tag."""

    @abstractmethod
    async def escalate(self, ticket_id: str, to: Optional[str] = None) -> None:
        """Escalate a ticket, optionally to a named person or group."""

    @abstractmethod
    async def add_comment(self, ticket_id: str, text: str) -> None:
        """Append an automation comment."""


class INotificationService(ABC):
    """Interface for outbound notifications."""

    @abstractmethod
    async def send_email(
        self,
        template: str,
        recipient_spec: str,
        context: Dict[str, Any]
    ) -> None:
        """Send a templated email."""

    @abstractmethod
    async def send_notification(
        self,
        message: str,
        recipient_spec: str,
        context: Dict[str, Any]
    ) -> None:
        """Send an in-app notification."""


class IAutomationConfigProvider(ABC):
    """Interface for engine tuning access."""

    @abstractmethod
    def get_config(self) -> AutomationConfig:
        """Get current automation configuration."""


class IRuleCache(ABC):
    """Interface for the active-rule snapshot used by the orchestrator."""

    @abstractmethod
    async def get_active_rules(self) -> Tuple[AutomationRule, ...]:
        """Current immutable snapshot of active rules."""

    @abstractmethod
    def invalidate(self) -> None:
        """Force the next read to reload from the store."""


# ========== Application Services ==========

class RuleService:
    """
    Management operations on automation rules.

    Every definition is validated before it reaches the store, and every
    mutation invalidates the orchestrator's rule snapshot.
    """

    def __init__(self, rule_repository: IRuleRepository, rule_cache: IRuleCache):
        self._rule_repo = rule_repository
        self._cache = rule_cache

    async def list_rules(
        self,
        is_active: Optional[bool] = None,
        trigger_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[AutomationRule], int]:
        """
        List rules.

        Returns:
            Tuple of (rules, total matching)
        """
        filters: Dict[str, Any] = {}
        if is_active is not None:
            filters["is_active"] = is_active
        if trigger_type:
            filters["trigger_type"] = trigger_type

        rules = await self._rule_repo.list(filters, limit=limit, offset=offset)
        total = await self._rule_repo.count(filters)
        return rules, total

    async def get_rule(self, rule_id: str) -> AutomationRule:
        rule = await self._rule_repo.get_by_id(rule_id)
        if rule is None:
            raise ResourceNotFoundException("Automation rule", rule_id)
        return rule

    async def create_rule(self, dto: RuleCreateDTO, created_by: str) -> AutomationRule:
        """
        Validate and persist a new rule.

        Raises:
            RuleDefinitionException: If any clause is invalid
        """
        trigger, conditions, actions, window = self._parse_definition(
            dto.name,
            dto.trigger.type,
            dto.trigger.params,
            [c.model_dump() for c in dto.conditions],
            [a.model_dump() for a in dto.actions],
            dto.time_window.model_dump() if dto.time_window else None
        )

        now = datetime.now(timezone.utc)
        rule = AutomationRule(
            id=str(uuid.uuid4()),
            name=dto.name.strip(),
            description=dto.description,
            trigger=trigger,
            conditions=conditions,
            actions=actions,
            categories=list(dto.categories),
            tags=list(dto.tags),
            is_active=dto.is_active,
            execution_order=dto.execution_order,
            max_executions=dto.max_executions,
            stop_on_first_match=dto.stop_on_first_match,
            time_window=window,
            notify_on_success=dto.notify_on_success,
            notify_on_failure=dto.notify_on_failure,
            notify_recipients=_clean_recipients(dto.notify_recipients),
            created_by=created_by,
            created_at=now,
            updated_at=now
        )

        created = await self._rule_repo.create(rule)
        self._cache.invalidate()
        logger.info(
            "Automation rule created",
            extra={"rule_id": created.id, "trigger_type": trigger.type.value}
        )
        return created

    async def update_rule(self, rule_id: str, dto: RuleUpdateDTO) -> AutomationRule:
        """
        Apply a partial update; the merged definition is re-validated.

        Execution statistics are never touched by an update.
        """
        rule = await self.get_rule(rule_id)
        changes = dto.model_dump(exclude_unset=True)

        trigger_type = rule.trigger.type.value
        trigger_params: Dict[str, Any] = dict(rule.trigger.params)
        if changes.get("trigger") is not None:
            trigger_type = changes["trigger"]["type"]
            trigger_params = changes["trigger"].get("params") or {}

        conditions = changes.get("conditions")
        if conditions is None:
            conditions = [
                {"field": c.field, "operator": c.operator.value, "value": c.value}
                for c in rule.conditions
            ]
        actions = changes.get("actions")
        if actions is None:
            actions = [
                {"type": a.type.value, "parameters": dict(a.parameters)}
                for a in rule.actions
            ]

        # An explicit null clears the window
        if "time_window" in changes:
            time_window = changes["time_window"]
        elif rule.time_window is not None:
            time_window = asdict(rule.time_window)
        else:
            time_window = None

        name = changes.get("name") or rule.name
        trigger, parsed_conditions, parsed_actions, window = self._parse_definition(
            name, trigger_type, trigger_params, conditions, actions, time_window
        )

        rule.name = name.strip()
        rule.trigger = trigger
        rule.conditions = parsed_conditions
        rule.actions = parsed_actions
        rule.time_window = window
        for attr in (
            "description", "categories", "tags", "is_active",
            "execution_order", "max_executions", "stop_on_first_match",
            "notify_on_success", "notify_on_failure",
        ):
            if changes.get(attr) is not None:
                setattr(rule, attr, changes[attr])
        if changes.get("notify_recipients") is not None:
            rule.notify_recipients = _clean_recipients(changes["notify_recipients"])
        rule.updated_at = datetime.now(timezone.utc)

        updated = await self._rule_repo.update(rule)
        self._cache.invalidate()
        logger.info("Automation rule updated", extra={"rule_id": rule_id})
        return updated

    async def delete_rule(self, rule_id: str) -> None:
        deleted = await self._rule_repo.delete(rule_id)
        if not deleted:
            raise ResourceNotFoundException("Automation rule", rule_id)
        self._cache.invalidate()
        logger.info("Automation rule deleted", extra={"rule_id": rule_id})

    async def toggle_rule(self, rule_id: str) -> AutomationRule:
        """Flip the active flag of a rule."""
        rule = await self.get_rule(rule_id)
        await self._rule_repo.set_active([rule_id], not rule.is_active)
        self._cache.invalidate()
        rule.is_active = not rule.is_active
        logger.info(
            "Automation rule toggled",
            extra={"rule_id": rule_id, "is_active": rule.is_active}
        )
        return rule

    async def bulk_operation(self, operation: BulkOperation, rule_ids: List[str]) -> int:
        """
        Activate, deactivate or delete several rules.

        Returns:
            Number of rules affected
        """
        unique_ids = list(dict.fromkeys(rule_ids))
        if operation == BulkOperation.DELETE:
            affected = await self._rule_repo.delete_many(unique_ids)
        else:
            affected = await self._rule_repo.set_active(
                unique_ids, operation == BulkOperation.ACTIVATE
            )
        self._cache.invalidate()
        logger.info(
            "Bulk rule operation",
            extra={"operation": operation.value, "affected": affected}
        )
        return affected

    async def get_rule_stats(self, rule_id: str) -> AutomationRule:
        """Statistics live on the rule itself; this is a named read."""
        return await self.get_rule(rule_id)

    def list_templates(self) -> List[RuleTemplate]:
        return list(BUILTIN_TEMPLATES)

    async def clone_template(
        self,
        template_id: str,
        request: CloneTemplateRequest,
        created_by: str
    ) -> AutomationRule:
        """
        Create a new rule from a built-in template plus overrides.

        Raises:
            ResourceNotFoundException: Unknown template
            RuleDefinitionException: The template leaves action parameters
                to fill in and the request supplies no actions
        """
        template = get_template(template_id)
        if template is None:
            raise ResourceNotFoundException("Rule template", template_id)
        if request.actions is None and template.placeholders():
            raise RuleDefinitionException([
                f"{path} must be set when cloning '{template_id}'"
                for path in template.placeholders()
            ])

        definition = template.to_definition()
        trigger_params = definition["trigger"]["params"]
        if request.trigger_params:
            trigger_params.update(request.trigger_params)

        dto = RuleCreateDTO(
            name=request.name or definition["name"],
            description=(
                request.description if request.description is not None
                else definition["description"]
            ),
            trigger={"type": definition["trigger"]["type"], "params": trigger_params},
            conditions=(
                request.conditions if request.conditions is not None
                else definition["conditions"]
            ),
            actions=(
                request.actions if request.actions is not None
                else definition["actions"]
            ),
            categories=request.categories,
            tags=request.tags,
            is_active=request.is_active
        )
        return await self.create_rule(dto, created_by)

    @staticmethod
    def _parse_definition(
        name: str,
        trigger_type: str,
        trigger_params: Optional[Dict[str, Any]],
        conditions: List[Dict[str, Any]],
        actions: List[Dict[str, Any]],
        time_window: Optional[Dict[str, Any]] = None
    ):
        errors: List[str] = []
        if not name or not name.strip():
            errors.append("name is required")
        window = RuleDefinitionParser.parse_time_window(time_window, errors)
        try:
            trigger, parsed_conditions, parsed_actions = RuleDefinitionParser.parse(
                trigger_type, trigger_params, conditions, actions
            )
        except RuleDefinitionException as e:
            raise RuleDefinitionException(errors + e.errors)
        if errors:
            raise RuleDefinitionException(errors)
        return trigger, parsed_conditions, parsed_actions, window
