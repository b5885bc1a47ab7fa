"""
Action Executor
===============

Dispatches the actions of a fired rule against the ticket and notification
services.

Actions run sequentially in declared order. A failing action is recorded
and the remaining actions still run; nothing is raised to the caller.
Each external call is bounded by the configured action timeout.

Successful ticket mutations produce derived lifecycle events (one level
deeper than the event that fired the rule) so other rules can react to
them.
"""

import asyncio
import dataclasses
import re
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple

from src.automation.application.services import (
    IAutomationConfigProvider, INotificationService, ITicketService,
)
from src.automation.domain import (
    Action, ActionResult, FieldDelta, LifecycleEvent, TicketSnapshot,
)
from src.automation.domain.value_objects import ConditionEvaluator, _MISSING, stringify
from src.config import ActionType, TagOperation, TriggerType, UNASSIGNED
from src.shared.infrastructure.logging import get_logger


logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")

# Accepted parameter names per action, first match wins
ACTION_PARAMETERS: Dict[ActionType, Tuple[str, ...]] = {
    ActionType.ASSIGN_TICKET: ("assignee", "assignTo"),
    ActionType.CHANGE_STATUS: ("value", "status"),
    ActionType.CHANGE_PRIORITY: ("value", "priority"),
    ActionType.ADD_TAG: ("tag",),
    ActionType.REMOVE_TAG: ("tag",),
    ActionType.SEND_EMAIL: ("template", "emailTemplate", "message"),
    ActionType.SEND_NOTIFICATION: ("message", "notificationMessage", "template"),
    ActionType.ADD_COMMENT: ("comment", "text"),
}


class MissingParameter(Exception):
    """Required action parameter absent or empty."""


def render_template(text: str, ticket: TicketSnapshot, rule_id: str) -> str:
    """Substitute {{ticket.<field>}} and {{rule.id}} placeholders."""

    def substitute(match: "re.Match[str]") -> str:
        path = match.group(1)
        if path == "rule.id":
            return rule_id
        if path.startswith("ticket."):
            value = ConditionEvaluator.resolve_field(ticket, path)
            if value is not _MISSING:
                return "" if value is None else stringify(value)
        return match.group(0)

    return _PLACEHOLDER.sub(substitute, text)


class ActionExecutor:
    """
    Executes rule actions and reports per-action outcomes.

    Error strings:
        missing_parameter - required parameter absent
        timeout - external call exceeded the action timeout
        external_error: <message> - external service failed
    """

    def __init__(
        self,
        ticket_service: ITicketService,
        notification_service: INotificationService,
        config_provider: IAutomationConfigProvider
    ):
        self._tickets = ticket_service
        self._notifications = notification_service
        self._config_provider = config_provider

    async def execute(
        self,
        actions: Sequence[Action],
        ticket: TicketSnapshot,
        rule_id: str,
        depth: int = 0
    ) -> List[ActionResult]:
        """
        Run all actions in order.

        Args:
            actions: The fired rule's actions
            ticket: Snapshot the rule was evaluated against
            rule_id: Fired rule, used for templating and derived events
            depth: Depth of the event that fired the rule

        Returns:
            One ActionResult per action, same order
        """
        timeout = self._config_provider.get_config().action_timeout_seconds
        results: List[ActionResult] = []
        current = ticket

        for action in actions:
            try:
                current, derived = await self._dispatch(action, current, rule_id, depth, timeout)
                results.append(ActionResult(
                    action_type=action.type,
                    success=True,
                    derived_event=derived
                ))
            except MissingParameter:
                results.append(self._failure(action, "missing_parameter", ticket.id, rule_id))
            except asyncio.TimeoutError:
                results.append(self._failure(action, "timeout", ticket.id, rule_id))
            except Exception as e:
                results.append(
                    self._failure(action, f"external_error: {e}", ticket.id, rule_id)
                )

        return results

    async def _dispatch(
        self,
        action: Action,
        ticket: TicketSnapshot,
        rule_id: str,
        depth: int,
        timeout: float
    ) -> Tuple[TicketSnapshot, Optional[LifecycleEvent]]:
        """
        Perform one action.

        Returns the ticket view after the action (so later actions in the
        same rule see earlier changes) and the derived event, if any.
        """
        kind = action.type

        def event(
            event_type: TriggerType,
            field_name: str,
            from_value: Optional[str],
            to_value: Optional[str]
        ) -> LifecycleEvent:
            return LifecycleEvent(
                type=event_type,
                ticket_id=ticket.id,
                delta=FieldDelta(field_name, from_value, to_value),
                depth=depth + 1,
                origin_rule_id=rule_id
            )

        if kind == ActionType.ASSIGN_TICKET:
            requested = self._require(action)
            assignee = None if requested == UNASSIGNED else requested
            await self._call(self._tickets.assign_ticket(ticket.id, assignee), timeout)
            if assignee == ticket.assigned_to:
                return ticket, None
            return (
                dataclasses.replace(ticket, assigned_to=assignee),
                event(TriggerType.ASSIGNED_CHANGED, "assigned_to", ticket.assigned_to, assignee)
            )

        if kind == ActionType.CHANGE_STATUS:
            status = self._require(action)
            await self._call(self._tickets.update_ticket(ticket.id, {"status": status}), timeout)
            if status == ticket.status:
                return ticket, None
            return (
                dataclasses.replace(ticket, status=status),
                event(TriggerType.STATUS_CHANGED, "status", ticket.status, status)
            )

        if kind == ActionType.CHANGE_PRIORITY:
            priority = self._require(action)
            await self._call(
                self._tickets.update_ticket(ticket.id, {"priority": priority}), timeout
            )
            if priority == ticket.priority:
                return ticket, None
            return (
                dataclasses.replace(ticket, priority=priority),
                event(TriggerType.PRIORITY_CHANGED, "priority", ticket.priority, priority)
            )

        if kind == ActionType.ADD_TAG:
            tag = self._require(action)
            await self._call(
                self._tickets.update_tags(ticket.id, tag, TagOperation.ADD), timeout
            )
            if tag in ticket.tags:
                return ticket, None
            return (
                dataclasses.replace(ticket, tags=ticket.tags + (tag,)),
                event(TriggerType.TICKET_UPDATED, "tags", None, tag)
            )

        if kind == ActionType.REMOVE_TAG:
            tag = self._require(action)
            await self._call(
                self._tickets.update_tags(ticket.id, tag, TagOperation.REMOVE), timeout
            )
            if tag not in ticket.tags:
                return ticket, None
            return (
                dataclasses.replace(ticket, tags=tuple(t for t in ticket.tags if t != tag)),
                event(TriggerType.TICKET_UPDATED, "tags", tag, None)
            )

        if kind == ActionType.ESCALATE_TICKET:
            target = action.parameters.get("to") or None
            await self._call(self._tickets.escalate(ticket.id, target), timeout)
            return ticket, event(TriggerType.TICKET_UPDATED, "escalated", None, target or "true")

        if kind == ActionType.ADD_COMMENT:
            text = render_template(self._require(action), ticket, rule_id)
            await self._call(self._tickets.add_comment(ticket.id, text), timeout)
            return ticket, event(TriggerType.COMMENT_ADDED, "comment", None, text)

        if kind == ActionType.SEND_EMAIL:
            template = render_template(self._require(action), ticket, rule_id)
            await self._call(
                self._notifications.send_email(
                    template,
                    self._recipient(action),
                    self._context(ticket, rule_id)
                ),
                timeout
            )
            return ticket, None

        if kind == ActionType.SEND_NOTIFICATION:
            message = render_template(self._require(action), ticket, rule_id)
            await self._call(
                self._notifications.send_notification(
                    message,
                    self._recipient(action),
                    self._context(ticket, rule_id)
                ),
                timeout
            )
            return ticket, None

        raise ValueError(f"Unhandled action type: {kind}")

    @staticmethod
    def _require(action: Action) -> str:
        for name in ACTION_PARAMETERS.get(action.type, ()):
            value = action.parameters.get(name)
            if value is not None and str(value).strip():
                return str(value)
        raise MissingParameter(action.type.value)

    @staticmethod
    def _recipient(action: Action) -> str:
        return action.parameters.get("to") or "assignee"

    @staticmethod
    def _context(ticket: TicketSnapshot, rule_id: str) -> Dict[str, Any]:
        return {
            "ticket_id": ticket.id,
            "subject": ticket.subject,
            "status": ticket.status,
            "priority": ticket.priority,
            "assigned_to": ticket.assigned_to,
            "rule_id": rule_id,
        }

    @staticmethod
    async def _call(call: Awaitable[Any], timeout: float) -> Any:
        return await asyncio.wait_for(call, timeout=timeout)

    @staticmethod
    def _failure(action: Action, error: str, ticket_id: str, rule_id: str) -> ActionResult:
        logger.warning(
            "Automation action failed",
            extra={
                "rule_id": rule_id,
                "ticket_id": ticket_id,
                "action_type": action.type.value,
                "error": error,
            }
        )
        return ActionResult(action_type=action.type, success=False, error=error)
