"""Test doubles and factories shared by the test modules."""

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from src.automation.application import (
    IAutomationConfigProvider,
    INotificationService,
    ITicketService,
)
from src.automation.domain import (
    Action,
    AutomationConfig,
    AutomationRule,
    Condition,
    TicketSnapshot,
    Trigger,
)
from src.config import ActionType, ConditionOperator, TagOperation, TriggerType


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

MUTATING_CALLS = {"assign_ticket", "update_ticket", "update_tags", "escalate", "add_comment"}


class RecordingTicketService(ITicketService):
    """In-memory ticket service that records every call."""

    def __init__(self, tickets: Optional[List[TicketSnapshot]] = None):
        self.tickets: Dict[str, TicketSnapshot] = {t.id: t for t in tickets or []}
        self.calls: List[Tuple[str, tuple]] = []
        self.failures: Dict[str, Exception] = {}
        self.delays: Dict[str, float] = {}

    def add(self, ticket: TicketSnapshot) -> None:
        self.tickets[ticket.id] = ticket

    def mutating_calls(self) -> List[Tuple[str, tuple]]:
        return [c for c in self.calls if c[0] in MUTATING_CALLS]

    async def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.delays:
            await asyncio.sleep(self.delays[name])
        if name in self.failures:
            raise self.failures[name]

    def _replace(self, ticket_id: str, **changes: Any) -> None:
        if ticket_id in self.tickets:
            self.tickets[ticket_id] = dataclasses.replace(self.tickets[ticket_id], **changes)

    async def get_ticket_snapshot(self, ticket_id: str) -> Optional[TicketSnapshot]:
        await self._record("get_ticket_snapshot", ticket_id)
        return self.tickets.get(ticket_id)

    async def list_open_tickets(self, statuses: List[str]) -> List[TicketSnapshot]:
        await self._record("list_open_tickets", tuple(statuses))
        return [t for t in self.tickets.values() if t.status in statuses]

    async def assign_ticket(self, ticket_id: str, assignee: Optional[str]) -> None:
        await self._record("assign_ticket", ticket_id, assignee)
        self._replace(ticket_id, assigned_to=assignee)

    async def update_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> None:
        await self._record("update_ticket", ticket_id, dict(fields))
        self._replace(ticket_id, **fields)

    async def update_tags(self, ticket_id: str, tag: str, operation: TagOperation) -> None:
        await self._record("update_tags", ticket_id, tag, operation)
        ticket = self.tickets.get(ticket_id)
        if ticket is None:
            return
        if operation == TagOperation.ADD and tag not in ticket.tags:
            self._replace(ticket_id, tags=ticket.tags + (tag,))
        elif operation == TagOperation.REMOVE:
            self._replace(ticket_id, tags=tuple(t for t in ticket.tags if t != tag))

    async def escalate(self, ticket_id: str, to: Optional[str] = None) -> None:
        await self._record("escalate", ticket_id, to)

    async def add_comment(self, ticket_id: str, text: str) -> None:
        await self._record("add_comment", ticket_id, text)


class RecordingNotificationService(INotificationService):
    """Notification service that records every call."""

    def __init__(self):
        self.calls: List[Tuple[str, tuple]] = []
        self.failures: Dict[str, Exception] = {}

    async def send_email(self, template: str, recipient_spec: str, context: Dict[str, Any]) -> None:
        self.calls.append(("send_email", (template, recipient_spec, context)))
        if "send_email" in self.failures:
            raise self.failures["send_email"]

    async def send_notification(self, message: str, recipient_spec: str, context: Dict[str, Any]) -> None:
        self.calls.append(("send_notification", (message, recipient_spec, context)))
        if "send_notification" in self.failures:
            raise self.failures["send_notification"]


class StaticConfigProvider(IAutomationConfigProvider):
    def __init__(self, config: Optional[AutomationConfig] = None):
        self.config = config or AutomationConfig(action_timeout_seconds=0.5)

    def get_config(self) -> AutomationConfig:
        return self.config


def make_ticket(ticket_id: str = "T1", **overrides: Any) -> TicketSnapshot:
    values: Dict[str, Any] = {
        "id": ticket_id,
        "status": "open",
        "priority": "medium",
        "subject": "Printer on fire",
        "description": "The office printer is smoking",
        "category": "hardware",
        "assigned_to": None,
        "created_by": "user-1",
        "tags": (),
        "created_at": NOW - timedelta(hours=2),
        "updated_at": NOW - timedelta(minutes=30),
    }
    values.update(overrides)
    return TicketSnapshot(**values)


def make_rule(
    rule_id: str = "rule-1",
    trigger_type: TriggerType = TriggerType.TICKET_CREATED,
    trigger_params: Optional[Dict[str, str]] = None,
    conditions: Optional[List[Tuple[str, ConditionOperator, str]]] = None,
    actions: Optional[List[Tuple[ActionType, Dict[str, str]]]] = None,
    **overrides: Any
) -> AutomationRule:
    values: Dict[str, Any] = {
        "id": rule_id,
        "name": f"Rule {rule_id}",
        "trigger": Trigger(type=trigger_type, params=dict(trigger_params or {})),
        "conditions": [Condition(f, op, v) for f, op, v in (conditions or [])],
        "actions": [Action(t, dict(p)) for t, p in (actions or [])],
        "created_by": "admin",
    }
    values.update(overrides)
    return AutomationRule(**values)


