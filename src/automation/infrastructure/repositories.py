"""
Automation Infrastructure Repositories
=======================================

Concrete implementations of the rule store.

- SQLAlchemyRuleRepository: durable store (PostgreSQL via asyncpg, or SQLite)
- InMemoryRuleRepository: process-local store for development and tests

Both hand out copies of rules; callers never share mutable state with
the store, and counter updates are atomic per rule.
"""

import asyncio
import copy
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.automation.application import IRuleRepository
from src.automation.domain import Action, AutomationRule, Condition, TimeWindow, Trigger
from src.automation.infrastructure.models import AutomationRuleModel
from src.config import ActionType, ConditionOperator, TriggerType
from src.core import RepositoryException
from src.infrastructure.database import session_scope
from src.shared.infrastructure.logging import get_logger


logger = get_logger(__name__)

_MAX_ERROR_LENGTH = 2000


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored timestamps are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_domain(model: AutomationRuleModel) -> AutomationRule:
    return AutomationRule(
        id=model.id,
        name=model.name,
        description=model.description or "",
        trigger=Trigger(
            type=TriggerType(model.trigger_type),
            params=dict(model.trigger_params or {})
        ),
        conditions=[
            Condition(
                field=c["field"],
                operator=ConditionOperator(c["operator"]),
                value=c.get("value", "")
            )
            for c in (model.conditions or [])
        ],
        actions=[
            Action(type=ActionType(a["type"]), parameters=dict(a.get("parameters") or {}))
            for a in (model.actions or [])
        ],
        categories=list(model.categories or []),
        tags=list(model.tags or []),
        is_active=model.is_active,
        execution_order=model.execution_order,
        max_executions=model.max_executions,
        stop_on_first_match=model.stop_on_first_match,
        time_window=TimeWindow(**model.time_window) if model.time_window else None,
        notify_on_success=model.notify_on_success,
        notify_on_failure=model.notify_on_failure,
        notify_recipients=list(model.notify_recipients or []),
        execution_count=model.execution_count,
        success_count=model.success_count,
        failure_count=model.failure_count,
        last_executed_at=_aware(model.last_executed_at),
        last_error=model.last_error,
        created_by=model.created_by,
        created_at=_aware(model.created_at),
        updated_at=_aware(model.updated_at)
    )


def _definition_columns(rule: AutomationRule) -> Dict[str, Any]:
    """Columns written by create/update; statistics are excluded."""
    return {
        "name": rule.name,
        "description": rule.description,
        "trigger_type": rule.trigger.type.value,
        "trigger_params": dict(rule.trigger.params),
        "conditions": [
            {"field": c.field, "operator": c.operator.value, "value": c.value}
            for c in rule.conditions
        ],
        "actions": [
            {"type": a.type.value, "parameters": dict(a.parameters)}
            for a in rule.actions
        ],
        "categories": list(rule.categories),
        "tags": list(rule.tags),
        "is_active": rule.is_active,
        "execution_order": rule.execution_order,
        "max_executions": rule.max_executions,
        "stop_on_first_match": rule.stop_on_first_match,
        "time_window": asdict(rule.time_window) if rule.time_window else None,
        "notify_on_success": rule.notify_on_success,
        "notify_on_failure": rule.notify_on_failure,
        "notify_recipients": list(rule.notify_recipients),
        "updated_at": rule.updated_at,
    }


class SQLAlchemyRuleRepository(IRuleRepository):
    """
    SQLAlchemy implementation of the rule repository.

    Opens a short-lived session per operation, so one instance can be shared
    by concurrent orchestration passes and API requests.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get_by_id(self, rule_id: str) -> Optional[AutomationRule]:
        try:
            async with session_scope(self._session_maker) as session:
                model = await session.get(AutomationRuleModel, rule_id)
                return _to_domain(model) if model else None
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load rule {rule_id}: {e}")

    async def list(
        self,
        filters: dict,
        limit: int = 100,
        offset: int = 0
    ) -> List[AutomationRule]:
        stmt = self._apply_filters(select(AutomationRuleModel), filters)
        stmt = stmt.order_by(
            AutomationRuleModel.execution_order.asc(),
            AutomationRuleModel.created_at.asc()
        ).limit(limit).offset(offset)

        try:
            async with session_scope(self._session_maker) as session:
                result = await session.execute(stmt)
                return [_to_domain(m) for m in result.scalars().all()]
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to list rules: {e}")

    async def count(self, filters: dict) -> int:
        stmt = self._apply_filters(
            select(func.count()).select_from(AutomationRuleModel), filters
        )
        try:
            async with session_scope(self._session_maker) as session:
                result = await session.execute(stmt)
                return int(result.scalar_one())
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to count rules: {e}")

    async def list_active(self) -> List[AutomationRule]:
        stmt = (
            select(AutomationRuleModel)
            .where(AutomationRuleModel.is_active.is_(True))
            .order_by(
                AutomationRuleModel.execution_order.asc(),
                AutomationRuleModel.created_at.asc()
            )
        )
        try:
            async with session_scope(self._session_maker) as session:
                result = await session.execute(stmt)
                return [_to_domain(m) for m in result.scalars().all()]
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load active rules: {e}")

    async def create(self, rule: AutomationRule) -> AutomationRule:
        model = AutomationRuleModel(
            id=rule.id,
            created_by=rule.created_by,
            created_at=rule.created_at,
            **_definition_columns(rule)
        )
        try:
            async with session_scope(self._session_maker) as session:
                session.add(model)
                await session.flush()
                return _to_domain(model)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to create rule: {e}")

    async def update(self, rule: AutomationRule) -> AutomationRule:
        stmt = (
            update(AutomationRuleModel)
            .where(AutomationRuleModel.id == rule.id)
            .values(**_definition_columns(rule))
        )
        try:
            async with session_scope(self._session_maker) as session:
                result = await session.execute(stmt)
                if result.rowcount == 0:
                    raise RepositoryException(f"Rule {rule.id} not found")
                model = await session.get(AutomationRuleModel, rule.id, populate_existing=True)
                return _to_domain(model)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to update rule {rule.id}: {e}")

    async def delete(self, rule_id: str) -> bool:
        return await self.delete_many([rule_id]) > 0

    async def set_active(self, rule_ids: List[str], is_active: bool) -> int:
        stmt = (
            update(AutomationRuleModel)
            .where(AutomationRuleModel.id.in_(rule_ids))
            .values(is_active=is_active, updated_at=datetime.now(timezone.utc))
        )
        try:
            async with session_scope(self._session_maker) as session:
                result = await session.execute(stmt)
                return result.rowcount
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to update rules: {e}")

    async def delete_many(self, rule_ids: List[str]) -> int:
        stmt = delete(AutomationRuleModel).where(AutomationRuleModel.id.in_(rule_ids))
        try:
            async with session_scope(self._session_maker) as session:
                result = await session.execute(stmt)
                return result.rowcount
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to delete rules: {e}")

    async def claim_execution(
        self,
        rule_id: str,
        executed_at: Optional[datetime] = None
    ) -> Optional[int]:
        """Single guarded UPDATE ... RETURNING; the cap check runs in the database."""
        model = AutomationRuleModel
        stmt = (
            update(model)
            .where(
                model.id == rule_id,
                or_(model.max_executions <= 0, model.execution_count < model.max_executions)
            )
            .values(
                execution_count=model.execution_count + 1,
                last_executed_at=executed_at or datetime.now(timezone.utc)
            )
            .returning(model.execution_count)
        )
        try:
            async with session_scope(self._session_maker) as session:
                result = await session.execute(stmt)
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to record execution of rule {rule_id}: {e}")

    async def record_outcome(
        self,
        rule_id: str,
        succeeded: bool,
        error: Optional[str] = None
    ) -> None:
        if succeeded:
            values: Dict[str, Any] = {"success_count": AutomationRuleModel.success_count + 1}
        else:
            values = {
                "failure_count": AutomationRuleModel.failure_count + 1,
                "last_error": (error or "")[:_MAX_ERROR_LENGTH],
            }
        stmt = update(AutomationRuleModel).where(AutomationRuleModel.id == rule_id).values(**values)
        try:
            async with session_scope(self._session_maker) as session:
                await session.execute(stmt)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to record outcome of rule {rule_id}: {e}")

    async def record_error(self, rule_id: str, error: str) -> None:
        stmt = (
            update(AutomationRuleModel)
            .where(AutomationRuleModel.id == rule_id)
            .values(last_error=error[:_MAX_ERROR_LENGTH])
        )
        try:
            async with session_scope(self._session_maker) as session:
                await session.execute(stmt)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to record error on rule {rule_id}: {e}")

    @staticmethod
    def _apply_filters(stmt, filters: dict):
        if filters.get("is_active") is not None:
            stmt = stmt.where(AutomationRuleModel.is_active.is_(bool(filters["is_active"])))
        if filters.get("trigger_type"):
            stmt = stmt.where(AutomationRuleModel.trigger_type == filters["trigger_type"])
        return stmt


class InMemoryRuleRepository(IRuleRepository):
    """
    Process-local rule store.

    Guarded by an asyncio.Lock; suitable for a single worker only.
    """

    def __init__(self, rules: Optional[List[AutomationRule]] = None):
        self._rules: Dict[str, AutomationRule] = {}
        self._lock = asyncio.Lock()
        for rule in rules or []:
            self._rules[rule.id] = copy.deepcopy(rule)

    async def get_by_id(self, rule_id: str) -> Optional[AutomationRule]:
        async with self._lock:
            rule = self._rules.get(rule_id)
            return copy.deepcopy(rule) if rule else None

    async def list(
        self,
        filters: dict,
        limit: int = 100,
        offset: int = 0
    ) -> List[AutomationRule]:
        async with self._lock:
            matching = self._filtered(filters)
            return [copy.deepcopy(r) for r in matching[offset:offset + limit]]

    async def count(self, filters: dict) -> int:
        async with self._lock:
            return len(self._filtered(filters))

    async def list_active(self) -> List[AutomationRule]:
        return await self.list({"is_active": True}, limit=len(self._rules) or 1)

    async def create(self, rule: AutomationRule) -> AutomationRule:
        async with self._lock:
            if rule.id in self._rules:
                raise RepositoryException(f"Rule {rule.id} already exists")
            self._rules[rule.id] = copy.deepcopy(rule)
            return copy.deepcopy(rule)

    async def update(self, rule: AutomationRule) -> AutomationRule:
        async with self._lock:
            stored = self._rules.get(rule.id)
            if stored is None:
                raise RepositoryException(f"Rule {rule.id} not found")
            replacement = copy.deepcopy(rule)
            # Counters belong to the store, not to the caller's copy
            for attr in (
                "execution_count", "success_count", "failure_count",
                "last_executed_at", "last_error", "created_at", "created_by",
            ):
                setattr(replacement, attr, getattr(stored, attr))
            self._rules[rule.id] = replacement
            return copy.deepcopy(replacement)

    async def delete(self, rule_id: str) -> bool:
        return await self.delete_many([rule_id]) > 0

    async def set_active(self, rule_ids: List[str], is_active: bool) -> int:
        async with self._lock:
            affected = 0
            for rule_id in rule_ids:
                rule = self._rules.get(rule_id)
                if rule is not None:
                    rule.is_active = is_active
                    rule.updated_at = datetime.now(timezone.utc)
                    affected += 1
            return affected

    async def delete_many(self, rule_ids: List[str]) -> int:
        async with self._lock:
            return sum(1 for rule_id in rule_ids if self._rules.pop(rule_id, None) is not None)

    async def claim_execution(
        self,
        rule_id: str,
        executed_at: Optional[datetime] = None
    ) -> Optional[int]:
        async with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None or rule.is_exhausted:
                return None
            rule.execution_count += 1
            rule.last_executed_at = executed_at or datetime.now(timezone.utc)
            return rule.execution_count

    async def record_outcome(
        self,
        rule_id: str,
        succeeded: bool,
        error: Optional[str] = None
    ) -> None:
        async with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return
            if succeeded:
                rule.success_count += 1
            else:
                rule.failure_count += 1
                rule.last_error = (error or "")[:_MAX_ERROR_LENGTH]

    async def record_error(self, rule_id: str, error: str) -> None:
        async with self._lock:
            rule = self._rules.get(rule_id)
            if rule is not None:
                rule.last_error = error[:_MAX_ERROR_LENGTH]

    def _filtered(self, filters: dict) -> List[AutomationRule]:
        rules = list(self._rules.values())
        if filters.get("is_active") is not None:
            rules = [r for r in rules if r.is_active == bool(filters["is_active"])]
        if filters.get("trigger_type"):
            rules = [r for r in rules if r.trigger.type.value == filters["trigger_type"]]
        return sorted(rules, key=lambda r: (r.execution_order, r.created_at))
