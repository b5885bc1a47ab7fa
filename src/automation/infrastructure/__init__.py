"""
Automation Infrastructure Layer
================================

Infrastructure implementations for workflow automation:
- Models: SQLAlchemy ORM models
- Repositories: Rule store (SQLAlchemy and in-memory)
- External: Ticket/notification clients, config watcher, scheduler
- Events: In-process lifecycle event bus
"""

from src.automation.infrastructure.models import AutomationRuleModel
from src.automation.infrastructure.repositories import (
    SQLAlchemyRuleRepository,
    InMemoryRuleRepository,
)
from src.automation.infrastructure.external import (
    AutomationConfigManager,
    AutomationScheduler,
    CircuitBreaker,
    HTTPNotificationService,
    HTTPTicketService,
    ResilientHTTPClient,
    SlackClient,
)
from src.automation.infrastructure.events import LifecycleEventBus

__all__ = [
    "AutomationRuleModel",
    "SQLAlchemyRuleRepository",
    "InMemoryRuleRepository",
    "AutomationConfigManager",
    "AutomationScheduler",
    "CircuitBreaker",
    "HTTPNotificationService",
    "HTTPTicketService",
    "ResilientHTTPClient",
    "SlackClient",
    "LifecycleEventBus",
]
