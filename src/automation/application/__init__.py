"""
Automation Application Layer
=============================

Use cases for the workflow automation module: rule management, action
execution, and event orchestration.
"""

from src.automation.application.services import (
    IRuleRepository,
    ITicketService,
    INotificationService,
    IAutomationConfigProvider,
    IRuleCache,
    RuleService,
)
from src.automation.application.cache import RuleSnapshotCache
from src.automation.application.executor import ActionExecutor, render_template
from src.automation.application.orchestrator import AutomationOrchestrator, ScanReport

__all__ = [
    "IRuleRepository",
    "ITicketService",
    "INotificationService",
    "IAutomationConfigProvider",
    "IRuleCache",
    "RuleService",
    "RuleSnapshotCache",
    "ActionExecutor",
    "render_template",
    "AutomationOrchestrator",
    "ScanReport",
]
