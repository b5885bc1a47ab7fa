"""Pytest configuration and fixtures."""

import pytest

from src.automation.application import (
    ActionExecutor,
    AutomationOrchestrator,
    RuleService,
    RuleSnapshotCache,
)
from src.automation.infrastructure import InMemoryRuleRepository
from tests.helpers import (
    RecordingNotificationService,
    RecordingTicketService,
    StaticConfigProvider,
    make_ticket,
)


@pytest.fixture
def ticket_service():
    return RecordingTicketService([make_ticket()])


@pytest.fixture
def notification_service():
    return RecordingNotificationService()


@pytest.fixture
def config_provider():
    return StaticConfigProvider()


@pytest.fixture
def repository():
    return InMemoryRuleRepository()


@pytest.fixture
def rule_cache(repository):
    return RuleSnapshotCache(repository)


@pytest.fixture
def executor(ticket_service, notification_service, config_provider):
    return ActionExecutor(ticket_service, notification_service, config_provider)


@pytest.fixture
def orchestrator(rule_cache, repository, ticket_service, executor, config_provider):
    return AutomationOrchestrator(
        rule_cache=rule_cache,
        rule_repository=repository,
        ticket_service=ticket_service,
        executor=executor,
        config_provider=config_provider,
        scan_interval_seconds=60
    )


@pytest.fixture
def rule_service(repository, rule_cache):
    return RuleService(repository, rule_cache)
