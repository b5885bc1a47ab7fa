"""
Configuration Module
====================

Service settings (pydantic-settings, read from the environment and .env)
and the closed vocabularies shared by every automation layer.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Process-level settings for the automation service.

    Engine tuning that may change at runtime lives in the hot-reloaded
    YAML file instead (see AutomationConfigManager).
    """

    # ========== Application ==========
    app_name: str = Field(default="automation-service", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/automation",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Rule Store ==========
    rule_store_backend: str = Field(
        default="database",
        description="Rule store backend: 'database' or 'memory'"
    )
    rule_cache_ttl_seconds: int = Field(
        default=300,
        description="Max age of the active-rule snapshot before a forced reload (0 = no expiry)",
        ge=0
    )

    # ========== Automation Engine ==========
    automation_config_path: Path = Field(
        default=Path("automation_config.yaml"),
        description="Path to the hot-reloadable engine tuning YAML file"
    )
    scan_interval_seconds: int = Field(
        default=60,
        description="Seconds between time-based/SLA scans (0 disables the scheduler)",
        ge=0
    )
    action_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout applied to every external call made by an action",
        gt=0,
        le=60
    )
    max_event_depth: int = Field(
        default=5,
        description="Max depth of rule-derived lifecycle events before the loop guard trips",
        ge=0,
        le=50
    )

    # ========== Ticket Service ==========
    ticket_service_url: str = Field(
        default="http://localhost:5000/api",
        description="Base URL of the ticket service REST API"
    )
    ticket_service_token: Optional[str] = Field(
        default=None,
        description="Bearer token used to call the ticket service"
    )

    # ========== Notification Service ==========
    notification_service_url: Optional[str] = Field(
        default=None,
        description="Base URL of the notification service (email + in-app)"
    )
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL mirrored for in-app notifications"
    )
    slack_channel: str = Field(
        default="#helpdesk-automation",
        description="Slack channel for automation notifications"
    )
    http_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for outbound HTTP calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("rule_store_backend")
    @classmethod
    def validate_rule_store_backend(cls, v: str) -> str:
        allowed = {"database", "memory"}
        if v not in allowed:
            raise ValueError(f"rule_store_backend must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process."""
    return Settings()


settings = get_settings()


# ========== Closed vocabularies ==========

class TriggerType(str, Enum):
    """Lifecycle event categories a rule can respond to."""
    TICKET_CREATED = "ticket_created"
    TICKET_UPDATED = "ticket_updated"
    COMMENT_ADDED = "comment_added"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    ASSIGNED_CHANGED = "assigned_changed"
    TIME_BASED = "time_based"
    SLA_BREACHED = "sla_breached"


class ConditionOperator(str, Enum):
    """Operators allowed in a rule condition."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class ActionType(str, Enum):
    """Side-effecting operations a rule can dispatch."""
    ASSIGN_TICKET = "assign_ticket"
    CHANGE_STATUS = "change_status"
    CHANGE_PRIORITY = "change_priority"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    SEND_EMAIL = "send_email"
    SEND_NOTIFICATION = "send_notification"
    ESCALATE_TICKET = "escalate_ticket"
    ADD_COMMENT = "add_comment"


class TagOperation(str, Enum):
    """Direction of a tag update."""
    ADD = "add"
    REMOVE = "remove"


class TicketStatus(str, Enum):
    """Help-desk ticket statuses."""
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    PENDING = "pending"
    ON_HOLD = "on-hold"
    RESOLVED = "resolved"
    CLOSED = "closed"


class BulkOperation(str, Enum):
    """Bulk operations on rules."""
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    DELETE = "delete"


# Sentinel accepted by assign_ticket to clear the assignee
UNASSIGNED = "unassigned"


# ========== Derived lookups ==========

VALID_TRIGGER_TYPES = [t.value for t in TriggerType]
VALID_OPERATORS = [o.value for o in ConditionOperator]
VALID_ACTION_TYPES = [a.value for a in ActionType]
OPEN_STATUSES = [
    s.value for s in (
        TicketStatus.OPEN, TicketStatus.IN_PROGRESS,
        TicketStatus.PENDING, TicketStatus.ON_HOLD,
    )
]
# Triggers that carry a from/to delta on the watched field
DELTA_TRIGGER_FIELDS = {
    TriggerType.STATUS_CHANGED: "status",
    TriggerType.PRIORITY_CHANGED: "priority",
    TriggerType.ASSIGNED_CHANGED: "assigned_to",
}

# Triggers synthesized by the periodic scan rather than by ticket mutations
SCHEDULED_TRIGGERS = {TriggerType.TIME_BASED, TriggerType.SLA_BREACHED}
