"""
Automation Infrastructure Models
=================================

SQLAlchemy ORM models for the automation module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.infrastructure.database import Base


class AutomationRuleModel(Base):
    """
    Database model for AutomationRule entity.

    Maps to the 'automation_rules' table. Conditions and actions are stored
    as JSON lists in declared order.
    """
    __tablename__ = "automation_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Definition
    trigger_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    trigger_params: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    conditions: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    actions: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    categories: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    # Execution settings
    execution_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_executions: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    stop_on_first_match: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    time_window: Mapped[Optional[Dict[str, str]]] = mapped_column(JSON, nullable=True)

    # Run notifications
    notify_on_success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notify_on_failure: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_recipients: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Statistics
    execution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Audit
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
