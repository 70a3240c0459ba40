"""
Automation Infrastructure Models
=================================

SQLAlchemy ORM models for the automation module.

``TicketModel`` is the ticket projection the engine reads and mutates;
the full ticket record is owned by the ticket-management service.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from deskflow.config import TicketPriority, TicketStatus
from deskflow.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketModel(Base):
    """
    Database model for the ticket projection.

    Maps to the 'tickets' table. ``version`` guards concurrent writes.
    """
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    priority: Mapped[str] = mapped_column(String(8), nullable=False, default=TicketPriority.P3.value)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=TicketStatus.NEW.value, index=True)

    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    assignee_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    category_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    custom_field_values: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class TicketActivityModel(Base):
    """
    Side-effect requests written with a mutation (internal notes,
    team-lead notifications), read later by the ticket and notification
    services.

    Maps to the 'ticket_activity' table.
    """
    __tablename__ = "ticket_activity"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    source: Mapped[str] = mapped_column(String(64), nullable=False, default="automation")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AutomationRuleModel(Base):
    """
    Database model for automation rules.

    Conditions and actions are stored as JSON in their API form.
    """
    __tablename__ = "automation_rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: uuid4().hex)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    conditions: Mapped[Any] = mapped_column(JSON, nullable=False, default=dict)
    actions: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_by_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AutomationExecutionModel(Base):
    """Audit record of one matched rule run. Maps to 'automation_executions'."""
    __tablename__ = "automation_executions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    rule_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    matched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    actions_applied: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
