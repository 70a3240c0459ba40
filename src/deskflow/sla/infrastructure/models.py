"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for the SLA module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from deskflow.config import SubClock, ThresholdKind
from deskflow.infrastructure.database import Base


class SlaInstanceModel(Base):
    """
    Database model for SlaInstance.

    Maps to the 'sla_instances' table, one row per ticket.
    """
    __tablename__ = "sla_instances"

    ticket_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    priority: Mapped[str] = mapped_column(String(8), nullable=False)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    business_hours_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    schedule_version: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    # First response
    first_response_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    first_response_due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    first_response_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Resolution
    resolution_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolution_due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_paused_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paused_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Sweep scheduling (null when no threshold can still fire)
    next_check_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    # Notification markers (set once, never cleared)
    first_response_at_risk_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_at_risk_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    first_response_breach_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_breach_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


MARKER_COLUMNS = {
    (SubClock.FIRST_RESPONSE, ThresholdKind.AT_RISK): "first_response_at_risk_notified_at",
    (SubClock.RESOLUTION, ThresholdKind.AT_RISK): "resolution_at_risk_notified_at",
    (SubClock.FIRST_RESPONSE, ThresholdKind.BREACHED): "first_response_breach_notified_at",
    (SubClock.RESOLUTION, ThresholdKind.BREACHED): "resolution_breach_notified_at",
}
