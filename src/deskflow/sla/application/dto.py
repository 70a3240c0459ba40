"""
SLA Application DTOs
=====================

Data Transfer Objects for the SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from deskflow.sla.domain import SlaInstance, SlaSubClock, ThresholdCrossing

# ========== Type Aliases for Literals ==========
PriorityStr = Literal["P1", "P2", "P3", "P4"]
TicketStatusStr = Literal[
    "NEW", "TRIAGED", "ASSIGNED", "IN_PROGRESS", "WAITING_ON_REQUESTER",
    "WAITING_ON_VENDOR", "RESOLVED", "CLOSED", "REOPENED",
]
SubClockStr = Literal["first_response", "resolution"]
ThresholdKindStr = Literal["at_risk", "breached"]
SLAStateStr = Literal["running", "paused", "met", "breached"]


# ========== Request DTOs ==========

class StartSlaRequest(BaseModel):
    """Start the SLA of a newly created ticket."""
    priority: PriorityStr = Field(..., description="Ticket priority")
    team_id: Optional[str] = Field(None, description="Assigned team, if any")
    created_at: Optional[datetime] = Field(None, description="Ticket creation time (defaults to now)")


class StatusChangeRequest(BaseModel):
    status: TicketStatusStr
    changed_at: Optional[datetime] = None


class FirstResponseRequest(BaseModel):
    responded_at: Optional[datetime] = None


class PriorityChangeRequest(BaseModel):
    priority: PriorityStr
    team_id: Optional[str] = None
    changed_at: Optional[datetime] = None


class SweepRequest(BaseModel):
    now: Optional[datetime] = Field(None, description="Evaluation time (defaults to now)")


# ========== Response DTOs ==========

class SubClockResponse(BaseModel):
    """Response model for one SLA sub-clock."""
    started_at: datetime
    due_at: datetime
    met_at: Optional[datetime] = None
    state: SLAStateStr
    at_risk_notified_at: Optional[datetime] = None
    breach_notified_at: Optional[datetime] = None

    @classmethod
    def from_clock(cls, clock: SlaSubClock, now: datetime) -> "SubClockResponse":
        return cls(
            started_at=clock.started_at,
            due_at=clock.due_at,
            met_at=clock.met_at,
            state=clock.state(now).value,
            at_risk_notified_at=clock.at_risk_notified_at,
            breach_notified_at=clock.breach_notified_at,
        )


class SlaInstanceResponse(BaseModel):
    """Response model for a ticket's SLA instance."""
    ticket_id: str
    priority: PriorityStr
    team_id: Optional[str] = None
    business_hours_only: bool
    schedule_version: Optional[str] = None
    first_response: SubClockResponse
    resolution: SubClockResponse
    sla_paused_at: Optional[datetime] = None
    paused_duration_ms: int = 0

    @classmethod
    def from_instance(cls, instance: SlaInstance, now: Optional[datetime] = None) -> "SlaInstanceResponse":
        now = now or datetime.now(timezone.utc)
        return cls(
            ticket_id=instance.ticket_id,
            priority=instance.priority.value,
            team_id=instance.team_id,
            business_hours_only=instance.business_hours_only,
            schedule_version=instance.schedule_version,
            first_response=SubClockResponse.from_clock(instance.first_response, now),
            resolution=SubClockResponse.from_clock(instance.resolution, now),
            sla_paused_at=instance.sla_paused_at,
            paused_duration_ms=instance.paused_duration_ms,
        )


class CrossingResponse(BaseModel):
    ticket_id: str
    sub_clock: SubClockStr
    kind: ThresholdKindStr
    crossed_at: datetime

    @classmethod
    def from_crossing(cls, crossing: ThresholdCrossing) -> "CrossingResponse":
        return cls(
            ticket_id=crossing.ticket_id,
            sub_clock=crossing.sub_clock.value,
            kind=crossing.kind.value,
            crossed_at=crossing.crossed_at,
        )


class SweepResponse(BaseModel):
    examined: int
    failed: int
    crossings: List[CrossingResponse] = Field(default_factory=list)
