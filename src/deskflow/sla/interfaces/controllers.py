"""
SLA Controllers (API Routes)
=============================

FastAPI routes for SLA clock tracking.

Controllers are thin - they delegate to the clock and sweep services
held on ``app.state`` (wired in ``deskflow.main``).
"""

from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends, Request, status

from deskflow.config import TicketPriority, TicketStatus
from deskflow.shared.infrastructure.logging import get_logger
from deskflow.sla.application import (
    CrossingResponse,
    FirstResponseRequest,
    PriorityChangeRequest,
    SlaClockService,
    SlaInstanceResponse,
    SlaSweepService,
    StartSlaRequest,
    StatusChangeRequest,
    SweepRequest,
    SweepResponse,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA"])


# ========== Example payloads for Swagger ==========

SLA_INSTANCE_EXAMPLE = {
    "ticket_id": "TCK-1042",
    "priority": "P2",
    "team_id": "billing",
    "business_hours_only": False,
    "schedule_version": "3f9a1c0d7e21",
    "first_response": {
        "started_at": "2024-01-15T10:00:00Z",
        "due_at": "2024-01-15T14:00:00Z",
        "met_at": None,
        "state": "running",
        "at_risk_notified_at": None,
        "breach_notified_at": None
    },
    "resolution": {
        "started_at": "2024-01-15T10:00:00Z",
        "due_at": "2024-01-16T10:00:00Z",
        "met_at": None,
        "state": "running",
        "at_risk_notified_at": None,
        "breach_notified_at": None
    },
    "sla_paused_at": None,
    "paused_duration_ms": 0
}


# ========== Dependencies ==========

def get_sla_clock(request: Request) -> SlaClockService:
    """Clock service created at startup."""
    return request.app.state.sla_clock


def get_sla_sweep(request: Request) -> SlaSweepService:
    """Sweep service created at startup."""
    return request.app.state.sla_sweep


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ========== Route Handlers ==========

@router.post(
    "/tickets/{ticket_id}/start",
    response_model=SlaInstanceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a ticket's SLA",
    description="""
    Create the SLA instance of a new ticket, deriving both due dates from
    the (team, priority) policy. Calling it again returns the existing
    instance unchanged.
    """,
    responses={201: {"content": {"application/json": {"example": SLA_INSTANCE_EXAMPLE}}}},
)
async def start_sla(
    ticket_id: str,
    body: StartSlaRequest,
    clock: SlaClockService = Depends(get_sla_clock),
):
    instance = await clock.start(
        ticket_id,
        TicketPriority(body.priority),
        team_id=body.team_id,
        created_at=body.created_at,
    )
    return SlaInstanceResponse.from_instance(instance)


@router.get(
    "/tickets/{ticket_id}",
    response_model=SlaInstanceResponse,
    summary="Get a ticket's SLA",
    responses={404: {"description": "No SLA instance for the ticket"}},
)
async def get_sla(ticket_id: str, clock: SlaClockService = Depends(get_sla_clock)):
    instance = await clock.get_instance(ticket_id)
    return SlaInstanceResponse.from_instance(instance)


@router.post(
    "/tickets/{ticket_id}/status",
    response_model=SlaInstanceResponse,
    summary="Apply a status change",
    description="""
    Waiting statuses pause the resolution clock, leaving a waiting status
    resumes it and pushes its due date back by the pause length, and
    RESOLVED/CLOSED complete it. The first-response clock never pauses.
    """,
    responses={404: {"description": "No SLA instance for the ticket"}},
)
async def change_status(
    ticket_id: str,
    body: StatusChangeRequest,
    clock: SlaClockService = Depends(get_sla_clock),
):
    instance = await clock.on_status_changed(
        ticket_id, TicketStatus(body.status), body.changed_at or _now()
    )
    return SlaInstanceResponse.from_instance(instance)


@router.post(
    "/tickets/{ticket_id}/first-response",
    response_model=SlaInstanceResponse,
    summary="Record the first public reply",
    responses={404: {"description": "No SLA instance for the ticket"}},
)
async def first_response(
    ticket_id: str,
    body: FirstResponseRequest,
    clock: SlaClockService = Depends(get_sla_clock),
):
    instance = await clock.record_first_response(ticket_id, body.responded_at or _now())
    return SlaInstanceResponse.from_instance(instance)


@router.post(
    "/tickets/{ticket_id}/priority",
    response_model=SlaInstanceResponse,
    summary="Apply a priority change",
    description="Re-derive the due dates of running clocks under the new policy.",
    responses={404: {"description": "No SLA instance for the ticket"}},
)
async def change_priority(
    ticket_id: str,
    body: PriorityChangeRequest,
    clock: SlaClockService = Depends(get_sla_clock),
):
    instance = await clock.on_priority_changed(
        ticket_id,
        TicketPriority(body.priority),
        team_id=body.team_id,
        at=body.changed_at or _now(),
    )
    return SlaInstanceResponse.from_instance(instance)


@router.post(
    "/tickets/{ticket_id}/check",
    response_model=List[CrossingResponse],
    summary="Fire pending thresholds for one ticket",
    responses={404: {"description": "No SLA instance for the ticket"}},
)
async def check_ticket(ticket_id: str, clock: SlaClockService = Depends(get_sla_clock)):
    crossings = await clock.check_thresholds(ticket_id)
    return [CrossingResponse.from_crossing(c) for c in crossings]


@router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Run a threshold sweep now",
    description="Same work the scheduler does every interval; safe to run concurrently.",
)
async def run_sweep(
    body: SweepRequest,
    sweep: SlaSweepService = Depends(get_sla_sweep),
):
    report = await sweep.sweep(body.now)
    return SweepResponse(
        examined=report.examined,
        failed=report.failed,
        crossings=[CrossingResponse.from_crossing(c) for c in report.crossings],
    )


sla_router = router
