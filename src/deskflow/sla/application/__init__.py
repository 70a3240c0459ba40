"""
SLA Application Layer
======================

Application layer for SLA tracking.

Contains:
- Services: clock lifecycle and threshold sweep
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from deskflow.sla.application.dto import (
    CrossingResponse,
    FirstResponseRequest,
    PriorityChangeRequest,
    SlaInstanceResponse,
    StartSlaRequest,
    StatusChangeRequest,
    SubClockResponse,
    SweepRequest,
    SweepResponse,
)
from deskflow.sla.application.services import (
    ISlaInstanceRepository,
    ISlaNotifier,
    ISlaPolicyProvider,
    SlaClockService,
    SlaSweepService,
    SweepReport,
)

__all__ = [
    # DTOs
    "CrossingResponse",
    "FirstResponseRequest",
    "PriorityChangeRequest",
    "SlaInstanceResponse",
    "StartSlaRequest",
    "StatusChangeRequest",
    "SubClockResponse",
    "SweepRequest",
    "SweepResponse",
    # Services
    "SlaClockService",
    "SlaSweepService",
    "SweepReport",
    # Interfaces
    "ISlaInstanceRepository",
    "ISlaNotifier",
    "ISlaPolicyProvider",
]
