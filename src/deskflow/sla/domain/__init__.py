"""
SLA Domain Layer
================

Domain layer for SLA tracking.

Contains:
- Entities: SlaInstance and its two sub-clocks
- Value Objects: SlaPolicy, ThresholdCrossing, YAML policy model
- Business hours calendar: working-time arithmetic

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from deskflow.sla.domain.business_hours import (
    BusinessHoursSchedule,
    DaySchedule,
    advance,
    is_working_time,
    working_hours_between,
)
from deskflow.sla.domain.entities import (
    FirstResponseClock,
    ResolutionClock,
    SlaInstance,
    SlaSubClock,
)
from deskflow.sla.domain.value_objects import (
    DEFAULT_TARGET_HOURS,
    BusinessHoursConfig,
    SlaPolicy,
    SlaPolicyConfig,
    ThresholdCrossing,
)

__all__ = [
    # Entities
    "FirstResponseClock",
    "ResolutionClock",
    "SlaInstance",
    "SlaSubClock",
    # Value Objects
    "BusinessHoursConfig",
    "DEFAULT_TARGET_HOURS",
    "SlaPolicy",
    "SlaPolicyConfig",
    "ThresholdCrossing",
    # Business hours
    "BusinessHoursSchedule",
    "DaySchedule",
    "advance",
    "is_working_time",
    "working_hours_between",
]
