"""
SLA Value Objects
==================

Immutable value objects for the SLA domain and the pydantic model of the
YAML policy file.

Value objects are defined by their attributes rather than an identity.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from deskflow.config import VALID_PRIORITIES, SubClock, ThresholdKind, TicketPriority
from deskflow.sla.domain.business_hours import (
    WEEKDAY_NAMES,
    BusinessHoursSchedule,
    DaySchedule,
)

# Platform defaults in hours: (first response, resolution)
DEFAULT_TARGET_HOURS: Dict[str, tuple] = {
    "P1": (1, 4),
    "P2": (4, 24),
    "P3": (8, 72),
    "P4": (24, 168),
}


@dataclass(frozen=True)
class SlaPolicy:
    """
    Targets that apply to one (team, priority) pair.

    Example:
        SlaPolicy(first_response_hours=1, resolution_hours=4)
    """
    first_response_hours: float
    resolution_hours: float
    business_hours_only: bool = False
    team_id: Optional[str] = None
    priority: Optional[TicketPriority] = None

    def __post_init__(self):
        if self.first_response_hours <= 0 or self.resolution_hours <= 0:
            raise ValueError("SLA target hours must be positive")

    def hours_for(self, sub_clock: SubClock) -> float:
        if sub_clock is SubClock.FIRST_RESPONSE:
            return self.first_response_hours
        return self.resolution_hours


@dataclass(frozen=True)
class ThresholdCrossing:
    """A threshold that fired for one sub-clock of one ticket."""
    ticket_id: str
    sub_clock: SubClock
    kind: ThresholdKind
    crossed_at: datetime


# ========== YAML configuration ==========

class PolicyTargetConfig(BaseModel):
    first_response_hours: float = Field(gt=0)
    resolution_hours: float = Field(gt=0)


class TeamPolicyConfig(BaseModel):
    """Per-team override; priorities it omits fall back to the defaults."""
    business_hours_only: Optional[bool] = None
    targets: Dict[str, PolicyTargetConfig] = Field(default_factory=dict)

    @field_validator("targets")
    @classmethod
    def validate_priorities(cls, v: Dict[str, PolicyTargetConfig]) -> Dict[str, PolicyTargetConfig]:
        unknown = set(v) - set(VALID_PRIORITIES)
        if unknown:
            raise ValueError(f"unknown priorities in team targets: {sorted(unknown)}")
        return v


class DayScheduleConfig(BaseModel):
    enabled: bool = True
    start: time = time(9, 0)
    end: time = time(18, 0)

    @field_validator("start", "end", mode="before")
    @classmethod
    def reject_sexagesimal(cls, v):
        # unquoted 18:00 is read by YAML 1.1 as the integer 1080
        if isinstance(v, int):
            raise ValueError("times must be quoted strings such as '09:00'")
        return v


def _default_days() -> Dict[str, DayScheduleConfig]:
    return {
        name: DayScheduleConfig(enabled=index < 5)
        for index, name in enumerate(WEEKDAY_NAMES)
    }


class BusinessHoursConfig(BaseModel):
    timezone: str = "UTC"
    days: Dict[str, DayScheduleConfig] = Field(default_factory=_default_days)
    holidays: List[date] = Field(default_factory=list)

    @field_validator("days")
    @classmethod
    def validate_days(cls, v: Dict[str, DayScheduleConfig]) -> Dict[str, DayScheduleConfig]:
        v = {name.lower(): day for name, day in v.items()}
        unknown = set(v) - set(WEEKDAY_NAMES)
        if unknown:
            raise ValueError(f"unknown weekdays: {sorted(unknown)}")
        for name in WEEKDAY_NAMES:
            # days left out of the file are closed
            v.setdefault(name, DayScheduleConfig(enabled=False))
        return v

    def to_schedule(self, version: Optional[str] = None) -> BusinessHoursSchedule:
        return BusinessHoursSchedule(
            timezone=self.timezone,
            days=tuple(
                DaySchedule(enabled=d.enabled, start=d.start, end=d.end)
                for d in (self.days[name] for name in WEEKDAY_NAMES)
            ),
            holidays=frozenset(self.holidays),
            version=version,
        )


class SlaPolicyConfig(BaseModel):
    """
    SLA configuration loaded from YAML.

    Team overrides win over the platform defaults; a team without an
    override (or without a target for a priority) uses the defaults.
    """
    defaults: Dict[str, PolicyTargetConfig] = Field(default_factory=dict, validate_default=True)
    business_hours_only: bool = Field(
        default=False,
        description="Count only working time towards due dates"
    )
    teams: Dict[str, TeamPolicyConfig] = Field(default_factory=dict)
    business_hours: BusinessHoursConfig = Field(default_factory=BusinessHoursConfig)
    at_risk_threshold_percent: float = Field(
        default=75,
        gt=0,
        lt=100,
        description="Elapsed percentage at which an SLA is at risk"
    )

    @field_validator("defaults")
    @classmethod
    def fill_default_targets(cls, v: Dict[str, PolicyTargetConfig]) -> Dict[str, PolicyTargetConfig]:
        unknown = set(v) - set(VALID_PRIORITIES)
        if unknown:
            raise ValueError(f"unknown priorities in defaults: {sorted(unknown)}")
        for priority, (first_response, resolution) in DEFAULT_TARGET_HOURS.items():
            v.setdefault(priority, PolicyTargetConfig(
                first_response_hours=first_response,
                resolution_hours=resolution,
            ))
        return v

    @property
    def at_risk_fraction(self) -> float:
        return self.at_risk_threshold_percent / 100

    def get_policy(self, team_id: Optional[str], priority: TicketPriority) -> SlaPolicy:
        team = self.teams.get(team_id) if team_id else None
        target = self.defaults[priority.value]
        business_hours_only = self.business_hours_only
        if team is not None:
            target = team.targets.get(priority.value, target)
            if team.business_hours_only is not None:
                business_hours_only = team.business_hours_only

        return SlaPolicy(
            first_response_hours=target.first_response_hours,
            resolution_hours=target.resolution_hours,
            business_hours_only=business_hours_only,
            team_id=team_id if team is not None else None,
            priority=priority,
        )
