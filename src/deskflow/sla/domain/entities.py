"""
SLA Domain Entities
====================

Pure Python domain entities for SLA tracking.

Each ticket has one ``SlaInstance`` holding two sub-clocks. Only the
resolution clock can pause: ``FirstResponseClock`` simply has no pause
API, so first-response time keeps running while a ticket waits.

Notification markers (``at_risk_notified_at`` / ``breach_notified_at``)
are set once and never cleared.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import ClassVar, List, Optional, Tuple

from deskflow.config import SLAState, SubClock, ThresholdKind, TicketPriority
from deskflow.sla.domain.business_hours import (
    BusinessHoursSchedule,
    advance,
    working_hours_between,
)


@dataclass
class SlaSubClock:
    """Due-date tracking shared by both sub-clocks."""

    started_at: datetime
    due_at: datetime
    met_at: Optional[datetime] = None
    at_risk_notified_at: Optional[datetime] = None
    breach_notified_at: Optional[datetime] = None

    kind: ClassVar[SubClock]

    @property
    def is_met(self) -> bool:
        return self.met_at is not None

    @property
    def is_paused(self) -> bool:
        return False

    def is_breached(self, now: datetime) -> bool:
        if self.met_at is not None:
            return self.met_at > self.due_at
        return now > self.due_at

    def state(self, now: datetime) -> SLAState:
        if self.met_at is not None:
            return SLAState.BREACHED if self.met_at > self.due_at else SLAState.MET
        if self.is_paused:
            return SLAState.PAUSED
        if now > self.due_at:
            return SLAState.BREACHED
        return SLAState.RUNNING

    def mark_met(self, at: datetime) -> bool:
        """Record completion once; later calls are ignored."""
        if self.met_at is not None:
            return False
        self.met_at = at
        return True

    def elapsed_fraction(
        self,
        now: datetime,
        schedule: Optional[BusinessHoursSchedule] = None,
        business_hours_only: bool = False,
    ) -> float:
        """Share of the allowed time already used (1.0 at the due date)."""
        if business_hours_only and schedule is not None:
            total = working_hours_between(self.started_at, self.due_at, schedule)
            elapsed = working_hours_between(self.started_at, now, schedule)
        else:
            total = (self.due_at - self.started_at).total_seconds()
            elapsed = (now - self.started_at).total_seconds()
        if total <= 0:
            return 1.0
        return elapsed / total

    def pending_crossing(
        self,
        now: datetime,
        at_risk_fraction: float,
        schedule: Optional[BusinessHoursSchedule] = None,
        business_hours_only: bool = False,
    ) -> Optional[ThresholdKind]:
        """
        Threshold this clock has crossed but not yet reported.

        Breach wins over at-risk: a clock first seen after its due date
        reports the breach only.
        """
        if self.met_at is not None or self.is_paused:
            return None
        if now > self.due_at:
            return ThresholdKind.BREACHED if self.breach_notified_at is None else None
        if self.at_risk_notified_at is None and self.breach_notified_at is None:
            if self.elapsed_fraction(now, schedule, business_hours_only) >= at_risk_fraction:
                return ThresholdKind.AT_RISK
        return None

    def at_risk_at(
        self,
        at_risk_fraction: float,
        schedule: Optional[BusinessHoursSchedule] = None,
        business_hours_only: bool = False,
    ) -> datetime:
        """Instant at which ``elapsed_fraction`` reaches ``at_risk_fraction``."""
        if business_hours_only and schedule is not None:
            total = working_hours_between(self.started_at, self.due_at, schedule)
            instant = advance(self.started_at, total * at_risk_fraction, schedule, True)
            return min(instant, self.due_at)
        return self.started_at + (self.due_at - self.started_at) * at_risk_fraction

    def next_check_at(
        self,
        at_risk_fraction: float,
        schedule: Optional[BusinessHoursSchedule] = None,
        business_hours_only: bool = False,
    ) -> Optional[datetime]:
        """
        Earliest instant this clock can report a threshold.

        None while the clock is met, paused or already reported breached.
        """
        if self.met_at is not None or self.is_paused or self.breach_notified_at is not None:
            return None
        if self.at_risk_notified_at is None:
            return self.at_risk_at(at_risk_fraction, schedule, business_hours_only)
        return self.due_at

    def marker(self, kind: ThresholdKind) -> Optional[datetime]:
        if kind is ThresholdKind.AT_RISK:
            return self.at_risk_notified_at
        return self.breach_notified_at

    def set_marker(self, kind: ThresholdKind, at: datetime) -> bool:
        if self.marker(kind) is not None:
            return False
        if kind is ThresholdKind.AT_RISK:
            self.at_risk_notified_at = at
        else:
            self.breach_notified_at = at
        return True


@dataclass
class FirstResponseClock(SlaSubClock):
    """Met by the first public reply. Never pauses."""
    kind: ClassVar[SubClock] = SubClock.FIRST_RESPONSE


@dataclass
class ResolutionClock(SlaSubClock):
    """Met when the ticket is resolved or closed. Pauses while waiting."""

    paused_at: Optional[datetime] = None
    paused_duration_ms: int = 0

    kind: ClassVar[SubClock] = SubClock.RESOLUTION

    @property
    def is_paused(self) -> bool:
        return self.paused_at is not None

    def pause(self, at: datetime) -> bool:
        if self.paused_at is not None or self.met_at is not None:
            return False
        self.paused_at = at
        return True

    def resume(self, at: datetime) -> timedelta:
        """
        Close the pause interval and return its length.

        The due date moves forward by the same amount unless it had
        already passed when the pause began.
        """
        if self.paused_at is None:
            return timedelta(0)
        delta = max(at - self.paused_at, timedelta(0))
        was_breached = self.paused_at > self.due_at
        self.paused_duration_ms += int(delta.total_seconds() * 1000)
        if self.met_at is None and not was_breached:
            self.due_at = self.due_at + delta
        self.paused_at = None
        return delta

    @property
    def paused_duration(self) -> timedelta:
        return timedelta(milliseconds=self.paused_duration_ms)


@dataclass
class SlaInstance:
    """
    Per-ticket SLA state.

    Created when the ticket is created; mutated on status transitions,
    first response and priority changes.
    """

    ticket_id: str
    priority: TicketPriority
    first_response: FirstResponseClock
    resolution: ResolutionClock
    team_id: Optional[str] = None
    business_hours_only: bool = False
    schedule_version: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # earliest instant the sweep needs to look at this ticket again
    next_check_at: Optional[datetime] = None

    # ---- flat view of the stored fields ----

    @property
    def first_response_due_at(self) -> datetime:
        return self.first_response.due_at

    @property
    def first_response_at(self) -> Optional[datetime]:
        return self.first_response.met_at

    @property
    def resolution_due_at(self) -> datetime:
        return self.resolution.due_at

    @property
    def completed_at(self) -> Optional[datetime]:
        return self.resolution.met_at

    @property
    def sla_paused_at(self) -> Optional[datetime]:
        return self.resolution.paused_at

    @property
    def paused_duration_ms(self) -> int:
        return self.resolution.paused_duration_ms

    @property
    def first_response_at_risk_notified_at(self) -> Optional[datetime]:
        return self.first_response.at_risk_notified_at

    @property
    def resolution_at_risk_notified_at(self) -> Optional[datetime]:
        return self.resolution.at_risk_notified_at

    @property
    def first_response_breach_notified_at(self) -> Optional[datetime]:
        return self.first_response.breach_notified_at

    @property
    def resolution_breach_notified_at(self) -> Optional[datetime]:
        return self.resolution.breach_notified_at

    # ---- behaviour ----

    def clock(self, sub_clock: SubClock) -> SlaSubClock:
        if sub_clock is SubClock.FIRST_RESPONSE:
            return self.first_response
        return self.resolution

    @property
    def clocks(self) -> Tuple[SlaSubClock, SlaSubClock]:
        return (self.first_response, self.resolution)

    @property
    def is_open(self) -> bool:
        """Some sub-clock can still produce a notification."""
        return any(
            clock.met_at is None and clock.breach_notified_at is None
            for clock in self.clocks
        )

    def pending_crossings(
        self,
        now: datetime,
        at_risk_fraction: float,
        schedule: Optional[BusinessHoursSchedule] = None,
    ) -> List[Tuple[SubClock, ThresholdKind]]:
        crossings = []
        for clock in self.clocks:
            kind = clock.pending_crossing(
                now, at_risk_fraction, schedule, self.business_hours_only
            )
            if kind is not None:
                crossings.append((clock.kind, kind))
        return crossings

    def mark_notified(self, sub_clock: SubClock, kind: ThresholdKind, at: datetime) -> bool:
        return self.clock(sub_clock).set_marker(kind, at)

    def schedule_next_check(
        self,
        at_risk_fraction: float,
        schedule: Optional[BusinessHoursSchedule] = None,
    ) -> Optional[datetime]:
        """Recompute ``next_check_at`` from the clocks and return it."""
        instants = [
            instant
            for instant in (
                clock.next_check_at(at_risk_fraction, schedule, self.business_hours_only)
                for clock in self.clocks
            )
            if instant is not None
        ]
        self.next_check_at = min(instants) if instants else None
        return self.next_check_at
