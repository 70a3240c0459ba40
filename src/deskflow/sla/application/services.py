"""
SLA Application Services
=========================

Application services orchestrate the SLA clocks and coordinate between
domain entities, the instance store, the policy provider and the
notification collaborator.

Following SOLID principles:
- Single Responsibility: clock lifecycle and threshold sweep are separate services
- Dependency Inversion: depend on the port ABCs below, not concrete adapters
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from deskflow.automation.application import AutomationDispatcher, ISlaClockSync
from deskflow.config import (
    COMPLETED_STATUSES,
    SLA_TRIGGER_FOR_KIND,
    WAITING_STATUSES,
    SubClock,
    ThresholdKind,
    TicketPriority,
    TicketStatus,
)
from deskflow.core import ResourceNotFoundException
from deskflow.shared.infrastructure.logging import get_logger, log_latency
from deskflow.shared.infrastructure.side_effects import run_non_critical
from deskflow.sla.domain import (
    BusinessHoursSchedule,
    FirstResponseClock,
    ResolutionClock,
    SlaInstance,
    SlaPolicy,
    ThresholdCrossing,
    advance,
)

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========== Ports (Dependency Inversion) ==========

class ISlaInstanceRepository(ABC):
    """Interface for SLA instance storage."""

    @abstractmethod
    async def get(self, ticket_id: str) -> Optional[SlaInstance]:
        """Get the instance of a ticket."""

    @abstractmethod
    async def save(self, instance: SlaInstance) -> None:
        """
        Insert or update clock state.

        Notification markers are never written here; they only change
        through ``claim_threshold``.
        """

    @abstractmethod
    async def list_open(
        self, limit: int = 100, due_before: Optional[datetime] = None
    ) -> List[SlaInstance]:
        """
        Instances with a scheduled check, earliest ``next_check_at`` first.

        With ``due_before`` only checks at or before that instant are listed.
        """

    @abstractmethod
    async def reschedule(
        self,
        ticket_id: str,
        next_check_at: Optional[datetime],
        expected: Optional[datetime],
    ) -> bool:
        """
        Set only the stored ``next_check_at``, provided it still equals
        ``expected``. A concurrent ``save`` wins over a stale sweep.
        """

    @abstractmethod
    async def claim_threshold(
        self, ticket_id: str, sub_clock: SubClock, kind: ThresholdKind, at: datetime
    ) -> bool:
        """
        Atomically set a notification marker if it is still unset.

        Returns:
            True for the single caller that set it
        """


class ISlaPolicyProvider(ABC):
    """Interface for SLA configuration lookups."""

    @abstractmethod
    def get_sla_policy(self, team_id: Optional[str], priority: TicketPriority) -> SlaPolicy:
        """Policy for a (team, priority) pair; defaults when the team has none."""

    @abstractmethod
    def get_business_hours_schedule(self) -> BusinessHoursSchedule:
        """Schedule version currently in effect."""

    @abstractmethod
    def get_at_risk_fraction(self) -> float:
        """Elapsed fraction at which a clock is at risk."""


class ISlaNotifier(ABC):
    """Outbound notification collaborator."""

    @abstractmethod
    async def on_sla_threshold_crossed(
        self, ticket_id: str, kind: ThresholdKind, sub_clock: SubClock
    ) -> None:
        """Called once per (ticket, kind, sub-clock)."""


# ========== Application Services ==========

class SlaClockService(ISlaClockSync):
    """
    Maintains the SLA clocks of tickets.

    Start, status and priority hooks are called by the ticket service (and
    by the rule engine for automation-made changes); ``fire_crossings``
    is called by the sweep.
    """

    def __init__(
        self,
        repository: ISlaInstanceRepository,
        policy_provider: ISlaPolicyProvider,
        notifier: Optional[ISlaNotifier] = None,
        dispatcher: Optional[AutomationDispatcher] = None,
    ):
        self._repo = repository
        self._policies = policy_provider
        self._notifier = notifier
        self._dispatcher = dispatcher

    def attach_dispatcher(self, dispatcher: AutomationDispatcher) -> None:
        """Late wiring: the dispatcher's rule engine also depends on this service."""
        self._dispatcher = dispatcher

    async def get_instance(self, ticket_id: str) -> SlaInstance:
        """
        Raises:
            ResourceNotFoundException: no SLA instance for the ticket
        """
        instance = await self._repo.get(ticket_id)
        if instance is None:
            raise ResourceNotFoundException("SlaInstance", ticket_id)
        return instance

    async def start(
        self,
        ticket_id: str,
        priority: TicketPriority,
        team_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> SlaInstance:
        """
        Create the SLA instance of a new ticket.

        Idempotent: an existing instance is returned unchanged.
        """
        existing = await self._repo.get(ticket_id)
        if existing is not None:
            return existing

        policy = self._policies.get_sla_policy(team_id, priority)
        schedule = self._policies.get_business_hours_schedule()
        started = created_at or _utcnow()

        instance = SlaInstance(
            ticket_id=ticket_id,
            priority=priority,
            team_id=team_id,
            business_hours_only=policy.business_hours_only,
            schedule_version=schedule.version,
            created_at=started,
            first_response=FirstResponseClock(
                started_at=started,
                due_at=advance(started, policy.first_response_hours, schedule, policy.business_hours_only),
            ),
            resolution=ResolutionClock(
                started_at=started,
                due_at=advance(started, policy.resolution_hours, schedule, policy.business_hours_only),
            ),
        )
        await self._save(instance)

        logger.info(
            "SLA started",
            extra={
                "ticket_id": ticket_id,
                "priority": priority.value,
                "team_id": team_id,
                "first_response_due_at": instance.first_response_due_at.isoformat(),
                "resolution_due_at": instance.resolution_due_at.isoformat(),
                "business_hours_only": policy.business_hours_only,
            }
        )
        return instance

    async def on_status_changed(
        self, ticket_id: str, status: TicketStatus, at: Optional[datetime] = None
    ) -> SlaInstance:
        """
        Apply a status transition to the resolution clock.

        Waiting statuses pause it; any other status resumes it and shifts
        the due date by the pause length; resolved/closed completes it
        (closing an open pause first).
        """
        instance = await self.get_instance(ticket_id)
        now = at or _utcnow()
        clock = instance.resolution

        if status in WAITING_STATUSES:
            if clock.pause(now):
                logger.info("SLA paused", extra={"ticket_id": ticket_id, "status": status.value})
        elif clock.is_paused:
            delta = clock.resume(now)
            logger.info(
                "SLA resumed",
                extra={
                    "ticket_id": ticket_id,
                    "status": status.value,
                    "paused_ms": int(delta.total_seconds() * 1000),
                    "resolution_due_at": clock.due_at.isoformat(),
                }
            )

        if status in COMPLETED_STATUSES and clock.mark_met(now):
            logger.info(
                "SLA resolution completed",
                extra={"ticket_id": ticket_id, "breached": clock.is_breached(now)}
            )

        await self._save(instance)
        return instance

    async def record_first_response(
        self, ticket_id: str, at: Optional[datetime] = None
    ) -> SlaInstance:
        """Record the first public reply; later calls change nothing."""
        instance = await self.get_instance(ticket_id)
        now = at or _utcnow()
        if instance.first_response.mark_met(now):
            await self._save(instance)
            logger.info(
                "SLA first response recorded",
                extra={"ticket_id": ticket_id, "breached": instance.first_response.is_breached(now)}
            )
        return instance

    async def on_priority_changed(
        self,
        ticket_id: str,
        priority: TicketPriority,
        team_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> SlaInstance:
        """
        Re-derive due dates from each clock's start under the new policy.

        Clocks that are met, breached or paused keep their due date.
        Pause time already accumulated is added back to the resolution
        due date.
        """
        instance = await self.get_instance(ticket_id)
        now = at or _utcnow()
        effective_team = team_id if team_id is not None else instance.team_id
        policy = self._policies.get_sla_policy(effective_team, priority)
        schedule = self._policies.get_business_hours_schedule()

        for clock in instance.clocks:
            if clock.is_met or clock.is_paused or clock.is_breached(now):
                continue
            due = advance(
                clock.started_at,
                policy.hours_for(clock.kind),
                schedule,
                policy.business_hours_only,
            )
            if isinstance(clock, ResolutionClock):
                due += timedelta(milliseconds=clock.paused_duration_ms)
            clock.due_at = due

        instance.priority = priority
        instance.team_id = effective_team
        instance.business_hours_only = policy.business_hours_only
        instance.schedule_version = schedule.version
        await self._save(instance)

        logger.info(
            "SLA due dates re-derived",
            extra={
                "ticket_id": ticket_id,
                "priority": priority.value,
                "first_response_due_at": instance.first_response_due_at.isoformat(),
                "resolution_due_at": instance.resolution_due_at.isoformat(),
            }
        )
        return instance

    def _schedule_next_check(self, instance: SlaInstance) -> Optional[datetime]:
        return instance.schedule_next_check(
            self._policies.get_at_risk_fraction(),
            self._policies.get_business_hours_schedule(),
        )

    async def _save(self, instance: SlaInstance) -> None:
        self._schedule_next_check(instance)
        await self._repo.save(instance)

    async def check_thresholds(
        self, ticket_id: str, now: Optional[datetime] = None
    ) -> List[ThresholdCrossing]:
        """Fire any thresholds one ticket has crossed. Safe to call repeatedly."""
        instance = await self.get_instance(ticket_id)
        return await self.fire_crossings(instance, now)

    async def fire_crossings(
        self, instance: SlaInstance, now: Optional[datetime] = None
    ) -> List[ThresholdCrossing]:
        """
        Claim, notify and trigger automation for each newly crossed threshold.

        A marker is claimed in storage before anything is emitted, so
        concurrent sweeps emit each (kind, sub-clock) at most once. The
        stored ``next_check_at`` is moved past whatever was handled.
        """
        now = now or _utcnow()
        fired: List[ThresholdCrossing] = []
        crossings = instance.pending_crossings(
            now,
            self._policies.get_at_risk_fraction(),
            self._policies.get_business_hours_schedule(),
        )

        for sub_clock, kind in crossings:
            claimed = await self._repo.claim_threshold(instance.ticket_id, sub_clock, kind, now)
            if not claimed:
                continue
            instance.mark_notified(sub_clock, kind, now)

            context = {
                "ticket_id": instance.ticket_id,
                "sub_clock": sub_clock.value,
                "kind": kind.value,
            }
            logger.info("SLA threshold claimed", extra=context)
            fired.append(ThresholdCrossing(instance.ticket_id, sub_clock, kind, now))

            if self._notifier is not None:
                await run_non_critical(
                    "sla notification",
                    self._notifier.on_sla_threshold_crossed,
                    instance.ticket_id, kind, sub_clock,
                    log=logger, context=context,
                )
            if self._dispatcher is not None:
                await run_non_critical(
                    "sla automation trigger",
                    self._dispatcher.submit_automation,
                    instance.ticket_id, SLA_TRIGGER_FOR_KIND[kind],
                    log=logger, context=context,
                )

        previous = instance.next_check_at
        if self._schedule_next_check(instance) != previous:
            await self._repo.reschedule(instance.ticket_id, instance.next_check_at, previous)
        return fired


@dataclass
class SweepReport:
    examined: int = 0
    failed: int = 0
    crossings: List[ThresholdCrossing] = field(default_factory=list)


class SlaSweepService:
    """
    Periodic threshold sweep over open SLA instances.

    A failure on one ticket is logged and the sweep moves on.
    """

    def __init__(
        self,
        clock_service: SlaClockService,
        repository: ISlaInstanceRepository,
        batch_size: int = 100,
    ):
        self._clock = clock_service
        self._repo = repository
        self._batch_size = batch_size

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or _utcnow()
        report = SweepReport()

        with log_latency(logger, "sla_sweep"):
            instances = await self._repo.list_open(self._batch_size, due_before=now)
            for instance in instances:
                report.examined += 1
                try:
                    report.crossings.extend(await self._clock.fire_crossings(instance, now))
                except Exception as e:
                    report.failed += 1
                    logger.error(
                        "SLA sweep failed for ticket",
                        extra={
                            "ticket_id": instance.ticket_id,
                            "error_type": type(e).__name__,
                            "error": str(e),
                        },
                        exc_info=True,
                    )

        if report.crossings or report.failed:
            logger.info(
                "SLA sweep finished",
                extra={
                    "examined": report.examined,
                    "fired": len(report.crossings),
                    "failed": report.failed,
                }
            )
        return report
