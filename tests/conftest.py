"""Pytest configuration, in-memory fakes and fixtures."""

import copy
import dataclasses
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from deskflow.automation.application import (
    IAutomationExecutionRepository,
    IRuleRepository,
    ISlaClockSync,
    ITicketGateway,
    MutationResult,
    RuleDefinitionDTO,
)
from deskflow.automation.domain import AutomationRule, MutationIntent, TicketSnapshot
from deskflow.config import (
    SubClock,
    ThresholdKind,
    TicketPriority,
    TicketStatus,
    Trigger,
)
from deskflow.core import BrokerUnavailableException
from deskflow.infrastructure.queue import Job, TaskQueue
from deskflow.sla.application import ISlaInstanceRepository, ISlaNotifier, ISlaPolicyProvider
from deskflow.sla.domain import BusinessHoursSchedule, SlaInstance, SlaPolicy, SlaPolicyConfig

# Monday 2024-01-15 10:00 UTC
T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


# ========== Automation fakes ==========

class FakeTicketGateway(ITicketGateway):
    """Dict-backed ticket store that records every applied intent."""

    def __init__(self, *snapshots: TicketSnapshot):
        self.tickets: Dict[str, TicketSnapshot] = {s.id: s for s in snapshots}
        self.applied: List[MutationIntent] = []
        self.reads = 0
        self.transactions = 0
        self.conflict_kinds: set = set()
        self.fail_kinds: Dict[str, Exception] = {}

    async def get_ticket_snapshot(self, ticket_id: str) -> Optional[TicketSnapshot]:
        self.reads += 1
        return self.tickets.get(ticket_id)

    async def apply_mutations(self, ticket_id: str, intents) -> MutationResult:
        for intent in intents:
            if intent.action_kind in self.fail_kinds:
                raise self.fail_kinds[intent.action_kind]
        if any(intent.action_kind in self.conflict_kinds for intent in intents):
            return MutationResult.CONFLICT
        for intent in intents:
            self.tickets[ticket_id] = dataclasses.replace(self.tickets[ticket_id], **intent.changes)
            self.applied.append(intent)
        self.transactions += 1
        return MutationResult.OK


class FakeRuleRepository(IRuleRepository):
    def __init__(self, *rules: AutomationRule):
        self.rules = list(rules)

    async def list_for_trigger(self, trigger: Trigger) -> List[AutomationRule]:
        return [r for r in self.rules if r.trigger == trigger]

    async def get_by_id(self, rule_id: str) -> Optional[AutomationRule]:
        return next((r for r in self.rules if r.id == rule_id), None)


class FakeExecutionRepository(IAutomationExecutionRepository):
    def __init__(self):
        self.records = []

    async def record(self, execution) -> None:
        self.records.append(execution)

    async def has_recent_success(self, rule_id, ticket_id, trigger, since) -> bool:
        return any(
            r.rule_id == rule_id
            and r.ticket_id == ticket_id
            and r.trigger == trigger
            and r.success
            and r.executed_at >= since
            for r in self.records
        )


class RecordingSlaSync(ISlaClockSync):
    def __init__(self):
        self.calls: List[Tuple] = []

    async def on_status_changed(self, ticket_id, status, at=None) -> None:
        self.calls.append(("status", ticket_id, status))

    async def on_priority_changed(self, ticket_id, priority, team_id=None, at=None) -> None:
        self.calls.append(("priority", ticket_id, priority, team_id))


class InMemoryTaskQueue(TaskQueue):
    """TaskQueue kept in Python lists; ``down`` simulates an unreachable broker."""

    def __init__(self, down: bool = False):
        self.down = down
        self.connect_calls = 0
        self.waiting: List[Job] = []
        self.active: List[Job] = []
        self.delayed: List[Tuple[Job, int]] = []
        self.completed: List[Job] = []
        self.failed: List[Job] = []

    def _check(self):
        if self.down:
            raise BrokerUnavailableException("connection refused")

    async def connect(self) -> None:
        self.connect_calls += 1
        self._check()

    async def add(self, name, data, max_attempts) -> Job:
        self._check()
        job = Job(name=name, data=data, max_attempts=max_attempts)
        self.waiting.append(job)
        return job

    async def reserve(self, timeout) -> Optional[Job]:
        self._check()
        if not self.waiting:
            return None
        job = self.waiting.pop(0)
        self.active.append(job)
        return job

    def _settle(self, job) -> None:
        if job in self.active:
            self.active.remove(job)

    async def complete(self, job) -> None:
        self._check()
        self._settle(job)
        self.completed.append(job)

    async def retry_later(self, job, delay_ms, error) -> None:
        self._check()
        self._settle(job)
        job.last_error = error
        self.delayed.append((job, delay_ms))

    async def fail(self, job, error) -> None:
        self._check()
        self._settle(job)
        job.last_error = error
        self.failed.append(job)

    async def recover_stalled(self, stalled_after_ms) -> int:
        self._check()
        recovered = len(self.active)
        self.waiting.extend(self.active)
        self.active = []
        return recovered

    async def promote_delayed(self) -> int:
        self._check()
        promoted = len(self.delayed)
        self.waiting.extend(job for job, _ in self.delayed)
        self.delayed = []
        return promoted

    async def counts(self) -> Dict[str, int]:
        self._check()
        return {
            "waiting": len(self.waiting),
            "active": len(self.active),
            "delayed": len(self.delayed),
            "completed": len(self.completed),
            "failed": len(self.failed),
        }

    async def close(self) -> None:
        return None


async def no_sleep(seconds: float) -> None:
    return None


# ========== SLA fakes ==========

_MARKER_FIELDS = ("at_risk_notified_at", "breach_notified_at")


class InMemorySlaRepository(ISlaInstanceRepository):
    """
    Stores deep copies, like a database would. ``save`` leaves markers
    alone and ``claim_threshold`` is the only way to set one.
    """

    def __init__(self):
        self.rows: Dict[str, SlaInstance] = {}
        self.claims: List[Tuple[str, SubClock, ThresholdKind]] = []
        self.broken: set = set()

    async def get(self, ticket_id):
        row = self.rows.get(ticket_id)
        return copy.deepcopy(row) if row is not None else None

    async def save(self, instance):
        stored = self.rows.get(instance.ticket_id)
        new = copy.deepcopy(instance)
        for sub_clock in SubClock:
            target = new.clock(sub_clock)
            source = stored.clock(sub_clock) if stored is not None else None
            for name in _MARKER_FIELDS:
                setattr(target, name, getattr(source, name) if source is not None else None)
        self.rows[instance.ticket_id] = new

    async def list_open(self, limit=100, due_before=None):
        rows = [
            r for r in self.rows.values()
            if r.next_check_at is not None
            and (due_before is None or r.next_check_at <= due_before)
        ]
        rows.sort(key=lambda r: (r.next_check_at, r.ticket_id))
        return [copy.deepcopy(r) for r in rows[:limit]]

    async def reschedule(self, ticket_id, next_check_at, expected):
        row = self.rows[ticket_id]
        if row.next_check_at != expected:
            return False
        row.next_check_at = next_check_at
        return True

    async def claim_threshold(self, ticket_id, sub_clock, kind, at):
        if ticket_id in self.broken:
            raise RuntimeError("storage unavailable")
        row = self.rows[ticket_id]
        claimed = row.clock(sub_clock).set_marker(kind, at)
        if claimed:
            self.claims.append((ticket_id, sub_clock, kind))
        return claimed


class StaticPolicyProvider(ISlaPolicyProvider):
    def __init__(self, config: Optional[SlaPolicyConfig] = None, version: str = "test-v1"):
        self.config = config or SlaPolicyConfig()
        self.schedule = self.config.business_hours.to_schedule(version)

    def get_sla_policy(self, team_id, priority) -> SlaPolicy:
        return self.config.get_policy(team_id, priority)

    def get_business_hours_schedule(self) -> BusinessHoursSchedule:
        return self.schedule

    def get_at_risk_fraction(self) -> float:
        return self.config.at_risk_fraction


class RecordingNotifier(ISlaNotifier):
    def __init__(self, fail: bool = False):
        self.events: List[Tuple[str, ThresholdKind, SubClock]] = []
        self.fail = fail

    async def on_sla_threshold_crossed(self, ticket_id, kind, sub_clock) -> None:
        self.events.append((ticket_id, kind, sub_clock))
        if self.fail:
            raise RuntimeError("slack is down")


class RecordingDispatcher:
    """Stands in for AutomationDispatcher where only submissions matter."""

    def __init__(self):
        self.submitted: List[Tuple[str, Trigger]] = []

    async def submit_automation(self, ticket_id: str, trigger: Trigger) -> None:
        self.submitted.append((ticket_id, trigger))


# ========== Builders ==========

def make_snapshot(**overrides: Any) -> TicketSnapshot:
    values = dict(
        id="TCK-1",
        subject="Cannot log in",
        description="Password reset link expired",
        priority=TicketPriority.P3,
        status=TicketStatus.NEW,
        requester_id="user-1",
        team_id=None,
        assignee_id=None,
        category_id="access",
        channel="email",
        tags=("login",),
        custom_field_values={},
        created_at=T0,
    )
    values.update(overrides)
    return TicketSnapshot(**values)


def make_rule(
    rule_id: str,
    conditions: Any = None,
    actions: Optional[list] = None,
    trigger: str = "TICKET_CREATED",
    priority: int = 0,
    created_at: datetime = T0,
    strict: bool = True,
    **kwargs: Any,
) -> AutomationRule:
    definition = RuleDefinitionDTO(
        name=kwargs.pop("name", f"rule {rule_id}"),
        trigger=trigger,
        conditions=conditions if conditions is not None else {},
        actions=actions or [],
        priority=priority,
        **kwargs,
    )
    return definition.to_domain(rule_id=rule_id, created_at=created_at, strict=strict)


# ========== Fixtures ==========

@pytest.fixture
def snapshot() -> TicketSnapshot:
    return make_snapshot()


@pytest.fixture
def sla_repository() -> InMemorySlaRepository:
    return InMemorySlaRepository()


@pytest.fixture
def policy_provider() -> StaticPolicyProvider:
    return StaticPolicyProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def recording_dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()
