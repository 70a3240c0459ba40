"""
Automation Application Services
================================

Application services run the rule engine for one ticket event and
coordinate between the pure domain logic and the ticket store.

Following SOLID principles:
- Single Responsibility: rule evaluation lives in the domain, persistence
  behind the ports below
- Dependency Inversion: depend on the port ABCs, not concrete adapters
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Collection, List, Optional, Sequence, Tuple

from deskflow.automation.domain import (
    ActionExecutor,
    AutomationExecution,
    AutomationRule,
    MutationIntent,
    TicketSnapshot,
    evaluate,
    select_rules,
)
from deskflow.config import SLA_TRIGGER_FOR_KIND, TicketPriority, TicketStatus, Trigger
from deskflow.core import MutationConflictException, ResourceNotFoundException
from deskflow.shared.infrastructure.logging import get_logger, log_latency
from deskflow.shared.infrastructure.side_effects import run_non_critical

logger = get_logger(__name__)


class MutationResult(str, Enum):
    """Outcome of a transactional ticket write."""
    OK = "ok"
    CONFLICT = "conflict"


# ========== Ports (Dependency Inversion) ==========

class ITicketGateway(ABC):
    """Read/write access to the ticket store."""

    @abstractmethod
    async def get_ticket_snapshot(self, ticket_id: str) -> Optional[TicketSnapshot]:
        """Single point-in-time read of a ticket."""

    @abstractmethod
    async def apply_mutations(
        self, ticket_id: str, intents: Sequence[MutationIntent]
    ) -> MutationResult:
        """
        Apply all intents of one rule in a single per-record transaction.

        Either every intent is written or none is. ``CONFLICT`` means the
        row no longer holds the ``previous`` values the intents were
        computed from, or the row could not be locked.
        """

    async def apply_mutation(self, ticket_id: str, intent: MutationIntent) -> MutationResult:
        """Apply one intent in its own transaction."""
        return await self.apply_mutations(ticket_id, [intent])


class IRuleRepository(ABC):
    """Read-only access to automation rules."""

    @abstractmethod
    async def list_for_trigger(self, trigger: Trigger) -> List[AutomationRule]:
        """Rules registered for a trigger (active or not)."""

    @abstractmethod
    async def get_by_id(self, rule_id: str) -> Optional[AutomationRule]:
        """Get a rule by ID."""


class IAutomationExecutionRepository(ABC):
    """Audit trail of rule runs."""

    @abstractmethod
    async def record(self, execution: AutomationExecution) -> None:
        """Persist one execution record."""

    @abstractmethod
    async def has_recent_success(
        self, rule_id: str, ticket_id: str, trigger: Trigger, since: datetime
    ) -> bool:
        """True if the rule ran successfully for the ticket and trigger at or after ``since``."""


class ISlaClockSync(ABC):
    """SLA clock hooks fed by automation-made ticket changes."""

    @abstractmethod
    async def on_status_changed(
        self, ticket_id: str, status: TicketStatus, at: Optional[datetime] = None
    ) -> None:
        """Ticket moved to ``status``."""

    @abstractmethod
    async def on_priority_changed(
        self,
        ticket_id: str,
        priority: TicketPriority,
        team_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        """Ticket priority changed."""


# ========== Results ==========

@dataclass(frozen=True)
class RuleOutcome:
    rule_id: str
    matched: bool
    actions_applied: Tuple[str, ...] = ()
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class DispatchReport:
    """What one run of the engine did for a (ticket, trigger) pair."""
    ticket_id: str
    trigger: Trigger
    outcomes: List[RuleOutcome] = field(default_factory=list)

    @property
    def rules_matched(self) -> int:
        return sum(1 for o in self.outcomes if o.matched)


@dataclass(frozen=True)
class RuleTestResult:
    rule_id: str
    ticket_id: str
    matched: bool
    intents: Tuple[MutationIntent, ...] = ()


class _ConflictDetected(Exception):
    pass


SLA_TRIGGERS = frozenset(SLA_TRIGGER_FOR_KIND.values())
SLA_DEDUPE_WINDOW = timedelta(hours=24)


# ========== Application Services ==========

class RuleEngineService:
    """
    Runs every eligible rule for one ticket event.

    Rules are selected and evaluated against one snapshot taken when the
    run starts; conditions are not re-evaluated after earlier rules
    mutate the ticket. Each rule's actions are written in one transaction.
    A failing rule is logged and the next rule still runs. Write conflicts
    are collected and raised once all rules ran, naming the conflicted
    rules so that a queued retry runs only those.

    SLA-triggered rules that already succeeded for the same ticket and
    trigger within ``sla_dedupe_window`` are skipped.
    """

    def __init__(
        self,
        ticket_gateway: ITicketGateway,
        rule_repository: IRuleRepository,
        execution_repository: Optional[IAutomationExecutionRepository] = None,
        sla_clock: Optional[ISlaClockSync] = None,
        action_executor: Optional[ActionExecutor] = None,
        sla_dedupe_window: timedelta = SLA_DEDUPE_WINDOW,
    ):
        self._tickets = ticket_gateway
        self._rules = rule_repository
        self._executions = execution_repository
        self._sla_clock = sla_clock
        self._executor = action_executor or ActionExecutor()
        self._sla_dedupe_window = sla_dedupe_window

    async def run_for_ticket(
        self,
        ticket_id: str,
        trigger: Trigger,
        only_rule_ids: Optional[Collection[str]] = None,
    ) -> DispatchReport:
        """
        Select, evaluate and apply rules for a ticket event.

        Args:
            only_rule_ids: Restrict the run to these rules (retry after a conflict)

        Raises:
            MutationConflictException: if any rule hit a write conflict
        """
        report = DispatchReport(ticket_id=ticket_id, trigger=trigger)

        snapshot = await self._tickets.get_ticket_snapshot(ticket_id)
        if snapshot is None:
            logger.warning(
                "Automation skipped, ticket not found",
                extra={"ticket_id": ticket_id, "trigger": trigger.value}
            )
            return report

        rules = select_rules(trigger, await self._rules.list_for_trigger(trigger), snapshot)
        if only_rule_ids is not None:
            rules = [rule for rule in rules if rule.id in only_rule_ids]
        conflicted: List[str] = []

        with log_latency(logger, "automation_dispatch", ticket_id=ticket_id, trigger=trigger.value):
            for rule in rules:
                try:
                    outcome = await self._run_rule(rule, snapshot, trigger)
                    if outcome is None:
                        continue
                except _ConflictDetected:
                    conflicted.append(rule.id)
                    outcome = RuleOutcome(rule.id, matched=True, error="write conflict")
                except Exception as e:
                    logger.error(
                        "Automation rule failed",
                        extra={
                            "rule_id": rule.id,
                            "ticket_id": ticket_id,
                            "trigger": trigger.value,
                            "error_type": type(e).__name__,
                            "error": str(e),
                        },
                        exc_info=True,
                    )
                    outcome = RuleOutcome(rule.id, matched=True, error=str(e))

                report.outcomes.append(outcome)
                await self._record(outcome, ticket_id, trigger)

        logger.info(
            "Automation dispatch finished",
            extra={
                "ticket_id": ticket_id,
                "trigger": trigger.value,
                "rules_selected": len(rules),
                "rules_matched": report.rules_matched,
                "conflicts": len(conflicted),
            }
        )

        if conflicted:
            raise MutationConflictException(ticket_id, conflicted)
        return report

    async def test_rule(self, rule_id: str, ticket_id: str) -> RuleTestResult:
        """
        Dry run: evaluate one rule against a ticket without writing anything.

        Raises:
            ResourceNotFoundException: unknown rule or ticket
        """
        rule = await self._rules.get_by_id(rule_id)
        if rule is None:
            raise ResourceNotFoundException("AutomationRule", rule_id)
        snapshot = await self._tickets.get_ticket_snapshot(ticket_id)
        if snapshot is None:
            raise ResourceNotFoundException("Ticket", ticket_id)

        matched = evaluate(snapshot, rule.condition)
        intents: Tuple[MutationIntent, ...] = ()
        if matched:
            intents = tuple(self._executor.apply(snapshot, action) for action in rule.actions)
        return RuleTestResult(rule.id, ticket_id, matched, intents)

    async def _run_rule(
        self, rule: AutomationRule, snapshot: TicketSnapshot, trigger: Trigger
    ) -> Optional[RuleOutcome]:
        """Outcome of one rule, or None when an SLA rule is skipped as a repeat."""
        if not evaluate(snapshot, rule.condition):
            return RuleOutcome(rule.id, matched=False)

        if trigger in SLA_TRIGGERS and await self._ran_recently(rule, snapshot.id, trigger):
            logger.info(
                "SLA automation skipped, rule already ran for ticket",
                extra={"rule_id": rule.id, "ticket_id": snapshot.id, "trigger": trigger.value}
            )
            return None

        intents = [
            intent
            for intent in (self._executor.apply(snapshot, action) for action in rule.actions)
            if not intent.is_noop
        ]
        if not intents:
            return RuleOutcome(rule.id, matched=True)

        result = await self._tickets.apply_mutations(snapshot.id, intents)
        if result is MutationResult.CONFLICT:
            logger.warning(
                "Ticket write conflict",
                extra={
                    "rule_id": rule.id,
                    "ticket_id": snapshot.id,
                    "action_kinds": [intent.action_kind for intent in intents],
                }
            )
            raise _ConflictDetected()

        for intent in intents:
            await self._sync_sla_clock(snapshot, intent)

        return RuleOutcome(
            rule.id,
            matched=True,
            actions_applied=tuple(intent.action_kind for intent in intents),
        )

    async def _ran_recently(self, rule: AutomationRule, ticket_id: str, trigger: Trigger) -> bool:
        if self._executions is None:
            return False
        since = datetime.now(timezone.utc) - self._sla_dedupe_window
        return await self._executions.has_recent_success(rule.id, ticket_id, trigger, since)

    async def _sync_sla_clock(self, snapshot: TicketSnapshot, intent: MutationIntent) -> None:
        if self._sla_clock is None:
            return
        now = datetime.now(timezone.utc)
        context = {"ticket_id": snapshot.id, "action_kind": intent.action_kind}

        if "status" in intent.changes:
            await run_non_critical(
                "sla status sync",
                self._sla_clock.on_status_changed,
                snapshot.id, intent.changes["status"], now,
                log=logger, context=context,
            )
        if "priority" in intent.changes:
            team_id = intent.changes.get("team_id", snapshot.team_id)
            await run_non_critical(
                "sla priority sync",
                self._sla_clock.on_priority_changed,
                snapshot.id, intent.changes["priority"], team_id, now,
                log=logger, context=context,
            )

    async def _record(self, outcome: RuleOutcome, ticket_id: str, trigger: Trigger) -> None:
        if self._executions is None or not outcome.matched:
            return
        execution = AutomationExecution(
            rule_id=outcome.rule_id,
            ticket_id=ticket_id,
            trigger=trigger,
            matched=outcome.matched,
            success=outcome.success,
            actions_applied=outcome.actions_applied,
            error=outcome.error,
        )
        await run_non_critical(
            "record automation execution",
            self._executions.record,
            execution,
            log=logger,
            context={"rule_id": outcome.rule_id, "ticket_id": ticket_id},
        )
