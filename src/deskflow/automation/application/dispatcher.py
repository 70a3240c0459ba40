"""
Automation Dispatcher
=====================

Entry point for ``submit_automation(ticket_id, trigger)``.

Two states:
- ENABLED: submissions go onto the durable task queue and queue workers
  run them with bounded retry.
- DEGRADED: the broker could not be reached within the reconnect budget.
  Every submission runs inline in the caller's task; failures are logged
  and not retried. There is no way back to ENABLED without a restart.

Callers only see the ``Dispatch`` interface; which implementation handles
a submission is decided by the current state.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from deskflow.automation.application.services import RuleEngineService
from deskflow.config import DispatcherState, Trigger
from deskflow.core import BrokerUnavailableException, MutationConflictException
from deskflow.infrastructure.queue import BrokerConnection, Job
from deskflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

AUTOMATION_JOB_NAME = "run-automation"


class DispatcherStateHolder:
    """
    Process-wide ENABLED/DEGRADED flag.

    Transitions are compare-and-set under a lock and only ever go from
    ENABLED to DEGRADED. Workers get this object injected and read it
    before every reservation.
    """

    def __init__(self, initial: DispatcherState = DispatcherState.ENABLED):
        self._state = initial
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    @property
    def state(self) -> DispatcherState:
        with self._lock:
            return self._state

    @property
    def is_degraded(self) -> bool:
        return self.state is DispatcherState.DEGRADED

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def compare_and_set(self, expected: DispatcherState, new: DispatcherState) -> bool:
        with self._lock:
            if self._state is not expected:
                return False
            self._state = new
            return True

    def degrade(self, reason: str) -> bool:
        """Switch to DEGRADED; True only for the call that made the switch."""
        if not self.compare_and_set(DispatcherState.ENABLED, DispatcherState.DEGRADED):
            return False
        self._reason = reason
        logger.warning(
            "Automation dispatcher degraded to inline execution",
            extra={"reason": reason}
        )
        return True


# ========== Dispatch implementations ==========

class Dispatch(ABC):
    """One way of getting a (ticket, trigger) pair executed."""

    @abstractmethod
    async def submit(self, ticket_id: str, trigger: Trigger) -> None:
        """Hand over a unit of work."""


class QueuedDispatch(Dispatch):
    """Pushes work onto the durable queue."""

    def __init__(self, connection: BrokerConnection, max_attempts: int = 3):
        self._connection = connection
        self._max_attempts = max_attempts

    async def submit(self, ticket_id: str, trigger: Trigger) -> None:
        """
        Raises:
            BrokerUnavailableException: enqueue failed after reconnecting
        """
        job = await self._connection.run(
            self._connection.queue.add,
            AUTOMATION_JOB_NAME,
            {"ticket_id": ticket_id, "trigger": trigger.value},
            self._max_attempts,
        )
        logger.debug(
            "Automation queued",
            extra={"ticket_id": ticket_id, "trigger": trigger.value, "job_id": job.id}
        )


class InlineDispatch(Dispatch):
    """Runs work in the caller's task. Errors are logged, never retried."""

    def __init__(self, engine: RuleEngineService):
        self._engine = engine

    async def submit(self, ticket_id: str, trigger: Trigger) -> None:
        try:
            await self._engine.run_for_ticket(ticket_id, trigger)
        except Exception as e:
            logger.error(
                "Inline automation failed",
                extra={
                    "ticket_id": ticket_id,
                    "trigger": trigger.value,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
                exc_info=True,
            )


class JobWorker(ABC):
    """Queue consumer started once the broker is reachable."""

    @abstractmethod
    async def start(self) -> None:
        """Start consuming."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop consuming and wait for in-flight jobs."""


def make_job_handler(engine: RuleEngineService):
    """
    Adapt the rule engine to the queue worker's job handler signature.

    After a write conflict the job data is narrowed to the conflicted
    rules, so a retry does not repeat rules that already applied.
    """

    async def handle(job: Job) -> None:
        try:
            await engine.run_for_ticket(
                job.data["ticket_id"],
                Trigger(job.data["trigger"]),
                only_rule_ids=job.data.get("rule_ids"),
            )
        except MutationConflictException as e:
            job.data["rule_ids"] = list(e.rule_ids)
            raise

    return handle


# ========== Dispatcher ==========

class AutomationDispatcher:
    """
    Owns the dispatcher state and picks a ``Dispatch`` per submission.

    Args:
        engine: Rule engine used by inline execution
        state: Shared ENABLED/DEGRADED flag (also read by workers)
        connection: Broker connection; None means the queue is disabled
        worker: Queue consumer started when the broker is reachable
        max_attempts: Attempts per queued job
    """

    def __init__(
        self,
        engine: RuleEngineService,
        state: DispatcherStateHolder,
        connection: Optional[BrokerConnection] = None,
        worker: Optional[JobWorker] = None,
        max_attempts: int = 3,
    ):
        self._state = state
        self._connection = connection
        self._worker = worker
        self._inline = InlineDispatch(engine)
        self._queued = (
            QueuedDispatch(connection, max_attempts) if connection is not None else None
        )
        self._worker_started = False

    @property
    def state(self) -> DispatcherState:
        return self._state.state

    async def start(self) -> None:
        """Connect to the broker and start workers, or degrade."""
        if self._queued is None:
            self._state.degrade("automation queue disabled")
            return

        try:
            await self._connection.connect()
        except BrokerUnavailableException as e:
            self._state.degrade(e.message)
            return

        if self._worker is not None:
            await self._worker.start()
            self._worker_started = True
        logger.info("Automation dispatcher started", extra={"state": self.state.value})

    async def stop(self) -> None:
        if self._worker is not None and self._worker_started:
            await self._worker.stop()
            self._worker_started = False
        if self._connection is not None:
            await self._connection.close()

    def current_dispatch(self) -> Dispatch:
        if self._queued is None or self._state.is_degraded:
            return self._inline
        return self._queued

    async def submit_automation(self, ticket_id: str, trigger: Trigger) -> None:
        """
        Fire-and-forget submission of a ticket event.

        Never raises: a broker failure while enqueueing degrades the
        dispatcher and the work runs inline before this returns.
        """
        dispatch = self.current_dispatch()
        if dispatch is self._queued:
            try:
                await dispatch.submit(ticket_id, trigger)
                return
            except BrokerUnavailableException as e:
                self._state.degrade(e.message)
                logger.warning(
                    "Enqueue failed, running automation inline",
                    extra={"ticket_id": ticket_id, "trigger": trigger.value}
                )
        await self._inline.submit(ticket_id, trigger)

    async def describe(self) -> Dict[str, Any]:
        """Current state plus queue counts when the queue is usable."""
        info: Dict[str, Any] = {
            "state": self.state.value,
            "reason": self._state.reason,
            "queue": None,
        }
        if self._connection is not None and not self._state.is_degraded and self._connection.is_connected:
            try:
                info["queue"] = await self._connection.queue.counts()
            except BrokerUnavailableException as e:
                logger.warning("Queue counts unavailable", extra={"error": e.message})
        return info
