"""Tests for the automation queue worker."""

import pytest

from conftest import (
    FakeRuleRepository,
    FakeTicketGateway,
    InMemoryTaskQueue,
    make_rule,
    make_snapshot,
    no_sleep,
)
from deskflow.automation.application import (
    AUTOMATION_JOB_NAME,
    DispatcherStateHolder,
    RuleEngineService,
    make_job_handler,
)
from deskflow.automation.infrastructure import QueueWorker, retry_delay_ms
from deskflow.infrastructure.queue import BrokerConnection, Job


def test_retry_delay_doubles_from_the_base():
    assert [retry_delay_ms(n, 10_000) for n in (1, 2, 3)] == [10_000, 20_000, 40_000]


@pytest.fixture
def queue():
    return InMemoryTaskQueue()


def make_worker(queue, handler, state=None):
    connection = BrokerConnection(queue, sleep=no_sleep)
    return QueueWorker(connection, handler, state or DispatcherStateHolder(), concurrency=2)


def make_job(max_attempts=3, attempts_made=0):
    return Job(
        name=AUTOMATION_JOB_NAME,
        data={"ticket_id": "TCK-1", "trigger": "TICKET_CREATED"},
        max_attempts=max_attempts,
        attempts_made=attempts_made,
    )


async def test_successful_job_is_completed(queue):
    handled = []

    async def handler(job):
        handled.append(job.id)

    worker = make_worker(queue, handler)
    job = make_job()

    await worker.process(job)

    assert handled == [job.id]
    assert queue.completed == [job]
    assert job.attempts_made == 1


async def test_failed_job_is_retried_with_backoff(queue):
    async def handler(job):
        raise RuntimeError("ticket store timeout")

    worker = make_worker(queue, handler)
    job = make_job()

    await worker.process(job)
    await worker.process(job)

    assert [delay for _, delay in queue.delayed] == [10_000, 20_000]
    assert job.last_error == "ticket store timeout"
    assert queue.failed == []


async def test_last_attempt_failure_is_permanent(queue):
    async def handler(job):
        raise RuntimeError("still broken")

    worker = make_worker(queue, handler)
    job = make_job(max_attempts=3, attempts_made=2)

    await worker.process(job)

    assert queue.failed == [job]
    assert queue.delayed == []


async def test_job_handler_runs_the_rule_engine(queue):
    gateway = FakeTicketGateway(make_snapshot())
    rule = make_rule("assign", actions=[{"type": "assign_user", "userId": "agent-1"}])
    engine = RuleEngineService(gateway, FakeRuleRepository(rule))
    worker = make_worker(queue, make_job_handler(engine))

    await worker.process(make_job())

    assert gateway.tickets["TCK-1"].assignee_id == "agent-1"
    assert len(queue.completed) == 1


async def test_conflict_is_retried_through_the_queue(queue):
    gateway = FakeTicketGateway(make_snapshot())
    gateway.conflict_kinds.add("assign_user")
    rule = make_rule("assign", actions=[{"type": "assign_user", "userId": "agent-1"}])
    engine = RuleEngineService(gateway, FakeRuleRepository(rule))
    worker = make_worker(queue, make_job_handler(engine))

    await worker.process(make_job())

    assert len(queue.delayed) == 1
    assert "write conflict" in queue.delayed[0][0].last_error


async def test_conflict_retry_does_not_repeat_applied_rules(queue):
    gateway = FakeTicketGateway(make_snapshot())
    gateway.conflict_kinds.add("set_status")
    engine = RuleEngineService(gateway, FakeRuleRepository(
        make_rule("note", priority=1, actions=[{"type": "add_internal_note", "body": "Seen by automation"}]),
        make_rule("status", priority=2, actions=[{"type": "set_status", "status": "TRIAGED"}]),
    ))
    worker = make_worker(queue, make_job_handler(engine))
    job = make_job()

    await worker.process(job)
    assert job.data["rule_ids"] == ["status"]

    gateway.conflict_kinds.clear()
    await worker.process(job)

    assert [i.action_kind for i in gateway.applied] == ["add_internal_note", "set_status"]
    assert queue.completed == [job]


async def test_start_and_stop(queue):
    async def handler(job):
        return None

    worker = make_worker(queue, handler)
    await worker.start()
    assert worker.is_running
    await worker.stop()
    assert not worker.is_running


async def test_degraded_state_stops_consumers(queue):
    state = DispatcherStateHolder()
    state.degrade("broker down")

    async def handler(job):
        raise AssertionError("must not run")

    worker = make_worker(queue, handler, state)
    await queue.add(AUTOMATION_JOB_NAME, {"ticket_id": "TCK-1", "trigger": "TICKET_CREATED"}, 3)

    await worker._consume(0)

    assert len(queue.waiting) == 1


class FlakyQueue(InMemoryTaskQueue):
    """Raises non-broker errors from chosen operations a set number of times."""

    def __init__(self, reserve_errors=0, complete_errors=0):
        super().__init__()
        self.reserve_errors = reserve_errors
        self.complete_errors = complete_errors

    async def reserve(self, timeout):
        if self.reserve_errors:
            self.reserve_errors -= 1
            raise RuntimeError("unexpected reply")
        return await super().reserve(timeout)

    async def complete(self, job):
        if self.complete_errors:
            self.complete_errors -= 1
            raise RuntimeError("unexpected reply")
        await super().complete(job)


def make_stoppable_worker(queue):
    """Worker whose handler stops the consume loop after one job."""
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    async def handler(job):
        worker._running = False

    worker = QueueWorker(
        BrokerConnection(queue, sleep=no_sleep), handler, DispatcherStateHolder(), sleep=sleep
    )
    worker._running = True
    return worker, sleeps


async def test_consumer_keeps_going_after_an_unexpected_error():
    queue = FlakyQueue(reserve_errors=1)
    job = await queue.add(AUTOMATION_JOB_NAME, {"ticket_id": "TCK-1", "trigger": "TICKET_CREATED"}, 3)
    worker, sleeps = make_stoppable_worker(queue)

    await worker._consume(0)

    assert sleeps == [1.0]
    assert queue.completed == [job]


async def test_job_whose_settlement_crashes_is_failed():
    queue = FlakyQueue(complete_errors=1)
    job = await queue.add(AUTOMATION_JOB_NAME, {"ticket_id": "TCK-1", "trigger": "TICKET_CREATED"}, 3)
    worker, _ = make_stoppable_worker(queue)

    await worker._consume(0)

    assert queue.failed == [job]
    assert job.last_error == "unexpected reply"
    assert queue.active == []


async def test_start_returns_stalled_jobs_to_waiting(queue):
    job = await queue.add(AUTOMATION_JOB_NAME, {"ticket_id": "TCK-1", "trigger": "TICKET_CREATED"}, 3)
    await queue.reserve(1.0)

    async def handler(job):
        return None

    worker = make_worker(queue, handler)
    await worker.start()
    try:
        assert queue.waiting == [job]
        assert queue.active == []
    finally:
        await worker.stop()


async def test_start_degrades_when_the_broker_is_down():
    state = DispatcherStateHolder()

    async def handler(job):
        return None

    worker = make_worker(InMemoryTaskQueue(down=True), handler, state)
    await worker.start()

    assert state.is_degraded
    assert not worker.is_running
