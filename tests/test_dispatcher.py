"""Tests for AutomationDispatcher and its state holder."""

import threading

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
    AutomationDispatcher,
    DispatcherStateHolder,
    JobWorker,
    RuleEngineService,
)
from deskflow.config import DispatcherState, Trigger
from deskflow.infrastructure.queue import BrokerConnection


class StubWorker(JobWorker):
    def __init__(self):
        self.started = 0
        self.stopped = 0

    async def start(self):
        self.started += 1

    async def stop(self):
        self.stopped += 1


@pytest.fixture
def gateway():
    return FakeTicketGateway(make_snapshot())


@pytest.fixture
def engine(gateway):
    rule = make_rule("assign", actions=[{"type": "assign_user", "userId": "agent-1"}])
    return RuleEngineService(gateway, FakeRuleRepository(rule))


def build(engine, queue=None, worker=None):
    state = DispatcherStateHolder()
    connection = (
        BrokerConnection(queue, max_reconnects=2, sleep=no_sleep) if queue is not None else None
    )
    return AutomationDispatcher(engine, state, connection=connection, worker=worker), state


class TestDispatcherStateHolder:

    def test_starts_enabled(self):
        assert DispatcherStateHolder().state is DispatcherState.ENABLED

    def test_degrade_is_one_way(self):
        holder = DispatcherStateHolder()
        assert holder.degrade("broker down")
        assert not holder.degrade("again")
        assert holder.reason == "broker down"
        assert not holder.compare_and_set(DispatcherState.ENABLED, DispatcherState.DEGRADED)
        assert holder.is_degraded

    def test_only_one_thread_wins_the_transition(self):
        holder = DispatcherStateHolder()
        wins = []
        barrier = threading.Barrier(8)

        def race():
            barrier.wait()
            wins.append(holder.degrade("race"))

        threads = [threading.Thread(target=race) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert wins.count(True) == 1


class TestStart:

    async def test_reachable_broker_starts_workers(self, engine):
        worker = StubWorker()
        dispatcher, _ = build(engine, InMemoryTaskQueue(), worker)

        await dispatcher.start()

        assert dispatcher.state is DispatcherState.ENABLED
        assert worker.started == 1

        await dispatcher.stop()
        assert worker.stopped == 1

    async def test_unreachable_broker_degrades(self, engine):
        queue = InMemoryTaskQueue(down=True)
        worker = StubWorker()
        dispatcher, state = build(engine, queue, worker)

        await dispatcher.start()

        assert dispatcher.state is DispatcherState.DEGRADED
        assert worker.started == 0
        assert queue.connect_calls == 3
        assert "unreachable" in state.reason

    async def test_disabled_queue_runs_inline(self, engine, gateway):
        dispatcher, _ = build(engine)

        await dispatcher.start()
        await dispatcher.submit_automation("TCK-1", Trigger.TICKET_CREATED)

        assert dispatcher.state is DispatcherState.DEGRADED
        assert gateway.tickets["TCK-1"].assignee_id == "agent-1"


class TestSubmit:

    async def test_enabled_submission_is_queued(self, engine, gateway):
        queue = InMemoryTaskQueue()
        dispatcher, _ = build(engine, queue)
        await dispatcher.start()

        await dispatcher.submit_automation("TCK-1", Trigger.TICKET_CREATED)

        assert gateway.applied == []
        job = queue.waiting[0]
        assert job.name == AUTOMATION_JOB_NAME
        assert job.data == {"ticket_id": "TCK-1", "trigger": "TICKET_CREATED"}
        assert job.max_attempts == 3

    async def test_enqueue_failure_degrades_and_runs_inline(self, engine, gateway):
        queue = InMemoryTaskQueue()
        dispatcher, _ = build(engine, queue)
        await dispatcher.start()
        queue.down = True

        await dispatcher.submit_automation("TCK-1", Trigger.TICKET_CREATED)

        assert dispatcher.state is DispatcherState.DEGRADED
        assert gateway.tickets["TCK-1"].assignee_id == "agent-1"

    async def test_degraded_never_touches_the_queue_again(self, engine, gateway):
        queue = InMemoryTaskQueue(down=True)
        dispatcher, _ = build(engine, queue)
        await dispatcher.start()
        queue.down = False
        calls = queue.connect_calls

        await dispatcher.submit_automation("TCK-1", Trigger.TICKET_CREATED)

        assert queue.connect_calls == calls
        assert queue.waiting == []
        assert dispatcher.state is DispatcherState.DEGRADED

    async def test_inline_failure_is_not_raised(self, engine, gateway):
        gateway.conflict_kinds.add("assign_user")
        dispatcher, _ = build(engine)
        await dispatcher.start()

        await dispatcher.submit_automation("TCK-1", Trigger.TICKET_CREATED)

        assert gateway.applied == []


class TestDescribe:

    async def test_enabled_reports_queue_counts(self, engine):
        dispatcher, _ = build(engine, InMemoryTaskQueue())
        await dispatcher.start()
        await dispatcher.submit_automation("TCK-1", Trigger.TICKET_CREATED)

        info = await dispatcher.describe()

        assert info["state"] == "enabled"
        assert info["queue"]["waiting"] == 1

    async def test_degraded_has_no_queue_counts(self, engine):
        dispatcher, _ = build(engine, InMemoryTaskQueue(down=True))
        await dispatcher.start()

        info = await dispatcher.describe()

        assert info["state"] == "degraded"
        assert info["queue"] is None
        assert info["reason"]
