"""Tests for BrokerConnection reconnect behaviour."""

import pytest

from conftest import InMemoryTaskQueue
from deskflow.core import BrokerUnavailableException
from deskflow.infrastructure.queue import BrokerConnection, reconnect_delay


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def test_reconnect_delay_is_linear_and_capped():
    assert [reconnect_delay(n, 500, 5000) for n in (1, 2, 5, 10, 20)] == [0.5, 1.0, 2.5, 5.0, 5.0]


async def test_connect_succeeds_first_time():
    queue = InMemoryTaskQueue()
    sleep = RecordingSleep()
    connection = BrokerConnection(queue, sleep=sleep)

    await connection.connect()
    await connection.connect()

    assert connection.is_connected
    assert queue.connect_calls == 1
    assert sleep.delays == []


async def test_budget_exhaustion_raises_and_sticks():
    queue = InMemoryTaskQueue(down=True)
    sleep = RecordingSleep()
    connection = BrokerConnection(queue, max_reconnects=5, sleep=sleep)

    with pytest.raises(BrokerUnavailableException):
        await connection.connect()

    assert queue.connect_calls == 6
    assert sleep.delays == [0.5, 1.0, 1.5, 2.0, 2.5]
    assert connection.is_exhausted

    queue.down = False
    with pytest.raises(BrokerUnavailableException):
        await connection.connect()
    assert queue.connect_calls == 6


async def test_recovers_within_budget():
    class FlakyQueue(InMemoryTaskQueue):
        async def connect(self):
            self.connect_calls += 1
            if self.connect_calls < 3:
                raise BrokerUnavailableException("refused")

    queue = FlakyQueue()
    connection = BrokerConnection(queue, sleep=RecordingSleep())

    await connection.connect()

    assert connection.is_connected
    assert queue.connect_calls == 3


async def test_run_reconnects_after_a_dropped_connection():
    class DropOnce(InMemoryTaskQueue):
        dropped = False

        async def counts(self):
            if not self.dropped:
                self.dropped = True
                raise BrokerUnavailableException("connection reset")
            return await super().counts()

    queue = DropOnce()
    connection = BrokerConnection(queue, sleep=RecordingSleep())
    await connection.connect()

    counts = await connection.run(queue.counts)

    assert counts["waiting"] == 0
    assert queue.connect_calls == 2
