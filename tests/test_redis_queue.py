"""Tests for RedisTaskQueue against stub redis clients."""

import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import FakeRuleRepository, FakeTicketGateway, make_snapshot, no_sleep
from deskflow.automation.application import AutomationDispatcher, DispatcherStateHolder, RuleEngineService
from deskflow.config import DispatcherState
from deskflow.core import BrokerUnavailableException
from deskflow.infrastructure.queue import BrokerConnection, Job, RedisTaskQueue


def stub_client():
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.blmove = AsyncMock(return_value=None)
    client.hgetall = AsyncMock(return_value={})
    client.lrem = AsyncMock(return_value=1)
    client.zrangebyscore = AsyncMock(return_value=[])
    client.zrem = AsyncMock(return_value=1)
    client.lpush = AsyncMock(return_value=1)
    client.hset = AsyncMock(return_value=1)
    client.hget = AsyncMock(return_value=None)
    client.lrange = AsyncMock(return_value=[])
    client.aclose = AsyncMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    client.pipeline.return_value.__aenter__.return_value = pipe
    return client


def make_queue(client):
    return RedisTaskQueue("redis://stub", name="test-q", client=client)


async def test_connect_pings():
    client = stub_client()
    await make_queue(client).connect()
    client.ping.assert_awaited_once()


async def test_unreachable_redis_raises_broker_unavailable():
    client = stub_client()
    client.ping.side_effect = RedisConnectionError("Connection refused")

    with pytest.raises(BrokerUnavailableException) as exc_info:
        await make_queue(client).connect()

    assert "Connection refused" in exc_info.value.message


async def test_reserve_returns_job_record():
    job = Job(name="run-automation", data={"ticket_id": "TCK-1", "trigger": "TICKET_CREATED"}, max_attempts=3)
    client = stub_client()
    client.blmove.return_value = job.id
    client.hgetall.return_value = job.to_mapping()

    reserved = await make_queue(client).reserve(1.0)

    assert reserved.id == job.id
    assert reserved.data == {"ticket_id": "TCK-1", "trigger": "TICKET_CREATED"}
    client.blmove.assert_awaited_once_with("test-q:wait", "test-q:active", 1.0, "RIGHT", "LEFT")
    assert client.hset.await_args.args[:2] == (f"test-q:job:{job.id}", "reserved_at")


async def test_reserve_drops_ids_without_a_record():
    client = stub_client()
    client.blmove.return_value = "gone"

    assert await make_queue(client).reserve(1.0) is None
    client.lrem.assert_awaited_once_with("test-q:active", 1, "gone")


async def test_unreadable_record_is_moved_to_failed():
    client = stub_client()
    client.blmove.return_value = "broken"
    client.hgetall.return_value = {"name": "run-automation"}
    pipe = client.pipeline.return_value.__aenter__.return_value

    assert await make_queue(client).reserve(1.0) is None
    pipe.lrem.assert_called_once_with("test-q:active", 1, "broken")
    pipe.lpush.assert_called_once_with("test-q:failed", "broken")


async def test_recover_stalled_requeues_only_old_reservations():
    client = stub_client()
    client.lrange.return_value = ["old", "fresh", "unmarked"]
    now_ms = int(time.time() * 1000)
    client.hget.side_effect = [str(now_ms - 600_000), str(now_ms), None]

    assert await make_queue(client).recover_stalled(300_000) == 2

    assert [c.args for c in client.lpush.await_args_list] == [
        ("test-q:wait", "old"),
        ("test-q:wait", "unmarked"),
    ]


async def test_retry_keeps_narrowed_job_data():
    client = stub_client()
    job = Job(name="run-automation", data={"ticket_id": "TCK-1", "rule_ids": ["r2"]}, max_attempts=3)
    pipe = client.pipeline.return_value.__aenter__.return_value

    await make_queue(client).retry_later(job, 10_000, "write conflict")

    mapping = pipe.hset.call_args.kwargs["mapping"]
    assert json.loads(mapping["data"]) == {"ticket_id": "TCK-1", "rule_ids": ["r2"]}


async def test_promote_moves_due_jobs_once():
    client = stub_client()
    client.zrangebyscore.return_value = ["a", "b"]
    client.zrem.side_effect = [1, 0]

    assert await make_queue(client).promote_delayed() == 1
    client.lpush.assert_awaited_once_with("test-q:wait", "a")


async def test_dispatcher_degrades_when_redis_is_down():
    client = stub_client()
    client.ping.side_effect = RedisConnectionError("Connection refused")
    connection = BrokerConnection(make_queue(client), max_reconnects=5, sleep=no_sleep)
    engine = RuleEngineService(FakeTicketGateway(make_snapshot()), FakeRuleRepository())
    dispatcher = AutomationDispatcher(engine, DispatcherStateHolder(), connection=connection)

    await dispatcher.start()

    assert dispatcher.state is DispatcherState.DEGRADED
    assert client.ping.await_count == 6
