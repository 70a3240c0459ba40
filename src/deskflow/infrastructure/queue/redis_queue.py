"""
Redis Task Queue
================

``TaskQueue`` on top of redis.asyncio.

Key layout (``<name>`` is the configured queue name):

    <name>:wait        LIST   job ids ready to run (LPUSH in, BLMOVE out)
    <name>:active      LIST   job ids reserved by a worker
    <name>:delayed     ZSET   job ids waiting for a retry, scored by due epoch ms
    <name>:completed   LIST   most recent completed job ids (bounded)
    <name>:failed      LIST   most recent failed job ids (bounded)
    <name>:job:<id>    HASH   job record (``reserved_at`` set on each reservation)
"""

import json
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from redis.asyncio import Redis, from_url as redis_from_url
from redis.exceptions import RedisError

from deskflow.core import BrokerUnavailableException
from deskflow.infrastructure.queue.base import Job, TaskQueue
from deskflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def _broker_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except (RedisError, OSError) as e:
        raise BrokerUnavailableException(f"{operation} failed: {e}") from e


class RedisTaskQueue(TaskQueue):
    """
    Durable job queue stored in Redis.

    Finished job records are retained for inspection up to
    ``keep_completed`` / ``keep_failed`` entries; older ones are deleted.
    """

    def __init__(
        self,
        url: str,
        name: str = "automation-tasks",
        keep_completed: int = 100,
        keep_failed: int = 500,
        client: Optional[Redis] = None,
    ):
        self._url = url
        self._name = name
        self._keep_completed = keep_completed
        self._keep_failed = keep_failed
        self._client = client

    # ========== Keys ==========

    @property
    def wait_key(self) -> str:
        return f"{self._name}:wait"

    @property
    def active_key(self) -> str:
        return f"{self._name}:active"

    @property
    def delayed_key(self) -> str:
        return f"{self._name}:delayed"

    @property
    def completed_key(self) -> str:
        return f"{self._name}:completed"

    @property
    def failed_key(self) -> str:
        return f"{self._name}:failed"

    def job_key(self, job_id: str) -> str:
        return f"{self._name}:job:{job_id}"

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise BrokerUnavailableException("Redis client not connected")
        return self._client

    # ========== TaskQueue ==========

    async def connect(self) -> None:
        async with _broker_errors("Redis connect"):
            if self._client is None:
                self._client = redis_from_url(
                    self._url, encoding="utf-8", decode_responses=True
                )
            await self._client.ping()

    async def add(self, name: str, data: Dict[str, Any], max_attempts: int) -> Job:
        job = Job(name=name, data=data, max_attempts=max_attempts)
        async with _broker_errors("Redis enqueue"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self.job_key(job.id), mapping=job.to_mapping())
                pipe.lpush(self.wait_key, job.id)
                await pipe.execute()

        logger.debug(
            "Job enqueued",
            extra={"queue": self._name, "job_id": job.id, "job_name": name}
        )
        return job

    async def reserve(self, timeout: float) -> Optional[Job]:
        async with _broker_errors("Redis reserve"):
            job_id = await self.client.blmove(
                self.wait_key, self.active_key, timeout, "RIGHT", "LEFT"
            )
            if job_id is None:
                return None

            raw = await self.client.hgetall(self.job_key(job_id))
            if not raw:
                # record was trimmed or deleted while queued
                await self.client.lrem(self.active_key, 1, job_id)
                return None

            try:
                job = Job.from_mapping(raw)
            except (KeyError, ValueError) as e:
                logger.error(
                    "Unreadable job record moved to failed",
                    extra={"queue": self._name, "job_id": job_id, "error": str(e)}
                )
                async with self.client.pipeline(transaction=True) as pipe:
                    pipe.hset(self.job_key(job_id), mapping={"last_error": f"unreadable record: {e}"})
                    pipe.lrem(self.active_key, 1, job_id)
                    pipe.lpush(self.failed_key, job_id)
                    await pipe.execute()
                return None

            await self.client.hset(
                self.job_key(job_id), "reserved_at", str(int(time.time() * 1000))
            )
        return job

    async def complete(self, job: Job) -> None:
        await self._finish(job, self.completed_key, self._keep_completed, {
            "finished_at": datetime.now(timezone.utc).isoformat(),
            "attempts_made": str(job.attempts_made),
        })

    async def fail(self, job: Job, error: str) -> None:
        await self._finish(job, self.failed_key, self._keep_failed, {
            "failed_at": datetime.now(timezone.utc).isoformat(),
            "attempts_made": str(job.attempts_made),
            "last_error": error,
        })

    async def retry_later(self, job: Job, delay_ms: int, error: str) -> None:
        due_ms = int(time.time() * 1000) + delay_ms
        async with _broker_errors("Redis retry"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self.job_key(job.id), mapping={
                    "data": json.dumps(job.data),
                    "attempts_made": str(job.attempts_made),
                    "last_error": error,
                })
                pipe.lrem(self.active_key, 1, job.id)
                pipe.zadd(self.delayed_key, {job.id: due_ms})
                await pipe.execute()

    async def recover_stalled(self, stalled_after_ms: int) -> int:
        recovered = 0
        cutoff_ms = int(time.time() * 1000) - stalled_after_ms
        async with _broker_errors("Redis stalled recovery"):
            for job_id in await self.client.lrange(self.active_key, 0, -1):
                reserved_at = await self.client.hget(self.job_key(job_id), "reserved_at")
                if reserved_at is not None and int(reserved_at) > cutoff_ms:
                    continue
                # only the caller whose LREM succeeds moves the job
                if await self.client.lrem(self.active_key, 1, job_id):
                    await self.client.lpush(self.wait_key, job_id)
                    recovered += 1
        if recovered:
            logger.warning(
                "Stalled jobs returned to the wait list",
                extra={"queue": self._name, "recovered": recovered}
            )
        return recovered

    async def promote_delayed(self) -> int:
        now_ms = int(time.time() * 1000)
        promoted = 0
        async with _broker_errors("Redis promote"):
            due_ids = await self.client.zrangebyscore(self.delayed_key, 0, now_ms)
            for job_id in due_ids:
                # only the worker whose ZREM succeeds moves the job
                if await self.client.zrem(self.delayed_key, job_id):
                    await self.client.lpush(self.wait_key, job_id)
                    promoted += 1
        return promoted

    async def counts(self) -> Dict[str, int]:
        async with _broker_errors("Redis counts"):
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.llen(self.wait_key)
                pipe.llen(self.active_key)
                pipe.zcard(self.delayed_key)
                pipe.llen(self.completed_key)
                pipe.llen(self.failed_key)
                waiting, active, delayed, completed, failed = await pipe.execute()
        return {
            "waiting": waiting,
            "active": active,
            "delayed": delayed,
            "completed": completed,
            "failed": failed,
        }

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _finish(self, job: Job, list_key: str, keep: int, fields: Dict[str, str]) -> None:
        async with _broker_errors("Redis finish"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self.job_key(job.id), mapping=fields)
                pipe.lrem(self.active_key, 1, job.id)
                pipe.lpush(list_key, job.id)
                await pipe.execute()

            evicted = await self.client.lrange(list_key, keep, -1)
            if evicted:
                async with self.client.pipeline(transaction=True) as pipe:
                    if keep > 0:
                        pipe.ltrim(list_key, 0, keep - 1)
                    else:
                        pipe.delete(list_key)
                    pipe.delete(*(self.job_key(job_id) for job_id in evicted))
                    await pipe.execute()
