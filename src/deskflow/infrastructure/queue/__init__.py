"""
Queue Infrastructure
====================

Durable task queue backing automation dispatch.
"""

from deskflow.infrastructure.queue.base import Job, TaskQueue
from deskflow.infrastructure.queue.connection import BrokerConnection, reconnect_delay
from deskflow.infrastructure.queue.redis_queue import RedisTaskQueue

__all__ = [
    "BrokerConnection",
    "Job",
    "RedisTaskQueue",
    "TaskQueue",
    "reconnect_delay",
]
