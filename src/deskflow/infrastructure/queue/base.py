"""
Task Queue Abstractions
=======================

Broker-agnostic job record and queue port used by the automation
dispatcher and its workers.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4


@dataclass
class Job:
    """One queued unit of work and its retry bookkeeping."""

    name: str
    data: Dict[str, Any]
    max_attempts: int = 1
    attempts_made: int = 0
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_error: Optional[str] = None

    @property
    def has_attempts_left(self) -> bool:
        return self.attempts_made < self.max_attempts

    def to_mapping(self) -> Dict[str, str]:
        """Flat string mapping suitable for a Redis hash."""
        mapping = {
            "id": self.id,
            "name": self.name,
            "data": json.dumps(self.data),
            "max_attempts": str(self.max_attempts),
            "attempts_made": str(self.attempts_made),
            "created_at": self.created_at.isoformat(),
        }
        if self.last_error is not None:
            mapping["last_error"] = self.last_error
        return mapping

    @classmethod
    def from_mapping(cls, raw: Dict[str, str]) -> "Job":
        return cls(
            id=raw["id"],
            name=raw["name"],
            data=json.loads(raw.get("data") or "{}"),
            max_attempts=int(raw.get("max_attempts", 1)),
            attempts_made=int(raw.get("attempts_made", 0)),
            created_at=datetime.fromisoformat(raw["created_at"]),
            last_error=raw.get("last_error"),
        )


class TaskQueue(ABC):
    """
    Durable job queue.

    Implementations raise ``BrokerUnavailableException`` for any broker
    connectivity failure so callers can tell it apart from job errors.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open (or verify) the broker connection."""

    @abstractmethod
    async def add(self, name: str, data: Dict[str, Any], max_attempts: int) -> Job:
        """Enqueue a new job."""

    @abstractmethod
    async def reserve(self, timeout: float) -> Optional[Job]:
        """Move the next waiting job to active; None if the wait timed out."""

    @abstractmethod
    async def complete(self, job: Job) -> None:
        """Record success and drop the job from active."""

    @abstractmethod
    async def retry_later(self, job: Job, delay_ms: int, error: str) -> None:
        """Park the job as delayed until ``delay_ms`` has passed."""

    @abstractmethod
    async def fail(self, job: Job, error: str) -> None:
        """Record a permanent failure."""

    @abstractmethod
    async def promote_delayed(self) -> int:
        """Move delayed jobs whose time has come back to waiting."""

    @abstractmethod
    async def recover_stalled(self, stalled_after_ms: int) -> int:
        """
        Return active jobs reserved more than ``stalled_after_ms`` ago to
        waiting. Such jobs belong to a worker that died mid-job.
        """

    @abstractmethod
    async def counts(self) -> Dict[str, int]:
        """Job counts per state."""

    @abstractmethod
    async def close(self) -> None:
        """Release the broker connection."""
