"""
Broker Connection
=================

The single shared broker connection of a process. Reconnect attempts are
serialized behind one lock and spaced by a capped linear backoff; once the
reconnect budget is spent the connection stays unavailable until restart.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from deskflow.core import BrokerUnavailableException
from deskflow.infrastructure.queue.base import TaskQueue
from deskflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def reconnect_delay(attempt: int, base_ms: int, cap_ms: int) -> float:
    """Seconds to wait before reconnect ``attempt`` (1-based)."""
    return min(attempt * base_ms, cap_ms) / 1000


class BrokerConnection:
    """
    Guards a ``TaskQueue`` connection.

    Args:
        queue: Queue whose ``connect`` opens the broker connection
        max_reconnects: Reconnect attempts after the first failure
        base_delay_ms: Delay step per attempt
        cap_delay_ms: Upper bound on a single delay
    """

    def __init__(
        self,
        queue: TaskQueue,
        max_reconnects: int = 5,
        base_delay_ms: int = 500,
        cap_delay_ms: int = 5000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._queue = queue
        self._max_reconnects = max_reconnects
        self._base_delay_ms = base_delay_ms
        self._cap_delay_ms = cap_delay_ms
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._connected = False
        self._exhausted = False

    @property
    def queue(self) -> TaskQueue:
        return self._queue

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_exhausted(self) -> bool:
        return self._exhausted

    async def connect(self) -> None:
        """
        Establish the connection, retrying within the reconnect budget.

        Raises:
            BrokerUnavailableException: when every attempt failed, now or earlier
        """
        async with self._lock:
            if self._connected:
                return
            if self._exhausted:
                raise BrokerUnavailableException("Reconnect budget already exhausted")

            last_error: Optional[BrokerUnavailableException] = None
            for attempt in range(self._max_reconnects + 1):
                if attempt:
                    delay = reconnect_delay(attempt, self._base_delay_ms, self._cap_delay_ms)
                    logger.warning(
                        "Broker connection failed, retrying",
                        extra={
                            "attempt": attempt,
                            "max_attempts": self._max_reconnects,
                            "delay_seconds": delay,
                            "error": last_error.message if last_error else None,
                        }
                    )
                    await self._sleep(delay)
                try:
                    await self._queue.connect()
                except BrokerUnavailableException as e:
                    last_error = e
                    continue

                self._connected = True
                logger.info("Broker connected", extra={"attempt": attempt})
                return

            self._exhausted = True
            raise BrokerUnavailableException(
                f"Broker unreachable after {self._max_reconnects} reconnect attempts: "
                f"{last_error.message if last_error else 'unknown error'}"
            )

    async def run(self, operation: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Run a queue operation, reconnecting once if the connection dropped.

        Raises:
            BrokerUnavailableException: when reconnecting fails
        """
        await self.connect()
        try:
            return await operation(*args, **kwargs)
        except BrokerUnavailableException as e:
            logger.warning("Broker connection lost", extra={"error": e.message})
            self._connected = False
            await self.connect()
            return await operation(*args, **kwargs)

    async def close(self) -> None:
        async with self._lock:
            await self._queue.close()
            self._connected = False
