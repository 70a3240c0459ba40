"""
SLA External Service Integrations
==================================

External services for SLA tracking:
- YAML policy file with watchdog hot reload
- Slack webhook notifications
- APScheduler for the periodic threshold sweep
"""

import asyncio
import hashlib
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from deskflow.config import SubClock, ThresholdKind, TicketPriority, settings
from deskflow.core import ConfigurationException
from deskflow.shared.infrastructure.logging import get_logger
from deskflow.sla.application import ISlaNotifier, ISlaPolicyProvider
from deskflow.sla.domain import BusinessHoursSchedule, SlaPolicy, SlaPolicyConfig

logger = get_logger(__name__)

DEFAULT_SCHEDULE_VERSION = "defaults"


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for SLA config file changes."""

    def __init__(self, config_manager: "SLAConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def _matches(self, path) -> bool:
        return Path(path).resolve() == self.config_path.resolve()

    def on_modified(self, event):
        if event.is_directory or not self._matches(event.src_path):
            return
        logger.info("SLA config file changed", extra={"path": str(event.src_path)})
        self.config_manager.reload()

    def on_created(self, event):
        # editors that save by rename surface as a create
        self.on_modified(event)


class SLAConfigManager(ISlaPolicyProvider):
    """
    Thread-safe SLA policy provider with hot-reload support.

    The YAML file holds the default targets, team overrides, business
    hours and the at-risk threshold. Each successful load is stamped with
    a version derived from the file contents; instances record the
    version their due dates were computed under.

    A reload that fails to parse or validate is logged and the previous
    configuration stays in effect.
    """

    def __init__(self):
        self._config: Optional[SlaPolicyConfig] = None
        self._schedule: Optional[BusinessHoursSchedule] = None
        self._version: Optional[str] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> SlaPolicyConfig:
        """
        Initial configuration load.

        Raises:
            ConfigurationException: the file exists but is invalid
        """
        self._path = Path(path)
        config, version = self._load_from_file(self._path)
        self._swap(config, version)
        return config

    def load_mapping(self, data: Dict[str, Any], version: str = "inline") -> SlaPolicyConfig:
        """Install a configuration from an already-parsed mapping."""
        try:
            config = SlaPolicyConfig(**data)
        except ValidationError as e:
            raise ConfigurationException(f"Invalid SLA configuration: {e}") from e
        self._swap(config, version)
        return config

    def _load_from_file(self, path: Path):
        if not path.exists():
            logger.warning("SLA config file not found, using defaults", extra={"path": str(path)})
            return SlaPolicyConfig(), DEFAULT_SCHEDULE_VERSION

        raw = path.read_bytes()
        try:
            data = yaml.safe_load(raw) or {}
            config = SlaPolicyConfig(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigurationException(f"Invalid SLA configuration in {path}: {e}") from e
        return config, hashlib.sha256(raw).hexdigest()[:12]

    def _swap(self, config: SlaPolicyConfig, version: str) -> None:
        schedule = config.business_hours.to_schedule(version)
        with self._lock:
            self._config = config
            self._schedule = schedule
            self._version = version

    def reload(self) -> bool:
        """Reload configuration from file; keeps the old one on error."""
        if self._path is None:
            return False

        try:
            config, version = self._load_from_file(self._path)
            self._swap(config, version)
        except ConfigurationException as e:
            logger.error(
                "Failed to reload SLA config, keeping previous version",
                extra={"path": str(self._path), "error": e.message, "version": self._version}
            )
            return False

        logger.info("SLA configuration reloaded", extra={"version": version})
        return True

    def start_watching(self) -> None:
        """
        Start watching the configuration file for changes.

        Skips watching when the file does not exist or the platform has
        no usable file notification backend.
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "SLA config file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Started watching SLA config file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning(
                "File watching not available, using static SLA config",
                extra={"error": str(e)}
            )
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    @property
    def config(self) -> SlaPolicyConfig:
        if self._config is None:
            raise RuntimeError("SLA configuration not loaded")
        return self._config

    @property
    def version(self) -> Optional[str]:
        return self._version

    # ---- ISlaPolicyProvider ----

    def get_sla_policy(self, team_id: Optional[str], priority: TicketPriority) -> SlaPolicy:
        return self.config.get_policy(team_id, priority)

    def get_business_hours_schedule(self) -> BusinessHoursSchedule:
        if self._schedule is None:
            raise RuntimeError("SLA configuration not loaded")
        return self._schedule

    def get_at_risk_fraction(self) -> float:
        return self.config.at_risk_fraction


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for the Slack webhook.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if self._clock() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


_SUB_CLOCK_LABELS = {
    SubClock.FIRST_RESPONSE: "First response",
    SubClock.RESOLUTION: "Resolution",
}


class SlackSlaNotifier(ISlaNotifier):
    """
    Slack webhook notifier with circuit breaker and retry logic.

    Delivery is best effort: exhausted retries and an open circuit are
    logged and the call returns normally.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        channel: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
    ):
        self._webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self._channel = channel or settings.slack_channel
        self._http_client = http_client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._max_retries = max_retries
        self._retry_base_seconds = retry_base_seconds

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.slack_timeout_seconds)
        return self._http_client

    def build_message(self, ticket_id: str, kind: ThresholdKind, sub_clock: SubClock) -> Dict[str, Any]:
        """Build a Slack Block Kit message."""
        breached = kind is ThresholdKind.BREACHED
        header_text = "SLA Breached" if breached else "SLA At Risk"
        status_text = "BREACHED" if breached else "AT RISK"
        ticket_url = f"{settings.web_app_url.rstrip('/')}/tickets/{ticket_id}"

        return {
            "channel": self._channel,
            "text": f"{header_text}: {ticket_id} ({_SUB_CLOCK_LABELS[sub_clock]})",
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": header_text}
                },
                {
                    "type": "section",
                    "fields": [
                        {"type": "mrkdwn", "text": f"*Ticket:*\n<{ticket_url}|{ticket_id}>"},
                        {"type": "mrkdwn", "text": f"*Clock:*\n{_SUB_CLOCK_LABELS[sub_clock]}"},
                        {"type": "mrkdwn", "text": f"*Status:*\n{status_text}"},
                    ]
                },
            ],
        }

    async def on_sla_threshold_crossed(
        self, ticket_id: str, kind: ThresholdKind, sub_clock: SubClock
    ) -> None:
        await self.send(ticket_id, kind, sub_clock)

    async def send(self, ticket_id: str, kind: ThresholdKind, sub_clock: SubClock) -> bool:
        """
        Post one notification.

        Returns:
            True if Slack accepted it
        """
        context = {"ticket_id": ticket_id, "kind": kind.value, "sub_clock": sub_clock.value}

        if not self._webhook_url:
            logger.debug("Slack webhook URL not configured, skipping notification", extra=context)
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning("Circuit breaker open, skipping Slack notification", extra=context)
            return False

        message = self.build_message(ticket_id, kind, sub_clock)

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=message)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info("Slack notification sent", extra=context)
                    return True

                logger.warning(
                    "Slack webhook returned non-200",
                    extra={**context, "status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                logger.error(
                    "Slack notification failed",
                    extra={**context, "error": str(e), "attempt": attempt + 1}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_base_seconds * 2 ** attempt)

        self._circuit_breaker.record_failure()
        return False

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


class LoggingSlaNotifier(ISlaNotifier):
    """Notifier used when no webhook is configured: writes the event to the log."""

    async def on_sla_threshold_crossed(
        self, ticket_id: str, kind: ThresholdKind, sub_clock: SubClock
    ) -> None:
        logger.warning(
            "SLA threshold crossed",
            extra={"ticket_id": ticket_id, "kind": kind.value, "sub_clock": sub_clock.value}
        )

    async def close(self) -> None:
        return None


class SLAScheduler:
    """
    Wrapper for APScheduler running the periodic SLA sweep.

    ``max_instances=1`` keeps a slow sweep from overlapping the next tick.
    """

    def __init__(self, interval_seconds: int = 60):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        if self._running:
            logger.warning("SLA scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="sla_sweep",
            name="SLA Threshold Sweep",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info("SLA scheduler started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if not self._running:
            return

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("SLA scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
