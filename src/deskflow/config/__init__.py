"""
Configuration Module
====================

Application settings and configuration management using Pydantic.

Environment-driven settings live in ``Settings``; the SLA policy set,
business hours and at-risk threshold are loaded from YAML by the SLA
infrastructure layer (see ``deskflow.sla.infrastructure.external``).
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="deskflow", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/deskflow",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Automation Queue ==========
    automation_queue_enabled: bool = Field(
        default=True,
        description="Push automation work onto the Redis queue; false runs everything inline"
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL backing the automation task queue"
    )
    automation_queue_name: str = Field(
        default="automation-tasks",
        description="Key prefix for the automation queue"
    )
    automation_worker_concurrency: int = Field(
        default=5,
        description="Max automation jobs processed at once per process",
        ge=1
    )
    automation_job_attempts: int = Field(
        default=3,
        description="Total attempts per queued automation job",
        ge=1
    )
    automation_job_backoff_ms: int = Field(
        default=10_000,
        description="First retry delay; doubles on each further attempt",
        ge=0
    )
    automation_keep_completed: int = Field(
        default=100,
        description="Completed job records retained for inspection",
        ge=0
    )
    automation_keep_failed: int = Field(
        default=500,
        description="Failed job records retained for inspection",
        ge=0
    )
    automation_poll_timeout_seconds: int = Field(
        default=1,
        description="Blocking pop timeout used by queue workers",
        ge=1
    )
    automation_stalled_after_seconds: int = Field(
        default=300,
        description="Active jobs reserved longer ago than this are requeued when workers start",
        ge=1
    )
    automation_sla_dedupe_hours: int = Field(
        default=24,
        description="An SLA-triggered rule runs at most once per ticket and trigger in this window",
        ge=0
    )
    broker_reconnect_attempts: int = Field(
        default=5,
        description="Reconnect attempts before the dispatcher degrades to inline",
        ge=0
    )
    broker_reconnect_base_ms: int = Field(
        default=500,
        description="Reconnect delay step (attempt * step)",
        ge=0
    )
    broker_reconnect_cap_ms: int = Field(
        default=5_000,
        description="Upper bound for a single reconnect delay",
        ge=0
    )

    # ========== SLA Configuration ==========
    sla_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to SLA policy / business hours YAML file"
    )
    sla_evaluation_interval: int = Field(
        default=60,
        description="Seconds between SLA threshold sweeps (0 disables the scheduler)",
        ge=0
    )
    sla_sweep_batch_size: int = Field(
        default=100,
        description="Max SLA instances examined per sweep",
        ge=1
    )

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for SLA threshold notifications"
    )
    slack_channel: str = Field(
        default="#support-sla",
        description="Slack channel for SLA notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )
    web_app_url: str = Field(
        default="http://localhost:5173",
        description="Base URL used to build ticket links in notifications"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "test", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class Trigger(str, Enum):
    """Ticket lifecycle events that make automation rules eligible."""
    TICKET_CREATED = "TICKET_CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    SLA_APPROACHING = "SLA_APPROACHING"
    SLA_BREACHED = "SLA_BREACHED"


class TicketPriority(str, Enum):
    """Ticket priority levels; P1 is the most severe."""
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"

    @property
    def severity(self) -> int:
        """Higher number means more urgent (P1 -> 4, P4 -> 1)."""
        return 5 - int(self.value[1])


class TicketStatus(str, Enum):
    """Ticket lifecycle statuses."""
    NEW = "NEW"
    TRIAGED = "TRIAGED"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING_ON_REQUESTER = "WAITING_ON_REQUESTER"
    WAITING_ON_VENDOR = "WAITING_ON_VENDOR"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"
    REOPENED = "REOPENED"


class SubClock(str, Enum):
    """The two independently tracked SLA timers."""
    FIRST_RESPONSE = "first_response"
    RESOLUTION = "resolution"


class ThresholdKind(str, Enum):
    """SLA threshold crossings reported to the notification collaborator."""
    AT_RISK = "at_risk"
    BREACHED = "breached"


class SLAState(str, Enum):
    """SLA sub-clock states."""
    RUNNING = "running"
    PAUSED = "paused"
    MET = "met"
    BREACHED = "breached"


class DispatcherState(str, Enum):
    """Automation dispatcher modes."""
    ENABLED = "enabled"
    DEGRADED = "degraded"


# ========== Lists for validation ==========

VALID_TRIGGERS = [t.value for t in Trigger]
VALID_PRIORITIES = [p.value for p in TicketPriority]
VALID_STATUSES = [s.value for s in TicketStatus]

WAITING_STATUSES = frozenset({
    TicketStatus.WAITING_ON_REQUESTER,
    TicketStatus.WAITING_ON_VENDOR,
})
COMPLETED_STATUSES = frozenset({
    TicketStatus.RESOLVED,
    TicketStatus.CLOSED,
})

SLA_TRIGGER_FOR_KIND = {
    ThresholdKind.AT_RISK: Trigger.SLA_APPROACHING,
    ThresholdKind.BREACHED: Trigger.SLA_BREACHED,
}
