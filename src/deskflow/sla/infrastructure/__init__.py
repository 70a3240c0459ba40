"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for SLA tracking:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer
- External: YAML policy provider, Slack notifier, sweep scheduler
"""

from deskflow.sla.infrastructure.external import (
    CircuitBreaker,
    CircuitState,
    LoggingSlaNotifier,
    SLAConfigManager,
    SLAScheduler,
    SlackSlaNotifier,
)
from deskflow.sla.infrastructure.models import MARKER_COLUMNS, SlaInstanceModel
from deskflow.sla.infrastructure.repositories import SQLAlchemySlaInstanceRepository

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "LoggingSlaNotifier",
    "MARKER_COLUMNS",
    "SLAConfigManager",
    "SLAScheduler",
    "SQLAlchemySlaInstanceRepository",
    "SlackSlaNotifier",
    "SlaInstanceModel",
]
