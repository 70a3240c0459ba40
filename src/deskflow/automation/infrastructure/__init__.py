"""
Automation Infrastructure Layer
================================

- Models: SQLAlchemy ORM models (ticket projection, rules, executions)
- Repositories: ticket gateway and rule/execution stores
- Worker: queue consumer pool
"""

from deskflow.automation.infrastructure.models import (
    AutomationExecutionModel,
    AutomationRuleModel,
    TicketActivityModel,
    TicketModel,
)
from deskflow.automation.infrastructure.repositories import (
    SQLAlchemyAutomationExecutionRepository,
    SQLAlchemyRuleRepository,
    SQLAlchemyTicketGateway,
)
from deskflow.automation.infrastructure.worker import QueueWorker, retry_delay_ms

__all__ = [
    "AutomationExecutionModel",
    "AutomationRuleModel",
    "QueueWorker",
    "SQLAlchemyAutomationExecutionRepository",
    "SQLAlchemyRuleRepository",
    "SQLAlchemyTicketGateway",
    "TicketActivityModel",
    "TicketModel",
    "retry_delay_ms",
]
