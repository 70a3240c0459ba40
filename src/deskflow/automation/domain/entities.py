"""
Automation Domain Entities
===========================

Pure Python entities the rule engine works on: the read-only ticket
snapshot handed over by the ticket store and the automation rule itself.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Tuple

from deskflow.config import TicketPriority, TicketStatus, Trigger


@dataclass(frozen=True)
class TicketSnapshot:
    """
    Point-in-time projection of a ticket.

    Produced by a single read of the ticket store so that every rule in a
    dispatch sees the same, internally consistent state.
    """

    id: str
    subject: str
    priority: TicketPriority
    status: TicketStatus
    requester_id: str
    description: str = ""
    team_id: Optional[str] = None
    assignee_id: Optional[str] = None
    category_id: Optional[str] = None
    channel: Optional[str] = None
    tags: Tuple[str, ...] = ()
    custom_field_values: Mapping[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class AutomationRule:
    """
    Declarative automation rule.

    Created and edited by administrators; the engine only reads it.
    A rule with ``team_scope`` set matches only tickets of that team.
    """

    id: str
    name: str
    trigger: Trigger
    condition: Any  # ConditionNode
    actions: Tuple[Any, ...] = ()  # AutomationAction
    priority: int = 0
    is_active: bool = True
    team_scope: Optional[str] = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    created_by_id: Optional[str] = None

    def applies_to_team(self, team_id: Optional[str]) -> bool:
        """Team-scoped rules only match tickets assigned to that team."""
        return self.team_scope is None or self.team_scope == team_id


@dataclass(frozen=True)
class AutomationExecution:
    """Audit record of one rule evaluated during a dispatch."""

    rule_id: str
    ticket_id: str
    trigger: Trigger
    matched: bool
    success: bool
    actions_applied: Tuple[str, ...] = ()
    error: Optional[str] = None
    executed_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
