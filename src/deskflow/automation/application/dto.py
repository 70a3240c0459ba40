"""
Automation Application DTOs
============================

Pydantic models for the automation API and for turning stored rule
definitions into domain rules.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from deskflow.automation.domain import (
    AutomationRule,
    MutationIntent,
    condition_to_dict,
    parse_action,
    parse_condition,
)
from deskflow.config import Trigger

TriggerStr = Literal["TICKET_CREATED", "STATUS_CHANGED", "SLA_APPROACHING", "SLA_BREACHED"]
DispatcherStateStr = Literal["enabled", "degraded"]


# ========== Request DTOs ==========

class SubmitAutomationRequest(BaseModel):
    """A ticket lifecycle event to run automation for."""
    ticket_id: str = Field(..., min_length=1, description="Ticket ID")
    trigger: TriggerStr = Field(..., description="Lifecycle event type")


class RuleDefinitionDTO(BaseModel):
    """Automation rule as authored by administrators."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    trigger: TriggerStr
    conditions: Any = Field(default_factory=dict, description="Condition tree (JSON)")
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    priority: int = Field(default=0, description="Lower runs first")
    is_active: bool = True
    team_id: Optional[str] = Field(None, description="Team scope; null applies to all teams")
    created_by_id: Optional[str] = None

    def to_domain(
        self,
        rule_id: str = "draft",
        created_at: Optional[datetime] = None,
        strict: bool = True,
    ) -> AutomationRule:
        """
        Build the domain rule.

        ``strict`` rejects unknown fields, operators and action types with
        ValidationException; lenient parsing keeps them as parts that
        evaluate False / execute as no-ops.
        """
        return AutomationRule(
            id=rule_id,
            name=self.name,
            trigger=Trigger(self.trigger),
            condition=parse_condition(self.conditions or {"and": []}, strict=strict),
            actions=tuple(parse_action(a, strict=strict) for a in self.actions),
            priority=self.priority,
            is_active=self.is_active,
            team_scope=self.team_id,
            created_at=created_at or datetime.now(timezone.utc),
            created_by_id=self.created_by_id,
        )


class RuleTestRequest(BaseModel):
    ticket_id: str = Field(..., min_length=1)


# ========== Response DTOs ==========

class RuleValidationResponse(BaseModel):
    valid: bool
    trigger: TriggerStr
    conditions: Any = Field(..., description="Normalized condition tree")
    actions: List[Dict[str, Any]]


class IntentResponse(BaseModel):
    action_kind: str
    changes: Dict[str, Any] = Field(default_factory=dict)
    side_effects: List[Dict[str, Any]] = Field(default_factory=list)
    is_noop: bool

    @classmethod
    def from_intent(cls, intent: MutationIntent) -> "IntentResponse":
        return cls(
            action_kind=intent.action_kind,
            changes={k: getattr(v, "value", v) for k, v in intent.changes.items()},
            side_effects=[{"kind": s.kind, **s.payload} for s in intent.side_effects],
            is_noop=intent.is_noop,
        )


class RuleTestResponse(BaseModel):
    rule_id: str
    ticket_id: str
    matched: bool
    actions: List[IntentResponse] = Field(default_factory=list)


class SubmitAutomationResponse(BaseModel):
    accepted: bool = True
    ticket_id: str
    trigger: TriggerStr
    dispatcher_state: DispatcherStateStr


class DispatcherStatusResponse(BaseModel):
    state: DispatcherStateStr
    reason: Optional[str] = None
    queue: Optional[Dict[str, int]] = None


def rule_to_validation_response(rule: AutomationRule) -> RuleValidationResponse:
    return RuleValidationResponse(
        valid=True,
        trigger=rule.trigger.value,
        conditions=condition_to_dict(rule.condition),
        actions=[action.to_payload() for action in rule.actions],
    )
