"""
Automation Controllers (API Routes)
====================================

FastAPI routes for the automation engine.

Controllers are thin - they delegate to the dispatcher and rule engine
held on ``app.state`` (wired in ``deskflow.main``).
"""

from fastapi import APIRouter, Depends, Request, status

from deskflow.automation.application import (
    AutomationDispatcher,
    DispatcherStatusResponse,
    IntentResponse,
    RuleDefinitionDTO,
    RuleEngineService,
    RuleTestRequest,
    RuleTestResponse,
    RuleValidationResponse,
    SubmitAutomationRequest,
    SubmitAutomationResponse,
    rule_to_validation_response,
)
from deskflow.config import Trigger
from deskflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/automation", tags=["Automation"])


# ========== Example payloads for Swagger ==========

RULE_EXAMPLE = {
    "name": "Route P1 tickets to the VIP team",
    "trigger": "TICKET_CREATED",
    "conditions": {
        "and": [
            {"field": "priority", "operator": "equals", "value": "P1"},
            {"field": "channel", "operator": "in", "value": ["email", "portal"]},
        ]
    },
    "actions": [{"type": "assign_team", "teamId": "vip-team"}],
    "priority": 10,
    "is_active": True,
    "team_id": None,
}


# ========== Dependencies ==========

def get_dispatcher(request: Request) -> AutomationDispatcher:
    """Dispatcher created at startup."""
    return request.app.state.dispatcher


def get_rule_engine(request: Request) -> RuleEngineService:
    """Rule engine created at startup."""
    return request.app.state.rule_engine


# ========== Route Handlers ==========

@router.post(
    "/events",
    response_model=SubmitAutomationResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a ticket event for automation",
    description="""
    Fire-and-forget hand-over of a ticket lifecycle event.

    When the queue is healthy the work is enqueued; when the dispatcher is
    degraded it runs inline before the response is returned.
    """,
)
async def submit_event(
    body: SubmitAutomationRequest,
    dispatcher: AutomationDispatcher = Depends(get_dispatcher),
):
    await dispatcher.submit_automation(body.ticket_id, Trigger(body.trigger))
    return SubmitAutomationResponse(
        ticket_id=body.ticket_id,
        trigger=body.trigger,
        dispatcher_state=dispatcher.state.value,
    )


@router.post(
    "/rules/validate",
    response_model=RuleValidationResponse,
    summary="Validate a rule definition",
    description="""
    Strictly parse a rule: unknown condition fields, operators or action
    types are rejected with 422 instead of degrading at run time.
    """,
    responses={200: {"content": {"application/json": {"example": RULE_EXAMPLE}}}},
)
async def validate_rule(body: RuleDefinitionDTO):
    rule = body.to_domain(strict=True)
    return rule_to_validation_response(rule)


@router.post(
    "/rules/{rule_id}/test",
    response_model=RuleTestResponse,
    summary="Dry-run a rule against a ticket",
    description="Evaluate a stored rule and list the changes it would make. Nothing is written.",
    responses={404: {"description": "Rule or ticket not found"}},
)
async def test_rule(
    rule_id: str,
    body: RuleTestRequest,
    engine: RuleEngineService = Depends(get_rule_engine),
):
    result = await engine.test_rule(rule_id, body.ticket_id)
    return RuleTestResponse(
        rule_id=result.rule_id,
        ticket_id=result.ticket_id,
        matched=result.matched,
        actions=[IntentResponse.from_intent(intent) for intent in result.intents],
    )


@router.get(
    "/dispatcher",
    response_model=DispatcherStatusResponse,
    summary="Dispatcher state",
    description="Current ENABLED/DEGRADED state and, when reachable, queue counts.",
)
async def dispatcher_status(dispatcher: AutomationDispatcher = Depends(get_dispatcher)):
    return DispatcherStatusResponse(**await dispatcher.describe())


automation_router = router
