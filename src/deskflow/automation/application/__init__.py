"""
Automation Application Layer
=============================

Rule engine service, dispatcher, ports and DTOs.
"""

from deskflow.automation.application.dispatcher import (
    AUTOMATION_JOB_NAME,
    AutomationDispatcher,
    Dispatch,
    DispatcherStateHolder,
    InlineDispatch,
    JobWorker,
    QueuedDispatch,
    make_job_handler,
)
from deskflow.automation.application.dto import (
    DispatcherStatusResponse,
    IntentResponse,
    RuleDefinitionDTO,
    RuleTestRequest,
    RuleTestResponse,
    RuleValidationResponse,
    SubmitAutomationRequest,
    SubmitAutomationResponse,
    rule_to_validation_response,
)
from deskflow.automation.application.services import (
    DispatchReport,
    IAutomationExecutionRepository,
    IRuleRepository,
    ISlaClockSync,
    ITicketGateway,
    MutationResult,
    RuleEngineService,
    RuleOutcome,
    RuleTestResult,
)

__all__ = [
    "AUTOMATION_JOB_NAME",
    "AutomationDispatcher",
    "Dispatch",
    "DispatchReport",
    "DispatcherStateHolder",
    "DispatcherStatusResponse",
    "IAutomationExecutionRepository",
    "IRuleRepository",
    "ISlaClockSync",
    "ITicketGateway",
    "InlineDispatch",
    "IntentResponse",
    "JobWorker",
    "MutationResult",
    "QueuedDispatch",
    "RuleDefinitionDTO",
    "RuleEngineService",
    "RuleOutcome",
    "RuleTestRequest",
    "RuleTestResponse",
    "RuleTestResult",
    "RuleValidationResponse",
    "SubmitAutomationRequest",
    "SubmitAutomationResponse",
    "make_job_handler",
    "rule_to_validation_response",
]
