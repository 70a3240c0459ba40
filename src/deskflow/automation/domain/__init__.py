"""
Automation Domain Layer
=======================

Pure rule-engine logic: condition trees, actions/intents and rule selection.
No I/O.
"""

from deskflow.automation.domain.actions import (
    ActionExecutor,
    AddInternalNote,
    AssignTeam,
    AssignUser,
    MutationIntent,
    NotifyTeamLead,
    SetPriority,
    SetStatus,
    SideEffectRequest,
    UnsupportedAction,
    parse_action,
    register_action_type,
    registered_action_kinds,
)
from deskflow.automation.domain.conditions import (
    And,
    FieldRef,
    Leaf,
    Operator,
    Or,
    TicketField,
    condition_to_dict,
    evaluate,
    parse_condition,
)
from deskflow.automation.domain.entities import (
    AutomationExecution,
    AutomationRule,
    TicketSnapshot,
)
from deskflow.automation.domain.selector import select_rules

__all__ = [
    "ActionExecutor",
    "AddInternalNote",
    "And",
    "AssignTeam",
    "AssignUser",
    "AutomationExecution",
    "AutomationRule",
    "FieldRef",
    "Leaf",
    "MutationIntent",
    "NotifyTeamLead",
    "Operator",
    "Or",
    "SetPriority",
    "SetStatus",
    "SideEffectRequest",
    "TicketField",
    "TicketSnapshot",
    "UnsupportedAction",
    "condition_to_dict",
    "evaluate",
    "parse_action",
    "parse_condition",
    "register_action_type",
    "registered_action_kinds",
    "select_rules",
]
