"""
Rule Selector
=============

Picks the rules eligible for a trigger and orders them for execution.
"""

from typing import Iterable, List

from deskflow.automation.domain.entities import AutomationRule, TicketSnapshot
from deskflow.config import Trigger


def select_rules(
    trigger: Trigger,
    rules: Iterable[AutomationRule],
    snapshot: TicketSnapshot,
) -> List[AutomationRule]:
    """
    Filter rules by active flag, trigger and team scope, then sort them.

    Lower ``priority`` runs first; ties fall back to creation order and
    then rule id so that every dispatch sees the same sequence. Every
    returned rule is evaluated: this is not first-match-wins.
    """
    eligible = [
        rule for rule in rules
        if rule.is_active
        and rule.trigger == trigger
        and rule.applies_to_team(snapshot.team_id)
    ]
    return sorted(eligible, key=lambda r: (r.priority, r.created_at, r.id))
