"""
Automation Actions
==================

Actions are intents, not effects. ``ActionExecutor.apply`` turns an action
and a ticket snapshot into a ``MutationIntent``: the field changes and
side-effect requests the ticket store should apply in one transaction.
Nothing here touches storage.

New action kinds plug in through ``register_action_type`` (stored form)
and ``ActionExecutor.register`` (intent computation); the two extension
actions at the bottom of this module are wired exactly that way.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, Mapping, Optional, Tuple, Type

from deskflow.config import TicketPriority, TicketStatus
from deskflow.core import ValidationException
from deskflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Actions ==========

@dataclass(frozen=True)
class AssignTeam:
    team_id: str
    kind: ClassVar[str] = "assign_team"

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "AssignTeam":
        return cls(team_id=_required_str(data, "teamId", "team_id"))

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.kind, "teamId": self.team_id}


@dataclass(frozen=True)
class AssignUser:
    user_id: str
    kind: ClassVar[str] = "assign_user"

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "AssignUser":
        return cls(user_id=_required_str(data, "userId", "user_id"))

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.kind, "userId": self.user_id}


@dataclass(frozen=True)
class SetPriority:
    priority: TicketPriority
    kind: ClassVar[str] = "set_priority"

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "SetPriority":
        return cls(priority=TicketPriority(_required_str(data, "priority").upper()))

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.kind, "priority": self.priority.value}


@dataclass(frozen=True)
class SetStatus:
    status: TicketStatus
    kind: ClassVar[str] = "set_status"

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "SetStatus":
        return cls(status=TicketStatus(_required_str(data, "status").upper()))

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.kind, "status": self.status.value}


@dataclass(frozen=True)
class UnsupportedAction:
    """Stored action that could not be understood; always a no-op."""
    kind: str
    reason: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return dict(self.payload)


def _required_str(data: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise ValueError(f"action requires a non-empty '{keys[0]}'")


# ========== Intents ==========

@dataclass(frozen=True)
class SideEffectRequest:
    """Non-field work the ticket store performs with the mutation (note, notification)."""
    kind: str
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MutationIntent:
    """
    Desired ticket change produced by one action.

    ``changes`` maps snapshot attribute names to their new values,
    ``previous`` holds the snapshot values they replace.
    """

    ticket_id: str
    action_kind: str
    changes: Mapping[str, Any] = field(default_factory=dict)
    previous: Mapping[str, Any] = field(default_factory=dict)
    side_effects: Tuple[SideEffectRequest, ...] = ()

    @property
    def is_noop(self) -> bool:
        return not self.changes and not self.side_effects


ActionHandler = Callable[[Any, Any], MutationIntent]


def _set_field(snapshot: Any, kind: str, attribute: str, value: Any) -> MutationIntent:
    current = getattr(snapshot, attribute)
    if current == value:
        return MutationIntent(ticket_id=snapshot.id, action_kind=kind)
    return MutationIntent(
        ticket_id=snapshot.id,
        action_kind=kind,
        changes={attribute: value},
        previous={attribute: current},
    )


def _assign_team(snapshot: Any, action: AssignTeam) -> MutationIntent:
    if snapshot.team_id == action.team_id:
        return MutationIntent(ticket_id=snapshot.id, action_kind=action.kind)

    changes: Dict[str, Any] = {"team_id": action.team_id}
    previous: Dict[str, Any] = {"team_id": snapshot.team_id}
    # a new team starts unassigned
    if snapshot.assignee_id is not None:
        changes["assignee_id"] = None
        previous["assignee_id"] = snapshot.assignee_id
    return MutationIntent(
        ticket_id=snapshot.id,
        action_kind=action.kind,
        changes=changes,
        previous=previous,
    )


def _assign_user(snapshot: Any, action: AssignUser) -> MutationIntent:
    return _set_field(snapshot, action.kind, "assignee_id", action.user_id)


def _set_priority(snapshot: Any, action: SetPriority) -> MutationIntent:
    return _set_field(snapshot, action.kind, "priority", action.priority)


def _set_status(snapshot: Any, action: SetStatus) -> MutationIntent:
    return _set_field(snapshot, action.kind, "status", action.status)


# ========== Registry ==========

_ACTION_TYPES: Dict[str, Type[Any]] = {}


def register_action_type(kind: str, action_cls: Type[Any]) -> None:
    """Make an action kind parseable from its stored form."""
    _ACTION_TYPES[kind] = action_cls


def registered_action_kinds() -> Tuple[str, ...]:
    return tuple(sorted(_ACTION_TYPES))


def parse_action(data: Any, strict: bool = False) -> Any:
    """
    Build an action from its stored JSON form, e.g.
    ``{"type": "assign_team", "teamId": "vip-team"}``.

    In strict mode malformed actions raise ValidationException; otherwise
    they come back as ``UnsupportedAction`` and execute as no-ops.
    """
    if not isinstance(data, Mapping):
        if strict:
            raise ValidationException("Action must be an object", {"action": repr(data)})
        return UnsupportedAction(kind="unknown", reason="not an object")

    kind = str(data.get("type", ""))
    action_cls = _ACTION_TYPES.get(kind)
    if action_cls is None:
        if strict:
            raise ValidationException(
                f"Unknown action type '{kind}'",
                {"type": kind, "allowed": list(registered_action_kinds())}
            )
        return UnsupportedAction(kind=kind, reason="unknown action type", payload=dict(data))

    try:
        return action_cls.from_payload(data)
    except (TypeError, ValueError) as e:
        if strict:
            raise ValidationException(
                f"Invalid '{kind}' action: {e}",
                {"type": kind, "action": dict(data)}
            )
        return UnsupportedAction(kind=kind, reason=str(e), payload=dict(data))


class ActionExecutor:
    """
    Maps each action kind to exactly one mutation intent.

    Deterministic: the same snapshot and action always give an equal intent.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Type[Any], ActionHandler] = dict(_DEFAULT_HANDLERS)

    def register(self, action_cls: Type[Any], handler: ActionHandler) -> None:
        self._handlers[action_cls] = handler

    def apply(self, snapshot: Any, action: Any) -> MutationIntent:
        handler = self._handlers.get(type(action))
        if handler is None:
            kind = getattr(action, "kind", type(action).__name__)
            logger.warning(
                "Skipping action without a handler",
                extra={
                    "ticket_id": snapshot.id,
                    "action_kind": kind,
                    "reason": getattr(action, "reason", "no handler registered"),
                }
            )
            return MutationIntent(ticket_id=snapshot.id, action_kind=kind)
        return handler(snapshot, action)


_DEFAULT_HANDLERS: Dict[Type[Any], ActionHandler] = {
    AssignTeam: _assign_team,
    AssignUser: _assign_user,
    SetPriority: _set_priority,
    SetStatus: _set_status,
}

for _cls in (AssignTeam, AssignUser, SetPriority, SetStatus):
    register_action_type(_cls.kind, _cls)


# ========== Extension actions ==========

@dataclass(frozen=True)
class AddInternalNote:
    body: str
    kind: ClassVar[str] = "add_internal_note"

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "AddInternalNote":
        return cls(body=_required_str(data, "body", "message"))

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.kind, "body": self.body}


@dataclass(frozen=True)
class NotifyTeamLead:
    body: Optional[str] = None
    kind: ClassVar[str] = "notify_team_lead"

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "NotifyTeamLead":
        body = data.get("body") or data.get("message")
        return cls(body=str(body) if body else None)

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.kind, "body": self.body}


def _add_internal_note(snapshot: Any, action: AddInternalNote) -> MutationIntent:
    return MutationIntent(
        ticket_id=snapshot.id,
        action_kind=action.kind,
        side_effects=(
            SideEffectRequest("internal_note", {"body": f"[Automation] {action.body}"}),
        ),
    )


def _notify_team_lead(snapshot: Any, action: NotifyTeamLead) -> MutationIntent:
    if snapshot.team_id is None:
        return MutationIntent(ticket_id=snapshot.id, action_kind=action.kind)
    body = action.body or f"Automation flagged ticket {snapshot.id}: {snapshot.subject}"
    return MutationIntent(
        ticket_id=snapshot.id,
        action_kind=action.kind,
        side_effects=(
            SideEffectRequest("notify_team_lead", {"team_id": snapshot.team_id, "body": body}),
        ),
    )


register_action_type(AddInternalNote.kind, AddInternalNote)
register_action_type(NotifyTeamLead.kind, NotifyTeamLead)
_DEFAULT_HANDLERS[AddInternalNote] = _add_internal_note
_DEFAULT_HANDLERS[NotifyTeamLead] = _notify_team_lead
