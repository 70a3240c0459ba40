"""
Condition Trees
===============

Boolean condition trees attached to automation rules, and the evaluator
that checks them against a ticket snapshot.

A tree is built once, when the rule is saved or loaded, and never mutated:

    And(children=(
        Leaf(FieldRef(TicketField.PRIORITY), Operator.EQUALS, "P1"),
        Or(children=(
            Leaf(FieldRef(TicketField.CHANNEL), Operator.EQUALS, "email"),
            Leaf(FieldRef.custom("vip"), Operator.EQUALS, True),
        )),
    ))

Evaluation never raises. Unknown fields or operators that slip past
rule validation make their leaf ``False`` and log a warning, so one broken
rule cannot stop its siblings from running.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional, Tuple, Union

from deskflow.config import TicketPriority
from deskflow.core import ValidationException
from deskflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

CUSTOM_FIELD_PREFIX = "customField:"


class TicketField(str, Enum):
    """Closed vocabulary of ticket attributes a condition may reference."""
    SUBJECT = "subject"
    DESCRIPTION = "description"
    PRIORITY = "priority"
    STATUS = "status"
    CATEGORY_ID = "categoryId"
    TEAM_ID = "teamId"
    ASSIGNEE_ID = "assigneeId"
    REQUESTER_ID = "requesterId"
    CHANNEL = "channel"
    TAGS = "tags"
    CUSTOM_FIELD = "customField"


class FieldType(str, Enum):
    """Declared comparison type of a field."""
    TEXT = "text"
    PRIORITY = "priority"
    NUMBER = "number"
    BOOLEAN = "boolean"
    LIST = "list"


class Operator(str, Enum):
    """Leaf comparison operators."""
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    IN = "in"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    IS_SET = "isSet"
    IS_EMPTY = "isEmpty"


_SNAPSHOT_ATTRIBUTES = {
    TicketField.SUBJECT: "subject",
    TicketField.DESCRIPTION: "description",
    TicketField.PRIORITY: "priority",
    TicketField.STATUS: "status",
    TicketField.CATEGORY_ID: "category_id",
    TicketField.TEAM_ID: "team_id",
    TicketField.ASSIGNEE_ID: "assignee_id",
    TicketField.REQUESTER_ID: "requester_id",
    TicketField.CHANNEL: "channel",
    TicketField.TAGS: "tags",
}

_DECLARED_TYPES = {
    TicketField.PRIORITY: FieldType.PRIORITY,
    TicketField.TAGS: FieldType.LIST,
}


@dataclass(frozen=True)
class FieldRef:
    """Reference to a ticket attribute, or to a custom field by key."""

    field: TicketField
    key: Optional[str] = None

    @classmethod
    def custom(cls, key: str) -> "FieldRef":
        return cls(TicketField.CUSTOM_FIELD, key)

    @classmethod
    def parse(cls, raw: str) -> "FieldRef":
        """
        Resolve a stored field name against the vocabulary.

        Raises:
            ValueError: if the name is not part of the vocabulary
        """
        if raw.startswith(CUSTOM_FIELD_PREFIX):
            key = raw[len(CUSTOM_FIELD_PREFIX):].strip()
            if not key:
                raise ValueError("custom field reference without a key")
            return cls.custom(key)
        field = TicketField(raw)
        if field is TicketField.CUSTOM_FIELD:
            raise ValueError("custom field reference without a key")
        return cls(field)

    def __str__(self) -> str:
        if self.field is TicketField.CUSTOM_FIELD:
            return f"{CUSTOM_FIELD_PREFIX}{self.key}"
        return self.field.value

    def resolve(self, snapshot: Any) -> Any:
        """Read this field's current value from a ticket snapshot."""
        if self.field is TicketField.CUSTOM_FIELD:
            return (snapshot.custom_field_values or {}).get(self.key)
        return getattr(snapshot, _SNAPSHOT_ATTRIBUTES[self.field])

    def field_type(self, actual: Any) -> FieldType:
        """
        Declared type for built-in fields; custom fields are typed by the
        stored value since custom-field schemas live in another service.
        """
        if self.field is not TicketField.CUSTOM_FIELD:
            return _DECLARED_TYPES.get(self.field, FieldType.TEXT)
        if isinstance(actual, bool):
            return FieldType.BOOLEAN
        if isinstance(actual, (int, float)):
            return FieldType.NUMBER
        if isinstance(actual, (list, tuple, set, frozenset)):
            return FieldType.LIST
        return FieldType.TEXT


@dataclass(frozen=True)
class Leaf:
    """
    Single comparison.

    ``field`` and ``operator`` hold raw strings only when a stored rule
    referenced something outside the vocabulary; such leaves evaluate False.
    """
    field: Union[FieldRef, str]
    operator: Union[Operator, str]
    value: Any = None


@dataclass(frozen=True)
class And:
    children: Tuple["ConditionNode", ...] = ()


@dataclass(frozen=True)
class Or:
    children: Tuple["ConditionNode", ...] = ()


ConditionNode = Union[Leaf, And, Or]


# ========== Evaluation ==========

def evaluate(snapshot: Any, node: ConditionNode) -> bool:
    """
    Evaluate a condition tree against a ticket snapshot.

    ``And``/``Or`` evaluate children left to right and stop as soon as the
    outcome is known. An empty ``And`` is True, an empty ``Or`` is False.
    """
    if isinstance(node, And):
        return all(evaluate(snapshot, child) for child in node.children)
    if isinstance(node, Or):
        return any(evaluate(snapshot, child) for child in node.children)
    if isinstance(node, Leaf):
        return _evaluate_leaf(snapshot, node)

    logger.warning(
        "Unknown condition node ignored",
        extra={"node_type": type(node).__name__}
    )
    return False


def _evaluate_leaf(snapshot: Any, leaf: Leaf) -> bool:
    if not isinstance(leaf.field, FieldRef):
        logger.warning(
            "Condition references unknown field",
            extra={"field": str(leaf.field), "ticket_id": getattr(snapshot, "id", None)}
        )
        return False
    if not isinstance(leaf.operator, Operator):
        logger.warning(
            "Condition uses unknown operator",
            extra={"operator": str(leaf.operator), "field": str(leaf.field)}
        )
        return False

    actual = leaf.field.resolve(snapshot)
    field_type = leaf.field.field_type(actual)
    op = leaf.operator

    try:
        if op is Operator.IS_SET:
            return not _is_blank(actual)
        if op is Operator.IS_EMPTY:
            return _is_blank(actual)
        if op in (Operator.CONTAINS, Operator.NOT_CONTAINS):
            if field_type not in (FieldType.TEXT, FieldType.LIST):
                return False
            found = _contains(field_type, actual, leaf.value)
            return found if op is Operator.CONTAINS else not found
        if op in (Operator.GREATER_THAN, Operator.LESS_THAN):
            if field_type not in (FieldType.NUMBER, FieldType.PRIORITY):
                return False
            if actual is None or leaf.value is None:
                return False
            left = _coerce(field_type, actual)
            right = _coerce(field_type, leaf.value)
            return left > right if op is Operator.GREATER_THAN else left < right
        if op is Operator.IN:
            options = leaf.value if _is_sequence(leaf.value) else [leaf.value]
            return any(_equals(field_type, actual, option) for option in options)
        matched = _equals(field_type, actual, leaf.value)
        return matched if op is Operator.EQUALS else not matched
    except (TypeError, ValueError) as e:
        logger.warning(
            "Condition value could not be coerced to field type",
            extra={
                "field": str(leaf.field),
                "operator": op.value,
                "field_type": field_type.value,
                "error": str(e),
            }
        )
        return False


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if _is_sequence(value) or isinstance(value, dict):
        return len(value) == 0
    return False


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()


def _coerce(field_type: FieldType, value: Any) -> Any:
    """
    Coerce a value to the field's declared type.

    Raises:
        ValueError / TypeError: when the value has no meaning for that type
    """
    if field_type is FieldType.PRIORITY:
        return TicketPriority(_text(value).upper()).severity
    if field_type is FieldType.NUMBER:
        if isinstance(value, bool):
            raise TypeError("booleans are not numbers")
        return float(value)
    if field_type is FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = _text(value)
        if text in ("true", "1", "yes"):
            return True
        if text in ("false", "0", "no"):
            return False
        raise ValueError(f"not a boolean: {value!r}")
    return _text(value)


def _equals(field_type: FieldType, actual: Any, expected: Any) -> bool:
    if field_type is FieldType.LIST:
        if not _is_sequence(expected):
            return False
        return sorted(_text(v) for v in actual or ()) == sorted(_text(v) for v in expected)
    if actual is None or expected is None:
        return actual is None and expected is None
    return _coerce(field_type, actual) == _coerce(field_type, expected)


def _contains(field_type: FieldType, actual: Any, needle: Any) -> bool:
    if field_type is FieldType.LIST:
        items = {_text(v) for v in actual or ()}
        wanted = needle if _is_sequence(needle) else [needle]
        return all(_text(w) in items for w in wanted)
    return _text(needle) in _text(actual)


# ========== Parsing ==========

def parse_condition(data: Any, strict: bool = False) -> ConditionNode:
    """
    Build a condition tree from its stored JSON form.

    Accepted shapes:
        {"field": ..., "operator": ..., "value": ...}
        {"and": [...]} / {"or": [...]}
        [...]  (implicit AND over the list)

    Args:
        data: Decoded JSON
        strict: Raise ValidationException on unknown fields/operators
            (rule save time); otherwise keep them as raw strings so the
            leaf evaluates False (rules already in storage).
    """
    if isinstance(data, list):
        return And(tuple(parse_condition(item, strict) for item in data))
    if not isinstance(data, dict):
        if strict:
            raise ValidationException(
                "Condition node must be an object or a list",
                {"node": repr(data)}
            )
        return Or()

    if "and" in data:
        return And(tuple(parse_condition(c, strict) for c in _children(data["and"], strict)))
    if "or" in data:
        return Or(tuple(parse_condition(c, strict) for c in _children(data["or"], strict)))

    raw_field = data.get("field")
    raw_operator = data.get("operator")
    if raw_field is None or raw_operator is None:
        if strict:
            raise ValidationException(
                "Condition leaf requires 'field' and 'operator'",
                {"node": data}
            )
        return Leaf(str(raw_field), str(raw_operator), data.get("value"))

    return Leaf(
        field=_parse_field(str(raw_field), strict),
        operator=_parse_operator(str(raw_operator), strict),
        value=data.get("value"),
    )


def _children(raw: Any, strict: bool) -> Iterable[Any]:
    if isinstance(raw, list):
        return raw
    if strict:
        raise ValidationException("'and'/'or' must hold a list", {"node": repr(raw)})
    return []


def _parse_field(raw: str, strict: bool) -> Union[FieldRef, str]:
    try:
        return FieldRef.parse(raw)
    except ValueError:
        if strict:
            raise ValidationException(
                f"Unknown condition field '{raw}'",
                {"field": raw, "allowed": [f.value for f in TicketField]}
            )
        return raw


def _parse_operator(raw: str, strict: bool) -> Union[Operator, str]:
    try:
        return Operator(raw)
    except ValueError:
        if strict:
            raise ValidationException(
                f"Unknown condition operator '{raw}'",
                {"operator": raw, "allowed": [o.value for o in Operator]}
            )
        return raw


def condition_to_dict(node: ConditionNode) -> Any:
    """Inverse of ``parse_condition`` for API responses and storage."""
    if isinstance(node, And):
        return {"and": [condition_to_dict(c) for c in node.children]}
    if isinstance(node, Or):
        return {"or": [condition_to_dict(c) for c in node.children]}
    operator = node.operator.value if isinstance(node.operator, Operator) else node.operator
    return {"field": str(node.field), "operator": operator, "value": node.value}
