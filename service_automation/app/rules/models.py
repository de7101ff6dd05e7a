"""
Rule data models for the automation service.

Condition and action documents arrive loosely typed (JSON from the rule
store or the API). They are decoded once per rule version by
``compile_rule`` into the closed set of variants below.
"""

from typing import Dict, Any, Optional, List, Tuple, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from shared.errors import ConfigurationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConditionOperator(str, Enum):
    """Comparison operators."""
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    IN = "in"
    EXISTS = "exists"


class LogicalOperator(str, Enum):
    """Branch combinators."""
    AND = "and"
    OR = "or"


# Operator spellings used by older rule documents
OPERATOR_ALIASES = {
    "equals": ConditionOperator.EQ,
    "not_equals": ConditionOperator.NEQ,
    "greater_than": ConditionOperator.GT,
    "less_than": ConditionOperator.LT,
}


class ActionKind(str, Enum):
    """Action kinds the engine can dispatch."""
    CREATE_RECORD = "create_record"
    UPDATE_RECORD = "update_record"
    NOTIFY = "notify"


@dataclass(frozen=True)
class Comparison:
    """Leaf condition comparing one payload field against a literal.

    ``operator`` keeps the raw string when the document names an operator
    outside the vocabulary; such leaves evaluate to false.
    """
    field: str
    operator: Union[ConditionOperator, str]
    value: Any = None


@dataclass(frozen=True)
class ConditionGroup:
    """AND/OR node over child conditions."""
    operator: LogicalOperator
    children: Tuple["Condition", ...] = ()


Condition = Union[Comparison, ConditionGroup]


@dataclass(frozen=True)
class ActionSpec:
    """One declared action of a rule."""
    kind: ActionKind
    target_collection: Optional[str] = None
    field_mapping: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    max_attempts: Optional[int] = None


@dataclass
class Rule:
    """Automation rule owned by a workspace.

    ``condition`` and ``actions`` may hold raw documents or already typed
    variants; the engine compiles them before use.
    """
    id: str
    workspace_id: str
    trigger_type: str
    condition: Any = None
    actions: List[Any] = field(default_factory=list)
    is_active: bool = True
    name: str = ""
    description: Optional[str] = None
    max_executions_per_minute: Optional[int] = None
    execution_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_executed_at: Optional[datetime] = None


@dataclass(frozen=True)
class CompiledRule:
    """A rule with its condition and actions decoded."""
    rule: Rule
    condition: Optional[Condition]
    actions: Tuple[ActionSpec, ...]


@dataclass
class Event:
    """Domain event handed to the engine by a business mutation."""
    type: str
    workspace_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    user_id: Optional[str] = None

    def to_snapshot(self) -> Dict[str, Any]:
        """Serializable copy stored with the audit record."""
        return {
            "type": self.type,
            "workspace_id": self.workspace_id,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": dict(self.payload),
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "user_id": self.user_id,
        }

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "Event":
        occurred_at = snapshot.get("occurred_at")
        if isinstance(occurred_at, str):
            occurred_at = datetime.fromisoformat(occurred_at)
        return cls(
            type=snapshot["type"],
            workspace_id=snapshot["workspace_id"],
            payload=dict(snapshot.get("payload") or {}),
            occurred_at=occurred_at or utcnow(),
            entity_type=snapshot.get("entity_type"),
            entity_id=snapshot.get("entity_id"),
            user_id=snapshot.get("user_id"),
        )


def parse_condition(document: Any) -> Optional[Condition]:
    """Decode a condition document into a typed tree.

    Accepted shapes:

    - ``None`` or ``{}``: no condition, the rule always matches
    - ``{"field": ..., "operator"|"op": ..., "value": ...}``: comparison
    - ``{"and": [...]}`` / ``{"or": [...]}``: group
    - ``[...]``: shorthand for ``{"and": [...]}``
    """
    if document is None:
        return None
    if isinstance(document, (Comparison, ConditionGroup)):
        return document
    if isinstance(document, list):
        return ConditionGroup(LogicalOperator.AND, tuple(_parse_node(d) for d in document))
    if isinstance(document, dict) and not document:
        return None
    return _parse_node(document)


def _parse_node(document: Any) -> Condition:
    if isinstance(document, (Comparison, ConditionGroup)):
        return document
    if not isinstance(document, dict):
        raise ConfigurationError(
            "Condition node must be an object",
            details={"node": repr(document)}
        )

    for logical in LogicalOperator:
        if logical.value in document:
            children = document[logical.value]
            if not isinstance(children, list):
                raise ConfigurationError(
                    f"'{logical.value}' must hold a list of conditions",
                    details={"node": document}
                )
            return ConditionGroup(logical, tuple(_parse_node(c) for c in children))

    field_name = document.get("field")
    if not isinstance(field_name, str) or not field_name:
        raise ConfigurationError("Comparison requires a non-empty 'field'", details={"node": document})

    raw_operator = document.get("operator", document.get("op"))
    if not isinstance(raw_operator, str):
        raise ConfigurationError("Comparison requires an 'operator'", details={"node": document})

    operator: Union[ConditionOperator, str]
    if raw_operator in OPERATOR_ALIASES:
        operator = OPERATOR_ALIASES[raw_operator]
    else:
        try:
            operator = ConditionOperator(raw_operator)
        except ValueError:
            operator = raw_operator

    value = document.get("value")
    if isinstance(value, list):
        value = tuple(value)

    return Comparison(field=field_name, operator=operator, value=value)


def parse_action(document: Any) -> ActionSpec:
    """Decode one action document."""
    if isinstance(document, ActionSpec):
        return document
    if not isinstance(document, dict):
        raise ConfigurationError("Action must be an object", details={"action": repr(document)})

    raw_kind = document.get("kind", document.get("type"))
    try:
        kind = ActionKind(raw_kind)
    except ValueError:
        raise ConfigurationError(
            f"Unknown action kind: {raw_kind}",
            details={"action": document}
        )

    field_mapping = document.get("field_mapping") or {}
    if not isinstance(field_mapping, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in field_mapping.items()
    ):
        raise ConfigurationError(
            "'field_mapping' must map target field names to payload field names",
            details={"action": document}
        )

    params = document.get("params") or {}
    if not isinstance(params, dict):
        raise ConfigurationError("'params' must be an object", details={"action": document})

    max_attempts = document.get("max_attempts")
    if max_attempts is not None and (
        isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1
    ):
        raise ConfigurationError("'max_attempts' must be a positive integer", details={"action": document})

    target = document.get("target_collection", document.get("target"))
    if kind in (ActionKind.CREATE_RECORD, ActionKind.UPDATE_RECORD) and not target:
        raise ConfigurationError(f"{kind.value} requires a target collection", details={"action": document})

    return ActionSpec(
        kind=kind,
        target_collection=target,
        field_mapping=dict(field_mapping),
        params=dict(params),
        max_attempts=max_attempts,
    )


def compile_rule(rule: Rule) -> CompiledRule:
    """Decode a rule's documents, enforcing rule invariants."""
    if not rule.actions:
        raise ConfigurationError(
            "Active rule has no actions",
            details={"rule_id": rule.id}
        )
    return CompiledRule(
        rule=rule,
        condition=parse_condition(rule.condition),
        actions=tuple(parse_action(a) for a in rule.actions),
    )
