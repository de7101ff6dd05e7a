"""
Condition evaluation for automation rules.
"""

from typing import Any, Dict, List, Optional

from shared.logging import get_logger
from .models import Comparison, Condition, ConditionGroup, ConditionOperator, LogicalOperator

_MISSING = object()


class ConditionEvaluator:
    """Evaluates a typed condition tree against an event payload.

    Evaluation is pure and total: anything that cannot be resolved or
    compared yields ``False``. When a ``details`` list is supplied, a note
    is appended for every unknown field or operator so the engine can keep
    it with the audit record.
    """

    def __init__(self):
        self.logger = get_logger("automation.conditions")

    def evaluate(
        self,
        condition: Optional[Condition],
        payload: Dict[str, Any],
        details: Optional[List[str]] = None,
    ) -> bool:
        if condition is None:
            return True
        try:
            return self._evaluate_node(condition, payload or {}, details)
        except Exception as e:
            # Comparisons between exotic payload values can still raise
            self.logger.warning("Condition evaluation error", error=str(e))
            if details is not None:
                details.append(f"evaluation error: {e}")
            return False

    def _evaluate_node(self, node: Condition, payload: Dict[str, Any], details: Optional[List[str]]) -> bool:
        if isinstance(node, ConditionGroup):
            if node.operator == LogicalOperator.AND:
                for child in node.children:
                    if not self._evaluate_node(child, payload, details):
                        return False
                return True
            for child in node.children:
                if self._evaluate_node(child, payload, details):
                    return True
            return False

        if isinstance(node, Comparison):
            return self._evaluate_comparison(node, payload, details)

        self._note(details, f"unsupported condition node: {type(node).__name__}")
        return False

    def _evaluate_comparison(self, comparison: Comparison, payload: Dict[str, Any],
                             details: Optional[List[str]]) -> bool:
        operator = comparison.operator
        if not isinstance(operator, ConditionOperator):
            self._note(details, f"unknown operator '{operator}' on field '{comparison.field}'")
            return False

        field_value = get_field_value(comparison.field, payload)
        if field_value is _MISSING:
            self._note(details, f"unknown field '{comparison.field}'")
            return False

        if operator == ConditionOperator.EXISTS:
            return field_value is not None

        if field_value is None:
            return False

        if operator == ConditionOperator.EQ:
            return _equals(field_value, comparison.value)

        if operator == ConditionOperator.NEQ:
            return not _equals(field_value, comparison.value)

        if operator in (ConditionOperator.GT, ConditionOperator.LT):
            left = _as_number(field_value)
            right = _as_number(comparison.value)
            if left is None or right is None:
                return False
            return left > right if operator == ConditionOperator.GT else left < right

        if operator == ConditionOperator.IN:
            if not isinstance(comparison.value, (list, tuple)):
                self._note(details, f"'in' on field '{comparison.field}' needs a list value")
                return False
            return any(_equals(field_value, candidate) for candidate in comparison.value)

        return False

    def _note(self, details: Optional[List[str]], message: str):
        self.logger.debug("Condition note", note=message)
        if details is not None:
            details.append(message)


def get_field_value(field: str, payload: Dict[str, Any], default: Any = _MISSING) -> Any:
    """Resolve a field by exact key, then as a dotted path into nested dicts.

    Returns ``default`` (a private sentinel unless given) when the field
    cannot be resolved; ``None`` means the field is present with a null value.
    """
    if field in payload:
        return payload[field]

    if "." in field:
        value: Any = payload
        for part in field.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    return default


def _equals(left: Any, right: Any) -> bool:
    # True == 1 in Python; a flag never equals a number here
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        return tuple(left) == tuple(right)
    return type(left) is type(right) and left == right


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any) -> Optional[float]:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        if number != number:  # NaN
            return None
        return number
    return None
