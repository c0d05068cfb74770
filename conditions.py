import logging
import math
from typing import Any, Mapping

from templates import render_template

log = logging.getLogger(__name__)

CONDITION_OPS = frozenset({
    "equals",
    "contains",
    "starts_with",
    "ends_with",
    "is_empty",
    "is_not_empty",
    "gt",
    "gte",
    "lt",
    "lte",
})

NUMERIC_OPS = frozenset({"gt", "gte", "lt", "lte"})


def _to_number(value: str) -> float | None:
    raw = value.strip()
    if not raw:
        return None
    try:
        number = float(raw)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def resolve_left_operand(left: Any, variables: Mapping[str, Any]) -> str:
    """Left side: a template expression if it has braces, else a variable key."""
    raw = "" if left is None else str(left).strip()
    if not raw:
        return ""
    if "{" in raw:
        return render_template(raw, variables)
    value = variables.get(raw)
    return "" if value is None else str(value)


def resolve_right_operand(right: Any, variables: Mapping[str, Any]) -> str:
    """Right side: a template expression, a ``now.*`` built-in, or a literal."""
    raw = "" if right is None else str(right)
    if "{" in raw:
        return render_template(raw, variables)
    key = raw.strip()
    if key.startswith("now.") and key in variables:
        return str(variables[key])
    return raw


def compare(op: str, a: str, b: str) -> bool:
    if op == "equals":
        return a == b
    if op == "contains":
        return b.lower() in a.lower()
    if op == "starts_with":
        return a.lower().startswith(b.lower())
    if op == "ends_with":
        return a.lower().endswith(b.lower())
    if op == "is_empty":
        return not a.strip()
    if op == "is_not_empty":
        return bool(a.strip())
    if op in NUMERIC_OPS:
        x = _to_number(a)
        y = _to_number(b)
        if x is None or y is None:
            return False
        if op == "gt":
            return x > y
        if op == "gte":
            return x >= y
        if op == "lt":
            return x < y
        return x <= y
    return False


def evaluate_condition(left: Any, op: Any, right: Any, variables: Mapping[str, Any]) -> bool:
    """Evaluate one condition node; never raises, unknown operators are false."""
    op_name = str(op or "").strip().lower()
    if op_name not in CONDITION_OPS:
        log.debug("Unknown condition operator %r", op)
        return False
    try:
        a = resolve_left_operand(left, variables)
        b = resolve_right_operand(right, variables)
        return compare(op_name, a, b)
    except Exception:
        log.warning("Condition evaluation failed (op=%s)", op_name, exc_info=True)
        return False
