"""Condition payload parser and evaluator.

The strategy editor stores conditions as a JSON list. Each element is either
a field comparison

    {"type": "price_threshold", "operator": "greater_than", "value": 50}
    {"type": "custom_indicator", "field": "position", "operator": "<=", "value": 0}
    {"type": "time_based", "operator": "between", "value": [9, 17]}

or a compound node

    {"type": "or", "conditions": [...]}
    {"type": "not", "condition": {...}}

Top-level elements are AND-combined. Parsing happens once per strategy;
evaluation is pure and runs against a flat context dict built per tick.
"""

from __future__ import annotations

import json
import logging
import operator as op
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from vpp_trading.errors import ValidationError
from vpp_trading.store.models import MarketTick

logger = logging.getLogger(__name__)

# condition type -> context field
TYPE_FIELDS: dict[str, str] = {
    "price_threshold": "price",
    "volume_threshold": "volume",
    "time_based": "hour",
    "market_status": "status",
}


def _between(actual: Any, expected: Any) -> bool:
    lo, hi = expected
    return lo <= actual <= hi


def _in(actual: Any, expected: Any) -> bool:
    return actual in expected


def _not_in(actual: Any, expected: Any) -> bool:
    return actual not in expected


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": op.eq,
    "not_equals": op.ne,
    "greater_than": op.gt,
    "less_than": op.lt,
    "greater_equal": op.ge,
    "less_equal": op.le,
    "between": _between,
    "in": _in,
    "not_in": _not_in,
}

# 記号表記のエイリアス
OPERATOR_ALIASES: dict[str, str] = {
    "==": "equals",
    "!=": "not_equals",
    ">": "greater_than",
    "<": "less_than",
    ">=": "greater_equal",
    "<=": "less_equal",
    "BETWEEN": "between",
    "IN": "in",
    "NOT_IN": "not_in",
}


@dataclass(frozen=True)
class FieldCondition:
    field: str
    operator: str
    value: Any

    def evaluate(self, ctx: dict[str, Any]) -> bool:
        actual = ctx.get(self.field)
        if actual is None:
            return False
        try:
            return bool(OPERATORS[self.operator](actual, self.value))
        except TypeError:
            # 型不一致 (文字列 vs 数値など) は不成立扱い
            logger.debug("Type mismatch evaluating %s %s %r", self.field, self.operator, self.value)
            return False


@dataclass(frozen=True)
class CompoundCondition:
    logic: str  # "and" | "or"
    children: tuple[Condition, ...]

    def evaluate(self, ctx: dict[str, Any]) -> bool:
        if self.logic == "and":
            return all(c.evaluate(ctx) for c in self.children)
        return any(c.evaluate(ctx) for c in self.children)


@dataclass(frozen=True)
class NotCondition:
    child: Condition

    def evaluate(self, ctx: dict[str, Any]) -> bool:
        return not self.child.evaluate(ctx)


Condition = FieldCondition | CompoundCondition | NotCondition


def _normalize_operator(raw: Any) -> str:
    if not isinstance(raw, str):
        raise ValidationError(f"operator must be a string, got {raw!r}")
    name = OPERATOR_ALIASES.get(raw, raw.lower())
    if name not in OPERATORS:
        raise ValidationError(f"unknown operator: {raw}")
    return name


def parse_condition(node: dict[str, Any]) -> Condition:
    if not isinstance(node, dict):
        raise ValidationError(f"condition must be an object, got {type(node).__name__}")

    kind = str(node.get("type", "")).lower()
    if kind in ("and", "or"):
        children = node.get("conditions")
        if not isinstance(children, list) or not children:
            raise ValidationError(f"'{kind}' condition needs a non-empty 'conditions' list")
        return CompoundCondition(logic=kind, children=tuple(parse_condition(c) for c in children))
    if kind == "not":
        if "condition" not in node:
            raise ValidationError("'not' condition needs a 'condition'")
        return NotCondition(child=parse_condition(node["condition"]))

    field = TYPE_FIELDS.get(kind) or node.get("field")
    if not field:
        raise ValidationError(f"condition type {kind!r} needs a 'field'")
    operator = _normalize_operator(node.get("operator"))
    value = node.get("value")
    if operator == "between":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValidationError(f"'between' needs a [low, high] pair, got {value!r}")
        value = tuple(value)
    elif operator in ("in", "not_in"):
        if not isinstance(value, (list, tuple)):
            raise ValidationError(f"'{operator}' needs a list, got {value!r}")
        value = tuple(value)
    return FieldCondition(field=field, operator=operator, value=value)


def parse_conditions(payload: str | list | dict | None) -> list[Condition]:
    """Parse a conditions payload (JSON text or decoded) into predicates."""
    if payload is None or payload == "":
        return []
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValidationError(f"conditions payload is not valid JSON: {e}") from e
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise ValidationError("conditions payload must be a list")
    return [parse_condition(node) for node in payload]


def evaluate_conditions(conditions: list[Condition], ctx: dict[str, Any]) -> bool:
    """AND of all top-level conditions. An empty list is always true."""
    return all(c.evaluate(ctx) for c in conditions)


def build_context(
    tick: MarketTick,
    position: float = 0.0,
    cash: float | None = None,
) -> dict[str, Any]:
    """Flatten a tick plus execution state into the evaluation context."""
    ctx: dict[str, Any] = {
        "market": tick.market,
        "price": tick.price,
        "volume": tick.volume,
        "hour": tick.timestamp.hour,
        "weekday": tick.timestamp.weekday(),
        "status": tick.status,
        "position": position,
    }
    if cash is not None:
        ctx["cash"] = cash
    return ctx
