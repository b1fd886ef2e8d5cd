"""
Trigger condition language for behavior rules.

A trigger is a tree of two node kinds: SimpleCondition compares one sensor
value from the snapshot against a literal, CompoundCondition combines
children with AND/OR. The stored JSON also knows "time" and "threshold"
nodes; parse_condition() rewrites them into simple/compound nodes over
clock.* and numeric sensor keys, so evaluation never reads a clock.

evaluate() is total: a missing sensor, a value that cannot be coerced, or
a malformed literal all make the node false instead of raising.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Union


class TriggerDefinitionError(ValueError):
    """Stored trigger JSON does not describe a valid condition tree."""


class Operator(str, Enum):
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    EQ = "=="
    NE = "!="
    CONTAINS = "contains"
    BETWEEN = "between"


class Logic(str, Enum):
    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class SimpleCondition:
    sensor: str
    operator: Operator
    value: Any


@dataclass(frozen=True)
class CompoundCondition:
    children: tuple["Condition", ...]
    logic: Logic = Logic.AND


Condition = Union[SimpleCondition, CompoundCondition]


@dataclass
class TriggerMatch:
    matched: bool
    checks: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"matched": self.matched, "checks": self.checks}


MISSING = object()

_OPERATOR_ALIASES = {
    "GT": Operator.GT,
    "GTE": Operator.GTE,
    "LT": Operator.LT,
    "LTE": Operator.LTE,
    "EQ": Operator.EQ,
    "NE": Operator.NE,
    "=": Operator.EQ,
}


# ─── Parsing ─────────────────────────────────────────────────────


def parse_operator(raw: Any) -> Operator:
    if isinstance(raw, Operator):
        return raw
    if not isinstance(raw, str):
        raise TriggerDefinitionError(f"operator must be a string, got {type(raw).__name__}")
    try:
        return Operator(raw.strip().lower() if raw.strip().isalpha() else raw.strip())
    except ValueError:
        alias = _OPERATOR_ALIASES.get(raw.strip().upper())
        if alias is None:
            raise TriggerDefinitionError(f"unknown operator: {raw!r}")
        return alias


def parse_condition(data: Any) -> Condition:
    """Build a condition tree from its stored JSON form."""
    if isinstance(data, (SimpleCondition, CompoundCondition)):
        return data
    if not isinstance(data, Mapping):
        raise TriggerDefinitionError(f"condition must be an object, got {type(data).__name__}")

    node_type = str(data.get("type") or "simple").lower()
    if node_type == "simple":
        return _parse_simple(data)
    if node_type == "compound":
        return _parse_compound(data)
    if node_type == "time":
        return _parse_time(data)
    if node_type == "threshold":
        return _parse_threshold(data)
    raise TriggerDefinitionError(f"unknown condition type: {node_type!r}")


def _parse_simple(data: Mapping) -> SimpleCondition:
    sensor = data.get("sensor") or data.get("sensor_key")
    if not isinstance(sensor, str) or not sensor.strip():
        raise TriggerDefinitionError("simple condition requires a sensor key")
    if "operator" not in data:
        raise TriggerDefinitionError(f"simple condition on {sensor!r} has no operator")
    operator = parse_operator(data["operator"])
    value = data.get("value")
    if operator is Operator.BETWEEN:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise TriggerDefinitionError("between expects value = [lo, hi]")
        value = (value[0], value[1])
    elif isinstance(value, list):
        value = tuple(value)
    return SimpleCondition(sensor=sensor.strip(), operator=operator, value=value)


def _parse_compound(data: Mapping) -> CompoundCondition:
    raw_children = data.get("children", data.get("conditions", []))
    if not isinstance(raw_children, (list, tuple)):
        raise TriggerDefinitionError("compound condition children must be a list")
    logic_raw = str(data.get("logic") or "AND").upper()
    try:
        logic = Logic(logic_raw)
    except ValueError:
        raise TriggerDefinitionError(f"unknown compound logic: {logic_raw!r}")
    return CompoundCondition(children=tuple(parse_condition(c) for c in raw_children), logic=logic)


def _parse_time(data: Mapping) -> CompoundCondition:
    parts: list[Condition] = []
    time_range = data.get("time_range", data.get("timeRange"))
    if time_range:
        if not isinstance(time_range, (list, tuple)) or len(time_range) != 2:
            raise TriggerDefinitionError("time_range expects [start_hour, end_hour]")
        start, end = time_range
        if not all(isinstance(h, (int, float)) and not isinstance(h, bool) for h in (start, end)):
            raise TriggerDefinitionError("time_range hours must be numbers")
        if start <= end:
            parts.append(SimpleCondition("clock.hour", Operator.BETWEEN, (start, end)))
        else:
            # Window crosses midnight, e.g. [22, 6].
            parts.append(
                CompoundCondition(
                    children=(
                        SimpleCondition("clock.hour", Operator.GTE, start),
                        SimpleCondition("clock.hour", Operator.LTE, end),
                    ),
                    logic=Logic.OR,
                )
            )
    days = data.get("days_of_week", data.get("daysOfWeek"))
    if days:
        if not isinstance(days, (list, tuple)) or not all(
            isinstance(d, int) and not isinstance(d, bool) for d in days
        ):
            raise TriggerDefinitionError("days_of_week expects a list of weekday numbers")
        parts.append(
            CompoundCondition(
                children=tuple(SimpleCondition("clock.weekday", Operator.EQ, d) for d in days),
                logic=Logic.OR,
            )
        )
    return CompoundCondition(children=tuple(parts), logic=Logic.AND)


def _parse_threshold(data: Mapping) -> CompoundCondition:
    sensor = data.get("sensor")
    if not isinstance(sensor, str) or not sensor.strip():
        raise TriggerDefinitionError("threshold condition requires a sensor key")
    raw_bands = data.get("thresholds") or []
    if not isinstance(raw_bands, (list, tuple)):
        raise TriggerDefinitionError("thresholds must be a list of bands")
    bands: list[Condition] = []
    for band in raw_bands:
        if not isinstance(band, Mapping):
            raise TriggerDefinitionError(f"threshold band on {sensor!r} must be an object")
        lo = band.get("min")
        hi = band.get("max")
        if lo is not None and hi is not None:
            bands.append(SimpleCondition(sensor, Operator.BETWEEN, (lo, hi)))
        elif lo is not None:
            bands.append(SimpleCondition(sensor, Operator.GTE, lo))
        elif hi is not None:
            bands.append(SimpleCondition(sensor, Operator.LTE, hi))
        else:
            raise TriggerDefinitionError(f"threshold band on {sensor!r} needs min or max")
    return CompoundCondition(children=tuple(bands), logic=Logic.OR)


# ─── Evaluation ──────────────────────────────────────────────────


def lookup_sensor(snapshot: Mapping[str, Any], key: str) -> Any:
    """Exact key first, then a dotted path through nested mappings."""
    if key in snapshot:
        return snapshot[key]
    current: Any = snapshot
    for part in key.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return MISSING
    return current


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, (list, tuple, dict, set)):
        return None
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _equals(actual: Any, expected: Any) -> bool:
    a = _to_number(actual)
    b = _to_number(expected)
    if a is not None and b is not None:
        return a == b
    return actual == expected


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        if expected is None:
            return False
        return str(expected).lower() in actual.lower()
    if isinstance(actual, (list, tuple, set, frozenset)):
        if isinstance(expected, str):
            needle = expected.lower()
            if any(isinstance(item, str) and item.lower() == needle for item in actual):
                return True
        try:
            return expected in actual
        except TypeError:
            # Unhashable needle against a set.
            return False
    return False


def _between(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple)) or len(expected) != 2:
        return False
    x = _to_number(actual)
    lo = _to_number(expected[0])
    hi = _to_number(expected[1])
    if x is None or lo is None or hi is None:
        return False
    return lo <= x <= hi


def _compare(actual: Any, operator: Operator, expected: Any) -> bool:
    if operator is Operator.EQ:
        return _equals(actual, expected)
    if operator is Operator.NE:
        return not _equals(actual, expected)
    if operator is Operator.CONTAINS:
        return _contains(actual, expected)
    if operator is Operator.BETWEEN:
        return _between(actual, expected)

    a = _to_number(actual)
    b = _to_number(expected)
    if a is None or b is None:
        return False
    if operator is Operator.LT:
        return a < b
    if operator is Operator.LTE:
        return a <= b
    if operator is Operator.GT:
        return a > b
    if operator is Operator.GTE:
        return a >= b
    raise TypeError(f"unhandled operator: {operator!r}")


def _evaluate(node: Condition, snapshot: Mapping[str, Any], checks: Optional[list]) -> bool:
    if isinstance(node, SimpleCondition):
        actual = lookup_sensor(snapshot, node.sensor)
        matched = actual is not MISSING and _compare(actual, node.operator, node.value)
        if checks is not None:
            checks.append(
                {
                    "sensor": node.sensor,
                    "operator": node.operator.value,
                    "expected": list(node.value) if isinstance(node.value, tuple) else node.value,
                    "actual": None if actual is MISSING else actual,
                    "missing": actual is MISSING,
                    "matched": matched,
                }
            )
        return matched
    if isinstance(node, CompoundCondition):
        if node.logic is Logic.AND:
            for child in node.children:
                if not _evaluate(child, snapshot, checks):
                    return False
            return True
        if node.logic is Logic.OR:
            for child in node.children:
                if _evaluate(child, snapshot, checks):
                    return True
            return False
        raise TypeError(f"unhandled logic: {node.logic!r}")
    raise TypeError(f"unsupported condition node: {type(node).__name__}")


def evaluate(condition: Condition, snapshot: Mapping[str, Any]) -> bool:
    """Return True when the condition matches the sensor snapshot."""
    return _evaluate(condition, snapshot, None)


def evaluate_with_detail(condition: Condition, snapshot: Mapping[str, Any]) -> TriggerMatch:
    """Like evaluate(), also recording every simple check that was actually run."""
    checks: list[dict] = []
    matched = _evaluate(condition, snapshot, checks)
    return TriggerMatch(matched=matched, checks=checks)


def condition_to_dict(node: Condition) -> dict:
    if isinstance(node, SimpleCondition):
        value = list(node.value) if isinstance(node.value, tuple) else node.value
        return {"type": "simple", "sensor": node.sensor, "operator": node.operator.value, "value": value}
    if isinstance(node, CompoundCondition):
        return {
            "type": "compound",
            "logic": node.logic.value,
            "children": [condition_to_dict(c) for c in node.children],
        }
    raise TypeError(f"unsupported condition node: {type(node).__name__}")
