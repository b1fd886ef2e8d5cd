import pytest

from rule_evaluator.triggers import (
    CompoundCondition,
    Logic,
    Operator,
    SimpleCondition,
    TriggerDefinitionError,
    condition_to_dict,
    evaluate,
    evaluate_with_detail,
    lookup_sensor,
    parse_condition,
    parse_operator,
)

pytestmark = [pytest.mark.unit]


def _simple(sensor, op, value):
    return SimpleCondition(sensor, Operator(op), value)


def test_empty_and_is_true_empty_or_is_false():
    assert evaluate(CompoundCondition((), Logic.AND), {}) is True
    assert evaluate(CompoundCondition((), Logic.OR), {}) is False


@pytest.mark.parametrize(
    "op,expected,actual,result",
    [
        ("<", 20, 12, True),
        ("<", 20, 20, False),
        ("<=", 20, 20, True),
        (">", 30, 31.5, True),
        (">=", 30, 29, False),
        ("==", 5, "5", True),
        ("!=", "rain", "sun", True),
        ("==", "rain", "rain", True),
    ],
)
def test_comparison_operators(op, expected, actual, result):
    assert evaluate(_simple("x", op, expected), {"x": actual}) is result


def test_between_is_inclusive_on_both_bounds():
    cond = _simple("temp", "between", (10, 20))
    assert evaluate(cond, {"temp": 10}) is True
    assert evaluate(cond, {"temp": 20}) is True
    assert evaluate(cond, {"temp": 20.01}) is False
    assert evaluate(cond, {"temp": 9.99}) is False


def test_missing_sensor_is_false_for_every_operator():
    for op in ("<", "<=", ">", ">=", "==", "contains", "between"):
        value = (1, 2) if op == "between" else 1
        assert evaluate(_simple("absent", op, value), {"present": 1}) is False


def test_missing_sensor_with_not_equal_is_false():
    assert evaluate(_simple("absent", "!=", 1), {}) is False


def test_non_numeric_value_does_not_raise():
    assert evaluate(_simple("x", ">", 3), {"x": "high"}) is False
    assert evaluate(_simple("x", "between", (1, 2)), {"x": None}) is False


def test_contains_on_strings_and_lists():
    assert evaluate(_simple("weather", "contains", "rain"), {"weather": "Light Rain"}) is True
    assert evaluate(_simple("tags", "contains", "Outdoor"), {"tags": ["outdoor", "sunny"]}) is True
    assert evaluate(_simple("tags", "contains", "indoor"), {"tags": ["outdoor"]}) is False
    assert evaluate(_simple("n", "contains", "1"), {"n": 15}) is False


def test_huge_integers_do_not_raise():
    assert evaluate(_simple("x", ">", 1), {"x": 10**400}) is False
    assert evaluate(_simple("x", "==", 10**400), {"x": 1}) is False


def test_contains_unhashable_needle_in_set_is_false():
    assert evaluate(_simple("tags", "contains", {"a": 1}), {"tags": frozenset({"a"})}) is False


def test_compound_short_circuits_and_records_only_run_checks():
    cond = CompoundCondition(
        (_simple("a", ">", 1), _simple("b", ">", 1)),
        Logic.OR,
    )
    detail = evaluate_with_detail(cond, {"a": 5, "b": 0})
    assert detail.matched is True
    assert [c["sensor"] for c in detail.checks] == ["a"]


def test_dotted_lookup_prefers_exact_key():
    snapshot = {"weather.temp": 1, "weather": {"temp": 30}}
    assert lookup_sensor(snapshot, "weather.temp") == 1
    assert lookup_sensor({"weather": {"temp": 30}}, "weather.temp") == 30


def test_parse_simple_and_aliases():
    cond = parse_condition({"type": "simple", "sensor": "soil_moisture", "operator": "LT", "value": 20})
    assert cond == SimpleCondition("soil_moisture", Operator.LT, 20)
    assert parse_operator("gte") is Operator.GTE
    assert parse_operator("=") is Operator.EQ
    assert parse_operator("contains") is Operator.CONTAINS


def test_parse_compound_with_conditions_key():
    cond = parse_condition(
        {
            "type": "compound",
            "logic": "or",
            "conditions": [
                {"sensor": "a", "operator": ">", "value": 1},
                {"sensor": "b", "operator": "<", "value": 1},
            ],
        }
    )
    assert isinstance(cond, CompoundCondition)
    assert cond.logic is Logic.OR
    assert len(cond.children) == 2


def test_time_condition_reads_clock_fields():
    cond = parse_condition({"type": "time", "time_range": [9, 17], "days_of_week": [1, 2, 3, 4, 5]})
    assert evaluate(cond, {"clock": {"hour": 10, "weekday": 1}}) is True
    assert evaluate(cond, {"clock": {"hour": 10, "weekday": 0}}) is False
    assert evaluate(cond, {"clock": {"hour": 18, "weekday": 3}}) is False


def test_time_range_wrapping_midnight():
    cond = parse_condition({"type": "time", "timeRange": [22, 6]})
    assert evaluate(cond, {"clock": {"hour": 23}}) is True
    assert evaluate(cond, {"clock": {"hour": 3}}) is True
    assert evaluate(cond, {"clock": {"hour": 12}}) is False


def test_threshold_bands():
    cond = parse_condition(
        {
            "type": "threshold",
            "sensor": "heart_rate",
            "thresholds": [{"max": 45}, {"min": 100, "max": 120}, {"min": 160}],
        }
    )
    assert evaluate(cond, {"heart_rate": 40}) is True
    assert evaluate(cond, {"heart_rate": 110}) is True
    assert evaluate(cond, {"heart_rate": 80}) is False
    assert evaluate(cond, {"heart_rate": 170}) is True


@pytest.mark.parametrize(
    "data",
    [
        "soil < 20",
        {"type": "bogus"},
        {"type": "simple", "operator": "<", "value": 1},
        {"type": "simple", "sensor": "x", "value": 1},
        {"type": "simple", "sensor": "x", "operator": "~", "value": 1},
        {"type": "simple", "sensor": "x", "operator": "between", "value": 5},
        {"type": "compound", "logic": "XOR", "children": []},
        {"type": "threshold", "sensor": "x", "thresholds": [{}]},
        {"type": "threshold", "sensor": "x", "thresholds": [5]},
        {"type": "threshold", "sensor": "x", "thresholds": {"min": 5}},
        {"type": "time", "time_range": ["9", 17]},
        {"type": "time", "days_of_week": ["mon"]},
    ],
)
def test_invalid_definitions_raise(data):
    with pytest.raises(TriggerDefinitionError):
        parse_condition(data)


def test_condition_to_dict_reparses_to_same_tree():
    original = parse_condition(
        {
            "type": "compound",
            "children": [
                {"sensor": "t", "operator": "between", "value": [1, 2]},
                {"sensor": "w", "operator": "contains", "value": "rain"},
            ],
        }
    )
    assert parse_condition(condition_to_dict(original)) == original
