from datetime import datetime, timedelta, timezone

import pytest

from rule_evaluator.execution_log import (
    SKIPPED_COOLDOWN,
    ExecutionLogWriter,
    RuleExecutionLog,
    cooldown_active,
    snapshot_for_log,
)
from rule_evaluator.rules import (
    FALLBACK_MESSAGE,
    ActionType,
    RuleAction,
    parse_action,
    parse_rule,
    render_message,
    sort_rules,
)
from rule_evaluator.triggers import Operator, SimpleCondition, TriggerDefinitionError
from tests.helpers.memory_store import MemoryStore

pytestmark = [pytest.mark.unit]

NOW = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


def _row(**overrides):
    row = {
        "id": "r1",
        "entity_id": "e1",
        "name": "Water me",
        "trigger": {"type": "simple", "sensor": "soil_moisture", "operator": "<", "value": 20},
        "action": {"type": "notify", "message": "Soil is at {soil_moisture}%"},
        "priority": 5,
        "enabled": True,
        "cooldown_seconds": 3600,
    }
    row.update(overrides)
    return row


def test_parse_rule_from_row():
    rule = parse_rule(_row())
    assert rule.id == "r1"
    assert rule.trigger == SimpleCondition("soil_moisture", Operator.LT, 20)
    assert rule.action.type is ActionType.NOTIFY
    assert rule.cooldown_seconds == 3600


def test_parse_rule_accepts_json_strings_and_trigger_cooldown():
    rule = parse_rule(
        _row(
            trigger='{"sensor": "x", "operator": ">", "value": 1, "cooldown": 600}',
            action='{"type": "alert", "channels": ["sms", "in_app"]}',
            cooldown_seconds=None,
        )
    )
    assert rule.cooldown_seconds == 600
    assert rule.action.channels == ("SMS", "IN_APP")


def test_zero_cooldown_means_none():
    assert parse_rule(_row(cooldown_seconds=0)).cooldown_seconds is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"trigger": None},
        {"trigger": "not json"},
        {"action": {"type": "dance"}},
        {"action": {"type": "notify", "parameters": ["x"]}},
        {"cooldown_seconds": "soon"},
    ],
)
def test_invalid_rows_raise(overrides):
    with pytest.raises(TriggerDefinitionError):
        parse_rule(_row(**overrides))


def test_sort_rules_priority_desc_then_id():
    rules = [
        parse_rule(_row(id="b", priority=1)),
        parse_rule(_row(id="a", priority=1)),
        parse_rule(_row(id="c", priority=9)),
    ]
    assert [r.id for r in sort_rules(rules)] == ["c", "a", "b"]


def test_render_message_substitutes_and_keeps_unknown_placeholders():
    action = RuleAction(type=ActionType.NOTIFY, message="{weather.condition} and {missing} at {temp}")
    text = render_message(action, {"weather": {"condition": "rain"}, "temp": 12})
    assert text == "rain and {missing} at 12"


def test_render_message_fallbacks():
    assert render_message(RuleAction(type=ActionType.LOG, default_message="Hi"), {}) == "Hi"
    assert render_message(RuleAction(type=ActionType.LOG), {}) == FALLBACK_MESSAGE


def test_parse_action_reads_message_from_parameters():
    action = parse_action({"type": "respond", "parameters": {"message": "hello"}, "defaultMessage": "d"})
    assert action.message == "hello"
    assert action.default_message == "d"


def test_cooldown_boundaries():
    last = NOW
    assert cooldown_active(last, 3600, NOW + timedelta(seconds=1800)) is True
    assert cooldown_active(last, 3600, NOW + timedelta(seconds=3600)) is False
    assert cooldown_active(None, 3600, NOW) is False
    assert cooldown_active(last, None, NOW) is False


def test_snapshot_for_log_drops_clock():
    assert snapshot_for_log({"a": 1, "clock": {"hour": 3}}) == {"a": 1}


@pytest.mark.asyncio
async def test_writer_records_cooldown_skip_and_truncates_errors():
    store = MemoryStore()
    writer = ExecutionLogWriter(store)

    entry = await writer.record_cooldown_skip("r1", "e1", NOW, NOW - timedelta(minutes=5))
    assert entry.skipped_reason == SKIPPED_COOLDOWN
    assert entry.triggered is False

    await writer.record(
        RuleExecutionLog(rule_id="r1", entity_id="e1", executed_at=NOW, triggered=False, error="x" * 5000)
    )
    assert len(store.execution_logs[-1].error) == 2000
    assert await writer.last_triggered_at("r1") is None
