"""Behavior rules: parsed rule rows and message rendering."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from rule_evaluator.triggers import (
    MISSING,
    Condition,
    TriggerDefinitionError,
    lookup_sensor,
    parse_condition,
)
from shared.utils import normalize_json

FALLBACK_MESSAGE = "A rule was triggered!"

_PLACEHOLDER = re.compile(r"\{([\w.]+)\}")


class ActionType(str, Enum):
    NOTIFY = "notify"
    ALERT = "alert"
    RESPOND = "respond"
    LOG = "log"
    WEBHOOK = "webhook"
    PROMPT = "prompt"


@dataclass(frozen=True)
class RuleAction:
    type: ActionType
    message: Optional[str] = None
    default_message: Optional[str] = None
    channels: tuple[str, ...] = ()
    parameters: dict = field(default_factory=dict)


@dataclass(frozen=True)
class BehaviorRule:
    id: str
    entity_id: str
    name: str
    trigger: Condition
    action: RuleAction
    priority: int = 0
    enabled: bool = True
    cooldown_seconds: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def parse_action(data: Any) -> RuleAction:
    data = normalize_json(data)
    if not isinstance(data, Mapping):
        raise TriggerDefinitionError("rule action must be an object")
    raw_type = str(data.get("type") or "").lower()
    try:
        action_type = ActionType(raw_type)
    except ValueError:
        raise TriggerDefinitionError(f"unknown action type: {raw_type!r}")

    channels = data.get("channels") or ()
    if isinstance(channels, str):
        channels = (channels,)
    params = data.get("parameters") or {}
    if not isinstance(params, Mapping):
        raise TriggerDefinitionError("action parameters must be an object")

    return RuleAction(
        type=action_type,
        message=data.get("message") or params.get("message"),
        default_message=data.get("default_message", data.get("defaultMessage")),
        channels=tuple(str(c).upper() for c in channels),
        parameters=dict(params),
    )


def parse_rule(row: Mapping[str, Any]) -> BehaviorRule:
    """Build a BehaviorRule from a behavior_rules row.

    Raises TriggerDefinitionError when the trigger or action JSON is invalid.
    """
    trigger_data = normalize_json(row.get("trigger"))
    if trigger_data is None:
        raise TriggerDefinitionError(f"rule {row.get('id')} has no trigger")

    cooldown = row.get("cooldown_seconds")
    if cooldown is None and isinstance(trigger_data, Mapping):
        cooldown = trigger_data.get("cooldown")
    if cooldown is not None:
        try:
            cooldown = int(cooldown)
        except (TypeError, ValueError):
            raise TriggerDefinitionError(f"rule {row.get('id')} has invalid cooldown {cooldown!r}")
        if cooldown <= 0:
            cooldown = None

    return BehaviorRule(
        id=str(row["id"]),
        entity_id=str(row["entity_id"]),
        name=row.get("name") or "",
        trigger=parse_condition(trigger_data),
        action=parse_action(row.get("action")),
        priority=int(row.get("priority") or 0),
        enabled=bool(row.get("enabled", True)),
        cooldown_seconds=cooldown,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def sort_rules(rules: list[BehaviorRule]) -> list[BehaviorRule]:
    """Priority descending, id ascending."""
    return sorted(rules, key=lambda r: (-r.priority, r.id))


def render_message(action: RuleAction, snapshot: Mapping[str, Any]) -> str:
    template = action.message
    if not template:
        return action.default_message or FALLBACK_MESSAGE

    def _sub(match: re.Match) -> str:
        value = lookup_sensor(snapshot, match.group(1))
        if value is MISSING or value is None:
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(_sub, template)
