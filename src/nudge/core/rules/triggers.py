"""Typed trigger configurations parsed from persisted rule JSON.

A rule's ``schedule_json``/``conditions_json`` is validated once, at the
boundary, and turned into one of three frozen trigger types. Malformed
configs raise :class:`ConfigurationError` before they reach an evaluator.

Persisted shapes (camelCase)::

    schedule: {"hour": 0-23, "dayOfWeek": 0-6 (0 = Sunday), "dayOfMonth": 1-31}
    event:    {"metricType": "GLUCOSE", "operator": "gte", "value": 110,
               "diastolicValue": 90, "consecutiveDays": 3}
    missed:   {"inactiveDays": 3}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from nudge.core.storage.models import MetricKind, PromptRule, TriggerType

OPERATORS = frozenset({"gt", "gte", "lt", "lte", "eq"})

DEFAULT_INACTIVE_DAYS = 3


class ConfigurationError(Exception):
    """Raised when a rule's trigger configuration is malformed."""


@dataclass(frozen=True)
class ScheduleTrigger:
    """Fires when every specified local-time field matches. Empty matches always."""

    hour: int | None = None
    day_of_week: int | None = None  # 0 = Sunday
    day_of_month: int | None = None


@dataclass(frozen=True)
class EventCondition:
    """Metric threshold test, optionally over consecutive threshold days.

    For BP, ``value`` is the systolic threshold and ``diastolic_value`` the
    diastolic one.
    """

    metric_kind: MetricKind
    operator: str | None = None
    value: float | None = None
    diastolic_value: float | None = None
    consecutive_days: int | None = None


@dataclass(frozen=True)
class MissedCondition:
    inactive_days: int = DEFAULT_INACTIVE_DAYS


Trigger = Union[ScheduleTrigger, EventCondition, MissedCondition]


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _int_field(
    config: dict[str, Any], key: str, low: int, high: int | None = None
) -> int | None:
    raw = config.get(key)
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigurationError(f"'{key}' must be an integer, got {raw!r}")
    if raw < low or (high is not None and raw > high):
        bound = f"{low}-{high}" if high is not None else f">= {low}"
        raise ConfigurationError(f"'{key}' out of range ({bound}): {raw}")
    return raw


def _number_field(config: dict[str, Any], key: str) -> float | None:
    raw = config.get(key)
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ConfigurationError(f"'{key}' must be a number, got {raw!r}")
    return float(raw)


def _require_mapping(config: Any, label: str) -> dict[str, Any]:
    if not isinstance(config, dict):
        raise ConfigurationError(f"{label} must be an object, got {type(config).__name__}")
    return config


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def parse_schedule(config: Any) -> ScheduleTrigger:
    config = _require_mapping(config, "scheduleJson")
    return ScheduleTrigger(
        hour=_int_field(config, "hour", 0, 23),
        day_of_week=_int_field(config, "dayOfWeek", 0, 6),
        day_of_month=_int_field(config, "dayOfMonth", 1, 31),
    )


def parse_event(config: Any) -> EventCondition:
    config = _require_mapping(config, "conditionsJson")

    raw_kind = config.get("metricType")
    try:
        kind = MetricKind(raw_kind)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown metricType: {raw_kind!r}") from exc

    operator = config.get("operator")
    if operator is not None and operator not in OPERATORS:
        raise ConfigurationError(f"Unknown operator: {operator!r}")

    value = _number_field(config, "value")
    diastolic_value = _number_field(config, "diastolicValue")
    consecutive_days = _int_field(config, "consecutiveDays", 1)

    has_threshold = value is not None or diastolic_value is not None
    if operator is None and consecutive_days is None:
        raise ConfigurationError("Event condition needs an operator or consecutiveDays")
    if operator is not None and not has_threshold:
        raise ConfigurationError(f"Operator {operator!r} given without a threshold value")
    if diastolic_value is not None and kind is not MetricKind.BP:
        raise ConfigurationError("diastolicValue only applies to BP conditions")

    return EventCondition(
        metric_kind=kind,
        operator=operator,
        value=value,
        diastolic_value=diastolic_value,
        consecutive_days=consecutive_days,
    )


def parse_missed(config: Any) -> MissedCondition:
    if config is None:
        return MissedCondition()
    config = _require_mapping(config, "conditionsJson")
    inactive_days = _int_field(config, "inactiveDays", 1)
    return MissedCondition(
        inactive_days=inactive_days if inactive_days is not None else DEFAULT_INACTIVE_DAYS
    )


def parse_trigger(rule: PromptRule) -> Trigger:
    """Turn a rule's persisted config into a typed trigger.

    Raises:
        ConfigurationError: If the trigger type is unknown or its config is
            missing or malformed.
    """
    try:
        trigger_type = TriggerType(rule.trigger_type)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown trigger type: {rule.trigger_type!r}") from exc

    if rule.cooldown_hours is None or rule.cooldown_hours < 0:
        raise ConfigurationError(f"cooldownHours must be >= 0, got {rule.cooldown_hours!r}")

    if trigger_type is TriggerType.SCHEDULE:
        if rule.schedule_json is None:
            raise ConfigurationError("Schedule rule has no scheduleJson")
        return parse_schedule(rule.schedule_json)
    if trigger_type is TriggerType.EVENT:
        if rule.conditions_json is None:
            raise ConfigurationError("Event rule has no conditionsJson")
        return parse_event(rule.conditions_json)
    return parse_missed(rule.conditions_json)
