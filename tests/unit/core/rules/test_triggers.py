"""Tests for trigger config parsing and validation."""

from __future__ import annotations

import pytest

from nudge.core.rules.triggers import (
    ConfigurationError,
    EventCondition,
    MissedCondition,
    ScheduleTrigger,
    parse_trigger,
)
from nudge.core.storage.models import MetricKind, PromptRule, TriggerType


def _rule(trigger_type, *, schedule=None, conditions=None, cooldown=24) -> PromptRule:
    return PromptRule(
        id="r1",
        key="rule",
        prompt_id="p1",
        trigger_type=trigger_type,
        schedule_json=schedule,
        conditions_json=conditions,
        cooldown_hours=cooldown,
    )


class TestSchedule:
    def test_full_schedule(self):
        trigger = parse_trigger(
            _rule(TriggerType.SCHEDULE, schedule={"hour": 8, "dayOfWeek": 1, "dayOfMonth": 15})
        )
        assert trigger == ScheduleTrigger(hour=8, day_of_week=1, day_of_month=15)

    def test_empty_schedule_is_valid(self):
        assert parse_trigger(_rule(TriggerType.SCHEDULE, schedule={})) == ScheduleTrigger()

    def test_missing_schedule_rejected(self):
        with pytest.raises(ConfigurationError, match="no scheduleJson"):
            parse_trigger(_rule(TriggerType.SCHEDULE))

    @pytest.mark.parametrize(
        "schedule",
        [{"hour": 24}, {"dayOfWeek": 7}, {"dayOfMonth": 0}, {"hour": "8"}, {"hour": True}],
    )
    def test_out_of_range_or_wrong_type(self, schedule):
        with pytest.raises(ConfigurationError):
            parse_trigger(_rule(TriggerType.SCHEDULE, schedule=schedule))


class TestEvent:
    def test_glucose_consecutive(self):
        trigger = parse_trigger(_rule(
            TriggerType.EVENT,
            conditions={"metricType": "GLUCOSE", "operator": "gte", "value": 110, "consecutiveDays": 3},
        ))
        assert trigger == EventCondition(MetricKind.GLUCOSE, "gte", 110.0, None, 3)

    def test_bp_both_thresholds(self):
        trigger = parse_trigger(_rule(
            TriggerType.EVENT,
            conditions={"metricType": "BP", "operator": "gte", "value": 140, "diastolicValue": 90},
        ))
        assert trigger.value == 140.0
        assert trigger.diastolic_value == 90.0

    def test_bp_diastolic_only(self):
        trigger = parse_trigger(_rule(
            TriggerType.EVENT,
            conditions={"metricType": "BP", "operator": "gte", "diastolicValue": 90},
        ))
        assert trigger.value is None
        assert trigger.diastolic_value == 90.0

    @pytest.mark.parametrize(
        "conditions, message",
        [
            ({"metricType": "STEPS", "operator": "gt", "value": 1}, "metricType"),
            ({"metricType": "GLUCOSE", "operator": "between", "value": 1}, "operator"),
            ({"metricType": "GLUCOSE"}, "operator or consecutiveDays"),
            ({"metricType": "GLUCOSE", "operator": "gt"}, "without a threshold"),
            ({"metricType": "WEIGHT", "operator": "gt", "value": 1, "diastolicValue": 2}, "only applies to BP"),
            ({"metricType": "GLUCOSE", "operator": "gt", "value": "high"}, "must be a number"),
        ],
    )
    def test_malformed(self, conditions, message):
        with pytest.raises(ConfigurationError, match=message):
            parse_trigger(_rule(TriggerType.EVENT, conditions=conditions))

    def test_missing_conditions(self):
        with pytest.raises(ConfigurationError, match="no conditionsJson"):
            parse_trigger(_rule(TriggerType.EVENT))


class TestMissed:
    def test_default_inactive_days(self):
        assert parse_trigger(_rule(TriggerType.MISSED)) == MissedCondition(inactive_days=3)

    def test_custom_inactive_days(self):
        trigger = parse_trigger(_rule(TriggerType.MISSED, conditions={"inactiveDays": 5}))
        assert trigger.inactive_days == 5

    def test_zero_inactive_days_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_trigger(_rule(TriggerType.MISSED, conditions={"inactiveDays": 0}))


def test_unknown_trigger_type():
    with pytest.raises(ConfigurationError, match="Unknown trigger type"):
        parse_trigger(_rule("webhook"))


def test_negative_cooldown():
    with pytest.raises(ConfigurationError, match="cooldownHours"):
        parse_trigger(_rule(TriggerType.MISSED, cooldown=-1))
