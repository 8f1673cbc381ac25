"""Condition evaluation: stateless trigger tests against user summaries.

Every function is pure and returns a bool. Missing data is "no signal" and
evaluates to False; unknown operators fail closed.
"""

from __future__ import annotations

import operator as _op
from collections.abc import Callable
from datetime import datetime

from nudge.core.rules.triggers import (
    EventCondition,
    MissedCondition,
    ScheduleTrigger,
    Trigger,
)
from nudge.core.storage.models import MetricKind
from nudge.domains.coaching.domain_logic.summary_models import (
    ActivitySummary,
    BpSummary,
    GlucoseSummary,
    MetricSummary,
)

# Consecutive-day requirements at or above these consult the day counts only
GLUCOSE_CONSECUTIVE_MIN = 3
BP_CONSECUTIVE_MIN = 2

_COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    "gt": _op.gt,
    "gte": _op.ge,
    "lt": _op.lt,
    "lte": _op.le,
    "eq": _op.eq,
}


def compare(value: float, operator: str | None, threshold: float) -> bool:
    """Numeric comparison by operator name. Unknown or missing operator -> False."""
    comparator = _COMPARATORS.get(operator) if operator else None
    if comparator is None:
        return False
    return comparator(value, threshold)


def js_day_of_week(moment: datetime) -> int:
    """Day of week with 0 = Sunday ... 6 = Saturday."""
    return (moment.weekday() + 1) % 7


# ---------------------------------------------------------------------------
# Trigger-type evaluators
# ---------------------------------------------------------------------------

def evaluate_schedule(schedule: ScheduleTrigger | None, local_now: datetime) -> bool:
    """True when every specified field equals the local time component.

    An empty schedule matches any time; a missing schedule never matches.
    """
    if schedule is None:
        return False
    if schedule.hour is not None and schedule.hour != local_now.hour:
        return False
    if schedule.day_of_week is not None and schedule.day_of_week != js_day_of_week(local_now):
        return False
    if schedule.day_of_month is not None and schedule.day_of_month != local_now.day:
        return False
    return True


def evaluate_missed(condition: MissedCondition | None, activity: ActivitySummary) -> bool:
    """True when the user has logged before and is at least N days overdue.

    Never-logged users (``days_since_last_log is None``) never match.
    """
    if activity.days_since_last_log is None:
        return False
    inactive_days = condition.inactive_days if condition is not None else MissedCondition().inactive_days
    return activity.days_since_last_log >= inactive_days


def evaluate_glucose(
    glucose: GlucoseSummary,
    operator: str | None,
    value: float | None,
    consecutive_days: int | None = None,
) -> bool:
    if consecutive_days is not None and consecutive_days >= GLUCOSE_CONSECUTIVE_MIN:
        return glucose.high_days >= consecutive_days
    if glucose.latest is None or value is None:
        return False
    return compare(glucose.latest, operator, value)


def evaluate_bp(
    bp: BpSummary,
    operator: str | None,
    systolic_value: float | None = None,
    diastolic_value: float | None = None,
    consecutive_days: int | None = None,
) -> bool:
    """BP test: either threshold met is enough when both are given."""
    if consecutive_days is not None and consecutive_days >= BP_CONSECUTIVE_MIN:
        return bp.elevated_days >= consecutive_days
    latest = bp.latest
    if latest is None:
        return False
    if systolic_value is not None and diastolic_value is not None:
        return compare(latest.systolic, operator, systolic_value) or compare(
            latest.diastolic, operator, diastolic_value
        )
    if systolic_value is not None:
        return compare(latest.systolic, operator, systolic_value)
    if diastolic_value is not None:
        return compare(latest.diastolic, operator, diastolic_value)
    return False


def evaluate_latest(latest: float | None, operator: str | None, value: float | None) -> bool:
    """Latest-value comparison for weight, waist and ketones."""
    if latest is None or value is None:
        return False
    return compare(latest, operator, value)


def evaluate_event(condition: EventCondition, metrics: MetricSummary) -> bool:
    kind = condition.metric_kind
    if kind is MetricKind.GLUCOSE:
        return evaluate_glucose(
            metrics.glucose, condition.operator, condition.value, condition.consecutive_days
        )
    if kind is MetricKind.BP:
        return evaluate_bp(
            metrics.bp,
            condition.operator,
            condition.value,
            condition.diastolic_value,
            condition.consecutive_days,
        )
    return evaluate_latest(metrics.latest_value(kind), condition.operator, condition.value)


def evaluate_trigger(
    trigger: Trigger,
    *,
    local_now: datetime,
    metrics: MetricSummary,
    activity: ActivitySummary,
) -> bool:
    """Dispatch a parsed trigger to its evaluator."""
    if isinstance(trigger, ScheduleTrigger):
        return evaluate_schedule(trigger, local_now)
    if isinstance(trigger, EventCondition):
        return evaluate_event(trigger, metrics)
    if isinstance(trigger, MissedCondition):
        return evaluate_missed(trigger, activity)
    return False
