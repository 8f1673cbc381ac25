"""Derived per-user summaries and the domain constants behind them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from typing import Any

from nudge.core.storage.models import MacroTargets, MetricKind, MetricReading

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Clinical thresholds for the threshold-day counts
HIGH_GLUCOSE_THRESHOLD = 110.0      # mg/dL, fasting
ELEVATED_SYSTOLIC_THRESHOLD = 140.0  # mmHg
ELEVATED_DIASTOLIC_THRESHOLD = 90.0  # mmHg

# Rolling windows, in local calendar days including today
GLUCOSE_HIGH_DAYS_WINDOW = 3
BP_ELEVATED_DAYS_WINDOW = 7
GLUCOSE_AVERAGE_WINDOW = 7
WEIGHT_CHANGE_WINDOW = 30
ADHERENCE_WINDOW = 7
STREAK_MAX_DAYS = 30

# Adherence denominator: every kind a participant is asked to log daily
TRACKED_KINDS = len(MetricKind)


# ---------------------------------------------------------------------------
# Metric summary
# ---------------------------------------------------------------------------

@dataclass
class GlucoseSummary:
    latest: float | None = None
    average_7_day: float | None = None
    high_days: int = 0


@dataclass(frozen=True)
class BloodPressure:
    systolic: float
    diastolic: float


@dataclass
class BpSummary:
    latest: BloodPressure | None = None
    elevated_days: int = 0


@dataclass
class WeightSummary:
    latest: float | None = None
    change_30_day: float | None = None


@dataclass
class LatestSummary:
    """Kinds for which only the most recent value is tracked."""

    latest: float | None = None


@dataclass
class MetricSummary:
    """Per-user metric signals at one evaluation instant. Every value is nullable."""

    glucose: GlucoseSummary = field(default_factory=GlucoseSummary)
    bp: BpSummary = field(default_factory=BpSummary)
    weight: WeightSummary = field(default_factory=WeightSummary)
    waist: LatestSummary = field(default_factory=LatestSummary)
    ketones: LatestSummary = field(default_factory=LatestSummary)

    def latest_value(self, kind: MetricKind) -> float | None:
        """Latest single value for GLUCOSE, WEIGHT, WAIST or KETONES."""
        return {
            MetricKind.GLUCOSE: self.glucose.latest,
            MetricKind.WEIGHT: self.weight.latest,
            MetricKind.WAIST: self.waist.latest,
            MetricKind.KETONES: self.ketones.latest,
        }.get(kind)

    def to_dict(self) -> dict[str, Any]:
        bp_latest = self.bp.latest
        return {
            "glucose": {
                "latest": self.glucose.latest,
                "average7Day": self.glucose.average_7_day,
                "highDays": self.glucose.high_days,
            },
            "bp": {
                "latest": (
                    {"systolic": bp_latest.systolic, "diastolic": bp_latest.diastolic}
                    if bp_latest
                    else None
                ),
                "elevatedDays": self.bp.elevated_days,
            },
            "weight": {
                "latest": self.weight.latest,
                "change30Day": self.weight.change_30_day,
            },
            "waist": {"latest": self.waist.latest},
            "ketones": {"latest": self.ketones.latest},
        }


# ---------------------------------------------------------------------------
# Activity summary
# ---------------------------------------------------------------------------

@dataclass
class ActivitySummary:
    last_log_date: date | None = None
    days_since_last_log: int | None = None  # None = never logged
    streak: int = 0
    adherence_score: int = 0  # 0-100

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastLogDate": self.last_log_date.isoformat() if self.last_log_date else None,
            "daysSinceLastLog": self.days_since_last_log,
            "streak": self.streak,
            "adherenceScore": self.adherence_score,
        }


# ---------------------------------------------------------------------------
# Evaluation context
# ---------------------------------------------------------------------------

@dataclass
class UserContext:
    """Everything the evaluators and renderer need about one user.

    ``metrics`` covers all history, backfill included. ``live_metrics``
    leaves backfilled readings out and is what event triggers consult.
    """

    user_id: str
    name: str
    tz: tzinfo
    metrics: MetricSummary
    live_metrics: MetricSummary
    activity: ActivitySummary
    targets: MacroTargets | None = None
    readings: list[MetricReading] = field(default_factory=list)
    last_logged_at: datetime | None = None

    def snapshot(self) -> dict[str, Any]:
        """Context persisted with a delivery."""
        return {
            "metrics": self.metrics.to_dict(),
            "activity": self.activity.to_dict(),
        }
