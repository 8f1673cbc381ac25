"""Cohort outcome analysis: before/after change per metric over a window.

Each participant contributes ``latest - earliest`` for a metric when they
have at least two readings with a value in the window. Backfilled readings
count; they are real history.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from nudge.core.storage.models import MetricKind, MetricReading
from nudge.core.storage.store import CoachingStore
from nudge.domains.coaching.domain_logic.aggregator import round_half_up

logger = logging.getLogger(__name__)

# Fewer contributing participants than this marks a result as limited
LIMITED_DATA_THRESHOLD = 5

# Report key -> metric kind
OUTCOME_KINDS: dict[str, MetricKind] = {
    "weight": MetricKind.WEIGHT,
    "waist": MetricKind.WAIST,
    "fastingGlucose": MetricKind.GLUCOSE,
}


@dataclass
class OutcomeMetric:
    metric_kind: MetricKind
    mean_change: float
    participant_count: int
    limited_data: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "metricType": self.metric_kind.value,
            "meanChange": self.mean_change,
            "participantCount": self.participant_count,
            "limitedData": self.limited_data,
        }


def compute_outcome_change(readings: Iterable[MetricReading], kind: MetricKind) -> float | None:
    """``latest - earliest`` of one user's ``kind`` readings, by observation time.

    Returns None when fewer than two readings carry a value. Zero is a value.
    """
    values = _ordered_values(readings, kind)
    if len(values) < 2:
        return None
    return values[-1] - values[0]


def _ordered_values(readings: Iterable[MetricReading], kind: MetricKind) -> list[float]:
    ordered = sorted(
        (r for r in readings if r.kind is kind),
        key=lambda r: (r.observed_at, r.created_at),
    )
    values = []
    for reading in ordered:
        value = reading.numeric_value()
        if value is not None:
            values.append(value)
    return values


def summarize_changes(changes: list[float], kind: MetricKind) -> OutcomeMetric:
    """Mean of per-user changes, rounded to one decimal."""
    mean = sum(changes) / len(changes) if changes else 0.0
    return OutcomeMetric(
        metric_kind=kind,
        mean_change=round_half_up(mean, 1),
        participant_count=len(changes),
        limited_data=len(changes) < LIMITED_DATA_THRESHOLD,
    )


class OutcomeAnalyzer:
    """Computes cohort-level outcome changes from stored readings.

    Usage::

        analyzer = OutcomeAnalyzer(repository)
        report = analyzer.compute_outcomes(now, days=30)
        report["weight"].mean_change
    """

    def __init__(self, store: CoachingStore) -> None:
        self._store = store

    def compute_outcomes(
        self,
        now: datetime,
        *,
        days: int = 30,
        coach_id: str | None = None,
        user_ids: Iterable[str] | None = None,
    ) -> dict[str, OutcomeMetric]:
        """Outcome change for weight, waist and fasting glucose.

        Args:
            now: End of the window.
            days: Window length.
            coach_id: Limit the cohort to one coach's participants.
            user_ids: Explicit cohort; overrides the participant lookup.

        Returns:
            Mapping of report key ("weight", "waist", "fastingGlucose") to
            its OutcomeMetric.
        """
        if user_ids is not None:
            cohort = set(user_ids)
        else:
            cohort = {p.id for p in self._store.get_participants(role="participant", coach_id=coach_id)}

        since = now - timedelta(days=days)
        by_user: dict[str, list[MetricReading]] = defaultdict(list)
        for reading in self._store.get_readings_since(since):
            if reading.user_id in cohort and reading.observed_at <= now:
                by_user[reading.user_id].append(reading)

        report: dict[str, OutcomeMetric] = {}
        for key, kind in OUTCOME_KINDS.items():
            changes = []
            for user_readings in by_user.values():
                change = compute_outcome_change(user_readings, kind)
                if change is not None:
                    changes.append(change)
            report[key] = summarize_changes(changes, kind)

        logger.debug("Computed outcomes for %d participants over %d days", len(cohort), days)
        return report
