"""Metric aggregation: raw readings -> MetricSummary / ActivitySummary.

Every day-based count buckets readings by the local calendar day of their
observation time in the participant's timezone. Readings observed after the
as-of instant are ignored. Presence checks are explicit: a reading of ``0``
is a value.

All functions are pure and safe to call concurrently for different users.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from nudge.core.storage.models import BACKFILL_THRESHOLD, MetricKind, MetricReading
from nudge.domains.coaching.domain_logic.summary_models import (
    ADHERENCE_WINDOW,
    BP_ELEVATED_DAYS_WINDOW,
    ELEVATED_DIASTOLIC_THRESHOLD,
    ELEVATED_SYSTOLIC_THRESHOLD,
    GLUCOSE_AVERAGE_WINDOW,
    GLUCOSE_HIGH_DAYS_WINDOW,
    HIGH_GLUCOSE_THRESHOLD,
    STREAK_MAX_DAYS,
    TRACKED_KINDS,
    WEIGHT_CHANGE_WINDOW,
    ActivitySummary,
    BloodPressure,
    BpSummary,
    GlucoseSummary,
    LatestSummary,
    MetricSummary,
    WeightSummary,
)

logger = logging.getLogger(__name__)


class DataUnavailableError(Exception):
    """Raised by the ``require_*`` helpers when a signal has no data."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def round_half_up(value: float, places: int = 0) -> float:
    """Round to ``places`` decimals with halves going away from zero."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def resolve_timezone(name: str | None, default: str = "UTC") -> tzinfo:
    """Map an IANA name to a tzinfo, falling back to ``default`` when unknown."""
    for candidate in (name, default):
        if not candidate:
            continue
        if candidate.upper() == "UTC":
            return timezone.utc
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back", candidate)
    return timezone.utc


def local_date(moment: datetime, tz: tzinfo) -> date:
    """Local calendar day of an instant. Naive datetimes are read as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz).date()


def trailing_days(today: date, window: int) -> set[date]:
    """The ``window`` local days ending at (and including) ``today``."""
    return {today - timedelta(days=offset) for offset in range(max(window, 0))}


def lookback_start(now: datetime, tz: tzinfo, days: int) -> datetime:
    """UTC instant at the start of the local day ``days - 1`` days before today.

    Loading readings observed at or after this instant covers a window of
    ``days`` local days.
    """
    first_day = local_date(now, tz) - timedelta(days=max(days, 1) - 1)
    local_midnight = datetime.combine(first_day, datetime.min.time()).replace(tzinfo=tz)
    return local_midnight.astimezone(timezone.utc)


def _chronological(readings: Iterable[MetricReading]) -> list[MetricReading]:
    return sorted(readings, key=lambda r: (r.observed_at, r.created_at))


@dataclass(frozen=True)
class AggregationThresholds:
    """Clinical thresholds and window widths used by the aggregator."""

    high_glucose: float = HIGH_GLUCOSE_THRESHOLD
    elevated_systolic: float = ELEVATED_SYSTOLIC_THRESHOLD
    elevated_diastolic: float = ELEVATED_DIASTOLIC_THRESHOLD
    glucose_window: int = GLUCOSE_HIGH_DAYS_WINDOW
    bp_window: int = BP_ELEVATED_DAYS_WINDOW
    average_window: int = GLUCOSE_AVERAGE_WINDOW
    change_window: int = WEIGHT_CHANGE_WINDOW
    adherence_window: int = ADHERENCE_WINDOW
    streak_max: int = STREAK_MAX_DAYS

    @property
    def lookback_days(self) -> int:
        """Widest window any default summary field needs."""
        return max(
            self.glucose_window,
            self.bp_window,
            self.average_window,
            self.change_window,
            self.adherence_window,
            self.streak_max,
        )


class MetricAggregator:
    """Turns a user's readings into metric and activity summaries.

    Usage::

        aggregator = MetricAggregator()
        summary = aggregator.summarize_metrics(readings, now, tz)
        live = aggregator.summarize_metrics(readings, now, tz, include_backfilled=False)
        activity = aggregator.summarize_activity(readings, now, tz)
    """

    def __init__(
        self,
        thresholds: AggregationThresholds | None = None,
        *,
        backfill_threshold: timedelta = BACKFILL_THRESHOLD,
    ) -> None:
        self.thresholds = thresholds or AggregationThresholds()
        self.backfill_threshold = backfill_threshold

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def _usable(
        self,
        readings: Iterable[MetricReading],
        now: datetime,
        *,
        include_backfilled: bool = True,
    ) -> list[MetricReading]:
        usable = []
        for reading in readings:
            if reading.observed_at > now:
                continue
            if not include_backfilled and reading.is_backfilled(self.backfill_threshold):
                continue
            usable.append(reading)
        return _chronological(usable)

    # ------------------------------------------------------------------
    # Metric summary
    # ------------------------------------------------------------------

    def summarize_metrics(
        self,
        readings: Iterable[MetricReading],
        now: datetime,
        tz: tzinfo,
        *,
        include_backfilled: bool = True,
    ) -> MetricSummary:
        """Build the MetricSummary as of ``now``.

        Args:
            readings: The user's readings; any order, any kinds.
            now: As-of instant (timezone-aware).
            tz: The participant's timezone for local-day bucketing.
            include_backfilled: False to leave backfilled readings out, as
                needed for real-time event evaluation.
        """
        usable = self._usable(readings, now, include_backfilled=include_backfilled)
        today = local_date(now, tz)
        by_kind: dict[MetricKind, list[MetricReading]] = defaultdict(list)
        for reading in usable:
            by_kind[reading.kind].append(reading)

        t = self.thresholds
        glucose = by_kind[MetricKind.GLUCOSE]
        bp = by_kind[MetricKind.BP]

        return MetricSummary(
            glucose=GlucoseSummary(
                latest=self._latest_value(glucose),
                average_7_day=self._average(glucose, today, tz, t.average_window),
                high_days=self.glucose_high_days(
                    glucose, now, tz, threshold=t.high_glucose, window=t.glucose_window
                ),
            ),
            bp=BpSummary(
                latest=self._latest_bp(bp),
                elevated_days=self.bp_elevated_days(
                    bp,
                    now,
                    tz,
                    systolic=t.elevated_systolic,
                    diastolic=t.elevated_diastolic,
                    window=t.bp_window,
                ),
            ),
            weight=WeightSummary(
                latest=self._latest_value(by_kind[MetricKind.WEIGHT]),
                change_30_day=self._change(by_kind[MetricKind.WEIGHT], today, tz, t.change_window),
            ),
            waist=LatestSummary(latest=self._latest_value(by_kind[MetricKind.WAIST])),
            ketones=LatestSummary(latest=self._latest_value(by_kind[MetricKind.KETONES])),
        )

    @staticmethod
    def _latest_value(readings: list[MetricReading]) -> float | None:
        for reading in reversed(readings):
            value = reading.numeric_value()
            if value is not None:
                return value
        return None

    @staticmethod
    def _latest_bp(readings: list[MetricReading]) -> BloodPressure | None:
        for reading in reversed(readings):
            pair = reading.blood_pressure()
            if pair is not None:
                return BloodPressure(systolic=pair[0], diastolic=pair[1])
        return None

    @staticmethod
    def _values_in_window(
        readings: list[MetricReading], today: date, tz: tzinfo, window: int
    ) -> list[float]:
        days = trailing_days(today, window)
        values = []
        for reading in readings:
            if local_date(reading.observed_at, tz) not in days:
                continue
            value = reading.numeric_value()
            if value is not None:
                values.append(value)
        return values

    def _average(
        self, readings: list[MetricReading], today: date, tz: tzinfo, window: int
    ) -> float | None:
        values = self._values_in_window(readings, today, tz, window)
        if not values:
            return None
        return sum(values) / len(values)

    def _change(
        self, readings: list[MetricReading], today: date, tz: tzinfo, window: int
    ) -> float | None:
        values = self._values_in_window(readings, today, tz, window)
        if len(values) < 2:
            return None
        return values[-1] - values[0]

    # ------------------------------------------------------------------
    # Threshold-day counts
    # ------------------------------------------------------------------

    def glucose_high_days(
        self,
        readings: Iterable[MetricReading],
        now: datetime,
        tz: tzinfo,
        *,
        threshold: float | None = None,
        window: int | None = None,
    ) -> int:
        """Distinct local days in the trailing window with glucose >= threshold."""
        threshold = self.thresholds.high_glucose if threshold is None else threshold
        window = self.thresholds.glucose_window if window is None else window
        days = trailing_days(local_date(now, tz), window)
        high: set[date] = set()
        for reading in readings:
            if reading.kind is not MetricKind.GLUCOSE or reading.observed_at > now:
                continue
            day = local_date(reading.observed_at, tz)
            value = reading.numeric_value()
            if day in days and value is not None and value >= threshold:
                high.add(day)
        return len(high)

    def bp_elevated_days(
        self,
        readings: Iterable[MetricReading],
        now: datetime,
        tz: tzinfo,
        *,
        systolic: float | None = None,
        diastolic: float | None = None,
        window: int | None = None,
    ) -> int:
        """Distinct local days in the trailing window with an elevated BP reading.

        A reading is elevated when systolic >= ``systolic`` or diastolic >=
        ``diastolic``. Passing None for one threshold leaves that side
        unchecked; at least one must be set.
        """
        if systolic is None and diastolic is None:
            systolic = self.thresholds.elevated_systolic
            diastolic = self.thresholds.elevated_diastolic
        window = self.thresholds.bp_window if window is None else window
        days = trailing_days(local_date(now, tz), window)
        elevated: set[date] = set()
        for reading in readings:
            if reading.observed_at > now:
                continue
            pair = reading.blood_pressure()
            if pair is None:
                continue
            day = local_date(reading.observed_at, tz)
            if day not in days:
                continue
            high_systolic = systolic is not None and pair[0] >= systolic
            high_diastolic = diastolic is not None and pair[1] >= diastolic
            if high_systolic or high_diastolic:
                elevated.add(day)
        return len(elevated)

    # ------------------------------------------------------------------
    # Activity summary
    # ------------------------------------------------------------------

    def summarize_activity(
        self,
        readings: Iterable[MetricReading],
        now: datetime,
        tz: tzinfo,
        *,
        last_logged_at: datetime | None = None,
    ) -> ActivitySummary:
        """Build the ActivitySummary as of ``now``.

        Args:
            readings: The user's readings, backfill included.
            now: As-of instant.
            tz: The participant's timezone.
            last_logged_at: Observation time of the user's most recent reading
                of any age, when ``readings`` only covers a recent window.
        """
        usable = self._usable(readings, now)
        today = local_date(now, tz)

        candidates = [r.observed_at for r in usable]
        if last_logged_at is not None and last_logged_at <= now:
            candidates.append(last_logged_at)
        last_log_date = local_date(max(candidates), tz) if candidates else None

        return ActivitySummary(
            last_log_date=last_log_date,
            days_since_last_log=(today - last_log_date).days if last_log_date else None,
            streak=self.logging_streak(usable, now, tz),
            adherence_score=self.adherence_score(usable, now, tz),
        )

    def logging_streak(self, readings: Iterable[MetricReading], now: datetime, tz: tzinfo) -> int:
        """Consecutive local days with any reading, counting back from today.

        A day without readings today yields 0. Lookback is capped.
        """
        logged = {
            local_date(r.observed_at, tz) for r in readings if r.observed_at <= now
        }
        today = local_date(now, tz)
        streak = 0
        for offset in range(self.thresholds.streak_max):
            if today - timedelta(days=offset) not in logged:
                break
            streak += 1
        return streak

    def adherence_score(self, readings: Iterable[MetricReading], now: datetime, tz: tzinfo) -> int:
        """Percentage of tracked kinds logged per day over the recent window.

        Each local day with data in the window contributes
        ``distinct_kinds / 5``; the sum is divided by
        ``min(days_with_data, adherence_window)`` and scaled to 0-100.
        """
        days = trailing_days(local_date(now, tz), self.thresholds.adherence_window)
        kinds_by_day: dict[date, set[MetricKind]] = defaultdict(set)
        for reading in readings:
            if reading.observed_at > now:
                continue
            day = local_date(reading.observed_at, tz)
            if day in days:
                kinds_by_day[day].add(reading.kind)

        if not kinds_by_day:
            return 0
        total = sum(len(kinds) / TRACKED_KINDS for kinds in kinds_by_day.values())
        score = total / min(len(kinds_by_day), self.thresholds.adherence_window)
        return int(round_half_up(score * 100))


# ---------------------------------------------------------------------------
# Explicit presence requirements
# ---------------------------------------------------------------------------

def require_latest(summary: MetricSummary, kind: MetricKind) -> float:
    """Latest value of ``kind`` or DataUnavailableError when there is none."""
    value = summary.latest_value(kind)
    if value is None:
        raise DataUnavailableError(f"No {kind.value} reading available")
    return value


def require_latest_bp(summary: MetricSummary) -> BloodPressure:
    if summary.bp.latest is None:
        raise DataUnavailableError("No BP reading available")
    return summary.bp.latest
