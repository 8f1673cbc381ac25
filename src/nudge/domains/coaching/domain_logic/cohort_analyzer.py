"""Coach dashboard analytics: health flags and a cohort overview.

Flags surface participants who need attention (sustained high glucose,
elevated blood pressure, missed logging). The overview summarizes
engagement across a coach's cohort.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from nudge.core.storage.models import MetricKind, MetricReading, Participant
from nudge.core.storage.store import CoachingStore
from nudge.domains.coaching.domain_logic.aggregator import (
    MetricAggregator,
    local_date,
    resolve_timezone,
    round_half_up,
)

logger = logging.getLogger(__name__)

HIGH_GLUCOSE_MIN_DAYS = 3
ELEVATED_BP_MIN_DAYS = 2
MISSED_LOGGING_DAYS = 3
STREAK_MILESTONE = 3


class FlagType(str, Enum):
    HIGH_GLUCOSE = "high_glucose"
    ELEVATED_BP = "elevated_bp"
    MISSED_LOGGING = "missed_logging"


@dataclass
class HealthFlag:
    type: FlagType
    participant_id: str
    participant_name: str
    participant_email: str
    coach_id: str | None
    coach_name: str | None
    last_log_date: str | None
    details: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "participantId": self.participant_id,
            "participantName": self.participant_name,
            "participantEmail": self.participant_email,
            "coachId": self.coach_id,
            "coachName": self.coach_name,
            "lastLogDate": self.last_log_date,
            "details": self.details,
        }


@dataclass
class CohortFlags:
    flags: list[HealthFlag] = field(default_factory=list)

    def count(self, flag_type: FlagType) -> int:
        return sum(1 for f in self.flags if f.type is flag_type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "highGlucoseCount": self.count(FlagType.HIGH_GLUCOSE),
            "elevatedBpCount": self.count(FlagType.ELEVATED_BP),
            "missedLoggingCount": self.count(FlagType.MISSED_LOGGING),
            "flags": [f.to_dict() for f in self.flags],
        }


@dataclass
class CohortOverview:
    total_participants: int = 0
    active_participants: int = 0
    inactive_participants: int = 0
    new_participants_7_days: int = 0
    new_participants_30_days: int = 0
    average_weekly_adherence: int = 0
    participants_with_streak_3_days: int = 0
    participants_with_streak_3_days_percent: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalParticipants": self.total_participants,
            "activeParticipants": self.active_participants,
            "inactiveParticipants": self.inactive_participants,
            "newParticipants7Days": self.new_participants_7_days,
            "newParticipants30Days": self.new_participants_30_days,
            "averageWeeklyAdherence": self.average_weekly_adherence,
            "participantsWithStreak3Days": self.participants_with_streak_3_days,
            "participantsWithStreak3DaysPercent": self.participants_with_streak_3_days_percent,
        }


class CohortAnalyzer:
    """Flags and overview for a cohort of participants.

    Usage::

        analyzer = CohortAnalyzer(repository, MetricAggregator())
        flags = analyzer.compute_flags(now, coach_id="coach-1")
        overview = analyzer.compute_overview(now, days=7)
    """

    def __init__(
        self,
        store: CoachingStore,
        aggregator: MetricAggregator,
        *,
        default_timezone: str = "UTC",
    ) -> None:
        self._store = store
        self._aggregator = aggregator
        self._default_timezone = default_timezone

    def _cohort(self, coach_id: str | None) -> list[Participant]:
        return self._store.get_participants(role="participant", coach_id=coach_id)

    def _readings_by_user(self, since: datetime, now: datetime) -> dict[str, list[MetricReading]]:
        grouped: dict[str, list[MetricReading]] = defaultdict(list)
        for reading in self._store.get_readings_since(since):
            if reading.observed_at <= now:
                grouped[reading.user_id].append(reading)
        return grouped

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    def compute_flags(self, now: datetime, *, coach_id: str | None = None) -> CohortFlags:
        """Health flags for every participant in the cohort."""
        participants = self._cohort(coach_id)
        coaches = {c.id: c.name for c in self._store.get_participants(role="coach")}
        thresholds = self._aggregator.thresholds
        window = max(thresholds.glucose_window, thresholds.bp_window)
        readings_by_user = self._readings_by_user(now - timedelta(days=window), now)

        result = CohortFlags()
        for participant in participants:
            tz = resolve_timezone(participant.timezone, self._default_timezone)
            readings = readings_by_user.get(participant.id, [])

            def flag(flag_type: FlagType, last_log: str | None, details: str) -> HealthFlag:
                return HealthFlag(
                    type=flag_type,
                    participant_id=participant.id,
                    participant_name=participant.name,
                    participant_email=participant.email,
                    coach_id=participant.coach_id,
                    coach_name=coaches.get(participant.coach_id) if participant.coach_id else None,
                    last_log_date=last_log,
                    details=details,
                )

            def last_of(kind: MetricKind) -> str | None:
                of_kind = [r.observed_at for r in readings if r.kind is kind]
                return local_date(max(of_kind), tz).isoformat() if of_kind else None

            high_days = self._aggregator.glucose_high_days(readings, now, tz)
            if high_days >= HIGH_GLUCOSE_MIN_DAYS:
                result.flags.append(flag(
                    FlagType.HIGH_GLUCOSE,
                    last_of(MetricKind.GLUCOSE),
                    f"High fasting glucose (>={thresholds.high_glucose:g}) on {high_days} days",
                ))

            elevated_days = self._aggregator.bp_elevated_days(readings, now, tz)
            if elevated_days >= ELEVATED_BP_MIN_DAYS:
                result.flags.append(flag(
                    FlagType.ELEVATED_BP,
                    last_of(MetricKind.BP),
                    f"Elevated BP (>={thresholds.elevated_systolic:g}/"
                    f"{thresholds.elevated_diastolic:g}) on {elevated_days} days "
                    f"in last {thresholds.bp_window} days",
                ))

            last_logged_at = self._store.get_last_observed_at(participant.id)
            if last_logged_at is None:
                if participant.created_at is not None:
                    account_days = (now - participant.created_at).days
                    if account_days >= MISSED_LOGGING_DAYS:
                        result.flags.append(flag(
                            FlagType.MISSED_LOGGING,
                            None,
                            f"No logs since account creation ({account_days} days)",
                        ))
            else:
                last_day = local_date(last_logged_at, tz)
                days_since = (local_date(now, tz) - last_day).days
                if days_since >= MISSED_LOGGING_DAYS:
                    result.flags.append(flag(
                        FlagType.MISSED_LOGGING,
                        last_day.isoformat(),
                        f"No logs for {days_since} days",
                    ))

        logger.debug("Computed %d flags for %d participants", len(result.flags), len(participants))
        return result

    # ------------------------------------------------------------------
    # Overview
    # ------------------------------------------------------------------

    def compute_overview(
        self, now: datetime, *, days: int = 7, coach_id: str | None = None
    ) -> CohortOverview:
        """Engagement overview of the cohort over the last ``days`` days."""
        participants = self._cohort(coach_id)
        if not participants:
            return CohortOverview()

        lookback = max(days, self._aggregator.thresholds.streak_max)
        readings_by_user = self._readings_by_user(now - timedelta(days=lookback), now)
        window_start = now - timedelta(days=days)

        active = 0
        adherence_scores: list[int] = []
        with_streak = 0
        for participant in participants:
            tz = resolve_timezone(participant.timezone, self._default_timezone)
            readings = readings_by_user.get(participant.id, [])
            if any(r.observed_at >= window_start for r in readings):
                active += 1
                adherence_scores.append(self._aggregator.adherence_score(readings, now, tz))
            if self._aggregator.logging_streak(readings, now, tz) >= STREAK_MILESTONE:
                with_streak += 1

        def joined_within(span: int) -> int:
            cutoff = now - timedelta(days=span)
            return sum(1 for p in participants if p.created_at and p.created_at >= cutoff)

        total = len(participants)
        average = sum(adherence_scores) / len(adherence_scores) if adherence_scores else 0
        return CohortOverview(
            total_participants=total,
            active_participants=active,
            inactive_participants=total - active,
            new_participants_7_days=joined_within(7),
            new_participants_30_days=joined_within(30),
            average_weekly_adherence=int(round_half_up(average)),
            participants_with_streak_3_days=with_streak,
            participants_with_streak_3_days_percent=int(round_half_up(with_streak / total * 100)),
        )
