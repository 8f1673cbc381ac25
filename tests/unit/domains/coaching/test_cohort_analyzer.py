"""Tests for coach dashboard flags and the cohort overview."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import NOW, make_bp, make_reading
from nudge.core.storage.models import MetricKind, Participant
from nudge.domains.coaching.domain_logic.aggregator import MetricAggregator
from nudge.domains.coaching.domain_logic.cohort_analyzer import CohortAnalyzer, FlagType


@pytest.fixture
def analyzer(coaching_repository) -> CohortAnalyzer:
    return CohortAnalyzer(coaching_repository, MetricAggregator())


def _types(flags, participant_id="u1"):
    return {f.type for f in flags.flags if f.participant_id == participant_id}


class TestFlags:
    def test_high_glucose(self, analyzer, participant, add_readings):
        add_readings(*(make_reading(MetricKind.GLUCOSE, 118, days_ago=d) for d in (0, 1, 2)))
        flags = analyzer.compute_flags(NOW)
        [flag] = flags.flags
        assert flag.type is FlagType.HIGH_GLUCOSE
        assert flag.last_log_date == "2026-03-18"
        assert "3 days" in flag.details

    def test_two_high_days_is_not_flagged(self, analyzer, participant, add_readings):
        add_readings(*(make_reading(MetricKind.GLUCOSE, 118, days_ago=d) for d in (0, 1)))
        assert analyzer.compute_flags(NOW).flags == []

    def test_elevated_bp(self, analyzer, participant, add_readings):
        add_readings(make_bp(145, 80, days_ago=1), make_bp(120, 95, days_ago=5))
        flags = analyzer.compute_flags(NOW)
        assert _types(flags) == {FlagType.ELEVATED_BP}
        assert flags.to_dict()["elevatedBpCount"] == 1

    def test_missed_logging(self, analyzer, participant, add_readings):
        add_readings(make_reading(days_ago=5))
        [flag] = analyzer.compute_flags(NOW).flags
        assert flag.type is FlagType.MISSED_LOGGING
        assert flag.last_log_date == "2026-03-13"
        assert flag.details == "No logs for 5 days"

    def test_never_logged_after_three_days(self, analyzer, participant):
        [flag] = analyzer.compute_flags(NOW).flags
        assert flag.type is FlagType.MISSED_LOGGING
        assert flag.last_log_date is None

    def test_new_account_not_flagged(self, analyzer, coaching_repository):
        coaching_repository.upsert_participant(
            Participant(id="fresh", created_at=NOW - timedelta(days=1))
        )
        assert analyzer.compute_flags(NOW).flags == []

    def test_coach_details_and_filter(self, analyzer, coaching_repository, add_readings):
        coaching_repository.upsert_participant(Participant(id="c1", name="Coach Kim", role="coach"))
        coaching_repository.upsert_participant(
            Participant(id="p1", name="Pat", coach_id="c1", created_at=NOW - timedelta(days=30))
        )
        coaching_repository.upsert_participant(
            Participant(id="p2", coach_id="c2", created_at=NOW - timedelta(days=30))
        )

        flags = analyzer.compute_flags(NOW, coach_id="c1")

        [flag] = flags.flags
        assert flag.participant_id == "p1"
        assert flag.coach_name == "Coach Kim"
        assert flag.to_dict()["participantName"] == "Pat"


class TestOverview:
    def test_empty_cohort(self, analyzer):
        assert analyzer.compute_overview(NOW).to_dict()["totalParticipants"] == 0

    def test_overview_counts(self, analyzer, coaching_repository, participant, add_readings):
        coaching_repository.upsert_participant(
            Participant(id="u2", created_at=NOW - timedelta(days=20))
        )
        coaching_repository.upsert_participant(
            Participant(id="u3", created_at=NOW - timedelta(days=2))
        )
        coaching_repository.upsert_participant(Participant(id="coach", role="coach"))
        add_readings(
            *(make_reading(MetricKind.GLUCOSE, 100, days_ago=d) for d in (0, 1, 2)),
            make_reading(MetricKind.GLUCOSE, 100, user_id="u2", days_ago=10),
        )

        overview = analyzer.compute_overview(NOW, days=7)

        assert overview.total_participants == 3
        assert overview.active_participants == 1
        assert overview.inactive_participants == 2
        assert overview.new_participants_7_days == 1
        assert overview.new_participants_30_days == 2
        assert overview.average_weekly_adherence == 20
        assert overview.participants_with_streak_3_days == 1
        assert overview.participants_with_streak_3_days_percent == 33
