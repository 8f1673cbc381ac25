"""Tests for RuleEngine: per-user evaluation, batches and real-time events."""

from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from conftest import NOW, make_bp, make_reading
from nudge.core.rules.engine import (
    BATCH_RESULT_KEY,
    REASON_CONDITION_NOT_MET,
    REASON_COOLDOWN,
    REASON_EVALUATION_ERROR,
    REASON_EVALUATION_TIMEOUT,
    REASON_NOT_RECORDED,
    REASON_PROMPT_INACTIVE,
    REASON_SINGLE_FIRE,
    FireOutcome,
    RuleEngine,
)
from nudge.core.rules.gate import DeliveryGate
from nudge.core.storage.models import MetricKind, Participant, TriggerType
from nudge.core.storage.repository import PersistenceError
from nudge.domains.coaching.domain_logic.aggregator import MetricAggregator

HIGH_GLUCOSE = {"metricType": "GLUCOSE", "operator": "gte", "value": 110}


def _engine(repository, **kwargs) -> RuleEngine:
    return RuleEngine(repository, MetricAggregator(), DeliveryGate(repository), **kwargs)


@pytest.fixture
def engine(coaching_repository) -> RuleEngine:
    return _engine(coaching_repository)


def _by_key(results):
    return {r.rule_key: r for r in results}


class TestEvaluateAndFire:
    def test_event_rule_fires_with_rendered_message(
        self, engine, coaching_repository, participant, add_readings, add_rule
    ):
        add_rule(
            "high_glucose",
            TriggerType.EVENT,
            conditions=HIGH_GLUCOSE,
            template="{{firstName}}, your glucose was {{glucose.latest}}",
        )
        add_readings(make_reading(MetricKind.GLUCOSE, 130, days_ago=0.1))

        [result] = engine.evaluate_and_fire("u1", NOW)

        assert result.outcome is FireOutcome.FIRED
        assert result.rendered_message == "Ada, your glucose was 130"
        assert result.channel == "in_app"
        delivery = coaching_repository.get_deliveries_for_user("u1")[0]
        assert delivery.id == result.delivery_id
        assert delivery.context["ruleKey"] == "high_glucose"
        assert delivery.context["triggerType"] == "event"
        assert delivery.context["metrics"]["glucose"]["latest"] == 130

    def test_condition_not_met(self, engine, participant, add_readings, add_rule):
        add_rule("high_glucose", TriggerType.EVENT, conditions=HIGH_GLUCOSE)
        add_readings(make_reading(MetricKind.GLUCOSE, 95, days_ago=0.1))
        [result] = engine.evaluate_and_fire("u1", NOW)
        assert result.outcome is FireOutcome.SKIPPED
        assert result.reason == REASON_CONDITION_NOT_MET

    def test_cooldown_gates_repeat_then_expires(self, engine, participant, add_readings, add_rule):
        add_rule("high_glucose", TriggerType.EVENT, conditions=HIGH_GLUCOSE, cooldown_hours=24)
        add_readings(make_reading(MetricKind.GLUCOSE, 130, days_ago=0.1))

        assert engine.evaluate_and_fire("u1", NOW)[0].outcome is FireOutcome.FIRED
        again = engine.evaluate_and_fire("u1", NOW + timedelta(hours=2))[0]
        assert again.outcome is FireOutcome.GATED
        assert again.reason == REASON_COOLDOWN
        later = engine.evaluate_and_fire("u1", NOW + timedelta(hours=25))[0]
        assert later.outcome is FireOutcome.FIRED

    def test_inactive_prompt_is_skipped(self, engine, participant, add_rule):
        add_rule("nudge", TriggerType.SCHEDULE, schedule={}, prompt_active=False)
        [result] = engine.evaluate_and_fire("u1", NOW)
        assert result.reason == REASON_PROMPT_INACTIVE

    def test_malformed_rule_does_not_stop_others(self, engine, participant, add_rule):
        add_rule("broken", TriggerType.EVENT, conditions={"metricType": "STEPS"}, priority=10)
        add_rule("hello", TriggerType.SCHEDULE, schedule={"hour": 9})

        results = _by_key(engine.evaluate_and_fire("u1", NOW))

        assert results["broken"].outcome is FireOutcome.SKIPPED
        assert results["broken"].reason.startswith("invalid_rule")
        assert results["hello"].outcome is FireOutcome.FIRED

    def test_rules_run_in_priority_order(self, engine, participant, add_rule):
        add_rule("low", TriggerType.SCHEDULE, schedule={}, priority=1)
        add_rule("high", TriggerType.SCHEDULE, schedule={}, priority=9)
        keys = [r.rule_key for r in engine.evaluate_and_fire("u1", NOW)]
        assert keys == ["high", "low"]

    def test_all_policy_fires_every_match(self, engine, participant, add_rule):
        add_rule("a", TriggerType.SCHEDULE, schedule={}, priority=2)
        add_rule("b", TriggerType.SCHEDULE, schedule={}, priority=1)
        outcomes = [r.outcome for r in engine.evaluate_and_fire("u1", NOW)]
        assert outcomes == [FireOutcome.FIRED, FireOutcome.FIRED]

    def test_highest_priority_policy_fires_once(self, coaching_repository, participant, add_rule):
        engine = _engine(coaching_repository, fire_policy="highest_priority")
        add_rule("a", TriggerType.SCHEDULE, schedule={}, priority=2)
        add_rule("b", TriggerType.SCHEDULE, schedule={}, priority=1)

        results = _by_key(engine.evaluate_and_fire("u1", NOW))

        assert results["a"].outcome is FireOutcome.FIRED
        assert results["b"].reason == REASON_SINGLE_FIRE

    def test_unknown_fire_policy_rejected(self, coaching_repository):
        with pytest.raises(ValueError):
            _engine(coaching_repository, fire_policy="random")

    def test_unknown_user(self, engine, add_rule):
        add_rule("hello", TriggerType.SCHEDULE, schedule={})
        assert engine.evaluate_and_fire("ghost", NOW) == []

    def test_missed_rule(self, engine, participant, add_readings, add_rule):
        add_rule("missed", TriggerType.MISSED, conditions={"inactiveDays": 3},
                 template="It has been {{daysSinceLog}} days")
        assert engine.evaluate_and_fire("u1", NOW)[0].reason == REASON_CONDITION_NOT_MET

        add_readings(make_reading(days_ago=4))
        result = engine.evaluate_and_fire("u1", NOW + timedelta(hours=1))[0]
        assert result.outcome is FireOutcome.FIRED
        assert result.rendered_message == "It has been 4 days"

    def test_missed_rule_sees_logs_older_than_the_window(self, engine, participant, add_readings, add_rule):
        add_rule("missed", TriggerType.MISSED)
        add_readings(make_reading(days_ago=45))
        assert engine.evaluate_and_fire("u1", NOW)[0].outcome is FireOutcome.FIRED

    def test_consecutive_glucose_days(self, engine, participant, add_readings, add_rule):
        add_rule(
            "streak_high",
            TriggerType.EVENT,
            conditions={"metricType": "GLUCOSE", "consecutiveDays": 3},
        )
        add_readings(*(make_reading(MetricKind.GLUCOSE, 125, days_ago=d) for d in (0, 1)))
        assert engine.evaluate_and_fire("u1", NOW)[0].reason == REASON_CONDITION_NOT_MET

        add_readings(make_reading(MetricKind.GLUCOSE, 125, days_ago=2))
        assert engine.evaluate_and_fire("u1", NOW)[0].outcome is FireOutcome.FIRED

    def test_consecutive_bp_with_rule_thresholds(self, engine, participant, add_readings, add_rule):
        add_rule(
            "bp_days",
            TriggerType.EVENT,
            conditions={"metricType": "BP", "operator": "gte", "value": 130, "consecutiveDays": 2},
        )
        add_readings(make_bp(132, 80, days_ago=1), make_bp(135, 82, days_ago=3))
        assert engine.evaluate_and_fire("u1", NOW)[0].outcome is FireOutcome.FIRED

    def test_backfilled_reading_does_not_trigger_event_rule(
        self, engine, participant, add_readings, add_rule
    ):
        add_rule("high_glucose", TriggerType.EVENT, conditions=HIGH_GLUCOSE)
        add_readings(make_reading(MetricKind.GLUCOSE, 200, days_ago=1, created_at=NOW))
        assert engine.evaluate_and_fire("u1", NOW)[0].reason == REASON_CONDITION_NOT_MET

    def test_persistence_failure_is_not_a_delivery(
        self, engine, coaching_repository, participant, add_rule, monkeypatch
    ):
        add_rule("hello", TriggerType.SCHEDULE, schedule={})

        def fail(record, cooldown_start):
            raise PersistenceError("disk full")

        monkeypatch.setattr(coaching_repository, "insert_delivery_if_clear", fail)
        [result] = engine.evaluate_and_fire("u1", NOW)

        assert result.outcome is FireOutcome.SKIPPED
        assert result.reason == REASON_NOT_RECORDED
        assert result.rendered_message is None
        assert coaching_repository.get_deliveries_for_user("u1") == []

    def test_concurrent_evaluations_fire_once(self, engine, coaching_repository, participant, add_rule):
        add_rule("hello", TriggerType.SCHEDULE, schedule={})
        outcomes = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            outcomes.extend(r.outcome for r in engine.evaluate_and_fire("u1", NOW))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(FireOutcome.FIRED) == 1
        assert outcomes.count(FireOutcome.GATED) == 7
        assert len(coaching_repository.get_deliveries_for_user("u1")) == 1


class TestScheduledBatch:
    @pytest.fixture
    def two_users(self, coaching_repository, participant, add_rule):
        coaching_repository.upsert_participant(Participant(id="u2", name="Grace"))
        coaching_repository.upsert_participant(Participant(id="coach", role="coach"))
        add_rule("hello", TriggerType.SCHEDULE, schedule={"hour": 9})

    def test_evaluates_active_participants(self, engine, two_users):
        batch = engine.process_scheduled_batch(NOW)
        assert set(batch) == {"u1", "u2"}
        assert all(results[0].outcome is FireOutcome.FIRED for results in batch.values())

    def test_failing_user_does_not_abort_batch(self, engine, two_users, monkeypatch):
        original = engine.evaluate_and_fire

        def flaky(user_id, now):
            if user_id == "u2":
                raise RuntimeError("boom")
            return original(user_id, now)

        monkeypatch.setattr(engine, "evaluate_and_fire", flaky)
        batch = engine.process_scheduled_batch(NOW)

        assert batch["u1"][0].outcome is FireOutcome.FIRED
        assert batch["u2"][0].rule_key == BATCH_RESULT_KEY
        assert batch["u2"][0].reason == REASON_EVALUATION_ERROR

    def test_slow_user_times_out(self, coaching_repository, two_users, monkeypatch):
        engine = _engine(coaching_repository, batch_max_workers=2, batch_user_timeout_seconds=0.05)
        original = engine.evaluate_and_fire

        def slow(user_id, now):
            if user_id == "u2":
                time.sleep(0.5)
                return []
            return original(user_id, now)

        monkeypatch.setattr(engine, "evaluate_and_fire", slow)
        batch = engine.process_scheduled_batch(NOW)

        assert batch["u1"][0].outcome is FireOutcome.FIRED
        assert batch["u2"][0].reason == REASON_EVALUATION_TIMEOUT

    def test_hung_user_does_not_hold_up_later_users(
        self, coaching_repository, two_users, monkeypatch
    ):
        coaching_repository.upsert_participant(Participant(id="u3", name="Mary"))
        engine = _engine(coaching_repository, batch_max_workers=1, batch_user_timeout_seconds=0.2)
        original = engine.evaluate_and_fire

        def hung_first(user_id, now):
            if user_id == "u1":
                time.sleep(1.0)
                return []
            return original(user_id, now)

        monkeypatch.setattr(engine, "evaluate_and_fire", hung_first)
        batch = engine.process_scheduled_batch(NOW)

        assert batch["u1"][0].reason == REASON_EVALUATION_TIMEOUT
        assert batch["u2"][0].outcome is FireOutcome.FIRED
        assert batch["u3"][0].outcome is FireOutcome.FIRED

    def test_cancelled_before_start(self, engine, two_users):
        cancel = threading.Event()
        cancel.set()
        assert engine.process_scheduled_batch(NOW, cancel_event=cancel) == {}


class TestOnMetricLogged:
    @pytest.fixture
    def rules(self, add_rule):
        add_rule("high_glucose", TriggerType.EVENT, conditions=HIGH_GLUCOSE, template="{{glucose.latest}}")
        add_rule("heavy", TriggerType.EVENT, conditions={"metricType": "WEIGHT", "operator": "gt", "value": 100})
        add_rule("hello", TriggerType.SCHEDULE, schedule={})

    def test_only_event_rules_for_the_kind(self, engine, participant, add_readings, rules):
        [reading] = add_readings(make_reading(MetricKind.GLUCOSE, 140))
        results = engine.on_metric_logged("u1", MetricKind.GLUCOSE, reading, NOW)
        assert [r.rule_key for r in results] == ["high_glucose"]
        assert results[0].rendered_message == "140"

    def test_unsaved_reading_is_considered(self, engine, participant, rules):
        reading = make_reading(MetricKind.GLUCOSE, 150)
        [result] = engine.on_metric_logged("u1", MetricKind.GLUCOSE, reading, NOW)
        assert result.outcome is FireOutcome.FIRED
        assert result.rendered_message == "150"

    def test_backfilled_reading_evaluates_nothing(self, engine, participant, add_readings, rules):
        [reading] = add_readings(
            make_reading(MetricKind.GLUCOSE, 200, days_ago=1, created_at=NOW)
        )
        assert engine.on_metric_logged("u1", MetricKind.GLUCOSE, reading, NOW) == []

    def test_no_matching_rules(self, engine, participant, add_readings, rules):
        [reading] = add_readings(make_reading(MetricKind.KETONES, 1.2))
        assert engine.on_metric_logged("u1", MetricKind.KETONES, reading, NOW) == []

    def test_malformed_event_rule_is_reported(self, engine, participant, add_readings, add_rule):
        add_rule("broken", TriggerType.EVENT, conditions={"metricType": "GLUCOSE", "operator": "gt"})
        [reading] = add_readings(make_reading(MetricKind.GLUCOSE, 120))
        [result] = engine.on_metric_logged("u1", MetricKind.GLUCOSE, reading, NOW)
        assert result.reason.startswith("invalid_rule")
