"""Tests for the per-prompt cooldown gate."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import NOW
from nudge.core.rules.gate import DeliveryGate
from nudge.core.storage.models import DeliveryStatus, TriggerType


@pytest.fixture
def gate(coaching_repository) -> DeliveryGate:
    return DeliveryGate(coaching_repository)


@pytest.fixture
def prompt_id(add_rule, participant) -> str:
    return add_rule("reminder", TriggerType.MISSED).prompt_id


class TestDeliveryGate:
    def test_fresh_pair_may_fire(self, gate, prompt_id):
        assert gate.should_fire("u1", prompt_id, 24, NOW)

    def test_record_then_blocked_inside_cooldown(self, gate, prompt_id):
        delivery = gate.record_delivery("u1", prompt_id, "rule-1", {"k": 1}, 24, NOW)
        assert delivery.status is DeliveryStatus.SENT
        assert delivery.rule_id == "rule-1"
        assert not gate.should_fire("u1", prompt_id, 24, NOW + timedelta(hours=23))

    def test_cooldown_expires(self, gate, prompt_id):
        gate.record_delivery("u1", prompt_id, None, {}, 24, NOW)
        assert gate.should_fire("u1", prompt_id, 24, NOW + timedelta(hours=24))

    def test_second_record_in_window_returns_none(self, gate, prompt_id):
        assert gate.record_delivery("u1", prompt_id, None, {}, 24, NOW) is not None
        assert gate.record_delivery("u1", prompt_id, None, {}, 24, NOW + timedelta(hours=1)) is None

    def test_zero_cooldown_allows_repeat_at_later_instant(self, gate, prompt_id):
        gate.record_delivery("u1", prompt_id, None, {}, 0, NOW)
        assert gate.record_delivery("u1", prompt_id, None, {}, 0, NOW + timedelta(seconds=1))

    def test_cooldown_is_per_user(self, gate, prompt_id, coaching_repository):
        from nudge.core.storage.models import Participant

        coaching_repository.upsert_participant(Participant(id="u2"))
        gate.record_delivery("u1", prompt_id, None, {}, 24, NOW)
        assert gate.should_fire("u2", prompt_id, 24, NOW)

    def test_snapshot_is_persisted(self, gate, prompt_id, coaching_repository):
        gate.record_delivery("u1", prompt_id, None, {"metrics": {"streak": 0}}, 24, NOW)
        stored = coaching_repository.get_deliveries_for_user("u1")[0]
        assert stored.context == {"metrics": {"streak": 0}}
        assert stored.fired_at == NOW
