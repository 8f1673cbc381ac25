"""Shared test fixtures for Nudge tests."""

from __future__ import annotations

import sys
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("CATALOG_PATH", "")
    monkeypatch.setenv("FIRE_POLICY", "all")
    monkeypatch.setenv("DEFAULT_TIMEZONE", "UTC")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from nudge.core.storage.models import (  # noqa: E402
    MetricKind,
    MetricReading,
    Participant,
    Prompt,
    PromptCategory,
    PromptChannel,
    PromptRule,
    TriggerType,
)

# Fixed evaluation instant: Wednesday 2026-03-18 09:00 UTC
NOW = datetime(2026, 3, 18, 9, 0, tzinfo=timezone.utc)


def make_reading(
    kind: MetricKind = MetricKind.GLUCOSE,
    value: Any = 100,
    *,
    user_id: str = "u1",
    observed_at: datetime | None = None,
    days_ago: float = 0,
    created_at: datetime | None = None,
    reading_id: str = "",
) -> MetricReading:
    """Build a reading. Scalar values become ``{"value": x}``; dicts pass through."""
    observed = observed_at or (NOW - timedelta(days=days_ago))
    payload = value if isinstance(value, dict) else {"value": value}
    return MetricReading(
        id=reading_id,
        user_id=user_id,
        kind=kind,
        value=payload,
        observed_at=observed,
        created_at=created_at or observed,
    )


def make_bp(systolic: float, diastolic: float, **kwargs) -> MetricReading:
    return make_reading(MetricKind.BP, {"systolic": systolic, "diastolic": diastolic}, **kwargs)


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def coaching_db():
    """Create an in-memory CoachingDatabase for testing."""
    from nudge.core.storage.database import CoachingDatabase

    db = CoachingDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def field_encryptor():
    """Create a FieldEncryptor with a test key."""
    from cryptography.fernet import Fernet

    from nudge.core.storage.encryption import FieldEncryptor

    return FieldEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def coaching_repository(coaching_db, field_encryptor):
    """Create a CoachingRepository backed by in-memory SQLite."""
    from nudge.core.storage.repository import CoachingRepository

    return CoachingRepository(coaching_db, field_encryptor)


@pytest.fixture
def participant(coaching_repository) -> Participant:
    """A stored active participant 'u1' named Ada Lovelace, enrolled 60 days ago."""
    p = Participant(
        id="u1",
        name="Ada Lovelace",
        email="ada@example.com",
        created_at=NOW - timedelta(days=60),
    )
    coaching_repository.upsert_participant(p)
    return p


@pytest.fixture
def add_readings(coaching_repository) -> Callable[..., list[MetricReading]]:
    """Persist readings and return them."""

    def _add(*readings: MetricReading) -> list[MetricReading]:
        for reading in readings:
            coaching_repository.save_reading(reading)
        return list(readings)

    return _add


@pytest.fixture
def add_rule(coaching_repository) -> Callable[..., PromptRule]:
    """Persist a prompt plus one rule pointing at it."""

    def _add(
        key: str,
        trigger_type: TriggerType,
        *,
        schedule: dict | None = None,
        conditions: dict | None = None,
        template: str = "Hi {{firstName}}",
        cooldown_hours: int = 24,
        priority: int = 0,
        prompt_active: bool = True,
    ) -> PromptRule:
        prompt = Prompt(
            id="",
            key=f"{key}_prompt",
            name=key,
            category=PromptCategory.REMINDER,
            channel=PromptChannel.IN_APP,
            message_template=template,
            active=prompt_active,
        )
        coaching_repository.save_prompt(prompt)
        rule = PromptRule(
            id="",
            key=key,
            prompt_id=prompt.id,
            trigger_type=trigger_type,
            schedule_json=schedule,
            conditions_json=conditions,
            cooldown_hours=cooldown_hours,
            priority=priority,
        )
        coaching_repository.save_rule(rule)
        return rule

    return _add
