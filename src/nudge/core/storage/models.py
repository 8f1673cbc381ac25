"""Data models for the coaching persistence layer."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

# Readings whose creation trails the observation by more than this are backfill.
BACKFILL_THRESHOLD = timedelta(hours=1)


class MetricKind(str, Enum):
    GLUCOSE = "GLUCOSE"
    BP = "BP"
    WEIGHT = "WEIGHT"
    WAIST = "WAIST"
    KETONES = "KETONES"


class PromptCategory(str, Enum):
    REMINDER = "reminder"
    INTERVENTION = "intervention"
    EDUCATION = "education"


class PromptChannel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"


class TriggerType(str, Enum):
    SCHEDULE = "schedule"
    EVENT = "event"
    MISSED = "missed"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    OPENED = "opened"


# Keys tried, in order, when reading a single numeric value out of a payload.
_VALUE_KEYS: dict[MetricKind, tuple[str, ...]] = {
    MetricKind.GLUCOSE: ("value", "fasting"),
    MetricKind.WEIGHT: ("value", "weight"),
    MetricKind.WAIST: ("value", "waist"),
    MetricKind.KETONES: ("value",),
}


def _as_number(raw: Any) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    if not isinstance(raw, (int, float)):
        return None
    if isinstance(raw, float) and math.isnan(raw):
        return None
    return float(raw)


@dataclass
class Participant:
    """A program member whose readings drive prompt decisions."""

    id: str
    name: str = ""
    email: str = ""
    role: str = "participant"  # 'participant' | 'coach' | 'admin'
    status: str = "active"  # 'active' | 'inactive'
    timezone: str = "UTC"  # IANA name used for local-day bucketing
    coach_id: str | None = None
    created_at: datetime | None = None


@dataclass
class MacroTargets:
    """Daily nutrition targets set by a coach."""

    user_id: str
    protein_g: float | None = None
    carbs_g: float | None = None
    calories_kcal: float | None = None


@dataclass
class MetricReading:
    """One logged health observation.

    ``observed_at`` is when the measurement happened (user supplied, may be in
    the past); ``created_at`` is when the system recorded it. The payload in
    ``value`` is stored encrypted at rest.
    """

    id: str
    user_id: str
    kind: MetricKind
    value: dict[str, Any]
    observed_at: datetime
    created_at: datetime
    source: str = "manual"  # 'manual' | 'import'

    def is_backfilled(self, threshold: timedelta = BACKFILL_THRESHOLD) -> bool:
        """True when the reading was recorded well after it was observed."""
        return self.created_at - self.observed_at > threshold

    def numeric_value(self) -> float | None:
        """Single numeric value of the reading, or None if absent.

        Presence based: a stored ``0`` is returned as ``0.0``.
        """
        for key in _VALUE_KEYS.get(self.kind, ("value",)):
            if key in self.value:
                number = _as_number(self.value[key])
                if number is not None:
                    return number
        return None

    def blood_pressure(self) -> tuple[float, float] | None:
        """(systolic, diastolic) for BP readings with both numbers present."""
        if self.kind is not MetricKind.BP:
            return None
        systolic = _as_number(self.value.get("systolic"))
        diastolic = _as_number(self.value.get("diastolic"))
        if systolic is None or diastolic is None:
            return None
        return systolic, diastolic


@dataclass
class Prompt:
    """A message template authored by an admin."""

    id: str
    key: str
    name: str
    category: PromptCategory
    channel: PromptChannel
    message_template: str
    active: bool = True
    created_at: datetime | None = None


@dataclass
class PromptRule:
    """A trigger definition pointing at one prompt.

    ``schedule_json`` and ``conditions_json`` hold the persisted camelCase
    configs; :func:`nudge.core.rules.triggers.parse_trigger` turns them into
    typed triggers.
    """

    id: str
    key: str
    prompt_id: str
    trigger_type: TriggerType
    schedule_json: dict[str, Any] | None = None
    conditions_json: dict[str, Any] | None = None
    cooldown_hours: int = 24
    priority: int = 0
    active: bool = True
    created_at: datetime | None = None


@dataclass
class PromptDelivery:
    """Immutable audit record of one prompt firing."""

    id: str
    user_id: str
    prompt_id: str
    fired_at: datetime
    rule_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    status: DeliveryStatus = DeliveryStatus.SENT
