"""Read/write interface the rule engine and analyzers depend on."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from nudge.core.storage.models import (
    MacroTargets,
    MetricKind,
    MetricReading,
    Participant,
    Prompt,
    PromptDelivery,
    PromptRule,
)


@runtime_checkable
class CoachingStore(Protocol):
    """Shape of the store consumed by the engine.

    :class:`nudge.core.storage.repository.CoachingRepository` is the SQLite
    implementation; tests may substitute an in-memory fake.
    """

    def get_readings_for_user(
        self, user_id: str, since: datetime, *, kind: MetricKind | None = None
    ) -> list[MetricReading]: ...

    def get_readings_since(
        self, since: datetime, *, kind: MetricKind | None = None
    ) -> list[MetricReading]: ...

    def get_last_observed_at(self, user_id: str) -> datetime | None: ...

    def get_active_rules(self) -> list[PromptRule]: ...

    def get_prompt(self, prompt_id: str) -> Prompt | None: ...

    def get_recent_deliveries(
        self, user_id: str, prompt_id: str, since: datetime
    ) -> list[PromptDelivery]: ...

    def get_macro_targets(self, user_id: str) -> MacroTargets | None: ...

    def get_participant(self, user_id: str) -> Participant | None: ...

    def get_participants(
        self, *, role: str | None = None, coach_id: str | None = None
    ) -> list[Participant]: ...

    def get_active_participants(self) -> list[Participant]: ...

    def insert_delivery(self, record: PromptDelivery) -> PromptDelivery: ...

    def insert_delivery_if_clear(
        self, record: PromptDelivery, cooldown_start: datetime
    ) -> PromptDelivery | None: ...
