"""Delivery gate: per-prompt cooldowns and the delivery record write."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from nudge.core.storage.models import DeliveryStatus, PromptDelivery
from nudge.core.storage.store import CoachingStore

logger = logging.getLogger(__name__)


class DeliveryGate:
    """Enforces at most one delivery per (user, prompt) per cooldown window.

    :meth:`should_fire` is a cheap pre-check. :meth:`record_delivery` repeats
    the check inside the same write transaction as the insert; its result is
    the authoritative answer.

    Usage::

        gate = DeliveryGate(repository)
        if gate.should_fire(user_id, prompt_id, rule.cooldown_hours, now):
            delivery = gate.record_delivery(user_id, prompt_id, rule.id, snapshot,
                                            rule.cooldown_hours, now)
    """

    def __init__(self, store: CoachingStore) -> None:
        self._store = store

    @staticmethod
    def cooldown_start(now: datetime, cooldown_hours: int) -> datetime:
        return now - timedelta(hours=cooldown_hours)

    def should_fire(
        self, user_id: str, prompt_id: str, cooldown_hours: int, now: datetime
    ) -> bool:
        """True when no delivery of the prompt to the user is inside the cooldown."""
        recent = self._store.get_recent_deliveries(
            user_id, prompt_id, self.cooldown_start(now, cooldown_hours)
        )
        if recent:
            logger.debug(
                "Cooldown active for user=%s prompt=%s (last fired %s)",
                user_id,
                prompt_id,
                recent[0].fired_at.isoformat(),
            )
            return False
        return True

    def record_delivery(
        self,
        user_id: str,
        prompt_id: str,
        rule_id: str | None,
        context_snapshot: dict[str, Any],
        cooldown_hours: int,
        now: datetime,
    ) -> PromptDelivery | None:
        """Atomically re-check the cooldown and write the delivery.

        Returns:
            The stored delivery, or None when a concurrent evaluation recorded
            one first.

        Raises:
            PersistenceError: If the write fails. The caller must treat the
                prompt as not delivered.
        """
        record = PromptDelivery(
            id="",
            user_id=user_id,
            prompt_id=prompt_id,
            rule_id=rule_id,
            fired_at=now,
            context=context_snapshot,
            status=DeliveryStatus.SENT,
        )
        stored = self._store.insert_delivery_if_clear(
            record, self.cooldown_start(now, cooldown_hours)
        )
        if stored is None:
            logger.info(
                "Delivery for user=%s prompt=%s lost to a concurrent firing", user_id, prompt_id
            )
        return stored
