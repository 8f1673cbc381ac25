"""Rule engine: evaluates active prompt rules per user and fires prompts.

Per user and per run, each active rule goes
``loaded -> evaluating -> fired | skipped(reason) | gated(reason)`` in
priority order (highest first, ties by key). One bad rule or one failing
user never aborts the rest of a run.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Literal

from nudge.core.rules.gate import DeliveryGate
from nudge.core.rules.triggers import (
    ConfigurationError,
    EventCondition,
    Trigger,
    parse_trigger,
)
from nudge.core.storage.models import (
    MetricKind,
    MetricReading,
    PromptRule,
    TriggerType,
)
from nudge.core.storage.repository import PersistenceError
from nudge.core.storage.store import CoachingStore
from nudge.domains.coaching.domain_logic.aggregator import (
    MetricAggregator,
    lookback_start,
    resolve_timezone,
)
from nudge.domains.coaching.domain_logic.conditions import (
    BP_CONSECUTIVE_MIN,
    GLUCOSE_CONSECUTIVE_MIN,
    evaluate_trigger,
)
from nudge.domains.coaching.domain_logic.renderer import personalize_message
from nudge.domains.coaching.domain_logic.summary_models import MetricSummary, UserContext

logger = logging.getLogger(__name__)

FirePolicy = Literal["all", "highest_priority"]

# Skip / gate reasons
REASON_CONDITION_NOT_MET = "condition_not_met"
REASON_INVALID_RULE = "invalid_rule"
REASON_PROMPT_MISSING = "prompt_missing"
REASON_PROMPT_INACTIVE = "prompt_inactive"
REASON_COOLDOWN = "cooldown"
REASON_SINGLE_FIRE = "single_fire_policy"
REASON_NOT_RECORDED = "delivery_not_recorded"
REASON_EVALUATION_ERROR = "evaluation_error"
REASON_EVALUATION_TIMEOUT = "evaluation_timeout"
REASON_FIRED = "fired"

# rule_key used for the single result of a user whose evaluation failed
BATCH_RESULT_KEY = "*"


class FireOutcome(str, Enum):
    FIRED = "fired"
    SKIPPED = "skipped"
    GATED = "gated"


@dataclass
class FireResult:
    """Outcome of one rule for one user in one evaluation run."""

    rule_key: str
    outcome: FireOutcome
    reason: str
    rendered_message: str | None = None
    prompt_id: str | None = None
    channel: str | None = None
    delivery_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_key": self.rule_key,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "rendered_message": self.rendered_message,
            "prompt_id": self.prompt_id,
            "channel": self.channel,
            "delivery_id": self.delivery_id,
        }


def _aware(now: datetime) -> datetime:
    return now if now.tzinfo is not None else now.replace(tzinfo=timezone.utc)


class RuleEngine:
    """Orchestrates aggregation, condition evaluation, gating and rendering.

    Usage::

        engine = RuleEngine(repository, MetricAggregator(), DeliveryGate(repository))
        results = engine.evaluate_and_fire("user-1", now)
        batch = engine.process_scheduled_batch(now)
        realtime = engine.on_metric_logged("user-1", MetricKind.GLUCOSE, reading, now)
    """

    def __init__(
        self,
        store: CoachingStore,
        aggregator: MetricAggregator,
        gate: DeliveryGate,
        *,
        fire_policy: FirePolicy = "all",
        default_timezone: str = "UTC",
        batch_max_workers: int = 1,
        batch_user_timeout_seconds: float = 30.0,
    ) -> None:
        if fire_policy not in ("all", "highest_priority"):
            raise ValueError(f"Unknown fire policy: {fire_policy!r}")
        self._store = store
        self._aggregator = aggregator
        self._gate = gate
        self.fire_policy = fire_policy
        self._default_timezone = default_timezone
        self._max_workers = max(1, batch_max_workers)
        self._user_timeout = batch_user_timeout_seconds

    @property
    def backfill_threshold(self) -> timedelta:
        """Age past which a reading no longer triggers real-time evaluation."""
        return self._aggregator.backfill_threshold

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def build_context(
        self, user_id: str, now: datetime, *, extra_days: int = 0
    ) -> UserContext | None:
        """Load a user's readings and compute their summaries as of ``now``.

        Returns:
            The context, or None if the user does not exist.
        """
        now = _aware(now)
        participant = self._store.get_participant(user_id)
        if participant is None:
            return None

        tz = resolve_timezone(participant.timezone, self._default_timezone)
        days = max(self._aggregator.thresholds.lookback_days, extra_days)
        readings = self._store.get_readings_for_user(user_id, lookback_start(now, tz, days))
        last_logged_at = self._store.get_last_observed_at(user_id)

        return UserContext(
            user_id=user_id,
            name=participant.name,
            tz=tz,
            metrics=self._aggregator.summarize_metrics(readings, now, tz),
            live_metrics=self._aggregator.summarize_metrics(
                readings, now, tz, include_backfilled=False
            ),
            activity=self._aggregator.summarize_activity(
                readings, now, tz, last_logged_at=last_logged_at
            ),
            targets=self._store.get_macro_targets(user_id),
            readings=readings,
            last_logged_at=last_logged_at,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def evaluate_and_fire(self, user_id: str, now: datetime) -> list[FireResult]:
        """Run one user through every active rule once."""
        now = _aware(now)
        parsed = self._parse_rules(self._store.get_active_rules())
        context = self.build_context(user_id, now, extra_days=self._extra_days(parsed))
        if context is None:
            logger.info("Skipping evaluation for unknown user %s", user_id)
            return []
        return self._run_rules(context, parsed, now)

    def process_scheduled_batch(
        self,
        now: datetime,
        *,
        cancel_event: threading.Event | None = None,
    ) -> dict[str, list[FireResult]]:
        """Evaluate every active participant.

        Users are processed in chunks of ``batch_max_workers``, each user on
        its own single-worker executor so a hung evaluation never holds up
        the users after it. A user whose evaluation raises or exceeds the
        per-user timeout gets a single skipped result. Setting
        ``cancel_event`` stops the run before the next chunk; users not yet
        started are left out of the result.

        A timed-out evaluation keeps running in its worker thread and may
        still record a delivery; the gate keeps that delivery unique.
        """
        now = _aware(now)
        participants = self._store.get_active_participants()
        results: dict[str, list[FireResult]] = {}
        for start in range(0, len(participants), self._max_workers):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(
                    "Batch cancelled after %d of %d users", len(results), len(participants)
                )
                break
            chunk = participants[start:start + self._max_workers]
            started = time.monotonic()
            running = []
            for participant in chunk:
                pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="nudge-batch")
                running.append(
                    (participant.id, pool, pool.submit(self.evaluate_and_fire, participant.id, now))
                )
            for user_id, pool, future in running:
                remaining = max(0.0, self._user_timeout - (time.monotonic() - started))
                try:
                    results[user_id] = self._collect(user_id, future, remaining)
                finally:
                    pool.shutdown(wait=False)

        fired = sum(
            1 for user_results in results.values() for r in user_results
            if r.outcome is FireOutcome.FIRED
        )
        logger.info("Batch evaluated %d users, %d prompts fired", len(results), fired)
        return results

    def on_metric_logged(
        self,
        user_id: str,
        kind: MetricKind,
        reading: MetricReading,
        now: datetime,
    ) -> list[FireResult]:
        """Re-evaluate the event rules for ``kind`` right after a reading is logged.

        Backfilled readings never trigger real-time evaluation.
        """
        now = _aware(now)
        kind = MetricKind(kind)
        if reading.is_backfilled(self.backfill_threshold):
            logger.debug("Reading %s is backfilled; no real-time evaluation", reading.id)
            return []

        relevant: list[tuple[PromptRule, Trigger | ConfigurationError]] = []
        for rule, trigger in self._parse_rules(self._store.get_active_rules()):
            if rule.trigger_type != TriggerType.EVENT:
                continue
            if isinstance(trigger, EventCondition) and trigger.metric_kind is not kind:
                continue
            relevant.append((rule, trigger))
        if not relevant:
            return []

        context = self.build_context(user_id, now, extra_days=self._extra_days(relevant))
        if context is None:
            return []
        if reading.observed_at <= now and all(r.id != reading.id for r in context.readings):
            context = self._with_reading(context, reading, now)
        return self._run_rules(context, relevant, now)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _collect(self, user_id: str, future, timeout: float) -> list[FireResult]:
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.error("Evaluation timed out for user %s", user_id)
            return [FireResult(BATCH_RESULT_KEY, FireOutcome.SKIPPED, REASON_EVALUATION_TIMEOUT)]
        except Exception:
            logger.exception("Evaluation failed for user %s", user_id)
            return [FireResult(BATCH_RESULT_KEY, FireOutcome.SKIPPED, REASON_EVALUATION_ERROR)]

    @staticmethod
    def _parse_rules(
        rules: Iterable[PromptRule],
    ) -> list[tuple[PromptRule, Trigger | ConfigurationError]]:
        parsed: list[tuple[PromptRule, Trigger | ConfigurationError]] = []
        for rule in rules:
            try:
                parsed.append((rule, parse_trigger(rule)))
            except ConfigurationError as exc:
                parsed.append((rule, exc))
        return parsed

    @staticmethod
    def _extra_days(parsed: Iterable[tuple[PromptRule, Trigger | ConfigurationError]]) -> int:
        return max(
            (
                t.consecutive_days
                for _, t in parsed
                if isinstance(t, EventCondition) and t.consecutive_days
            ),
            default=0,
        )

    def _with_reading(self, context: UserContext, reading: MetricReading, now: datetime) -> UserContext:
        readings = [*context.readings, reading]
        tz = context.tz
        return replace(
            context,
            readings=readings,
            metrics=self._aggregator.summarize_metrics(readings, now, tz),
            live_metrics=self._aggregator.summarize_metrics(
                readings, now, tz, include_backfilled=False
            ),
            activity=self._aggregator.summarize_activity(
                readings, now, tz, last_logged_at=context.last_logged_at
            ),
        )

    def _run_rules(
        self,
        context: UserContext,
        parsed: list[tuple[PromptRule, Trigger | ConfigurationError]],
        now: datetime,
    ) -> list[FireResult]:
        results: list[FireResult] = []
        fired_once = False
        for rule, trigger in parsed:
            if fired_once and self.fire_policy == "highest_priority":
                results.append(FireResult(rule.key, FireOutcome.SKIPPED, REASON_SINGLE_FIRE))
                continue
            if isinstance(trigger, ConfigurationError):
                logger.warning("Skipping malformed rule %s: %s", rule.key, trigger)
                results.append(
                    FireResult(rule.key, FireOutcome.SKIPPED, f"{REASON_INVALID_RULE}: {trigger}")
                )
                continue

            result = self._evaluate_rule(rule, trigger, context, now)
            results.append(result)
            if result.outcome is FireOutcome.FIRED:
                fired_once = True
        return results

    def _event_metrics(self, trigger: EventCondition, context: UserContext, now: datetime) -> MetricSummary:
        """Live metrics, with day counts recomputed for the rule's own threshold."""
        live = context.live_metrics
        days = trigger.consecutive_days
        if days is None:
            return live

        thresholds = self._aggregator.thresholds
        live_readings = [
            r for r in context.readings
            if not r.is_backfilled(self._aggregator.backfill_threshold)
        ]
        if trigger.metric_kind is MetricKind.GLUCOSE and days >= GLUCOSE_CONSECUTIVE_MIN:
            high_days = self._aggregator.glucose_high_days(
                live_readings,
                now,
                context.tz,
                threshold=trigger.value,
                window=max(thresholds.glucose_window, days),
            )
            return replace(live, glucose=replace(live.glucose, high_days=high_days))
        if trigger.metric_kind is MetricKind.BP and days >= BP_CONSECUTIVE_MIN:
            elevated_days = self._aggregator.bp_elevated_days(
                live_readings,
                now,
                context.tz,
                systolic=trigger.value,
                diastolic=trigger.diastolic_value,
                window=max(thresholds.bp_window, days),
            )
            return replace(live, bp=replace(live.bp, elevated_days=elevated_days))
        return live

    def _evaluate_rule(
        self, rule: PromptRule, trigger: Trigger, context: UserContext, now: datetime
    ) -> FireResult:
        metrics = (
            self._event_metrics(trigger, context, now)
            if isinstance(trigger, EventCondition)
            else context.metrics
        )
        matched = evaluate_trigger(
            trigger,
            local_now=now.astimezone(context.tz),
            metrics=metrics,
            activity=context.activity,
        )
        if not matched:
            return FireResult(rule.key, FireOutcome.SKIPPED, REASON_CONDITION_NOT_MET)

        prompt = self._store.get_prompt(rule.prompt_id)
        if prompt is None:
            logger.warning("Rule %s references missing prompt %s", rule.key, rule.prompt_id)
            return FireResult(rule.key, FireOutcome.SKIPPED, REASON_PROMPT_MISSING)
        if not prompt.active:
            return FireResult(rule.key, FireOutcome.SKIPPED, REASON_PROMPT_INACTIVE, prompt_id=prompt.id)

        if not self._gate.should_fire(context.user_id, prompt.id, rule.cooldown_hours, now):
            return FireResult(rule.key, FireOutcome.GATED, REASON_COOLDOWN, prompt_id=prompt.id)

        message = personalize_message(prompt.message_template, context)
        snapshot = {
            "ruleId": rule.id,
            "ruleKey": rule.key,
            "triggerType": TriggerType(rule.trigger_type).value,
            **context.snapshot(),
        }
        try:
            delivery = self._gate.record_delivery(
                context.user_id, prompt.id, rule.id, snapshot, rule.cooldown_hours, now
            )
        except PersistenceError as exc:
            logger.error("Delivery for rule %s to user %s not recorded: %s", rule.key, context.user_id, exc)
            return FireResult(rule.key, FireOutcome.SKIPPED, REASON_NOT_RECORDED, prompt_id=prompt.id)
        if delivery is None:
            return FireResult(rule.key, FireOutcome.GATED, REASON_COOLDOWN, prompt_id=prompt.id)

        logger.info("Fired rule %s for user %s (delivery %s)", rule.key, context.user_id, delivery.id)
        return FireResult(
            rule.key,
            FireOutcome.FIRED,
            REASON_FIRED,
            rendered_message=message,
            prompt_id=prompt.id,
            channel=prompt.channel.value,
            delivery_id=delivery.id,
        )
