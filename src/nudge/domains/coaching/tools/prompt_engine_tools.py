"""MCP tools for prompt evaluation, metric logging and delivery history.

These tools are the entry points for the external scheduler (batch runs),
the logging flow (real-time evaluation after a reading is saved) and the
delivery channel (status updates).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from nudge.core.rules.engine import RuleEngine
    from nudge.core.storage.repository import CoachingRepository

from nudge.core.rules.engine import FireOutcome
from nudge.core.storage.models import DeliveryStatus, MetricKind, MetricReading
from nudge.core.storage.repository import PersistenceError

logger = logging.getLogger(__name__)


def parse_instant(text: str) -> datetime:
    """Parse an ISO 8601 timestamp; empty means now. Naive values are UTC.

    Raises:
        ValueError: If the text is not ISO 8601.
    """
    if not text:
        return datetime.now(timezone.utc)
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _error(message: str) -> str:
    return json.dumps({"status": "error", "message": message})


def register_prompt_engine_tools(
    mcp: FastMCP,
    engine: RuleEngine,
    repository: CoachingRepository,
) -> None:
    """Register prompt engine tools on the MCP server."""

    @mcp.tool
    async def evaluate_prompts(ctx: Context, user_id: str, as_of: str = "") -> str:
        """Evaluate every active prompt rule for one participant and fire eligible prompts.

        Args:
            user_id: Participant ID.
            as_of: Evaluation instant (ISO 8601). Defaults to now.
        """
        try:
            now = parse_instant(as_of)
        except ValueError:
            return _error(f"Invalid as_of timestamp: {as_of!r}")

        if repository.get_participant(user_id) is None:
            return _error(f"Unknown participant: {user_id}")

        results = engine.evaluate_and_fire(user_id, now)
        return json.dumps({
            "status": "ok",
            "user_id": user_id,
            "as_of": now.isoformat(),
            "results": [r.to_dict() for r in results],
        })

    @mcp.tool
    async def run_scheduled_batch(ctx: Context, as_of: str = "") -> str:
        """Evaluate all active participants. Intended for a periodic scheduler.

        Args:
            as_of: Evaluation instant (ISO 8601). Defaults to now.
        """
        try:
            now = parse_instant(as_of)
        except ValueError:
            return _error(f"Invalid as_of timestamp: {as_of!r}")

        batch = engine.process_scheduled_batch(now)
        fired = sum(
            1 for results in batch.values() for r in results if r.outcome is FireOutcome.FIRED
        )
        return json.dumps({
            "status": "ok",
            "as_of": now.isoformat(),
            "users_evaluated": len(batch),
            "prompts_fired": fired,
            "results": {
                user_id: [r.to_dict() for r in results] for user_id, results in batch.items()
            },
        })

    @mcp.tool
    async def log_metric_reading(
        ctx: Context,
        user_id: str,
        kind: str,
        value: float | None = None,
        systolic: float | None = None,
        diastolic: float | None = None,
        observed_at: str = "",
        source: str = "manual",
    ) -> str:
        """Record a health reading and run real-time event rules for it.

        Readings observed longer than BACKFILL_THRESHOLD_MINUTES (60 by
        default) before they are recorded count as backfill: they are stored
        but never trigger real-time prompts.

        Args:
            user_id: Participant ID.
            kind: One of GLUCOSE, BP, WEIGHT, WAIST, KETONES.
            value: Reading value (all kinds except BP).
            systolic: Systolic pressure (BP only).
            diastolic: Diastolic pressure (BP only).
            observed_at: When the measurement was taken (ISO 8601). Defaults to now.
            source: 'manual' or 'import'.
        """
        try:
            metric_kind = MetricKind(kind.upper())
        except ValueError:
            return _error(f"Unknown metric kind: {kind!r}")

        if metric_kind is MetricKind.BP:
            if systolic is None or diastolic is None:
                return _error("BP readings need both systolic and diastolic values")
            payload = {"systolic": systolic, "diastolic": diastolic}
        else:
            if value is None:
                return _error(f"{metric_kind.value} readings need a value")
            payload = {"value": value}

        now = datetime.now(timezone.utc)
        try:
            observed = parse_instant(observed_at) if observed_at else now
        except ValueError:
            return _error(f"Invalid observed_at timestamp: {observed_at!r}")

        if repository.get_participant(user_id) is None:
            return _error(f"Unknown participant: {user_id}")

        reading = MetricReading(
            id="",
            user_id=user_id,
            kind=metric_kind,
            value=payload,
            observed_at=observed,
            created_at=now,
            source=source,
        )
        try:
            reading_id = repository.save_reading(reading)
        except PersistenceError as exc:
            logger.error("Could not save reading for %s: %s", user_id, exc)
            return _error("Reading could not be saved")

        results = engine.on_metric_logged(user_id, metric_kind, reading, now)
        return json.dumps({
            "status": "saved",
            "reading_id": reading_id,
            "kind": metric_kind.value,
            "backfilled": reading.is_backfilled(engine.backfill_threshold),
            "results": [r.to_dict() for r in results],
        })

    @mcp.tool
    async def list_prompt_deliveries(ctx: Context, user_id: str, limit: int = 20) -> str:
        """List a participant's most recent prompt deliveries.

        Args:
            user_id: Participant ID.
            limit: Maximum number of deliveries to return.
        """
        deliveries = repository.get_deliveries_for_user(user_id, limit=max(1, limit))
        return json.dumps({
            "status": "ok",
            "user_id": user_id,
            "deliveries": [
                {
                    "id": d.id,
                    "prompt_id": d.prompt_id,
                    "rule_id": d.rule_id,
                    "fired_at": d.fired_at.isoformat(),
                    "status": d.status.value,
                    "context": d.context,
                }
                for d in deliveries
            ],
        })

    @mcp.tool
    async def update_delivery_status(ctx: Context, delivery_id: str, status: str) -> str:
        """Mark a sent delivery as opened or failed.

        Args:
            delivery_id: Delivery record ID.
            status: 'opened' or 'failed'.
        """
        try:
            new_status = DeliveryStatus(status.lower())
        except ValueError:
            return _error(f"Unknown delivery status: {status!r}")

        if not repository.update_delivery_status(delivery_id, new_status):
            return _error(f"Cannot set delivery {delivery_id} to {new_status.value}")
        return json.dumps({"status": "updated", "delivery_id": delivery_id, "delivery_status": new_status.value})
