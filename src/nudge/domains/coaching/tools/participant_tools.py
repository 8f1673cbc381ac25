"""MCP tools for participant enrollment and coach-set nutrition targets."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from nudge.core.storage.repository import CoachingRepository

from nudge.core.storage.models import MacroTargets, Participant
from nudge.core.storage.repository import PersistenceError
from nudge.domains.coaching.tools.prompt_engine_tools import parse_instant

logger = logging.getLogger(__name__)

ROLES = ("participant", "coach", "admin")
STATUSES = ("active", "inactive")


def _error(message: str) -> str:
    return json.dumps({"status": "error", "message": message})


def register_participant_tools(mcp: FastMCP, repository: CoachingRepository) -> None:
    """Register participant management tools on the MCP server."""

    @mcp.tool
    async def register_participant(
        ctx: Context,
        user_id: str,
        name: str = "",
        email: str = "",
        timezone_name: str = "UTC",
        coach_id: str = "",
        role: str = "participant",
        status: str = "active",
        enrolled_at: str = "",
    ) -> str:
        """Create or update a participant (or coach) record.

        Args:
            user_id: Stable participant ID.
            name: Display name; the first word is used for {{firstName}}.
            email: Contact email shown on coach flags.
            timezone_name: IANA timezone used for local-day bucketing.
            coach_id: ID of the participant's coach.
            role: 'participant', 'coach' or 'admin'.
            status: 'active' or 'inactive'. Only active participants are batched.
            enrolled_at: Account creation time (ISO 8601). Defaults to the
                existing value, or now for a new participant.
        """
        if role not in ROLES:
            return _error(f"Unknown role: {role!r}")
        if status not in STATUSES:
            return _error(f"Unknown status: {status!r}")

        existing = repository.get_participant(user_id)
        try:
            if enrolled_at:
                created_at = parse_instant(enrolled_at)
            elif existing is not None and existing.created_at is not None:
                created_at = existing.created_at
            else:
                created_at = datetime.now(timezone.utc)
        except ValueError:
            return _error(f"Invalid enrolled_at timestamp: {enrolled_at!r}")

        participant = Participant(
            id=user_id,
            name=name,
            email=email,
            role=role,
            status=status,
            timezone=timezone_name or "UTC",
            coach_id=coach_id or None,
            created_at=created_at,
        )
        try:
            repository.upsert_participant(participant)
        except PersistenceError as exc:
            logger.error("Could not save participant %s: %s", user_id, exc)
            return _error("Participant could not be saved")

        return json.dumps({
            "status": "updated" if existing else "created",
            "user_id": user_id,
            "role": role,
            "timezone": participant.timezone,
        })

    @mcp.tool
    async def set_macro_targets(
        ctx: Context,
        user_id: str,
        protein_g: float | None = None,
        carbs_g: float | None = None,
        calories_kcal: float | None = None,
    ) -> str:
        """Set a participant's daily nutrition targets for the {{target.*}} tokens.

        Args:
            user_id: Participant ID.
            protein_g: Daily protein target in grams.
            carbs_g: Daily carbohydrate target in grams.
            calories_kcal: Daily calorie target.
        """
        if repository.get_participant(user_id) is None:
            return _error(f"Unknown participant: {user_id}")

        targets = MacroTargets(
            user_id=user_id,
            protein_g=protein_g,
            carbs_g=carbs_g,
            calories_kcal=calories_kcal,
        )
        try:
            repository.save_macro_targets(targets)
        except PersistenceError as exc:
            logger.error("Could not save macro targets for %s: %s", user_id, exc)
            return _error("Targets could not be saved")

        return json.dumps({
            "status": "updated",
            "user_id": user_id,
            "protein_g": protein_g,
            "carbs_g": carbs_g,
            "calories_kcal": calories_kcal,
        })
