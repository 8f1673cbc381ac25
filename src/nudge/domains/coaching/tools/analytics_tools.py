"""MCP tools for cohort analytics: outcomes, health flags and overview."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from nudge.domains.coaching.domain_logic.cohort_analyzer import CohortAnalyzer
    from nudge.domains.coaching.domain_logic.outcome_analyzer import OutcomeAnalyzer

from nudge.domains.coaching.tools.prompt_engine_tools import parse_instant

logger = logging.getLogger(__name__)


def _invalid_as_of(as_of: str) -> str:
    return json.dumps({"status": "error", "message": f"Invalid as_of timestamp: {as_of!r}"})


def register_analytics_tools(
    mcp: FastMCP,
    outcome_analyzer: OutcomeAnalyzer,
    cohort_analyzer: CohortAnalyzer,
) -> None:
    """Register cohort analytics tools on the MCP server."""

    @mcp.tool
    async def outcome_report(
        ctx: Context, days: int = 30, coach_id: str = "", as_of: str = ""
    ) -> str:
        """Mean change in weight, waist and fasting glucose across the cohort.

        Each participant with at least two readings in the window contributes
        their latest minus earliest value. Results from fewer than five
        participants are marked as limited data.

        Args:
            days: Window length in days (default: 30).
            coach_id: Restrict to one coach's participants.
            as_of: End of the window (ISO 8601). Defaults to now.
        """
        try:
            now = parse_instant(as_of)
        except ValueError:
            return _invalid_as_of(as_of)

        days = max(1, days)
        report = outcome_analyzer.compute_outcomes(now, days=days, coach_id=coach_id or None)
        return json.dumps({
            "status": "ok",
            "days": days,
            "outcomes": {key: metric.to_dict() for key, metric in report.items()},
        })

    @mcp.tool
    async def cohort_flags(ctx: Context, coach_id: str = "", as_of: str = "") -> str:
        """Participants needing attention: high glucose, elevated BP, missed logging.

        Args:
            coach_id: Restrict to one coach's participants.
            as_of: Evaluation instant (ISO 8601). Defaults to now.
        """
        try:
            now = parse_instant(as_of)
        except ValueError:
            return _invalid_as_of(as_of)

        flags = cohort_analyzer.compute_flags(now, coach_id=coach_id or None)
        return json.dumps({"status": "ok", **flags.to_dict()})

    @mcp.tool
    async def cohort_overview(
        ctx: Context, days: int = 7, coach_id: str = "", as_of: str = ""
    ) -> str:
        """Engagement overview: active participants, adherence and streaks.

        Args:
            days: Activity window in days (default: 7).
            coach_id: Restrict to one coach's participants.
            as_of: End of the activity window (ISO 8601). Defaults to now.
        """
        try:
            now = parse_instant(as_of)
        except ValueError:
            return _invalid_as_of(as_of)

        overview = cohort_analyzer.compute_overview(
            now, days=max(1, days), coach_id=coach_id or None
        )
        return json.dumps({"status": "ok", **overview.to_dict()})
