"""Message personalization: ``{{token}}`` substitution for prompt templates.

Rendering never leaks ``None``/``NaN`` artifacts: any value that is missing
renders as ``--`` and any token the renderer does not know is replaced with
``--`` as well.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable

from nudge.domains.coaching.domain_logic.aggregator import round_half_up
from nudge.domains.coaching.domain_logic.summary_models import UserContext

logger = logging.getLogger(__name__)

PLACEHOLDER = "--"
NAME_FALLBACK = "there"

TOKEN_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
_VALID_PATH = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


class RenderError(Exception):
    """Raised for a structurally invalid token path. Never leaves this module."""


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def _missing(value: float | None) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def format_plain(value: float | None) -> str:
    """Integral values without a decimal point, others as-is."""
    if _missing(value):
        return PLACEHOLDER
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def format_fixed(value: float | None, places: int) -> str:
    """Fixed precision, halves rounded away from zero."""
    if _missing(value):
        return PLACEHOLDER
    return f"{round_half_up(value, places):.{places}f}"


def format_signed(value: float | None, places: int = 1) -> str:
    """Fixed precision with a leading ``+`` for positive values."""
    if _missing(value):
        return PLACEHOLDER
    rounded = round_half_up(value, places) or 0.0
    text = f"{rounded:.{places}f}"
    return f"+{text}" if rounded > 0 else text


def _first_name(name: str) -> str:
    parts = name.split(" ")
    return parts[0] if parts and parts[0] else NAME_FALLBACK


def _bp_latest(context: UserContext) -> str:
    latest = context.metrics.bp.latest
    if latest is None:
        return f"{PLACEHOLDER}/{PLACEHOLDER}"
    return f"{format_plain(latest.systolic)}/{format_plain(latest.diastolic)}"


def _target(attr: str) -> Callable[[UserContext], str]:
    def render(context: UserContext) -> str:
        if context.targets is None:
            return PLACEHOLDER
        return format_plain(getattr(context.targets, attr))

    return render


_TOKENS: dict[str, Callable[[UserContext], str]] = {
    "name": lambda c: c.name or NAME_FALLBACK,
    "firstName": lambda c: _first_name(c.name) if c.name else NAME_FALLBACK,
    "glucose.latest": lambda c: format_plain(c.metrics.glucose.latest),
    "glucose.average": lambda c: format_fixed(c.metrics.glucose.average_7_day, 0),
    "glucose.highDays": lambda c: str(c.metrics.glucose.high_days),
    "bp.latest": _bp_latest,
    "bp.elevatedDays": lambda c: str(c.metrics.bp.elevated_days),
    "weight.latest": lambda c: format_fixed(c.metrics.weight.latest, 1),
    "weight.change": lambda c: format_signed(c.metrics.weight.change_30_day, 1),
    "waist.latest": lambda c: format_fixed(c.metrics.waist.latest, 1),
    "ketones.latest": lambda c: format_fixed(c.metrics.ketones.latest, 1),
    "daysSinceLog": lambda c: format_plain(c.activity.days_since_last_log),
    "streak": lambda c: str(c.activity.streak),
    "adherence": lambda c: str(c.activity.adherence_score),
    "target.protein": _target("protein_g"),
    "target.carbs": _target("carbs_g"),
    "target.calories": _target("calories_kcal"),
}

SUPPORTED_TOKENS = frozenset(_TOKENS)


def _resolve(path: str, context: UserContext) -> str:
    if not _VALID_PATH.match(path):
        raise RenderError(f"Invalid token path: {path!r}")
    render = _TOKENS.get(path)
    if render is None:
        return PLACEHOLDER
    return render(context)


def personalize_message(template: str, context: UserContext) -> str:
    """Substitute every ``{{token}}`` in ``template`` from ``context``.

    Tokens are case-sensitive dotted paths. Unknown tokens and invalid paths
    render as ``--``.

    Usage::

        personalize_message("Hi {{firstName}}, glucose {{glucose.latest}}", ctx)
        # "Hi there, glucose --" for an unnamed user with no glucose readings
    """

    def substitute(match: re.Match[str]) -> str:
        path = match.group(1).strip()
        try:
            return _resolve(path, context)
        except RenderError as exc:
            logger.debug("Rendering placeholder for %s", exc)
            return PLACEHOLDER

    return TOKEN_PATTERN.sub(substitute, template)
