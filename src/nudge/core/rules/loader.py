"""Catalog loader: reads prompt and rule definitions from YAML into the store.

Every rule is parsed with :func:`parse_trigger` before it is stored, so a
malformed trigger config is rejected at load time instead of surfacing as a
skipped rule on every evaluation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from nudge.core.rules.triggers import ConfigurationError, parse_trigger
from nudge.core.storage.models import (
    Prompt,
    PromptCategory,
    PromptChannel,
    PromptRule,
    TriggerType,
)
from nudge.core.storage.repository import CoachingRepository

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = (
    Path(__file__).resolve().parents[2] / "domains" / "coaching" / "catalog" / "default_catalog.yaml"
)


@dataclass
class CatalogLoadResult:
    prompts_loaded: int = 0
    rules_loaded: int = 0
    rejected: list[str] = field(default_factory=list)


def parse_prompt(data: dict[str, Any]) -> Prompt:
    """Build a Prompt from a catalog entry.

    Raises:
        ConfigurationError: On a missing field or unknown category/channel.
    """
    try:
        return Prompt(
            id="",
            key=data["key"],
            name=data.get("name", data["key"]),
            category=PromptCategory(data["category"]),
            channel=PromptChannel(data.get("channel", PromptChannel.IN_APP.value)),
            message_template=str(data["message_template"]).strip(),
            active=bool(data.get("active", True)),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Prompt entry missing field {exc}") from exc
    except ValueError as exc:
        raise ConfigurationError(f"Prompt {data.get('key')!r}: {exc}") from exc


def parse_rule(data: dict[str, Any], prompt_id: str) -> PromptRule:
    """Build and validate a PromptRule from a catalog entry.

    Raises:
        ConfigurationError: When the entry or its trigger config is malformed.
    """
    try:
        rule = PromptRule(
            id="",
            key=data["key"],
            prompt_id=prompt_id,
            trigger_type=TriggerType(data["trigger_type"]),
            schedule_json=data.get("schedule"),
            conditions_json=data.get("conditions"),
            cooldown_hours=int(data.get("cooldown_hours", 24)),
            priority=int(data.get("priority", 0)),
            active=bool(data.get("active", True)),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Rule entry missing field {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Rule {data.get('key')!r}: {exc}") from exc

    parse_trigger(rule)
    return rule


def load_catalog_file(path: str | Path, repository: CoachingRepository) -> CatalogLoadResult:
    """Upsert every prompt and rule in a YAML catalog, keyed by ``key``.

    Invalid entries are logged and skipped; valid ones still load.
    """
    path = Path(path)
    with open(path) as f:
        data: dict[str, Any] = yaml.safe_load(f) or {}

    result = CatalogLoadResult()
    prompt_ids: dict[str, str] = {}

    for entry in data.get("prompts", []):
        try:
            prompt = parse_prompt(entry)
        except ConfigurationError as exc:
            logger.warning("Rejected prompt in %s: %s", path.name, exc)
            result.rejected.append(str(exc))
            continue
        prompt_ids[prompt.key] = repository.save_prompt(prompt)
        result.prompts_loaded += 1

    for entry in data.get("rules", []):
        prompt_key = entry.get("prompt_key")
        prompt_id = prompt_ids.get(prompt_key)
        if prompt_id is None:
            existing = repository.get_prompt_by_key(prompt_key) if prompt_key else None
            prompt_id = existing.id if existing else None
        try:
            if prompt_id is None:
                raise ConfigurationError(
                    f"Rule {entry.get('key')!r} references unknown prompt {prompt_key!r}"
                )
            rule = parse_rule(entry, prompt_id)
        except ConfigurationError as exc:
            logger.warning("Rejected rule in %s: %s", path.name, exc)
            result.rejected.append(str(exc))
            continue
        repository.save_rule(rule)
        result.rules_loaded += 1

    logger.info(
        "Loaded catalog %s: %d prompts, %d rules, %d rejected",
        path.name,
        result.prompts_loaded,
        result.rules_loaded,
        len(result.rejected),
    )
    return result


def seed_catalog(
    repository: CoachingRepository, path: str | Path | None = None
) -> CatalogLoadResult:
    """Load ``path``, or the packaged default catalog, into an empty store.

    A store that already holds prompts or rules is left untouched; use
    :func:`load_catalog_file` to upsert a catalog over existing data.
    """
    if repository.has_catalog():
        logger.info("Prompt catalog already present; skipping seed")
        return CatalogLoadResult()
    catalog = Path(path).expanduser() if path else DEFAULT_CATALOG_PATH
    if not catalog.is_file():
        logger.warning("Catalog file does not exist: %s", catalog)
        return CatalogLoadResult()
    return load_catalog_file(catalog, repository)
