"""Nudge coaching prompt engine MCP server: application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging
from datetime import timedelta

from fastmcp import FastMCP

from nudge.core.config.settings import Settings, get_settings
from nudge.core.rules.engine import RuleEngine
from nudge.core.rules.gate import DeliveryGate
from nudge.core.rules.loader import seed_catalog
from nudge.core.storage.database import CoachingDatabase
from nudge.core.storage.encryption import EncryptionError, FieldEncryptor
from nudge.core.storage.repository import CoachingRepository
from nudge.domains.coaching.domain_logic.aggregator import (
    AggregationThresholds,
    MetricAggregator,
)
from nudge.domains.coaching.domain_logic.cohort_analyzer import CohortAnalyzer
from nudge.domains.coaching.domain_logic.outcome_analyzer import OutcomeAnalyzer
from nudge.domains.coaching.tools.analytics_tools import register_analytics_tools
from nudge.domains.coaching.tools.participant_tools import register_participant_tools
from nudge.domains.coaching.tools.prompt_engine_tools import register_prompt_engine_tools

logger = logging.getLogger(__name__)


def _create_repository(settings: Settings) -> tuple[CoachingRepository, bool]:
    """Open the configured store.

    Without a usable ENCRYPTION_KEY the server falls back to an in-memory
    database with a throwaway key.

    Returns:
        (repository, persistent)
    """
    if settings.encryption_key:
        try:
            encryptor = FieldEncryptor(settings.encryption_key)
            database = CoachingDatabase(settings.db_path, timeout=settings.db_timeout_seconds)
            database.initialize()
            logger.info(
                "Coaching store initialized: %s (schema v%d)",
                settings.db_path,
                database.get_schema_version(),
            )
            return CoachingRepository(database, encryptor), True
        except EncryptionError as exc:
            logger.error("Failed to initialize storage: %s", exc)
    else:
        logger.info(
            "No ENCRYPTION_KEY configured. Set ENCRYPTION_KEY to persist the coaching store."
        )

    logger.warning("Using an in-memory store; readings and deliveries will not survive restart")
    database = CoachingDatabase(":memory:", timeout=settings.db_timeout_seconds)
    database.initialize()
    return CoachingRepository(database, FieldEncryptor(FieldEncryptor.generate_key())), False


def create_app(
    *,
    repository_override: CoachingRepository | None = None,
    settings_override: Settings | None = None,
) -> FastMCP:
    """Create and configure the Nudge MCP server.

    This is the main application factory. It:
    1. Creates the FastMCP server instance
    2. Opens the encrypted coaching store and seeds the prompt catalog
    3. Builds the aggregator, delivery gate and rule engine
    4. Registers the participant, prompt engine and analytics tools
    """
    settings = settings_override or get_settings()

    # --- Server instance ---
    server = FastMCP(
        "Nudge Coaching Engine",
        instructions=(
            "Health-coaching prompt engine. Decides which personalized prompts "
            "to send each participant from their logged metrics, logging behaviour "
            "and schedules, with cooldowns preventing over-messaging."
        ),
    )

    # --- Storage ---
    if repository_override is not None:
        repository, persistent = repository_override, True
    else:
        repository, persistent = _create_repository(settings)

    if settings.seed_catalog:
        loaded = seed_catalog(repository, settings.catalog_path or None)
        logger.info(
            "Prompt catalog seeded: %d prompts, %d rules",
            loaded.prompts_loaded,
            loaded.rules_loaded,
        )

    # --- Engine ---
    aggregator = MetricAggregator(
        AggregationThresholds(
            high_glucose=settings.high_glucose_threshold,
            elevated_systolic=settings.elevated_systolic_threshold,
            elevated_diastolic=settings.elevated_diastolic_threshold,
        ),
        backfill_threshold=timedelta(minutes=settings.backfill_threshold_minutes),
    )
    engine = RuleEngine(
        repository,
        aggregator,
        DeliveryGate(repository),
        fire_policy=settings.fire_policy,
        default_timezone=settings.default_timezone,
        batch_max_workers=settings.batch_max_workers,
        batch_user_timeout_seconds=settings.batch_user_timeout_seconds,
    )

    # --- Register tools ---
    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        return {
            "status": "ok",
            "server": "Nudge Coaching Engine",
            "version": "0.1.0",
            "storage_persistent": persistent,
            "schema_version": repository.database.get_schema_version(),
            "active_rules": len(repository.get_active_rules()),
            "fire_policy": engine.fire_policy,
        }

    register_participant_tools(server, repository)
    logger.info("Participant tools registered")

    register_prompt_engine_tools(server, engine, repository)
    logger.info("Prompt engine tools registered")

    register_analytics_tools(
        server,
        OutcomeAnalyzer(repository),
        CohortAnalyzer(repository, aggregator, default_timezone=settings.default_timezone),
    )
    logger.info("Analytics tools registered")

    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
