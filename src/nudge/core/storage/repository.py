"""Coaching data repository: reads and writes for the encrypted data store.

The repository mediates between domain objects (MetricReading, PromptRule,
PromptDelivery, ...) and the SQLite database, using FieldEncryptor to
encrypt/decrypt reading payloads and delivery context snapshots.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any

from nudge.core.storage.database import CoachingDatabase
from nudge.core.storage.encryption import EncryptionError, FieldEncryptor
from nudge.core.storage.models import (
    DeliveryStatus,
    MacroTargets,
    MetricKind,
    MetricReading,
    Participant,
    Prompt,
    PromptCategory,
    PromptChannel,
    PromptDelivery,
    PromptRule,
    TriggerType,
)

logger = logging.getLogger(__name__)

# Allowed delivery status changes after the initial 'sent'
_STATUS_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.SENT: frozenset({DeliveryStatus.OPENED, DeliveryStatus.FAILED}),
    DeliveryStatus.OPENED: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
}


class PersistenceError(Exception):
    """Raised when a read or write against the store fails."""


def to_iso(value: datetime) -> str:
    """Normalize a datetime to an ISO 8601 UTC string.

    Naive datetimes are taken to be UTC. Stored strings share one offset so
    lexical comparison in SQL matches chronological order.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CoachingRepository:
    """Store for participants, readings, the prompt catalog and deliveries.

    Implements :class:`nudge.core.storage.store.CoachingStore`.

    Usage::

        db = CoachingDatabase(":memory:")
        db.initialize()
        encryptor = FieldEncryptor(key="...")
        repo = CoachingRepository(db, encryptor)

        repo.upsert_participant(Participant(id="u1", name="Ada Lovelace"))
        repo.save_reading(reading)
        readings = repo.get_readings_for_user("u1", since)
    """

    def __init__(self, database: CoachingDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    @property
    def database(self) -> CoachingDatabase:
        return self._db

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now_iso() -> str:
        return to_iso(datetime.now(timezone.utc))

    def _fetchall(self, query: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        try:
            with self._db.lock:
                return self._db.connection.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Query failed: {exc}") from exc

    def _fetchone(self, query: str, params: tuple | list = ()) -> sqlite3.Row | None:
        rows = self._fetchall(query, params)
        return rows[0] if rows else None

    def _write(self, query: str, params: tuple | list) -> None:
        try:
            with self._db.transaction() as conn:
                conn.execute(query, params)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Write failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    def upsert_participant(self, participant: Participant) -> str:
        """Insert or update a participant profile."""
        created = to_iso(participant.created_at) if participant.created_at else self._now_iso()
        self._write(
            """INSERT INTO participants
                   (id, name, email, role, status, timezone, coach_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   name = excluded.name,
                   email = excluded.email,
                   role = excluded.role,
                   status = excluded.status,
                   timezone = excluded.timezone,
                   coach_id = excluded.coach_id""",
            (
                participant.id,
                participant.name,
                participant.email,
                participant.role,
                participant.status,
                participant.timezone,
                participant.coach_id,
                created,
            ),
        )
        return participant.id

    def get_participant(self, user_id: str) -> Participant | None:
        row = self._fetchone("SELECT * FROM participants WHERE id = ?", (user_id,))
        return self._row_to_participant(row) if row else None

    def get_participants(
        self, *, role: str | None = None, coach_id: str | None = None
    ) -> list[Participant]:
        """List participants, optionally filtered by role and coach."""
        conditions: list[str] = []
        params: list[Any] = []
        if role:
            conditions.append("role = ?")
            params.append(role)
        if coach_id:
            conditions.append("coach_id = ?")
            params.append(coach_id)

        query = "SELECT * FROM participants"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id"
        return [self._row_to_participant(row) for row in self._fetchall(query, params)]

    def get_active_participants(self) -> list[Participant]:
        """Participants (role 'participant') whose status is 'active'."""
        rows = self._fetchall(
            "SELECT * FROM participants WHERE role = 'participant' AND status = 'active' ORDER BY id"
        )
        return [self._row_to_participant(row) for row in rows]

    # ------------------------------------------------------------------
    # Macro targets
    # ------------------------------------------------------------------

    def save_macro_targets(self, targets: MacroTargets) -> None:
        self._write(
            """INSERT INTO macro_targets (user_id, protein_g, carbs_g, calories_kcal, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(user_id) DO UPDATE SET
                   protein_g = excluded.protein_g,
                   carbs_g = excluded.carbs_g,
                   calories_kcal = excluded.calories_kcal,
                   updated_at = excluded.updated_at""",
            (
                targets.user_id,
                targets.protein_g,
                targets.carbs_g,
                targets.calories_kcal,
                self._now_iso(),
            ),
        )

    def get_macro_targets(self, user_id: str) -> MacroTargets | None:
        row = self._fetchone("SELECT * FROM macro_targets WHERE user_id = ?", (user_id,))
        if row is None:
            return None
        return MacroTargets(
            user_id=row["user_id"],
            protein_g=row["protein_g"],
            carbs_g=row["carbs_g"],
            calories_kcal=row["calories_kcal"],
        )

    # ------------------------------------------------------------------
    # Metric readings
    # ------------------------------------------------------------------

    def save_reading(self, reading: MetricReading) -> str:
        """Persist a reading with its payload encrypted.

        Args:
            reading: The reading to save. If ``reading.id`` is empty, a UUID
                will be generated.

        Returns:
            The reading ID.

        Raises:
            PersistenceError: If the payload cannot be encrypted or written.
        """
        rid = reading.id or self._new_id()
        try:
            value_enc = self._enc.encrypt(reading.value)
        except EncryptionError as exc:
            raise PersistenceError(f"Could not encrypt reading payload: {exc}") from exc

        self._write(
            """INSERT INTO metric_readings
                   (id, user_id, kind, value_enc, source, observed_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                rid,
                reading.user_id,
                MetricKind(reading.kind).value,
                value_enc,
                reading.source,
                to_iso(reading.observed_at),
                to_iso(reading.created_at),
            ),
        )
        reading.id = rid
        logger.debug("Saved %s reading %s for user %s", reading.kind, rid, reading.user_id)
        return rid

    def get_readings_for_user(
        self, user_id: str, since: datetime, *, kind: MetricKind | None = None
    ) -> list[MetricReading]:
        """A user's readings observed at or after ``since``, oldest first."""
        query = "SELECT * FROM metric_readings WHERE user_id = ? AND observed_at >= ?"
        params: list[Any] = [user_id, to_iso(since)]
        if kind is not None:
            query += " AND kind = ?"
            params.append(MetricKind(kind).value)
        query += " ORDER BY observed_at, created_at"
        return [self._row_to_reading(row) for row in self._fetchall(query, params)]

    def get_readings_since(
        self, since: datetime, *, kind: MetricKind | None = None
    ) -> list[MetricReading]:
        """Every participant's readings observed at or after ``since``."""
        query = "SELECT * FROM metric_readings WHERE observed_at >= ?"
        params: list[Any] = [to_iso(since)]
        if kind is not None:
            query += " AND kind = ?"
            params.append(MetricKind(kind).value)
        query += " ORDER BY user_id, observed_at, created_at"
        return [self._row_to_reading(row) for row in self._fetchall(query, params)]

    def get_last_observed_at(self, user_id: str) -> datetime | None:
        """Observation time of the user's most recent reading, of any age."""
        row = self._fetchone(
            "SELECT MAX(observed_at) AS last_observed FROM metric_readings WHERE user_id = ?",
            (user_id,),
        )
        return from_iso(row["last_observed"]) if row else None

    # ------------------------------------------------------------------
    # Prompt catalog
    # ------------------------------------------------------------------

    def has_catalog(self) -> bool:
        """True once any prompt or rule is stored, active or not."""
        row = self._fetchone(
            "SELECT EXISTS(SELECT 1 FROM prompts) OR EXISTS(SELECT 1 FROM prompt_rules) AS seeded"
        )
        return bool(row["seeded"])

    def save_prompt(self, prompt: Prompt) -> str:
        """Insert a prompt, or update the existing one with the same key.

        Returns:
            The stored prompt ID (the existing ID when the key already exists).
        """
        existing = self._fetchone("SELECT id FROM prompts WHERE key = ?", (prompt.key,))
        pid = existing["id"] if existing else (prompt.id or self._new_id())
        created = to_iso(prompt.created_at) if prompt.created_at else self._now_iso()
        self._write(
            """INSERT INTO prompts
                   (id, key, name, category, channel, message_template, active, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                   name = excluded.name,
                   category = excluded.category,
                   channel = excluded.channel,
                   message_template = excluded.message_template,
                   active = excluded.active""",
            (
                pid,
                prompt.key,
                prompt.name,
                PromptCategory(prompt.category).value,
                PromptChannel(prompt.channel).value,
                prompt.message_template,
                int(prompt.active),
                created,
            ),
        )
        prompt.id = pid
        return pid

    def get_prompt(self, prompt_id: str) -> Prompt | None:
        row = self._fetchone("SELECT * FROM prompts WHERE id = ?", (prompt_id,))
        return self._row_to_prompt(row) if row else None

    def get_prompt_by_key(self, key: str) -> Prompt | None:
        row = self._fetchone("SELECT * FROM prompts WHERE key = ?", (key,))
        return self._row_to_prompt(row) if row else None

    def set_prompt_active(self, prompt_id: str, active: bool) -> None:
        self._write("UPDATE prompts SET active = ? WHERE id = ?", (int(active), prompt_id))

    def save_rule(self, rule: PromptRule) -> str:
        """Insert a rule, or update the existing one with the same key.

        The trigger config is stored as given; validation happens at the
        catalog boundary and again when the engine parses it.
        """
        existing = self._fetchone("SELECT id FROM prompt_rules WHERE key = ?", (rule.key,))
        rid = existing["id"] if existing else (rule.id or self._new_id())
        created = to_iso(rule.created_at) if rule.created_at else self._now_iso()
        self._write(
            """INSERT INTO prompt_rules
                   (id, key, prompt_id, trigger_type, schedule_json, conditions_json,
                    cooldown_hours, priority, active, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                   prompt_id = excluded.prompt_id,
                   trigger_type = excluded.trigger_type,
                   schedule_json = excluded.schedule_json,
                   conditions_json = excluded.conditions_json,
                   cooldown_hours = excluded.cooldown_hours,
                   priority = excluded.priority,
                   active = excluded.active""",
            (
                rid,
                rule.key,
                rule.prompt_id,
                TriggerType(rule.trigger_type).value,
                json.dumps(rule.schedule_json) if rule.schedule_json is not None else None,
                json.dumps(rule.conditions_json) if rule.conditions_json is not None else None,
                rule.cooldown_hours,
                rule.priority,
                int(rule.active),
                created,
            ),
        )
        rule.id = rid
        return rid

    def get_active_rules(self) -> list[PromptRule]:
        """Active rules, highest priority first, ties broken by key."""
        rows = self._fetchall(
            "SELECT * FROM prompt_rules WHERE active = 1 ORDER BY priority DESC, key"
        )
        return [self._row_to_rule(row) for row in rows]

    def get_rule_by_key(self, key: str) -> PromptRule | None:
        row = self._fetchone("SELECT * FROM prompt_rules WHERE key = ?", (key,))
        return self._row_to_rule(row) if row else None

    # ------------------------------------------------------------------
    # Deliveries
    # ------------------------------------------------------------------

    def get_recent_deliveries(
        self, user_id: str, prompt_id: str, since: datetime
    ) -> list[PromptDelivery]:
        """Deliveries of one prompt to one user fired strictly after ``since``."""
        rows = self._fetchall(
            """SELECT * FROM prompt_deliveries
               WHERE user_id = ? AND prompt_id = ? AND fired_at > ?
               ORDER BY fired_at DESC""",
            (user_id, prompt_id, to_iso(since)),
        )
        return [self._row_to_delivery(row) for row in rows]

    def get_deliveries_for_user(self, user_id: str, *, limit: int = 50) -> list[PromptDelivery]:
        """A user's delivery history, newest first."""
        rows = self._fetchall(
            """SELECT * FROM prompt_deliveries WHERE user_id = ?
               ORDER BY fired_at DESC LIMIT ?""",
            (user_id, limit),
        )
        return [self._row_to_delivery(row) for row in rows]

    def insert_delivery(self, record: PromptDelivery) -> PromptDelivery:
        """Persist a delivery record unconditionally.

        Raises:
            PersistenceError: If the record cannot be encrypted or written.
        """
        try:
            with self._db.transaction() as conn:
                self._insert_delivery_row(conn, record)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not record delivery: {exc}") from exc
        return record

    def insert_delivery_if_clear(
        self, record: PromptDelivery, cooldown_start: datetime
    ) -> PromptDelivery | None:
        """Insert a delivery only if none exists for the pair since ``cooldown_start``.

        The check and the insert run in one serialized transaction, so two
        concurrent callers for the same (user, prompt) cannot both succeed.

        Returns:
            The stored record, or None when a delivery already exists inside
            the cooldown window.

        Raises:
            PersistenceError: If the database rejects the check or the write.
        """
        try:
            with self._db.transaction() as conn:
                row = conn.execute(
                    """SELECT 1 FROM prompt_deliveries
                       WHERE user_id = ? AND prompt_id = ? AND fired_at > ?
                       LIMIT 1""",
                    (record.user_id, record.prompt_id, to_iso(cooldown_start)),
                ).fetchone()
                if row is not None:
                    return None
                self._insert_delivery_row(conn, record)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not record delivery: {exc}") from exc
        return record

    def _insert_delivery_row(self, conn: sqlite3.Connection, record: PromptDelivery) -> None:
        record.id = record.id or self._new_id()
        try:
            context_enc = self._enc.encrypt(record.context)
        except EncryptionError as exc:
            raise PersistenceError(f"Could not encrypt delivery context: {exc}") from exc
        conn.execute(
            """INSERT INTO prompt_deliveries
                   (id, user_id, prompt_id, rule_id, fired_at, context_enc, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id,
                record.user_id,
                record.prompt_id,
                record.rule_id,
                to_iso(record.fired_at),
                context_enc,
                DeliveryStatus(record.status).value,
                self._now_iso(),
            ),
        )
        logger.info(
            "Recorded delivery %s (user=%s, prompt=%s)", record.id, record.user_id, record.prompt_id
        )

    def update_delivery_status(self, delivery_id: str, status: DeliveryStatus) -> bool:
        """Move a delivery from 'sent' to 'opened' or 'failed'.

        Returns:
            True if the status changed, False if the delivery does not exist
            or the transition is not allowed.
        """
        status = DeliveryStatus(status)
        try:
            with self._db.transaction() as conn:
                row = conn.execute(
                    "SELECT status FROM prompt_deliveries WHERE id = ?", (delivery_id,)
                ).fetchone()
                if row is None:
                    return False
                current = DeliveryStatus(row["status"])
                if status not in _STATUS_TRANSITIONS[current]:
                    logger.warning(
                        "Rejected delivery status change %s -> %s for %s",
                        current.value,
                        status.value,
                        delivery_id,
                    )
                    return False
                conn.execute(
                    "UPDATE prompt_deliveries SET status = ? WHERE id = ?",
                    (status.value, delivery_id),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not update delivery status: {exc}") from exc
        return True

    # ------------------------------------------------------------------
    # Row conversion helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_participant(row: sqlite3.Row) -> Participant:
        return Participant(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            role=row["role"],
            status=row["status"],
            timezone=row["timezone"],
            coach_id=row["coach_id"],
            created_at=from_iso(row["created_at"]),
        )

    def _row_to_reading(self, row: sqlite3.Row) -> MetricReading:
        value = self._enc.decrypt(row["value_enc"])
        return MetricReading(
            id=row["id"],
            user_id=row["user_id"],
            kind=MetricKind(row["kind"]),
            value=value if isinstance(value, dict) else {},
            observed_at=from_iso(row["observed_at"]),
            created_at=from_iso(row["created_at"]),
            source=row["source"],
        )

    @staticmethod
    def _row_to_prompt(row: sqlite3.Row) -> Prompt:
        return Prompt(
            id=row["id"],
            key=row["key"],
            name=row["name"],
            category=PromptCategory(row["category"]),
            channel=PromptChannel(row["channel"]),
            message_template=row["message_template"],
            active=bool(row["active"]),
            created_at=from_iso(row["created_at"]),
        )

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> PromptRule:
        return PromptRule(
            id=row["id"],
            key=row["key"],
            prompt_id=row["prompt_id"],
            trigger_type=TriggerType(row["trigger_type"]),
            schedule_json=json.loads(row["schedule_json"]) if row["schedule_json"] else None,
            conditions_json=json.loads(row["conditions_json"]) if row["conditions_json"] else None,
            cooldown_hours=row["cooldown_hours"],
            priority=row["priority"],
            active=bool(row["active"]),
            created_at=from_iso(row["created_at"]),
        )

    def _row_to_delivery(self, row: sqlite3.Row) -> PromptDelivery:
        context = self._enc.decrypt(row["context_enc"]) if row["context_enc"] else None
        return PromptDelivery(
            id=row["id"],
            user_id=row["user_id"],
            prompt_id=row["prompt_id"],
            rule_id=row["rule_id"],
            fired_at=from_iso(row["fired_at"]),
            context=context or {},
            status=DeliveryStatus(row["status"]),
        )
