"""Protocol definition store: named, versioned step sequences per owner."""

from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any, Iterable, Optional, Union

from ..errors import ValidationError
from ..logging.config import get_logger
from ..state.models import ProtocolDefinition, ProtocolStep
from ..utils.time import format_timestamp, parse_timestamp, utc_now
from .database import Database

StepInput = Union[ProtocolStep, dict[str, Any]]


def name_key(name: str) -> str:
    """Case-insensitive identity of a protocol name."""
    return " ".join(name.split()).lower()


def validate_steps(steps: Optional[Iterable[StepInput]]) -> tuple[ProtocolStep, ...]:
    """
    Validate and normalize a step sequence.

    Args:
        steps: ProtocolStep objects or dicts with label/duration_minutes

    Returns:
        Tuple of validated steps

    Raises:
        ValidationError: If the sequence is empty or any step is malformed
    """
    if steps is None:
        raise ValidationError("Protocol must have at least one step", field="steps", value=None)

    normalized = []
    for index, raw in enumerate(steps):
        if isinstance(raw, ProtocolStep):
            step = raw
        elif isinstance(raw, dict):
            step = ProtocolStep.from_dict(raw)
        else:
            raise ValidationError(
                f"Step {index} must be a mapping with label and duration_minutes",
                field=f"steps[{index}]",
                value=raw,
            )

        if not isinstance(step.label, str) or not step.label.strip():
            raise ValidationError(
                f"Step {index} needs a label",
                field=f"steps[{index}].label",
                value=step.label,
            )

        duration = step.duration_minutes
        if not isinstance(duration, int) or isinstance(duration, bool) or duration <= 0:
            raise ValidationError(
                f"Step {index} ({step.label}) duration must be a positive whole number of minutes",
                field=f"steps[{index}].duration_minutes",
                value=duration,
            )

        normalized.append(ProtocolStep(
            label=step.label.strip(),
            duration_minutes=duration,
            instructions=step.instructions,
        ))

    if not normalized:
        raise ValidationError("Protocol must have at least one step", field="steps", value=[])

    return tuple(normalized)


def steps_to_json(steps: Iterable[ProtocolStep]) -> str:
    return json.dumps([step.to_dict() for step in steps])


def steps_from_json(data: str) -> tuple[ProtocolStep, ...]:
    return tuple(ProtocolStep.from_dict(item) for item in json.loads(data))


class DefinitionStore:
    """SQLite-backed protocol definitions."""

    def __init__(self, database: Database):
        self.db = database
        self.logger = get_logger("protocol.definitions")

    def upsert(
        self,
        owner_id: str,
        name: str,
        steps: Iterable[StepInput],
        tags: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
    ) -> str:
        """
        Create a definition, or revise the existing one with the same name.

        The name match is case-insensitive. A revision replaces steps, tags,
        description and display name, keeps the id, bumps updated_at and
        reactivates a soft-deleted definition.

        Returns:
            Definition id

        Raises:
            ValidationError: If the name is blank or the steps are invalid
        """
        if not owner_id:
            raise ValidationError("Owner id is required", field="owner_id", value=owner_id)
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Protocol name is required", field="name", value=name)

        validated = validate_steps(steps)
        display_name = " ".join(name.split())
        total_duration = sum(step.duration_minutes for step in validated)
        tag_list = sorted({tag.strip() for tag in (tags or []) if tag and tag.strip()})
        now = format_timestamp(utc_now())

        with self.db.transaction() as conn:
            conn.execute("""
                INSERT INTO protocols (
                    id, owner_id, name, name_key, description, steps,
                    total_duration, tags, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(owner_id, name_key) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    steps = excluded.steps,
                    total_duration = excluded.total_duration,
                    tags = excluded.tags,
                    is_active = 1,
                    updated_at = excluded.updated_at
            """, (
                str(uuid.uuid4()),
                owner_id,
                display_name,
                name_key(display_name),
                description,
                steps_to_json(validated),
                total_duration,
                json.dumps(tag_list),
                now,
                now,
            ))

            definition_id = conn.execute("""
                SELECT id FROM protocols WHERE owner_id = ? AND name_key = ?
            """, (owner_id, name_key(display_name))).fetchone()["id"]

        self.logger.info(
            "Protocol definition saved",
            owner_id=owner_id,
            definition_id=definition_id,
            name=display_name,
            step_count=len(validated),
            total_duration_minutes=total_duration,
        )
        return definition_id

    def get(self, definition_id: str) -> Optional[ProtocolDefinition]:
        """Get a definition by id, active or not."""
        with self.db.connection() as conn:
            row = conn.execute("""
                SELECT * FROM protocols WHERE id = ?
            """, (definition_id,)).fetchone()

        return self._row_to_definition(row) if row else None

    def get_by_name(self, owner_id: str, name: str) -> Optional[ProtocolDefinition]:
        """Case-insensitive lookup among the owner's active definitions."""
        if not name or not name.strip():
            return None

        with self.db.connection() as conn:
            row = conn.execute("""
                SELECT * FROM protocols
                WHERE owner_id = ? AND name_key = ? AND is_active = 1
            """, (owner_id, name_key(name))).fetchone()

        return self._row_to_definition(row) if row else None

    def list(self, owner_id: str) -> list[ProtocolDefinition]:
        """Active definitions, most-used then most-recently updated first."""
        with self.db.connection() as conn:
            rows = conn.execute("""
                SELECT * FROM protocols
                WHERE owner_id = ? AND is_active = 1
                ORDER BY run_count DESC, updated_at DESC
            """, (owner_id,)).fetchall()

        return [self._row_to_definition(row) for row in rows]

    def soft_delete(self, definition_id: str, owner_id: str) -> bool:
        """Deactivate a definition; False when not found or not owned."""
        with self.db.transaction() as conn:
            cursor = conn.execute("""
                UPDATE protocols SET is_active = 0
                WHERE id = ? AND owner_id = ? AND is_active = 1
            """, (definition_id, owner_id))
            deleted = cursor.rowcount > 0

        if deleted:
            self.logger.info("Protocol definition deactivated",
                             definition_id=definition_id, owner_id=owner_id)
        return deleted

    def record_run(self, definition_id: str) -> None:
        """Increment run_count and stamp last_run."""
        with self.db.transaction() as conn:
            conn.execute("""
                UPDATE protocols
                SET run_count = run_count + 1, last_run = ?
                WHERE id = ?
            """, (format_timestamp(utc_now()), definition_id))

    def _row_to_definition(self, row: sqlite3.Row) -> ProtocolDefinition:
        """Convert database row to ProtocolDefinition object."""
        return ProtocolDefinition(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            steps=steps_from_json(row["steps"]),
            description=row["description"],
            tags=tuple(json.loads(row["tags"])),
            is_active=bool(row["is_active"]),
            run_count=row["run_count"],
            last_run=parse_timestamp(row["last_run"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )
