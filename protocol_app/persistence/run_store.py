"""
Run state store: the active run and run history per owner.

At most one run per owner may be ``in_progress``. This is enforced by the
database (partial unique index plus a check-then-insert inside one
BEGIN IMMEDIATE transaction), not by an application lock, so concurrent
start requests for one owner can never both succeed.
"""

from __future__ import annotations

import sqlite3
import uuid
from typing import Optional

from ..errors import ConflictError, PersistenceError
from ..logging.config import get_logger
from ..state.models import ProtocolDefinition, ProtocolRun, RunStatus
from ..utils.time import format_timestamp, parse_timestamp, utc_now
from .database import Database
from .definition_store import DefinitionStore, steps_from_json, steps_to_json

_ACTIVE = RunStatus.IN_PROGRESS.value


class RunStore:
    """SQLite-backed protocol runs. The run engine is its only writer."""

    def __init__(self, database: Database, definitions: DefinitionStore):
        self.db = database
        self.definitions = definitions
        self.logger = get_logger("protocol.runs")

    def get_active_run(self, owner_id: str) -> Optional[ProtocolRun]:
        """Get the owner's in-progress run, if any."""
        with self.db.connection() as conn:
            row = conn.execute("""
                SELECT * FROM protocol_runs
                WHERE owner_id = ? AND status = ?
            """, (owner_id, _ACTIVE)).fetchone()

        return self._row_to_run(row) if row else None

    def get_run(self, run_id: str) -> Optional[ProtocolRun]:
        """Get a run by id."""
        with self.db.connection() as conn:
            row = conn.execute("""
                SELECT * FROM protocol_runs WHERE id = ?
            """, (run_id,)).fetchone()

        return self._row_to_run(row) if row else None

    def create_run(self, owner_id: str, definition: ProtocolDefinition) -> str:
        """
        Create an in-progress run from a definition snapshot.

        The step sequence is copied by value into the run row. After the run
        is committed the definition's run statistics are updated
        best-effort.

        Returns:
            The new run id

        Raises:
            ConflictError: If the owner already has an in-progress run
        """
        run_id = str(uuid.uuid4())
        now = format_timestamp(utc_now())

        with self.db.transaction() as conn:
            active = conn.execute("""
                SELECT id, protocol_name FROM protocol_runs
                WHERE owner_id = ? AND status = ?
            """, (owner_id, _ACTIVE)).fetchone()

            if active is not None:
                raise self._conflict(owner_id, active["id"], active["protocol_name"])

            try:
                conn.execute("""
                    INSERT INTO protocol_runs (
                        id, protocol_id, owner_id, protocol_name, steps,
                        step_count, status, current_step, started_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
                """, (
                    run_id,
                    definition.id,
                    owner_id,
                    definition.name,
                    steps_to_json(definition.steps),
                    len(definition.steps),
                    _ACTIVE,
                    now,
                ))
            except sqlite3.IntegrityError as e:
                # Only reachable if the unique index fires despite the check above.
                active = conn.execute("""
                    SELECT id, protocol_name FROM protocol_runs
                    WHERE owner_id = ? AND status = ?
                """, (owner_id, _ACTIVE)).fetchone()
                if active is None:
                    raise
                raise self._conflict(owner_id, active["id"], active["protocol_name"]) from e

        self.logger.info(
            "Protocol run created",
            run_id=run_id,
            owner_id=owner_id,
            protocol_id=definition.id,
            protocol_name=definition.name,
            step_count=len(definition.steps),
        )

        try:
            self.definitions.record_run(definition.id)
        except PersistenceError as e:
            self.logger.warning(
                "Failed to update protocol run statistics",
                protocol_id=definition.id,
                run_id=run_id,
                error=str(e),
            )

        return run_id

    def advance_step(self, run_id: str, new_step_index: int) -> bool:
        """
        Persist a forward move to ``new_step_index``.

        Only accepted when the run is in progress, the index is exactly one
        past the current one, and it is inside the snapshot.
        """
        with self.db.transaction() as conn:
            cursor = conn.execute("""
                UPDATE protocol_runs SET current_step = ?
                WHERE id = ?
                  AND status = ?
                  AND current_step = ? - 1
                  AND ? < step_count
            """, (new_step_index, run_id, _ACTIVE, new_step_index, new_step_index))
            updated = cursor.rowcount > 0

        if not updated:
            self.logger.info("Step advance rejected", run_id=run_id, new_step_index=new_step_index)
        return updated

    def complete_run(self, run_id: str, notes: Optional[str] = None) -> bool:
        """in_progress -> completed; False if the run is already terminal."""
        return self._finish(run_id, RunStatus.COMPLETED, notes)

    def cancel_run(self, run_id: str) -> bool:
        """in_progress -> cancelled; False if the run is already terminal."""
        return self._finish(run_id, RunStatus.CANCELLED, None)

    def _finish(self, run_id: str, status: RunStatus, notes: Optional[str]) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute("""
                UPDATE protocol_runs
                SET status = ?, completed_at = ?, notes = COALESCE(?, notes)
                WHERE id = ? AND status = ?
            """, (status.value, format_timestamp(utc_now()), notes, run_id, _ACTIVE))
            finished = cursor.rowcount > 0

        if finished:
            self.logger.info("Protocol run finished", run_id=run_id, status=status.value)
        else:
            self.logger.info("Terminal transition ignored", run_id=run_id, status=status.value)
        return finished

    def history(
        self,
        owner_id: str,
        definition_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[ProtocolRun]:
        """Runs for an owner (optionally one protocol), most recent first."""
        query = "SELECT * FROM protocol_runs WHERE owner_id = ?"
        params: list = [owner_id]

        if definition_id:
            query += " AND protocol_id = ?"
            params.append(definition_id)

        query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [self._row_to_run(row) for row in rows]

    def _conflict(self, owner_id: str, active_run_id: str, active_protocol_name: str) -> ConflictError:
        self.logger.info(
            "Run already in progress",
            owner_id=owner_id,
            active_run_id=active_run_id,
            active_protocol_name=active_protocol_name,
        )
        return ConflictError(
            f"{active_protocol_name} is already running",
            owner_id=owner_id,
            active_run_id=active_run_id,
            active_protocol_name=active_protocol_name,
        )

    def _row_to_run(self, row: sqlite3.Row) -> ProtocolRun:
        """Convert database row to ProtocolRun object."""
        return ProtocolRun(
            id=row["id"],
            protocol_id=row["protocol_id"],
            owner_id=row["owner_id"],
            protocol_name=row["protocol_name"],
            steps=steps_from_json(row["steps"]),
            status=RunStatus(row["status"]),
            current_step_index=row["current_step"],
            started_at=parse_timestamp(row["started_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
            notes=row["notes"],
        )
