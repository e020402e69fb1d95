"""
Error handling tests for the protocol engine.

Tests cover the error hierarchy, propagation of domain errors to callers,
and isolation of gateway and storage failures.
"""

import sqlite3
from unittest.mock import Mock, patch

import pytest

from protocol_app.delivery.base import EventDeliveryPermanentError, EventDeliveryRetryableError
from protocol_app.engine import ProtocolRunEngine
from protocol_app.errors import (
    ConflictError,
    DeliveryError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ProtocolError,
    RunNotFoundError,
    SystemFailureError,
    ValidationError,
)


class TestErrorClassification:
    """Test error classification system."""

    def test_protocol_error_hierarchy(self):
        base_error = ProtocolError("base error")
        assert base_error.recoverable is True
        assert base_error.context == {}

        validation = ValidationError("bad duration", field="steps[0].duration_minutes", value=0)
        assert isinstance(validation, ProtocolError)
        assert validation.recoverable is False
        assert validation.value == 0

        not_found = NotFoundError("no such protocol", resource="protocol", identifier="yoga")
        assert not_found.identifier == "yoga"

        conflict = ConflictError("busy", owner_id="kelly", active_run_id="r1",
                                 active_protocol_name="red light")
        assert conflict.active_protocol_name == "red light"

        invalid = InvalidStateError("finished", run_id="r1", current_status="completed",
                                    attempted_transition="advance")
        assert invalid.current_status == "completed"

    def test_run_not_found_is_both(self):
        error = RunNotFoundError("r9", context={"caller": "timer"})

        assert isinstance(error, NotFoundError)
        assert isinstance(error, InvalidStateError)
        assert str(error) == "Run not found: r9"
        assert error.resource == "run"
        assert error.run_id == "r9"
        assert error.context == {"caller": "timer"}

    def test_system_failure_hierarchy(self):
        persistence = PersistenceError("disk full", operation="insert", target="protocols.db")
        assert isinstance(persistence, SystemFailureError)
        assert persistence.recoverable is False
        assert persistence.operation == "insert"

        delivery = DeliveryError("gateway down", delivery_method="http_post", event_id="abc")
        assert delivery.delivery_method == "http_post"
        assert not isinstance(delivery, ProtocolError)
        assert issubclass(EventDeliveryPermanentError, DeliveryError)
        assert issubclass(EventDeliveryRetryableError, DeliveryError)


class TestErrorPropagation:
    """Test which failures reach the caller."""

    def test_validation_error_leaves_no_definition(self, engine):
        with pytest.raises(ValidationError):
            engine.create_protocol("kelly", "broken", [{"label": "neck", "duration_minutes": 0}])

        assert engine.list_protocols("kelly") == []

    def test_conflict_leaves_state_unchanged(self, engine, red_light):
        first = engine.start_run("kelly", "red light")

        with pytest.raises(ConflictError):
            engine.start_run("kelly", "red light")

        assert [run.id for run in engine.history("kelly")] == [first.run_id]

    def test_gateway_failure_is_suppressed(self, definitions, runs, red_light):
        emitter = Mock()
        emitter.emit.side_effect = DeliveryError("gateway down")
        engine = ProtocolRunEngine(definitions, runs, emitter)

        run_id = engine.start_run("kelly", "red light").run_id
        result = engine.advance_to_next_step(run_id)

        assert result.run.current_step_index == 1
        assert emitter.emit.call_count == 2

    def test_storage_failure_propagates(self, engine, red_light):
        with patch.object(engine.runs.db, "transaction",
                          side_effect=PersistenceError("database is locked")):
            with pytest.raises(PersistenceError):
                engine.start_run("kelly", "red light")

        assert engine.get_status("kelly").active is False

    def test_sqlite_errors_are_wrapped(self, database):
        with pytest.raises(PersistenceError) as exc_info:
            with database.connection() as conn:
                conn.execute("SELECT * FROM no_such_table")

        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)

    def test_transaction_rolls_back(self, database, definitions, red_light):
        with pytest.raises(RuntimeError):
            with database.transaction() as conn:
                conn.execute("UPDATE protocols SET run_count = 99 WHERE id = ?", (red_light.id,))
                raise RuntimeError("abort")

        assert definitions.get(red_light.id).run_count == 0
