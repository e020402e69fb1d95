"""
Concurrency tests for the run engine.

Several request threads (voice, REST, timer callbacks) hit the same
SQLite file at once. These tests release threads together with a barrier
and check the persisted outcome.
"""

import shutil
import tempfile
import threading
from pathlib import Path
from unittest.mock import Mock

from protocol_app.engine import ProtocolRunEngine
from protocol_app.errors import ConflictError, NotFoundError
from protocol_app.persistence import Database, DefinitionStore, RunStore
from protocol_app.state.events import RunCancelled, RunCompleted, StepAdvanced
from protocol_app.state.models import RunStatus

STEPS = [
    {"label": "neck", "duration_minutes": 3},
    {"label": "left cheek", "duration_minutes": 3},
    {"label": "right cheek", "duration_minutes": 3},
    {"label": "chest", "duration_minutes": 5},
]


def run_together(count, target):
    """Run ``target(i)`` on ``count`` threads released at the same moment."""
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(i):
        barrier.wait()
        try:
            results[i] = target(i)
        except Exception as e:
            results[i] = e

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results


class TestConcurrentRuns:
    """Test the one-active-run rule and step ordering under contention."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.temp_dir) / "protocols.db"
        self.emitter = Mock()
        self.engine = self._engine(self.emitter)
        self.engine.create_protocol("kelly", "red light", STEPS)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _engine(self, emitter=None):
        database = Database(self.db_path, timeout=30.0)
        definitions = DefinitionStore(database)
        return ProtocolRunEngine(definitions, RunStore(database, definitions), emitter)

    def _emitted(self, event_class):
        return [c.args[0] for c in self.emitter.emit.call_args_list
                if isinstance(c.args[0], event_class)]

    def test_concurrent_starts_admit_one_run(self):
        results = run_together(8, lambda _: self.engine.start_run("kelly", "red light"))

        started = [r for r in results if not isinstance(r, Exception)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(started) == 1
        assert len(conflicts) == 7
        assert all(c.active_run_id == started[0].run_id for c in conflicts)
        assert len(self.engine.history("kelly")) == 1

    def test_separate_database_handles_share_the_rule(self):
        engines = [self._engine() for _ in range(4)]

        results = run_together(4, lambda i: engines[i].start_run("kelly", "red light"))

        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert sum(isinstance(r, ConflictError) for r in results) == 3

    def test_owners_are_independent(self):
        for owner in ("sam", "alex", "jo"):
            self.engine.create_protocol(owner, "red light", STEPS)
        owners = ["kelly", "sam", "alex", "jo"]

        results = run_together(4, lambda i: self.engine.start_run(owners[i], "red light"))

        assert not any(isinstance(r, Exception) for r in results)
        assert all(self.engine.get_status(owner).active for owner in owners)

    def test_concurrent_advances_never_skip_steps(self):
        run_id = self.engine.start_run("kelly", "red light").run_id

        results = run_together(3, lambda _: self.engine.advance_to_next_step(run_id))

        assert not any(isinstance(r, Exception) for r in results)
        indexes = [event.index for event in self._emitted(StepAdvanced)]
        assert sorted(indexes) == list(range(1, len(indexes) + 1))

        run = self.engine.runs.get_run(run_id)
        assert run.status is RunStatus.IN_PROGRESS
        assert run.current_step_index == len(indexes)

    def test_concurrent_completion_finishes_once(self):
        run_id = self.engine.start_run("kelly", "red light").run_id
        for _ in range(3):
            self.engine.advance_to_next_step(run_id)

        results = run_together(4, lambda _: self.engine.advance_to_next_step(run_id))

        assert {r.status.value for r in results} == {"completed"}
        assert len(self._emitted(RunCompleted)) == 1

    def test_cancel_racing_final_advance(self):
        run_id = self.engine.start_run("kelly", "red light").run_id
        for _ in range(3):
            self.engine.advance_to_next_step(run_id)

        def act(i):
            if i == 0:
                try:
                    return self.engine.cancel_active_run("kelly")
                except NotFoundError as e:
                    return e
            return self.engine.advance_to_next_step(run_id)

        run_together(2, act)

        run = self.engine.runs.get_run(run_id)
        assert run.is_terminal
        terminal_events = self._emitted(RunCompleted) + self._emitted(RunCancelled)
        assert len(terminal_events) == 1
        expected = RunCompleted if run.status is RunStatus.COMPLETED else RunCancelled
        assert isinstance(terminal_events[0], expected)
