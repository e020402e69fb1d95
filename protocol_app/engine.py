"""
Protocol run engine.

Coordinates the definition store, the run store and the event emitter:

    intent/REST request -> engine operation -> run store transaction -> lifecycle event

Every operation is a short synchronous unit of work. Step timing is owned by
the external timer surface, which calls ``advance_to_next_step`` when a
step's duration elapses.
"""

from dataclasses import replace
from typing import Any, Iterable, Optional

from .config.defaults import TimerParams
from .config.loader import ConfigLoader
from .config.validation import ConfigValidator
from .delivery.display import DisplayPublisher, DisplayStateCache
from .delivery.timer import TimerClient, TimerEventDelivery
from .errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    RunNotFoundError,
    ValidationError,
)
from .logging.config import get_logger, get_state_logger, log_run_transition
from .persistence.database import Database
from .persistence.definition_store import DefinitionStore, StepInput
from .persistence.run_store import RunStore
from .state.events import RunCancelled, RunCompleted, RunEvent, RunStarted, StepAdvanced
from .state.machine import plan_advance, plan_cancel, plan_complete, record_transition
from .state.models import (
    AdvanceResult,
    AdvanceStatus,
    CancelResult,
    ProtocolDefinition,
    ProtocolRun,
    RunStatus,
    RunStatusView,
    StartRunResult,
    TransitionKind,
)
from .state.runtime import EventEmitter

logger = get_logger(__name__)
state_logger = get_state_logger(__name__)


class ProtocolRunEngine:
    """
    State machine runner for timed protocols.

    Enforces at most one in-progress run per owner (delegated to the run
    store's transaction), snapshots steps at start, and publishes lifecycle
    events without letting delivery failures affect persisted state.
    """

    def __init__(
        self,
        definitions: DefinitionStore,
        runs: RunStore,
        emitter: Optional[EventEmitter] = None,
        history_limit: int = 10,
        max_history_limit: int = 100,
        config_loader: Optional[ConfigLoader] = None,
    ) -> None:
        self.logger = logger
        self.definitions = definitions
        self.runs = runs
        self.emitter = emitter
        self.history_limit = history_limit
        self.max_history_limit = max_history_limit
        self.config_loader = config_loader

    @classmethod
    def from_config(
        cls,
        config_loader: Optional[ConfigLoader] = None,
        overrides: Optional[dict[str, Any]] = None,
        display_publisher: Optional[DisplayPublisher] = None,
        timer_client: Optional[TimerClient] = None,
    ) -> "ProtocolRunEngine":
        """Build an engine with stores and delivery wired from configuration."""
        loader = config_loader or ConfigLoader.create()
        config = loader.merge_config(overrides=overrides)

        issues = ConfigValidator.validate_config(config)
        issues.extend(ConfigValidator.validate_delivery_section(
            loader.load_settings().get("delivery") or {}
        ))
        if issues:
            first = issues[0]
            raise ValidationError(
                f"Invalid configuration: {first.field}: {first.message}",
                field=first.field,
                value=first.value,
                context={"issues": [f"{i.field}: {i.message}" for i in issues]},
            )

        database = Database(
            config["storage"]["db_path"],
            timeout=config["storage"]["busy_timeout_seconds"],
        )
        definitions = DefinitionStore(database)
        runs = RunStore(database, definitions)

        extra_handlers = []
        if timer_client is not None and config["timer"]["enabled"]:
            extra_handlers.append(
                TimerEventDelivery("timer", TimerParams(**config["timer"]), timer_client)
            )

        emitter = EventEmitter(
            loader.load_delivery_config(),
            display_cache=DisplayStateCache(default_view=config["display"]["default_view"]),
            display_publisher=display_publisher,
            extra_handlers=extra_handlers,
        )

        return cls(
            definitions,
            runs,
            emitter,
            history_limit=config["history"]["default_limit"],
            max_history_limit=config["history"]["max_limit"],
            config_loader=loader,
        )

    # ----------------------------------------------------------------- definitions

    def create_protocol(
        self,
        owner_id: str,
        name: str,
        steps: Iterable[StepInput],
        tags: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
    ) -> ProtocolDefinition:
        """Create or revise a protocol definition by name."""
        definition_id = self.definitions.upsert(owner_id, name, steps, tags, description)
        definition = self.definitions.get(definition_id)
        if definition is None:
            raise NotFoundError("Protocol vanished after save", resource="protocol",
                                identifier=definition_id)
        return definition

    def get_protocol(self, owner_id: str, name: str) -> ProtocolDefinition:
        """Resolve an active definition by name; NotFoundError when absent."""
        definition = self.definitions.get_by_name(owner_id, name)
        if definition is None:
            raise NotFoundError(
                f"No protocol called {name}",
                resource="protocol",
                identifier=name,
                context={"owner_id": owner_id},
            )
        return definition

    def list_protocols(self, owner_id: str) -> list[ProtocolDefinition]:
        return self.definitions.list(owner_id)

    def delete_protocol(self, owner_id: str, definition_id: str) -> bool:
        """Soft-delete a definition. In-flight runs keep their snapshot."""
        return self.definitions.soft_delete(definition_id, owner_id)

    def history(
        self,
        owner_id: str,
        protocol_name: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ProtocolRun]:
        """Runs for an owner, most recent first."""
        definition_id = None
        if protocol_name:
            definition_id = self.get_protocol(owner_id, protocol_name).id

        return self.runs.history(owner_id, definition_id, self._history_limit(owner_id, limit))

    def _history_limit(self, owner_id: str, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.history_limit
            if self.config_loader is not None:
                limit = self.config_loader.merge_config(owner_id)["history"]["default_limit"]

        if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
            raise ValidationError("History limit must be a positive integer",
                                  field="limit", value=limit)
        return min(limit, self.max_history_limit)

    # ------------------------------------------------------------------------ runs

    def start_run(self, owner_id: str, protocol_name: str) -> StartRunResult:
        """
        Start a run of the named protocol.

        Raises:
            NotFoundError: If the owner has no active protocol with that name
            ConflictError: If the owner already has a run in progress
        """
        definition = self.get_protocol(owner_id, protocol_name)

        active = self.runs.get_active_run(owner_id)
        if active is not None:
            raise ConflictError(
                f"{active.protocol_name} is already running",
                owner_id=owner_id,
                active_run_id=active.id,
                active_protocol_name=active.protocol_name,
            )

        run_id = self.runs.create_run(owner_id, definition)
        run = self._load_run(run_id)

        log_run_transition(
            state_logger,
            run_id=run.id,
            owner_id=owner_id,
            from_state="no_active_run",
            to_state=f"{RunStatus.IN_PROGRESS.value}[0]",
            trigger="start",
            context={"protocol_name": run.protocol_name, "step_count": run.step_count},
        )

        first_step = run.steps[0]
        self._publish(RunStarted(
            run_id=run.id,
            owner_id=owner_id,
            protocol_name=run.protocol_name,
            first_step=first_step,
            total_duration_minutes=run.total_duration_minutes,
        ))

        return StartRunResult(run=run, first_step=first_step)

    def advance_to_next_step(self, run_id: str) -> AdvanceResult:
        """
        Move a run to its next step, completing it after the last one.

        Safe to retry: a terminal run reports its terminal status, and a
        duplicate callback that loses the race reports the current step
        rather than skipping one.

        Raises:
            RunNotFoundError: If no run has this id
        """
        run = self._load_run(run_id)

        try:
            transition = plan_advance(run)
        except InvalidStateError:
            self.logger.info("Advance on finished run", run_id=run_id, status=run.status.value)
            return self._terminal_advance_result(run)

        if transition.kind is TransitionKind.COMPLETE:
            if not self.runs.complete_run(run.id):
                return self._advance_after_lost_race(run.id)

            record_transition(run, transition, trigger="advance")
            completed = self._load_run(run.id)
            self._publish(RunCompleted(run_id=run.id, owner_id=run.owner_id))
            return AdvanceResult(status=AdvanceStatus.COMPLETED, run=completed)

        if not self.runs.advance_step(run.id, transition.to_index):
            return self._advance_after_lost_race(run.id)

        record_transition(run, transition, trigger="advance")
        advanced = replace(run, current_step_index=transition.to_index)
        step = advanced.current_step
        self._publish(StepAdvanced(
            run_id=run.id,
            owner_id=run.owner_id,
            index=transition.to_index,
            step=step,
        ))
        return AdvanceResult(status=AdvanceStatus.ADVANCED, run=advanced, step=step)

    def complete_run(self, run_id: str, notes: Optional[str] = None) -> AdvanceResult:
        """Finish a run early, optionally with notes. Idempotent on terminal runs."""
        run = self._load_run(run_id)

        try:
            transition = plan_complete(run)
        except InvalidStateError:
            return self._terminal_advance_result(run)

        if not self.runs.complete_run(run.id, notes):
            return self._terminal_advance_result(self._load_run(run.id))

        record_transition(run, transition, trigger="complete")
        completed = self._load_run(run.id)
        self._publish(RunCompleted(run_id=run.id, owner_id=run.owner_id))
        return AdvanceResult(status=AdvanceStatus.COMPLETED, run=completed)

    def cancel_active_run(self, owner_id: str) -> CancelResult:
        """
        Cancel the owner's in-progress run.

        Raises:
            NotFoundError: If the owner has no run in progress
        """
        run = self.runs.get_active_run(owner_id)
        if run is None:
            raise NotFoundError(
                "No protocol is running",
                resource="active_run",
                identifier=owner_id,
            )
        return self._cancel(run, trigger="cancel_active")

    def cancel_run(self, run_id: str) -> CancelResult:
        """Cancel a specific run. Terminal runs report their status unchanged."""
        return self._cancel(self._load_run(run_id), trigger="cancel")

    def get_status(self, owner_id: str) -> RunStatusView:
        """Read-only view of the owner's active run."""
        run = self.runs.get_active_run(owner_id)
        if run is None:
            return RunStatusView.inactive()
        return RunStatusView.for_run(run)

    # --------------------------------------------------------------------- helpers

    def _cancel(self, run: ProtocolRun, trigger: str) -> CancelResult:
        try:
            transition = plan_cancel(run)
        except InvalidStateError:
            return CancelResult(status=run.status, run=run)

        if not self.runs.cancel_run(run.id):
            # Another writer (usually a timer-driven advance) finished it first
            current = self._load_run(run.id)
            self.logger.info("Cancel lost race", run_id=run.id, status=current.status.value)
            return CancelResult(status=current.status, run=current)

        record_transition(run, transition, trigger=trigger)
        cancelled = self._load_run(run.id)
        self._publish(RunCancelled(run_id=run.id, owner_id=run.owner_id))
        return CancelResult(status=RunStatus.CANCELLED, run=cancelled)

    def _advance_after_lost_race(self, run_id: str) -> AdvanceResult:
        current = self._load_run(run_id)
        self.logger.info(
            "Advance lost race",
            run_id=run_id,
            status=current.status.value,
            current_step_index=current.current_step_index,
        )
        if current.is_terminal:
            return self._terminal_advance_result(current)
        return AdvanceResult(status=AdvanceStatus.ADVANCED, run=current, step=current.current_step)

    @staticmethod
    def _terminal_advance_result(run: ProtocolRun) -> AdvanceResult:
        return AdvanceResult(status=AdvanceStatus(run.status.value), run=run)

    def _load_run(self, run_id: str) -> ProtocolRun:
        run = self.runs.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def _publish(self, event: RunEvent) -> None:
        """Fire-and-forget: delivery problems never unwind a persisted transition."""
        if self.emitter is None:
            return
        try:
            self.emitter.emit(event)
        except Exception as e:
            self.logger.error(
                "Failed to publish run event",
                event_type=event.event_type,
                run_id=event.run_id,
                error=str(e),
            )
