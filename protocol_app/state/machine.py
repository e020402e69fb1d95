"""
Protocol run state machine.

States: NoActiveRun -> InProgress(step_index) -> {Completed, Cancelled}.
The functions here only decide transitions; persisting them is the run
store's job and publishing them is the event emitter's.
"""

from ..errors import InvalidStateError
from ..logging.config import get_state_logger, log_run_transition
from .models import ProtocolRun, RunStatus, RunTransition, TransitionKind

state_logger = get_state_logger(__name__)


def describe_state(run: ProtocolRun) -> str:
    """Render a run's state for transition logs, e.g. ``in_progress[2]``."""
    if run.status is RunStatus.IN_PROGRESS:
        return f"{run.status.value}[{run.current_step_index}]"
    return run.status.value


def _require_in_progress(run: ProtocolRun, attempted: TransitionKind) -> None:
    if run.is_terminal:
        raise InvalidStateError(
            f"Run {run.id} is {run.status.value}; cannot {attempted.value}",
            run_id=run.id,
            current_status=run.status.value,
            attempted_transition=attempted.value,
        )


def plan_advance(run: ProtocolRun) -> RunTransition:
    """
    Decide the next transition for an advance request.

    Advancing from step i always targets i + 1; from the last step the run
    completes instead.

    Args:
        run: Run to advance

    Returns:
        The transition to persist

    Raises:
        InvalidStateError: If the run is already terminal
    """
    _require_in_progress(run, TransitionKind.ADVANCE)

    if run.is_last_step:
        transition = RunTransition(
            kind=TransitionKind.COMPLETE,
            from_index=run.current_step_index,
            to_index=None,
            new_status=RunStatus.COMPLETED,
        )
    else:
        transition = RunTransition(
            kind=TransitionKind.ADVANCE,
            from_index=run.current_step_index,
            to_index=run.current_step_index + 1,
            new_status=RunStatus.IN_PROGRESS,
        )

    state_logger.debug(
        "Planned advance",
        run_id=run.id,
        kind=transition.kind.value,
        from_index=transition.from_index,
        to_index=transition.to_index,
    )
    return transition


def plan_complete(run: ProtocolRun) -> RunTransition:
    """Decide an early completion; raises InvalidStateError when terminal."""
    _require_in_progress(run, TransitionKind.COMPLETE)
    return RunTransition(
        kind=TransitionKind.COMPLETE,
        from_index=run.current_step_index,
        to_index=None,
        new_status=RunStatus.COMPLETED,
    )


def plan_cancel(run: ProtocolRun) -> RunTransition:
    """Decide a cancellation; raises InvalidStateError when terminal."""
    _require_in_progress(run, TransitionKind.CANCEL)
    return RunTransition(
        kind=TransitionKind.CANCEL,
        from_index=run.current_step_index,
        to_index=None,
        new_status=RunStatus.CANCELLED,
    )


def record_transition(run: ProtocolRun, transition: RunTransition, trigger: str) -> None:
    """Write the audit record for a persisted transition."""
    if transition.kind is TransitionKind.ADVANCE:
        to_state = f"{transition.new_status.value}[{transition.to_index}]"
    else:
        to_state = transition.new_status.value

    log_run_transition(
        state_logger,
        run_id=run.id,
        owner_id=run.owner_id,
        from_state=describe_state(run),
        to_state=to_state,
        trigger=trigger,
        context={
            "protocol_name": run.protocol_name,
            "step_count": run.step_count,
        },
    )
