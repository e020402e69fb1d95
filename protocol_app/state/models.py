"""
Data models for protocol definitions and protocol runs.

This module defines immutable data structures for step sequences, runs and
the results returned to callers of the run engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..utils.time import format_timestamp, time_elapsed_seconds


class RunStatus(str, Enum):
    """Protocol run lifecycle states."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.IN_PROGRESS


class AdvanceStatus(str, Enum):
    """Outcome of an advance request."""
    ADVANCED = "advanced"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransitionKind(str, Enum):
    """Kinds of run transitions produced by the state machine."""
    ADVANCE = "advance"
    COMPLETE = "complete"
    CANCEL = "cancel"


@dataclass(frozen=True)
class ProtocolStep:
    """A single timed step of a protocol."""

    label: str
    duration_minutes: int
    instructions: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "label": self.label,
            "duration_minutes": self.duration_minutes,
        }
        if self.instructions:
            data["instructions"] = self.instructions
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProtocolStep":
        """Build a step from a dict; accepts ``step``/``duration`` aliases."""
        label = data.get("label", data.get("step"))
        duration = data.get("duration_minutes", data.get("duration"))
        return cls(
            label=label,
            duration_minutes=duration,
            instructions=data.get("instructions"),
        )


@dataclass(frozen=True)
class ProtocolDefinition:
    """A named, ordered sequence of timed steps owned by one user."""

    id: str
    owner_id: str
    name: str
    steps: tuple[ProtocolStep, ...]
    description: Optional[str] = None
    tags: tuple[str, ...] = ()
    is_active: bool = True
    run_count: int = 0
    last_run: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def total_duration_minutes(self) -> int:
        return sum(step.duration_minutes for step in self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "steps": [step.to_dict() for step in self.steps],
            "total_duration_minutes": self.total_duration_minutes,
            "tags": list(self.tags),
            "is_active": self.is_active,
            "run_count": self.run_count,
            "last_run": format_timestamp(self.last_run) if self.last_run else None,
            "created_at": format_timestamp(self.created_at) if self.created_at else None,
            "updated_at": format_timestamp(self.updated_at) if self.updated_at else None,
        }


@dataclass(frozen=True)
class ProtocolRun:
    """
    One execution of a protocol.

    ``steps`` is the snapshot captured when the run started; later edits to
    the definition never reach an existing run.
    """

    id: str
    protocol_id: str
    owner_id: str
    protocol_name: str
    steps: tuple[ProtocolStep, ...]
    status: RunStatus
    current_step_index: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def step_count(self) -> int:
        return len(self.steps)

    @property
    def current_step(self) -> ProtocolStep:
        return self.steps[self.current_step_index]

    @property
    def is_last_step(self) -> bool:
        return self.current_step_index == len(self.steps) - 1

    @property
    def remaining_steps(self) -> tuple[ProtocolStep, ...]:
        """Steps after the current one."""
        return self.steps[self.current_step_index + 1:]

    @property
    def total_duration_minutes(self) -> int:
        return sum(step.duration_minutes for step in self.steps)

    @property
    def remaining_minutes(self) -> int:
        """Minutes left counting the whole current step (static, no countdown)."""
        return sum(step.duration_minutes for step in self.steps[self.current_step_index:])

    @property
    def duration_seconds(self) -> Optional[float]:
        """Wall-clock length of a finished run."""
        if self.started_at is None or self.completed_at is None:
            return None
        return time_elapsed_seconds(self.started_at, self.completed_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "protocol_id": self.protocol_id,
            "owner_id": self.owner_id,
            "protocol_name": self.protocol_name,
            "steps": [step.to_dict() for step in self.steps],
            "status": self.status.value,
            "current_step_index": self.current_step_index,
            "started_at": format_timestamp(self.started_at) if self.started_at else None,
            "completed_at": format_timestamp(self.completed_at) if self.completed_at else None,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class RunTransition:
    """Represents a state machine transition decision."""

    kind: TransitionKind
    from_index: int
    to_index: Optional[int]
    new_status: RunStatus


@dataclass(frozen=True)
class StartRunResult:
    """Result of starting a run."""

    run: ProtocolRun
    first_step: ProtocolStep

    @property
    def run_id(self) -> str:
        return self.run.id

    @property
    def protocol_name(self) -> str:
        return self.run.protocol_name

    @property
    def total_duration_minutes(self) -> int:
        return self.run.total_duration_minutes

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "protocol_name": self.protocol_name,
            "first_step": self.first_step.to_dict(),
            "total_duration_minutes": self.total_duration_minutes,
        }


@dataclass(frozen=True)
class AdvanceResult:
    """Result of an advance (or early completion) request."""

    status: AdvanceStatus
    run: ProtocolRun
    step: Optional[ProtocolStep] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value, "run_id": self.run.id}
        if self.step is not None:
            data["step"] = self.step.to_dict()
            data["step_index"] = self.run.current_step_index
        return data


@dataclass(frozen=True)
class CancelResult:
    """Result of a cancel request; status reports the run's terminal state."""

    status: RunStatus
    run: ProtocolRun

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "run_id": self.run.id}


@dataclass(frozen=True)
class RunStatusView:
    """Read-only projection of an owner's active run."""

    active: bool
    run: Optional[ProtocolRun] = None
    current_step: Optional[ProtocolStep] = None
    remaining_steps: tuple[ProtocolStep, ...] = field(default_factory=tuple)

    @classmethod
    def inactive(cls) -> "RunStatusView":
        return cls(active=False)

    @classmethod
    def for_run(cls, run: ProtocolRun) -> "RunStatusView":
        return cls(
            active=True,
            run=run,
            current_step=run.current_step,
            remaining_steps=run.remaining_steps,
        )

    def to_dict(self) -> dict[str, Any]:
        if not self.active or self.run is None:
            return {"active": False}
        return {
            "active": True,
            "run": self.run.to_dict(),
            "current_step": self.current_step.to_dict() if self.current_step else None,
            "remaining_steps": [step.to_dict() for step in self.remaining_steps],
            "remaining_minutes": self.run.remaining_minutes,
        }
