"""
Lifecycle events published to the notification/display gateway.

Events are delivered fire-and-forget with at-least-once semantics. Each
carries a deterministic ``event_id`` so receivers can drop repeats.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from ..utils.time import format_timestamp, utc_now
from .models import ProtocolStep

RUN_STARTED = "run_started"
STEP_ADVANCED = "step_advanced"
RUN_COMPLETED = "run_completed"
RUN_CANCELLED = "run_cancelled"

EVENT_TYPES = (RUN_STARTED, STEP_ADVANCED, RUN_COMPLETED, RUN_CANCELLED)
TERMINAL_EVENT_TYPES = (RUN_COMPLETED, RUN_CANCELLED)


def make_event_id(run_id: str, event_type: str, step_index: Optional[int] = None) -> str:
    """Deterministic id for de-duplicating repeated deliveries."""
    key_data = f"{run_id}:{event_type}:{'' if step_index is None else step_index}"
    return hashlib.sha256(key_data.encode()).hexdigest()[:16]


@dataclass(frozen=True)
class RunEvent:
    """Base lifecycle event."""

    run_id: str
    owner_id: str
    occurred_at: datetime = field(default_factory=utc_now, compare=False)

    event_type = ""

    @property
    def step_index(self) -> Optional[int]:
        return None

    @property
    def event_id(self) -> str:
        return make_event_id(self.run_id, self.event_type, self.step_index)

    def payload(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        data = {
            "event": self.event_type,
            "event_id": self.event_id,
            "run_id": self.run_id,
            "owner_id": self.owner_id,
            "timestamp": format_timestamp(self.occurred_at),
        }
        data.update(self.payload())
        return data


@dataclass(frozen=True)
class RunStarted(RunEvent):
    protocol_name: str = ""
    first_step: Optional[ProtocolStep] = None
    total_duration_minutes: int = 0

    event_type = RUN_STARTED

    @property
    def step_index(self) -> Optional[int]:
        return 0

    def payload(self) -> dict[str, Any]:
        return {
            "protocol_name": self.protocol_name,
            "step_index": 0,
            "first_step": self.first_step.to_dict() if self.first_step else None,
            "total_duration_minutes": self.total_duration_minutes,
        }


@dataclass(frozen=True)
class StepAdvanced(RunEvent):
    index: int = 0
    step: Optional[ProtocolStep] = None

    event_type = STEP_ADVANCED

    @property
    def step_index(self) -> Optional[int]:
        return self.index

    def payload(self) -> dict[str, Any]:
        return {
            "step_index": self.index,
            "step": self.step.to_dict() if self.step else None,
        }


@dataclass(frozen=True)
class RunCompleted(RunEvent):
    event_type = RUN_COMPLETED


@dataclass(frozen=True)
class RunCancelled(RunEvent):
    event_type = RUN_CANCELLED
