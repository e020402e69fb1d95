"""
Timer surface delivery.

Each started or advanced step gets a platform timer for its duration. The
platform calls back into the engine's advance operation when the timer
fires; the engine itself never waits on a clock.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..config.defaults import TimerParams
from ..state.events import RUN_STARTED, STEP_ADVANCED, TERMINAL_EVENT_TYPES
from ..utils.time import minutes_to_iso_duration
from .base import (
    MAX_FINISHED_RUNS,
    BaseEventDelivery,
    DeliveryResult,
    DeliveryStatus,
    FinishedRuns,
)


class TimerClient(ABC):
    """Platform timer service (e.g. a voice assistant's timer API)."""

    @abstractmethod
    def create_timer(self, owner_id: str, request: dict[str, Any]) -> Optional[str]:
        """Create a timer and return its id."""

    @abstractmethod
    def cancel_timer(self, owner_id: str, timer_id: str) -> None:
        """Cancel a timer created earlier."""


def build_timer_request(
    label: str,
    duration_minutes: int,
    locale: str = "en-US",
    visibility: str = "VISIBLE",
) -> dict[str, Any]:
    """Timer payload in the platform's timer-management format."""
    return {
        "duration": minutes_to_iso_duration(duration_minutes),
        "timerLabel": label,
        "creationBehavior": {
            "displayExperience": {"visibility": visibility}
        },
        "triggeringBehavior": {
            "operation": {"type": "NOTIFY_ONLY"},
            "notificationConfig": {"playAudible": True},
        },
        "alertInfo": {
            "spokenInfo": {
                "content": [{
                    "locale": locale,
                    "text": f"{label} complete. Time for the next step.",
                }]
            }
        },
    }


class TimerEventDelivery(BaseEventDelivery):
    """
    Creates one timer per step and cancels it when the run moves on.

    ``_timers`` maps run id to ``(step_index, timer_id)`` for the step whose
    timer is live. A cancelled timer is forgotten before the next one is
    requested, so a retried event never cancels the same timer twice.
    """

    def __init__(
        self,
        name: str,
        config: TimerParams,
        client: TimerClient,
        max_finished_runs: int = MAX_FINISHED_RUNS,
    ):
        super().__init__(name, config)
        self.config: TimerParams = config
        self.client = client
        self._timers: dict[str, tuple[int, Optional[str]]] = {}
        self._finished_runs = FinishedRuns(max_finished_runs)
        self._lock = threading.Lock()

    @property
    def finished_run_count(self) -> int:
        with self._lock:
            return len(self._finished_runs)

    def deliver(self, events: list[dict[str, Any]]) -> list[DeliveryResult]:
        results = []

        for event in events:
            event_id = event.get("event_id")
            if not self.config.enabled:
                results.append(DeliveryResult(
                    status=DeliveryStatus.SUCCESS, event_id=event_id, message="Timers disabled"
                ))
                continue

            try:
                message = self._apply(event)
                results.append(DeliveryResult(
                    status=DeliveryStatus.SUCCESS, event_id=event_id, message=message
                ))
            except Exception as e:
                self.logger.warning(
                    "Timer request failed",
                    delivery_name=self.name,
                    event_id=event_id,
                    run_id=event.get("run_id"),
                    error=str(e)
                )
                results.append(DeliveryResult(
                    status=DeliveryStatus.FAILED,
                    event_id=event_id,
                    message=f"Timer error: {str(e)}",
                    error=e
                ))

        return results

    def _apply(self, event: dict[str, Any]) -> str:
        run_id = event["run_id"]
        owner_id = event["owner_id"]
        event_type = event["event"]

        with self._lock:
            if run_id in self._finished_runs:
                return "Run already finished"
            previous = self._timers.get(run_id)

        if event_type in TERMINAL_EVENT_TYPES:
            self._cancel_live_timer(run_id, owner_id, previous)
            with self._lock:
                self._timers.pop(run_id, None)
                self._finished_runs.add(run_id)
            return "Timer cancelled"

        if event_type == RUN_STARTED:
            step, step_index = event.get("first_step"), 0
        elif event_type == STEP_ADVANCED:
            step, step_index = event.get("step"), event.get("step_index", 0)
        else:
            return "Ignored"

        if previous is not None and previous[0] >= step_index:
            return "Timer already set"

        self._cancel_live_timer(run_id, owner_id, previous)

        request = build_timer_request(
            step["label"],
            step["duration_minutes"],
            locale=self.config.locale,
            visibility=self.config.visibility,
        )
        timer_id = self.client.create_timer(owner_id, request)

        with self._lock:
            self._timers[run_id] = (step_index, timer_id)

        self.logger.info(
            "Step timer set",
            delivery_name=self.name,
            event_id=event.get("event_id"),
            run_id=run_id,
            step_index=step_index,
            duration=request["duration"],
        )
        return f"Timer set for {request['duration']}"

    def _cancel_live_timer(
        self, run_id: str, owner_id: str, previous: Optional[tuple[int, Optional[str]]]
    ) -> None:
        if previous is None or not previous[1]:
            return
        self.client.cancel_timer(owner_id, previous[1])
        # Keep the step index so a stale event for it is still ignored
        with self._lock:
            if self._timers.get(run_id) == previous:
                self._timers[run_id] = (previous[0], None)
