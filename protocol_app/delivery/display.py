"""
Real-time display channel.

Keeps the "current display" per owner and device (e.g. the kitchen iPad)
and forwards changes to a publisher such as a websocket broadcaster. The
cache is presentation-only state: after a restart every device falls back
to the default view.
"""

import threading
from typing import Any, Callable, Optional

from ..config.event_delivery import DisplayDeliveryConfig
from ..state.events import RUN_STARTED, STEP_ADVANCED, TERMINAL_EVENT_TYPES
from ..utils.time import format_timestamp, utc_now
from .base import (
    MAX_FINISHED_RUNS,
    BaseEventDelivery,
    DeliveryResult,
    DeliveryStatus,
    FinishedRuns,
)

DisplayPublisher = Callable[[dict[str, Any]], None]


class DisplayStateCache:
    """Thread-safe map of display key -> current view."""

    def __init__(self, default_view: str = "dashboard", max_finished_runs: int = MAX_FINISHED_RUNS):
        self.default_view = default_view
        self._states: dict[str, dict[str, Any]] = {}
        self._finished_runs = FinishedRuns(max_finished_runs)
        self._lock = threading.Lock()

    @staticmethod
    def key(owner_id: str, device_id: str) -> str:
        return f"{owner_id}-{device_id}"

    def get(self, owner_id: str, device_id: str) -> dict[str, Any]:
        """Current display state, or the default view when nothing is cached."""
        with self._lock:
            state = self._states.get(self.key(owner_id, device_id))
            if state is None:
                return {"view": self.default_view, "data": {}}
            return dict(state)

    def set(self, owner_id: str, device_id: str, view: str, data: dict[str, Any]) -> dict[str, Any]:
        state = {"view": view, "data": data, "timestamp": format_timestamp(utc_now())}
        with self._lock:
            self._states[self.key(owner_id, device_id)] = state
        return dict(state)

    def mark_finished(self, run_id: str) -> None:
        with self._lock:
            self._finished_runs.add(run_id)

    def is_finished(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._finished_runs

    @property
    def finished_run_count(self) -> int:
        with self._lock:
            return len(self._finished_runs)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()
            self._finished_runs.clear()


class DisplayEventDelivery(BaseEventDelivery):
    """
    Projects lifecycle events onto the display cache.

    Repeated or stale events (an older step index for the same run, or any
    step event after the run finished) leave the display unchanged.
    """

    def __init__(
        self,
        name: str,
        config: DisplayDeliveryConfig,
        cache: Optional[DisplayStateCache] = None,
        publisher: Optional[DisplayPublisher] = None,
    ):
        super().__init__(name, config)
        self.config: DisplayDeliveryConfig = config
        self.cache = cache or DisplayStateCache(default_view=config.default_view)
        self.publisher = publisher

    def deliver(self, events: list[dict[str, Any]]) -> list[DeliveryResult]:
        results = []

        for event in events:
            try:
                state = self._apply(event)
                if state is not None and self.publisher is not None:
                    self.publisher({
                        "type": "display:changed",
                        "owner_id": event["owner_id"],
                        "device_id": self.config.device_id,
                        **state,
                    })

                results.append(DeliveryResult(
                    status=DeliveryStatus.SUCCESS,
                    event_id=event.get("event_id"),
                    message="Display updated" if state is not None else "Display unchanged"
                ))

            except Exception as e:
                self.logger.warning(
                    "Display update failed",
                    delivery_name=self.name,
                    event_id=event.get("event_id"),
                    run_id=event.get("run_id"),
                    error=str(e)
                )
                results.append(DeliveryResult(
                    status=DeliveryStatus.FAILED,
                    event_id=event.get("event_id"),
                    message=f"Display error: {str(e)}",
                    error=e
                ))

        return results

    def _apply(self, event: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Update the cache for one event; returns the new state or None if ignored."""
        run_id = event["run_id"]
        owner_id = event["owner_id"]
        device_id = self.config.device_id
        event_type = event["event"]

        if event_type in TERMINAL_EVENT_TYPES:
            if self.cache.is_finished(run_id):
                return None
            self.cache.mark_finished(run_id)
            return self.cache.set(owner_id, device_id, self.config.default_view, {
                "last_run": {"run_id": run_id, "outcome": event_type},
            })

        if event_type not in (RUN_STARTED, STEP_ADVANCED) or self.cache.is_finished(run_id):
            return None

        current = self.cache.get(owner_id, device_id)
        current_data = current.get("data", {})
        step_index = event.get("step_index", 0)

        if current_data.get("run_id") == run_id and current_data.get("step_index", -1) >= step_index:
            return None

        data = {
            "run_id": run_id,
            "step_index": step_index,
            "step": event.get("first_step") if event_type == RUN_STARTED else event.get("step"),
        }
        if event_type == RUN_STARTED:
            data["protocol_name"] = event.get("protocol_name")
            data["total_duration_minutes"] = event.get("total_duration_minutes")
        elif current_data.get("run_id") == run_id:
            data["protocol_name"] = current_data.get("protocol_name")
            data["total_duration_minutes"] = current_data.get("total_duration_minutes")

        return self.cache.set(owner_id, device_id, self.config.run_view, data)
