"""
Delivery handler contract for run lifecycle events.

A handler pushes serialized events (``RunEvent.to_dict()``) to one surface.
Every event carries a deterministic ``event_id``; results, retries and log
lines are keyed on it so a gateway can match a failure to the exact
transition that produced it.
"""

import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from ..errors import DeliveryError
from ..logging.config import get_logger


MAX_FINISHED_RUNS = 10_000


class DeliveryStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


@dataclass
class DeliveryResult:
    """Outcome of pushing one event to one handler."""
    status: DeliveryStatus
    event_id: Optional[str] = None
    message: Optional[str] = None
    attempt_count: int = 1
    delivery_time_ms: Optional[int] = None
    error: Optional[Exception] = None


class FinishedRuns:
    """
    Ids of runs that already reached a terminal event, oldest evicted first.

    Not thread-safe; callers hold their own lock.
    """

    def __init__(self, max_runs: int = MAX_FINISHED_RUNS):
        self.max_runs = max_runs
        self._runs: "OrderedDict[str, None]" = OrderedDict()

    def add(self, run_id: str) -> None:
        self._runs[run_id] = None
        self._runs.move_to_end(run_id)
        while len(self._runs) > self.max_runs:
            self._runs.popitem(last=False)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)

    def clear(self) -> None:
        self._runs.clear()


class EventDeliveryError(DeliveryError):
    """A handler could not hand an event to its surface."""


class EventDeliveryRetryableError(EventDeliveryError):
    """Transient surface failure (network, 5xx); the same event may be resent."""


class EventDeliveryPermanentError(EventDeliveryError):
    """The surface rejected the event; resending it cannot succeed."""


class BaseEventDelivery(ABC):
    """One delivery surface: display, timers, webhook, file or stdout."""

    def __init__(self, name: str, config: Any):
        self.name = name
        self.config = config
        self.logger = get_logger(f"protocol.delivery.{name}")
        self._delivered = 0
        self._failed = 0
        self._last_failed_event_id: Optional[str] = None

    @abstractmethod
    def deliver(self, events: list[dict[str, Any]]) -> list[DeliveryResult]:
        """Push events once, returning one result per event in order."""

    def health_check(self) -> bool:
        """Surfaces without an external dependency are always healthy."""
        return True

    def deliver_with_retry(
        self,
        events: list[dict[str, Any]],
        max_retries: int = 2,
        retry_delay: float = 0
    ) -> list[DeliveryResult]:
        """
        Push each event, resending it up to ``max_retries`` more times.

        Permanent errors stop at the first attempt with FAILED. An event
        still failing after the last retry is returned as DEAD_LETTER so
        the emitter can park it.
        """
        return [self._deliver_one(event, max_retries, retry_delay) for event in events]

    def _deliver_one(self, event: dict[str, Any], max_retries: int, retry_delay: float) -> DeliveryResult:
        event_id = event.get("event_id")
        attempts = max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            started = time.monotonic()
            try:
                outcome = self.deliver([event])
            except EventDeliveryPermanentError as e:
                return self._record_failure(DeliveryResult(
                    status=DeliveryStatus.FAILED,
                    event_id=event_id,
                    message=f"Rejected: {e}",
                    attempt_count=attempt,
                    error=e,
                ))
            except Exception as e:
                last_error = e
            else:
                result = outcome[0] if outcome else None
                if result is not None and result.status is DeliveryStatus.SUCCESS:
                    result.event_id = event_id
                    result.attempt_count = attempt
                    result.delivery_time_ms = int((time.monotonic() - started) * 1000)
                    self._delivered += 1
                    return result
                last_error = result.error if result is not None else None

            if attempt < attempts:
                self.logger.warning(
                    "Event delivery attempt failed",
                    delivery_name=self.name,
                    event_id=event_id,
                    attempt=attempt,
                    error=str(last_error),
                )
                if retry_delay:
                    time.sleep(retry_delay)

        return self._record_failure(DeliveryResult(
            status=DeliveryStatus.DEAD_LETTER,
            event_id=event_id,
            message=f"Gave up after {attempts} attempts: {last_error}",
            attempt_count=attempts,
            error=last_error,
        ))

    def _record_failure(self, result: DeliveryResult) -> DeliveryResult:
        self._failed += 1
        self._last_failed_event_id = result.event_id
        return result

    def get_stats(self) -> dict[str, Any]:
        total = self._delivered + self._failed
        return {
            "name": self.name,
            "delivered": self._delivered,
            "failed": self._failed,
            "last_failed_event_id": self._last_failed_event_id,
            "success_rate": self._delivered / total if total else 0.0,
        }

    def reset_stats(self) -> None:
        self._delivered = 0
        self._failed = 0
        self._last_failed_event_id = None
