"""
Run log file delivery.

Appends lifecycle events to a local file so a run's history can be replayed
without the database. ``jsonl`` appends one event per line; ``json`` keeps a
single array and skips events whose ``event_id`` is already recorded.
"""

import fcntl
import json
from pathlib import Path
from typing import Any

from ..config.event_delivery import FileDeliveryConfig
from .base import (
    BaseEventDelivery,
    DeliveryResult,
    DeliveryStatus,
    EventDeliveryPermanentError,
)

FORMATS = ("json", "jsonl")


class FileEventDelivery(BaseEventDelivery):
    """Write run events to ``config.output_path``."""

    def __init__(self, name: str, config: FileDeliveryConfig):
        super().__init__(name, config)
        self.config: FileDeliveryConfig = config
        self.output_path = Path(config.output_path)

        if config.format not in FORMATS:
            raise EventDeliveryPermanentError(f"Unsupported run log format: {config.format}")
        if config.create_dirs:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)

    def deliver(self, events: list[dict[str, Any]]) -> list[DeliveryResult]:
        try:
            if self.config.format == "json":
                written = self._merge_into_array(events)
            else:
                written = self._append_lines(events)
        except (OSError, TypeError, ValueError) as e:
            self.logger.warning(
                "Run log write failed",
                delivery_name=self.name,
                output_path=str(self.output_path),
                event_ids=[event.get("event_id") for event in events],
                error=str(e),
            )
            return [DeliveryResult(
                status=DeliveryStatus.FAILED,
                event_id=event.get("event_id"),
                message=f"Run log error: {e}",
                error=e,
            ) for event in events]

        results = []
        for event in events:
            event_id = event.get("event_id")
            recorded = event_id in written
            self.logger.debug(
                "Run event logged" if recorded else "Run event already in log",
                delivery_name=self.name,
                event_id=event_id,
                event_type=event.get("event"),
                run_id=event.get("run_id"),
            )
            results.append(DeliveryResult(
                status=DeliveryStatus.SUCCESS,
                event_id=event_id,
                message=str(self.output_path) if recorded else "Already logged",
            ))
        return results

    def _append_lines(self, events: list[dict[str, Any]]) -> set:
        lines = "".join(json.dumps(event, default=str) + "\n" for event in events)
        with open(self.output_path, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            f.write(lines)
        return {event.get("event_id") for event in events}

    def _merge_into_array(self, events: list[dict[str, Any]]) -> set:
        with open(self.output_path, "a+") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            f.seek(0)
            content = f.read()
            logged = json.loads(content) if content.strip() else []
            if not isinstance(logged, list):
                raise ValueError(f"{self.output_path} does not hold a JSON array")

            known = {entry.get("event_id") for entry in logged if isinstance(entry, dict)}
            fresh = [event for event in events if event.get("event_id") not in known]
            if fresh:
                f.seek(0)
                f.truncate()
                json.dump(logged + fresh, f, indent=2, default=str)
        return {event.get("event_id") for event in fresh}

    def health_check(self) -> bool:
        """The run log directory must be writable."""
        check_file = self.output_path.parent / f".{self.output_path.name}.check"
        try:
            check_file.write_text("")
            check_file.unlink()
        except OSError as e:
            self.logger.warning("Run log not writable", delivery_name=self.name, error=str(e))
            return False
        return True
