"""Standard output event delivery mechanism."""

import json
import sys
from typing import Any

from ..config.event_delivery import StdoutDeliveryConfig
from ..utils.time import format_timestamp, utc_now
from .base import BaseEventDelivery, DeliveryResult, DeliveryStatus


class StdoutEventDelivery(BaseEventDelivery):
    """Standard output event delivery implementation."""

    def __init__(self, name: str, config: StdoutDeliveryConfig):
        super().__init__(name, config)
        self.config: StdoutDeliveryConfig = config

    def deliver(self, events: list[dict[str, Any]]) -> list[DeliveryResult]:
        """Deliver events to stdout."""
        results = []

        for event in events:
            try:
                print(self._format_event(event), file=sys.stdout, flush=True)

                results.append(DeliveryResult(
                    status=DeliveryStatus.SUCCESS,
                    event_id=event.get("event_id"),
                    message="Printed to stdout"
                ))

            except Exception as e:
                self.logger.error(
                    "Failed to print event to stdout",
                    delivery_name=self.name,
                    event_id=event.get("event_id"),
                    run_id=event.get("run_id"),
                    error=str(e)
                )
                results.append(DeliveryResult(
                    status=DeliveryStatus.FAILED,
                    event_id=event.get("event_id"),
                    message=f"Stdout error: {str(e)}",
                    error=e
                ))

        return results

    def _format_event(self, event: dict[str, Any]) -> str:
        """Format event for stdout output."""
        if self.config.format == "pretty":
            output = f"[{event.get('timestamp')}] {event['event'].upper()}: run {event['run_id']}"
            if event.get("protocol_name"):
                output += f" ({event['protocol_name']})"
            step = event.get("step") or event.get("first_step")
            if step:
                output += f" -> {step['label']} for {step['duration_minutes']} min"
            return output

        if self.config.include_timestamp:
            event_copy = event.copy()
            event_copy["stdout_timestamp"] = format_timestamp(utc_now())
            return json.dumps(event_copy)
        return json.dumps(event)

    def health_check(self) -> bool:
        """Check if stdout is available."""
        try:
            return sys.stdout.writable()
        except Exception:
            return False
