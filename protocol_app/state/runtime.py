"""
Lifecycle event emission to the notification/display gateway.

The emitter is fire-and-forget from the engine's point of view: delivery
failures are logged (and optionally dead-lettered) but never raised, since
the persisted run state is the source of truth.
"""

import json
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Any, Optional

from ..config.event_delivery import (
    DeliveryMethod,
    EventDeliveryConfig,
    get_default_delivery_config,
)
from ..delivery.base import BaseEventDelivery, DeliveryResult, DeliveryStatus
from ..delivery.display import DisplayEventDelivery, DisplayPublisher, DisplayStateCache
from ..delivery.file_delivery import FileEventDelivery
from ..delivery.http_delivery import HttpEventDelivery
from ..delivery.stdout_delivery import StdoutEventDelivery
from ..logging.config import get_logger
from ..utils.time import format_timestamp, utc_now
from .events import RunEvent

logger = get_logger(__name__)

_MAX_TRACKED_EVENTS = 10_000


class EventEmitter:
    """Builds delivery handlers from configuration and publishes run events."""

    def __init__(
        self,
        delivery_config: Optional[EventDeliveryConfig] = None,
        display_cache: Optional[DisplayStateCache] = None,
        display_publisher: Optional[DisplayPublisher] = None,
        extra_handlers: Optional[list[BaseEventDelivery]] = None,
    ):
        self.logger = logger
        self.delivery_config = delivery_config or get_default_delivery_config()
        self.display_cache = display_cache or DisplayStateCache()
        self.display_publisher = display_publisher
        self.delivery_handlers: dict[str, BaseEventDelivery] = {}
        self._emitted: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

        self._init_delivery_handlers()

        for handler in extra_handlers or []:
            self.add_handler(handler)

    def _init_delivery_handlers(self) -> None:
        """Initialize delivery handlers based on configuration."""
        if not self.delivery_config.enabled:
            return

        for destination in self.delivery_config.destinations:
            if not destination.enabled:
                continue

            try:
                if destination.method == DeliveryMethod.HTTP_POST:
                    handler = HttpEventDelivery(destination.name, destination.config)
                elif destination.method == DeliveryMethod.FILE_OUTPUT:
                    handler = FileEventDelivery(destination.name, destination.config)
                elif destination.method == DeliveryMethod.STDOUT:
                    handler = StdoutEventDelivery(destination.name, destination.config)
                elif destination.method == DeliveryMethod.DISPLAY:
                    handler = DisplayEventDelivery(
                        destination.name,
                        destination.config,
                        cache=self.display_cache,
                        publisher=self.display_publisher,
                    )
                else:
                    self.logger.warning("Unsupported delivery method", method=str(destination.method))
                    continue

                self.delivery_handlers[destination.name] = handler
                self.logger.debug("Initialized delivery handler", destination=destination.name)

            except Exception as e:
                self.logger.error(
                    "Failed to initialize delivery handler",
                    destination=destination.name,
                    error=str(e)
                )

    def add_handler(self, handler: BaseEventDelivery) -> None:
        """Register a programmatic handler (e.g. a timer surface); receives every event."""
        self.delivery_handlers[handler.name] = handler

    def emit(self, event: RunEvent) -> dict[str, Any]:
        """
        Publish one lifecycle event to all matching destinations.

        Returns the serialized event, or an empty dict when the same event
        was already emitted by this process.
        """
        payload = event.to_dict()

        with self._lock:
            if payload["event_id"] in self._emitted:
                self.logger.debug(
                    "Event already emitted, skipping",
                    event_type=payload["event"],
                    run_id=payload["run_id"],
                )
                return {}
            self._emitted[payload["event_id"]] = None
            while len(self._emitted) > _MAX_TRACKED_EVENTS:
                self._emitted.popitem(last=False)

        self._deliver_event(payload)

        self.logger.info(
            "Emitted run event",
            event_type=payload["event"],
            run_id=payload["run_id"],
            owner_id=payload["owner_id"],
        )
        return payload

    def _deliver_event(self, event: dict[str, Any]) -> None:
        """Deliver event to all configured destinations."""
        if not self.delivery_config.enabled or not self.delivery_handlers:
            return

        for destination_name in self._filter_destinations(event):
            handler = self.delivery_handlers.get(destination_name)
            if not handler:
                continue

            try:
                results = handler.deliver_with_retry(
                    [event],
                    max_retries=self.delivery_config.failure_retry_attempts,
                    retry_delay=self.delivery_config.failure_retry_delay_seconds
                )

                for result in results:
                    if result.status != DeliveryStatus.SUCCESS:
                        self.logger.error(
                            "Event delivery failed",
                            destination=destination_name,
                            event_id=result.event_id,
                            event_type=event["event"],
                            run_id=event["run_id"],
                            status=result.status.value,
                            message=result.message,
                            attempts=result.attempt_count
                        )

                        if (self.delivery_config.dead_letter_enabled and
                                result.status == DeliveryStatus.DEAD_LETTER):
                            self._write_dead_letter(event, destination_name, result)

            except Exception as e:
                self.logger.error(
                    "Unexpected error during event delivery",
                    destination=destination_name,
                    run_id=event["run_id"],
                    error=str(e)
                )

    def _filter_destinations(self, event: dict[str, Any]) -> list[str]:
        """Filter destinations based on event type and owner."""
        configured = {d.name: d for d in self.delivery_config.destinations}
        filtered = []

        for name in self.delivery_handlers:
            destination = configured.get(name)
            if destination is None:
                # Programmatic handlers receive everything
                filtered.append(name)
                continue

            if not destination.enabled:
                continue

            if destination.events_filter and event.get("event") not in destination.events_filter:
                continue

            if destination.owners_filter and event.get("owner_id") not in destination.owners_filter:
                continue

            filtered.append(name)

        return filtered

    def _write_dead_letter(self, event: dict[str, Any], destination: str, result: DeliveryResult) -> None:
        """Write failed event to dead letter file."""
        if not self.delivery_config.dead_letter_path:
            return

        try:
            dead_letter_path = Path(self.delivery_config.dead_letter_path)
            dead_letter_path.parent.mkdir(parents=True, exist_ok=True)

            entry = {
                "event_id": event.get("event_id"),
                "event": event,
                "destination": destination,
                "failure_reason": result.message,
                "failed_at": format_timestamp(utc_now())
            }

            with open(dead_letter_path, 'a') as f:
                json.dump(entry, f, default=str)
                f.write('\n')

            self.logger.info(
                "Event written to dead letter queue",
                event_id=event.get("event_id"),
                run_id=event["run_id"],
                destination=destination,
                path=str(dead_letter_path)
            )

        except OSError as e:
            self.logger.error(
                "Failed to write dead letter",
                run_id=event["run_id"],
                error=str(e)
            )

    def get_stats(self) -> dict[str, Any]:
        """Delivery statistics per handler."""
        return {name: handler.get_stats() for name, handler in self.delivery_handlers.items()}
