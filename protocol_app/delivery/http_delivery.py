"""HTTP POST event delivery, e.g. a web dashboard's event endpoint."""

import json
import socket
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from ..config.event_delivery import HttpDeliveryConfig
from .base import (
    BaseEventDelivery,
    DeliveryResult,
    DeliveryStatus,
    EventDeliveryPermanentError,
    EventDeliveryRetryableError,
)


class HttpEventDelivery(BaseEventDelivery):
    """HTTP POST event delivery implementation."""

    def __init__(self, name: str, config: HttpDeliveryConfig):
        super().__init__(name, config)
        self.config: HttpDeliveryConfig = config

        parsed = urlparse(config.url)
        if not parsed.scheme or not parsed.netloc:
            raise EventDeliveryPermanentError(f"Invalid URL: {config.url}")

    def deliver(self, events: list[dict[str, Any]]) -> list[DeliveryResult]:
        """
        Deliver events via HTTP POST.

        Retryable and permanent failures are raised so that
        ``deliver_with_retry`` can classify them.
        """
        return [self._deliver_single_event(event) for event in events]

    def _deliver_single_event(self, event: dict[str, Any]) -> DeliveryResult:
        """Deliver a single event via HTTP POST."""
        try:
            data = json.dumps(event).encode('utf-8')
        except (TypeError, ValueError) as e:
            raise EventDeliveryPermanentError(f"JSON encoding error: {str(e)}") from e

        headers = {
            'Content-Type': 'application/json',
            'Content-Length': str(len(data)),
            'User-Agent': 'protocol-app/1.0'
        }
        if self.config.headers:
            headers.update(self.config.headers)

        req = Request(
            self.config.url,
            data=data,
            headers=headers,
            method=self.config.method
        )

        try:
            with urlopen(req, timeout=self.config.timeout_seconds) as response:
                response_code = response.getcode()
                response_data = response.read().decode('utf-8')

        except HTTPError as e:
            error_msg = f"HTTP {e.code}: {e.reason}"
            self.logger.warning(
                "Event delivery HTTP error",
                delivery_name=self.name,
                event_id=event.get("event_id"),
                run_id=event.get("run_id"),
                error_code=e.code,
                error_reason=str(e.reason)
            )
            if e.code >= 500:
                raise EventDeliveryRetryableError(error_msg) from e
            raise EventDeliveryPermanentError(error_msg) from e

        except (URLError, socket.timeout, OSError) as e:
            self.logger.warning(
                "Event delivery network error",
                delivery_name=self.name,
                event_id=event.get("event_id"),
                run_id=event.get("run_id"),
                error=str(e)
            )
            raise EventDeliveryRetryableError(f"Network error: {str(e)}") from e

        if 200 <= response_code < 300:
            self.logger.debug(
                "Event delivered",
                delivery_name=self.name,
                event_type=event.get("event"),
                run_id=event.get("run_id"),
                response_code=response_code
            )
            return DeliveryResult(
                status=DeliveryStatus.SUCCESS,
                event_id=event.get("event_id"),
                message=f"HTTP {response_code}: {response_data[:100]}"
            )

        error_msg = f"HTTP {response_code}: {response_data[:200]}"
        if response_code >= 500:
            raise EventDeliveryRetryableError(error_msg)
        raise EventDeliveryPermanentError(error_msg)

    def health_check(self) -> bool:
        """Check if HTTP endpoint is reachable."""
        try:
            parsed = urlparse(self.config.url)
            req = Request(f"{parsed.scheme}://{parsed.netloc}", method='HEAD')
            with urlopen(req, timeout=5) as response:
                return 200 <= response.getcode() < 400

        except (URLError, OSError) as e:
            self.logger.warning(
                "Health check failed",
                delivery_name=self.name,
                error=str(e)
            )
            return False
