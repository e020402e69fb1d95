"""Configuration for lifecycle event delivery."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class DeliveryMethod(Enum):
    """Supported event delivery methods."""
    HTTP_POST = "http_post"
    FILE_OUTPUT = "file_output"
    STDOUT = "stdout"
    DISPLAY = "display"


@dataclass(frozen=True)
class HttpDeliveryConfig:
    """Configuration for HTTP POST delivery."""
    url: str
    method: str = "POST"
    headers: Optional[dict[str, str]] = None
    timeout_seconds: int = 10
    retry_attempts: int = 3
    retry_delay_seconds: int = 1


@dataclass(frozen=True)
class FileDeliveryConfig:
    """Configuration for file-based delivery."""
    output_path: str
    format: str = "jsonl"  # json, jsonl
    create_dirs: bool = True


@dataclass(frozen=True)
class StdoutDeliveryConfig:
    """Configuration for stdout delivery."""
    format: str = "json"  # json, pretty
    include_timestamp: bool = True


@dataclass(frozen=True)
class DisplayDeliveryConfig:
    """Configuration for the real-time display channel."""
    device_id: str = "ipad"
    default_view: str = "dashboard"
    run_view: str = "protocol"


@dataclass(frozen=True)
class DeliveryDestination:
    """Single event delivery destination."""
    name: str
    method: DeliveryMethod
    config: Any  # HttpDeliveryConfig | FileDeliveryConfig | StdoutDeliveryConfig | DisplayDeliveryConfig
    enabled: bool = True

    # Filtering options
    events_filter: Optional[list[str]] = None  # Only deliver specific event types
    owners_filter: Optional[list[str]] = None  # Only deliver for specific owners


@dataclass(frozen=True)
class EventDeliveryConfig:
    """Complete event delivery configuration."""
    destinations: list[DeliveryDestination]
    enabled: bool = True

    # Error handling
    failure_retry_attempts: int = 2
    failure_retry_delay_seconds: int = 0
    dead_letter_enabled: bool = False
    dead_letter_path: Optional[str] = None


_METHOD_CONFIGS = {
    DeliveryMethod.HTTP_POST: HttpDeliveryConfig,
    DeliveryMethod.FILE_OUTPUT: FileDeliveryConfig,
    DeliveryMethod.STDOUT: StdoutDeliveryConfig,
    DeliveryMethod.DISPLAY: DisplayDeliveryConfig,
}


def get_default_delivery_config() -> EventDeliveryConfig:
    """Get default event delivery configuration: the display channel only."""
    return EventDeliveryConfig(
        destinations=[
            DeliveryDestination(
                name="display",
                method=DeliveryMethod.DISPLAY,
                config=DisplayDeliveryConfig(),
                enabled=True
            )
        ],
        enabled=True,
        failure_retry_attempts=2,
        failure_retry_delay_seconds=0,
        dead_letter_enabled=False,
        dead_letter_path=None
    )


def create_http_destination(
    name: str,
    url: str,
    headers: Optional[dict[str, str]] = None,
    enabled: bool = True,
    events_filter: Optional[list[str]] = None,
    owners_filter: Optional[list[str]] = None,
    **kwargs
) -> DeliveryDestination:
    """Create HTTP delivery destination."""
    return DeliveryDestination(
        name=name,
        method=DeliveryMethod.HTTP_POST,
        config=HttpDeliveryConfig(
            url=url,
            headers=headers or {},
            **kwargs
        ),
        enabled=enabled,
        events_filter=events_filter,
        owners_filter=owners_filter,
    )


def create_file_destination(
    name: str,
    output_path: str,
    format: str = "jsonl",
    enabled: bool = True,
    events_filter: Optional[list[str]] = None,
    owners_filter: Optional[list[str]] = None,
    **kwargs
) -> DeliveryDestination:
    """Create file delivery destination."""
    return DeliveryDestination(
        name=name,
        method=DeliveryMethod.FILE_OUTPUT,
        config=FileDeliveryConfig(
            output_path=output_path,
            format=format,
            **kwargs
        ),
        enabled=enabled,
        events_filter=events_filter,
        owners_filter=owners_filter,
    )


def delivery_config_from_dict(data: Optional[dict[str, Any]]) -> EventDeliveryConfig:
    """
    Build an EventDeliveryConfig from the ``delivery`` section of a YAML file.

    Example:
        delivery:
          dead_letter_path: /var/lib/protocols/dead_letter.jsonl
          destinations:
            - name: ipad
              method: display
              config: {device_id: ipad}
            - name: webhook
              method: http_post
              events_filter: [run_started, run_completed]
              config: {url: "http://localhost:3000/api/protocol/events"}
    """
    if not data:
        return get_default_delivery_config()

    destinations = []
    for entry in data.get("destinations", []):
        method = DeliveryMethod(entry["method"])
        config_cls = _METHOD_CONFIGS[method]
        destinations.append(DeliveryDestination(
            name=entry["name"],
            method=method,
            config=config_cls(**(entry.get("config") or {})),
            enabled=entry.get("enabled", True),
            events_filter=entry.get("events_filter"),
            owners_filter=entry.get("owners_filter"),
        ))

    dead_letter_path = data.get("dead_letter_path")
    return EventDeliveryConfig(
        destinations=destinations,
        enabled=data.get("enabled", True),
        failure_retry_attempts=data.get("failure_retry_attempts", 2),
        failure_retry_delay_seconds=data.get("failure_retry_delay_seconds", 0),
        dead_letter_enabled=data.get("dead_letter_enabled", dead_letter_path is not None),
        dead_letter_path=dead_letter_path,
    )
