"""Configuration validation utilities."""

from dataclasses import dataclass
from typing import Any

from .event_delivery import DeliveryMethod

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class ConfigIssue:
    """Represents a configuration validation problem."""
    field: str
    message: str
    value: Any


class ConfigValidator:
    """Validates configuration parameters."""

    @staticmethod
    def validate_storage_params(params: dict[str, Any]) -> list[ConfigIssue]:
        """Validate storage parameters."""
        issues = []

        if "db_path" in params:
            value = params["db_path"]
            if not isinstance(value, str) or not value.strip():
                issues.append(ConfigIssue(
                    field="storage.db_path",
                    message="Must be a non-empty path string",
                    value=value
                ))

        if "busy_timeout_seconds" in params:
            value = params["busy_timeout_seconds"]
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
                issues.append(ConfigIssue(
                    field="storage.busy_timeout_seconds",
                    message="Must be a positive number",
                    value=value
                ))

        return issues

    @staticmethod
    def validate_history_params(params: dict[str, Any]) -> list[ConfigIssue]:
        """Validate history parameters."""
        issues = []

        for name in ("default_limit", "max_limit"):
            if name in params:
                value = params[name]
                if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                    issues.append(ConfigIssue(
                        field=f"history.{name}",
                        message="Must be a positive integer",
                        value=value
                    ))

        default_limit = params.get("default_limit")
        max_limit = params.get("max_limit")
        if (isinstance(default_limit, int) and isinstance(max_limit, int)
                and default_limit > max_limit):
            issues.append(ConfigIssue(
                field="history.default_limit",
                message="Must not exceed history.max_limit",
                value=default_limit
            ))

        return issues

    @staticmethod
    def validate_timer_params(params: dict[str, Any]) -> list[ConfigIssue]:
        """Validate timer parameters."""
        issues = []

        if "enabled" in params and not isinstance(params["enabled"], bool):
            issues.append(ConfigIssue(
                field="timer.enabled",
                message="Must be a boolean",
                value=params["enabled"]
            ))

        if "visibility" in params and params["visibility"] not in ("VISIBLE", "HIDDEN"):
            issues.append(ConfigIssue(
                field="timer.visibility",
                message="Must be VISIBLE or HIDDEN",
                value=params["visibility"]
            ))

        return issues

    @staticmethod
    def validate_logging_params(params: dict[str, Any]) -> list[ConfigIssue]:
        """Validate logging parameters."""
        issues = []

        level = params.get("level")
        if level is not None and (not isinstance(level, str) or level.upper() not in _LOG_LEVELS):
            issues.append(ConfigIssue(
                field="logging.level",
                message=f"Must be one of {sorted(_LOG_LEVELS)}",
                value=level
            ))

        return issues

    @staticmethod
    def validate_delivery_section(section: dict[str, Any]) -> list[ConfigIssue]:
        """Validate the raw ``delivery`` section of settings.yaml."""
        issues = []
        known_methods = {m.value for m in DeliveryMethod}

        for index, entry in enumerate(section.get("destinations", []) or []):
            if not isinstance(entry, dict):
                issues.append(ConfigIssue(
                    field=f"delivery.destinations[{index}]",
                    message="Must be a mapping",
                    value=entry
                ))
                continue

            if not entry.get("name"):
                issues.append(ConfigIssue(
                    field=f"delivery.destinations[{index}].name",
                    message="Destination name is required",
                    value=entry.get("name")
                ))

            method = entry.get("method")
            if method not in known_methods:
                issues.append(ConfigIssue(
                    field=f"delivery.destinations[{index}].method",
                    message=f"Must be one of {sorted(known_methods)}",
                    value=method
                ))
            elif method == DeliveryMethod.HTTP_POST.value:
                if not (entry.get("config") or {}).get("url"):
                    issues.append(ConfigIssue(
                        field=f"delivery.destinations[{index}].config.url",
                        message="HTTP destinations require a url",
                        value=None
                    ))
            elif method == DeliveryMethod.FILE_OUTPUT.value:
                if not (entry.get("config") or {}).get("output_path"):
                    issues.append(ConfigIssue(
                        field=f"delivery.destinations[{index}].config.output_path",
                        message="File destinations require an output_path",
                        value=None
                    ))

        return issues

    @staticmethod
    def validate_config(config: dict[str, Any]) -> list[ConfigIssue]:
        """Validate complete configuration."""
        issues = []

        if "storage" in config:
            issues.extend(ConfigValidator.validate_storage_params(config["storage"]))

        if "history" in config:
            issues.extend(ConfigValidator.validate_history_params(config["history"]))

        if "timer" in config:
            issues.extend(ConfigValidator.validate_timer_params(config["timer"]))

        if "logging" in config:
            issues.extend(ConfigValidator.validate_logging_params(config["logging"]))

        if "delivery" in config:
            issues.extend(ConfigValidator.validate_delivery_section(config["delivery"]))

        return issues
