"""Configuration loader with 3-tier parameter precedence."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from .defaults import DefaultConfig, get_default_config
from .event_delivery import EventDeliveryConfig, delivery_config_from_dict

CONFIG_DIR_ENV = "PROTOCOL_APP_CONFIG_DIR"


@dataclass(frozen=True)
class ConfigLoader:
    """Manages configuration loading with 3-tier precedence."""

    config_dir: Path
    defaults: DefaultConfig

    @classmethod
    def create(cls, config_dir: Optional[Path] = None) -> "ConfigLoader":
        """Create a ConfigLoader instance."""
        if config_dir is None:
            env_dir = os.environ.get(CONFIG_DIR_ENV)
            if env_dir:
                config_dir = Path(env_dir)
            else:
                config_dir = Path(__file__).parent.parent.parent / "config"

        return cls(
            config_dir=Path(config_dir),
            defaults=get_default_config(),
        )

    def _load_yaml(self, filename: str) -> dict[str, Any]:
        path = self.config_dir / filename

        if not path.exists():
            return {}

        with open(path) as f:
            data = yaml.safe_load(f)

        return data or {}

    def load_settings(self) -> dict[str, Any]:
        """Load global settings overrides from settings.yaml."""
        return self._load_yaml("settings.yaml")

    def load_owner_config(self, owner_id: str) -> dict[str, Any]:
        """Load owner-specific configuration overrides."""
        owners_config = self._load_yaml("owners.yaml")
        return owners_config.get("owners", {}).get(owner_id, {})  # type: ignore[no-any-return]

    def list_owners(self) -> list[str]:
        """Owner ids that carry overrides in owners.yaml."""
        return sorted(self._load_yaml("owners.yaml").get("owners", {}) or {})

    def load_delivery_config(self) -> EventDeliveryConfig:
        """Load event delivery destinations from the settings file."""
        return delivery_config_from_dict(self.load_settings().get("delivery"))

    def merge_config(
        self,
        owner_id: Optional[str] = None,
        overrides: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        """
        Merge configuration with 3-tier precedence.

        Priority order:
        1. Explicit overrides (highest priority)
        2. Owner-specific overrides
        3. Global settings file
        4. Built-in defaults (lowest priority)
        """
        config = self._dataclass_to_dict(self.defaults)

        settings = {k: v for k, v in self.load_settings().items() if k != "delivery"}
        config = self._deep_merge(config, settings)

        if owner_id:
            config = self._deep_merge(config, self.load_owner_config(owner_id))

        if overrides:
            config = self._deep_merge(config, overrides)

        return config

    def _dataclass_to_dict(self, obj: Any) -> dict[str, Any]:
        """Convert nested dataclasses to dictionary."""
        if hasattr(obj, '__dataclass_fields__'):
            result = {}
            for field_name in obj.__dataclass_fields__:
                value = getattr(obj, field_name)
                if hasattr(value, '__dataclass_fields__'):
                    result[field_name] = self._dataclass_to_dict(value)
                else:
                    result[field_name] = value
            return result
        return obj  # type: ignore[no-any-return]

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
