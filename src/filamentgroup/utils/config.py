"""Configuration management for FilamentGroup."""

import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import BaseModel

from .logging import get_logger

logger = get_logger(__name__)


class GroupingConfig(BaseModel):
    """Tunable constants of the grouping optimizer."""

    enum_threshold: int = 10
    pam_timeout_ms: int = 500
    multi_nozzle_timeout_ms: int = 1500
    multi_nozzle_retry: int = 10
    flush_weight_p: float = 0.65
    color_delta_threshold: float = 20.0
    absolute_flush_gap_tolerance: int = 10
    default_cluster_size: int = 16
    support_prefer_score: int = 3
    assignment_backend: Literal["flow", "hungarian"] = "flow"
    random_seed: int = 0
    max_forecast_filaments: int = 5
    max_exact_order_filaments: int = 20
    enable_tpu_strategy: bool = False


class ConfigManager:
    """Manage configuration settings for FilamentGroup."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file
        """
        self.config_path = Path(config_path) if config_path else None
        self._config = self.get_default_config()

        if self.config_path and self.config_path.exists():
            self.load_config()

    def get_default_config(self) -> Dict[str, Any]:
        """Get default configuration."""
        return {
            "grouping": GroupingConfig().model_dump(),
            "logging": {
                "level": "INFO",
                "file": None,
                "colors": True,
            },
            "output": {
                "format": "json",
                "one_based": False,
            },
        }

    def load_config(self) -> None:
        """Load configuration from file."""
        if not self.config_path or not self.config_path.exists():
            return

        try:
            with open(self.config_path, "r") as f:
                if self.config_path.suffix.lower() in (".yaml", ".yml"):
                    loaded_config = yaml.safe_load(f) or {}
                else:
                    loaded_config = json.load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ValueError(
                f"Failed to load configuration from {self.config_path}: {e}"
            ) from e

        if not isinstance(loaded_config, dict):
            raise ValueError(
                f"Failed to load configuration from {self.config_path}: top level must be a mapping"
            )

        self._config = self._deep_merge(self._config, loaded_config)
        logger.debug(f"Loaded configuration from {self.config_path}")

    def save_config(self, output_path: Optional[Union[str, Path]] = None) -> None:
        """Save current configuration to file.

        Args:
            output_path: Optional output path, defaults to current config_path
        """
        save_path = Path(output_path) if output_path else self.config_path

        if not save_path:
            raise ValueError("No output path specified")

        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, "w") as f:
            if save_path.suffix.lower() in (".yaml", ".yml"):
                yaml.dump(self._config, f, default_flow_style=False, indent=2)
            else:
                json.dump(self._config, f, indent=2)

    def get_config(self) -> Dict[str, Any]:
        """Get current configuration."""
        return self._config.copy()

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Args:
            key: Configuration key (supports dot notation)
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value = self._config

        try:
            for k in key.split("."):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value.

        Args:
            key: Configuration key (supports dot notation)
            value: Value to set
        """
        keys = key.split(".")
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

    def update(self, updates: Dict[str, Any]) -> None:
        """Update configuration with dictionary of changes."""
        self._config = self._deep_merge(self._config, updates)

    def _deep_merge(self, base: Dict, update: Dict) -> Dict:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get_grouping_config(self) -> GroupingConfig:
        """Get grouping configuration object."""
        return GroupingConfig(**self.get("grouping", {}))

    @classmethod
    def from_env(cls, config_path: Optional[Union[str, Path]] = None) -> "ConfigManager":
        """Create configuration manager with environment variable overrides."""
        config_manager = cls(config_path)

        env_mappings = {
            "FILAMENTGROUP_ENUM_THRESHOLD": "grouping.enum_threshold",
            "FILAMENTGROUP_PAM_TIMEOUT_MS": "grouping.pam_timeout_ms",
            "FILAMENTGROUP_MULTI_NOZZLE_TIMEOUT_MS": "grouping.multi_nozzle_timeout_ms",
            "FILAMENTGROUP_COLOR_THRESHOLD": "grouping.color_delta_threshold",
            "FILAMENTGROUP_BACKEND": "grouping.assignment_backend",
            "FILAMENTGROUP_SEED": "grouping.random_seed",
            "FILAMENTGROUP_LOG_LEVEL": "logging.level",
        }

        for env_var, config_key in env_mappings.items():
            value = os.getenv(env_var)
            if value is None:
                continue
            # Try to convert to appropriate type
            if value.lstrip("-").isdigit():
                value = int(value)
            elif value.lower() in ("true", "false"):
                value = value.lower() == "true"
            else:
                try:
                    value = float(value)
                except ValueError:
                    pass  # Keep as string

            config_manager.set(config_key, value)

        return config_manager

    def validate_config(self) -> tuple[bool, list[str]]:
        """Validate current configuration.

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors = []
        grouping = self.get("grouping", {})

        for key in (
            "enum_threshold",
            "pam_timeout_ms",
            "multi_nozzle_timeout_ms",
            "multi_nozzle_retry",
            "default_cluster_size",
        ):
            if grouping.get(key, 0) <= 0:
                errors.append(f"grouping.{key} must be positive")

        if grouping.get("enum_threshold", 0) > 20:
            errors.append("grouping.enum_threshold must not exceed 20")

        if not (0.0 <= grouping.get("flush_weight_p", 0.65) <= 1.0):
            errors.append("grouping.flush_weight_p must be between 0 and 1")

        if grouping.get("color_delta_threshold", 0) < 0:
            errors.append("grouping.color_delta_threshold must be non-negative")

        if grouping.get("assignment_backend", "flow") not in ("flow", "hungarian"):
            errors.append("grouping.assignment_backend must be 'flow' or 'hungarian'")

        return len(errors) == 0, errors

    def get_profile_configs(self) -> Dict[str, Dict]:
        """Get predefined configuration profiles."""
        return {
            "fast": {
                "grouping": {
                    "enum_threshold": 6,
                    "pam_timeout_ms": 100,
                    "multi_nozzle_timeout_ms": 300,
                    "multi_nozzle_retry": 3,
                },
            },
            "balanced": {
                "grouping": {
                    "enum_threshold": 10,
                    "pam_timeout_ms": 500,
                    "multi_nozzle_timeout_ms": 1500,
                    "multi_nozzle_retry": 10,
                },
            },
            "thorough": {
                "grouping": {
                    "enum_threshold": 12,
                    "pam_timeout_ms": 2000,
                    "multi_nozzle_timeout_ms": 5000,
                    "multi_nozzle_retry": 30,
                },
            },
        }

    def apply_profile(self, profile_name: str) -> None:
        """Apply a predefined configuration profile.

        Args:
            profile_name: Name of profile to apply
        """
        profiles = self.get_profile_configs()

        if profile_name not in profiles:
            raise ValueError(
                f"Unknown profile: {profile_name}. Available: {list(profiles.keys())}"
            )

        self.update(profiles[profile_name])
