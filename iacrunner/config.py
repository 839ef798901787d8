"""Runner configuration loading and strict validation."""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from iacrunner.exceptions import ValidationError, ConfigValidationError

ENV_PREFIX = "IACRUN_"


@dataclass
class RunnerConfig:
    """
    Runner settings.

    Attributes:
        storage_path: Host directory holding every task workspace
        default_image: Container image used when a request sets none
        container_workspace: Mount point of the workspace inside the container
        plugin_cache_path: Terraform plugin cache inside the container
        assets_dir: Directory of runner-provided helper files inside the container
        consul_address: State backend address used when a request gives none
        secret_key: Fernet key used to decrypt stored secrets
        step_timeout: Default per-step timeout in seconds
    """
    storage_path: str = "var/workspace"
    default_image: str = "cloudiac/ct-worker:latest"
    container_workspace: str = "/cloudiac/workspace"
    plugin_cache_path: str = "/cloudiac/cache/plugins"
    assets_dir: str = "/cloudiac/assets"
    consul_address: str = "127.0.0.1:8500"
    secret_key: str = ""
    step_timeout: int = 3600


_FIELD_TYPES = {f.name: f.type for f in fields(RunnerConfig)}


class ConfigLoader:
    """Loads runner configuration from YAML and the environment."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self.environ = os.environ if environ is None else environ
        self.errors: List[ValidationError] = []

    def load(self, config_path: Optional[Union[str, Path]] = None) -> RunnerConfig:
        """Load configuration; file values first, then IACRUN_* overrides."""
        self.errors = []
        data: Dict[str, Any] = {}

        if config_path is not None:
            try:
                with open(config_path, 'r') as f:
                    loaded = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                self._add_error(f"Failed to load config: {e}")
                self._raise_validation_errors()

            if loaded is None:
                loaded = {}
            if not isinstance(loaded, dict):
                self._add_error("Config must be a YAML object/dictionary")
                self._raise_validation_errors()
            data.update(loaded)

        for name in _FIELD_TYPES:
            env_key = ENV_PREFIX + name.upper()
            if env_key in self.environ:
                data[name] = self.environ[env_key]

        values = self._validate(data)
        if self.errors:
            self._raise_validation_errors()
        return RunnerConfig(**values)

    def _validate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        values = {}
        for key, value in data.items():
            if key not in _FIELD_TYPES:
                self._add_error(f"Unknown field '{key}'", key)
                continue

            expected = _FIELD_TYPES[key]
            if expected is int:
                if isinstance(value, bool):
                    self._add_error("must be an integer", key)
                    continue
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    self._add_error("must be an integer", key)
                    continue
                if value <= 0:
                    self._add_error("must be positive", key)
                    continue
            elif not isinstance(value, str):
                self._add_error(f"must be a string, got {type(value).__name__}", key)
                continue
            values[key] = value
        return values

    def _add_error(self, message: str, path: str = ""):
        self.errors.append(ValidationError(message=message, path=path))

    def _raise_validation_errors(self):
        raise ConfigValidationError(self.errors)


def load_config(config_path: Optional[Union[str, Path]] = None,
                environ: Optional[Dict[str, str]] = None) -> RunnerConfig:
    return ConfigLoader(environ).load(config_path)
