"""Configuration loader for the wallabag sync engine."""

import os
import re
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import ValidationError

from wallabag_sync.models.config import AppConfig

log = structlog.stdlib.get_logger()

# Credential fields that may be given as {"cmd": [...]} instead of a literal.
COMMAND_FIELDS = ("client_id", "client_secret", "username", "password")


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class ConfigLoader:
    """Loads and validates application configuration from YAML files and environment variables."""

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize the ConfigLoader.

        Args:
            config_dir: Directory holding ``<env>.yaml`` files. Defaults to
                the ``config`` directory at the repository root.
        """
        self.env_var_pattern = re.compile(r"\$\{([^}]+)\}")
        self.config_dir = config_dir or Path(__file__).parent.parent.parent / "config"

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """Load configuration from YAML file with environment variable overrides.

        Args:
            config_path: Path to the configuration YAML file. If None, uses
                ``<config_dir>/<WALLABAG_ENV>.yaml`` or ``default.yaml``.

        Returns:
            AppConfig: Validated application configuration

        Raises:
            ConfigurationError: If configuration is missing, invalid, or a
                credential command fails
        """
        if config_path is None:
            config_path = self._get_default_config_path()

        log.info("loading_configuration", config_path=config_path)

        config_dict = self._load_yaml_file(config_path)
        config_dict = self._substitute_env_vars(config_dict)
        config_dict = self._resolve_credential_commands(config_dict)

        try:
            app_config = AppConfig(**config_dict)
            log.info("configuration_loaded_successfully")
            return app_config
        except ValidationError as e:
            log.error("configuration_validation_failed", error=str(e))
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

    def _get_default_config_path(self) -> str:
        env = os.getenv("WALLABAG_ENV", "default")
        config_file = self.config_dir / f"{env}.yaml"

        if not config_file.exists():
            config_file = self.config_dir / "default.yaml"

        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_file}. "
                f"Please create config/default.yaml or set WALLABAG_ENV to a valid environment."
            )

        return str(config_file)

    def _load_yaml_file(self, config_path: str) -> Dict[str, Any]:
        """Load YAML configuration file.

        Raises:
            ConfigurationError: If file cannot be read or parsed
        """
        try:
            with open(config_path, "r") as f:
                config_dict = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML file {config_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration file {config_path}: {e}")

        if config_dict is None:
            raise ConfigurationError(f"Configuration file is empty: {config_path}")
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Configuration file must hold a mapping: {config_path}")

        log.debug("yaml_file_loaded", config_path=config_path)
        return config_dict

    def _substitute_env_vars(self, config: Any) -> Any:
        """Recursively substitute ${VAR_NAME} references with environment values."""
        if isinstance(config, dict):
            return {key: self._substitute_env_vars(value) for key, value in config.items()}
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            return self._substitute_env_var_in_string(config)
        else:
            return config

    def _substitute_env_var_in_string(self, value: str) -> str:
        matches = self.env_var_pattern.findall(value)

        for var_name in matches:
            env_value = os.getenv(var_name)
            if env_value is None:
                raise ConfigurationError(
                    f"Required environment variable not set: {var_name}. "
                    f"Please set {var_name} in your environment or .env file."
                )
            value = value.replace(f"${{{var_name}}}", env_value)

        return value

    def _resolve_credential_commands(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Replace credential values of the form ``{cmd: [argv...]}`` with command output.

        This lets a password live in a password manager, e.g.
        ``password: {cmd: ["pass", "show", "wallabag"]}``.
        """
        section = config.get("wallabag")
        if not isinstance(section, dict):
            return config

        resolved = dict(section)
        for field in COMMAND_FIELDS:
            value = resolved.get(field)
            if isinstance(value, dict) and "cmd" in value:
                resolved[field] = self._run_credential_command(field, value["cmd"])

        return {**config, "wallabag": resolved}

    def _run_credential_command(self, field: str, cmd: Any) -> str:
        if not isinstance(cmd, list) or not cmd:
            raise ConfigurationError(f"Command for wallabag.{field} must be a non-empty list")

        log.debug("running_credential_command", field=field, program=cmd[0])

        try:
            completed = subprocess.run(
                [str(part) for part in cmd],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise ConfigurationError(f"Failed to run command for wallabag.{field}: {e}") from e

        if completed.returncode != 0:
            log.error(
                "credential_command_failed",
                field=field,
                exit_status=completed.returncode,
            )
            raise ConfigurationError(
                f"Command for wallabag.{field} exited with status {completed.returncode}"
            )

        return completed.stdout.strip()
