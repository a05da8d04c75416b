"""Configuration loader for ecsdeployer."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ecsdeployer.errors import DeployerError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        # registry / image
        "profile",
        "region",
        "account_id",
        "repository",
        "image_tag",
        "platform",
        "dockerfile",
        "context",
        "build_args",
        "required_build_args",
        "create_repository",
        # database
        "migrations_dir",
        "bastion_host",
        "bastion_user",
        "bastion_port",
        "ssh_identity_file",
        "strict_host_key_checking",
        "db_host",
        "db_port",
        "db_name",
        "db_user",
        "db_password",
        "local_port",
        "tunnel_timeout",
        "track_migrations",
        "migrations_table",
        # service
        "cluster",
        "service",
        "task_family",
        "task_definition_file",
        "container_name",
        "desired_count",
        "wait",
        "wait_timeout_seconds",
        "health_check_url",
        "allow_insecure_http",
        # run control
        "stages",
        "verbose",
        "log_file",
        "resume",
        "state_file",
        "retry_count",
        "retry_backoff_seconds",
        "dry_run",
    }
    MAPPING_KEYS = {"build_args"}
    LIST_KEYS = {"required_build_args", "stages"}
    INT_KEYS = {"bastion_port", "db_port", "local_port", "desired_count", "retry_count"}
    FLOAT_KEYS = {"tunnel_timeout", "wait_timeout_seconds", "retry_backoff_seconds"}

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise DeployerError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise DeployerError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise DeployerError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise DeployerError(f"Unknown configuration keys: {unknown_list}")

        for key in self.MAPPING_KEYS & set(parsed):
            if not isinstance(parsed[key], dict):
                raise DeployerError(f"Configuration key '{key}' must be a mapping.")
            parsed[key] = {str(name): "" if value is None else str(value) for name, value in parsed[key].items()}

        for key in self.LIST_KEYS & set(parsed):
            if isinstance(parsed[key], str):
                parsed[key] = [item.strip() for item in parsed[key].split(",") if item.strip()]
            elif not isinstance(parsed[key], list):
                raise DeployerError(f"Configuration key '{key}' must be a list.")

        for key in (self.INT_KEYS | self.FLOAT_KEYS) & set(parsed):
            if parsed[key] is None:
                # An empty value means "use the default".
                del parsed[key]
                continue
            parsed[key] = self._number(key, parsed[key], int if key in self.INT_KEYS else float)

        return parsed

    @staticmethod
    def _number(key: str, value: Any, kind):
        # YAML booleans are ints in Python.
        if isinstance(value, bool):
            raise DeployerError(f"Configuration key '{key}' must be a number, got {value!r}.")
        try:
            return kind(value)
        except (TypeError, ValueError) as exc:
            raise DeployerError(f"Configuration key '{key}' must be a number, got {value!r}.") from exc
