"""Resolution of secret references used in build arguments and credentials."""

import json
import os
from typing import Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ecsdeployer.errors import DeployerError
from ecsdeployer.errors_catalog import actionable_error


class SecretResolver:
    """Turns ``env:``, ``ssm:`` and ``secretsmanager:`` references into values.

    Anything without one of those prefixes is returned unchanged, so literal
    values keep working. Resolved values are registered with the command
    runner so they are masked in logs.
    """

    ENV_PREFIX = "env:"
    SSM_PREFIX = "ssm:"
    SECRETS_MANAGER_PREFIX = "secretsmanager:"

    def __init__(self, client_factory, command_runner, environ: Optional[Dict[str, str]] = None):
        self.client_factory = client_factory
        self.command_runner = command_runner
        self.environ = os.environ if environ is None else environ

    def is_reference(self, value: str) -> bool:
        return value.startswith((self.ENV_PREFIX, self.SSM_PREFIX, self.SECRETS_MANAGER_PREFIX))

    def resolve(self, value: Optional[str]) -> Optional[str]:
        if value is None or not self.is_reference(value):
            return value

        if value.startswith(self.ENV_PREFIX):
            resolved = self._from_env(value, value[len(self.ENV_PREFIX):])
        elif value.startswith(self.SSM_PREFIX):
            resolved = self._from_ssm(value, value[len(self.SSM_PREFIX):])
        else:
            resolved = self._from_secrets_manager(value, value[len(self.SECRETS_MANAGER_PREFIX):])

        self.command_runner.register_secret(resolved)
        return resolved

    def resolve_mapping(self, values: Dict[str, str]) -> Dict[str, str]:
        return {name: self.resolve(value) for name, value in values.items()}

    def _from_env(self, reference: str, name: str) -> str:
        if name not in self.environ:
            raise DeployerError(
                actionable_error("secret_not_found", reference=reference, reason="variable is not set")
            )
        return self.environ[name]

    def _from_ssm(self, reference: str, name: str) -> str:
        try:
            response = self.client_factory.client("ssm").get_parameter(Name=name, WithDecryption=True)
        except (BotoCoreError, ClientError) as exc:
            raise DeployerError(
                actionable_error("secret_not_found", reference=reference, reason=str(exc))
            ) from exc
        return response["Parameter"]["Value"]

    def _from_secrets_manager(self, reference: str, target: str) -> str:
        secret_id, _, json_key = target.partition("#")
        try:
            response = self.client_factory.client("secretsmanager").get_secret_value(SecretId=secret_id)
        except (BotoCoreError, ClientError) as exc:
            raise DeployerError(
                actionable_error("secret_not_found", reference=reference, reason=str(exc))
            ) from exc

        secret_string = response.get("SecretString")
        if secret_string is None:
            raise DeployerError(
                actionable_error("secret_not_found", reference=reference, reason="secret is binary")
            )
        if not json_key:
            return secret_string

        try:
            payload = json.loads(secret_string)
        except json.JSONDecodeError as exc:
            raise DeployerError(
                actionable_error("secret_not_found", reference=reference, reason="secret is not JSON")
            ) from exc
        if not isinstance(payload, dict) or json_key not in payload:
            raise DeployerError(
                actionable_error("secret_not_found", reference=reference, reason=f"missing key '{json_key}'")
            )
        return str(payload[json_key])
