"""AWS session and client management for ecsdeployer."""

from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ecsdeployer.errors import DeployerError


class AwsClientFactory:
    """Builds one boto3 session per run and caches a client per service."""

    def __init__(self, region: Optional[str], profile: Optional[str], logger, boto3_module=boto3):
        self.region = region
        self.profile = profile
        self.logger = logger
        self.boto3 = boto3_module
        self._session = None
        self._clients: Dict[str, Any] = {}

    @property
    def session(self):
        if self._session is None:
            kwargs = {}
            if self.profile:
                kwargs["profile_name"] = self.profile
            if self.region:
                kwargs["region_name"] = self.region
            try:
                self._session = self.boto3.Session(**kwargs)
            except BotoCoreError as exc:
                raise DeployerError(f"Could not create AWS session: {exc}") from exc
        return self._session

    @property
    def region_name(self) -> Optional[str]:
        return self.region or self.session.region_name

    def client(self, service_name: str):
        if service_name not in self._clients:
            self._clients[service_name] = self.session.client(service_name)
            self.logger.debug("Created %s client", service_name)
        return self._clients[service_name]

    def caller_account_id(self) -> str:
        try:
            return self.client("sts").get_caller_identity()["Account"]
        except (BotoCoreError, ClientError) as exc:
            raise DeployerError(f"Could not determine AWS account id: {exc}") from exc


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")
