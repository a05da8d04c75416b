"""Shared domain models for ecsdeployer."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ImageReference:
    """Remote image location keyed by account, region, repository and tag."""

    account_id: str
    region: str
    repository: str
    tag: str

    @property
    def registry(self) -> str:
        return f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com"

    @property
    def repository_uri(self) -> str:
        return f"{self.registry}/{self.repository}"

    @property
    def uri(self) -> str:
        return f"{self.repository_uri}:{self.tag}"


@dataclass(frozen=True)
class MigrationScript:
    name: str
    path: str
    sha256: str


@dataclass(frozen=True)
class TunnelEndpoint:
    """Bastion hop and private database target for an SSH port forward."""

    bastion_host: str
    bastion_user: str
    db_host: str
    db_port: int
    local_port: int
    bastion_port: int = 22
    identity_file: Optional[str] = None
    strict_host_key_checking: str = "accept-new"


@dataclass(frozen=True)
class TaskSpecification:
    family: str
    revision: int
    arn: str
    image: str


@dataclass(frozen=True)
class RunContext:
    """Runtime identifiers isolated per execution."""

    run_id: str
    local_image: str
    image_uri: str
    platform: str
