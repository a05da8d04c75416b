"""ECR publishing service for ecsdeployer."""

import base64
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ecsdeployer.errors import DeployerError
from ecsdeployer.errors_catalog import actionable_error
from ecsdeployer.models import ImageReference
from ecsdeployer.services.aws_clients import error_code


class RegistryService:
    """Authenticates docker against ECR, pushes a tag and checks the result."""

    def __init__(self, client_factory, logger, console):
        self.client_factory = client_factory
        self.logger = logger
        self.console = console

    @property
    def ecr(self):
        return self.client_factory.client("ecr")

    def ensure_repository(self, image: ImageReference, create: bool = False):
        try:
            self.ecr.describe_repositories(
                registryId=image.account_id,
                repositoryNames=[image.repository],
            )
            self.logger.debug("ECR repository exists: %s", image.repository_uri)
            return
        except ClientError as exc:
            if error_code(exc) != "RepositoryNotFoundException":
                raise DeployerError(f"Could not describe ECR repository {image.repository}: {exc}") from exc
            if not create:
                raise DeployerError(
                    f"ECR repository {image.repository} does not exist in {image.region}. "
                    "Create it or enable `create_repository`."
                ) from exc
        except BotoCoreError as exc:
            raise DeployerError(f"Could not describe ECR repository {image.repository}: {exc}") from exc

        self.console.print(f"[blue]Creating ECR repository {image.repository}...[/blue]")
        try:
            self.ecr.create_repository(
                repositoryName=image.repository,
                imageScanningConfiguration={"scanOnPush": True},
            )
        except (BotoCoreError, ClientError) as exc:
            raise DeployerError(f"Could not create ECR repository {image.repository}: {exc}") from exc
        self.logger.info("Created ECR repository %s", image.repository_uri)

    def get_login(self, image: ImageReference):
        """Return ``(username, password, endpoint)`` from a short-lived ECR token."""
        try:
            response = self.ecr.get_authorization_token(registryIds=[image.account_id])
            data = response["authorizationData"][0]
            token = base64.b64decode(data["authorizationToken"]).decode("utf-8")
        except (BotoCoreError, ClientError, KeyError, IndexError, ValueError) as exc:
            raise DeployerError(
                actionable_error("registry_auth_failed", registry=image.registry, reason=str(exc))
            ) from exc

        username, _, password = token.partition(":")
        if not password:
            raise DeployerError(
                actionable_error(
                    "registry_auth_failed",
                    registry=image.registry,
                    reason="authorization token has an unexpected format",
                )
            )
        return username, password, data.get("proxyEndpoint") or f"https://{image.registry}"

    def login(self, image: ImageReference, run_cmd: Callable, register_secret: Callable):
        self.console.print(f"[blue]Authenticating against {image.registry}...[/blue]")
        username, password, endpoint = self.get_login(image)
        register_secret(password)
        run_cmd(
            ["docker", "login", "--username", username, "--password-stdin", endpoint],
            capture_output=True,
            input_text=password,
        )
        self.console.print("[green]Registry login succeeded.[/green]")

    def push(
        self,
        local_image: str,
        image: ImageReference,
        run_cmd: Callable,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
    ):
        self.console.print(f"[blue]Pushing {image.uri}...[/blue]")
        self.logger.info("Pushing %s as %s", local_image, image.uri)
        run_cmd(["docker", "tag", local_image, image.uri], capture_output=True)
        run_cmd(
            ["docker", "push", image.uri],
            retry_count=retry_count,
            retry_backoff_seconds=retry_backoff_seconds,
        )

    def verify_tag(self, image: ImageReference) -> str:
        """Check that exactly one image carries the tag and return its digest."""
        try:
            response = self.ecr.describe_images(
                registryId=image.account_id,
                repositoryName=image.repository,
                imageIds=[{"imageTag": image.tag}],
            )
        except ClientError as exc:
            if error_code(exc) == "ImageNotFoundException":
                raise DeployerError(
                    actionable_error(
                        "image_not_in_registry", tag=image.tag, repository=image.repository_uri
                    )
                ) from exc
            raise DeployerError(f"Could not describe image {image.uri}: {exc}") from exc
        except BotoCoreError as exc:
            raise DeployerError(f"Could not describe image {image.uri}: {exc}") from exc

        details = response.get("imageDetails", [])
        if not details:
            raise DeployerError(
                actionable_error("image_not_in_registry", tag=image.tag, repository=image.repository_uri)
            )
        if len(details) > 1:
            raise DeployerError(
                f"Tag {image.tag} resolves to {len(details)} images in {image.repository_uri}."
            )

        digest: Optional[str] = details[0].get("imageDigest")
        if not digest:
            raise DeployerError(f"Registry returned no digest for {image.uri}.")
        self.console.print(f"[green]Published {image.uri} ({digest}).[/green]")
        return digest
