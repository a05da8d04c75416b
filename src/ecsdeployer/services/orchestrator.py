"""ECS task definition registration and service update."""

import json
import time
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ecsdeployer.constants import IMAGE_PLACEHOLDER, TASK_DEFINITION_READ_ONLY_FIELDS
from ecsdeployer.errors import DeployerError
from ecsdeployer.errors_catalog import actionable_error
from ecsdeployer.models import TaskSpecification


class OrchestrationService:
    """Registers a new task definition revision and points the service at it."""

    PULL_ERROR_MARKER = "CannotPullContainerError"
    PLATFORM_ERROR_MARKERS = ("descriptor matching platform", "no matching manifest")

    def __init__(self, client_factory, logger, console):
        self.client_factory = client_factory
        self.logger = logger
        self.console = console

    @property
    def ecs(self):
        return self.client_factory.client("ecs")

    def load_template(self, template_file: str, image_uri: str) -> Dict[str, Any]:
        try:
            with open(template_file, "r", encoding="utf-8") as file_obj:
                raw = file_obj.read()
        except OSError as exc:
            raise DeployerError(f"Could not read task definition file '{template_file}': {exc}") from exc

        try:
            definition = json.loads(raw.replace(IMAGE_PLACEHOLDER, image_uri))
        except json.JSONDecodeError as exc:
            raise DeployerError(f"Task definition file '{template_file}' is not valid JSON: {exc}") from exc

        if not isinstance(definition, dict):
            raise DeployerError(f"Task definition file '{template_file}' must contain a JSON object.")
        # Accept the raw output of `aws ecs describe-task-definition` as well.
        if "taskDefinition" in definition and isinstance(definition["taskDefinition"], dict):
            definition = definition["taskDefinition"]
        return definition

    def describe_latest(self, family: str) -> Dict[str, Any]:
        try:
            response = self.ecs.describe_task_definition(taskDefinition=family, include=["TAGS"])
        except (BotoCoreError, ClientError) as exc:
            raise DeployerError(f"Could not describe task definition family {family}: {exc}") from exc

        definition = dict(response["taskDefinition"])
        if response.get("tags"):
            definition["tags"] = response["tags"]
        return definition

    def render(
        self,
        base: Dict[str, Any],
        image_uri: str,
        container_name: Optional[str] = None,
        family: Optional[str] = None,
    ) -> Dict[str, Any]:
        definition = {
            key: value for key, value in base.items() if key not in TASK_DEFINITION_READ_ONLY_FIELDS
        }
        if family:
            definition["family"] = family
        if not definition.get("family"):
            raise DeployerError("Task definition has no `family`. Set `task_family`.")

        containers: List[Dict[str, Any]] = [dict(item) for item in definition.get("containerDefinitions", [])]
        if not containers:
            raise DeployerError(f"Task definition {definition['family']} has no container definitions.")

        target = self._select_container(containers, container_name, definition["family"])
        target["image"] = image_uri
        definition["containerDefinitions"] = containers
        if not definition.get("tags"):
            definition.pop("tags", None)
        return definition

    @staticmethod
    def _select_container(
        containers: List[Dict[str, Any]], container_name: Optional[str], family: str
    ) -> Dict[str, Any]:
        if container_name:
            for container in containers:
                if container.get("name") == container_name:
                    return container
            available = ", ".join(str(container.get("name")) for container in containers)
            raise DeployerError(
                actionable_error(
                    "container_not_found", container=container_name, family=family, available=available
                )
            )

        if len(containers) == 1:
            return containers[0]

        essential = [container for container in containers if container.get("essential", True)]
        if len(essential) != 1:
            available = ", ".join(str(container.get("name")) for container in containers)
            raise DeployerError(
                f"Task family {family} has several containers ({available}). Set `container_name`."
            )
        return essential[0]

    def register(self, definition: Dict[str, Any], image_uri: str) -> TaskSpecification:
        self.console.print(f"[blue]Registering task definition {definition['family']}...[/blue]")
        try:
            response = self.ecs.register_task_definition(**definition)
        except (BotoCoreError, ClientError) as exc:
            raise DeployerError(f"Could not register task definition {definition['family']}: {exc}") from exc

        registered = response["taskDefinition"]
        spec = TaskSpecification(
            family=registered["family"],
            revision=int(registered["revision"]),
            arn=registered["taskDefinitionArn"],
            image=image_uri,
        )
        self.logger.info("Registered %s", spec.arn)
        self.console.print(f"[green]Registered {spec.family}:{spec.revision}.[/green]")
        return spec

    def update_service(self, cluster: str, service: str, task_definition_arn: str, desired_count: Optional[int]):
        kwargs: Dict[str, Any] = {
            "cluster": cluster,
            "service": service,
            "taskDefinition": task_definition_arn,
            "forceNewDeployment": True,
        }
        if desired_count is not None:
            kwargs["desiredCount"] = desired_count

        self.console.print(f"[blue]Updating service {service} in {cluster}...[/blue]")
        try:
            self.ecs.update_service(**kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise DeployerError(f"Could not update service {service}: {exc}") from exc
        self.logger.info("Service %s now targets %s", service, task_definition_arn)

    def describe_service(self, cluster: str, service: str) -> Dict[str, Any]:
        try:
            response = self.ecs.describe_services(cluster=cluster, services=[service])
        except (BotoCoreError, ClientError) as exc:
            raise DeployerError(f"Could not describe service {service}: {exc}") from exc

        services = response.get("services", [])
        if not services:
            reasons = ", ".join(failure.get("reason", "") for failure in response.get("failures", []))
            raise DeployerError(f"Service {service} not found in cluster {cluster}: {reasons or 'MISSING'}")
        return services[0]

    @staticmethod
    def is_converged(service: Dict[str, Any], task_definition_arn: str) -> bool:
        deployments = service.get("deployments", [])
        if len(deployments) != 1:
            return False
        deployment = deployments[0]
        return (
            deployment.get("taskDefinition") == task_definition_arn
            and deployment.get("runningCount") == deployment.get("desiredCount")
        )

    def check_stopped_tasks(self, cluster: str, service: str, task_definition_arn: str, image_uri: str, platform: str):
        try:
            task_arns = self.ecs.list_tasks(
                cluster=cluster, serviceName=service, desiredStatus="STOPPED"
            ).get("taskArns", [])
            if not task_arns:
                return
            tasks = self.ecs.describe_tasks(cluster=cluster, tasks=task_arns[:100]).get("tasks", [])
        except (BotoCoreError, ClientError) as exc:
            self.logger.warning("Could not inspect stopped tasks: %s", exc)
            return

        for task in tasks:
            if task.get("taskDefinitionArn") != task_definition_arn:
                continue
            reasons = [task.get("stoppedReason") or ""]
            reasons.extend(container.get("reason") or "" for container in task.get("containers", []))
            text = " ".join(reasons)
            if self.PULL_ERROR_MARKER not in text:
                continue
            if any(marker in text.lower() for marker in self.PLATFORM_ERROR_MARKERS):
                raise DeployerError(
                    actionable_error(
                        "platform_mismatch", image=image_uri, actual="another platform", expected=platform
                    )
                )
            raise DeployerError(f"ECS could not pull {image_uri}: {text.strip()}")

    def wait_for_convergence(
        self,
        cluster: str,
        service: str,
        spec: TaskSpecification,
        platform: str,
        timeout_seconds: float,
        poll_seconds: float = 15.0,
    ):
        deadline = time.monotonic() + timeout_seconds
        with self.console.status(f"[blue]Waiting for {service} to run {spec.family}:{spec.revision}...[/blue]"):
            while True:
                current = self.describe_service(cluster, service)
                for deployment in current.get("deployments", []):
                    if (
                        deployment.get("taskDefinition") == spec.arn
                        and deployment.get("rolloutState") == "FAILED"
                    ):
                        raise DeployerError(
                            f"Deployment of {spec.arn} failed: {deployment.get('rolloutStateReason', 'unknown reason')}"
                        )
                if self.is_converged(current, spec.arn):
                    break

                self.check_stopped_tasks(cluster, service, spec.arn, spec.image, platform)
                if time.monotonic() >= deadline:
                    raise DeployerError(
                        actionable_error(
                            "service_not_converged",
                            service=service,
                            task_definition=f"{spec.family}:{spec.revision}",
                            timeout=str(int(timeout_seconds)),
                        )
                    )
                time.sleep(poll_seconds)

        self.console.print(f"[green]Service {service} is running {spec.family}:{spec.revision}.[/green]")
