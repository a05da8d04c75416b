import logging
import os
import subprocess
import uuid
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from .constants import (
    DEFAULT_DB_PORT,
    DEFAULT_MIGRATIONS_TABLE,
    DEFAULT_PLATFORM,
    MANIFEST_FILE_NAME,
    STAGE_BUILD,
    STAGE_MIGRATE,
    STAGE_PUBLISH,
    STAGE_UPDATE,
    STAGES,
    STATE_FILE_NAME,
    WORK_DIR,
)
from .errors import DeployerError
from .models import ImageReference, RunContext, TaskSpecification, TunnelEndpoint
from .services.aws_clients import AwsClientFactory
from .services.command_runner import CommandRunner
from .services.health import HealthCheckService
from .services.image_builder import ImageBuilderService
from .services.manifest import ManifestService
from .services.migrator import MigrationService
from .services.orchestrator import OrchestrationService
from .services.registry import RegistryService
from .services.secret_refs import SecretResolver
from .services.state import StateService
from .services.tunnel import TunnelService
from .services.validation import ValidationService

console = Console()
logger = logging.getLogger("ecsdeployer")


class Deployer:
    """Runs the build, publish, migrate and update stages in order.

    Every stage is split into named steps. A failing step stops the run; there
    is no rollback. With ``resume`` the completed steps of the previous run are
    skipped, provided the inputs that identify the deployment did not change.
    """

    UNKNOWN_ACCOUNT = "<account-id>"

    def __init__(
        self,
        repository: str,
        image_tag: str,
        region: Optional[str] = None,
        account_id: Optional[str] = None,
        profile: Optional[str] = None,
        platform: str = DEFAULT_PLATFORM,
        dockerfile: str = "Dockerfile",
        context: str = ".",
        build_args: Optional[Dict[str, str]] = None,
        required_build_args: Optional[List[str]] = None,
        create_repository: bool = False,
        migrations_dir: str = "migrations",
        bastion_host: Optional[str] = None,
        bastion_user: str = "ec2-user",
        bastion_port: int = 22,
        ssh_identity_file: Optional[str] = None,
        strict_host_key_checking: str = "accept-new",
        db_host: Optional[str] = None,
        db_port: int = DEFAULT_DB_PORT,
        db_name: Optional[str] = None,
        db_user: Optional[str] = None,
        db_password: Optional[str] = None,
        local_port: int = 15432,
        tunnel_timeout: float = 30.0,
        track_migrations: bool = False,
        migrations_table: str = DEFAULT_MIGRATIONS_TABLE,
        cluster: Optional[str] = None,
        service: Optional[str] = None,
        task_family: Optional[str] = None,
        task_definition_file: Optional[str] = None,
        container_name: Optional[str] = None,
        desired_count: Optional[int] = None,
        wait: bool = False,
        wait_timeout_seconds: float = 900.0,
        health_check_url: Optional[str] = None,
        allow_insecure_http: bool = False,
        stages: Optional[List[str]] = None,
        verbose: bool = False,
        resume: bool = False,
        state_file: Optional[str] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 2.0,
        dry_run: bool = False,
        client_factory: Optional[AwsClientFactory] = None,
    ):
        self.validation_service = ValidationService(allow_insecure_http=allow_insecure_http)

        self.stages = self.validation_service.validate_stages(stages or list(STAGES))
        self.repository = self.validation_service.validate_repository(repository)
        self.image_tag = self.validation_service.validate_image_tag(image_tag)
        self.platform = self.validation_service.validate_platform(platform)
        self.account_id = self.validation_service.validate_account_id(account_id) if account_id else None
        self.region = region
        self.profile = profile

        self.dockerfile = dockerfile
        self.context = context
        self.build_args = dict(build_args or {})
        self.required_build_args = list(required_build_args or [])
        self.create_repository = create_repository

        self.migrations_dir = migrations_dir
        self.bastion_host = bastion_host
        self.bastion_user = bastion_user
        self.bastion_port = int(bastion_port)
        self.ssh_identity_file = ssh_identity_file
        self.strict_host_key_checking = strict_host_key_checking
        self.db_host = db_host
        self.db_port = int(db_port)
        self.db_name = db_name
        self.db_user = db_user
        self.db_password = db_password
        self.local_port = int(local_port)
        self.tunnel_timeout = float(tunnel_timeout)
        self.track_migrations = track_migrations
        self.migrations_table = migrations_table

        self.cluster = cluster
        self.service = service
        self.task_family = task_family
        self.task_definition_file = task_definition_file
        self.container_name = container_name
        self.desired_count = desired_count
        self.wait = wait
        self.wait_timeout_seconds = float(wait_timeout_seconds)
        self.health_check_url = health_check_url

        self.verbose = verbose
        self.resume = resume
        self.retry_count = retry_count
        self.retry_backoff_seconds = retry_backoff_seconds
        self.dry_run = dry_run

        self.cwd = os.getcwd()
        self.work_dir = os.path.join(self.cwd, WORK_DIR)
        self.state_file = state_file or os.path.join(self.work_dir, STATE_FILE_NAME)
        self.manifest_file = os.path.join(self.work_dir, MANIFEST_FILE_NAME)
        self.state_service = StateService(state_file=self.state_file, logger=logger)
        self.manifest_service = ManifestService(manifest_file=self.manifest_file, logger=logger)
        self.state: Optional[Dict[str, Any]] = None
        self.current_step_name: Optional[str] = None
        self.logged_in_registry: Optional[str] = None

        self.command_runner = CommandRunner(logger=logger)
        self.client_factory = client_factory or AwsClientFactory(
            region=region,
            profile=profile,
            logger=logger,
        )
        self.secret_resolver = SecretResolver(
            client_factory=self.client_factory,
            command_runner=self.command_runner,
        )
        self.image_builder_service = ImageBuilderService(logger=logger, console=console)
        self.registry_service = RegistryService(
            client_factory=self.client_factory,
            logger=logger,
            console=console,
        )
        self.tunnel_service = TunnelService(logger=logger, console=console, subprocess_module=subprocess)
        self.migration_service = MigrationService(logger=logger, console=console)
        self.orchestration_service = OrchestrationService(
            client_factory=self.client_factory,
            logger=logger,
            console=console,
        )
        self.health_check_service = HealthCheckService(
            validation_service=self.validation_service,
            logger=logger,
            console=console,
        )

        self.image: Optional[ImageReference] = None
        self.run_context: Optional[RunContext] = None

    @property
    def local_image(self) -> str:
        return f"{self.repository}:{self.image_tag}"

    def _needs_aws(self) -> bool:
        return STAGE_PUBLISH in self.stages or STAGE_UPDATE in self.stages

    def _resolve_image_reference(self) -> ImageReference:
        account_id = self.account_id
        region = self.region
        # A dry run never talks to AWS; unknown parts stay as placeholders.
        if self._needs_aws() and not self.dry_run:
            region = self.client_factory.region_name
            if not region:
                raise DeployerError("No AWS region configured. Use --region or set a default in your profile.")
            if not account_id:
                account_id = self.validation_service.validate_account_id(
                    self.client_factory.caller_account_id()
                )

        return ImageReference(
            account_id=account_id or self.UNKNOWN_ACCOUNT,
            region=region or "<region>",
            repository=self.repository,
            tag=self.image_tag,
        )

    def _build_run_context(self) -> RunContext:
        return RunContext(
            run_id=uuid.uuid4().hex[:10],
            local_image=self.local_image,
            image_uri=self.image.uri,
            platform=self.platform,
        )

    def _build_resume_metadata(self) -> Dict[str, Any]:
        return {
            "image_uri": self.image.uri if self.image else None,
            "platform": self.platform,
            "migrations_dir": self.migrations_dir if STAGE_MIGRATE in self.stages else None,
            "cluster": self.cluster,
            "service": self.service,
            "task_family": self.task_family,
            "stages": list(self.stages),
        }

    def _build_manifest_metadata(self) -> Dict[str, Any]:
        metadata = self._build_resume_metadata()
        metadata.update(
            {
                "resume_enabled": self.resume,
                "state_file": self.state_file if self.resume else None,
                "build_args": sorted(self.build_args),
            }
        )
        return metadata

    def _initialize_state(self) -> bool:
        if not self.resume:
            return False

        os.makedirs(self.work_dir, exist_ok=True)
        state, resumed = self.state_service.initialize(
            metadata=self._build_resume_metadata(),
            run_context=asdict(self.run_context),
            resume=True,
        )
        self.state = state

        if resumed:
            context_data = state.get("run_context")
            if not isinstance(context_data, dict):
                raise DeployerError("State file is missing run context. Start a fresh run without --resume.")
            self.run_context = RunContext(**context_data)
            if state.get("status") == "success":
                raise DeployerError(
                    "The state file already belongs to a successful run. Remove it or choose another --state-file."
                )
            logger.info(
                "Resuming previous run '%s' at step '%s'.",
                self.run_context.run_id,
                state.get("current_step") or "<none>",
            )
            self.state_service.mark_resumed(state)
        else:
            logger.info("Resume state initialized at %s", self.state_file)

        return resumed

    def _run_step(
        self,
        name: str,
        callback,
        *args,
        skip_when_completed: bool = True,
        **kwargs,
    ):
        if (
            self.resume
            and self.state
            and skip_when_completed
            and self.state_service.is_step_completed(self.state, name)
        ):
            logger.info("Skipping completed step from state: %s", name)
            self.manifest_service.step_started(name, details={"resumed": True})
            self.manifest_service.step_finished(name, "skipped", details={"resumed": True})
            self._restore_manifest(name)
            return None, True

        if self.state:
            self.state_service.mark_step_started(self.state, name)
        self.manifest_service.step_started(name)
        self.current_step_name = name

        try:
            result = callback(*args, **kwargs)
        except Exception as exc:
            if self.state:
                self.state_service.mark_step_failed(self.state, name, str(exc))
            self.manifest_service.step_finished(name, "failed", error=str(exc))
            raise

        if self.state:
            self.state_service.mark_step_completed(self.state, name)
        self.manifest_service.step_finished(name, "success")
        self.current_step_name = None
        return result, False

    def _restore_manifest(self, step_name: str):
        """Copy what a step skipped on resume produced back into this run's manifest."""
        if step_name == "verify_image_platform":
            platform = self._state_value("image_platform")
            if platform:
                self.manifest_service.set_image(local=self.run_context.local_image, platform=platform)
        elif step_name == "verify_registry_tag":
            digest = self._state_value("image_digest")
            if digest:
                self.manifest_service.set_image(uri=self.image.uri, digest=digest)
        elif step_name == "migrate_schema":
            for name in self._state_value("applied_migrations", []):
                self.manifest_service.add_migration(name, "applied")
        elif step_name == "register_task_definition":
            stored = self._state_value("task_definition")
            if isinstance(stored, dict) and stored.get("arn"):
                self.manifest_service.set_task_definition(stored["arn"])

    def _run_cmd(self, cmd: List[str], check: bool = True, capture_output: bool = False, **kwargs):
        return self.command_runner.run(cmd, check=check, capture_output=capture_output, **kwargs)

    def _state_value(self, key: str, default: Any = None) -> Any:
        if self.state:
            return self.state_service.get_value(self.state, key, default)
        return default

    def _remember(self, key: str, value: Any):
        if self.state:
            self.state_service.set_value(self.state, key, value)

    # validation

    def validate_inputs(self):
        if STAGE_BUILD in self.stages:
            self.validation_service.require_file(self.dockerfile, "Dockerfile")
            self.validation_service.require_dir(self.context, "Build context")
            self.validation_service.validate_build_args(self.build_args, [])
        if STAGE_MIGRATE in self.stages:
            self.validation_service.require_dir(self.migrations_dir, "Migrations directory")
            self.validation_service.require_values(
                {
                    "bastion_host": self.bastion_host,
                    "bastion_user": self.bastion_user,
                    "db_host": self.db_host,
                    "db_name": self.db_name,
                    "db_user": self.db_user,
                },
                STAGE_MIGRATE,
            )
            if self.ssh_identity_file:
                self.validation_service.require_file(self.ssh_identity_file, "SSH identity file")
        if STAGE_UPDATE in self.stages:
            self.validation_service.require_values(
                {"cluster": self.cluster, "service": self.service},
                STAGE_UPDATE,
            )
            if not (self.task_family or self.task_definition_file):
                raise DeployerError("Stage 'update' requires `task_family` or `task_definition_file`.")
            if self.task_definition_file:
                self.validation_service.require_file(self.task_definition_file, "Task definition file")
            if self.health_check_url:
                self.validation_service.enforce_https_policy(
                    self.health_check_url, "Health check URL", logger, console
                )

    def validate_environment(self):
        console.print("[blue]Validating local tooling...[/blue]")
        self.validation_service.validate_tools(self.stages, self._run_cmd)
        console.print("[green]Required tools are available.[/green]")

    # build

    def resolve_build_parameters(self) -> Dict[str, str]:
        resolved = self.secret_resolver.resolve_mapping(self.build_args)
        self.validation_service.validate_build_args(resolved, self.required_build_args)
        return resolved

    def build_image(self, build_args: Dict[str, str]):
        self.image_builder_service.build_image(
            local_image=self.run_context.local_image,
            platform=self.platform,
            dockerfile=self.dockerfile,
            context=self.context,
            build_args=build_args,
            run_cmd=self._run_cmd,
        )

    def verify_image_platform(self) -> str:
        actual = self.image_builder_service.verify_platform(
            self.run_context.local_image, self.platform, self._run_cmd
        )
        self._remember("image_platform", actual)
        self.manifest_service.set_image(local=self.run_context.local_image, platform=actual)
        return actual

    # publish

    def publish_image(self):
        self.registry_service.ensure_repository(self.image, create=self.create_repository)
        self.registry_service.login(self.image, self._run_cmd, self.command_runner.register_secret)
        self.logged_in_registry = self.image.registry
        self.registry_service.push(
            self.run_context.local_image,
            self.image,
            self._run_cmd,
            retry_count=self.retry_count,
            retry_backoff_seconds=self.retry_backoff_seconds,
        )

    def verify_registry_tag(self) -> str:
        digest = self.registry_service.verify_tag(self.image)
        self._remember("image_digest", digest)
        self.manifest_service.set_image(uri=self.image.uri, digest=digest)
        return digest

    # migrate

    def _tunnel_endpoint(self) -> TunnelEndpoint:
        return TunnelEndpoint(
            bastion_host=self.bastion_host,
            bastion_user=self.bastion_user,
            db_host=self.db_host,
            db_port=self.db_port,
            local_port=self.local_port,
            bastion_port=self.bastion_port,
            identity_file=self.ssh_identity_file,
            strict_host_key_checking=self.strict_host_key_checking,
        )

    def migrate_schema(self) -> List[str]:
        scripts = self.migration_service.discover(self.migrations_dir)
        already_applied = set(self._state_value("applied_migrations", []))
        if already_applied:
            logger.info("Skipping %s migration(s) applied before the interruption.", len(already_applied))
            scripts = [script for script in scripts if script.name not in already_applied]
            for name in sorted(already_applied):
                self.manifest_service.add_migration(name, "applied")

        db_password = self.secret_resolver.resolve(self.db_password)
        applied = sorted(already_applied)

        def on_applied(script):
            applied.append(script.name)
            self._remember("applied_migrations", applied)
            self.manifest_service.add_migration(script.name, "applied")

        with self.tunnel_service.open(self._tunnel_endpoint(), timeout=self.tunnel_timeout) as port:
            self.migration_service.apply(
                scripts,
                port=port,
                db_user=self.db_user,
                db_name=self.db_name,
                db_password=db_password,
                run_cmd=self._run_cmd,
                track=self.track_migrations,
                table=self.migrations_table,
                on_applied=on_applied,
            )
        return applied

    # update

    def register_task_definition(self) -> TaskSpecification:
        if self.task_definition_file:
            base = self.orchestration_service.load_template(self.task_definition_file, self.image.uri)
        else:
            base = self.orchestration_service.describe_latest(self.task_family)

        definition = self.orchestration_service.render(
            base,
            image_uri=self.image.uri,
            container_name=self.container_name,
            family=self.task_family,
        )
        spec = self.orchestration_service.register(definition, self.image.uri)
        self._remember("task_definition", asdict(spec))
        self.manifest_service.set_task_definition(spec.arn)
        return spec

    def update_service(self, spec: TaskSpecification):
        self.orchestration_service.update_service(
            cluster=self.cluster,
            service=self.service,
            task_definition_arn=spec.arn,
            desired_count=self.desired_count,
        )

    def wait_for_service(self, spec: TaskSpecification):
        self.orchestration_service.wait_for_convergence(
            cluster=self.cluster,
            service=self.service,
            spec=spec,
            platform=self.platform,
            timeout_seconds=self.wait_timeout_seconds,
        )

    def check_health(self) -> int:
        return self.health_check_service.check(
            self.health_check_url,
            timeout_seconds=self.wait_timeout_seconds,
        )

    # plan

    def build_plan(self) -> List[Dict[str, str]]:
        plan = [{"stage": "-", "step": "validate_environment", "action": "check docker/ssh/psql availability"}]

        if STAGE_BUILD in self.stages:
            references = sorted(
                name for name, value in self.build_args.items() if self.secret_resolver.is_reference(value)
            )
            plan.append(
                {
                    "stage": STAGE_BUILD,
                    "step": "resolve_build_parameters",
                    "action": f"resolve {', '.join(references)}" if references else "no secret references",
                }
            )
            build_cmd = self.image_builder_service.build_command(
                local_image=self.local_image,
                platform=self.platform,
                dockerfile=self.dockerfile,
                context=self.context,
                build_arg_names=list(self.build_args),
            )
            plan.append({"stage": STAGE_BUILD, "step": "build_image", "action": " ".join(build_cmd)})
            plan.append(
                {"stage": STAGE_BUILD, "step": "verify_image_platform", "action": f"expect {self.platform}"}
            )
        if STAGE_PUBLISH in self.stages:
            plan.append({"stage": STAGE_PUBLISH, "step": "publish_image", "action": f"docker push {self.image.uri}"})
            plan.append(
                {"stage": STAGE_PUBLISH, "step": "verify_registry_tag", "action": f"ecr describe-images {self.image_tag}"}
            )
        if STAGE_MIGRATE in self.stages:
            endpoint = self._tunnel_endpoint()
            scripts = []
            if os.path.isdir(self.migrations_dir or ""):
                scripts = [script.name for script in self.migration_service.discover(self.migrations_dir)]
            plan.append(
                {
                    "stage": STAGE_MIGRATE,
                    "step": "migrate_schema",
                    "action": f"{' '.join(self.tunnel_service.build_command(endpoint))}; "
                    f"psql -f {', '.join(scripts) or '<no scripts>'}",
                }
            )
        if STAGE_UPDATE in self.stages:
            source = self.task_definition_file or f"latest {self.task_family}"
            plan.append(
                {"stage": STAGE_UPDATE, "step": "register_task_definition", "action": f"from {source}"}
            )
            plan.append(
                {"stage": STAGE_UPDATE, "step": "update_service", "action": f"{self.cluster}/{self.service}"}
            )
            if self.wait:
                plan.append(
                    {"stage": STAGE_UPDATE, "step": "wait_for_service", "action": f"up to {self.wait_timeout_seconds:.0f}s"}
                )
            if self.health_check_url:
                plan.append({"stage": STAGE_UPDATE, "step": "check_health", "action": f"GET {self.health_check_url}"})
        return plan

    def print_plan(self):
        table = Table(title=f"Deployment plan for {self.image.uri}")
        table.add_column("Stage", style="cyan")
        table.add_column("Step")
        table.add_column("Action", overflow="fold")
        for item in self.build_plan():
            table.add_row(item["stage"], item["step"], item["action"])
        console.print(table)

    def print_summary(self):
        table = Table(title="Deployment summary", show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value", overflow="fold")
        for field, value in self.manifest_service.summary_rows():
            table.add_row(field, value)
        console.print(table)

    def cleanup(self):
        if not self.logged_in_registry:
            return
        self._run_cmd(["docker", "logout", self.logged_in_registry], check=False, capture_output=True)
        self.logged_in_registry = None

    def _run_stages(self):
        if STAGE_BUILD in self.stages:
            # Resolved values are secrets and never reach the state file, so this
            # step runs again on resume.
            build_args, _ = self._run_step(
                "resolve_build_parameters", self.resolve_build_parameters, skip_when_completed=False
            )
            self._run_step("build_image", self.build_image, build_args)
            self._run_step("verify_image_platform", self.verify_image_platform)

        if STAGE_PUBLISH in self.stages:
            self._run_step("publish_image", self.publish_image)
            self._run_step("verify_registry_tag", self.verify_registry_tag)

        if STAGE_MIGRATE in self.stages:
            self._run_step("migrate_schema", self.migrate_schema)

        if STAGE_UPDATE in self.stages:
            spec, skipped = self._run_step("register_task_definition", self.register_task_definition)
            if skipped:
                stored = self._state_value("task_definition")
                if not isinstance(stored, dict):
                    raise DeployerError(
                        "State file has no registered task definition. Start a fresh run without --resume."
                    )
                spec = TaskSpecification(**stored)
            self._run_step("update_service", self.update_service, spec)
            if self.wait:
                self._run_step("wait_for_service", self.wait_for_service, spec)
            if self.health_check_url:
                self._run_step("check_health", self.check_health)

    def run(self) -> int:
        exit_code = 1
        manifest_status = "failed"
        manifest_error: Optional[str] = None
        manifest_started = False

        try:
            logger.info("Starting ecsdeployer (stages: %s)...", ", ".join(self.stages))
            self.validate_inputs()
            self.image = self._resolve_image_reference()
            self.run_context = self._build_run_context()

            if self.dry_run:
                self.print_plan()
                console.print("[green]Dry run complete. Nothing was executed.[/green]")
                return 0

            self._initialize_state()
            self.manifest_service.start_run(
                run_id=self.run_context.run_id,
                metadata=self._build_manifest_metadata(),
            )
            manifest_started = True

            self._run_step("validate_environment", self.validate_environment, skip_when_completed=False)
            self._run_stages()

            if self.state:
                self.state_service.mark_status(self.state, "success")
            self.print_summary()
            console.print(f"[bold green]Deployment of {self.image.uri} finished.[/bold green]")
            manifest_status = "success"
            manifest_error = None
            exit_code = 0
            return exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            if self.state:
                self.state_service.mark_status(self.state, "aborted", "Operation cancelled by user.")
            manifest_status = "aborted"
            manifest_error = "Operation cancelled by user."
            return exit_code
        except DeployerError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            if self.state:
                failed_step = self.current_step_name or "run"
                self.state_service.mark_step_failed(self.state, failed_step, str(exc))
                self.state_service.mark_status(self.state, "failed", str(exc))
            manifest_error = str(exc)
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            if self.state:
                failed_step = self.current_step_name or "run"
                self.state_service.mark_step_failed(self.state, failed_step, str(exc))
                self.state_service.mark_status(self.state, "failed", str(exc))
            manifest_error = str(exc)
            return exit_code
        finally:
            if manifest_started:
                self.manifest_service.finalize(manifest_status, error=manifest_error)
            if self.resume and exit_code != 0 and self.state:
                logger.warning("Run again with --resume to continue from the last completed step.")
            self.cleanup()
