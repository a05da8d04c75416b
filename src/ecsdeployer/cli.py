import logging
import os

import click
from rich.logging import RichHandler

from .constants import DEFAULT_CONFIG_FILE, DEFAULT_PLATFORM, STAGES
from .core import Deployer, DeployerError
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def _parse_build_args(values):
    parsed = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"Expected NAME=VALUE, got '{item}'.", param_hint="--build-arg")
        parsed[name] = value
    return parsed


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option(
    "--stage",
    "stages",
    multiple=True,
    type=click.Choice(STAGES),
    help="Stage to run (repeatable). Defaults to all stages in order.",
)
@click.option("--profile", required=False, help="AWS named profile.")
@click.option("--region", required=False, help="AWS region of the registry and cluster.")
@click.option("--account-id", required=False, help="AWS account id owning the registry.")
@click.option("--repository", required=False, help="ECR repository name.")
@click.option("--image-tag", required=False, help="Tag for the built and published image.")
@click.option(
    "--platform",
    required=False,
    help=f"Target platform for the image build (default: {DEFAULT_PLATFORM}).",
)
@click.option("--dockerfile", required=False, type=click.Path(), help="Dockerfile path (default: Dockerfile).")
@click.option("--context", required=False, type=click.Path(), help="Build context directory (default: .).")
@click.option(
    "--build-arg",
    "build_arg_values",
    multiple=True,
    help="Build argument NAME=VALUE (repeatable). VALUE may be env:, ssm: or secretsmanager: reference.",
)
@click.option("--create-repository", is_flag=True, default=None, help="Create the ECR repository if missing.")
@click.option("--migrations-dir", required=False, type=click.Path(), help="Directory of ordered .sql files.")
@click.option("--bastion-host", required=False, help="Bastion host used to reach the database.")
@click.option("--bastion-user", required=False, help="SSH user on the bastion (default: ec2-user).")
@click.option("--ssh-identity-file", required=False, type=click.Path(), help="SSH private key for the bastion.")
@click.option("--db-host", required=False, help="Private database endpoint.")
@click.option("--db-name", required=False, help="Database name.")
@click.option("--db-user", required=False, help="Database user.")
@click.option("--local-port", required=False, type=int, default=None, help="Local tunnel port (default: 15432).")
@click.option("--track-migrations", is_flag=True, default=None, help="Record applied scripts and skip them later.")
@click.option("--cluster", required=False, help="ECS cluster name.")
@click.option("--service", required=False, help="ECS service name.")
@click.option("--task-family", required=False, help="Task definition family to revise.")
@click.option(
    "--task-definition-file",
    required=False,
    type=click.Path(),
    help="JSON task definition template with an <IMAGE_URI> placeholder.",
)
@click.option("--container-name", required=False, help="Container whose image is replaced.")
@click.option("--desired-count", required=False, type=int, default=None, help="Desired task count.")
@click.option("--wait", is_flag=True, default=None, help="Wait until the service runs the new revision.")
@click.option(
    "--wait-timeout-seconds",
    required=False,
    type=float,
    default=None,
    help="Maximum time to wait for the service and health check (default: 900).",
)
@click.option("--health-check-url", required=False, help="URL that must answer 2xx after the update.")
@click.option(
    "--allow-insecure-http",
    is_flag=True,
    default=None,
    help="Allow an HTTP health check URL (insecure). By default only HTTPS is accepted.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option(
    "--resume",
    is_flag=True,
    default=None,
    help="Resume a previously interrupted run using the execution state file.",
)
@click.option(
    "--state-file",
    required=False,
    type=click.Path(),
    help="Path to the run state file (default: .ecsdeployer/run-state.json).",
)
@click.option(
    "--retry-count",
    required=False,
    type=int,
    default=None,
    help="Number of retries for `docker push` failures (default: 0).",
)
@click.option(
    "--retry-backoff-seconds",
    required=False,
    type=float,
    default=None,
    help="Backoff time in seconds between retries.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Validate inputs and print the deployment plan without running anything.",
)
def main(
    config,
    stages,
    profile,
    region,
    account_id,
    repository,
    image_tag,
    platform,
    dockerfile,
    context,
    build_arg_values,
    create_repository,
    migrations_dir,
    bastion_host,
    bastion_user,
    ssh_identity_file,
    db_host,
    db_name,
    db_user,
    local_port,
    track_migrations,
    cluster,
    service,
    task_family,
    task_definition_file,
    container_name,
    desired_count,
    wait,
    wait_timeout_seconds,
    health_check_url,
    allow_insecure_http,
    verbose,
    log_file,
    resume,
    state_file,
    retry_count,
    retry_backoff_seconds,
    dry_run,
):
    """Build, publish, migrate and roll out a container image on AWS ECS."""
    logger = logging.getLogger("ecsdeployer")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except DeployerError as exc:
        raise click.ClickException(str(exc)) from exc

    build_args = dict(config_values.get("build_args", {}))
    build_args.update(_parse_build_args(build_arg_values))

    repository = _resolve_option(repository, config_values, "repository")
    image_tag = _resolve_option(image_tag, config_values, "image_tag")
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    desired_count = _resolve_option(desired_count, config_values, "desired_count")
    account_id = _resolve_option(account_id, config_values, "account_id")

    if not repository:
        raise click.ClickException("Missing required option '--repository' (or provide it in config).")
    if not image_tag:
        raise click.ClickException("Missing required option '--image-tag' (or provide it in config).")

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    try:
        deployer = Deployer(
            repository=str(repository),
            image_tag=str(image_tag),
            region=_resolve_option(region, config_values, "region"),
            account_id=str(account_id) if account_id is not None else None,
            profile=_resolve_option(profile, config_values, "profile"),
            platform=str(_resolve_option(platform, config_values, "platform", default=DEFAULT_PLATFORM)),
            dockerfile=_resolve_option(dockerfile, config_values, "dockerfile", default="Dockerfile"),
            context=_resolve_option(context, config_values, "context", default="."),
            build_args=build_args,
            required_build_args=config_values.get("required_build_args", []),
            create_repository=bool(
                _resolve_option(create_repository, config_values, "create_repository", default=False)
            ),
            migrations_dir=_resolve_option(migrations_dir, config_values, "migrations_dir", default="migrations"),
            bastion_host=_resolve_option(bastion_host, config_values, "bastion_host"),
            bastion_user=_resolve_option(bastion_user, config_values, "bastion_user", default="ec2-user"),
            bastion_port=int(config_values.get("bastion_port", 22)),
            ssh_identity_file=_resolve_option(ssh_identity_file, config_values, "ssh_identity_file"),
            strict_host_key_checking=str(config_values.get("strict_host_key_checking", "accept-new")),
            db_host=_resolve_option(db_host, config_values, "db_host"),
            db_port=int(config_values.get("db_port", 5432)),
            db_name=_resolve_option(db_name, config_values, "db_name"),
            db_user=_resolve_option(db_user, config_values, "db_user"),
            db_password=config_values.get("db_password"),
            local_port=int(_resolve_option(local_port, config_values, "local_port", default=15432)),
            tunnel_timeout=float(config_values.get("tunnel_timeout", 30.0)),
            track_migrations=bool(
                _resolve_option(track_migrations, config_values, "track_migrations", default=False)
            ),
            migrations_table=config_values.get("migrations_table", "ecsdeployer_migrations"),
            cluster=_resolve_option(cluster, config_values, "cluster"),
            service=_resolve_option(service, config_values, "service"),
            task_family=_resolve_option(task_family, config_values, "task_family"),
            task_definition_file=_resolve_option(task_definition_file, config_values, "task_definition_file"),
            container_name=_resolve_option(container_name, config_values, "container_name"),
            desired_count=int(desired_count) if desired_count is not None else None,
            wait=bool(_resolve_option(wait, config_values, "wait", default=False)),
            wait_timeout_seconds=float(
                _resolve_option(wait_timeout_seconds, config_values, "wait_timeout_seconds", default=900.0)
            ),
            health_check_url=_resolve_option(health_check_url, config_values, "health_check_url"),
            allow_insecure_http=bool(
                _resolve_option(allow_insecure_http, config_values, "allow_insecure_http", default=False)
            ),
            stages=list(stages) or config_values.get("stages") or None,
            verbose=verbose,
            resume=bool(_resolve_option(resume, config_values, "resume", default=False)),
            state_file=_resolve_option(state_file, config_values, "state_file"),
            retry_count=int(_resolve_option(retry_count, config_values, "retry_count", default=0)),
            retry_backoff_seconds=float(
                _resolve_option(retry_backoff_seconds, config_values, "retry_backoff_seconds", default=2.0)
            ),
            dry_run=bool(_resolve_option(dry_run, config_values, "dry_run", default=False)),
        )
    except DeployerError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(deployer.run())


if __name__ == "__main__":
    main()
