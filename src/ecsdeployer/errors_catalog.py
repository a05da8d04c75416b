"""Actionable error catalog for ecsdeployer."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "invalid_platform": {
        "what": "Invalid target platform `{platform}`. Expected `os/arch` or `os/arch/variant`.",
        "next": "Pass an explicit platform such as `--platform linux/amd64`.",
    },
    "missing_build_arg": {
        "what": "Required build argument `{name}` is missing or empty.",
        "next": "Set it under `build_args` in the config file or with `--build-arg {name}=...`.",
    },
    "platform_mismatch": {
        "what": "Image `{image}` targets {actual}, but {expected} is required.",
        "next": "Rebuild with `--platform {expected}` and publish the image again.",
    },
    "registry_auth_failed": {
        "what": "Could not authenticate against registry {registry}: {reason}",
        "next": "Check the AWS profile/credentials and the ECR permissions of the caller.",
    },
    "image_not_in_registry": {
        "what": "Tag `{tag}` was not found in repository {repository} after push.",
        "next": "Inspect the `docker push` output and retry the publish stage.",
    },
    "tunnel_failed": {
        "what": "SSH tunnel through {bastion} did not become ready: {reason}",
        "next": "Verify the bastion address, SSH key and security group rules.",
    },
    "migration_failed": {
        "what": "Migration script `{script}` failed.",
        "next": "Fix the script or the schema, then resume with `--resume`.",
    },
    "migration_checksum_changed": {
        "what": "Migration script `{script}` changed after it was applied.",
        "next": "Add a new migration script instead of editing an applied one.",
    },
    "container_not_found": {
        "what": "Container `{container}` is not defined in task family {family}.",
        "next": "Set `container_name` to one of: {available}.",
    },
    "service_not_converged": {
        "what": "Service {service} did not converge to {task_definition} within {timeout}s.",
        "next": "Check the ECS service events and stopped task reasons in the console.",
    },
    "health_check_failed": {
        "what": "Health check {url} did not succeed: {reason}",
        "next": "Inspect the application logs in CloudWatch and the load balancer target health.",
    },
    "insecure_http": {
        "what": "{label} uses insecure HTTP.",
        "next": "Switch to HTTPS or use `--allow-insecure-http` only for trusted endpoints.",
    },
    "secret_not_found": {
        "what": "Secret reference `{reference}` could not be resolved: {reason}",
        "next": "Check the reference and that the caller may read it.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
