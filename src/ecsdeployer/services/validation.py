"""Input and environment validation helpers for ecsdeployer."""

import os
import re
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from ecsdeployer.constants import STAGE_BUILD, STAGE_MIGRATE, STAGE_PUBLISH, STAGES
from ecsdeployer.errors import DeployerError
from ecsdeployer.errors_catalog import actionable_error


class ValidationService:
    """Validates deployment inputs before any stage touches the outside world."""

    PLATFORM_RE = re.compile(r"^[a-z0-9]+/[a-z0-9_]+(/[a-z0-9]+)?$")
    TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
    REPOSITORY_RE = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$")
    ACCOUNT_RE = re.compile(r"^\d{12}$")
    BUILD_ARG_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

    TOOL_CHECKS: Dict[str, List[List[str]]] = {
        STAGE_BUILD: [["docker", "--version"], ["docker", "buildx", "version"]],
        STAGE_PUBLISH: [["docker", "--version"]],
        STAGE_MIGRATE: [["ssh", "-V"], ["psql", "--version"]],
    }

    def __init__(self, allow_insecure_http: bool = False):
        self.allow_insecure_http = allow_insecure_http

    def validate_stages(self, stages: Iterable[str]) -> List[str]:
        requested = list(stages)
        unknown = sorted(set(requested) - set(STAGES))
        if unknown:
            raise DeployerError(
                f"Unknown stage(s): {', '.join(unknown)}. Supported stages: {', '.join(STAGES)}."
            )
        if not requested:
            raise DeployerError("At least one stage must be selected.")
        return [stage for stage in STAGES if stage in requested]

    def validate_platform(self, platform: Optional[str]) -> str:
        clean = (platform or "").strip()
        if not clean or not self.PLATFORM_RE.match(clean):
            raise DeployerError(actionable_error("invalid_platform", platform=clean or "<empty>"))
        return clean

    def validate_image_tag(self, tag: Optional[str]) -> str:
        clean = (tag or "").strip()
        if not self.TAG_RE.match(clean):
            raise DeployerError(
                f"Invalid image tag `{clean}`. Use up to 128 letters, digits, `_`, `.` or `-`."
            )
        return clean

    def validate_repository(self, repository: Optional[str]) -> str:
        clean = (repository or "").strip()
        if not self.REPOSITORY_RE.match(clean):
            raise DeployerError(f"Invalid ECR repository name `{clean}`.")
        return clean

    def validate_account_id(self, account_id: str) -> str:
        clean = str(account_id).strip()
        if not self.ACCOUNT_RE.match(clean):
            raise DeployerError(f"Invalid AWS account id `{clean}`. Expected 12 digits.")
        return clean

    def validate_build_args(self, build_args: Dict[str, str], required: Iterable[str]):
        for name in build_args:
            if not self.BUILD_ARG_NAME_RE.match(name):
                raise DeployerError(f"Invalid build argument name `{name}`.")
        for name in required:
            if not build_args.get(name):
                raise DeployerError(actionable_error("missing_build_arg", name=name))

    def require_file(self, path: Optional[str], label: str) -> str:
        if not path or not os.path.isfile(path):
            raise DeployerError(f"{label} not found: {path}")
        return path

    def require_dir(self, path: Optional[str], label: str) -> str:
        if not path or not os.path.isdir(path):
            raise DeployerError(f"{label} not found: {path}")
        return path

    def require_values(self, values: Dict[str, Optional[object]], stage: str):
        missing = [name for name, value in values.items() if value in (None, "")]
        if missing:
            raise DeployerError(
                f"Stage '{stage}' requires: {', '.join(missing)} (set them in the config file or as options)."
            )

    def is_url(self, location: str) -> bool:
        scheme = urlparse(location).scheme.lower()
        return scheme in {"http", "https"}

    def enforce_https_policy(self, location: str, label: str, logger, console):
        if not self.is_url(location):
            raise DeployerError(f"{label} must be an http(s) URL: {location}")

        scheme = urlparse(location).scheme.lower()
        if scheme == "http" and not self.allow_insecure_http:
            raise DeployerError(actionable_error("insecure_http", label=label))

        if scheme == "http" and self.allow_insecure_http:
            logger.warning("Insecure HTTP enabled for %s: %s", label, location)
            console.print(
                f"[yellow]Warning:[/yellow] Using insecure HTTP for {label}. "
                "Prefer HTTPS whenever possible."
            )

    def validate_tools(self, stages: Iterable[str], run_cmd: Callable):
        seen = set()
        for stage in stages:
            for cmd in self.TOOL_CHECKS.get(stage, []):
                key = tuple(cmd)
                if key in seen:
                    continue
                seen.add(key)
                run_cmd(cmd, capture_output=True)
