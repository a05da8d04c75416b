"""Container image build service for ecsdeployer."""

from typing import Callable, Dict, List

from ecsdeployer.errors import DeployerError
from ecsdeployer.errors_catalog import actionable_error


class ImageBuilderService:
    """Builds a single-platform image with ``docker buildx`` and checks its platform."""

    INSPECT_FORMAT = "{{.Os}}/{{.Architecture}}{{if .Variant}}/{{.Variant}}{{end}}"

    def __init__(self, logger, console):
        self.logger = logger
        self.console = console

    def build_command(
        self,
        local_image: str,
        platform: str,
        dockerfile: str,
        context: str,
        build_arg_names: List[str],
        no_cache: bool = False,
    ) -> List[str]:
        cmd = [
            "docker",
            "buildx",
            "build",
            "--platform",
            platform,
            "--file",
            dockerfile,
            "--tag",
            local_image,
            "--load",
        ]
        if no_cache:
            cmd.append("--no-cache")
        # Values are read from the child environment so they never hit the command line.
        for name in sorted(build_arg_names):
            cmd.extend(["--build-arg", name])
        cmd.append(context)
        return cmd

    def build_image(
        self,
        local_image: str,
        platform: str,
        dockerfile: str,
        context: str,
        build_args: Dict[str, str],
        run_cmd: Callable,
        no_cache: bool = False,
    ):
        self.console.print(f"[blue]Building {local_image} for {platform}...[/blue]")
        self.logger.info("Building image %s for platform %s", local_image, platform)

        cmd = self.build_command(
            local_image=local_image,
            platform=platform,
            dockerfile=dockerfile,
            context=context,
            build_arg_names=list(build_args),
            no_cache=no_cache,
        )
        run_cmd(cmd, env=build_args)
        self.console.print(f"[green]Image {local_image} built.[/green]")

    def inspect_platform(self, image: str, run_cmd: Callable) -> str:
        result = run_cmd(
            ["docker", "image", "inspect", "--format", self.INSPECT_FORMAT, image],
            capture_output=True,
        )
        platform = (result.stdout or "").strip()
        if not platform:
            raise DeployerError(f"Could not read platform metadata of image {image}.")
        return platform

    @staticmethod
    def platforms_match(actual: str, expected: str) -> bool:
        actual_parts = actual.lower().split("/")
        expected_parts = expected.lower().split("/")
        if actual_parts[:2] != expected_parts[:2]:
            return False
        if len(expected_parts) > 2:
            return len(actual_parts) > 2 and actual_parts[2] == expected_parts[2]
        return True

    def verify_platform(self, image: str, expected: str, run_cmd: Callable) -> str:
        actual = self.inspect_platform(image, run_cmd)
        if not self.platforms_match(actual, expected):
            raise DeployerError(
                actionable_error("platform_mismatch", image=image, actual=actual, expected=expected)
            )
        self.logger.info("Image %s platform verified: %s", image, actual)
        return actual

