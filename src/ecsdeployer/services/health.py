"""Post-deployment HTTP health check."""

import time
from typing import Optional

import requests

from ecsdeployer.errors import DeployerError
from ecsdeployer.errors_catalog import actionable_error


class HealthCheckService:
    """Polls the public endpoint of the application until it answers 2xx."""

    def __init__(self, validation_service, logger, console, requests_module=requests):
        self.validation_service = validation_service
        self.logger = logger
        self.console = console
        self.requests = requests_module

    def check(
        self,
        url: str,
        timeout_seconds: float,
        interval_seconds: float = 10.0,
        request_timeout: float = 10.0,
    ) -> int:
        self.validation_service.enforce_https_policy(url, "Health check URL", self.logger, self.console)
        self.console.print(f"[blue]Checking {url}...[/blue]")

        deadline = time.monotonic() + timeout_seconds
        last_error: Optional[str] = None
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self.requests.get(url, timeout=request_timeout, allow_redirects=True)
                status = response.status_code
                response.close()
                if 200 <= status < 300:
                    self.console.print(f"[green]Health check passed ({status}).[/green]")
                    return status
                last_error = f"HTTP {status}"
            except self.requests.RequestException as exc:
                last_error = str(exc)

            self.logger.debug("Health check attempt %s failed: %s", attempt, last_error)
            if time.monotonic() >= deadline:
                raise DeployerError(actionable_error("health_check_failed", url=url, reason=last_error))
            time.sleep(interval_seconds)
