"""Domain errors for ecsdeployer."""


class DeployerError(RuntimeError):
    """Raised when the deployment cannot continue safely."""
