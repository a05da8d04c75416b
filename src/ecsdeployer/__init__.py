"""
ecsdeployer - Build, publish, migrate and roll out web applications on AWS ECS
"""

__version__ = "0.1.0"

from .core import Deployer, DeployerError

__all__ = ["Deployer", "DeployerError"]
