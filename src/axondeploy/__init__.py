"""
axon-deploy - zero-downtime container and static-site deployments
"""

__version__ = "0.1.0"

from .core import AxonDeployer, DeployError

__all__ = ["AxonDeployer", "DeployError"]
