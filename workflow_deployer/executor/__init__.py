"""Two-phase deployment executor."""

from workflow_deployer.executor.executor import DeploymentExecutor, DeploymentReport, ItemResult

__all__ = ["DeploymentExecutor", "DeploymentReport", "ItemResult"]
