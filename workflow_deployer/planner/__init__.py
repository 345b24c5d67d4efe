"""Diff planning and dry-run reports."""

from workflow_deployer.planner.diff import DeploymentPlan, DiffPlanner, DryRunReport

__all__ = ["DeploymentPlan", "DiffPlanner", "DryRunReport"]
