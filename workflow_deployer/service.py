"""
Deployment service.

Wires loading, dependency resolution, diff planning and execution together
for the API and the CLI.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from workflow_deployer.config.settings import Settings, get_settings
from workflow_deployer.core.loader import DefinitionLoader, LoadResult, load_definitions
from workflow_deployer.engine.client import EngineClient
from workflow_deployer.executor.executor import DeploymentExecutor, DeploymentReport
from workflow_deployer.planner.diff import DeploymentPlan, DiffPlanner, DryRunReport

logger = logging.getLogger(__name__)


@dataclass
class DeploymentOutcome:
    """Plan of a deployment request and, when it was valid, the execution report."""

    plan: DeploymentPlan
    report: Optional[DeploymentReport] = None

    @property
    def succeeded(self) -> bool:
        return self.plan.is_valid and self.report is not None and not self.report.degraded


class DeploymentService:
    """High-level operations over one engine."""

    def __init__(self, client: EngineClient, settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or get_settings()

    def load(
        self,
        directory: Optional[Union[str, Path]] = None,
        definitions: Optional[list[dict[str, Any]]] = None,
    ) -> LoadResult:
        """Load definitions from an in-memory batch, or from a directory (configured one by default)."""
        if definitions is not None:
            return load_definitions(definitions)
        return DefinitionLoader(directory or self.settings.deploy.workflows_dir).load()

    async def plan(
        self,
        force: bool = False,
        directory: Optional[Union[str, Path]] = None,
        definitions: Optional[list[dict[str, Any]]] = None,
    ) -> DeploymentPlan:
        """Diff local definitions against the engine. Read-only."""
        loaded = self.load(directory, definitions)
        deployed = await self.client.list_workflows()
        node_types = await self.client.list_node_types()

        planner = DiffPlanner(
            deployed,
            available_node_types=node_types,
            force=force,
            extra_invoker_types=self.settings.deploy.extra_invoker_node_types,
        )
        return planner.plan(loaded.definitions, load_errors=loaded.errors)

    async def dry_run(
        self,
        force: bool = False,
        directory: Optional[Union[str, Path]] = None,
        definitions: Optional[list[dict[str, Any]]] = None,
    ) -> DryRunReport:
        """Preview what a deployment would do."""
        plan = await self.plan(force=force, directory=directory, definitions=definitions)
        return plan.report

    async def deploy(
        self,
        force: bool = False,
        directory: Optional[Union[str, Path]] = None,
        definitions: Optional[list[dict[str, Any]]] = None,
        activate: Optional[bool] = None,
        halt_on_activation_failure: Optional[bool] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DeploymentOutcome:
        """
        Plan and, if the plan is valid, execute both deployment phases.

        An invalid plan is returned without contacting the engine for writes.
        """
        plan = await self.plan(force=force, directory=directory, definitions=definitions)
        if not plan.is_valid:
            logger.error(f"Deployment refused: {'; '.join(plan.validation.error_messages)}")
            return DeploymentOutcome(plan=plan)

        overrides: dict[str, Any] = {}
        if activate is not None:
            overrides["activate"] = activate
        if halt_on_activation_failure is not None:
            overrides["halt_on_activation_failure"] = halt_on_activation_failure
        deploy_settings = self.settings.deploy.model_copy(update=overrides)

        executor = DeploymentExecutor(self.client, deploy_settings)
        report = await executor.execute(plan, cancel_event=cancel_event)
        return DeploymentOutcome(plan=plan, report=report)
