"""
Diff planning and dry-run reports.

Classifies every local definition as create / update / skip against the
engine's current workflows (matched by exact name) and aggregates structural
validation into a single preview report.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from workflow_deployer.core.errors import MalformedDefinition
from workflow_deployer.core.graph import ResolutionResult, ValidationResult, resolve_dependencies
from workflow_deployer.core.models import (
    ActionType,
    DeployedWorkflowRecord,
    PlannedAction,
    WorkflowDefinition,
)
from workflow_deployer.engine.payload import definition_fingerprint, record_fingerprint

logger = logging.getLogger(__name__)


# ==================== Report Models ====================

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MissingNodeType(_CamelModel):
    """A node type the engine does not provide, and who uses it."""

    node_type: str
    workflows: list[str] = Field(default_factory=list)


class NodeValidation(_CamelModel):
    missing_nodes: list[MissingNodeType] = Field(default_factory=list)
    checked: bool = Field(default=False, description="Whether the engine node catalog was available")


class DependencyValidation(_CamelModel):
    has_cycle: bool = False
    cycles: list[list[str]] = Field(default_factory=list)
    dependency_order: list[str] = Field(default_factory=list)


class ReportValidation(_CamelModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    node_validation: NodeValidation = Field(default_factory=NodeValidation)
    dependency_validation: DependencyValidation = Field(default_factory=DependencyValidation)


class DryRunReport(_CamelModel):
    """Preview of a deployment. Producing it never mutates engine state."""

    workflows: list[PlannedAction] = Field(default_factory=list)
    validation: ReportValidation

    @property
    def valid(self) -> bool:
        return self.validation.valid

    def count(self, action: ActionType) -> int:
        return sum(1 for item in self.workflows if item.action == action)


@dataclass
class DeploymentPlan:
    """A diffed, validated plan ready for the executor."""

    definitions: dict[str, WorkflowDefinition]
    actions: list[PlannedAction]
    resolution: ResolutionResult
    report: DryRunReport
    validation: ValidationResult = field(default_factory=ValidationResult)

    @property
    def is_valid(self) -> bool:
        return self.validation.is_valid

    @property
    def activation_order(self) -> list[str]:
        return self.resolution.activation_order or []

    def get_action(self, name: str) -> Optional[PlannedAction]:
        for action in self.actions:
            if action.name == name:
                return action
        return None

    @property
    def writes(self) -> list[PlannedAction]:
        """Actions phase 1 sends to the engine."""
        return [a for a in self.actions if a.is_write]


# ==================== Planner ====================

class DiffPlanner:
    """
    Compares local definitions with deployed workflows.

    Args:
        deployed: Workflows currently on the engine
        available_node_types: Engine node catalog; None skips the node check
        force: Update definitions even when fingerprints match
        allow_partial: Treat malformed files as warnings instead of errors
    """

    def __init__(
        self,
        deployed: Iterable[DeployedWorkflowRecord],
        available_node_types: Optional[set[str]] = None,
        force: bool = False,
        allow_partial: bool = True,
        extra_invoker_types: Iterable[str] = (),
    ):
        self.deployed = list(deployed)
        self.available_node_types = available_node_types
        self.force = force
        self.allow_partial = allow_partial
        self.extra_invoker_types = tuple(extra_invoker_types)
        self._duplicate_names: list[str] = []
        self._deployed_by_name = self._index_deployed()

    def _index_deployed(self) -> dict[str, DeployedWorkflowRecord]:
        by_name: dict[str, DeployedWorkflowRecord] = {}
        for record in self.deployed:
            if record.name in by_name:
                self._duplicate_names.append(record.name)
                continue
            by_name[record.name] = record
        return by_name

    def classify(self, definition: WorkflowDefinition) -> PlannedAction:
        """Decide the import action for one definition."""
        new_version = definition_fingerprint(definition)
        existing = self._deployed_by_name.get(definition.name)

        if existing is None:
            return PlannedAction(
                name=definition.name,
                action=ActionType.CREATE,
                reason="not deployed",
                new_version=new_version,
            )

        current_version = record_fingerprint(existing)
        common = dict(
            name=definition.name,
            existing_id=existing.id,
            existing_active=existing.active,
            current_version=current_version,
            new_version=new_version,
        )

        if current_version is None:
            return PlannedAction(action=ActionType.UPDATE, reason="deployed content unknown", **common)
        if current_version != new_version:
            return PlannedAction(action=ActionType.UPDATE, reason="content changed", **common)
        if self.force:
            return PlannedAction(action=ActionType.UPDATE, reason="forced", **common)
        reason = "unchanged" if existing.active else "unchanged, inactive"
        return PlannedAction(action=ActionType.SKIP, reason=reason, **common)

    def _missing_node_types(self, definitions: list[WorkflowDefinition]) -> list[MissingNodeType]:
        if self.available_node_types is None:
            return []
        users: dict[str, set[str]] = defaultdict(set)
        for definition in definitions:
            for node_type in definition.node_types - self.available_node_types:
                users[node_type].add(definition.name)
        return [
            MissingNodeType(node_type=node_type, workflows=sorted(names))
            for node_type, names in sorted(users.items())
        ]

    def plan(
        self,
        definitions: Iterable[WorkflowDefinition],
        resolution: Optional[ResolutionResult] = None,
        load_errors: Iterable[MalformedDefinition] = (),
    ) -> DeploymentPlan:
        """
        Build the deployment plan and its dry-run report.

        Args:
            definitions: Loaded local definitions
            resolution: Precomputed dependency resolution (computed if omitted)
            load_errors: Files the loader rejected
        """
        definitions = list(definitions)
        if resolution is None:
            resolution = resolve_dependencies(definitions, self.extra_invoker_types)

        validation = ValidationResult()
        for issue in resolution.validation.errors:
            validation.add_error(issue.code, issue.message, issue.workflow, **issue.details)
        for issue in resolution.validation.warnings:
            validation.add_warning(issue.code, issue.message, issue.workflow, **issue.details)

        for error in load_errors:
            if self.allow_partial:
                validation.add_warning(error.code, str(error), source=error.source)
            else:
                validation.add_error(error.code, str(error), source=error.source)

        for name in sorted(set(self._duplicate_names)):
            validation.add_warning(
                "DUPLICATE_DEPLOYED_NAME",
                f"Engine holds more than one workflow named '{name}'; using the first",
                workflow=name,
            )

        missing = self._missing_node_types(definitions)
        for item in missing:
            validation.add_error(
                "MISSING_NODE_TYPE",
                f"Node type '{item.node_type}' is not available on the engine "
                f"(used by: {', '.join(item.workflows)})",
                node_type=item.node_type,
                workflows=item.workflows,
            )
        if self.available_node_types is None:
            validation.add_warning(
                "NODE_TYPES_UNCHECKED",
                "Engine node catalog unavailable; node type validation skipped",
            )

        actions = [self.classify(d) for d in definitions]

        report = DryRunReport(
            workflows=actions,
            validation=ReportValidation(
                valid=validation.is_valid,
                errors=validation.error_messages,
                warnings=validation.warning_messages,
                node_validation=NodeValidation(
                    missing_nodes=missing,
                    checked=self.available_node_types is not None,
                ),
                dependency_validation=DependencyValidation(
                    has_cycle=resolution.has_cycle,
                    cycles=resolution.cycle_report.cycles,
                    dependency_order=resolution.activation_order or [],
                ),
            ),
        )

        logger.info(
            f"Planned {len(actions)} workflows: "
            f"{report.count(ActionType.CREATE)} create, "
            f"{report.count(ActionType.UPDATE)} update, "
            f"{report.count(ActionType.SKIP)} skip "
            f"(valid={validation.is_valid})"
        )

        return DeploymentPlan(
            definitions={d.name: d for d in definitions},
            actions=actions,
            resolution=resolution,
            report=report,
            validation=validation,
        )
