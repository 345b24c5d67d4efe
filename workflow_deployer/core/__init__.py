"""Core domain models and dependency resolution."""

from workflow_deployer.core.errors import (
    ActivationOrderViolation,
    CyclicDependency,
    DanglingReference,
    MalformedDefinition,
    ReservedFieldRejected,
    TransientEngineError,
)
from workflow_deployer.core.graph import (
    CycleDetector,
    DependencyGraph,
    DeploymentOrderPlanner,
    resolve_dependencies,
)
from workflow_deployer.core.loader import DefinitionLoader, load_definition
from workflow_deployer.core.models import (
    ActionType,
    DependencyEdge,
    DeployedWorkflowRecord,
    PlannedAction,
    WorkflowDefinition,
    WorkflowNode,
)
from workflow_deployer.core.references import ReferenceExtractor
from workflow_deployer.core.state_machine import DefinitionState, DefinitionStateMachine

__all__ = [
    "ActionType",
    "ActivationOrderViolation",
    "CycleDetector",
    "CyclicDependency",
    "DanglingReference",
    "DefinitionLoader",
    "DefinitionState",
    "DefinitionStateMachine",
    "DependencyEdge",
    "DependencyGraph",
    "DeployedWorkflowRecord",
    "DeploymentOrderPlanner",
    "MalformedDefinition",
    "PlannedAction",
    "ReferenceExtractor",
    "ReservedFieldRejected",
    "TransientEngineError",
    "WorkflowDefinition",
    "WorkflowNode",
    "load_definition",
    "resolve_dependencies",
]
