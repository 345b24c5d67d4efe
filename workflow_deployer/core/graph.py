"""
Workflow dependency graph, cycle detection and deployment ordering.

Cycle detection uses DFS with an on-stack marker set so that every cycle
reachable in one pass is reported. Ordering uses Kahn's algorithm with a
name-ordered heap for reproducible tie breaking.
"""

import heapq
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from workflow_deployer.core.errors import CyclicDependency, DanglingReference
from workflow_deployer.core.models import DependencyEdge, WorkflowDefinition
from workflow_deployer.core.references import ExtractionResult, ReferenceExtractor

logger = logging.getLogger(__name__)


@dataclass
class ValidationIssue:
    """Represents a single validation error or warning."""

    code: str
    message: str
    workflow: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationResult:
    """Aggregated validation findings for one resolution run."""

    is_valid: bool = True
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    def add_error(
        self,
        code: str,
        message: str,
        workflow: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a validation error."""
        self.errors.append(ValidationIssue(code, message, workflow, details))
        self.is_valid = False

    def add_warning(
        self,
        code: str,
        message: str,
        workflow: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a validation warning."""
        self.warnings.append(ValidationIssue(code, message, workflow, details))

    @property
    def error_messages(self) -> list[str]:
        return [e.message for e in self.errors]

    @property
    def warning_messages(self) -> list[str]:
        return [w.message for w in self.warnings]


class DependencyGraph:
    """
    Directed graph keyed by workflow name.

    An edge caller -> callee means the caller invokes the callee. Both the
    forward (dependencies) and reverse (dependents) maps are maintained.
    """

    def __init__(self, names: Iterable[str] = ()):
        self._dependencies: dict[str, set[str]] = {}
        self._dependents: dict[str, set[str]] = {}
        for name in names:
            self.add_node(name)

    @classmethod
    def from_edges(cls, names: Iterable[str], edges: Iterable[DependencyEdge]) -> "DependencyGraph":
        graph = cls(names)
        for edge in edges:
            graph.add_edge(edge)
        return graph

    def add_node(self, name: str) -> None:
        self._dependencies.setdefault(name, set())
        self._dependents.setdefault(name, set())

    def add_edge(self, edge: DependencyEdge) -> None:
        """
        Insert an edge between two known names.

        Raises:
            DanglingReference: If either endpoint is not a node
        """
        if edge.caller not in self._dependencies:
            raise DanglingReference(caller=edge.caller, reference=edge.caller)
        if edge.callee not in self._dependencies:
            raise DanglingReference(caller=edge.caller, reference=edge.callee)
        self._dependencies[edge.caller].add(edge.callee)
        self._dependents[edge.callee].add(edge.caller)

    @property
    def names(self) -> list[str]:
        return sorted(self._dependencies)

    @property
    def edges(self) -> list[DependencyEdge]:
        return sorted(
            DependencyEdge(caller, callee)
            for caller, callees in self._dependencies.items()
            for callee in callees
        )

    def __contains__(self, name: object) -> bool:
        return name in self._dependencies

    def __len__(self) -> int:
        return len(self._dependencies)

    def dependencies_of(self, name: str) -> set[str]:
        """Names that `name` invokes."""
        return set(self._dependencies.get(name, ()))

    def dependents_of(self, name: str) -> set[str]:
        """Names that invoke `name`."""
        return set(self._dependents.get(name, ()))

    def transitive_dependencies(self, name: str) -> set[str]:
        """Every name reachable from `name` through dependency edges."""
        seen: set[str] = set()
        stack = list(self._dependencies.get(name, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependencies.get(current, ()))
        return seen


@dataclass
class CycleReport:
    """All cycles found in one detection pass."""

    cycles: list[list[str]] = field(default_factory=list)

    @property
    def has_cycle(self) -> bool:
        return bool(self.cycles)


class CycleDetector:
    """Collects every cycle reachable by DFS instead of stopping at the first one."""

    def __init__(self, graph: DependencyGraph):
        self.graph = graph

    def detect(self) -> CycleReport:
        report = CycleReport()
        visited: set[str] = set()
        on_stack: set[str] = set()
        path: list[str] = []

        def dfs(node: str) -> None:
            visited.add(node)
            on_stack.add(node)
            path.append(node)

            for neighbor in sorted(self.graph.dependencies_of(node)):
                if neighbor in on_stack:
                    # Closed loop: slice from the first occurrence back to the top
                    start = path.index(neighbor)
                    report.cycles.append(path[start:] + [neighbor])
                elif neighbor not in visited:
                    dfs(neighbor)

            path.pop()
            on_stack.remove(node)

        for name in self.graph.names:
            if name not in visited:
                dfs(name)

        if report.cycles:
            logger.warning(f"Detected {len(report.cycles)} dependency cycle(s): {report.cycles}")
        return report


class DeploymentOrderPlanner:
    """
    Computes creation and activation orders over an acyclic graph.

    Activation order places every callee before each of its callers.
    Creation is unconstrained since stored-but-inactive callers never run.
    """

    def __init__(self, graph: DependencyGraph, cycle_report: Optional[CycleReport] = None):
        self.graph = graph
        self.cycle_report = cycle_report or CycleDetector(graph).detect()

    def _require_acyclic(self) -> None:
        if self.cycle_report.has_cycle:
            raise CyclicDependency(self.cycle_report.cycles)

    def activation_order(self) -> list[str]:
        """
        Kahn's algorithm, dependencies first.

        Raises:
            CyclicDependency: If the graph contains a cycle
        """
        self._require_acyclic()

        remaining = {name: len(self.graph.dependencies_of(name)) for name in self.graph.names}
        ready = [name for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            name = heapq.heappop(ready)
            order.append(name)
            for dependent in self.graph.dependents_of(name):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(self.graph):
            # Unreachable when the cycle report is accurate
            unresolved = sorted(set(self.graph.names) - set(order))
            raise CyclicDependency([unresolved])

        return order

    def creation_order(self) -> list[str]:
        """Any order is valid for phase 1; names are sorted for reproducibility."""
        return self.graph.names

    def activation_levels(self) -> dict[str, int]:
        """Depth of each name: 0 for leaves, 1 + deepest callee otherwise."""
        levels: dict[str, int] = {}
        for name in self.activation_order():
            deps = self.graph.dependencies_of(name)
            levels[name] = 1 + max(levels[d] for d in deps) if deps else 0
        return levels

    def activation_batches(self) -> list[list[str]]:
        """Names grouped by level; each batch only depends on earlier batches."""
        levels = self.activation_levels()
        if not levels:
            return []
        groups: dict[int, list[str]] = defaultdict(list)
        for name, level in levels.items():
            groups[level].append(name)
        return [sorted(groups[level]) for level in range(max(groups) + 1)]


@dataclass
class ResolutionResult:
    """Everything the dry-run and the executor need from a resolution run."""

    graph: DependencyGraph
    extraction: ExtractionResult
    cycle_report: CycleReport
    activation_order: Optional[list[str]]
    validation: ValidationResult

    @property
    def has_cycle(self) -> bool:
        return self.cycle_report.has_cycle


def resolve_dependencies(
    definitions: Iterable[WorkflowDefinition],
    extra_invoker_types: Iterable[str] = (),
) -> ResolutionResult:
    """
    Extract references, build the graph, detect cycles and order activation.

    Structural problems are recorded in the returned validation result and
    never raised.
    """
    definitions = list(definitions)
    extraction = ReferenceExtractor(definitions, extra_invoker_types).extract()
    graph = DependencyGraph.from_edges((d.name for d in definitions), extraction.edges)
    validation = ValidationResult()

    for dangling in extraction.dangling:
        validation.add_error(
            code=dangling.code,
            message=str(dangling),
            workflow=dangling.caller,
            reference=dangling.reference,
            node_name=dangling.node_name,
        )

    cycle_report = CycleDetector(graph).detect()
    activation_order: Optional[list[str]] = None

    if cycle_report.has_cycle:
        error = CyclicDependency(cycle_report.cycles)
        validation.add_error(code=error.code, message=str(error), cycles=cycle_report.cycles)
    else:
        activation_order = DeploymentOrderPlanner(graph, cycle_report).activation_order()

    return ResolutionResult(
        graph=graph,
        extraction=extraction,
        cycle_report=cycle_report,
        activation_order=activation_order,
        validation=validation,
    )
