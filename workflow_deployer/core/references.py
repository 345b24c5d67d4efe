"""
Reference extraction.

Scans invoker nodes for the workflow they call and turns each reference into
a (caller, callee) edge between loaded definitions.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from workflow_deployer.core.errors import DanglingReference
from workflow_deployer.core.models import (
    INVOKER_NODE_TYPES,
    DependencyEdge,
    InvokeWorkflowParameters,
    NodeParameters,
    OpaqueParameters,
    WorkflowDefinition,
    WorkflowNode,
)

logger = logging.getLogger(__name__)

# Invoker sources other than "database" embed or fetch the callee instead of
# referencing a stored workflow.
REFERENCE_SOURCE = "database"


def parse_node_parameters(
    node: WorkflowNode,
    invoker_types: frozenset[str] = INVOKER_NODE_TYPES,
) -> NodeParameters:
    """
    Classify a node's parameters.

    Invoker nodes with a stored-workflow reference become
    InvokeWorkflowParameters; everything else is opaque.
    """
    params = node.parameters or {}
    if node.type not in invoker_types:
        return OpaqueParameters(data=params)

    source = params.get("source", REFERENCE_SOURCE)
    if source != REFERENCE_SOURCE:
        return OpaqueParameters(data=params)

    raw_ref: Any = params.get("workflowId")
    mode = "id"
    cached_name: Optional[str] = None

    # Resource locator form: {"__rl": true, "value": ..., "mode": ..., "cachedResultName": ...}
    if isinstance(raw_ref, dict):
        mode = str(raw_ref.get("mode") or "id")
        cached_name = raw_ref.get("cachedResultName") or None
        raw_ref = raw_ref.get("value")

    if raw_ref is None or (isinstance(raw_ref, str) and not raw_ref.strip()):
        if cached_name:
            raw_ref = cached_name
        else:
            return OpaqueParameters(data=params)

    ref = str(raw_ref).strip()
    # Expression values ("={{ ... }}") are only known at run time.
    if ref.startswith("="):
        return OpaqueParameters(data=params)

    return InvokeWorkflowParameters(workflow_ref=ref, ref_mode=mode, cached_name=cached_name)


@dataclass
class ExtractionResult:
    """Edges between loaded definitions plus references that resolve to nothing."""

    edges: list[DependencyEdge] = field(default_factory=list)
    dangling: list[DanglingReference] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.dangling


class ReferenceExtractor:
    """
    Resolves invoker node references against a set of loaded definitions.

    Resolution order: exact name, exported source id, locator cached name.
    """

    def __init__(
        self,
        definitions: Iterable[WorkflowDefinition],
        extra_invoker_types: Iterable[str] = (),
    ):
        self.definitions = list(definitions)
        self.invoker_types = INVOKER_NODE_TYPES | frozenset(extra_invoker_types)
        self._names = {d.name for d in self.definitions}
        self._by_source_id = {d.id: d.name for d in self.definitions if d.id}

    def resolve(self, params: InvokeWorkflowParameters) -> Optional[str]:
        """Map a reference to a loaded definition name, or None."""
        if params.workflow_ref in self._names:
            return params.workflow_ref
        if params.workflow_ref in self._by_source_id:
            return self._by_source_id[params.workflow_ref]
        if params.cached_name and params.cached_name in self._names:
            return params.cached_name
        return None

    def extract(self) -> ExtractionResult:
        """Extract deduplicated edges and dangling references for all definitions."""
        result = ExtractionResult()
        seen: set[DependencyEdge] = set()

        for definition in self.definitions:
            for node in definition.get_invoker_nodes(self.invoker_types):
                params = parse_node_parameters(node, self.invoker_types)
                if not isinstance(params, InvokeWorkflowParameters):
                    continue

                callee = self.resolve(params)
                if callee is None:
                    dangling = DanglingReference(
                        caller=definition.name,
                        reference=params.cached_name or params.workflow_ref,
                        node_name=node.name,
                    )
                    logger.warning(str(dangling))
                    result.dangling.append(dangling)
                    continue

                edge = DependencyEdge(caller=definition.name, callee=callee)
                if edge not in seen:
                    seen.add(edge)
                    result.edges.append(edge)

        logger.debug(
            f"Extracted {len(result.edges)} dependency edges, "
            f"{len(result.dangling)} dangling references"
        )
        return result


def extract_references(
    definitions: Iterable[WorkflowDefinition],
    extra_invoker_types: Iterable[str] = (),
) -> ExtractionResult:
    """Convenience wrapper around ReferenceExtractor."""
    return ReferenceExtractor(definitions, extra_invoker_types).extract()
