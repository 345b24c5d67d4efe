"""
Domain models for workflow dependency resolution and deployment.

All models use Pydantic for validation and serialization with full Python 3.10+ type hints.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# Node types that call another workflow by reference at execution time.
EXECUTE_WORKFLOW_NODE_TYPE = "n8n-nodes-base.executeWorkflow"
TOOL_WORKFLOW_NODE_TYPE = "@n8n/n8n-nodes-langchain.toolWorkflow"

INVOKER_NODE_TYPES: frozenset[str] = frozenset({
    EXECUTE_WORKFLOW_NODE_TYPE,
    TOOL_WORKFLOW_NODE_TYPE,
})


class WorkflowNode(BaseModel):
    """A single typed node inside a workflow definition."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = Field(default=None, description="Node identifier within the workflow")
    name: str = Field(..., min_length=1, description="Display name, unique within the workflow")
    type: str = Field(..., min_length=1, description="Node type tag")
    type_version: Union[int, float] = Field(default=1, alias="typeVersion")
    position: list[Union[int, float]] = Field(default_factory=lambda: [0, 0])
    parameters: dict[str, Any] = Field(default_factory=dict)
    credentials: Optional[dict[str, Any]] = Field(default=None)
    disabled: Optional[bool] = Field(default=None)


class WorkflowDefinition(BaseModel):
    """
    A named workflow: ordered nodes plus an opaque connection map.

    Unknown top-level fields (tags, pinData, active, ...) are retained so they
    can be stripped explicitly before anything is sent to the engine.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field(..., min_length=1, max_length=255, description="Unique workflow name")
    nodes: list[WorkflowNode] = Field(..., description="Ordered node list")
    connections: dict[str, Any] = Field(default_factory=dict, description="Opaque adjacency map")
    settings: Optional[dict[str, Any]] = Field(default=None)
    static_data: Optional[Any] = Field(default=None, alias="staticData")

    # Identifier the file was exported with; only used to resolve references by id.
    id: Optional[str] = Field(default=None)
    source_file: Optional[str] = Field(default=None, exclude=True)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reject whitespace-only names."""
        if not v.strip():
            raise ValueError("Workflow name must not be blank")
        return v

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Optional[str]:
        """Older exports use numeric ids."""
        if v is None:
            return None
        return str(v)

    def get_invoker_nodes(self, invoker_types: frozenset[str] = INVOKER_NODE_TYPES) -> list[WorkflowNode]:
        """Nodes whose type invokes another workflow."""
        return [node for node in self.nodes if node.type in invoker_types]

    @property
    def node_types(self) -> set[str]:
        return {node.type for node in self.nodes}


# ==================== Node Parameters ====================

class InvokeWorkflowParameters(BaseModel):
    """Parameters of an invoker node, reduced to the workflow reference."""

    kind: Literal["invoke_workflow"] = "invoke_workflow"
    workflow_ref: str = Field(..., description="Referenced workflow name or id")
    ref_mode: str = Field(default="id", description="Resource locator mode (id, list, name)")
    cached_name: Optional[str] = Field(default=None, description="cachedResultName of the locator")


class OpaqueParameters(BaseModel):
    """Parameters of any node the resolver does not interpret."""

    kind: Literal["opaque"] = "opaque"
    data: dict[str, Any] = Field(default_factory=dict)


NodeParameters = Annotated[
    Union[InvokeWorkflowParameters, OpaqueParameters],
    Field(discriminator="kind"),
]


# ==================== Dependencies ====================

@dataclass(frozen=True, order=True)
class DependencyEdge:
    """Caller invokes callee. Hashable so duplicate edges collapse in sets."""

    caller: str
    callee: str


# ==================== Engine State ====================

class DeployedWorkflowRecord(BaseModel):
    """
    A workflow as currently known to the engine.

    Content fields are optional: when the engine listing omits them the
    record has no fingerprint and the definition is always updated.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., description="Engine-assigned identifier")
    name: str = Field(...)
    active: bool = Field(default=False)
    nodes: Optional[list[dict[str, Any]]] = Field(default=None)
    connections: Optional[dict[str, Any]] = Field(default=None)
    settings: Optional[dict[str, Any]] = Field(default=None)
    static_data: Optional[Any] = Field(default=None, alias="staticData")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @property
    def has_content(self) -> bool:
        return self.nodes is not None


# ==================== Planning ====================

class ActionType(str, Enum):
    """Import action for one local definition."""

    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


class PlannedAction(BaseModel):
    """The diff outcome for a single local definition."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    action: ActionType
    reason: str = ""
    existing_id: Optional[str] = Field(default=None, description="Engine id for UPDATE/SKIP")
    existing_active: bool = Field(default=False)
    current_version: Optional[str] = Field(default=None, description="Deployed fingerprint")
    new_version: str = Field(..., description="Local fingerprint")

    @property
    def is_write(self) -> bool:
        """Whether phase 1 sends this definition to the engine."""
        return self.action in (ActionType.CREATE, ActionType.UPDATE)
