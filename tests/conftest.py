"""
Pytest fixtures and configuration for tests.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from workflow_deployer.config import Environment, Settings
from workflow_deployer.config.settings import DeploySettings, EngineSettings, RetrySettings
from workflow_deployer.core.errors import EngineRequestError, TransientEngineError
from workflow_deployer.core.models import EXECUTE_WORKFLOW_NODE_TYPE, DeployedWorkflowRecord
from workflow_deployer.engine.payload import sanitize_payload


# ==================== Fake Engine ====================

class FakeEngineClient:
    """
    In-memory engine recording every write.

    Stores the payloads it receives so a second diff sees exactly what was
    deployed. Failures and hangs are injected per (operation, workflow name).
    """

    def __init__(self, node_types: Optional[set[str]] = None, delay: float = 0.0):
        self.workflows: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.node_types = node_types
        self.delay = delay
        self.reachable = True
        self.list_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.hanging = asyncio.Event()
        self._failures: dict[tuple[str, str], Exception] = {}
        self._hang: set[tuple[str, str]] = set()
        self._next_id = 1

    # -------------------- test setup --------------------

    def seed(
        self,
        workflow: dict[str, Any],
        active: bool = False,
        with_content: bool = True,
    ) -> str:
        """Put a workflow on the engine as if deployed earlier."""
        workflow_id = self._new_id()
        stored: dict[str, Any] = {"id": workflow_id, "name": workflow["name"], "active": active}
        if with_content:
            stored.update(sanitize_payload(workflow))
        self.workflows[workflow_id] = stored
        return workflow_id

    def fail(self, operation: str, name: str, error: Optional[Exception] = None) -> None:
        self._failures[(operation, name)] = error or EngineRequestError(
            f"HTTP 400: {operation} rejected", status_code=400
        )

    def clear_failures(self) -> None:
        self._failures.clear()

    def hang_on(self, operation: str, name: str) -> None:
        self._hang.add((operation, name))

    def calls_for(self, operation: str) -> list[str]:
        return [name for op, name in self.calls if op == operation]

    def by_name(self, name: str) -> dict[str, Any]:
        return next(w for w in self.workflows.values() if w["name"] == name)

    # -------------------- internals --------------------

    def _new_id(self) -> str:
        workflow_id = f"wf-{self._next_id}"
        self._next_id += 1
        return workflow_id

    def _record(self, workflow_id: str) -> DeployedWorkflowRecord:
        return DeployedWorkflowRecord.model_validate(self.workflows[workflow_id])

    def _name_of(self, workflow_id: str) -> str:
        if workflow_id not in self.workflows:
            raise EngineRequestError(f"HTTP 404: workflow {workflow_id} not found", status_code=404)
        return self.workflows[workflow_id]["name"]

    async def _enter(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if (operation, name) in self._hang:
                self.hanging.set()
                await asyncio.Event().wait()
            if (operation, name) in self._failures:
                raise self._failures[(operation, name)]
        finally:
            self.in_flight -= 1

    # -------------------- EngineClient --------------------

    async def list_workflows(self) -> list[DeployedWorkflowRecord]:
        self.list_calls += 1
        return [self._record(workflow_id) for workflow_id in self.workflows]

    async def create_workflow(self, payload: dict[str, Any]) -> DeployedWorkflowRecord:
        await self._enter("create", payload["name"])
        workflow_id = self._new_id()
        self.workflows[workflow_id] = {"id": workflow_id, "active": False, **payload}
        return self._record(workflow_id)

    async def update_workflow(self, workflow_id: str, payload: dict[str, Any]) -> DeployedWorkflowRecord:
        await self._enter("update", self._name_of(workflow_id))
        active = self.workflows[workflow_id]["active"]
        self.workflows[workflow_id] = {"id": workflow_id, "active": active, **payload}
        return self._record(workflow_id)

    async def activate_workflow(self, workflow_id: str) -> DeployedWorkflowRecord:
        await self._enter("activate", self._name_of(workflow_id))
        self.workflows[workflow_id]["active"] = True
        return self._record(workflow_id)

    async def deactivate_workflow(self, workflow_id: str) -> DeployedWorkflowRecord:
        await self._enter("deactivate", self._name_of(workflow_id))
        self.workflows[workflow_id]["active"] = False
        return self._record(workflow_id)

    async def list_node_types(self) -> Optional[set[str]]:
        return self.node_types

    async def ping(self) -> bool:
        if not self.reachable:
            raise TransientEngineError("Connection refused")
        return True


# ==================== Workflow Builders ====================

def make_workflow(name: str, *callees: str, **extra: Any) -> dict[str, Any]:
    """A workflow with a trigger node and one executeWorkflow node per callee."""
    nodes: list[dict[str, Any]] = [
        {
            "id": f"{name}-trigger",
            "name": "When Called",
            "type": "n8n-nodes-base.executeWorkflowTrigger",
            "typeVersion": 1,
            "position": [0, 0],
            "parameters": {},
        }
    ]
    for index, callee in enumerate(callees):
        nodes.append({
            "id": f"{name}-call-{index}",
            "name": f"Call {callee}",
            "type": EXECUTE_WORKFLOW_NODE_TYPE,
            "typeVersion": 1.1,
            "position": [200 * (index + 1), 0],
            "parameters": {"source": "database", "workflowId": callee},
        })
    return {"name": name, "nodes": nodes, "connections": {}, **extra}


@pytest.fixture
def workflow_factory() -> Callable[..., dict[str, Any]]:
    """Build workflow JSON: workflow_factory("A", "B") calls B from A."""
    return make_workflow


@pytest.fixture
def fake_client() -> FakeEngineClient:
    """Empty in-memory engine without a node catalog."""
    return FakeEngineClient()


@pytest.fixture
def fake_client_factory() -> Callable[..., FakeEngineClient]:
    """Build an in-memory engine with custom options."""
    return FakeEngineClient


# ==================== Settings ====================

@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        environment=Environment.TEST,
        debug=True,
        log_level="DEBUG",
        engine=EngineSettings(api_url="http://engine.test", api_key="test-key", page_size=2),
        deploy=DeploySettings(workflows_dir=str(tmp_path / "workflows"), max_concurrency=3),
        retry=RetrySettings(max_retries=2, initial_delay=0.0, max_delay=0.0, jitter=False),
    )


# ==================== Scenario Definitions ====================

@pytest.fixture
def chain_workflows() -> list[dict[str, Any]]:
    """A calls B, B calls C, C calls nothing."""
    return [
        make_workflow("A", "B"),
        make_workflow("B", "C"),
        make_workflow("C"),
    ]


@pytest.fixture
def cyclic_workflows() -> list[dict[str, Any]]:
    """A -> B -> C -> A."""
    return [
        make_workflow("A", "B"),
        make_workflow("B", "C"),
        make_workflow("C", "A"),
    ]


@pytest.fixture
def dangling_workflows() -> list[dict[str, Any]]:
    """A calls a workflow named 'ghost' that is never defined."""
    return [
        make_workflow("A", "ghost"),
        make_workflow("B"),
    ]


@pytest.fixture
def eight_workflows() -> list[dict[str, Any]]:
    """
    Eight workflows with a layered call graph.

    Orchestrator -> (Billing, Shipping); Billing -> (Tax, Ledger);
    Shipping -> Carrier; Ledger -> Audit; Notify is standalone.
    """
    return [
        make_workflow("Orchestrator", "Billing", "Shipping"),
        make_workflow("Billing", "Tax", "Ledger"),
        make_workflow("Shipping", "Carrier"),
        make_workflow("Ledger", "Audit"),
        make_workflow("Tax"),
        make_workflow("Carrier"),
        make_workflow("Audit"),
        make_workflow("Notify"),
    ]


@pytest.fixture
def workflows_dir(test_settings: Settings, chain_workflows: list[dict[str, Any]]) -> Path:
    """Directory holding the chain workflows, one file each."""
    directory = Path(test_settings.deploy.workflows_dir)
    directory.mkdir(parents=True, exist_ok=True)
    for workflow in chain_workflows:
        (directory / f"{workflow['name'].lower()}.json").write_text(json.dumps(workflow, indent=2))
    return directory
