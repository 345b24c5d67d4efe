"""
Integration tests for the two-phase deployment executor.

Runs full plans against the in-memory engine from conftest.
"""

import asyncio

import pytest

from workflow_deployer.config.settings import DeploySettings
from workflow_deployer.core.errors import ActivationOrderViolation, PlanValidationError, TransientEngineError
from workflow_deployer.core.loader import load_definitions
from workflow_deployer.core.models import ActionType
from workflow_deployer.core.state_machine import DefinitionState
from workflow_deployer.executor import DeploymentExecutor
from workflow_deployer.planner.diff import DiffPlanner


async def _plan(client, workflows, force: bool = False):
    loaded = load_definitions(workflows)
    deployed = await client.list_workflows()
    return DiffPlanner(deployed, force=force).plan(loaded.definitions, load_errors=loaded.errors)


def _settings(**overrides) -> DeploySettings:
    return DeploySettings(**{"max_concurrency": 3, **overrides})


class TestChainDeployment:
    """Scenario: A -> B -> C deployed from scratch."""

    @pytest.mark.asyncio
    async def test_creates_then_activates_callees_first(self, fake_client, chain_workflows):
        plan = await _plan(fake_client, chain_workflows)

        report = await DeploymentExecutor(fake_client, _settings()).execute(plan)

        assert sorted(fake_client.calls_for("create")) == ["A", "B", "C"]
        assert fake_client.calls_for("activate") == ["C", "B", "A"]
        assert report.created == 3
        assert report.activated == 3
        assert not report.degraded
        assert all(item.state == DefinitionState.ACTIVATED for item in report.items)
        assert all(w["active"] for w in fake_client.workflows.values())

    @pytest.mark.asyncio
    async def test_every_create_precedes_every_activation(self, fake_client, chain_workflows):
        plan = await _plan(fake_client, chain_workflows)

        await DeploymentExecutor(fake_client, _settings()).execute(plan)

        operations = [op for op, _ in fake_client.calls]
        assert operations == ["create"] * 3 + ["activate"] * 3

    @pytest.mark.asyncio
    async def test_round_trip_is_skip(self, fake_client, chain_workflows):
        """Test that re-diffing after a deployment classifies everything unchanged."""
        first = await _plan(fake_client, chain_workflows)
        await DeploymentExecutor(fake_client, _settings()).execute(first)

        second = await _plan(fake_client, chain_workflows)

        assert [a.action for a in second.actions] == [ActionType.SKIP] * 3
        assert all(a.existing_active for a in second.actions)

    @pytest.mark.asyncio
    async def test_materialize_only(self, fake_client, chain_workflows):
        plan = await _plan(fake_client, chain_workflows)

        report = await DeploymentExecutor(fake_client, _settings(activate=False)).execute(plan)

        assert fake_client.calls_for("activate") == []
        assert all(item.state == DefinitionState.CREATED for item in report.items)
        assert not any(w["active"] for w in fake_client.workflows.values())

    @pytest.mark.asyncio
    async def test_invalid_plan_refused(self, fake_client, cyclic_workflows):
        plan = await _plan(fake_client, cyclic_workflows)

        with pytest.raises(PlanValidationError):
            await DeploymentExecutor(fake_client, _settings()).execute(plan)

        assert fake_client.calls == []


class TestMixedDeployment:
    """Scenario: eight workflows, five new, two changed, one unchanged."""

    @pytest.mark.asyncio
    async def test_write_and_activation_counts(self, fake_client, eight_workflows, workflow_factory):
        by_name = {w["name"]: w for w in eight_workflows}
        # Two changed (stored content differs), one unchanged and already running.
        fake_client.seed(workflow_factory("Tax", "Audit"), active=False)
        fake_client.seed(workflow_factory("Shipping"), active=False)
        fake_client.seed(by_name["Audit"], active=True)

        plan = await _plan(fake_client, eight_workflows)
        counts = {t: plan.report.count(t) for t in ActionType}
        assert counts == {ActionType.CREATE: 5, ActionType.UPDATE: 2, ActionType.SKIP: 1}

        report = await DeploymentExecutor(fake_client, _settings()).execute(plan)

        creates = fake_client.calls_for("create")
        updates = fake_client.calls_for("update")
        assert len(creates) + len(updates) == 7
        assert sorted(updates) == ["Shipping", "Tax"]
        assert "Audit" not in creates + updates
        assert fake_client.calls_for("deactivate") == []

        activations = fake_client.calls_for("activate")
        assert len(activations) == 7
        assert "Audit" not in activations
        assert activations == [name for name in plan.activation_order if name != "Audit"]
        for caller in activations:
            for callee in plan.resolution.graph.dependencies_of(caller):
                if callee in activations:
                    assert activations.index(callee) < activations.index(caller)

        assert report.created == 5
        assert report.updated == 2
        assert report.skipped == 1
        assert report.activated == 7
        assert report.get("Audit").state == DefinitionState.SKIPPED

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, fake_client_factory, eight_workflows):
        client = fake_client_factory(delay=0.01)
        plan = await _plan(client, eight_workflows)

        await DeploymentExecutor(client, _settings(max_concurrency=2)).execute(plan)

        assert client.max_in_flight == 2
        assert len(client.calls_for("create")) == 8


class TestUpdateOfActiveWorkflow:
    """Active workflows are taken offline before being overwritten."""

    @pytest.mark.asyncio
    async def test_deactivate_before_update(self, fake_client, workflow_factory):
        fake_client.seed(workflow_factory("A"), active=True)

        plan = await _plan(fake_client, [workflow_factory("A", "B"), workflow_factory("B")])
        report = await DeploymentExecutor(fake_client, _settings()).execute(plan)

        assert fake_client.calls_for("deactivate") == ["A"]
        assert fake_client.calls_for("update") == ["A"]
        assert fake_client.calls_for("activate") == ["B", "A"]
        assert report.updated == 1
        assert fake_client.by_name("A")["active"]

    @pytest.mark.asyncio
    async def test_update_in_place(self, fake_client, workflow_factory):
        fake_client.seed(workflow_factory("A"), active=True)

        plan = await _plan(fake_client, [workflow_factory("A", "B"), workflow_factory("B")])
        await DeploymentExecutor(fake_client, _settings(deactivate_before_update=False)).execute(plan)

        assert fake_client.calls_for("deactivate") == []
        assert fake_client.calls_for("update") == ["A"]

    @pytest.mark.asyncio
    async def test_failed_update_reactivates_previous_version(self, fake_client, workflow_factory):
        fake_client.seed(workflow_factory("A"), active=True)
        fake_client.fail("update", "A")

        plan = await _plan(fake_client, [workflow_factory("A", "B"), workflow_factory("B")])
        report = await DeploymentExecutor(fake_client, _settings()).execute(plan)

        assert [op for op, name in fake_client.calls if name == "A"] == ["deactivate", "update", "activate"]
        assert report.get("A").state == DefinitionState.UPDATE_FAILED
        assert report.get("A").error_type == "EngineRequestError"
        assert fake_client.by_name("A")["active"]
        assert report.get("B").state == DefinitionState.ACTIVATED

    @pytest.mark.asyncio
    async def test_failed_update_reports_workflow_left_inactive(self, fake_client, workflow_factory):
        fake_client.seed(workflow_factory("A"), active=True)
        fake_client.fail("update", "A")
        fake_client.fail("activate", "A")

        plan = await _plan(fake_client, [workflow_factory("A", "B"), workflow_factory("B")])
        report = await DeploymentExecutor(fake_client, _settings()).execute(plan)

        result = report.get("A")
        assert result.state == DefinitionState.UPDATE_FAILED
        assert result.error_type == "WorkflowLeftInactive"
        assert "update rejected" in result.error
        assert "left inactive" in result.error
        assert not fake_client.by_name("A")["active"]
        assert report.degraded


class TestFailures:
    """Per-item failures are reported, never raised."""

    @pytest.mark.asyncio
    async def test_create_failure_blocks_callers(self, fake_client, chain_workflows):
        fake_client.fail("create", "C")
        plan = await _plan(fake_client, chain_workflows)

        report = await DeploymentExecutor(fake_client, _settings()).execute(plan)

        assert report.get("C").state == DefinitionState.CREATE_FAILED
        assert report.get("C").error_type == "EngineRequestError"
        # B calls C, so B stays stored but inactive; A calls B and is blocked in turn.
        assert report.get("B").state == DefinitionState.CREATED
        assert report.get("B").error_type == "DependencyNotActive"
        assert report.get("A").state == DefinitionState.CREATED
        assert fake_client.calls_for("activate") == []
        assert report.failed == 1
        assert len(report.blocked) == 2
        assert report.degraded

    @pytest.mark.asyncio
    async def test_unrelated_definitions_still_deploy(self, fake_client, workflow_factory):
        fake_client.fail("create", "Broken")
        workflows = [workflow_factory("Broken"), workflow_factory("Fine")]
        plan = await _plan(fake_client, workflows)

        report = await DeploymentExecutor(fake_client, _settings()).execute(plan)

        assert report.get("Fine").state == DefinitionState.ACTIVATED
        assert report.get("Broken").state == DefinitionState.CREATE_FAILED

    @pytest.mark.asyncio
    async def test_activation_failure_halts(self, fake_client, workflow_factory):
        fake_client.fail("activate", "B", TransientEngineError("HTTP 503: unavailable", status_code=503))
        workflows = [workflow_factory("A", "B"), workflow_factory("B"), workflow_factory("Z")]
        plan = await _plan(fake_client, workflows)
        assert plan.activation_order == ["B", "A", "Z"]

        report = await DeploymentExecutor(fake_client, _settings()).execute(plan)

        assert fake_client.calls_for("activate") == ["B"]
        assert report.halted
        assert report.get("B").state == DefinitionState.ACTIVATION_FAILED
        assert report.get("Z").state == DefinitionState.CREATED
        assert report.get("A").state == DefinitionState.CREATED
        assert report.activation_attempted == ["B"]

    @pytest.mark.asyncio
    async def test_activation_failure_continue(self, fake_client, workflow_factory):
        fake_client.fail("activate", "B")
        workflows = [workflow_factory("A", "B"), workflow_factory("B"), workflow_factory("Z")]
        plan = await _plan(fake_client, workflows)

        report = await DeploymentExecutor(
            fake_client, _settings(halt_on_activation_failure=False)
        ).execute(plan)

        assert fake_client.calls_for("activate") == ["B", "Z"]
        assert report.get("Z").state == DefinitionState.ACTIVATED
        assert report.get("A").error_type == "DependencyNotActive"
        assert not report.halted

    @pytest.mark.asyncio
    async def test_skipped_inactive_callee_is_activated_first(self, fake_client, workflow_factory):
        fake_client.seed(workflow_factory("B"), active=False)
        plan = await _plan(fake_client, [workflow_factory("A", "B"), workflow_factory("B")])
        assert plan.get_action("B").action == ActionType.SKIP

        report = await DeploymentExecutor(fake_client, _settings()).execute(plan)

        assert fake_client.calls_for("update") == []
        assert fake_client.calls_for("activate") == ["B", "A"]
        assert report.get("B").state == DefinitionState.ACTIVATED
        assert report.get("A").state == DefinitionState.ACTIVATED
        assert report.skipped == 1
        assert not report.degraded

    @pytest.mark.asyncio
    async def test_skipped_inactive_callee_left_alone_without_activation(self, fake_client, workflow_factory):
        fake_client.seed(workflow_factory("B"), active=False)
        plan = await _plan(fake_client, [workflow_factory("A", "B"), workflow_factory("B")])

        report = await DeploymentExecutor(fake_client, _settings(activate=False)).execute(plan)

        assert fake_client.calls_for("activate") == []
        assert report.get("B").state == DefinitionState.SKIPPED
        assert report.get("A").state == DefinitionState.CREATED

    @pytest.mark.asyncio
    async def test_skipped_active_callee_satisfies_caller(self, fake_client, workflow_factory):
        fake_client.seed(workflow_factory("B"), active=True)
        plan = await _plan(fake_client, [workflow_factory("A", "B"), workflow_factory("B")])

        report = await DeploymentExecutor(fake_client, _settings()).execute(plan)

        assert fake_client.calls_for("activate") == ["A"]
        assert report.get("A").state == DefinitionState.ACTIVATED

    @pytest.mark.asyncio
    async def test_order_violation_detected(self, fake_client, chain_workflows):
        """Test that a corrupted activation order is caught before the engine is called."""
        plan = await _plan(fake_client, chain_workflows)
        plan.resolution.activation_order = ["A", "B", "C"]

        with pytest.raises(ActivationOrderViolation) as exc_info:
            await DeploymentExecutor(fake_client, _settings()).execute(plan)

        assert exc_info.value.caller == "A"
        assert exc_info.value.callee == "B"
        assert fake_client.calls_for("activate") == []


class TestRerun:
    """A second run finishes whatever the first one left undone."""

    @pytest.mark.asyncio
    async def test_rerun_after_halt_activates_stored_workflows(self, fake_client, chain_workflows):
        fake_client.fail("activate", "C")
        first = await DeploymentExecutor(fake_client, _settings()).execute(
            await _plan(fake_client, chain_workflows)
        )
        assert first.halted
        assert not any(w["active"] for w in fake_client.workflows.values())

        fake_client.clear_failures()
        plan = await _plan(fake_client, chain_workflows)
        assert all(action.action == ActionType.SKIP for action in plan.actions)

        report = await DeploymentExecutor(fake_client, _settings()).execute(plan)

        assert len(fake_client.calls_for("create")) == 3
        assert fake_client.calls_for("update") == []
        assert fake_client.calls_for("activate") == ["C", "C", "B", "A"]
        assert report.activated == 3
        assert report.skipped == 3
        assert not report.degraded
        assert all(w["active"] for w in fake_client.workflows.values())

    @pytest.mark.asyncio
    async def test_rerun_with_persistent_failure_stays_degraded(self, fake_client, chain_workflows):
        fake_client.fail("activate", "C")
        await DeploymentExecutor(fake_client, _settings()).execute(await _plan(fake_client, chain_workflows))

        report = await DeploymentExecutor(fake_client, _settings()).execute(
            await _plan(fake_client, chain_workflows)
        )

        assert report.halted
        assert report.degraded
        assert report.activated == 0
        assert report.get("C").state == DefinitionState.ACTIVATION_FAILED
        assert report.get("A").state == DefinitionState.CREATED


class TestCancellation:
    """Cancelling a run leaves unattempted definitions pending."""

    @pytest.mark.asyncio
    async def test_cancel_during_phase_one(self, fake_client, workflow_factory):
        fake_client.hang_on("create", "A")
        workflows = [workflow_factory(name) for name in ("A", "B", "C", "D")]
        plan = await _plan(fake_client, workflows)
        cancel = asyncio.Event()

        executor = DeploymentExecutor(fake_client, _settings(max_concurrency=1))
        task = asyncio.create_task(executor.execute(plan, cancel_event=cancel))
        await asyncio.wait_for(fake_client.hanging.wait(), timeout=1)
        cancel.set()
        report = await asyncio.wait_for(task, timeout=1)

        assert report.cancelled
        assert report.degraded
        assert fake_client.calls_for("create") == ["A"]
        assert fake_client.calls_for("activate") == []
        assert report.pending == 4
        assert all(item.state == DefinitionState.PENDING for item in report.items)

    @pytest.mark.asyncio
    async def test_cancel_during_phase_two(self, fake_client, chain_workflows):
        fake_client.hang_on("activate", "B")
        plan = await _plan(fake_client, chain_workflows)
        cancel = asyncio.Event()

        task = asyncio.create_task(
            DeploymentExecutor(fake_client, _settings()).execute(plan, cancel_event=cancel)
        )
        await asyncio.wait_for(fake_client.hanging.wait(), timeout=1)
        cancel.set()
        report = await asyncio.wait_for(task, timeout=1)

        assert report.cancelled
        assert report.get("C").state == DefinitionState.ACTIVATED
        assert report.get("B").state == DefinitionState.CREATED
        assert report.get("A").state == DefinitionState.CREATED
        assert fake_client.calls_for("activate") == ["C", "B"]

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, fake_client, chain_workflows):
        plan = await _plan(fake_client, chain_workflows)
        cancel = asyncio.Event()
        cancel.set()

        report = await DeploymentExecutor(fake_client, _settings()).execute(plan, cancel_event=cancel)

        assert fake_client.calls == []
        assert report.cancelled
        assert report.pending == 3
