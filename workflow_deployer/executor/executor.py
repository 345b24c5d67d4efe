"""
Two-phase deployment executor.

Phase 1 materializes every CREATE/UPDATE definition on the engine in an
inactive state with bounded parallelism. Phase 2 activates the materialized
definitions strictly one at a time in dependency order.

Engine failures are captured per item; the run always returns a report.
"""

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from workflow_deployer.config.settings import DeploySettings
from workflow_deployer.core.errors import (
    ActivationOrderViolation,
    PlanValidationError,
    ReservedFieldRejected,
    WorkflowLeftInactive,
)
from workflow_deployer.core.models import ActionType, DeployedWorkflowRecord, PlannedAction
from workflow_deployer.core.state_machine import DefinitionState, DefinitionStateMachine
from workflow_deployer.engine.client import EngineClient
from workflow_deployer.engine.payload import definition_payload
from workflow_deployer.planner.diff import DeploymentPlan

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Cancelled(Exception):
    """Internal signal: the run's cancel event fired during an engine call."""


# ==================== Report Models ====================

class ItemResult(BaseModel):
    """Outcome for one definition."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    action: ActionType
    state: DefinitionState = DefinitionState.PENDING
    workflow_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class DeploymentReport(BaseModel):
    """Structured result of a real deployment run."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    items: list[ItemResult] = Field(default_factory=list)
    activation_attempted: list[str] = Field(default_factory=list)
    cancelled: bool = False
    halted: bool = False

    def _count(self, *states: DefinitionState, action: Optional[ActionType] = None) -> int:
        return sum(
            1 for item in self.items
            if item.state in states and (action is None or item.action == action)
        )

    @computed_field
    @property
    def created(self) -> int:
        return self._count(
            DefinitionState.CREATED, DefinitionState.ACTIVATED, DefinitionState.ACTIVATION_FAILED,
            action=ActionType.CREATE,
        )

    @computed_field
    @property
    def updated(self) -> int:
        return self._count(
            DefinitionState.CREATED, DefinitionState.ACTIVATED, DefinitionState.ACTIVATION_FAILED,
            action=ActionType.UPDATE,
        )

    @computed_field
    @property
    def skipped(self) -> int:
        """Definitions whose content was not written, whether or not phase 2 activated them."""
        return sum(1 for item in self.items if item.action == ActionType.SKIP)

    @computed_field
    @property
    def activated(self) -> int:
        return self._count(DefinitionState.ACTIVATED)

    @computed_field
    @property
    def failed(self) -> int:
        return self._count(*DefinitionStateMachine.FAILURE_STATES)

    @computed_field
    @property
    def pending(self) -> int:
        return self._count(DefinitionState.PENDING)

    @computed_field
    @property
    def degraded(self) -> bool:
        return bool(self.failed or self.pending or self.cancelled or self.halted or self.blocked)

    @property
    def blocked(self) -> list[ItemResult]:
        """Materialized items that were not activated because a dependency was not live."""
        return [
            item for item in self.items
            if item.state == DefinitionState.CREATED and item.error_type == "DependencyNotActive"
        ]

    @property
    def failures(self) -> list[ItemResult]:
        return [item for item in self.items if item.state in DefinitionStateMachine.FAILURE_STATES]

    def get(self, name: str) -> Optional[ItemResult]:
        for item in self.items:
            if item.name == name:
                return item
        return None


# ==================== Executor ====================

class _Run:
    """Mutable state of one execution; phase 1 workers write through the lock."""

    def __init__(self, plan: DeploymentPlan):
        self.plan = plan
        self.machines: dict[str, DefinitionStateMachine] = {
            action.name: DefinitionStateMachine() for action in plan.actions
        }
        self.results: dict[str, ItemResult] = {
            action.name: ItemResult(name=action.name, action=action.action, workflow_id=action.existing_id)
            for action in plan.actions
        }
        self.lock = asyncio.Lock()

    def move(self, name: str, state: DefinitionState, reason: Optional[str] = None) -> None:
        self.machines[name].transition(state, reason=reason)
        self.results[name].state = state

    def fail(self, name: str, state: DefinitionState, error: Exception) -> None:
        self.move(name, state, reason=str(error))
        self.results[name].error = str(error)
        self.results[name].error_type = type(error).__name__


class DeploymentExecutor:
    """
    Executes a validated DeploymentPlan against an engine client.

    The client is injected so tests can supply an in-memory engine.
    """

    def __init__(self, client: EngineClient, settings: Optional[DeploySettings] = None):
        self.client = client
        self.settings = settings or DeploySettings()

    async def execute(
        self,
        plan: DeploymentPlan,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DeploymentReport:
        """
        Run both phases.

        Args:
            plan: Plan produced by DiffPlanner; must be valid
            cancel_event: Setting it cancels in-flight calls; unattempted
                items stay PENDING and are safe to retry on the next run

        Raises:
            PlanValidationError: If the plan failed validation
            ActivationOrderViolation: If the activation order is inconsistent with the graph
        """
        if not plan.is_valid:
            raise PlanValidationError(plan.validation.error_messages)

        run = _Run(plan)
        report = DeploymentReport()

        for action in plan.actions:
            if action.action != ActionType.SKIP:
                continue
            if self.settings.activate and not action.existing_active:
                # Stored unchanged but offline (e.g. an earlier run halted): no write,
                # but it still joins phase 2.
                run.move(action.name, DefinitionState.CREATED, reason="unchanged, inactive")
            else:
                run.move(action.name, DefinitionState.SKIPPED, reason=action.reason)

        logger.info(
            f"Phase 1: materializing {len(plan.writes)} workflows "
            f"(concurrency={self.settings.max_concurrency})"
        )
        await self._materialize_all(run, cancel_event)

        if self._is_cancelled(cancel_event):
            report.cancelled = True
        elif self.settings.activate:
            await self._activate_in_order(run, report, cancel_event)

        if self._is_cancelled(cancel_event):
            report.cancelled = True

        report.items = [run.results[action.name] for action in plan.actions]
        logger.info(
            f"Deployment finished: created={report.created} updated={report.updated} "
            f"skipped={report.skipped} activated={report.activated} failed={report.failed} "
            f"pending={report.pending} cancelled={report.cancelled}"
        )
        return report

    # -------------------- helpers --------------------

    @staticmethod
    def _is_cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
        return cancel_event is not None and cancel_event.is_set()

    async def _call(self, awaitable: Awaitable[T], cancel_event: Optional[asyncio.Event]) -> T:
        """Await an engine call, abandoning it if the cancel event fires first."""
        if cancel_event is None:
            return await awaitable

        call = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if call in done:
            return call.result()

        call.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await call
        raise _Cancelled()

    # -------------------- phase 1 --------------------

    async def _materialize_all(self, run: _Run, cancel_event: Optional[asyncio.Event]) -> None:
        semaphore = asyncio.Semaphore(self.settings.max_concurrency)

        async def worker(action: PlannedAction) -> None:
            async with semaphore:
                if self._is_cancelled(cancel_event):
                    return
                await self._materialize(run, action, cancel_event)

        await asyncio.gather(*(worker(action) for action in run.plan.writes))

    async def _write(self, action: PlannedAction, payload: dict[str, Any]) -> DeployedWorkflowRecord:
        if action.action == ActionType.CREATE:
            return await self.client.create_workflow(payload)

        if not (action.existing_active and self.settings.deactivate_before_update):
            return await self.client.update_workflow(action.existing_id, payload)

        logger.debug(f"Deactivating '{action.name}' ({action.existing_id}) before update")
        await self.client.deactivate_workflow(action.existing_id)
        try:
            return await self.client.update_workflow(action.existing_id, payload)
        except Exception as e:
            await self._restore_after_failed_update(action, e)
            raise

    async def _restore_after_failed_update(self, action: PlannedAction, error: Exception) -> None:
        """Best-effort reactivation of the old version after its replacement was rejected."""
        try:
            await self.client.activate_workflow(action.existing_id)
        except Exception as reactivate_error:
            logger.error(f"Could not reactivate '{action.name}' after failed update: {reactivate_error}")
            raise WorkflowLeftInactive(error, reactivate_error) from error
        logger.info(f"Reactivated previous version of '{action.name}' after failed update")

    async def _materialize(
        self,
        run: _Run,
        action: PlannedAction,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        definition = run.plan.definitions[action.name]
        payload = definition_payload(definition)
        failed_state = (
            DefinitionState.CREATE_FAILED if action.action == ActionType.CREATE
            else DefinitionState.UPDATE_FAILED
        )

        try:
            record = await self._call(self._write(action, payload), cancel_event)
        except _Cancelled:
            logger.info(f"Cancelled while materializing '{action.name}'; left pending")
            return
        except ReservedFieldRejected as e:
            logger.error(f"Engine rejected reserved field for '{action.name}' (sanitizer bug): {e}")
            async with run.lock:
                run.fail(action.name, failed_state, e)
            return
        except Exception as e:
            logger.error(f"Failed to {action.action.value} workflow '{action.name}': {e}", exc_info=True)
            async with run.lock:
                run.fail(action.name, failed_state, e)
            return

        async with run.lock:
            run.move(action.name, DefinitionState.CREATED, reason=action.action.value)
            run.results[action.name].workflow_id = record.id
        logger.info(f"[{action.action.value.upper()}] {action.name} (ID: {record.id})")

    # -------------------- phase 2 --------------------

    async def _activate_in_order(
        self,
        run: _Run,
        report: DeploymentReport,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        graph = run.plan.resolution.graph
        to_activate = [
            name for name in run.plan.activation_order
            if name in run.machines and run.machines[name].state == DefinitionState.CREATED
        ]
        pending_activation = set(to_activate)

        # Skipped definitions that are already running satisfy their callers.
        live = {
            action.name for action in run.plan.actions
            if action.action == ActionType.SKIP and action.existing_active
        }

        logger.info(f"Phase 2: activating {len(to_activate)} workflows in dependency order")

        for name in to_activate:
            if self._is_cancelled(cancel_event):
                return

            pending_activation.discard(name)
            blocker = None
            for dependency in sorted(graph.dependencies_of(name)):
                if dependency in live:
                    continue
                if dependency in pending_activation:
                    raise ActivationOrderViolation(caller=name, callee=dependency)
                blocker = dependency
                break

            if blocker is not None:
                result = run.results[name]
                result.error = f"Dependency '{blocker}' is not active"
                result.error_type = "DependencyNotActive"
                logger.warning(f"Not activating '{name}': dependency '{blocker}' is not active")
                continue

            workflow_id = run.results[name].workflow_id
            report.activation_attempted.append(name)

            try:
                await self._call(self.client.activate_workflow(workflow_id), cancel_event)
            except _Cancelled:
                logger.info(f"Cancelled while activating '{name}'")
                return
            except Exception as e:
                logger.error(f"Failed to activate workflow '{name}': {e}")
                run.fail(name, DefinitionState.ACTIVATION_FAILED, e)
                if self.settings.halt_on_activation_failure:
                    report.halted = True
                    logger.error("Halting activation; later workflows may depend on the failed one")
                    return
                continue

            run.move(name, DefinitionState.ACTIVATED)
            live.add(name)
            logger.info(f"[ACTIVATE] {name} (ID: {workflow_id})")
