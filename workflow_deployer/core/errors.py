"""
Error taxonomy for dependency resolution and deployment.

Structural errors (malformed, dangling, cyclic) are collected into the
validation report. Engine errors are captured per item by the executor.
"""

from typing import Any, Optional


class DeployerError(Exception):
    """Base class for all deployer errors."""

    code: str = "DEPLOYER_ERROR"

    def to_dict(self) -> dict[str, Any]:
        """Serialize for reports."""
        return {"code": self.code, "message": str(self)}


# ==================== Structural Errors ====================

class DefinitionSourceError(DeployerError):
    """Raised when the definition source directory cannot be read at all."""

    code = "DEFINITION_SOURCE_ERROR"


class MalformedDefinition(DeployerError):
    """A single definition file does not parse into the minimal shape."""

    code = "MALFORMED_DEFINITION"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Malformed workflow definition '{source}': {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "source": self.source, "reason": self.reason}


class DanglingReference(DeployerError):
    """An invoker node points at a workflow that is not loaded."""

    code = "DANGLING_REFERENCE"

    def __init__(self, caller: str, reference: str, node_name: Optional[str] = None):
        self.caller = caller
        self.reference = reference
        self.node_name = node_name
        location = f" (node '{node_name}')" if node_name else ""
        super().__init__(
            f"Workflow '{caller}'{location} references unknown workflow '{reference}'"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "caller": self.caller,
            "reference": self.reference,
            "node_name": self.node_name,
        }


class CyclicDependency(DeployerError):
    """One or more call cycles exist between definitions."""

    code = "CYCLIC_DEPENDENCY"

    def __init__(self, cycles: list[list[str]]):
        self.cycles = cycles
        rendered = "; ".join(" -> ".join(cycle) for cycle in cycles)
        super().__init__(f"Circular workflow dependencies detected: {rendered}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "cycles": self.cycles}


class PlanValidationError(DeployerError):
    """Raised when a plan that failed validation is handed to the executor."""

    code = "PLAN_VALIDATION_ERROR"

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Deployment plan is not valid: {errors}")


class ActivationOrderViolation(DeployerError):
    """
    A caller was about to be activated before one of its callees.

    This indicates a bug in order planning, never a runtime condition.
    """

    code = "ACTIVATION_ORDER_VIOLATION"

    def __init__(self, caller: str, callee: str):
        self.caller = caller
        self.callee = callee
        super().__init__(
            f"Attempted to activate '{caller}' before its dependency '{callee}'"
        )


# ==================== Engine Errors ====================

class EngineError(DeployerError):
    """Base class for failures reported by (or reaching) the workflow engine."""

    code = "ENGINE_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[Any] = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "status_code": self.status_code}


class TransientEngineError(EngineError):
    """Connection failure, timeout or 5xx. Retried with backoff."""

    code = "TRANSIENT_ENGINE_ERROR"
    retryable = True


class EngineRequestError(EngineError):
    """Non-transient 4xx rejection (malformed payload, conflict, auth)."""

    code = "ENGINE_REQUEST_ERROR"


class ReservedFieldRejected(EngineRequestError):
    """The engine rejected a write because a read-only field was present."""

    code = "RESERVED_FIELD_REJECTED"


class EngineNotFoundError(EngineRequestError):
    """The engine does not know the referenced workflow id."""

    code = "ENGINE_NOT_FOUND"


class WorkflowLeftInactive(EngineError):
    """An update failed after deactivation and the old version could not be reactivated."""

    code = "WORKFLOW_LEFT_INACTIVE"

    def __init__(self, error: Exception, reactivate_error: Exception):
        self.error = error
        self.reactivate_error = reactivate_error
        super().__init__(
            f"{error}; workflow left inactive (reactivation failed: {reactivate_error})",
            status_code=getattr(error, "status_code", None),
        )
