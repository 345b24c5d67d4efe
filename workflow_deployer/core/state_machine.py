"""
Per-definition deployment state machine.

Implements explicit state transitions with validation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class DefinitionState(str, Enum):
    """
    Deployment state of one local definition.

    State transitions:
    - PENDING -> CREATED -> ACTIVATED
    - PENDING -> CREATED -> ACTIVATION_FAILED
    - PENDING -> CREATE_FAILED | UPDATE_FAILED
    - PENDING -> SKIPPED
    """

    PENDING = "PENDING"                      # Not attempted yet (or cancelled before attempt)
    CREATED = "CREATED"                      # Stored inactive (written, or unchanged but offline)
    CREATE_FAILED = "CREATE_FAILED"
    UPDATE_FAILED = "UPDATE_FAILED"
    ACTIVATED = "ACTIVATED"
    ACTIVATION_FAILED = "ACTIVATION_FAILED"
    SKIPPED = "SKIPPED"                      # Unchanged and needs no call


class StateTransition(BaseModel):
    """Represents a state transition event."""

    from_state: str
    to_state: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: Optional[str] = None


class InvalidStateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str, message: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition from {from_state} to {to_state}"
            + (f": {message}" if message else "")
        )


class DefinitionStateMachine:
    """State machine for one definition's deployment lifecycle."""

    VALID_TRANSITIONS: dict[DefinitionState, set[DefinitionState]] = {
        DefinitionState.PENDING: {
            DefinitionState.CREATED,
            DefinitionState.CREATE_FAILED,
            DefinitionState.UPDATE_FAILED,
            DefinitionState.SKIPPED,
        },
        DefinitionState.CREATED: {
            DefinitionState.ACTIVATED,
            DefinitionState.ACTIVATION_FAILED,
        },
        DefinitionState.CREATE_FAILED: set(),
        DefinitionState.UPDATE_FAILED: set(),
        DefinitionState.ACTIVATED: set(),
        DefinitionState.ACTIVATION_FAILED: set(),
        DefinitionState.SKIPPED: set(),
    }

    TERMINAL_STATES: set[DefinitionState] = {
        DefinitionState.ACTIVATED,
        DefinitionState.ACTIVATION_FAILED,
        DefinitionState.CREATE_FAILED,
        DefinitionState.UPDATE_FAILED,
        DefinitionState.SKIPPED,
    }

    FAILURE_STATES: set[DefinitionState] = {
        DefinitionState.CREATE_FAILED,
        DefinitionState.UPDATE_FAILED,
        DefinitionState.ACTIVATION_FAILED,
    }

    def __init__(self, initial_state: DefinitionState = DefinitionState.PENDING):
        self._state = initial_state
        self._history: list[StateTransition] = []

    @property
    def state(self) -> DefinitionState:
        """Get current state."""
        return self._state

    @property
    def history(self) -> list[StateTransition]:
        """Get state transition history."""
        return self._history.copy()

    @property
    def is_terminal(self) -> bool:
        return self._state in self.TERMINAL_STATES

    @property
    def is_failure(self) -> bool:
        return self._state in self.FAILURE_STATES

    @property
    def is_materialized(self) -> bool:
        """Stored on the engine by this run (whether or not activated since)."""
        return self._state in (
            DefinitionState.CREATED,
            DefinitionState.ACTIVATED,
            DefinitionState.ACTIVATION_FAILED,
        )

    def can_transition_to(self, to_state: DefinitionState) -> bool:
        """Check if transition to given state is valid."""
        return to_state in self.VALID_TRANSITIONS.get(self._state, set())

    def transition(self, to_state: DefinitionState, reason: Optional[str] = None) -> StateTransition:
        """
        Transition to a new state.

        Raises:
            InvalidStateTransitionError: If transition is not valid
        """
        if not self.can_transition_to(to_state):
            raise InvalidStateTransitionError(
                self._state.value,
                to_state.value,
                f"Valid transitions: {sorted(s.value for s in self.VALID_TRANSITIONS[self._state])}",
            )

        transition = StateTransition(
            from_state=self._state.value,
            to_state=to_state.value,
            reason=reason,
        )
        self._history.append(transition)
        self._state = to_state
        return transition
