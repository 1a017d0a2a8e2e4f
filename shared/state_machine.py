from enum import Enum
from typing import Optional, Callable
from dataclasses import dataclass


class ViewState(str, Enum):
    ABSENT = "absent"
    PROVISIONING = "provisioning"
    READY = "ready"
    DELETING = "deleting"


class TransitionError(Exception):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


@dataclass
class Transition:
    from_state: ViewState
    to_state: ViewState
    action: str
    guard: Optional[Callable] = None


def has_ready_endpoint_guard(context: dict) -> bool:
    endpoints = context.get("endpoints", [])
    return any(getattr(e, "ready", False) for e in endpoints)


class ViewStateMachine:
    TRANSITIONS = [
        Transition(ViewState.ABSENT, ViewState.PROVISIONING, "provision"),
        Transition(ViewState.PROVISIONING, ViewState.PROVISIONING, "provision"),
        Transition(ViewState.PROVISIONING, ViewState.READY, "ready", guard=has_ready_endpoint_guard),
        Transition(ViewState.READY, ViewState.ABSENT, "expire"),
        Transition(ViewState.ABSENT, ViewState.DELETING, "delete"),
        Transition(ViewState.PROVISIONING, ViewState.DELETING, "delete"),
        Transition(ViewState.READY, ViewState.DELETING, "delete"),
        Transition(ViewState.DELETING, ViewState.DELETING, "delete"),
        Transition(ViewState.DELETING, ViewState.ABSENT, "remove"),
    ]

    def __init__(self, initial_state: ViewState = ViewState.ABSENT):
        self._state = initial_state

    @property
    def state(self) -> ViewState:
        return self._state

    def transition(self, action: str, guard_context: dict = None) -> ViewState:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                if t.guard and guard_context:
                    if not t.guard(guard_context):
                        raise TransitionError(
                            self._state.value,
                            t.to_state.value,
                            f"Guard condition failed for action '{action}'"
                        )

                self._state = t.to_state
                return self._state

        raise TransitionError(
            self._state.value,
            "unknown",
            f"No valid transition for action '{action}' from state '{self._state.value}'"
        )
