from enum import Enum
from typing import List
from dataclasses import dataclass


class ServerStatus(str, Enum):
    TO_SETUP = "TO_SETUP"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"
    DELETED = "DELETED"


class TransitionError(Exception):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


@dataclass
class Transition:
    from_state: ServerStatus
    to_state: ServerStatus
    action: str


def _transitions(sources, to_state: ServerStatus, action: str) -> List[Transition]:
    return [Transition(s, to_state, action) for s in sources]


class ServerStateMachine:
    TRANSITIONS = (
        _transitions(
            [ServerStatus.TO_SETUP, ServerStatus.STOPPED, ServerStatus.FAILED],
            ServerStatus.STARTING, "begin_start"
        )
        + [
            Transition(ServerStatus.STARTING, ServerStatus.RUNNING, "mark_ready"),
            Transition(ServerStatus.STARTING, ServerStatus.FAILED, "mark_failed"),
        ]
        + _transitions(
            [ServerStatus.RUNNING, ServerStatus.STARTING, ServerStatus.FAILED],
            ServerStatus.STOPPED, "stop"
        )
        + _transitions(
            [s for s in ServerStatus if s != ServerStatus.DELETED],
            ServerStatus.DELETED, "delete"
        )
        # Startup reconciliation: recorded as alive, container is not running
        + _transitions(
            [ServerStatus.TO_SETUP, ServerStatus.STARTING,
             ServerStatus.RUNNING, ServerStatus.FAILED],
            ServerStatus.STOPPED, "reconcile"
        )
    )

    # User-facing actions on the request path
    ALLOWED_ACTIONS = {
        ServerStatus.TO_SETUP: ["start", "reconfigure", "delete"],
        ServerStatus.STARTING: ["stop", "delete"],
        ServerStatus.RUNNING: ["stop", "restart", "exec", "delete"],
        ServerStatus.STOPPED: ["start", "restart", "reconfigure", "delete"],
        ServerStatus.FAILED: ["start", "stop", "restart", "reconfigure", "delete"],
        ServerStatus.DELETED: [],
    }

    def __init__(self, initial_state: ServerStatus = ServerStatus.TO_SETUP):
        self._state = initial_state
        self._history: List[tuple] = []

    @property
    def state(self) -> ServerStatus:
        return self._state

    @property
    def allowed_actions(self) -> List[str]:
        return self.ALLOWED_ACTIONS.get(self._state, [])

    @property
    def is_terminal(self) -> bool:
        return self._state == ServerStatus.DELETED

    def can_transition(self, action: str) -> bool:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                return True
        return False

    def can_perform(self, action: str) -> bool:
        return action in self.allowed_actions

    def transition(self, action: str) -> ServerStatus:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                old_state = self._state
                self._state = t.to_state
                self._history.append((old_state, action, self._state))
                return self._state

        raise TransitionError(
            self._state.value,
            "unknown",
            f"No valid transition for action '{action}' from state '{self._state.value}'"
        )

    def get_history(self) -> List[tuple]:
        return self._history.copy()

    @classmethod
    def from_state_string(cls, state_str: str) -> "ServerStateMachine":
        try:
            state = ServerStatus(state_str)
        except ValueError:
            state = ServerStatus.TO_SETUP
        return cls(initial_state=state)
