from enum import Enum


class WorkerState(str, Enum):
    IDLE = "idle"
    AUTHORIZING = "authorizing"
    FETCHING = "fetching"
    PROCESSING = "processing"
    VERIFYING = "verifying"
    FAILED = "failed"
    CHAIN_CHECK = "chain_check"
    CHAINED = "chained"
    DONE = "done"


VALID_TRANSITIONS = {
    WorkerState.IDLE: [WorkerState.AUTHORIZING],
    WorkerState.AUTHORIZING: [WorkerState.FETCHING, WorkerState.PROCESSING, WorkerState.DONE],
    WorkerState.FETCHING: [WorkerState.PROCESSING, WorkerState.DONE],
    WorkerState.PROCESSING: [WorkerState.VERIFYING, WorkerState.FAILED],
    WorkerState.VERIFYING: [WorkerState.CHAIN_CHECK],
    WorkerState.FAILED: [WorkerState.CHAIN_CHECK],
    WorkerState.CHAIN_CHECK: [WorkerState.CHAINED, WorkerState.DONE],
    WorkerState.CHAINED: [],
    WorkerState.DONE: [],
}

class InvalidTransitionError(Exception):
    def __init__(self, from_state: WorkerState, to_state: WorkerState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: WorkerState, to_state: WorkerState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: WorkerState, to_state: WorkerState) -> WorkerState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state
