"""Node status state machine.

pending -> running -> completed | failed | waiting_for_user
waiting_for_user -> running | completed   (resumed by the completion callback)
failed -> running | pending               (external retry, never automatic)

completed is terminal. Writing a node's current status again is a no-op.
"""

from stitch.core.models import NodeRunStatus, NodeState, RunStatus

VALID_TRANSITIONS: dict[NodeRunStatus, frozenset[NodeRunStatus]] = {
    NodeRunStatus.PENDING: frozenset({NodeRunStatus.RUNNING}),
    NodeRunStatus.RUNNING: frozenset(
        {NodeRunStatus.COMPLETED, NodeRunStatus.FAILED, NodeRunStatus.WAITING_FOR_USER}
    ),
    NodeRunStatus.WAITING_FOR_USER: frozenset({NodeRunStatus.RUNNING, NodeRunStatus.COMPLETED}),
    NodeRunStatus.FAILED: frozenset({NodeRunStatus.RUNNING, NodeRunStatus.PENDING}),
    NodeRunStatus.COMPLETED: frozenset(),
}


class StatusTransitionError(Exception):
    """Requested node status change is not allowed."""

    def __init__(self, from_status: NodeRunStatus, to_status: NodeRunStatus):
        self.from_status = from_status
        self.to_status = to_status
        allowed = ", ".join(sorted(s.value for s in VALID_TRANSITIONS[from_status])) or "none"
        super().__init__(
            f"Invalid status transition {from_status.value} -> {to_status.value} "
            f"(allowed: {allowed})"
        )


def is_valid_transition(from_status: NodeRunStatus, to_status: NodeRunStatus) -> bool:
    return from_status == to_status or to_status in VALID_TRANSITIONS[from_status]


def validate_transition(from_status: NodeRunStatus, to_status: NodeRunStatus) -> None:
    if not is_valid_transition(from_status, to_status):
        raise StatusTransitionError(from_status, to_status)


def is_terminal(status: NodeRunStatus) -> bool:
    """Terminal for the current run, failed can only leave via an external retry."""
    return status in (NodeRunStatus.COMPLETED, NodeRunStatus.FAILED)


def derive_run_status(node_states: dict[str, NodeState]) -> RunStatus:
    """Roll node states up into a run status.

    Pending nodes that were never reached do not hold a run open.
    """
    statuses = {state.status for state in node_states.values()}
    if NodeRunStatus.RUNNING in statuses:
        return RunStatus.RUNNING
    if NodeRunStatus.WAITING_FOR_USER in statuses:
        return RunStatus.WAITING
    if NodeRunStatus.FAILED in statuses:
        return RunStatus.FAILED
    return RunStatus.COMPLETED
