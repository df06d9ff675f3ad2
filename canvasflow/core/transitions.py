"""Node status state machine.

Every write to a node state passes through validate_transition before it is
persisted. Same-to-same writes are always valid so a re-delivered callback
is a no-op rather than an error.
"""

from canvasflow.core.graph_schema import ErrorKind, NodeStatus

VALID_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset(
        {NodeStatus.PENDING, NodeStatus.RUNNING, NodeStatus.WAITING_FOR_USER}
    ),
    NodeStatus.RUNNING: frozenset(
        {
            NodeStatus.RUNNING,
            NodeStatus.COMPLETED,
            NodeStatus.FAILED,
            NodeStatus.WAITING_FOR_USER,
        }
    ),
    NodeStatus.WAITING_FOR_USER: frozenset({NodeStatus.WAITING_FOR_USER, NodeStatus.COMPLETED}),
    NodeStatus.COMPLETED: frozenset({NodeStatus.COMPLETED}),
    # failed -> pending is the manual retry path
    NodeStatus.FAILED: frozenset({NodeStatus.FAILED, NodeStatus.PENDING}),
}


class InvalidTransitionError(Exception):
    """Raised when a node state write would break the transition table."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, from_status: NodeStatus | str, to_status: NodeStatus | str, node_id: str | None = None):
        self.from_status = _coerce(from_status)
        self.to_status = _coerce(to_status)
        self.node_id = node_id
        where = f" for node '{node_id}'" if node_id is not None else ""
        super().__init__(
            f"Invalid status transition from '{_label(self.from_status)}' "
            f"to '{_label(self.to_status)}'{where}"
        )


def _coerce(status: NodeStatus | str) -> NodeStatus | str:
    """NodeStatus when the value is known, otherwise the raw value."""
    try:
        return NodeStatus(status)
    except ValueError:
        return status


def _label(status: NodeStatus | str) -> str:
    return status.value if isinstance(status, NodeStatus) else str(status)


def is_valid_transition(from_status: NodeStatus | str, to_status: NodeStatus | str) -> bool:
    """Check a transition against the table. Unknown statuses are invalid."""
    try:
        source = NodeStatus(from_status)
        target = NodeStatus(to_status)
    except ValueError:
        return False
    return target in VALID_TRANSITIONS[source]


def validate_transition(
    from_status: NodeStatus | str, to_status: NodeStatus | str, node_id: str | None = None
) -> None:
    """Raise InvalidTransitionError unless the transition is allowed."""
    if not is_valid_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status, node_id)
