"""Moves a run's entity after a worker node finishes.

Movement is a side effect of the result, never part of it: a failure here
is logged and the node state is left as the callback reported it.
"""

import logging
from typing import Any

from canvasflow.core.graph_schema import ExecutionNode, MovementAction, NodeStatus, Run

logger = logging.getLogger(__name__)


class EntityMover:
    """Base class for entity movement backends."""

    def move(
        self,
        entity_id: str,
        target_section_id: str,
        complete_as: str,
        metadata: dict[str, Any],
        set_entity_type: str | None = None,
    ) -> None:
        raise NotImplementedError


class DatabaseEntityMover(EntityMover):
    """Moves entities in the canvasflow Database."""

    def __init__(self, db):
        self.db = db

    def move(
        self,
        entity_id: str,
        target_section_id: str,
        complete_as: str,
        metadata: dict[str, Any],
        set_entity_type: str | None = None,
    ) -> None:
        self.db.move_entity(
            entity_id,
            target_section_id,
            complete_as=complete_as,
            metadata=metadata,
            set_entity_type=set_entity_type,
        )


def select_action(node: ExecutionNode, status: NodeStatus) -> MovementAction | None:
    movement = node.entity_movement
    if movement is None:
        return None
    if status == NodeStatus.COMPLETED:
        return movement.on_success
    if status == NodeStatus.FAILED:
        return movement.on_failure
    return None


def apply_entity_movement(
    mover: EntityMover | None, run: Run, node: ExecutionNode, status: NodeStatus
) -> bool:
    """
    Apply the node's movement action for status, if any.

    Returns True when the entity was moved.
    """
    if mover is None or run.entity_id is None:
        return False
    action = select_action(node, status)
    if action is None or not action.target_section_id or not action.complete_as:
        return False

    metadata = {"run_id": run.id, "node_id": node.id, "status": status.value}
    try:
        mover.move(
            run.entity_id,
            action.target_section_id,
            action.complete_as,
            metadata,
            action.set_entity_type,
        )
    except Exception as e:
        logger.warning(
            f"Entity movement failed for entity '{run.entity_id}' after node '{node.id}': {e}"
        )
        return False

    logger.info(
        f"Moved entity '{run.entity_id}' to '{action.target_section_id}' "
        f"({action.complete_as}) after node '{node.id}'"
    )
    return True
