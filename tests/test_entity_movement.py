"""Tests for entity movement after worker results."""

import pytest

from canvasflow.core.entity_movement import (
    DatabaseEntityMover,
    EntityMover,
    apply_entity_movement,
    select_action,
)
from canvasflow.core.graph_schema import (
    EntityMovement,
    ExecutionNode,
    MovementAction,
    NodeKind,
    NodeStatus,
    Run,
)


@pytest.fixture
def worker_node():
    return ExecutionNode(
        id="qualify",
        type=NodeKind.WORKER,
        entity_movement=EntityMovement(
            on_success=MovementAction(
                target_section_id="qualified", complete_as="success", set_entity_type="customer"
            ),
            on_failure=MovementAction(target_section_id="rejected", complete_as="failure"),
        ),
    )


@pytest.fixture
def run():
    return Run(id="run-1", graph_id="g", entity_id="e1")


class TestSelectAction:
    def test_picks_action_by_status(self, worker_node):
        assert select_action(worker_node, NodeStatus.COMPLETED).target_section_id == "qualified"
        assert select_action(worker_node, NodeStatus.FAILED).target_section_id == "rejected"

    def test_non_terminal_status_has_no_action(self, worker_node):
        assert select_action(worker_node, NodeStatus.RUNNING) is None

    def test_node_without_movement(self):
        node = ExecutionNode(id="n", type=NodeKind.WORKER)
        assert select_action(node, NodeStatus.COMPLETED) is None


class TestApplyEntityMovement:
    """Tests for apply_entity_movement."""

    def test_moves_with_run_metadata(self, mocker, worker_node, run):
        mover = mocker.Mock(spec=EntityMover)

        assert apply_entity_movement(mover, run, worker_node, NodeStatus.COMPLETED) is True
        mover.move.assert_called_once_with(
            "e1",
            "qualified",
            "success",
            {"run_id": "run-1", "node_id": "qualify", "status": "completed"},
            "customer",
        )

    def test_run_without_entity_is_skipped(self, mocker, worker_node):
        mover = mocker.Mock(spec=EntityMover)
        run = Run(id="run-1", graph_id="g")

        assert apply_entity_movement(mover, run, worker_node, NodeStatus.COMPLETED) is False
        mover.move.assert_not_called()

    def test_missing_action_is_skipped(self, mocker, run):
        mover = mocker.Mock(spec=EntityMover)
        node = ExecutionNode(
            id="n",
            type=NodeKind.WORKER,
            entity_movement=EntityMovement(
                on_success=MovementAction(target_section_id="s", complete_as="success")
            ),
        )

        assert apply_entity_movement(mover, run, node, NodeStatus.FAILED) is False
        mover.move.assert_not_called()

    def test_mover_errors_are_logged_not_raised(self, mocker, worker_node, run, caplog):
        mover = mocker.Mock(spec=EntityMover)
        mover.move.side_effect = RuntimeError("crm offline")

        assert apply_entity_movement(mover, run, worker_node, NodeStatus.FAILED) is False
        assert "crm offline" in caplog.text


class TestDatabaseEntityMover:
    def test_moves_entity_in_database(self, test_db):
        test_db.create_entity(name="Ada", entity_id="e1")
        mover = DatabaseEntityMover(test_db)

        mover.move("e1", "qualified", "success", {"run_id": "r1"}, "customer")

        entity = test_db.get_entity("e1")
        assert entity.current_node_id == "qualified"
        assert entity.entity_type.value == "customer"
        assert test_db.get_journey_events("e1")[0].metadata["run_id"] == "r1"
