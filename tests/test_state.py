"""Tests for sqlite persistence.

Tests cover:
- Graph storage
- Run creation and lookup
- Atomic, validated node state updates
- Guarded claims
- Entities and journey events
"""

from __future__ import annotations

import pytest
from conftest import build_graph

from canvasflow.core.compiler import compile_graph
from canvasflow.core.graph_schema import EntityType, NodeState, NodeStatus
from canvasflow.core.state import (
    Database,
    EntityNotFoundError,
    RunNotFoundError,
)
from canvasflow.core.transitions import InvalidTransitionError


@pytest.fixture
def chain():
    graph = build_graph(
        [("A", "worker"), ("B", "worker"), ("C", "worker")], [("A", "B"), ("B", "C")]
    )
    return graph, compile_graph(graph).execution_graph


# =============================================================================
# Graphs
# =============================================================================


class TestGraphStorage:
    def test_save_and_get_graph(self, test_db, chain):
        graph, execution_graph = chain
        test_db.save_graph(graph, execution_graph)

        loaded = test_db.get_graph(graph.id)
        assert loaded == graph

    def test_save_graph_overwrites(self, test_db, chain):
        graph, _ = chain
        test_db.save_graph(graph)
        test_db.save_graph(graph.model_copy(update={"name": "Renamed"}))
        assert test_db.get_graph(graph.id).name == "Renamed"

    def test_get_missing_graph(self, test_db):
        assert test_db.get_graph("missing") is None


# =============================================================================
# Runs
# =============================================================================


class TestRuns:
    """Tests for run lifecycle."""

    def test_create_run_starts_all_nodes_pending(self, test_db, chain):
        _, execution_graph = chain
        run = test_db.create_run("test-graph", execution_graph, entity_id="e1", input={"x": 1})

        assert run.graph_id == "test-graph"
        assert run.entity_id == "e1"
        assert run.input == {"x": 1}
        assert list(run.node_states) == ["A", "B", "C"]
        assert all(s.status == NodeStatus.PENDING for s in run.node_states.values())

    def test_get_run_round_trips_snapshot(self, test_db, chain):
        _, execution_graph = chain
        run = test_db.create_run("test-graph", execution_graph)

        assert test_db.get_run(run.id) == run
        assert test_db.get_execution_graph(run.id) == execution_graph

    def test_get_missing_run(self, test_db):
        assert test_db.get_run("missing") is None
        with pytest.raises(RunNotFoundError):
            test_db.get_execution_graph("missing")

    def test_list_runs_filters_by_graph(self, test_db, chain):
        _, execution_graph = chain
        first = test_db.create_run("g1", execution_graph)
        test_db.create_run("g2", execution_graph)

        assert len(test_db.list_runs()) == 2
        assert [r.id for r in test_db.list_runs("g1")] == [first.id]

    def test_delete_run(self, test_db, chain):
        _, execution_graph = chain
        run = test_db.create_run("test-graph", execution_graph)

        assert test_db.delete_run(run.id) is True
        assert test_db.get_run(run.id) is None
        assert test_db.delete_run(run.id) is False

    def test_state_survives_reopening_database(self, tmp_path, chain):
        _, execution_graph = chain
        db = Database(tmp_path / "state.db")
        run = db.create_run("test-graph", execution_graph)
        db.update_node_states(run.id, {"A": NodeState(status=NodeStatus.RUNNING)})

        reopened = Database(tmp_path / "state.db")
        assert reopened.get_run(run.id).node_states["A"].status == NodeStatus.RUNNING


# =============================================================================
# Node State Updates
# =============================================================================


class TestUpdateNodeStates:
    """Tests for the atomic multi-key update."""

    def test_valid_update_persists_output(self, test_db, chain):
        _, execution_graph = chain
        run = test_db.create_run("test-graph", execution_graph)
        test_db.update_node_states(run.id, {"A": NodeState(status=NodeStatus.RUNNING)})
        updated = test_db.update_node_states(
            run.id, {"A": NodeState(status=NodeStatus.COMPLETED, output={"text": "hi"})}
        )

        assert updated.node_states["A"].status == NodeStatus.COMPLETED
        assert updated.node_states["A"].output == {"text": "hi"}
        assert updated.updated_at >= run.updated_at

    @pytest.mark.parametrize("output", [42, 3.5, "7", True, [1, 2, 3]])
    def test_scalar_outputs_round_trip(self, test_db, chain, output):
        _, execution_graph = chain
        run = test_db.create_run("test-graph", execution_graph)
        test_db.update_node_states(run.id, {"A": NodeState(status=NodeStatus.RUNNING)})
        test_db.update_node_states(
            run.id, {"A": NodeState(status=NodeStatus.COMPLETED, output=output)}
        )

        assert test_db.get_run(run.id).node_states["A"].output == output

    def test_invalid_transition_raises(self, test_db, chain):
        _, execution_graph = chain
        run = test_db.create_run("test-graph", execution_graph)

        with pytest.raises(InvalidTransitionError):
            test_db.update_node_states(run.id, {"A": NodeState(status=NodeStatus.COMPLETED)})
        assert test_db.get_run(run.id).node_states["A"].status == NodeStatus.PENDING

    def test_update_is_all_or_nothing(self, test_db, chain):
        """One invalid entry rejects the whole batch."""
        _, execution_graph = chain
        run = test_db.create_run("test-graph", execution_graph)

        with pytest.raises(InvalidTransitionError):
            test_db.update_node_states(
                run.id,
                {
                    "A": NodeState(status=NodeStatus.RUNNING),
                    "S_0": NodeState(status=NodeStatus.COMPLETED, output="x"),
                    "B": NodeState(status=NodeStatus.FAILED),
                },
            )

        states = test_db.get_run(run.id).node_states
        assert states["A"].status == NodeStatus.PENDING
        assert "S_0" not in states

    def test_new_keys_are_inserted(self, test_db, chain):
        _, execution_graph = chain
        run = test_db.create_run("test-graph", execution_graph)
        updated = test_db.update_node_states(
            run.id,
            {
                "A_0": NodeState(status=NodeStatus.COMPLETED, output=1),
                "A_1": NodeState(status=NodeStatus.PENDING),
            },
        )
        assert updated.node_states["A_0"].output == 1
        assert list(updated.node_states)[-2:] == ["A_0", "A_1"]

    def test_unknown_run_raises(self, test_db):
        with pytest.raises(RunNotFoundError):
            test_db.update_node_states("missing", {"A": NodeState()})

    def test_same_status_rewrite_is_allowed(self, test_db, chain):
        _, execution_graph = chain
        run = test_db.create_run("test-graph", execution_graph)
        test_db.update_node_states(run.id, {"A": NodeState(status=NodeStatus.PENDING)})
        assert test_db.get_run(run.id).node_states["A"].status == NodeStatus.PENDING


class TestClaimNodeState:
    """Tests for guarded claims."""

    def test_claim_succeeds_once(self, test_db, chain):
        _, execution_graph = chain
        run = test_db.create_run("test-graph", execution_graph)
        running = NodeState(status=NodeStatus.RUNNING)

        assert test_db.claim_node_state(run.id, "A", NodeStatus.PENDING, running) is True
        assert test_db.claim_node_state(run.id, "A", NodeStatus.PENDING, running) is False

    def test_claim_unknown_node(self, test_db, chain):
        _, execution_graph = chain
        run = test_db.create_run("test-graph", execution_graph)
        assert not test_db.claim_node_state(
            run.id, "missing", NodeStatus.PENDING, NodeState(status=NodeStatus.RUNNING)
        )


# =============================================================================
# Entities
# =============================================================================


class TestEntities:
    """Tests for entities and their journey."""

    def test_create_and_get_entity(self, test_db):
        entity = test_db.create_entity(name="Ada", entity_id="e1")
        assert test_db.get_entity("e1") == entity
        assert entity.entity_type == EntityType.LEAD

    def test_move_entity_records_journey_event(self, test_db):
        test_db.create_entity(name="Ada", entity_id="e1")
        moved = test_db.move_entity(
            "e1", "won", complete_as="success", metadata={"run_id": "r1"}, set_entity_type="customer"
        )

        assert moved.current_node_id == "won"
        assert moved.entity_type == EntityType.CUSTOMER

        events = test_db.get_journey_events("e1")
        assert len(events) == 1
        assert events[0].event_type == "node_arrival"
        assert events[0].node_id == "won"
        assert events[0].metadata == {"complete_as": "success", "run_id": "r1"}

    def test_move_keeps_type_when_not_set(self, test_db):
        test_db.create_entity(entity_id="e1", entity_type=EntityType.CUSTOMER)
        moved = test_db.move_entity("e1", "section-a")
        assert moved.entity_type == EntityType.CUSTOMER

    def test_move_missing_entity(self, test_db):
        with pytest.raises(EntityNotFoundError):
            test_db.move_entity("missing", "section-a")
