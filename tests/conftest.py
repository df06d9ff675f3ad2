# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the canvasflow test suite.

This module provides:
- A temporary sqlite Database per test
- A graph factory for terse authored graphs
- A recording work unit standing in for external workers
- An orchestrator wired to both

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from canvasflow.core.config import EngineConfig
from canvasflow.core.graph_engine import GraphOrchestrator
from canvasflow.core.graph_schema import Edge, Node, VisualGraph
from canvasflow.core.state import Database
from canvasflow.core.workers import FireRequest, FiringError, WorkerRegistry, WorkUnit


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a test database in a temporary directory."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(
        base_url="http://engine.test",
        db_path=str(tmp_path / "test.db"),
        worker_timeout=5,
    )


# =============================================================================
# Graph Fixtures
# =============================================================================


def build_graph(
    nodes: list[dict[str, Any] | tuple[str, str]],
    edges: list[dict[str, Any] | tuple[str, ...]] = (),
    graph_id: str = "test-graph",
) -> VisualGraph:
    """Build a VisualGraph from (id, kind) tuples and (source, target[, type]) tuples.

    Dicts are passed through unchanged for nodes or edges that need config,
    mappings or movement rules.
    """
    built_nodes = []
    for node in nodes:
        if isinstance(node, tuple):
            node = {"id": node[0], "type": node[1]}
        built_nodes.append(Node(**node))

    built_edges = []
    for edge in edges:
        if isinstance(edge, tuple):
            edge = {"source": edge[0], "target": edge[1], "type": edge[2] if len(edge) > 2 else "journey"}
        built_edges.append(Edge(**edge))

    return VisualGraph(id=graph_id, name="Test graph", nodes=built_nodes, edges=built_edges)


@pytest.fixture
def graph_factory():
    """Factory for authored graphs, see build_graph."""
    return build_graph


# =============================================================================
# Worker Fixtures
# =============================================================================


class RecordingWorker(WorkUnit):
    """Work unit that records every fire request instead of calling out.

    Node ids listed in fail_nodes raise FiringError when fired.
    """

    def __init__(self, fail_nodes: set[str] | None = None):
        self.requests: list[FireRequest] = []
        self.fail_nodes = fail_nodes or set()

    async def fire(self, request: FireRequest) -> None:
        self.requests.append(request)
        if request.node_id in self.fail_nodes:
            raise FiringError("Worker webhook returned 500: Internal Server Error")

    @property
    def fired(self) -> list[str]:
        return [r.node_id for r in self.requests]

    def request_for(self, node_id: str) -> FireRequest:
        for request in self.requests:
            if request.node_id == node_id:
                return request
        raise KeyError(node_id)


@pytest.fixture
def recording_worker() -> RecordingWorker:
    return RecordingWorker()


@pytest.fixture
def worker_registry(recording_worker: RecordingWorker) -> WorkerRegistry:
    """Registry whose fallback (webhook) worker is the recording worker."""
    return WorkerRegistry(fallback=recording_worker)


@pytest.fixture
def orchestrator(
    test_db: Database, worker_registry: WorkerRegistry, engine_config: EngineConfig
) -> GraphOrchestrator:
    return GraphOrchestrator(test_db, worker_registry, engine_config)
