"""Compile authored canvas graphs into execution graphs.

Compilation either returns a complete ExecutionGraph or the full list of
validation errors, never both. Every check runs, so one compile reports
every problem in the graph.

Process:
1. VALIDATION - duplicates, dangling edges, journey cycles, worker types,
   edge mappings, required inputs, splitter/collector structure, entity
   movement references
2. STRIPPING - drop presentation attributes and non-execution nodes
3. INDEXING - adjacency (all edges), inbound journey edges, edge data keyed
   by "source->target", entry/terminal nodes, parallel regions
"""

from __future__ import annotations

import logging
import re
from collections import deque
from typing import TYPE_CHECKING, Any

import networkx as nx
from pydantic import BaseModel, Field

from canvasflow.core.graph_schema import (
    EXECUTION_KINDS,
    CompleteAs,
    EdgeType,
    EntityType,
    ErrorKind,
    ExecutionGraph,
    ExecutionNode,
    MovementAction,
    NodeKind,
    OutboundEdge,
    VisualGraph,
    edge_key,
)

if TYPE_CHECKING:
    from canvasflow.core.workers import WorkerRegistry

logger = logging.getLogger(__name__)

VALID_COMPLETE_AS = tuple(c.value for c in CompleteAs)
VALID_ENTITY_TYPES = tuple(t.value for t in EntityType)


class CompileError(BaseModel):
    """A single typed validation error"""

    kind: ErrorKind
    message: str
    node: str | None = None
    edge: str | None = None
    field: str | None = None


class CompileResult(BaseModel):
    """Either an execution graph or the errors that prevented one"""

    execution_graph: ExecutionGraph | None = None
    errors: list[CompileError] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.execution_graph is not None


class CompilationError(Exception):
    """Raised when a graph that failed to compile is used to start a run."""

    def __init__(self, errors: list[CompileError]):
        self.errors = errors
        summary = "; ".join(e.message for e in errors)
        super().__init__(f"Graph failed to compile: {summary}")


# ========== Cycle Detection ==========


def _journey_digraph(graph: VisualGraph, execution_ids: list[str]) -> nx.DiGraph:
    """DiGraph of journey edges between execution nodes, in authored order."""
    G = nx.DiGraph()
    G.add_nodes_from(execution_ids)
    known = set(execution_ids)
    for edge in graph.edges:
        if edge.type != EdgeType.JOURNEY:
            continue
        if edge.source in known and edge.target in known:
            G.add_edge(edge.source, edge.target)
    return G


def detect_cycles(graph: VisualGraph) -> list[CompileError]:
    """
    Detect a cycle over journey edges (self-loops included).

    System edges never create dependencies and are ignored. Traversal order
    follows authored node order, so the verdict and the reported path are
    the same on every call.
    """
    execution_ids = _execution_ids(graph)
    G = _journey_digraph(graph, execution_ids)
    try:
        cycle = nx.find_cycle(G, source=execution_ids or None)
    except nx.NetworkXNoCycle:
        return []

    path = [u for u, _ in cycle] + [cycle[-1][1]]
    cycle_path = " -> ".join(path)
    return [
        CompileError(
            kind=ErrorKind.CYCLE,
            node=path[0],
            message=(
                f"Graph contains a cycle: {cycle_path}. "
                f"This would cause infinite loops during execution."
            ),
        )
    ]


# ========== Structural Checks ==========


def _execution_ids(graph: VisualGraph) -> list[str]:
    """Execution node ids in authored order, first occurrence wins."""
    seen: dict[str, None] = {}
    for node in graph.nodes:
        if node.type in EXECUTION_KINDS and node.id not in seen:
            seen[node.id] = None
    return list(seen)


def _check_duplicates_and_edges(graph: VisualGraph) -> list[CompileError]:
    errors: list[CompileError] = []

    seen_node_ids: set[str] = set()
    for node in graph.nodes:
        if node.id in seen_node_ids:
            errors.append(
                CompileError(
                    kind=ErrorKind.DUPLICATE_NODE,
                    node=node.id,
                    message=f"Duplicate node ID: '{node.id}'",
                )
            )
        seen_node_ids.add(node.id)

    # Journey and system edges are separate channels between the same pair
    seen_pairs: set[tuple[str, str, EdgeType]] = set()
    for edge in graph.edges:
        if edge.source not in seen_node_ids:
            errors.append(
                CompileError(
                    kind=ErrorKind.INVALID_EDGE,
                    edge=edge.id,
                    message=f"Edge {edge.id}: source '{edge.source}' not found",
                )
            )
        if edge.target not in seen_node_ids:
            errors.append(
                CompileError(
                    kind=ErrorKind.INVALID_EDGE,
                    edge=edge.id,
                    message=f"Edge {edge.id}: target '{edge.target}' not found",
                )
            )
        pair = (edge.source, edge.target, edge.type)
        if pair in seen_pairs:
            errors.append(
                CompileError(
                    kind=ErrorKind.INVALID_EDGE,
                    edge=edge.id,
                    message=f"Duplicate {edge.type.value} edge from '{edge.source}' to '{edge.target}'",
                )
            )
        seen_pairs.add(pair)

    return errors


def _check_worker_types(
    graph: VisualGraph, worker_registry: WorkerRegistry | None
) -> list[CompileError]:
    if worker_registry is None:
        return []
    errors: list[CompileError] = []
    for node in graph.nodes:
        if node.type != NodeKind.WORKER or not node.worker_type:
            continue
        if not worker_registry.has_worker(node.worker_type):
            available = ", ".join(worker_registry.available_types()) or "(none)"
            errors.append(
                CompileError(
                    kind=ErrorKind.INVALID_WORKER,
                    node=node.id,
                    message=(
                        f'Unknown worker type: "{node.worker_type}" on node "{node.id}". '
                        f"Valid types: {available}"
                    ),
                )
            )
    return errors


def _check_edge_mappings(graph: VisualGraph) -> list[CompileError]:
    errors: list[CompileError] = []
    for edge in graph.edges:
        for target_input, source_path in (edge.mapping or {}).items():
            if not isinstance(source_path, str) or not source_path.strip():
                errors.append(
                    CompileError(
                        kind=ErrorKind.INVALID_MAPPING,
                        edge=edge.id,
                        field=target_input,
                        message=(
                            f'Edge "{edge.id}" has invalid source path for input '
                            f'"{target_input}": must be a non-empty string'
                        ),
                    )
                )
    return errors


def _check_required_inputs(graph: VisualGraph) -> list[CompileError]:
    """Required inputs need an explicit edge mapping or a default."""
    mapped: dict[str, set[str]] = {}
    for edge in graph.edges:
        if edge.mapping and edge.type == EdgeType.JOURNEY:
            mapped.setdefault(edge.target, set()).update(edge.mapping)

    errors: list[CompileError] = []
    for node in graph.nodes:
        for input_name, spec in node.inputs.items():
            if not spec.required or spec.has_default:
                continue
            if input_name in mapped.get(node.id, set()):
                continue
            errors.append(
                CompileError(
                    kind=ErrorKind.MISSING_INPUT,
                    node=node.id,
                    field=input_name,
                    message=(
                        f'Required input "{input_name}" on node "{node.id}" has no explicit '
                        f"mapping or default value"
                    ),
                )
            )
    return errors


def _check_movement_action(
    node_id: str, action_name: str, action: MovementAction, node_ids: set[str]
) -> list[CompileError]:
    errors: list[CompileError] = []

    def error(field: str, message: str) -> None:
        errors.append(
            CompileError(
                kind=ErrorKind.INVALID_ENTITY_MOVEMENT,
                node=node_id,
                field=f"{action_name}.{field}",
                message=message,
            )
        )

    prefix = f'Worker node "{node_id}" entity_movement.{action_name}'

    if not action.target_section_id:
        error("target_section_id", f'{prefix} missing required "target_section_id"')
    elif action.target_section_id not in node_ids:
        error(
            "target_section_id",
            f"{prefix}.target_section_id references non-existent node: "
            f'"{action.target_section_id}"',
        )

    if not action.complete_as:
        error("complete_as", f'{prefix} missing required "complete_as"')
    elif action.complete_as not in VALID_COMPLETE_AS:
        error(
            "complete_as",
            f'{prefix}.complete_as has invalid value: "{action.complete_as}" '
            f"(must be one of: {', '.join(VALID_COMPLETE_AS)})",
        )

    if action.set_entity_type is not None and action.set_entity_type not in VALID_ENTITY_TYPES:
        error(
            "set_entity_type",
            f'{prefix}.set_entity_type has invalid value: "{action.set_entity_type}" '
            f"(must be one of: {', '.join(VALID_ENTITY_TYPES)})",
        )

    return errors


def _check_entity_movement(graph: VisualGraph) -> list[CompileError]:
    """Movement rules on worker nodes must reference real nodes and closed values."""
    node_ids = {node.id for node in graph.nodes}
    errors: list[CompileError] = []
    for node in graph.nodes:
        if node.type != NodeKind.WORKER or node.entity_movement is None:
            continue
        movement = node.entity_movement
        if movement.on_success is not None:
            errors.extend(_check_movement_action(node.id, "on_success", movement.on_success, node_ids))
        if movement.on_failure is not None:
            errors.extend(_check_movement_action(node.id, "on_failure", movement.on_failure, node_ids))
    return errors


# ========== Parallel Regions ==========


def _journey_adjacency(graph: VisualGraph, execution_ids: list[str]) -> dict[str, list[str]]:
    known = set(execution_ids)
    adj: dict[str, list[str]] = {node_id: [] for node_id in execution_ids}
    for edge in graph.edges:
        if edge.type == EdgeType.JOURNEY and edge.source in known and edge.target in known:
            adj[edge.source].append(edge.target)
    return adj


def _find_parallel_region(
    splitter_id: str, journey_adj: dict[str, list[str]], kinds: dict[str, NodeKind]
) -> list[str]:
    """
    Nodes instantiated once per path of splitter_id.

    BFS over journey edges that stops at collectors. Use deque for O(1)
    popleft.
    """
    region: list[str] = []
    visited: set[str] = {splitter_id}
    queue: deque[str] = deque(journey_adj.get(splitter_id, []))
    while queue:
        node_id = queue.popleft()
        if node_id in visited:
            continue
        visited.add(node_id)
        if kinds[node_id] == NodeKind.COLLECTOR:
            continue
        region.append(node_id)
        for neighbor in journey_adj.get(node_id, []):
            if neighbor not in visited:
                queue.append(neighbor)
    return region


def _build_parallel_regions(
    graph: VisualGraph, execution_ids: list[str]
) -> tuple[dict[str, list[str]], list[CompileError]]:
    errors: list[CompileError] = []
    kinds = {node.id: node.type for node in graph.nodes}
    journey_adj = _journey_adjacency(graph, execution_ids)
    inbound_counts: dict[str, int] = {node_id: 0 for node_id in execution_ids}
    for targets in journey_adj.values():
        for target in targets:
            inbound_counts[target] += 1

    regions: dict[str, list[str]] = {}
    owners: dict[str, str] = {}
    for node_id in execution_ids:
        kind = kinds[node_id]
        if kind == NodeKind.COLLECTOR and inbound_counts[node_id] == 0:
            errors.append(
                CompileError(
                    kind=ErrorKind.SPLITTER_COLLECTOR_MISMATCH,
                    node=node_id,
                    message=(
                        f'Collector node "{node_id}" has no upstream connections. '
                        f"Collectors must have at least one upstream node."
                    ),
                )
            )
        if kind != NodeKind.SPLITTER:
            continue
        if not journey_adj[node_id]:
            errors.append(
                CompileError(
                    kind=ErrorKind.SPLITTER_COLLECTOR_MISMATCH,
                    node=node_id,
                    message=(
                        f'Splitter node "{node_id}" has no downstream connections. '
                        f"Splitters must connect to at least one node."
                    ),
                )
            )

        region = _find_parallel_region(node_id, journey_adj, kinds)
        regions[node_id] = region
        for member in region:
            if kinds[member] == NodeKind.SPLITTER:
                errors.append(
                    CompileError(
                        kind=ErrorKind.INVALID_NODE_CONFIG,
                        node=member,
                        message=(
                            f'Splitter node "{member}" is nested inside the parallel region of '
                            f'"{node_id}". Close the region with a Collector first.'
                        ),
                    )
                )
            if member in owners:
                errors.append(
                    CompileError(
                        kind=ErrorKind.INVALID_NODE_CONFIG,
                        node=member,
                        message=(
                            f'Node "{member}" belongs to the parallel regions of both '
                            f'"{owners[member]}" and "{node_id}"'
                        ),
                    )
                )
            owners.setdefault(member, node_id)

    # Augmented ids must not shadow authored ids
    all_ids = [node.id for node in graph.nodes]
    for splitter_id, region in regions.items():
        for template_id in [splitter_id, *region]:
            pattern = re.compile(rf"^{re.escape(template_id)}_\d+$")
            for other_id in all_ids:
                if pattern.match(other_id):
                    errors.append(
                        CompileError(
                            kind=ErrorKind.INVALID_NODE_CONFIG,
                            node=other_id,
                            message=(
                                f'Node ID "{other_id}" collides with a parallel instance of '
                                f'"{template_id}"'
                            ),
                        )
                    )

    return regions, errors


def _check_splitter_config(graph: VisualGraph) -> list[CompileError]:
    errors: list[CompileError] = []
    for node in graph.nodes:
        if node.type != NodeKind.SPLITTER:
            continue
        array_path = node.config.get("array_path")
        if not isinstance(array_path, str) or not array_path.strip():
            errors.append(
                CompileError(
                    kind=ErrorKind.INVALID_NODE_CONFIG,
                    node=node.id,
                    field="array_path",
                    message=f'Splitter node "{node.id}" missing "array_path" in configuration',
                )
            )
    return errors


# ========== Compilation ==========


def validate_graph(
    graph: VisualGraph, worker_registry: WorkerRegistry | None = None
) -> list[CompileError]:
    """Run every validation check and return all errors found."""
    errors, _ = _validate(graph, worker_registry)
    return errors


def _validate(
    graph: VisualGraph, worker_registry: WorkerRegistry | None
) -> tuple[list[CompileError], dict[str, list[str]]]:
    errors: list[CompileError] = []
    errors.extend(_check_duplicates_and_edges(graph))
    errors.extend(detect_cycles(graph))
    errors.extend(_check_worker_types(graph, worker_registry))
    errors.extend(_check_edge_mappings(graph))
    errors.extend(_check_required_inputs(graph))
    errors.extend(_check_splitter_config(graph))
    regions, region_errors = _build_parallel_regions(graph, _execution_ids(graph))
    errors.extend(region_errors)
    errors.extend(_check_entity_movement(graph))
    return errors, regions


def _strip_ui_properties(node: Any) -> ExecutionNode:
    """ExecutionNode.id must match the authored id exactly."""
    return ExecutionNode(
        id=node.id,
        type=node.type,
        worker_type=node.worker_type,
        config=dict(node.config),
        inputs=dict(node.inputs),
        entity_movement=node.entity_movement,
    )


def compile_graph(
    graph: VisualGraph, worker_registry: WorkerRegistry | None = None
) -> CompileResult:
    """
    Compile an authored graph into an ExecutionGraph.

    Args:
        graph: The authored graph
        worker_registry: Registry used to validate worker_type references.
            When omitted, worker types are not checked.

    Returns:
        CompileResult with either execution_graph or errors set
    """
    errors, regions = _validate(graph, worker_registry)
    if errors:
        logger.info(f"Graph '{graph.id}' failed to compile with {len(errors)} error(s)")
        return CompileResult(errors=errors)

    nodes: dict[str, ExecutionNode] = {}
    for node in graph.nodes:
        if node.type in EXECUTION_KINDS:
            nodes[node.id] = _strip_ui_properties(node)

    adjacency: dict[str, list[OutboundEdge]] = {node_id: [] for node_id in nodes}
    inbound_edges: dict[str, list[str]] = {node_id: [] for node_id in nodes}
    edge_data: dict[str, dict[str, Any]] = {}

    for edge in graph.edges:
        # Edges touching sections/groups carry no execution meaning
        if edge.source not in nodes or edge.target not in nodes:
            continue
        adjacency[edge.source].append(OutboundEdge(target=edge.target, type=edge.type))
        if edge.type == EdgeType.JOURNEY:
            inbound_edges[edge.target].append(edge.source)
        # Only journey edges feed inputs
        if edge.mapping and edge.type == EdgeType.JOURNEY:
            edge_data[edge_key(edge.source, edge.target)] = dict(edge.mapping)

    entry_nodes = [node_id for node_id in nodes if not inbound_edges[node_id]]
    terminal_nodes = [node_id for node_id in nodes if not adjacency[node_id]]

    execution_graph = ExecutionGraph(
        nodes=nodes,
        adjacency=adjacency,
        inbound_edges=inbound_edges,
        edge_data=edge_data,
        entry_nodes=entry_nodes,
        terminal_nodes=terminal_nodes,
        parallel_regions=regions,
    )
    logger.debug(
        f"Compiled graph '{graph.id}': {len(nodes)} nodes, entry={entry_nodes}, "
        f"terminal={terminal_nodes}"
    )
    return CompileResult(execution_graph=execution_graph)
