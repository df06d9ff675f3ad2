"""Upstream dependency checks and input merging."""

from collections.abc import Callable
from typing import Any

from canvasflow.core.graph_schema import ExecutionGraph, NodeState, NodeStatus

# Maps a source node id to the key holding its state. Parallel instances use
# this to read "{source}_{index}" for sources inside the same region.
InstanceResolver = Callable[[str], str]


def _identity(node_id: str) -> str:
    return node_id


def resolve_path(value: Any, path: str) -> Any:
    """
    Resolve a dot path ("output.text", "items.0") against nested dicts/lists.

    Missing keys and type mismatches resolve to None instead of raising.
    """
    current = value
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def are_upstream_dependencies_completed(
    node_id: str,
    graph: ExecutionGraph,
    node_states: dict[str, NodeState],
    instance_of: InstanceResolver = _identity,
) -> bool:
    """
    True when every journey source of node_id has completed.

    A node with no inbound journey edges (including one fed only by system
    edges) is always ready. A source with no state counts as not completed.
    """
    for source in graph.inbound_edges.get(node_id, []):
        state = node_states.get(instance_of(source))
        if state is None or state.status != NodeStatus.COMPLETED:
            return False
    return True


def merge_upstream_outputs(
    node_id: str,
    graph: ExecutionGraph,
    node_states: dict[str, NodeState],
    instance_of: InstanceResolver = _identity,
) -> dict[str, Any]:
    """
    Build a node's input from the outputs of its completed journey sources.

    Sources are visited in authored edge order:
    - an edge mapping picks values out of the source output by dot path
    - otherwise a dict output is shallow-merged (later sources overwrite
      earlier ones on key collision)
    - any other output is stored under the source node id
    """
    merged: dict[str, Any] = {}
    for source in graph.inbound_edges.get(node_id, []):
        state = node_states.get(instance_of(source))
        if state is None or state.status != NodeStatus.COMPLETED or state.output is None:
            continue

        mapping = graph.mapping_for(source, node_id)
        if mapping:
            for target_key, source_path in mapping.items():
                merged[target_key] = resolve_path(state.output, source_path)
        elif isinstance(state.output, dict):
            merged.update(state.output)
        else:
            merged[source] = state.output
    return merged
