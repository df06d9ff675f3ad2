"""Parallel path protocol for splitter fan-out and collector fan-in.

A splitter with N array elements produces augmented entries named
"{node_id}_{index}" (zero-based, array order). The splitter's own augmented
entries are created completed with one element each; every template node in
its parallel region gets a pending entry per index. Collectors find those
entries again by pattern and merge them back in suffix order.
"""

import logging
import re
from typing import Any

from canvasflow.core.dependencies import resolve_path
from canvasflow.core.graph_schema import NodeState, NodeStatus

logger = logging.getLogger(__name__)

_AUGMENTED_ID = re.compile(r"^(?P<base>.+)_(?P<index>\d+)$")


def augment_id(node_id: str, index: int) -> str:
    return f"{node_id}_{index}"


def parse_augmented_id(node_id: str) -> tuple[str, int] | None:
    """Split "{base}_{index}" into (base, index), or None if there is no suffix."""
    match = _AUGMENTED_ID.match(node_id)
    if not match:
        return None
    return match.group("base"), int(match.group("index"))


def path_index(node_id: str) -> int:
    """Numeric suffix of an augmented id (0 when absent)."""
    parsed = parse_augmented_id(node_id)
    return parsed[1] if parsed else 0


def augmented_pattern(base_id: str) -> re.Pattern[str]:
    """Pattern matching exactly the augmented ids of base_id."""
    return re.compile(rf"^{re.escape(base_id)}_\d+$")


def extract_array(value: Any, array_path: str | None) -> list[Any]:
    """
    Read the array a splitter fans out over.

    Raises:
        ValueError: if the path is not configured, missing, or not an array
    """
    if not array_path:
        raise ValueError("Splitter node missing array_path in configuration")

    current = value
    for part in array_path.split("."):
        if current is None:
            raise ValueError(f"Array not found at configured path: {array_path}")
        current = resolve_path(current, part)
    if current is None:
        raise ValueError(f"Array not found at configured path: {array_path}")
    if not isinstance(current, list):
        raise ValueError("Value at path is not an array")
    return current


def create_parallel_path_states(
    splitter_id: str, template_ids: list[str], elements: list[Any]
) -> dict[str, NodeState]:
    """
    States created atomically by a splitter fan-out.

    "{splitter}_{i}" is completed with element i as output; each template
    instance "{template}_{i}" starts pending.
    """
    states: dict[str, NodeState] = {}
    for index, element in enumerate(elements):
        states[augment_id(splitter_id, index)] = NodeState(
            status=NodeStatus.COMPLETED, output=element
        )
        for template_id in template_ids:
            states[augment_id(template_id, index)] = NodeState(status=NodeStatus.PENDING)

    if states:
        logger.info(
            f"Created {len(states)} parallel instances for splitter '{splitter_id}' "
            f"({len(elements)} paths)"
        )
    return states


def identify_upstream_paths(
    node_states: dict[str, NodeState], upstream_ids: list[str]
) -> list[str]:
    """All augmented ids in node_states that belong to one of upstream_ids."""
    paths: list[str] = []
    for base_id in upstream_ids:
        pattern = augmented_pattern(base_id)
        paths.extend(node_id for node_id in node_states if pattern.match(node_id))
    return paths


def has_any_path_failed(node_states: dict[str, NodeState], paths: list[str]) -> bool:
    return any(
        node_states.get(path) is not None and node_states[path].status == NodeStatus.FAILED
        for path in paths
    )


def are_all_paths_completed(node_states: dict[str, NodeState], paths: list[str]) -> bool:
    """True when every path completed. An empty path list is never complete."""
    if not paths:
        return False
    return all(
        node_states.get(path) is not None and node_states[path].status == NodeStatus.COMPLETED
        for path in paths
    )


def merge_parallel_outputs(node_states: dict[str, NodeState], paths: list[str]) -> list[Any]:
    """Outputs of paths ordered by numeric suffix, not by dict or completion order."""
    ordered = sorted(paths, key=path_index)
    return [node_states[path].output if path in node_states else None for path in ordered]
