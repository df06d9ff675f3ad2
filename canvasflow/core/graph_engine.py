"""Event-driven graph execution engine.

A run moves forward only when something reports in: start_run fires the
entry nodes, and every worker callback, human-gate completion or retry
re-enters the engine for exactly one node. From there walk_edges follows
outbound edges and dispatches each newly eligible node, recursing until
the walk reaches nodes that wait on something external.

All state lives in the database. Each write is validated against the
transition table inside its transaction, and every dispatch starts with a
guarded claim on a pending node, so walking the same node twice never fires
a downstream node twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from canvasflow.core.compiler import CompilationError, compile_graph
from canvasflow.core.config import EngineConfig
from canvasflow.core.dependencies import (
    are_upstream_dependencies_completed,
    merge_upstream_outputs,
)
from canvasflow.core.entity_movement import (
    DatabaseEntityMover,
    EntityMover,
    apply_entity_movement,
)
from canvasflow.core.graph_schema import (
    EdgeType,
    ExecutionGraph,
    NodeKind,
    NodeState,
    NodeStatus,
    Run,
    VisualGraph,
    WorkerCallback,
)
from canvasflow.core.parallel import (
    are_all_paths_completed,
    augment_id,
    create_parallel_path_states,
    extract_array,
    has_any_path_failed,
    identify_upstream_paths,
    merge_parallel_outputs,
    parse_augmented_id,
    path_index,
)
from canvasflow.core.state import Database, NodeNotFoundError, RunNotFoundError
from canvasflow.core.transitions import InvalidTransitionError
from canvasflow.core.workers import (
    FireRequest,
    FiringError,
    WebhookWorker,
    WorkerRegistry,
    build_callback_url,
)

logger = logging.getLogger(__name__)


class GraphOrchestrator:
    """
    Drives runs of compiled graphs.

    Key Features:
    - No in-memory run state; every step re-reads the database
    - Idempotent walks via guarded pending claims
    - Splitter fan-out into augmented "{node}_{index}" instances
    - Collector fan-in ordered by path index
    """

    def __init__(
        self,
        db: Database,
        workers: WorkerRegistry | None = None,
        config: EngineConfig | None = None,
        entity_mover: EntityMover | None = None,
    ):
        self.db = db
        self.config = config or EngineConfig()
        self.workers = workers or WorkerRegistry(
            fallback=WebhookWorker(timeout=self.config.worker_timeout)
        )
        self.entity_mover = entity_mover if entity_mover is not None else DatabaseEntityMover(db)
        # Execution graphs are immutable per run; least recently used are evicted
        self._graphs: OrderedDict[str, ExecutionGraph] = OrderedDict()

    # ========== Database Helpers ==========

    def _cache_graph(self, run_id: str, graph: ExecutionGraph) -> None:
        self._graphs[run_id] = graph
        self._graphs.move_to_end(run_id)
        while len(self._graphs) > self.config.graph_cache_size:
            self._graphs.popitem(last=False)

    async def _load_graph(self, run_id: str) -> ExecutionGraph:
        graph = self._graphs.get(run_id)
        if graph is None:
            graph = await asyncio.to_thread(self.db.get_execution_graph, run_id)
        self._cache_graph(run_id, graph)
        return graph

    async def get_run(self, run_id: str) -> Run:
        run = await asyncio.to_thread(self.db.get_run, run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def delete_run(self, run_id: str) -> bool:
        self._graphs.pop(run_id, None)
        return await asyncio.to_thread(self.db.delete_run, run_id)

    async def _update(self, run_id: str, updates: dict[str, NodeState]) -> Run:
        return await asyncio.to_thread(self.db.update_node_states, run_id, updates)

    async def _claim(
        self, run_id: str, key: str, expected: NodeStatus, state: NodeState
    ) -> bool:
        return await asyncio.to_thread(self.db.claim_node_state, run_id, key, expected, state)

    async def _fail_if_running(self, run_id: str, key: str, error: str) -> bool:
        """Mark key failed unless a callback already moved it on."""
        failed = await self._claim(
            run_id, key, NodeStatus.RUNNING, NodeState(status=NodeStatus.FAILED, error=error)
        )
        if not failed:
            logger.info(f"Node '{key}' failure discarded (status changed during firing)")
        return failed

    # ========== Keys ==========

    @staticmethod
    def _split_key(graph: ExecutionGraph, key: str) -> tuple[str, int | None]:
        """Template id and path index for a state key (index is None for plain ids)."""
        if key in graph.nodes:
            return key, None
        parsed = parse_augmented_id(key)
        if parsed is not None and parsed[0] in graph.nodes:
            return parsed
        return key, None

    def _resolve_key(self, graph: ExecutionGraph, run: Run, key: str) -> tuple[str, int | None]:
        """
        Raises:
            NodeNotFoundError: if key is neither a node nor an existing instance
        """
        base, index = self._split_key(graph, key)
        if base not in graph.nodes or key not in run.node_states:
            raise NodeNotFoundError(run.id, key)
        return base, index

    @staticmethod
    def _instance_resolver(
        graph: ExecutionGraph, base: str, index: int | None
    ) -> Callable[[str], str]:
        """Map template sources to the state keys instance `index` of base reads from."""
        owner = graph.region_owner(base)
        if index is None or owner is None:
            return lambda source: source
        members = {owner, *graph.parallel_regions[owner]}
        return lambda source: augment_id(source, index) if source in members else source

    @staticmethod
    def _target_keys(
        graph: ExecutionGraph,
        node_states: dict[str, NodeState],
        base: str,
        index: int | None,
        target: str,
    ) -> list[str]:
        """State keys a walk from (base, index) reaches for target."""
        owner = graph.region_owner(target)
        if owner is None:
            return [target]
        if index is not None and (base == owner or graph.region_owner(base) == owner):
            return [augment_id(target, index)]
        # Entering the region: one instance per path of the fan-out
        paths = sorted(identify_upstream_paths(node_states, [owner]), key=path_index)
        return [augment_id(target, path_index(path)) for path in paths]

    def _merged_input(
        self, graph: ExecutionGraph, run: Run, base: str, index: int | None
    ) -> dict[str, Any]:
        if not graph.inbound_edges.get(base):
            return dict(run.input)
        return merge_upstream_outputs(
            base, graph, run.node_states, self._instance_resolver(graph, base, index)
        )

    def _dependencies_met(
        self, graph: ExecutionGraph, run: Run, base: str, index: int | None
    ) -> bool:
        return are_upstream_dependencies_completed(
            base, graph, run.node_states, self._instance_resolver(graph, base, index)
        )

    # ========== Run Control ==========

    async def start_run(
        self,
        graph: VisualGraph,
        entity_id: str | None = None,
        input: dict[str, Any] | None = None,
    ) -> Run:
        """
        Compile graph, persist a new run and fire its entry nodes.

        Raises:
            CompilationError: if the graph does not compile
        """
        result = compile_graph(graph, self.workers)
        if not result.success:
            raise CompilationError(result.errors)
        execution_graph = result.execution_graph

        await asyncio.to_thread(self.db.save_graph, graph, execution_graph)
        run = await asyncio.to_thread(
            self.db.create_run, graph.id, execution_graph, entity_id, input or {}
        )
        self._cache_graph(run.id, execution_graph)
        logger.info(
            f"Started run {run.id} for graph '{graph.id}' "
            f"(entry nodes: {execution_graph.entry_nodes})"
        )

        if entity_id and execution_graph.entry_nodes:
            await asyncio.to_thread(self._place_entity, run, execution_graph.entry_nodes[0])

        for node_id in self._start_nodes(execution_graph):
            await self._dispatch(run.id, execution_graph, node_id)
        return await self.get_run(run.id)

    @staticmethod
    def _start_nodes(graph: ExecutionGraph) -> list[str]:
        """Entry nodes fired by start_run. System-edge targets wait for their trigger."""
        triggered = {
            edge.target
            for edges in graph.adjacency.values()
            for edge in edges
            if edge.type == EdgeType.SYSTEM
        }
        return [node_id for node_id in graph.entry_nodes if node_id not in triggered]

    def _place_entity(self, run: Run, node_id: str) -> None:
        try:
            self.entity_mover.move(
                run.entity_id, node_id, "neutral", {"run_id": run.id, "event": "run_started"}
            )
        except Exception as e:
            logger.warning(f"Could not place entity '{run.entity_id}' at '{node_id}': {e}")

    async def handle_callback(self, run_id: str, node_id: str, callback: WorkerCallback) -> Run:
        """
        Apply a worker's completion report and walk on from the node.

        Re-delivery of the node's current status is acknowledged without
        another walk.

        Raises:
            RunNotFoundError: unknown run
            NodeNotFoundError: node_id is not part of the run
            InvalidTransitionError: the report contradicts the node's state
        """
        graph = await self._load_graph(run_id)
        run = await self.get_run(run_id)
        base, _ = self._resolve_key(graph, run, node_id)
        new_status = NodeStatus(callback.status)
        logger.info(f"Callback received for node '{node_id}' in run {run_id}: {new_status.value}")

        if run.node_states[node_id].status == new_status:
            logger.info(f"Duplicate callback for node '{node_id}' ignored")
            return run

        error = callback.error
        if new_status == NodeStatus.FAILED and not error:
            error = "Worker reported failure"
        run = await self._update(
            run_id, {node_id: NodeState(status=new_status, output=callback.output, error=error)}
        )

        node = graph.nodes[base]
        if node.type == NodeKind.WORKER:
            await asyncio.to_thread(
                apply_entity_movement, self.entity_mover, run, node, new_status
            )

        await self.walk_edges(run_id, node_id)
        return await self.get_run(run_id)

    async def complete_human_gate(
        self, run_id: str, node_id: str, output: Any = None
    ) -> Run:
        """
        Complete a human gate that is waiting for its user.

        The gate's output defaults to the input it was presented with.

        Raises:
            ValueError: node_id is not a human gate
            InvalidTransitionError: the gate is not waiting for a user
        """
        graph = await self._load_graph(run_id)
        run = await self.get_run(run_id)
        base, _ = self._resolve_key(graph, run, node_id)
        if graph.nodes[base].type != NodeKind.HUMAN_GATE:
            raise ValueError(f"Node '{node_id}' is not a human gate")

        current = run.node_states[node_id]
        if current.status == NodeStatus.COMPLETED:
            return run
        if current.status != NodeStatus.WAITING_FOR_USER:
            raise InvalidTransitionError(current.status, NodeStatus.COMPLETED, node_id)

        final_output = output if output is not None else current.output
        await self._update(
            run_id, {node_id: NodeState(status=NodeStatus.COMPLETED, output=final_output)}
        )
        logger.info(f"Human gate '{node_id}' completed in run {run_id}")
        await self.walk_edges(run_id, node_id)
        return await self.get_run(run_id)

    async def retry_node(self, run_id: str, node_id: str) -> Run:
        """
        Reset a failed node to pending and fire it again if it is eligible.

        Only the named node is reset; downstream failures stay as they are.

        Raises:
            InvalidTransitionError: the node is not failed
        """
        graph = await self._load_graph(run_id)
        run = await self.get_run(run_id)
        base, index = self._resolve_key(graph, run, node_id)
        current = run.node_states[node_id].status
        if current != NodeStatus.FAILED:
            raise InvalidTransitionError(current, NodeStatus.PENDING, node_id)

        run = await self._update(run_id, {node_id: NodeState(status=NodeStatus.PENDING)})
        logger.info(f"Retrying node '{node_id}' in run {run_id}")
        if self._dependencies_met(graph, run, base, index):
            await self._dispatch(run_id, graph, node_id)
        return await self.get_run(run_id)

    # ========== Edge Walking ==========

    async def walk_edges(self, run_id: str, node_id: str) -> None:
        """
        Follow outbound edges of a node that just reached a terminal status.

        Completed nodes dispatch their system targets unconditionally and
        their journey targets once all dependencies are met. Failed nodes only
        push the failure along their parallel path and let collectors decide.
        """
        graph = await self._load_graph(run_id)
        run = await self.get_run(run_id)
        base, index = self._split_key(graph, node_id)
        state = run.node_states.get(node_id)
        if state is None or state.status not in (NodeStatus.COMPLETED, NodeStatus.FAILED):
            return

        logger.debug(f"Walking edges from '{node_id}' ({state.status.value}) in run {run_id}")

        if state.status == NodeStatus.FAILED:
            if index is not None:
                await self._propagate_failure(run_id, graph, base, index, node_id)
            for collector_id in self._collectors_downstream(graph, base):
                await self._evaluate_collector(run_id, graph, collector_id)
            return

        for edge in graph.adjacency.get(base, []):
            target = edge.target
            if graph.nodes[target].type == NodeKind.COLLECTOR:
                await self._evaluate_collector(run_id, graph, target)
                continue

            run = await self.get_run(run_id)
            for key in self._target_keys(graph, run.node_states, base, index, target):
                if run.status_of(key) != NodeStatus.PENDING:
                    continue
                if edge.type == EdgeType.JOURNEY:
                    _, target_index = self._split_key(graph, key)
                    if not self._dependencies_met(graph, run, target, target_index):
                        continue
                await self._dispatch(run_id, graph, key)

        if base in graph.parallel_regions and index is None:
            # Covers empty fan-outs, where no instance ever reports in
            for collector_id in graph.region_collectors(base):
                await self._evaluate_collector(run_id, graph, collector_id)

    def _collectors_downstream(self, graph: ExecutionGraph, base: str) -> list[str]:
        """Collectors whose verdict can change when base fails."""
        if base in graph.parallel_regions:
            return graph.region_collectors(base)
        owner = graph.region_owner(base)
        if owner is not None:
            return graph.region_collectors(owner)
        return [
            edge.target
            for edge in graph.adjacency.get(base, [])
            if edge.type == EdgeType.JOURNEY and graph.nodes[edge.target].type == NodeKind.COLLECTOR
        ]

    async def _propagate_failure(
        self, run_id: str, graph: ExecutionGraph, base: str, index: int, failed_key: str
    ) -> None:
        """Fail the pending instances downstream of failed_key on the same path."""
        owner = graph.region_owner(base)
        if owner is None:
            return
        region = set(graph.parallel_regions[owner])
        for edge in graph.adjacency.get(base, []):
            if edge.type != EdgeType.JOURNEY or edge.target not in region:
                continue
            key = augment_id(edge.target, index)
            claimed = await self._claim(
                run_id, key, NodeStatus.PENDING, NodeState(status=NodeStatus.RUNNING)
            )
            if not claimed:
                continue
            await self._update(
                run_id,
                {key: NodeState(status=NodeStatus.FAILED, error=f"Upstream node failed: {failed_key}")},
            )
            logger.info(f"Node '{key}' failed because upstream '{failed_key}' failed")
            await self.walk_edges(run_id, key)

    # ========== Dispatch ==========

    async def _dispatch(self, run_id: str, graph: ExecutionGraph, key: str) -> None:
        """Start a pending node according to its kind."""
        base, index = self._split_key(graph, key)
        node = graph.nodes[base]
        match node.type:
            case NodeKind.WORKER:
                await self._fire_worker(run_id, graph, key, base, index)
            case NodeKind.HUMAN_GATE:
                await self._open_human_gate(run_id, graph, key, base, index)
            case NodeKind.SPLITTER:
                await self._fan_out(run_id, graph, key, base, index)
            case NodeKind.COLLECTOR:
                await self._evaluate_collector(run_id, graph, base)
            case _:
                logger.warning(f"Node '{key}' of kind {node.type.value} is not executable")

    async def _fire_worker(
        self, run_id: str, graph: ExecutionGraph, key: str, base: str, index: int | None
    ) -> None:
        run = await self.get_run(run_id)
        node = graph.nodes[base]
        node_input = self._merged_input(graph, run, base, index)

        claimed = await self._claim(
            run_id, key, NodeStatus.PENDING, NodeState(status=NodeStatus.RUNNING)
        )
        if not claimed:
            logger.debug(f"Node '{key}' already claimed, skipping")
            return

        logger.info(f"Executing worker node '{key}' in run {run_id}")
        request = FireRequest(
            run_id=run_id,
            node_id=key,
            config=dict(node.config),
            input=node_input,
            callback_url=build_callback_url(self.config.base_url, run_id, key),
        )
        try:
            unit = self.workers.resolve(node)
            await asyncio.wait_for(unit.fire(request), timeout=self.config.worker_timeout)
            return
        except TimeoutError:
            error = f"Worker firing timed out after {self.config.worker_timeout}s"
        except FiringError as e:
            error = str(e)
        except Exception as e:
            logger.exception(f"Unexpected error firing worker node '{key}'")
            error = f"Worker firing failed: {e}"

        logger.error(f"Node '{key}' failed to fire: {error}")
        if await self._fail_if_running(run_id, key, error):
            await self.walk_edges(run_id, key)

    async def _open_human_gate(
        self, run_id: str, graph: ExecutionGraph, key: str, base: str, index: int | None
    ) -> None:
        run = await self.get_run(run_id)
        node_input = self._merged_input(graph, run, base, index)
        claimed = await self._claim(
            run_id,
            key,
            NodeStatus.PENDING,
            NodeState(status=NodeStatus.WAITING_FOR_USER, output=node_input),
        )
        if claimed:
            logger.info(f"Human gate '{key}' waiting for user in run {run_id}")

    async def _fan_out(
        self, run_id: str, graph: ExecutionGraph, key: str, base: str, index: int | None
    ) -> None:
        run = await self.get_run(run_id)
        node = graph.nodes[base]
        node_input = self._merged_input(graph, run, base, index)

        claimed = await self._claim(
            run_id, key, NodeStatus.PENDING, NodeState(status=NodeStatus.RUNNING)
        )
        if not claimed:
            return

        try:
            elements = extract_array(node_input, node.config.get("array_path"))
        except ValueError as e:
            logger.error(f"Splitter '{key}' failed: {e}")
            if await self._fail_if_running(run_id, key, str(e)):
                await self.walk_edges(run_id, key)
            return

        updates = create_parallel_path_states(base, graph.parallel_regions.get(base, []), elements)
        updates[key] = NodeState(status=NodeStatus.COMPLETED, output=elements)
        await self._update(run_id, updates)
        await self.walk_edges(run_id, key)

    # ========== Collectors ==========

    def _collector_verdict(
        self, graph: ExecutionGraph, collector_id: str, node_states: dict[str, NodeState]
    ) -> NodeState | None:
        """
        Terminal state for a collector, or None while it must keep waiting.

        Any failure upstream fails the collector. Parallel sources complete
        it with their path outputs ordered by index; a collector with only
        plain sources completes with their outputs in inbound order.
        """
        sources = graph.inbound_edges.get(collector_id, [])
        parallel_sources = [s for s in sources if graph.is_parallel_source(s)]
        plain_sources = [s for s in sources if not graph.is_parallel_source(s)]

        def failed(message: str) -> NodeState:
            return NodeState(status=NodeStatus.FAILED, error=message)

        def status(key: str) -> NodeStatus | None:
            state = node_states.get(key)
            return state.status if state else None

        for source in plain_sources:
            if status(source) == NodeStatus.FAILED:
                return failed(f"Upstream node failed: {source}")

        owners: list[str] = []
        for source in parallel_sources:
            owner = source if source in graph.parallel_regions else graph.region_owner(source)
            if owner not in owners:
                owners.append(owner)
        for owner in owners:
            if status(owner) == NodeStatus.FAILED:
                return failed(f"Splitter node failed: {owner}")

        paths = sorted(identify_upstream_paths(node_states, parallel_sources), key=path_index)
        if has_any_path_failed(node_states, paths):
            first = next(path for path in paths if status(path) == NodeStatus.FAILED)
            return failed(f"Parallel path failed: {first}")

        if any(status(owner) != NodeStatus.COMPLETED for owner in owners):
            return None
        if any(status(source) != NodeStatus.COMPLETED for source in plain_sources):
            return None
        # A zero-length split has no paths and completes with []
        if paths and not are_all_paths_completed(node_states, paths):
            return None

        if parallel_sources:
            return NodeState(
                status=NodeStatus.COMPLETED, output=merge_parallel_outputs(node_states, paths)
            )
        return NodeState(
            status=NodeStatus.COMPLETED,
            output=[node_states[source].output for source in plain_sources],
        )

    async def _evaluate_collector(
        self, run_id: str, graph: ExecutionGraph, collector_id: str
    ) -> None:
        run = await self.get_run(run_id)
        if run.status_of(collector_id) != NodeStatus.PENDING:
            return

        verdict = self._collector_verdict(graph, collector_id, run.node_states)
        if verdict is None:
            logger.debug(f"Collector '{collector_id}' waiting for upstream paths")
            return

        claimed = await self._claim(
            run_id, collector_id, NodeStatus.PENDING, NodeState(status=NodeStatus.RUNNING)
        )
        if not claimed:
            return
        await self._update(run_id, {collector_id: verdict})
        if verdict.status == NodeStatus.FAILED:
            logger.warning(f"Collector '{collector_id}' failed: {verdict.error}")
        else:
            logger.info(
                f"Collector '{collector_id}' completed with {len(verdict.output)} item(s)"
            )
        await self.walk_edges(run_id, collector_id)
