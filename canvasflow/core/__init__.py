"""Core modules for the canvasflow engine."""

from canvasflow.core.compiler import CompilationError, CompileError, CompileResult, compile_graph
from canvasflow.core.graph_engine import GraphOrchestrator
from canvasflow.core.graph_schema import (
    ExecutionGraph,
    NodeKind,
    NodeState,
    NodeStatus,
    Run,
    VisualGraph,
)
from canvasflow.core.state import Database, NodeNotFoundError, RunNotFoundError
from canvasflow.core.transitions import InvalidTransitionError

__all__ = [
    "CompilationError",
    "CompileError",
    "CompileResult",
    "compile_graph",
    "Database",
    "ExecutionGraph",
    "GraphOrchestrator",
    "InvalidTransitionError",
    "NodeKind",
    "NodeNotFoundError",
    "NodeState",
    "NodeStatus",
    "Run",
    "RunNotFoundError",
    "VisualGraph",
]
