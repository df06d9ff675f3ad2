"""FastAPI transport for canvasflow.

Endpoints:
- POST /graphs/compile: validate and compile an authored graph
- POST /runs, GET /runs, GET /runs/{run_id}, DELETE /runs/{run_id}
- POST /callback/{run_id}/{node_id}: worker completion reports
- POST /runs/{run_id}/nodes/{node_id}/complete: finish a human gate
- POST /runs/{run_id}/nodes/{node_id}/retry: retry a failed node
- GET /health

The database, worker registry and orchestrator are created lazily on first
use from the project configuration.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from canvasflow import __version__
from canvasflow.core.compiler import CompilationError, compile_graph
from canvasflow.core.config import EngineConfig, load_config
from canvasflow.core.graph_engine import GraphOrchestrator
from canvasflow.core.graph_schema import VisualGraph, WorkerCallback
from canvasflow.core.state import Database, NodeNotFoundError, RunNotFoundError
from canvasflow.core.transitions import InvalidTransitionError
from canvasflow.core.workers import WebhookWorker, WorkerRegistry

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Canvasflow API",
    description="Graph compilation and run control for canvas workflows",
    version=__version__,
)

# Local development origins only
ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are client errors (400)."""
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# Global instances (lazy initialized)
_config: EngineConfig | None = None
_db: Database | None = None
_workers: WorkerRegistry | None = None
_orchestrator: GraphOrchestrator | None = None


def get_config() -> EngineConfig:
    """Get or load configuration."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_db() -> Database:
    """Get or create database instance."""
    global _db
    if _db is None:
        _db = Database(get_config().db_path)
    return _db


def get_workers() -> WorkerRegistry:
    """Get or create the worker registry."""
    global _workers
    if _workers is None:
        _workers = WorkerRegistry(fallback=WebhookWorker(timeout=get_config().worker_timeout))
    return _workers


def get_orchestrator() -> GraphOrchestrator:
    """Get or create orchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = GraphOrchestrator(get_db(), get_workers(), get_config())
    return _orchestrator


def _http_error(exc: Exception) -> HTTPException:
    """Translate engine exceptions into HTTP errors."""
    if isinstance(exc, (RunNotFoundError, NodeNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, CompilationError):
        return HTTPException(
            status_code=400,
            detail={"errors": [e.model_dump(mode="json") for e in exc.errors]},
        )
    return HTTPException(status_code=400, detail=str(exc))


_ENGINE_ERRORS = (
    RunNotFoundError,
    NodeNotFoundError,
    InvalidTransitionError,
    CompilationError,
    ValueError,
)


# ========== API Models ==========


class StartRunRequest(BaseModel):
    """Start a run from an inline graph or a previously saved graph id"""

    graph: VisualGraph | None = None
    graph_id: str | None = None
    entity_id: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)


class CompleteGateRequest(BaseModel):
    """Output to record for a completed human gate"""

    output: Any = None


# ========== Graph Endpoints ==========


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "version": __version__}


@app.post("/graphs/compile")
def compile_endpoint(graph: VisualGraph) -> dict[str, Any]:
    """Compile a graph without running it."""
    result = compile_graph(graph, get_workers())
    if not result.success:
        raise _http_error(CompilationError(result.errors))
    return {
        "success": True,
        "execution_graph": result.execution_graph.model_dump(mode="json"),
    }


# ========== Run Endpoints ==========


@app.post("/runs", status_code=201)
async def start_run(request: StartRunRequest) -> dict[str, Any]:
    """Compile the graph, create a run and fire its entry nodes."""
    graph = request.graph
    if graph is None:
        if not request.graph_id:
            raise HTTPException(status_code=400, detail="Either graph or graph_id is required")
        graph = await run_in_threadpool(get_db().get_graph, request.graph_id)
        if graph is None:
            raise HTTPException(status_code=404, detail=f"Graph '{request.graph_id}' not found")

    try:
        run = await get_orchestrator().start_run(
            graph, entity_id=request.entity_id, input=request.input
        )
    except _ENGINE_ERRORS as exc:
        raise _http_error(exc) from exc
    return run.model_dump(mode="json")


@app.get("/runs")
async def list_runs(graph_id: str | None = None) -> list[dict[str, Any]]:
    runs = await run_in_threadpool(get_db().list_runs, graph_id)
    return [run.model_dump(mode="json") for run in runs]


@app.get("/runs/{run_id}")
async def get_run(run_id: str) -> dict[str, Any]:
    try:
        run = await get_orchestrator().get_run(run_id)
    except RunNotFoundError as exc:
        raise _http_error(exc) from exc
    return run.model_dump(mode="json")


@app.delete("/runs/{run_id}")
async def delete_run(run_id: str) -> dict[str, str]:
    deleted = await get_orchestrator().delete_run(run_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return {"status": "deleted", "id": run_id}


@app.post("/callback/{run_id}/{node_id:path}")
async def worker_callback(run_id: str, node_id: str, callback: WorkerCallback) -> dict[str, Any]:
    """Completion report from a work unit."""
    try:
        run = await get_orchestrator().handle_callback(run_id, node_id, callback)
    except _ENGINE_ERRORS as exc:
        raise _http_error(exc) from exc
    return {
        "status": "ok",
        "node_status": run.node_states[node_id].status.value,
        "run": run.model_dump(mode="json"),
    }


@app.post("/runs/{run_id}/nodes/{node_id:path}/complete")
async def complete_human_gate(
    run_id: str, node_id: str, request: CompleteGateRequest | None = None
) -> dict[str, Any]:
    output = request.output if request is not None else None
    try:
        run = await get_orchestrator().complete_human_gate(run_id, node_id, output)
    except _ENGINE_ERRORS as exc:
        raise _http_error(exc) from exc
    return run.model_dump(mode="json")


@app.post("/runs/{run_id}/nodes/{node_id:path}/retry")
async def retry_node(run_id: str, node_id: str) -> dict[str, Any]:
    try:
        run = await get_orchestrator().retry_node(run_id, node_id)
    except _ENGINE_ERRORS as exc:
        raise _http_error(exc) from exc
    return run.model_dump(mode="json")
