"""CLI entry point for canvasflow.

Commands:
- canvasflow validate: Compile a graph file and report every error
- canvasflow run: Start a run of a graph file
- canvasflow runs: List runs
- canvasflow status: Show node states of a run
- canvasflow callback: Report a worker result for a node
- canvasflow complete: Complete a human gate
- canvasflow retry: Retry a failed node
- canvasflow serve: Start the HTTP API
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from canvasflow import __version__
from canvasflow.cli_ui.graph_renderer import StatusTableRenderer
from canvasflow.core.compiler import CompilationError, compile_graph
from canvasflow.core.config import ConfigError, EngineConfig, load_config
from canvasflow.core.graph_engine import GraphOrchestrator
from canvasflow.core.graph_schema import VisualGraph, WorkerCallback
from canvasflow.core.state import Database, NodeNotFoundError, RunNotFoundError
from canvasflow.core.transitions import InvalidTransitionError
from canvasflow.core.workers import WebhookWorker, WorkerRegistry

console = Console()


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _load_config() -> EngineConfig:
    try:
        return load_config(get_repo_path())
    except ConfigError as e:
        console.print(f"[red]Error loading configuration:[/red] {escape(str(e))}")
        sys.exit(1)


def _build_orchestrator(config: EngineConfig) -> GraphOrchestrator:
    db = Database(config.db_path)
    workers = WorkerRegistry(fallback=WebhookWorker(timeout=config.worker_timeout))
    return GraphOrchestrator(db, workers, config)


def _load_graph(graph_file: str) -> VisualGraph:
    """Load an authored graph from YAML or JSON (JSON is valid YAML)."""
    try:
        with open(graph_file) as f:
            graph_dict = yaml.safe_load(f)
        if not isinstance(graph_dict, dict):
            console.print(
                f"[red]Error: Invalid content in '{graph_file}'. "
                f"Expected a mapping, got {type(graph_dict).__name__}.[/red]"
            )
            sys.exit(1)
        return VisualGraph(**graph_dict)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing graph file '{graph_file}':[/red]")
        console.print(f"  {e}", markup=False)
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating graph schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {loc}: {err['msg']}")
        sys.exit(1)


def _parse_json_option(value: str | None, name: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        console.print(f"[red]Error: --{name} is not valid JSON: {escape(str(e))}[/red]")
        sys.exit(1)


def _print_compile_errors(errors) -> None:
    console.print(f"[red]Graph failed to compile ({len(errors)} error(s)):[/red]")
    for error in errors:
        console.print(f"  - [{error.kind.value}] {error.message}", markup=False)


def _run_engine_call(coro_factory) -> Any:
    """Run an orchestrator coroutine, reporting engine errors and exiting non-zero."""
    try:
        return asyncio.run(coro_factory())
    except CompilationError as e:
        _print_compile_errors(e.errors)
        sys.exit(1)
    except (RunNotFoundError, NodeNotFoundError) as e:
        console.print(f"[red]Not found:[/red] {escape(str(e))}")
        sys.exit(1)
    except (InvalidTransitionError, ValueError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level (defaults to the configured log_level)",
)
@click.pass_context
def main(ctx: click.Context, log_level: str | None) -> None:
    """Canvasflow - compile canvas graphs and drive their runs."""
    config = _load_config()
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = config


@main.command()
@click.argument("graph_file", type=click.Path(exists=True))
def validate(graph_file: str) -> None:
    """Compile a graph file and report every validation error."""
    graph = _load_graph(graph_file)
    result = compile_graph(graph)
    if not result.success:
        _print_compile_errors(result.errors)
        sys.exit(1)

    execution_graph = result.execution_graph
    console.print("[green]Graph compiled successfully[/green]")
    console.print(f"  Nodes: {len(execution_graph.nodes)}")
    console.print(f"  Entry nodes: {', '.join(execution_graph.entry_nodes)}", markup=False)
    console.print(f"  Terminal nodes: {', '.join(execution_graph.terminal_nodes)}", markup=False)
    for splitter_id, region in execution_graph.parallel_regions.items():
        console.print(f"  Parallel region {splitter_id}: {', '.join(region)}", markup=False)


@main.command()
@click.argument("graph_file", type=click.Path(exists=True))
@click.option("--input", "input_json", help="Run input as a JSON object")
@click.option("--entity-id", help="Entity carried through the run")
@click.pass_obj
def run(config: EngineConfig, graph_file: str, input_json: str | None, entity_id: str | None) -> None:
    """Start a run of a graph file and fire its entry nodes."""
    graph = _load_graph(graph_file)
    run_input = _parse_json_option(input_json, "input") or {}
    if not isinstance(run_input, dict):
        console.print("[red]Error: --input must be a JSON object[/red]")
        sys.exit(1)

    orchestrator = _build_orchestrator(config)
    started = _run_engine_call(
        lambda: orchestrator.start_run(graph, entity_id=entity_id, input=run_input)
    )
    console.print(f"[blue]Started run: {started.id}[/blue]")
    graph_snapshot = orchestrator.db.get_execution_graph(started.id)
    StatusTableRenderer(console).print_status(started, graph_snapshot)


@main.command()
@click.option("--graph-id", "-g", help="Filter by graph ID")
@click.pass_obj
def runs(config: EngineConfig, graph_id: str | None) -> None:
    """List runs, newest first."""
    db = Database(config.db_path)
    all_runs = db.list_runs(graph_id)
    if not all_runs:
        console.print("[yellow]No runs found[/yellow]")
        return

    table = Table(title="Runs")
    table.add_column("Run", style="cyan")
    table.add_column("Graph")
    table.add_column("Entity")
    table.add_column("Nodes", justify="right")
    table.add_column("Updated")
    for item in all_runs:
        table.add_row(
            escape(item.id),
            escape(item.graph_id),
            escape(item.entity_id or ""),
            str(len(item.node_states)),
            item.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@main.command()
@click.argument("run_id")
@click.pass_obj
def status(config: EngineConfig, run_id: str) -> None:
    """Show the node states of a run."""
    db = Database(config.db_path)
    found = db.get_run(run_id)
    if found is None:
        console.print(f"[red]Run '{escape(run_id)}' not found[/red]")
        sys.exit(1)
    StatusTableRenderer(console).print_status(found, db.get_execution_graph(run_id))


@main.command()
@click.argument("run_id")
@click.argument("node_id")
@click.option(
    "--status",
    "callback_status",
    type=click.Choice(["completed", "failed"]),
    required=True,
    help="Terminal status reported by the worker",
)
@click.option("--output", "output_json", help="Worker output as JSON")
@click.option("--error", help="Error message for a failed node")
@click.pass_obj
def callback(
    config: EngineConfig,
    run_id: str,
    node_id: str,
    callback_status: str,
    output_json: str | None,
    error: str | None,
) -> None:
    """Report a worker result for a node, as a worker callback would."""
    payload = WorkerCallback(
        status=callback_status, output=_parse_json_option(output_json, "output"), error=error
    )
    orchestrator = _build_orchestrator(config)
    updated = _run_engine_call(lambda: orchestrator.handle_callback(run_id, node_id, payload))
    StatusTableRenderer(console).print_status(updated, orchestrator.db.get_execution_graph(run_id))


@main.command()
@click.argument("run_id")
@click.argument("node_id")
@click.option("--output", "output_json", help="Gate output as JSON (defaults to its input)")
@click.pass_obj
def complete(config: EngineConfig, run_id: str, node_id: str, output_json: str | None) -> None:
    """Complete a human gate that is waiting for a user."""
    output = _parse_json_option(output_json, "output")
    orchestrator = _build_orchestrator(config)
    updated = _run_engine_call(
        lambda: orchestrator.complete_human_gate(run_id, node_id, output)
    )
    StatusTableRenderer(console).print_status(updated, orchestrator.db.get_execution_graph(run_id))


@main.command()
@click.argument("run_id")
@click.argument("node_id")
@click.pass_obj
def retry(config: EngineConfig, run_id: str, node_id: str) -> None:
    """Reset a failed node to pending and fire it again."""
    orchestrator = _build_orchestrator(config)
    updated = _run_engine_call(lambda: orchestrator.retry_node(run_id, node_id))
    StatusTableRenderer(console).print_status(updated, orchestrator.db.get_execution_graph(run_id))


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
def serve(host: str, port: int) -> None:
    """Start the HTTP API with uvicorn."""
    import uvicorn

    console.print(f"[blue]Serving canvasflow API on http://{host}:{port}[/blue]")
    uvicorn.run("canvasflow.api.server:app", host=host, port=port)


if __name__ == "__main__":
    main()
