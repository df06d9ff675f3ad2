"""Terminal rendering of run status using Rich."""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from canvasflow.core.graph_schema import ExecutionGraph, NodeStatus, Run
from canvasflow.core.parallel import parse_augmented_id

MAX_CELL_WIDTH = 40

STATUS_TEXT = {
    NodeStatus.COMPLETED: "[green]✓ Completed[/]",
    NodeStatus.FAILED: "[red]✗ Failed[/]",
    NodeStatus.RUNNING: "[blue]⟳ Running[/]",
    NodeStatus.WAITING_FOR_USER: "[yellow]◷ Waiting for user[/]",
    NodeStatus.PENDING: "[dim]○ Pending[/]",
}


def _truncate(value: Any) -> str:
    text = "" if value is None else str(value)
    if len(text) > MAX_CELL_WIDTH:
        text = text[: MAX_CELL_WIDTH - 3] + "..."
    return text


class StatusTableRenderer:
    """Renders the node states of a run as a Rich table.

    Node ids, outputs and errors are user data and are escaped so they can
    never be read as Rich markup.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    @staticmethod
    def _kind_of(graph: ExecutionGraph | None, key: str) -> str:
        if graph is None:
            return ""
        if key in graph.nodes:
            return graph.nodes[key].type.value
        parsed = parse_augmented_id(key)
        if parsed and parsed[0] in graph.nodes:
            return graph.nodes[parsed[0]].type.value
        return ""

    def render_status_table(self, run: Run, graph: ExecutionGraph | None = None) -> Table:
        """Render one row per state key, augmented parallel instances included."""
        table = Table(title=f"Run: {escape(run.id)}")

        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Output / Error", max_width=MAX_CELL_WIDTH)

        for key, state in run.node_states.items():
            detail = state.error if state.status == NodeStatus.FAILED else state.output
            table.add_row(
                escape(key),
                self._kind_of(graph, key),
                STATUS_TEXT.get(state.status, escape(str(state.status))),
                escape(_truncate(detail)),
            )
        return table

    def print_status(self, run: Run, graph: ExecutionGraph | None = None) -> None:
        self.console.print(self.render_status_table(run, graph))
