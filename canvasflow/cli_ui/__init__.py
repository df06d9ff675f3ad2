"""Rich terminal rendering for canvasflow runs."""

from canvasflow.cli_ui.graph_renderer import StatusTableRenderer

__all__ = ["StatusTableRenderer"]
