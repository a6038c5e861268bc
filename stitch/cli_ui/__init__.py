"""Rich terminal rendering for canvases, runs and version history."""

from stitch.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
]
