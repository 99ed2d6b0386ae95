"""Rich terminal rendering for the stitch CLI."""

from stitch.cli_ui.run_view import (
    GraphRenderer,
    render_run,
    render_timeline,
    render_validation_errors,
    render_versions,
)

__all__ = [
    "GraphRenderer",
    "render_run",
    "render_timeline",
    "render_validation_errors",
    "render_versions",
]
