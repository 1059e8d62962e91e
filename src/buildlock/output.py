"""Output formatting for the buildlock CLI."""

import json
from dataclasses import dataclass
from typing import Any

from rich.console import Console


@dataclass
class OutputContext:
    """Context for output formatting."""

    console: Console
    json_mode: bool = False

    def print(self, message: str, style: str | None = None) -> None:
        """Print message respecting output mode."""
        if not self.json_mode:
            self.console.print(message, style=style)

    def print_json(self, data: Any) -> None:
        """Print JSON data."""
        if self.json_mode:
            print(json.dumps(data, indent=2, default=str))

    def result(self, data: Any, message: str = "") -> None:
        """Print result in appropriate format."""
        if self.json_mode:
            self.print_json(data)
        elif message:
            self.console.print(message, markup=False, highlight=False, soft_wrap=True)

    def success(self, message: str, data: dict[str, Any] | None = None) -> None:
        """Print a completed state change (release, force release, config write).

        Messages quote user-supplied reasons, so they are printed without markup.
        """
        if self.json_mode:
            self.print_json({"success": message, **(data or {})})
        else:
            self.console.print(
                message, style="green", markup=False, highlight=False, soft_wrap=True
            )

    def error(self, message: str, data: dict[str, Any] | None = None) -> None:
        """Print error in appropriate format."""
        if self.json_mode:
            self.print_json({"error": message, **(data or {})})
        else:
            self.console.print(f"Error: {message}", style="red", markup=False, highlight=False)


# Global output context (set by cli.py main callback)
_ctx: OutputContext | None = None


def get_output_context() -> OutputContext:
    """Get the current output context.

    Returns a default OutputContext if not yet initialized by CLI.
    """
    if _ctx is None:
        return OutputContext(Console())
    return _ctx


def set_output_context(ctx: OutputContext) -> None:
    """Set the global output context. Called by CLI main callback."""
    global _ctx
    _ctx = ctx
