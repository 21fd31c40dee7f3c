"""Rich-based console utilities for styled CLI output.

Used by the ``az mcp`` commands for listings and status lines.  Never used
while the router is serving over stdio: stdout belongs to the protocol
there.
"""

from __future__ import annotations

from rich.console import Console as RichConsole
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

# -------------------------------------------------------------------- #
# Color scheme
# -------------------------------------------------------------------- #

THEME = Theme({
    # Background/secondary text
    "dim": "#888888",
    "muted": "#666666",

    "content": "bright_white",

    # Callouts and highlights
    "warning": "bright_yellow",
    "accent": "bright_magenta",

    "border": "#555555",

    # Provider / command names
    "provider": "bright_cyan bold",
    "command": "bright_magenta",
})


class Console:
    """Styled console output with semantic styles."""

    def __init__(self, stderr: bool = False):
        self._console = RichConsole(theme=THEME, highlight=False, stderr=stderr)

    # ------------------------------------------------------------------ #
    # Basic output
    # ------------------------------------------------------------------ #

    def print(self, message: str = "", style: str | None = None, **kwargs):
        self._console.print(message, style=style, **kwargs)

    def print_dim(self, message: str):
        self._console.print(message, style="dim")

    def print_warning(self, message: str):
        self._console.print(f"[warning]![/warning] {message}")

    def print_header(self, title: str):
        self._console.print()
        self._console.print(f"[accent bold]{title}[/accent bold]")
        self._console.print()

    # ------------------------------------------------------------------ #
    # Structured output
    # ------------------------------------------------------------------ #

    def print_providers(self, providers: list[dict]):
        """Render discovery results (``name``, ``id``, ``description``, ``source``)."""
        table = Table(border_style="border", header_style="accent bold", expand=False)
        table.add_column("Name", style="provider", no_wrap=True)
        table.add_column("Id", style="dim", no_wrap=True)
        table.add_column("Source", style="muted")
        table.add_column("Description", style="content")
        for p in providers:
            table.add_row(
                escape(p.get("name", "")),
                escape(p.get("id", "")),
                escape(p.get("source", "")),
                escape(p.get("description", "")),
            )
        self._console.print(table)

    def print_capabilities(self, capabilities: list[dict]):
        """Render a provider's commands with their parameter names."""
        table = Table(border_style="border", header_style="accent bold", expand=False)
        table.add_column("Command", style="command", no_wrap=True)
        table.add_column("Parameters", style="dim")
        table.add_column("Description", style="content")
        for c in capabilities:
            schema = c.get("inputSchema") or {}
            required = set(schema.get("required") or [])
            params = [
                f"{name}*" if name in required else name
                for name in (schema.get("properties") or {})
            ]
            table.add_row(
                escape(c.get("name", "")),
                escape(", ".join(params)),
                escape(c.get("description", "")),
            )
        self._console.print(table)


# Module-level singleton
console = Console()
