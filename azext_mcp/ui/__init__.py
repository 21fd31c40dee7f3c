"""Rich-based console output for the ``az mcp`` commands."""

from azext_mcp.ui.console import (
    Console,
    console,
)

__all__ = [
    "Console",
    "console",
]
