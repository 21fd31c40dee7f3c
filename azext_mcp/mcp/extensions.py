"""Extension manager adapter (``azd ext ...``).

Every MCP capability provider is distributed as an ``azd`` extension tagged
``azure`` and ``mcp``.  This module lists, installs and upgrades them by
shelling out to the extension manager and raises
:class:`ExtensionManagerError` on any non-zero exit or unusable output.
"""

from __future__ import annotations

import json
import logging
import subprocess

from azext_mcp.mcp.base import ExtensionManagerError

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = "azd"
DEFAULT_TAGS = ("azure", "mcp")


class ExtensionManager:
    """Thin wrapper around the ``azd ext`` command group."""

    def __init__(self, command: str = DEFAULT_COMMAND, tags: list[str] | tuple[str, ...] = DEFAULT_TAGS):
        self.command = command or DEFAULT_COMMAND
        self.tags = tuple(tags) if tags else DEFAULT_TAGS

    def list_providers(self) -> list[dict]:
        """Return the raw extension records matching the provider tags.

        Each record carries ``id``, ``namespace``, ``description``,
        ``version``, ``latestVersion`` and ``installed`` (plus whatever else
        the extension manager reports).
        """
        result = self._run(["ext", "list", "--tags", ",".join(self.tags), "--output", "json"])
        output = result.stdout.strip()
        if not output:
            return []
        try:
            records = json.loads(output)
        except json.JSONDecodeError as exc:
            raise ExtensionManagerError(f"Failed to parse extension metadata: {exc}") from exc

        if records is None:
            return []
        if not isinstance(records, list):
            raise ExtensionManagerError(
                f"Failed to parse extension metadata: expected a list, got {type(records).__name__}"
            )
        for record in records:
            if not isinstance(record, dict) or not record.get("id"):
                raise ExtensionManagerError("Failed to parse extension metadata: entry without an id")
        return records

    def install(self, extension_id: str) -> None:
        """Install *extension_id*; runs to completion."""
        logger.info("Installing extension %s", extension_id)
        self._run(["ext", "install", extension_id], action=f"install extension {extension_id}")

    def upgrade(self, extension_id: str) -> None:
        """Upgrade *extension_id* to its latest version; runs to completion."""
        logger.info("Upgrading extension %s", extension_id)
        self._run(["ext", "upgrade", extension_id], action=f"upgrade extension {extension_id}")

    def _run(self, args: list[str], action: str = "get extension metadata") -> subprocess.CompletedProcess:
        cmd = [self.command] + args
        logger.debug("Running: %s", " ".join(cmd))

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise ExtensionManagerError(f"Failed to {action}: could not run '{self.command}': {exc}") from exc

        if result.returncode != 0:
            error_msg = (result.stderr or "").strip() or (result.stdout or "").strip()
            raise ExtensionManagerError(
                f"Failed to {action} (exit code {result.returncode}): {error_msg}"
            )
        return result
