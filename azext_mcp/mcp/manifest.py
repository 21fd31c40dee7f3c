"""Bundled manifest of remote MCP providers.

The manifest (``resources/mcp.json``) lists providers that are already
running somewhere and are reached over streamable HTTP::

    {"servers": [{"name": "learn", "description": "...", "url": "https://..."}]}

A missing, empty or unreadable manifest contributes nothing.  Entries
without a ``url`` are kept; the failure surfaces when a client is created
for them.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from azext_mcp.mcp.base import ProviderDescriptor, RemoteLaunch

logger = logging.getLogger(__name__)

BUNDLED_MANIFEST = Path(__file__).resolve().parent.parent / "resources" / "mcp.json"


def load_manifest(path: str | Path | None = None) -> list[ProviderDescriptor]:
    """Read the manifest at *path* (default: the bundled one)."""
    manifest_path = Path(path).expanduser() if path else BUNDLED_MANIFEST
    if not manifest_path.is_file():
        logger.debug("No manifest at %s", manifest_path)
        return []

    try:
        text = manifest_path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not read manifest %s: %s", manifest_path, exc)
        return []
    if not text.strip():
        return []

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring malformed manifest %s: %s", manifest_path, exc)
        return []

    servers = data.get("servers") if isinstance(data, dict) else None
    if not isinstance(servers, list):
        if servers is not None or not isinstance(data, dict):
            logger.warning("Ignoring manifest %s: 'servers' must be a list", manifest_path)
        return []

    descriptors: list[ProviderDescriptor] = []
    for entry in servers:
        if not isinstance(entry, dict):
            continue
        # Keys are matched case-insensitively ("Name", "URL", ...)
        entry = {str(k).lower(): v for k, v in entry.items()}
        provider_id = str(entry.get("id") or entry.get("name") or "").strip()
        if not provider_id:
            logger.warning("Skipping manifest entry without a name in %s", manifest_path)
            continue
        descriptors.append(ProviderDescriptor(
            id=provider_id,
            display_name=str(entry.get("name") or provider_id),
            description=str(entry.get("description") or ""),
            launch_spec=RemoteLaunch(url=str(entry.get("url") or "")),
            source="manifest",
        ))
    return descriptors
