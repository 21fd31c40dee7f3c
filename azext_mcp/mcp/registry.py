"""Provider registry -- discovery and name resolution.

Builds the catalog of capability providers from two sources:

  1. Extensions reported by the extension manager (launched over stdio)
  2. Entries in the bundled manifest (reached over streamable HTTP)

Ids are unique case-insensitively; when both sources report the same id the
extension wins.  The router's own id(s) never appear.  The catalog is
rebuilt on every :meth:`ProviderRegistry.discover` call and nothing is
remembered between calls.
"""

from __future__ import annotations

import logging
from pathlib import Path

from azext_mcp.mcp.base import (
    DiscoveryError,
    ExtensionManagerError,
    ProviderDescriptor,
    SubprocessLaunch,
)
from azext_mcp.mcp.extensions import ExtensionManager
from azext_mcp.mcp.manifest import load_manifest

logger = logging.getLogger(__name__)

# Router implementations that register themselves under the same tags.
DEFAULT_IGNORE_IDS = ("mcp.azure", "mcp.azure.csharp", "mcp.azure.ts")


def descriptor_from_extension(record: dict, command: str = "azd") -> ProviderDescriptor:
    """Translate one extension-manager record into a descriptor.

    The launch arguments are the namespace segments
    (``mcp.storage`` -> ``["mcp", "storage"]``); ``server start`` is
    appended when the provider is spawned.
    """
    provider_id = str(record["id"])
    namespace = str(record.get("namespace") or "")
    return ProviderDescriptor(
        id=provider_id,
        display_name=str(record.get("name") or provider_id),
        description=str(record.get("description") or ""),
        launch_spec=SubprocessLaunch(
            command=command,
            args=tuple(part for part in namespace.split(".") if part),
        ),
        installed=bool(record.get("installed", False)),
        installed_version=str(record.get("version") or ""),
        latest_version=str(record.get("latestVersion") or ""),
        source="extension",
        tags=tuple(record.get("tags") or ()),
    )


class ProviderRegistry:
    """Discovers providers on demand."""

    def __init__(
        self,
        extensions: ExtensionManager | None = None,
        manifest_path: str | Path | None = None,
        ignore_ids: list[str] | tuple[str, ...] = DEFAULT_IGNORE_IDS,
    ):
        self.extensions = extensions or ExtensionManager()
        self.manifest_path = manifest_path
        self.ignore_ids = {i.lower() for i in ignore_ids}

    # ------------------------------------------------------------------ #
    # Discovery
    # ------------------------------------------------------------------ #

    def discover(self) -> list[ProviderDescriptor]:
        """Return the merged catalog: extensions first, then manifest entries.

        Raises :class:`DiscoveryError` if the extension manager fails.  A
        partial catalog is never returned.
        """
        try:
            records = self.extensions.list_providers()
        except ExtensionManagerError as exc:
            raise DiscoveryError(f"Provider discovery failed: {exc}") from exc

        catalog: dict[str, ProviderDescriptor] = {}
        for record in records:
            self._add(catalog, descriptor_from_extension(record, self.extensions.command))
        for descriptor in load_manifest(self.manifest_path):
            self._add(catalog, descriptor)

        logger.debug("Discovered %d provider(s)", len(catalog))
        return list(catalog.values())

    def _add(self, catalog: dict[str, ProviderDescriptor], descriptor: ProviderDescriptor) -> None:
        key = descriptor.id.lower()
        if key in self.ignore_ids:
            return
        if key in catalog:
            logger.debug(
                "Ignoring %s entry for '%s'; already provided by %s",
                descriptor.source, descriptor.id, catalog[key].source,
            )
            return
        catalog[key] = descriptor

    # ------------------------------------------------------------------ #
    # Resolution
    # ------------------------------------------------------------------ #

    @staticmethod
    def find(name: str, catalog: list[ProviderDescriptor]) -> ProviderDescriptor | None:
        """Resolve *name* by id, then by short name, case-insensitively."""
        if not name:
            return None
        wanted = name.strip().lower()
        for descriptor in catalog:
            if descriptor.id.lower() == wanted:
                return descriptor
        for descriptor in catalog:
            if descriptor.name.lower() == wanted:
                return descriptor
        return None
