"""Live MCP client session for one provider.

Wraps a :class:`~azext_mcp.mcp.transport.Transport` with the MCP
handshake and the two calls the router needs (``tools/list`` and
``tools/call``).  Calls on one client are serialised: a provider sees at
most one in-flight request from the router at a time.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from azext_mcp.mcp.base import (
    LATEST_PROTOCOL_VERSION,
    CapabilityDescriptor,
    MCPClientInfo,
    ServerHandshake,
    short_name,
)
from azext_mcp.mcp.transport import CancelToken, Transport

# Guard against providers that keep returning a cursor.
_MAX_PAGES = 50


class ProviderClient:
    """One negotiated MCP session with a capability provider."""

    def __init__(
        self,
        provider_id: str,
        transport: Transport,
        client_info: MCPClientInfo | None = None,
        protocol_version: str = LATEST_PROTOCOL_VERSION,
    ):
        self.provider_id = provider_id
        self.transport = transport
        self.client_info = client_info or MCPClientInfo()
        self.requested_protocol_version = protocol_version
        self.handshake: ServerHandshake | None = None
        self.logger = logging.getLogger(f"mcp.{short_name(provider_id)}")
        self._lock = threading.Lock()

    @property
    def protocol_version(self) -> str:
        """Protocol revision the provider agreed to (empty before initialize)."""
        return self.handshake.protocol_version if self.handshake else ""

    @property
    def server_info(self) -> dict[str, Any]:
        return self.handshake.server_info if self.handshake else {}

    @property
    def capabilities(self) -> dict[str, Any]:
        return self.handshake.capabilities if self.handshake else {}

    @property
    def connected(self) -> bool:
        return self.transport.connected

    def initialize(self, cancel: CancelToken | None = None) -> ServerHandshake:
        """Run the ``initialize`` handshake and announce readiness."""
        with self._lock:
            result = self.transport.request("initialize", {
                "protocolVersion": self.requested_protocol_version,
                "capabilities": {},
                "clientInfo": self.client_info.to_dict(),
            }, cancel)
            self.handshake = ServerHandshake(
                protocol_version=result.get("protocolVersion", self.requested_protocol_version),
                server_info=result.get("serverInfo") or {},
                capabilities=result.get("capabilities") or {},
                instructions=result.get("instructions") or "",
            )
            self.transport.notify("notifications/initialized", {})

        self.logger.debug(
            "Connected to %s (protocol %s)",
            self.server_info.get("name", self.provider_id),
            self.protocol_version,
        )
        return self.handshake

    def list_tools(self, cancel: CancelToken | None = None) -> list[CapabilityDescriptor]:
        """Return every capability the provider exposes, following cursors."""
        capabilities: list[CapabilityDescriptor] = []
        cursor = None
        with self._lock:
            for _ in range(_MAX_PAGES):
                params = {"cursor": cursor} if cursor else {}
                result = self.transport.request("tools/list", params, cancel)
                for tool in result.get("tools", []):
                    if isinstance(tool, dict) and tool.get("name"):
                        capabilities.append(CapabilityDescriptor.from_tool(tool, self.provider_id))
                cursor = result.get("nextCursor")
                if not cursor:
                    break
            else:
                self.logger.warning("Stopped paging tools after %d pages", _MAX_PAGES)
        return capabilities

    def call_tool(
        self,
        name: str,
        arguments: dict | None = None,
        cancel: CancelToken | None = None,
    ) -> dict[str, Any]:
        """Invoke *name* and return the provider's ``CallToolResult`` untouched."""
        self.logger.debug("Calling %s", name)
        with self._lock:
            return self.transport.request(
                "tools/call",
                {"name": name, "arguments": arguments or {}},
                cancel,
            )

    def close(self) -> None:
        self.transport.close()
