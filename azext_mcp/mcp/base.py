"""Provider data model and error taxonomy.

Defines the descriptors the router passes between discovery, the client
cache and the tool facade, plus the exceptions raised along the way.

A provider is launched one of two ways, modelled as a tagged variant:

- :class:`SubprocessLaunch` -- an extension started through the extension
  manager and spoken to over its standard streams.
- :class:`RemoteLaunch` -- an already-running endpoint reached over
  streamable HTTP.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from knack.util import CLIError

# MCP protocol revision requested during the ``initialize`` handshake.
LATEST_PROTOCOL_VERSION = "2025-03-26"

# Namespace prefix shared by provider ids (``mcp.storage`` -> ``storage``).
PROVIDER_ID_PREFIX = "mcp."


# -------------------------------------------------------------------- #
# Data model
# -------------------------------------------------------------------- #


@dataclass
class MCPClientInfo:
    """Router identity sent during the ``initialize`` handshake.

    Centralises the name and version so transports never hard-code them.
    """

    name: str = "mcp.azure"
    version: str = "1.0.0"

    def to_dict(self) -> dict[str, str]:
        """Serialise for the MCP ``initialize`` request."""
        return {"name": self.name, "version": self.version}


@dataclass(frozen=True)
class SubprocessLaunch:
    """Provider started as a child process (``azd <namespace...> server start``)."""

    command: str
    args: tuple[str, ...] = ()

    kind = "subprocess"


@dataclass(frozen=True)
class RemoteLaunch:
    """Provider reached over streamable HTTP."""

    url: str

    kind = "remote"


LaunchSpec = Union[SubprocessLaunch, RemoteLaunch]


@dataclass(frozen=True)
class ProviderDescriptor:
    """Identity and connection recipe for one capability provider.

    Built fresh on every discovery call and never mutated afterwards.
    """

    id: str
    display_name: str
    description: str
    launch_spec: LaunchSpec
    installed: bool = True
    installed_version: str = ""
    latest_version: str = ""
    source: str = "extension"  # "extension" | "manifest"
    tags: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        """Short name shown to callers (namespace prefix stripped)."""
        return short_name(self.id)

    def to_summary(self) -> dict[str, str]:
        """Discovery listing entry: identity and description only."""
        return {"name": self.name, "id": self.id, "description": self.description}


@dataclass
class CapabilityDescriptor:
    """One invocable operation exposed by a provider."""

    name: str
    description: str
    input_schema: dict  # JSON Schema for arguments
    provider_id: str  # Which provider owns this capability

    @classmethod
    def from_tool(cls, tool: dict, provider_id: str) -> CapabilityDescriptor:
        """Build from an MCP ``tools/list`` entry."""
        return cls(
            name=tool["name"],
            description=tool.get("description", "") or "",
            input_schema=tool.get("inputSchema") or {"type": "object", "properties": {}},
            provider_id=provider_id,
        )

    def to_tool(self) -> dict[str, Any]:
        """Serialise back to the MCP tool shape shown to callers."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class ServerHandshake:
    """What a provider reported in its ``initialize`` result."""

    protocol_version: str
    server_info: dict[str, Any] = field(default_factory=dict)
    capabilities: dict[str, Any] = field(default_factory=dict)
    instructions: str = ""


def short_name(provider_id: str) -> str:
    """``mcp.storage`` -> ``storage``; ids without the prefix are unchanged."""
    if provider_id.lower().startswith(PROVIDER_ID_PREFIX):
        return provider_id[len(PROVIDER_ID_PREFIX):]
    return provider_id


# -------------------------------------------------------------------- #
# Errors
# -------------------------------------------------------------------- #


class MCPError(Exception):
    """Base class for provider connection and call failures."""


class TransportError(MCPError):
    """The transport could not deliver a request or read its response."""


class RemoteCallError(TransportError):
    """The provider answered a request with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.remote_message = message
        self.data = data


class RequestCancelled(TransportError):
    """The caller cancelled the request while it was in flight."""


class ProviderStartError(MCPError):
    """Install, upgrade, spawn, connect or handshake failed for a provider."""

    def __init__(self, provider_id: str, message: str):
        super().__init__(message)
        self.provider_id = provider_id


class ExtensionManagerError(CLIError):
    """The extension manager command failed or returned unusable output."""


class DiscoveryError(CLIError):
    """Provider discovery could not produce a trustworthy catalog."""
