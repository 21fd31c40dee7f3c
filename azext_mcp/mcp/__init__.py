"""MCP provider plumbing.

Discovers capability providers, establishes and caches one client session
per provider, and speaks JSON-RPC to them over stdio or streamable HTTP.

Public API:
    ProviderDescriptor    -- Identity and launch recipe for a provider
    CapabilityDescriptor  -- One operation exposed by a provider
    ProviderRegistry      -- Discovery (extension manager + manifest)
    ProviderClientCache   -- Lazy, per-provider client establishment
    ProviderClient        -- Live MCP session
    CancelToken           -- Cancellation for in-flight requests
"""

from azext_mcp.mcp.base import (
    CapabilityDescriptor,
    DiscoveryError,
    MCPClientInfo,
    MCPError,
    ProviderDescriptor,
    ProviderStartError,
    RemoteCallError,
    RemoteLaunch,
    RequestCancelled,
    SubprocessLaunch,
    TransportError,
)
from azext_mcp.mcp.client import ProviderClient
from azext_mcp.mcp.extensions import ExtensionManager
from azext_mcp.mcp.manager import ProviderClientCache
from azext_mcp.mcp.registry import ProviderRegistry
from azext_mcp.mcp.transport import CancelToken

__all__ = [
    "CancelToken",
    "CapabilityDescriptor",
    "DiscoveryError",
    "ExtensionManager",
    "MCPClientInfo",
    "MCPError",
    "ProviderClient",
    "ProviderClientCache",
    "ProviderDescriptor",
    "ProviderRegistry",
    "ProviderStartError",
    "RemoteCallError",
    "RemoteLaunch",
    "RequestCancelled",
    "SubprocessLaunch",
    "TransportError",
]
