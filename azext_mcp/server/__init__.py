"""MCP server front-end for the router."""

from azext_mcp.server.stdio import PeerSampler, RouterServer

__all__ = ["PeerSampler", "RouterServer"]
