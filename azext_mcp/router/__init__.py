"""The ``azure`` tool: request classification, intent resolution and dispatch."""

from azext_mcp.router.modes import Outcome, RouterMode, RouterRequest
from azext_mcp.router.resolver import MISS, IntentMatch, IntentResolver, Sampler
from azext_mcp.router.router import CapabilityRouter, RouterResult

__all__ = [
    "CapabilityRouter",
    "IntentMatch",
    "IntentResolver",
    "MISS",
    "Outcome",
    "RouterMode",
    "RouterRequest",
    "RouterResult",
    "Sampler",
]
