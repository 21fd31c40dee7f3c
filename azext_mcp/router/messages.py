"""Caller-facing texts and result builders for the ``azure`` tool.

Every non-fatal outcome is returned to the caller as a successful text
result so an agent can read the remediation and keep going.
"""

from __future__ import annotations

import json
from typing import Any

from azext_mcp.mcp.base import CapabilityDescriptor, ProviderDescriptor

TOOL_NAME = "azure"

TOOL_DESCRIPTION = (
    "This server/tool provides real-time, programmatic access to all Azure products, "
    "services, and resources, as well as all interactions with the Azure Developer CLI (azd).\n"
    "Use this tool for any Azure control plane or data plane operation, including resource "
    "management and automation.\n"
    'To discover available capabilities, call the tool with the "learn" parameter to get a '
    "list of top-level tools.\n"
    'To explore further, set "learn" and specify a tool name to retrieve supported commands '
    "and their parameters.\n"
    'To execute an action, set the "tool", "command", and convert the users intent into the '
    '"parameters" based on the discovered schema.\n'
    'Always use this tool for any Azure or "azd" related operation requiring up-to-date, '
    "dynamic, and interactive capabilities."
)

TOOL_INPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "intent": {
            "type": "string",
            "description": "The intent of the operation the user wants to perform against azure.",
        },
        "tool": {
            "type": "string",
            "description": "The azure tool to use to execute the operation.",
        },
        "command": {
            "type": "string",
            "description": "The command to execute against the specified tool.",
        },
        "parameters": {
            "type": "object",
            "description": "The parameters to pass to the tool command.",
        },
        "learn": {
            "type": "boolean",
            "description": "To learn about the tool and its supported child tools and parameters.",
            "default": False,
        },
    },
}

UNDERSPECIFIED = (
    'The "tool" and "command" parameters are required when not learning.\n'
    'Run again with the "learn" argument to get a list of available tools and their parameters.\n'
    'To learn about a specific tool, use the "learn" argument and the "tool" argument with the name of the tool.\n'
    'To execute a command, use the "tool", "command" and "parameters" arguments without "learn".'
)


def tool_definition() -> dict[str, Any]:
    """The single tool the router advertises."""
    return {
        "name": TOOL_NAME,
        "description": TOOL_DESCRIPTION,
        "inputSchema": TOOL_INPUT_SCHEMA,
    }


def text_result(text: str) -> dict[str, Any]:
    """Wrap *text* in an MCP ``CallToolResult``."""
    return {"content": [{"type": "text", "text": text}], "isError": False}


def result_text(result: dict[str, Any]) -> str:
    """Concatenate the text parts of a ``CallToolResult``."""
    parts = []
    for item in result.get("content") or []:
        if isinstance(item, dict) and item.get("type") == "text":
            parts.append(str(item.get("text", "")))
    return "\n".join(parts)


# ------------------------------------------------------------------ #
# Listings
# ------------------------------------------------------------------ #


def providers_listing(providers: list[ProviderDescriptor]) -> str:
    tools = json.dumps({"tools": [p.to_summary() for p in providers]}, indent=2)
    return (
        "Here are the available list of tools.\n"
        'Next, identify the tool you want to learn about and run again with the "learn" '
        'argument and the "tool" name to get a list of available commands and their parameters.\n'
        "\n"
        f"{tools}"
    )


def capabilities_listing(provider: str, capabilities: list[CapabilityDescriptor]) -> str:
    tools = json.dumps({"tools": [c.to_tool() for c in capabilities]}, indent=2)
    return (
        f"Here are the available command and their parameters for '{provider}' tool.\n"
        'If you do not find a suitable tool, run again with the "learn" argument and empty '
        '"tool" to get a list of available tools and their parameters.\n'
        'Next, identify the command you want to execute and run again with the "tool", '
        '"command", and "parameters" arguments.\n'
        "\n"
        f"{tools}"
    )


# ------------------------------------------------------------------ #
# Failures
# ------------------------------------------------------------------ #


def provider_not_found(provider: str) -> str:
    return (
        f"Tool '{provider}' not found.\n"
        'Run again with the "learn" argument and empty "tool" to get a list of available '
        "tools and their parameters."
    )


def provider_start_failed(provider: str, error: Exception) -> str:
    return (
        "There was an error connecting to the tool.\n"
        f"Failed to get tool: {provider}\n"
        f"Error: {error}"
    )


def invocation_failed(provider: str, command: str, error: Exception) -> str:
    return (
        "There was an error finding or calling tool and command.\n"
        f"Failed to call tool: {provider}, command: {command}\n"
        f"Error: {error}\n"
        "\n"
        'Run again with the "learn" argument and the "tool" name to get a list of available '
        "tools and their parameters."
    )


def learn_failed(provider: str, error: Exception) -> str:
    return (
        "There was an error listing the commands of the tool.\n"
        f"Failed to learn tool: {provider}\n"
        f"Error: {error}\n"
        "\n"
        'Run again with the "learn" argument and empty "tool" to get a list of available '
        "tools and their parameters."
    )


def provider_disconnected(provider: str, error: Exception, command: str = "") -> str:
    target = f"{provider}, command: {command}" if command else provider
    return (
        "The connection to the tool was lost and has been reset.\n"
        f"Lost tool: {target}\n"
        f"Error: {error}\n"
        "\n"
        "Run the same request again to restart the tool."
    )
