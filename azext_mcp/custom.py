"""Custom command implementations for az mcp.

These functions are the entry points called by the Azure CLI framework.
Each one maps to a registered command in commands.py.
"""

import json
import logging
import sys
import time

from knack.util import CLIError

from azext_mcp.telemetry import current, track

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# ======================================================================
# Helpers
# ======================================================================

def _load_config():
    """Load router configuration (defaults when no file exists)."""
    from azext_mcp.config import RouterConfig

    config = RouterConfig()
    config.load()
    return config


def _build_router(config):
    """Wire registry, client cache and router from *config*.

    Returns ``(router, cache)``; the caller owns the cache's lifetime.
    """
    from azext_mcp.mcp import ExtensionManager, MCPClientInfo, ProviderClientCache, ProviderRegistry
    from azext_mcp.router import CapabilityRouter

    extensions = ExtensionManager(
        command=config.get("extensions.command"),
        tags=config.get("extensions.tags"),
    )
    registry = ProviderRegistry(
        extensions,
        manifest_path=config.get("manifest.path") or None,
        ignore_ids=config.ignore_ids,
    )
    cache = ProviderClientCache(
        extensions,
        client_info=MCPClientInfo(
            name=config.get("router.name"),
            version=config.get("router.version"),
        ),
        protocol_version=config.get("client.protocol_version"),
        timeout=config.timeout,
    )
    router = CapabilityRouter(
        registry,
        cache,
        sampling_enabled=bool(config.get("sampling.enabled")),
        max_tokens=int(config.get("sampling.max_tokens")),
    )
    return router, cache


def _configure_logging(level: str):
    """Send log output to stderr at *level*; stdout carries the protocol."""
    logging.basicConfig(stream=sys.stderr, level=level, format=_LOG_FORMAT)
    logging.getLogger().setLevel(level)


def _parse_parameters(parameters) -> dict:
    if not parameters:
        return {}
    if isinstance(parameters, dict):
        return parameters
    try:
        parsed = json.loads(parameters)
    except (json.JSONDecodeError, TypeError) as exc:
        raise CLIError(f"--parameters must be a JSON object: {exc}")
    if not isinstance(parsed, dict):
        raise CLIError("--parameters must be a JSON object.")
    return parsed


def _route(cmd, config, request):
    """Run one router request with a short-lived client cache."""
    router, cache = _build_router(config)
    started = time.monotonic()
    with cache:
        result = router.handle(request)
    current(cmd).record_route(result, time.monotonic() - started)

    if result.guidance:
        raise CLIError(result.text)
    return result


# ======================================================================
# Server
# ======================================================================

@track("mcp server start")
def mcp_server_start(cmd, mode=None):
    """Serve the router over stdio until the peer disconnects."""
    from azext_mcp.server import RouterServer

    config = _load_config()
    mode = mode or config.get("server.mode")
    _configure_logging(config.get("logging.level"))

    router, cache = _build_router(config)
    with cache:
        server = RouterServer(
            router,
            mode=mode,
            name=config.get("router.name"),
            version=config.get("router.version"),
            max_workers=int(config.get("server.max_workers")),
            peer_timeout=config.timeout,
            telemetry=current(cmd),
        )
        server.serve()


# ======================================================================
# Providers
# ======================================================================

@track("mcp provider list")
def mcp_provider_list(cmd, json_output=False):
    """List discovered providers."""
    router, _ = _build_router(_load_config())
    providers = [
        {
            **p.to_summary(),
            "source": p.source,
            "installed": p.installed,
            "version": p.installed_version,
            "latestVersion": p.latest_version,
        }
        for p in router.registry.discover()
    ]

    if json_output:
        return providers

    from azext_mcp.ui.console import console

    console.print_header("Providers")
    if not providers:
        console.print_warning("No providers found. Install one with 'azd ext install <id>'.")
        return None
    console.print_providers(providers)
    console.print_dim(f"  {len(providers)} provider(s)")
    return None


@track("mcp provider show")
def mcp_provider_show(cmd, name=None, json_output=False):
    """List a provider's commands."""
    from azext_mcp.router import RouterRequest

    if not name:
        raise CLIError("--name is required.")

    result = _route(cmd, _load_config(), RouterRequest(provider_id=name, learn=True))
    capabilities = [c.to_tool() for c in result.capabilities]

    if json_output:
        return capabilities

    from azext_mcp.ui.console import console

    console.print_header(f"{result.provider.name} ({result.provider.id})")
    if result.provider.description:
        console.print_dim(f"  {result.provider.description}")
        console.print()
    console.print_capabilities(capabilities)
    console.print_dim(f"  {len(capabilities)} command(s)")
    return None


@track("mcp provider call")
def mcp_provider_call(cmd, name=None, command=None, parameters=None, json_output=False):
    """Invoke a provider command and print its result."""
    from azext_mcp.router import RouterRequest

    if not name:
        raise CLIError("--name is required.")
    if not command:
        raise CLIError("--command is required.")

    request = RouterRequest(provider_id=name, command=command, parameters=_parse_parameters(parameters))
    result = _route(cmd, _load_config(), request)

    if json_output:
        return result.payload

    if result.is_error:
        raise CLIError(result.text or f"'{command}' failed on provider '{name}'.")

    from azext_mcp.ui.console import console

    console.print(result.text, markup=False)
    return None


# ======================================================================
# Config
# ======================================================================

@track("mcp config show")
def mcp_config_show(cmd):
    """Display the effective configuration."""
    return _load_config().to_dict()


@track("mcp config get")
def mcp_config_get(cmd, key=None):
    """Get a single configuration value by dot-separated key."""
    if not key:
        raise CLIError("--key is required.")

    value = _load_config().get(key)
    if value is None:
        raise CLIError(f"Key '{key}' not found in configuration.")
    return {"key": key, "value": value}


@track("mcp config set")
def mcp_config_set(cmd, key=None, value=None):
    """Set a configuration value."""
    if not key:
        raise CLIError("--key is required.")
    if value is None:
        raise CLIError("--value is required.")

    config = _load_config()

    # Try to parse value as JSON for structured values
    try:
        parsed = json.loads(value)
        config.set(key, parsed)
    except (json.JSONDecodeError, TypeError):
        config.set(key, value)

    return {"key": key, "value": config.get(key), "status": "updated"}
