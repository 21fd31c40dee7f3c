"""Shared test fixtures for azext_mcp tests."""

import copy
from unittest.mock import MagicMock, patch

import pytest

from azext_mcp.config import DEFAULT_CONFIG
from azext_mcp.mcp import (
    ExtensionManager,
    ProviderClientCache,
    ProviderDescriptor,
    ProviderRegistry,
    RemoteCallError,
    RemoteLaunch,
    SubprocessLaunch,
)
from azext_mcp.mcp.transport import Transport
from azext_mcp.router import CapabilityRouter, Sampler


# ------------------------------------------------------------------
# Global: prevent real telemetry HTTP calls during tests
# ------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _no_telemetry_network():
    """Keep telemetry uploads off the network.

    An APPINSIGHTS_CONNECTION_STRING in the developer environment would
    otherwise make every @track-decorated command POST to App Insights.
    """
    with patch("azext_mcp.telemetry._upload", return_value=True):
        yield


# ------------------------------------------------------------------
# Factories
# ------------------------------------------------------------------

def make_descriptor(provider_id="mcp.storage", *, installed=True, version="1.0.0",
                    latest="1.0.0", namespace=None, description=""):
    """Extension-backed descriptor with sensible defaults."""
    if namespace is None:
        namespace = provider_id
    return ProviderDescriptor(
        id=provider_id,
        display_name=provider_id,
        description=description or f"{provider_id} tools",
        launch_spec=SubprocessLaunch("azd", tuple(p for p in namespace.split(".") if p)),
        installed=installed,
        installed_version=version,
        latest_version=latest,
    )


def make_remote_descriptor(provider_id="learn", url="https://example.test/mcp"):
    return ProviderDescriptor(
        id=provider_id,
        display_name=provider_id,
        description="Remote docs",
        launch_spec=RemoteLaunch(url),
        source="manifest",
    )


def make_tool(name, description="", properties=None, required=None):
    schema = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return {"name": name, "description": description or f"{name} command", "inputSchema": schema}


class FakeProviderTransport(Transport):
    """In-memory MCP provider.

    Answers ``initialize``, ``tools/list`` and ``tools/call`` from the
    given tool list.  ``results`` maps a command name to a canned
    ``CallToolResult`` or to an exception to raise.
    """

    def __init__(self, name, tools, results=None):
        self.name = name
        self.tools = tools
        self.results = results or {}
        self.requests = []
        self.notifications = []
        self.closed = False

    def request(self, method, params, cancel=None):
        self.requests.append((method, params))
        if cancel is not None:
            cancel.raise_if_cancelled()
        if method == "initialize":
            return {
                "protocolVersion": params["protocolVersion"],
                "serverInfo": {"name": self.name, "version": "0.0.1"},
                "capabilities": {"tools": {}},
            }
        if method == "tools/list":
            return {"tools": self.tools}
        if method == "tools/call":
            name = params["name"]
            if name in self.results:
                outcome = self.results[name]
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
            if not any(t["name"] == name for t in self.tools):
                raise RemoteCallError(-32602, f"Unknown tool: {name}")
            return {"content": [{"type": "text", "text": f"{name} ok"}], "isError": False}
        raise RemoteCallError(-32601, f"Method not found: {method}")

    def notify(self, method, params):
        self.notifications.append((method, params))

    def close(self):
        self.closed = True

    @property
    def connected(self):
        return not self.closed

    def calls(self):
        """The ``tools/call`` params received, in order."""
        return [params for method, params in self.requests if method == "tools/call"]


class ScriptedSampler(Sampler):
    """Returns canned completions in order and records the prompts."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.prompts = []

    def create_message(self, messages, system_prompt="", max_tokens=1000, cancel=None):
        self.prompts.append(messages[0]["content"]["text"])
        if not self.answers:
            return "Unknown"
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


# ------------------------------------------------------------------
# Provider fixtures
# ------------------------------------------------------------------

STORAGE_TOOLS = [
    make_tool(
        "list-containers",
        "List blob containers in a storage account",
        {"account": {"type": "string"}},
        ["account"],
    ),
    make_tool("list-accounts", "List storage accounts"),
]

KEYVAULT_TOOLS = [
    make_tool(
        "get-secret",
        "Read a secret from a key vault",
        {"vault": {"type": "string"}, "name": {"type": "string"}},
        ["vault", "name"],
    ),
]

EXTENSION_RECORDS = [
    {
        "id": "mcp.azure",
        "namespace": "mcp.azure",
        "name": "Azure MCP router",
        "description": "The router itself",
        "installed": True,
        "version": "1.0.0",
        "latestVersion": "1.0.0",
    },
    {
        "id": "mcp.storage",
        "namespace": "mcp.storage",
        "name": "Storage",
        "description": "Azure Storage tools",
        "installed": True,
        "version": "1.0.0",
        "latestVersion": "1.0.0",
        "tags": ["azure", "mcp"],
    },
    {
        "id": "mcp.keyvault",
        "namespace": "mcp.keyvault",
        "name": "Key Vault",
        "description": "Azure Key Vault tools",
        "installed": True,
        "version": "1.0.0",
        "latestVersion": "1.0.0",
        "tags": ["azure", "mcp"],
    },
]


@pytest.fixture
def extension_records():
    return copy.deepcopy(EXTENSION_RECORDS)


@pytest.fixture
def fake_extensions(extension_records):
    """ExtensionManager double reporting storage and keyvault (plus the router)."""
    extensions = MagicMock(spec=ExtensionManager)
    extensions.command = "azd"
    extensions.list_providers.return_value = extension_records
    return extensions


@pytest.fixture
def transports():
    """Provider id -> FakeProviderTransport created by the cache."""
    return {}


@pytest.fixture
def provider_tools():
    return {
        "mcp.storage": STORAGE_TOOLS,
        "mcp.keyvault": KEYVAULT_TOOLS,
    }


@pytest.fixture
def transport_factory(transports, provider_tools):
    def _factory(descriptor):
        transport = FakeProviderTransport(descriptor.id, provider_tools.get(descriptor.id, []))
        transports[descriptor.id] = transport
        return transport

    return _factory


@pytest.fixture
def registry(fake_extensions, tmp_path):
    return ProviderRegistry(fake_extensions, manifest_path=tmp_path / "no-manifest.json")


@pytest.fixture
def cache(fake_extensions, transport_factory):
    cache = ProviderClientCache(fake_extensions, transport_factory=transport_factory)
    yield cache
    cache.shutdown_all()


@pytest.fixture
def router(registry, cache):
    return CapabilityRouter(registry, cache)


@pytest.fixture
def sample_config():
    """Return a deep copy of the default config."""
    return copy.deepcopy(DEFAULT_CONFIG)


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    """Point AZURE_MCP_CONFIG at a temp file that does not exist yet."""
    path = tmp_path / "mcp.yaml"
    monkeypatch.setenv("AZURE_MCP_CONFIG", str(path))
    return path
