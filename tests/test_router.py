"""Tests for the capability router: classification, learn, invoke, sampling."""

import json
import sys
import threading
import time
from pathlib import Path

import pytest

from azext_mcp.mcp.base import DiscoveryError, ExtensionManagerError, RemoteCallError, TransportError
from azext_mcp.mcp.manager import ProviderClientCache
from azext_mcp.mcp.transport import CancelToken, StdioTransport
from azext_mcp.router import CapabilityRouter, Outcome, RouterMode, RouterRequest
from azext_mcp.router.messages import UNDERSPECIFIED

from conftest import FakeProviderTransport, ScriptedSampler


def _listing(result):
    """Parse the JSON block that follows the guidance preamble."""
    text = result.text
    return json.loads(text[text.index("{"):])


# ======================================================================
# Classification
# ======================================================================


class TestClassify:
    @pytest.mark.parametrize("arguments,mode", [
        ({"learn": True}, RouterMode.ROOT_LEARN),
        ({"learn": True, "intent": "list storage accounts"}, RouterMode.ROOT_LEARN),
        ({"intent": "list storage accounts"}, RouterMode.ROOT_LEARN),
        ({"learn": True, "tool": "storage"}, RouterMode.PROVIDER_LEARN),
        ({"learn": "true", "provider": "storage"}, RouterMode.PROVIDER_LEARN),
        ({"tool": "storage", "command": "list-accounts"}, RouterMode.INVOKE),
        ({"providerId": "storage", "command": "list-accounts", "parameters": {}}, RouterMode.INVOKE),
        ({}, RouterMode.UNDERSPECIFIED),
        ({"tool": "storage"}, RouterMode.UNDERSPECIFIED),
        ({"command": "list-accounts"}, RouterMode.UNDERSPECIFIED),
        ({"learn": True, "command": "list-accounts"}, RouterMode.UNDERSPECIFIED),
        ({"learn": True, "tool": "storage", "command": "list-accounts"}, RouterMode.UNDERSPECIFIED),
        ({"intent": "x", "tool": "storage"}, RouterMode.UNDERSPECIFIED),
        ({"learn": False, "tool": "  ", "command": ""}, RouterMode.UNDERSPECIFIED),
    ])
    def test_modes(self, arguments, mode):
        assert RouterRequest.from_arguments(arguments).classify() is mode

    def test_parameters_accept_json_string(self):
        request = RouterRequest.from_arguments({"parameters": '{"account": "a1"}'})
        assert request.parameters == {"account": "a1"}

    @pytest.mark.parametrize("value", ["not json", "[1, 2]", 7, None])
    def test_unusable_parameters_become_empty(self, value):
        assert RouterRequest.from_arguments({"parameters": value}).parameters == {}

    def test_non_dict_arguments(self):
        assert RouterRequest.from_arguments(None).classify() is RouterMode.UNDERSPECIFIED


# ======================================================================
# Root-Learn
# ======================================================================


class TestRootLearn:
    def test_lists_providers_without_router(self, router):
        result = router.handle(RouterRequest(learn=True))
        assert result.mode is RouterMode.ROOT_LEARN
        assert not result.guidance
        assert result.outcome is Outcome.LISTING
        assert not result.is_error
        tools = _listing(result)["tools"]
        assert tools == [
            {"name": "storage", "id": "mcp.storage", "description": "Azure Storage tools"},
            {"name": "keyvault", "id": "mcp.keyvault", "description": "Azure Key Vault tools"},
        ]
        assert 'run again with the "learn" argument' in result.text

    def test_starts_no_provider(self, router, cache, fake_extensions):
        router.handle(RouterRequest(learn=True))
        assert len(cache) == 0
        fake_extensions.install.assert_not_called()

    def test_empty_catalog_is_not_an_error(self, router, extension_records):
        extension_records.clear()
        result = router.handle(RouterRequest(learn=True))
        assert _listing(result) == {"tools": []}

    def test_discovery_failure_raises(self, router, fake_extensions):
        fake_extensions.list_providers.side_effect = ExtensionManagerError("Failed to parse extension metadata: x")
        with pytest.raises(DiscoveryError):
            router.handle(RouterRequest(learn=True))


# ======================================================================
# Provider-Learn
# ======================================================================


class TestProviderLearn:
    def test_lists_capabilities(self, router):
        result = router.handle(RouterRequest(provider_id="storage", learn=True))
        assert result.mode is RouterMode.PROVIDER_LEARN
        assert result.provider.id == "mcp.storage"
        assert [c.name for c in result.capabilities] == ["list-containers", "list-accounts"]
        tools = _listing(result)["tools"]
        assert tools[0]["inputSchema"]["required"] == ["account"]
        assert "for 'storage' tool" in result.text

    def test_unknown_provider_guidance(self, router, cache):
        result = router.handle(RouterRequest(provider_id="cosmos", learn=True))
        assert result.guidance
        assert result.outcome is Outcome.NOT_FOUND
        assert not result.is_error
        assert "Tool 'cosmos' not found" in result.text
        assert len(cache) == 0

    def test_start_failure_guidance(self, router, fake_extensions, extension_records):
        extension_records[1]["installed"] = False
        fake_extensions.install.side_effect = ExtensionManagerError("Failed to install extension mcp.storage (exit code 1): offline")
        result = router.handle(RouterRequest(provider_id="storage", learn=True))
        assert result.guidance
        assert "Failed to get tool: storage" in result.text
        assert result.outcome is Outcome.START_FAILED
        assert "offline" in result.text

    def test_listing_failure_guidance(self, router, provider_tools, cache):
        class BrokenList(FakeProviderTransport):
            def request(self, method, params, cancel=None):
                if method == "tools/list":
                    raise TransportError("pipe closed")
                return super().request(method, params, cancel)

        cache._transport_factory = lambda d: BrokenList(d.id, [])
        result = router.handle(RouterRequest(provider_id="storage", learn=True))
        assert result.guidance
        assert "pipe closed" in result.text
        assert "Lost tool: storage\n" in result.text
        assert result.outcome is Outcome.DISCONNECTED
        assert len(cache) == 0

    def test_listing_remote_error_keeps_client(self, router, cache):
        class RefusingList(FakeProviderTransport):
            def request(self, method, params, cancel=None):
                if method == "tools/list":
                    raise RemoteCallError(-32603, "listing unavailable")
                return super().request(method, params, cancel)

        cache._transport_factory = lambda d: RefusingList(d.id, [])
        result = router.handle(RouterRequest(provider_id="storage", learn=True))
        assert "Failed to learn tool: storage" in result.text
        assert "mcp.storage" in cache

    def test_reuses_cached_client(self, router, transports, fake_extensions):
        router.handle(RouterRequest(provider_id="storage", learn=True))
        router.handle(RouterRequest(provider_id="mcp.storage", learn=True))
        methods = [m for m, _ in transports["mcp.storage"].requests]
        assert methods.count("initialize") == 1
        assert methods.count("tools/list") == 2


# ======================================================================
# Invoke
# ======================================================================


class TestInvoke:
    def test_end_to_end_storage_then_keyvault(self, router, transports, cache):
        storage = router.handle(RouterRequest(
            provider_id="storage", command="list-containers", parameters={"account": "acct1"},
        ))
        assert storage.mode is RouterMode.INVOKE
        assert storage.payload == {"content": [{"type": "text", "text": "list-containers ok"}], "isError": False}
        assert transports["mcp.storage"].calls() == [{"name": "list-containers", "arguments": {"account": "acct1"}}]

        keyvault = router.handle(RouterRequest(
            provider_id="mcp.keyvault", command="get-secret", parameters={"vault": "v", "name": "n"},
        ))
        assert keyvault.text == "get-secret ok"
        assert sorted(cache.cached_ids()) == ["mcp.keyvault", "mcp.storage"]

    def test_provider_error_payload_passes_through(self, router, provider_tools, transport_factory, cache, transports):
        payload = {"content": [{"type": "text", "text": "account not found"}], "isError": True}

        def factory(descriptor):
            transport = transport_factory(descriptor)
            transport.results = {"list-containers": payload}
            return transport

        cache._transport_factory = factory
        result = router.handle(RouterRequest(provider_id="storage", command="list-containers"))
        assert result.payload is payload
        assert result.is_error
        assert not result.guidance
        assert result.outcome is Outcome.PROVIDER_ERROR

    def test_unknown_provider_names_it(self, router):
        result = router.handle(RouterRequest(provider_id="mcp.cosmos", command="query"))
        assert result.mode is RouterMode.INVOKE
        assert result.guidance
        assert "mcp.cosmos" in result.text

    def test_unknown_command_guidance(self, router):
        result = router.handle(RouterRequest(provider_id="storage", command="drop-everything"))
        assert result.guidance
        assert "command: drop-everything" in result.text
        assert "Unknown tool: drop-everything" in result.text
        assert result.outcome is Outcome.CALL_FAILED
        assert 'the "tool" name' in result.text

    def test_transport_failure_evicts_and_relaunches(self, router, cache, transport_factory, transports):
        built = []

        def factory(descriptor):
            transport = transport_factory(descriptor)
            if not built:
                transport.results = {"list-accounts": TransportError("Provider 'storage' exited (exit code 1)")}
            built.append(transport)
            return transport

        cache._transport_factory = factory
        result = router.handle(RouterRequest(provider_id="storage", command="list-accounts"))
        assert result.guidance
        assert "The connection to the tool was lost" in result.text
        assert "Lost tool: storage, command: list-accounts" in result.text
        assert "exited" in result.text
        assert built[0].closed
        assert len(cache) == 0

        retry = router.handle(RouterRequest(provider_id="storage", command="list-accounts"))
        assert retry.text == "list-accounts ok"
        assert retry.outcome is Outcome.RESULT
        assert len(built) == 2

    def test_remote_error_keeps_client(self, router, cache, transports):
        router.handle(RouterRequest(provider_id="storage", command="drop-everything"))
        assert "mcp.storage" in cache
        assert not transports["mcp.storage"].closed

    def test_installs_then_upgrades_lazily(self, router, fake_extensions, extension_records):
        extension_records[1]["installed"] = False
        extension_records[2]["version"] = "0.9.0"
        router.handle(RouterRequest(provider_id="storage", command="list-accounts"))
        router.handle(RouterRequest(provider_id="keyvault", command="get-secret"))
        fake_extensions.install.assert_called_once_with("mcp.storage")
        fake_extensions.upgrade.assert_called_once_with("mcp.keyvault")


class TestUnderspecified:
    def test_returns_usage_text(self, router, fake_extensions):
        result = router.handle(RouterRequest(provider_id="storage"))
        assert result.mode is RouterMode.UNDERSPECIFIED
        assert result.outcome is Outcome.USAGE
        assert result.text == UNDERSPECIFIED
        assert not result.is_error
        fake_extensions.list_providers.assert_not_called()


# ======================================================================
# Sampling shortcuts
# ======================================================================


class TestSampling:
    def test_unknown_behaves_like_no_sampling(self, router):
        plain = router.handle(RouterRequest(intent="do a thing", learn=True))
        sampled = router.handle(RouterRequest(intent="do a thing", learn=True), sampler=ScriptedSampler("Unknown"))
        assert sampled.mode is plain.mode is RouterMode.ROOT_LEARN
        assert sampled.payload == plain.payload

    def test_intent_resolves_provider_and_command(self, router, transports):
        sampler = ScriptedSampler(
            '{"tool": "mcp.storage"}',
            '```json\n{"command": "list-containers", "parameters": {"account": "acct1"}}\n```',
        )
        result = router.handle(RouterRequest(intent="list containers in acct1"), sampler=sampler)

        assert result.mode is RouterMode.INVOKE
        assert result.text == "list-containers ok"
        assert transports["mcp.storage"].calls() == [{"name": "list-containers", "arguments": {"account": "acct1"}}]
        assert len(sampler.prompts) == 2
        assert "list containers in acct1" in sampler.prompts[1]

    def test_provider_resolved_command_missed(self, router):
        sampler = ScriptedSampler('{"tool": "storage"}', "Unknown")
        result = router.handle(RouterRequest(intent="something storage-ish", learn=True), sampler=sampler)
        assert result.mode is RouterMode.PROVIDER_LEARN
        assert result.provider.id == "mcp.storage"

    def test_provider_learn_with_intent_shortcuts_to_invoke(self, router):
        sampler = ScriptedSampler('{"command": "list-accounts"}')
        result = router.handle(
            RouterRequest(intent="show accounts", provider_id="storage", learn=True),
            sampler=sampler,
        )
        assert result.mode is RouterMode.INVOKE
        assert result.text == "list-accounts ok"

    def test_hallucinated_provider_falls_back(self, router):
        sampler = ScriptedSampler('{"tool": "mcp.cosmos"}')
        result = router.handle(RouterRequest(intent="query cosmos", learn=True), sampler=sampler)
        assert result.mode is RouterMode.ROOT_LEARN
        assert not result.guidance

    def test_sampler_failure_falls_back(self, router):
        sampler = ScriptedSampler(RuntimeError("sampling rejected"))
        result = router.handle(RouterRequest(intent="x", learn=True), sampler=sampler)
        assert result.mode is RouterMode.ROOT_LEARN

    def test_no_intent_skips_sampling(self, router):
        sampler = ScriptedSampler('{"tool": "storage"}')
        router.handle(RouterRequest(learn=True), sampler=sampler)
        assert sampler.prompts == []

    def test_sampling_disabled(self, registry, cache):
        router = CapabilityRouter(registry, cache, sampling_enabled=False)
        sampler = ScriptedSampler('{"tool": "storage"}')
        result = router.handle(RouterRequest(intent="blobs", learn=True), sampler=sampler)
        assert result.mode is RouterMode.ROOT_LEARN
        assert sampler.prompts == []

    def test_invoke_never_samples(self, router):
        sampler = ScriptedSampler('{"command": "list-accounts"}')
        router.handle(
            RouterRequest(intent="x", provider_id="storage", command="list-containers"),
            sampler=sampler,
        )
        assert sampler.prompts == []


class TestRouterOwnsNoState:
    def test_independent_caches(self, registry, fake_extensions, transport_factory):
        first = ProviderClientCache(fake_extensions, transport_factory=transport_factory)
        second = ProviderClientCache(fake_extensions, transport_factory=transport_factory)
        CapabilityRouter(registry, first).handle(RouterRequest(provider_id="storage", learn=True))
        assert len(first) == 1
        assert len(second) == 0


# ======================================================================
# Provider processes
# ======================================================================


FAKE_PROVIDER = str(Path(__file__).resolve().parent / "fake_mcp_provider.py")


@pytest.fixture
def spawned():
    return []


@pytest.fixture
def process_cache(fake_extensions, spawned):
    """Cache that launches real child processes running the fake provider."""
    def factory(descriptor):
        transport = StdioTransport(sys.executable, ["-u", FAKE_PROVIDER], name=descriptor.name).start()
        spawned.append(transport)
        return transport

    cache = ProviderClientCache(fake_extensions, transport_factory=factory)
    yield cache
    cache.shutdown_all()


class TestProviderProcesses:
    def test_crashed_provider_is_relaunched(self, registry, process_cache, spawned):
        router = CapabilityRouter(registry, process_cache)

        crashed = router.handle(RouterRequest(provider_id="storage", command="exit"))
        assert crashed.guidance
        assert crashed.outcome is Outcome.DISCONNECTED
        assert "The connection to the tool was lost and has been reset" in crashed.text
        assert "Lost tool: storage, command: exit" in crashed.text
        assert "mcp.storage" not in process_cache

        echoed = router.handle(RouterRequest(provider_id="storage", command="echo", parameters={"text": "hi"}))
        assert not echoed.guidance
        assert echoed.text == "hi"
        assert len(spawned) == 2
        assert not spawned[0].connected
        assert spawned[1].connected

    def test_cancel_during_handshake_releases_request(self, registry, fake_extensions):
        hung = []

        def factory(descriptor):
            transport = StdioTransport(
                sys.executable, ["-c", "import time; time.sleep(60)"], name=descriptor.name,
            ).start()
            hung.append(transport)
            return transport

        cache = ProviderClientCache(fake_extensions, transport_factory=factory)
        router = CapabilityRouter(registry, cache)
        token = CancelToken()
        results = []
        worker = threading.Thread(target=lambda: results.append(
            router.handle(RouterRequest(provider_id="storage", command="echo"), cancel=token)
        ))
        worker.start()
        try:
            time.sleep(0.5)
            token.cancel()
            worker.join(timeout=5)
            assert not worker.is_alive()
        finally:
            cache.shutdown_all()
            for transport in hung:
                transport.close()

        assert results[0].guidance
        assert "Cancelled while initializing" in results[0].text
        assert len(cache) == 0
        assert not hung[0].connected
