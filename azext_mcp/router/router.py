"""Capability router -- the learn / resolve / invoke state machine.

Each request to the ``azure`` tool is classified into one
:class:`~azext_mcp.router.modes.RouterMode` and executed:

- Root-Learn lists the discovered providers
- Provider-Learn lists one provider's commands with their schemas
- Invoke forwards a command to the provider and returns its result untouched
- Underspecified explains the three valid request shapes

When a :class:`~azext_mcp.router.resolver.Sampler` is supplied and the
request carries an intent, the router tries to skip a turn: after
Root-Learn it asks the peer to pick a provider, after Provider-Learn to
pick a command.  A miss falls back to the listing.

Only discovery failure escapes as an exception (:class:`DiscoveryError`);
every other failure becomes guidance text in a successful result.
A provider whose connection dropped is evicted from the cache so the next
request relaunches it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from azext_mcp.mcp.base import (
    CapabilityDescriptor,
    MCPError,
    ProviderDescriptor,
    ProviderStartError,
    RemoteCallError,
    RequestCancelled,
    TransportError,
)
from azext_mcp.mcp.client import ProviderClient
from azext_mcp.mcp.manager import ProviderClientCache
from azext_mcp.mcp.registry import ProviderRegistry
from azext_mcp.mcp.transport import CancelToken
from azext_mcp.router import messages
from azext_mcp.router.modes import Outcome, RouterMode, RouterRequest
from azext_mcp.router.resolver import DEFAULT_MAX_TOKENS, IntentResolver, Sampler

logger = logging.getLogger(__name__)


@dataclass
class RouterResult:
    """Outcome of one router request."""

    mode: RouterMode
    payload: dict[str, Any]  # MCP CallToolResult
    outcome: Outcome = Outcome.RESULT
    provider: ProviderDescriptor | None = None
    capabilities: list[CapabilityDescriptor] = field(default_factory=list)
    guidance: bool = False  # payload is remediation text, not provider output

    @property
    def text(self) -> str:
        return messages.result_text(self.payload)

    @property
    def is_error(self) -> bool:
        return bool(self.payload.get("isError"))


class CapabilityRouter:
    """Single entry point behind the ``azure`` tool."""

    def __init__(
        self,
        registry: ProviderRegistry,
        cache: ProviderClientCache,
        sampling_enabled: bool = True,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self.registry = registry
        self.cache = cache
        self.sampling_enabled = sampling_enabled
        self.max_tokens = max_tokens

    def handle(
        self,
        request: RouterRequest,
        sampler: Sampler | None = None,
        cancel: CancelToken | None = None,
    ) -> RouterResult:
        """Classify *request* and run it.

        Raises :class:`DiscoveryError` when providers cannot be listed.
        """
        mode = request.classify()
        logger.debug(
            "Request mode=%s tool=%r command=%r",
            mode.value, request.provider_id, request.command,
        )
        resolver = self._resolver(sampler)

        if mode is RouterMode.ROOT_LEARN:
            return self._root_learn(request, resolver, cancel)
        if mode is RouterMode.PROVIDER_LEARN:
            return self._provider_learn(request, resolver, cancel)
        if mode is RouterMode.INVOKE:
            return self._invoke(request, cancel)
        return _guidance(mode, Outcome.USAGE, messages.UNDERSPECIFIED)

    # ------------------------------------------------------------------ #
    # Modes
    # ------------------------------------------------------------------ #

    def _root_learn(
        self,
        request: RouterRequest,
        resolver: IntentResolver | None,
        cancel: CancelToken | None,
    ) -> RouterResult:
        catalog = self.registry.discover()

        if resolver is not None and request.intent:
            match = resolver.resolve_provider(request.intent, catalog, cancel)
            if match:
                logger.debug("Intent resolved to provider '%s'", match.provider_id)
                follow_up = RouterRequest(intent=request.intent, provider_id=match.provider_id, learn=True)
                return self._provider_learn(follow_up, resolver, cancel, catalog)

        return RouterResult(
            RouterMode.ROOT_LEARN,
            messages.text_result(messages.providers_listing(catalog)),
            Outcome.LISTING,
        )

    def _provider_learn(
        self,
        request: RouterRequest,
        resolver: IntentResolver | None,
        cancel: CancelToken | None,
        catalog: list[ProviderDescriptor] | None = None,
    ) -> RouterResult:
        mode = RouterMode.PROVIDER_LEARN
        if catalog is None:
            catalog = self.registry.discover()

        provider = ProviderRegistry.find(request.provider_id, catalog)
        if provider is None:
            return _guidance(mode, Outcome.NOT_FOUND, messages.provider_not_found(request.provider_id))

        try:
            client = self.cache.get_or_create(provider.id, provider, cancel)
        except ProviderStartError as exc:
            logger.warning("Provider '%s' failed to start: %s", provider.id, exc)
            text = messages.provider_start_failed(request.provider_id, exc)
            return _guidance(mode, Outcome.START_FAILED, text, provider)

        try:
            capabilities = client.list_tools(cancel)
        except MCPError as exc:
            if self._drop_if_stale(provider, client, exc):
                text = messages.provider_disconnected(request.provider_id, exc)
                return _guidance(mode, Outcome.DISCONNECTED, text, provider)
            logger.warning("Listing commands of '%s' failed: %s", provider.id, exc)
            text = messages.learn_failed(request.provider_id, exc)
            return _guidance(mode, Outcome.CALL_FAILED, text, provider)

        if resolver is not None and request.intent:
            match = resolver.resolve_command(request.intent, provider.id, capabilities, cancel)
            if match:
                logger.debug("Intent resolved to command '%s'", match.command)
                follow_up = RouterRequest(
                    intent=request.intent,
                    provider_id=provider.id,
                    command=match.command,
                    parameters=match.parameters,
                )
                return self._invoke(follow_up, cancel, catalog)

        return RouterResult(
            mode,
            messages.text_result(messages.capabilities_listing(request.provider_id, capabilities)),
            Outcome.LISTING,
            provider,
            capabilities,
        )

    def _invoke(
        self,
        request: RouterRequest,
        cancel: CancelToken | None,
        catalog: list[ProviderDescriptor] | None = None,
    ) -> RouterResult:
        mode = RouterMode.INVOKE
        if catalog is None:
            catalog = self.registry.discover()

        provider = ProviderRegistry.find(request.provider_id, catalog)
        if provider is None:
            return _guidance(mode, Outcome.NOT_FOUND, messages.provider_not_found(request.provider_id))

        try:
            client = self.cache.get_or_create(provider.id, provider, cancel)
        except ProviderStartError as exc:
            logger.warning("Provider '%s' failed to start: %s", provider.id, exc)
            text = messages.provider_start_failed(request.provider_id, exc)
            return _guidance(mode, Outcome.START_FAILED, text, provider)

        try:
            payload = client.call_tool(request.command, request.parameters, cancel)
        except MCPError as exc:
            if self._drop_if_stale(provider, client, exc):
                text = messages.provider_disconnected(request.provider_id, exc, request.command)
                return _guidance(mode, Outcome.DISCONNECTED, text, provider)
            logger.warning("Calling '%s' on '%s' failed: %s", request.command, provider.id, exc)
            text = messages.invocation_failed(request.provider_id, request.command, exc)
            return _guidance(mode, Outcome.CALL_FAILED, text, provider)
        outcome = Outcome.PROVIDER_ERROR if payload.get("isError") else Outcome.RESULT
        return RouterResult(mode, payload, outcome, provider)

    def _drop_if_stale(self, provider: ProviderDescriptor, client: ProviderClient, error: MCPError) -> bool:
        """Evict *client* when *error* means its connection is unusable.

        Provider-reported errors and caller cancellation keep the client.
        """
        if not isinstance(error, TransportError) or isinstance(error, (RemoteCallError, RequestCancelled)):
            return False
        logger.warning("Lost connection to provider '%s': %s", provider.id, error)
        self.cache.discard(provider.id, client)
        return True

    def _resolver(self, sampler: Sampler | None) -> IntentResolver | None:
        if sampler is None or not self.sampling_enabled:
            return None
        return IntentResolver(sampler, max_tokens=self.max_tokens)


def _guidance(
    mode: RouterMode,
    outcome: Outcome,
    text: str,
    provider: ProviderDescriptor | None = None,
) -> RouterResult:
    return RouterResult(mode, messages.text_result(text), outcome, provider, guidance=True)
