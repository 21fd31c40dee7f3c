"""Provider client cache -- lazy establishment and lifecycle.

The :class:`ProviderClientCache` is the only owner of live provider
connections.  It provides:

- Lazy establishment: a provider is installed, upgraded, spawned or
  connected the first time a request needs it, never at startup
- Single construction: concurrent first requests for the same provider
  wait on a per-provider lock so exactly one client is built
- No poisoning: a failed establishment stores nothing and the next
  request retries from scratch
- Relaunch: a client whose connection dropped is discarded, either on the
  next lookup or through :meth:`ProviderClientCache.discard`
- Context manager: every client (and its process tree) is closed on exit

A cached client is reused until its connection drops (the provider process
exited or the session was closed).  Such a client is discarded and the next
request relaunches the provider.  There is no active health check.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from azext_mcp.mcp.base import (
    LATEST_PROTOCOL_VERSION,
    ExtensionManagerError,
    MCPClientInfo,
    MCPError,
    ProviderDescriptor,
    ProviderStartError,
    RemoteLaunch,
    RequestCancelled,
    SubprocessLaunch,
)
from azext_mcp.mcp.client import ProviderClient
from azext_mcp.mcp.extensions import ExtensionManager
from azext_mcp.mcp.transport import CancelToken, StdioTransport, StreamableHttpTransport, Transport
from azext_mcp.versions import is_older

logger = logging.getLogger(__name__)

# Appended to the namespace segments when spawning an extension provider.
SERVER_START_ARGS = ("server", "start")

# Seconds between cancellation checks while waiting on another request's handshake.
_LOCK_POLL_INTERVAL = 0.1

TransportFactory = Callable[[ProviderDescriptor], Transport]


class ProviderClientCache:
    """Memoises one live :class:`ProviderClient` per provider id."""

    def __init__(
        self,
        extensions: ExtensionManager | None = None,
        client_info: MCPClientInfo | None = None,
        protocol_version: str = LATEST_PROTOCOL_VERSION,
        timeout: float | None = None,
        transport_factory: TransportFactory | None = None,
    ):
        self.extensions = extensions or ExtensionManager()
        self.client_info = client_info or MCPClientInfo()
        self.protocol_version = protocol_version or LATEST_PROTOCOL_VERSION
        self.timeout = timeout or None
        self._transport_factory = transport_factory or self._open_transport
        self._clients: dict[str, ProviderClient] = {}
        self._creation_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #

    def get_or_create(
        self,
        provider_id: str,
        descriptor: ProviderDescriptor,
        cancel: CancelToken | None = None,
    ) -> ProviderClient:
        """Return the cached client for *provider_id*, establishing it if needed.

        A cached client whose connection has gone away is dropped and a
        fresh one is established in its place.  *cancel* aborts a pending
        handshake or the wait for another request's handshake; install and
        upgrade always run to completion.

        Raises :class:`ProviderStartError` when install, upgrade, spawn,
        connect or handshake fails, or when *cancel* fires first.
        """
        key = provider_id.lower()
        client = self._lookup(key)
        if client is not None:
            return client
        with self._lock:
            creation_lock = self._creation_locks.setdefault(key, threading.Lock())

        self._acquire(creation_lock, descriptor, cancel)
        try:
            client = self._lookup(key)
            if client is not None:
                return client

            client = self._establish(descriptor, cancel)
            with self._lock:
                self._clients[key] = client
            logger.info("Provider '%s' ready", descriptor.id)
            return client
        finally:
            creation_lock.release()

    def discard(self, provider_id: str, client: ProviderClient | None = None) -> bool:
        """Close and forget the cached client for *provider_id*.

        When *client* is given, only that instance is removed so a client
        established concurrently by another request survives.
        """
        key = provider_id.lower()
        with self._lock:
            cached = self._clients.get(key)
            if cached is None or (client is not None and cached is not client):
                return False
            del self._clients[key]
        logger.info("Discarding client for provider '%s'", cached.provider_id)
        self._close(cached)
        return True

    def cached_ids(self) -> list[str]:
        with self._lock:
            return [client.provider_id for client in self._clients.values()]

    def __contains__(self, provider_id: str) -> bool:
        with self._lock:
            return provider_id.lower() in self._clients

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def shutdown_all(self) -> None:
        """Close every cached client."""
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            self._close(client)

    def __enter__(self) -> ProviderClientCache:
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown_all()

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _lookup(self, key: str) -> ProviderClient | None:
        """Return the cached client for *key* if its connection is still up."""
        with self._lock:
            client = self._clients.get(key)
            if client is None or client.connected:
                return client
            del self._clients[key]
        logger.info("Provider '%s' is no longer running; relaunching", client.provider_id)
        self._close(client)
        return None

    @staticmethod
    def _acquire(lock: threading.Lock, descriptor: ProviderDescriptor, cancel: CancelToken | None) -> None:
        if cancel is None:
            lock.acquire()
            return
        while not lock.acquire(timeout=_LOCK_POLL_INTERVAL):
            if cancel.cancelled:
                raise ProviderStartError(
                    descriptor.id, f"Cancelled while waiting for {descriptor.id} to start"
                )

    @staticmethod
    def _close(client: ProviderClient) -> None:
        try:
            client.close()
        except Exception as exc:
            logger.warning("Error closing provider '%s': %s", client.provider_id, exc)

    def _establish(self, descriptor: ProviderDescriptor, cancel: CancelToken | None = None) -> ProviderClient:
        spec = descriptor.launch_spec
        if isinstance(spec, SubprocessLaunch):
            self._prepare_extension(descriptor)
            if len(spec.args) < 2:
                raise ProviderStartError(
                    descriptor.id,
                    f"Invalid namespace for extension: {'.'.join(spec.args) or '(empty)'}",
                )
        elif isinstance(spec, RemoteLaunch):
            if not spec.url:
                raise ProviderStartError(
                    descriptor.id,
                    f"Missing 'url' property for tool {descriptor.display_name} in mcp.json",
                )

        if cancel is not None and cancel.cancelled:
            raise ProviderStartError(descriptor.id, f"Cancelled before starting {descriptor.id}")

        try:
            transport = self._transport_factory(descriptor)
        except MCPError as exc:
            raise ProviderStartError(
                descriptor.id, f"Failed to start MCP client for {descriptor.id}: {exc}"
            ) from exc

        client = ProviderClient(
            descriptor.id,
            transport,
            client_info=self.client_info,
            protocol_version=self.protocol_version,
        )
        try:
            client.initialize(cancel)
        except RequestCancelled as exc:
            client.close()
            raise ProviderStartError(
                descriptor.id, f"Cancelled while initializing MCP client for {descriptor.id}"
            ) from exc
        except MCPError as exc:
            client.close()
            raise ProviderStartError(
                descriptor.id, f"Failed to initialize MCP client for {descriptor.id}: {exc}"
            ) from exc
        return client

    def _prepare_extension(self, descriptor: ProviderDescriptor) -> None:
        """Install or upgrade the extension behind *descriptor*."""
        try:
            if not descriptor.installed:
                self.extensions.install(descriptor.id)
            elif is_older(descriptor.installed_version, descriptor.latest_version):
                logger.info(
                    "Extension %s is %s; latest is %s",
                    descriptor.id, descriptor.installed_version, descriptor.latest_version,
                )
                self.extensions.upgrade(descriptor.id)
        except ExtensionManagerError as exc:
            raise ProviderStartError(descriptor.id, str(exc)) from exc

    def _open_transport(self, descriptor: ProviderDescriptor) -> Transport:
        spec = descriptor.launch_spec
        if isinstance(spec, SubprocessLaunch):
            return StdioTransport(
                spec.command,
                list(spec.args) + list(SERVER_START_ARGS),
                name=descriptor.name,
                timeout=self.timeout,
            ).start()
        return StreamableHttpTransport(spec.url, name=descriptor.name, timeout=self.timeout)
