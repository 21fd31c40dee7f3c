"""MCP server exposing the router over stdio.

Newline-delimited JSON-RPC 2.0 on stdin/stdout.  stdout carries only
protocol messages; all logging goes to stderr.

``initialize``, ``ping`` and ``tools/list`` are answered on the reader
thread.  ``tools/call`` runs on a worker pool so a slow provider does not
block the session, which also lets the router send its own requests to the
peer (``sampling/createMessage``) and read the replies while a call is in
flight.  ``notifications/cancelled`` cancels the matching call; a cancelled
call gets no response.

In ``flatten`` mode every provider learned through the router is also
published as top-level tools named ``<provider>__<command>``, announced
with ``notifications/tools/list_changed``.
"""

from __future__ import annotations

import itertools
import json
import logging
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, TextIO

from knack.util import CLIError

from azext_mcp.mcp.base import (
    LATEST_PROTOCOL_VERSION,
    CapabilityDescriptor,
    ProviderDescriptor,
    RequestCancelled,
    TransportError,
)
from azext_mcp.mcp.transport import CancelToken, result_from_message, settle_future
from azext_mcp.router import messages
from azext_mcp.router.modes import RouterMode, RouterRequest
from azext_mcp.router.resolver import DEFAULT_MAX_TOKENS, Sampler
from azext_mcp.router.router import CapabilityRouter
from azext_mcp.telemetry import RouterTelemetry

logger = logging.getLogger(__name__)

SUPPORTED_PROTOCOL_VERSIONS = (LATEST_PROTOCOL_VERSION, "2024-11-05")

SERVER_MODES = ("proxy", "flatten")

FLATTENED_SEPARATOR = "__"

INSTRUCTIONS = messages.TOOL_DESCRIPTION


class _InvalidParams(Exception):
    pass


class PeerSampler(Sampler):
    """Sends ``sampling/createMessage`` to the connected peer."""

    def __init__(self, server: RouterServer):
        self._server = server

    def create_message(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str = "",
        max_tokens: int = DEFAULT_MAX_TOKENS,
        cancel: CancelToken | None = None,
    ) -> str:
        params: dict[str, Any] = {
            "messages": messages,
            "maxTokens": max_tokens,
            "includeContext": "none",
        }
        if system_prompt:
            params["systemPrompt"] = system_prompt
        result = self._server.request_peer("sampling/createMessage", params, cancel)

        content = result.get("content")
        if isinstance(content, list):
            content = next((c for c in content if isinstance(c, dict) and c.get("type") == "text"), None)
        if isinstance(content, dict) and content.get("type") == "text":
            return str(content.get("text", ""))
        return ""


class RouterServer:
    """JSON-RPC 2.0 dispatch for the router over a pair of text streams."""

    # Standard JSON-RPC error codes
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    def __init__(
        self,
        router: CapabilityRouter,
        mode: str = "proxy",
        name: str = "mcp.azure",
        version: str = "1.0.0",
        max_workers: int = 8,
        peer_timeout: float | None = None,
        telemetry: RouterTelemetry | None = None,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ):
        if mode not in SERVER_MODES:
            raise CLIError(f"Unknown server mode '{mode}'. Expected one of: {', '.join(SERVER_MODES)}")
        self.router = router
        self.mode = mode
        self.name = name
        self.version = version
        self.peer_timeout = peer_timeout or None
        self.telemetry = telemetry or RouterTelemetry(enabled=False)
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mcp-router")
        self._write_lock = threading.Lock()
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._in_flight: dict[Any, CancelToken] = {}
        self._outgoing: dict[str, Future] = {}
        self._flattened: dict[str, tuple[str, str, dict]] = {}
        self._peer_capabilities: dict[str, Any] = {}
        self._initialized = False

    @property
    def peer_supports_sampling(self) -> bool:
        return "sampling" in self._peer_capabilities

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def serve(self) -> None:
        """Process messages until stdin closes."""
        logger.info("Router server started (mode=%s)", self.mode)
        try:
            for line in self._stdin:
                line = line.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON line: %s", line[:200])
                    self._write(self._make_error(None, self.PARSE_ERROR, "Parse error"))
                    continue
                if not isinstance(message, dict):
                    self._write(self._make_error(None, self.INVALID_REQUEST, "Invalid request"))
                    continue
                self._receive(message)
        finally:
            self._stop()
        logger.info("Router server stopped")

    def _stop(self) -> None:
        with self._lock:
            tokens = list(self._in_flight.values())
            outgoing = list(self._outgoing.values())
        for token in tokens:
            token.cancel()
        for future in outgoing:
            settle_future(future, error=TransportError("Peer disconnected"))
        self._executor.shutdown(wait=True)
        self.telemetry.flush()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _receive(self, message: dict) -> None:
        method = message.get("method")
        if not method:
            self._receive_response(message)
            return
        if "id" not in message:
            self._handle_notification(method, message.get("params") or {})
            return

        request_id = message["id"]
        params = message.get("params") or {}
        logger.debug("Dispatch: method=%s, id=%s", method, request_id)

        if method == "tools/call":
            self._submit_call(request_id, params)
            return

        try:
            result = self._handle_method(method, params)
        except _InvalidParams as exc:
            self._write(self._make_error(request_id, self.INVALID_PARAMS, str(exc)))
            return
        if result is None:
            self._write(self._make_error(request_id, self.METHOD_NOT_FOUND, f"Unknown method: {method}"))
            return
        self._write(self._make_response(request_id, result))

    def _handle_method(self, method: str, params: dict) -> dict | None:
        if method == "initialize":
            return self._handle_initialize(params)
        if method == "tools/list":
            return {"tools": self.list_tools()}
        if method == "ping":
            return {}
        return None

    def _handle_notification(self, method: str, params: dict) -> None:
        if method == "notifications/initialized":
            self._initialized = True
        elif method == "notifications/cancelled":
            with self._lock:
                token = self._in_flight.get(params.get("requestId"))
            if token is not None:
                logger.debug("Cancelling request %s: %s", params.get("requestId"), params.get("reason", ""))
                token.cancel()
        else:
            logger.debug("Ignoring notification: %s", method)

    def _receive_response(self, message: dict) -> None:
        with self._lock:
            future = self._outgoing.get(message.get("id"))
        if future is None:
            logger.debug("Dropping response for unknown id %r", message.get("id"))
            return
        settle_future(future, result=message)

    # ------------------------------------------------------------------
    # MCP handlers
    # ------------------------------------------------------------------

    def _handle_initialize(self, params: dict) -> dict:
        capabilities = params.get("capabilities")
        self._peer_capabilities = capabilities if isinstance(capabilities, dict) else {}
        requested = params.get("protocolVersion")
        client = (params.get("clientInfo") or {}).get("name", "unknown")
        logger.info(
            "Peer %s connected (sampling %s)",
            client, "supported" if self.peer_supports_sampling else "not supported",
        )
        return {
            "protocolVersion": requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": self.mode == "flatten"}},
            "serverInfo": {"name": self.name, "version": self.version},
            "instructions": INSTRUCTIONS,
        }

    def list_tools(self) -> list[dict]:
        tools = [messages.tool_definition()]
        with self._lock:
            tools.extend(tool for _, _, tool in self._flattened.values())
        return tools

    def _submit_call(self, request_id: Any, params: dict) -> None:
        cancel = CancelToken()
        with self._lock:
            self._in_flight[request_id] = cancel
        self._executor.submit(self._run_call, request_id, params, cancel)

    def _run_call(self, request_id: Any, params: dict, cancel: CancelToken) -> None:
        try:
            response = self._make_response(request_id, self.call_tool(params, cancel))
        except _InvalidParams as exc:
            response = self._make_error(request_id, self.INVALID_PARAMS, str(exc))
        except CLIError as exc:
            logger.error("tools/call failed: %s", exc)
            response = self._make_error(request_id, self.INTERNAL_ERROR, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error in tools/call")
            response = self._make_error(request_id, self.INTERNAL_ERROR, str(exc))
        finally:
            with self._lock:
                self._in_flight.pop(request_id, None)

        if cancel.cancelled:
            logger.debug("Request %s was cancelled; not responding", request_id)
            return
        self._write(response)

    def call_tool(self, params: dict, cancel: CancelToken | None = None) -> dict:
        """Run one ``tools/call`` and return its ``CallToolResult``."""
        name = params.get("name")
        arguments = params.get("arguments")
        if not isinstance(arguments, dict):
            arguments = {}

        if name == messages.TOOL_NAME:
            request = RouterRequest.from_arguments(arguments)
        else:
            with self._lock:
                flattened = self._flattened.get(name)
            if flattened is None:
                raise _InvalidParams(f"Unknown tool: {name}")
            provider_id, command, _ = flattened
            request = RouterRequest(provider_id=provider_id, command=command, parameters=arguments)

        sampler = PeerSampler(self) if self.peer_supports_sampling else None
        started = time.monotonic()
        result = self.router.handle(request, sampler=sampler, cancel=cancel)
        self.telemetry.record_route(
            result, time.monotonic() - started, server_mode=self.mode, sampling=sampler is not None
        )

        if self.mode == "flatten" and result.mode is RouterMode.PROVIDER_LEARN and result.capabilities:
            self._publish(result.provider, result.capabilities)
        return result.payload

    def _publish(self, provider: ProviderDescriptor, capabilities: list[CapabilityDescriptor]) -> None:
        added = 0
        with self._lock:
            for capability in capabilities:
                tool = capability.to_tool()
                tool["name"] = f"{provider.name}{FLATTENED_SEPARATOR}{capability.name}"
                if tool["name"] not in self._flattened:
                    added += 1
                self._flattened[tool["name"]] = (provider.id, capability.name, tool)
        if added:
            logger.info("Published %d command(s) from '%s'", added, provider.id)
            self._write({"jsonrpc": "2.0", "method": "notifications/tools/list_changed"})

    # ------------------------------------------------------------------
    # Requests to the peer
    # ------------------------------------------------------------------

    def request_peer(self, method: str, params: dict, cancel: CancelToken | None = None) -> dict:
        """Send a request to the connected peer and wait for its result."""
        if cancel is not None:
            cancel.raise_if_cancelled()
        request_id = f"router-{next(self._ids)}"
        future: Future = Future()
        with self._lock:
            self._outgoing[request_id] = future

        def _abort() -> None:
            settle_future(future, error=RequestCancelled(f"'{method}' was cancelled"))

        if cancel is not None:
            cancel.add_callback(_abort)
        try:
            self._write({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            message = future.result(timeout=self.peer_timeout)
        finally:
            if cancel is not None:
                cancel.remove_callback(_abort)
            with self._lock:
                self._outgoing.pop(request_id, None)
        return result_from_message(message)

    # ------------------------------------------------------------------
    # JSON-RPC helpers
    # ------------------------------------------------------------------

    def _write(self, obj: dict) -> None:
        line = json.dumps(obj, separators=(",", ":"))
        with self._write_lock:
            self._stdout.write(line + "\n")
            self._stdout.flush()

    def _make_response(self, request_id: Any, result: Any) -> dict:
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def _make_error(self, request_id: Any, code: int, message: str, data: Any = None) -> dict:
        err: dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            err["data"] = data
        return {"jsonrpc": "2.0", "id": request_id, "error": err}
