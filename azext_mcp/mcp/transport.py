"""JSON-RPC transports used to talk to provider servers.

Two implementations share the :class:`Transport` contract:

- :class:`StdioTransport` spawns the provider and exchanges newline-delimited
  JSON-RPC messages over its standard streams.  A reader thread routes
  responses back to the waiting caller; the child's stderr is relayed to
  the provider logger.
- :class:`StreamableHttpTransport` POSTs each message to an MCP endpoint and
  accepts either a JSON body or a ``text/event-stream`` response.

Neither transport imposes a timeout unless one is configured.  A
:class:`CancelToken` lets the caller abandon an in-flight request: the stdio
transport stops waiting and tells the child, the HTTP transport closes the
response.
"""

from __future__ import annotations

import itertools
import json
import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, InvalidStateError
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable

import psutil
import requests

from azext_mcp.mcp.base import RemoteCallError, RequestCancelled, TransportError

logger = logging.getLogger(__name__)

# JSON-RPC error code for methods we do not serve back to a provider.
_METHOD_NOT_FOUND = -32601

# Seconds to wait for a child to exit after terminate() before kill().
_TERMINATE_GRACE = 5.0


# -------------------------------------------------------------------- #
# Cancellation
# -------------------------------------------------------------------- #


class CancelToken:
    """Thread-safe cancellation flag with callbacks.

    Callbacks registered after cancellation run immediately.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logger.debug("Cancel callback failed: %s", exc)

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelled("Request was cancelled by the caller")


# -------------------------------------------------------------------- #
# Contract
# -------------------------------------------------------------------- #


class Transport(ABC):
    """A bidirectional JSON-RPC channel to one provider."""

    name: str = ""

    @abstractmethod
    def request(self, method: str, params: dict, cancel: CancelToken | None = None) -> dict:
        """Send a request and return its ``result`` object.

        Raises :class:`RemoteCallError` when the provider answers with an
        error, :class:`RequestCancelled` when *cancel* fires first, and
        :class:`TransportError` for any delivery failure.
        """

    @abstractmethod
    def notify(self, method: str, params: dict) -> None:
        """Send a notification (no response expected)."""

    @abstractmethod
    def close(self) -> None:
        """Release the channel. Safe to call multiple times."""

    @property
    def connected(self) -> bool:
        """False once the channel can no longer carry requests."""
        return True


def result_from_message(message: dict) -> dict:
    """Unwrap a JSON-RPC response, raising on an error object."""
    if "error" in message and message["error"] is not None:
        error = message["error"]
        if not isinstance(error, dict):
            raise RemoteCallError(-32603, str(error))
        raise RemoteCallError(
            int(error.get("code", -32603)),
            str(error.get("message", "Unknown error")),
            error.get("data"),
        )
    result = message.get("result")
    return result if isinstance(result, dict) else {}


def settle_future(future: Future, *, result: Any = None, error: BaseException | None = None) -> None:
    """Complete *future* unless something else already did."""
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)
    except InvalidStateError:
        pass


# -------------------------------------------------------------------- #
# stdio
# -------------------------------------------------------------------- #


class StdioTransport(Transport):
    """Newline-delimited JSON-RPC over a child process's standard streams."""

    def __init__(
        self,
        command: str,
        args: list[str] | tuple[str, ...] = (),
        *,
        name: str = "",
        timeout: float | None = None,
    ):
        self.command = command
        self.args = list(args)
        self.name = name or command
        self.timeout = timeout or None
        self.logger = logging.getLogger(f"mcp.{self.name}")
        self._process: subprocess.Popen | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, Future] = {}
        self._pending_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._closed = False
        self._shut_down = False

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def connected(self) -> bool:
        with self._pending_lock:
            return self._process is not None and not self._closed

    def start(self) -> StdioTransport:
        """Spawn the provider process and start the reader threads."""
        argv = [self.command] + self.args
        self.logger.debug("Spawning: %s", " ".join(argv))
        try:
            self._process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise TransportError(f"Failed to start '{argv[0]}': {exc}") from exc

        threading.Thread(
            target=self._read_stdout,
            args=(self._process,),
            name=f"mcp-{self.name}-stdout",
            daemon=True,
        ).start()
        threading.Thread(
            target=self._read_stderr,
            args=(self._process,),
            name=f"mcp-{self.name}-stderr",
            daemon=True,
        ).start()
        return self

    # ------------------------------------------------------------------ #
    # Contract implementation
    # ------------------------------------------------------------------ #

    def request(self, method: str, params: dict, cancel: CancelToken | None = None) -> dict:
        if cancel is not None:
            cancel.raise_if_cancelled()

        request_id = next(self._ids)
        future: Future = Future()
        with self._pending_lock:
            if self._closed:
                raise TransportError(f"Connection to '{self.name}' is closed")
            self._pending[request_id] = future

        def _abort() -> None:
            settle_future(future, error=RequestCancelled(f"'{method}' was cancelled by the caller"))

        if cancel is not None:
            cancel.add_callback(_abort)
        try:
            self._send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            message = future.result(timeout=self.timeout)
        except RequestCancelled:
            self._send_cancelled(request_id, "Cancelled by the caller")
            raise
        except FutureTimeoutError as exc:
            self._send_cancelled(request_id, "Timed out")
            raise TransportError(
                f"Timed out after {self.timeout}s waiting for '{method}' from '{self.name}'"
            ) from exc
        finally:
            if cancel is not None:
                cancel.remove_callback(_abort)
            with self._pending_lock:
                self._pending.pop(request_id, None)

        return result_from_message(message)

    def notify(self, method: str, params: dict) -> None:
        self._send({"jsonrpc": "2.0", "method": method, "params": params})

    def close(self) -> None:
        with self._pending_lock:
            if self._shut_down:
                return
            self._shut_down = True
            self._closed = True
        process = self._process
        if process is not None:
            self.logger.debug("Stopping provider process %s", process.pid)
            try:
                if process.stdin:
                    process.stdin.close()
            except OSError:
                pass
            _terminate_process_tree(process)
        self._fail_pending(TransportError(f"Connection to '{self.name}' was closed"))

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _send(self, message: dict) -> None:
        if self._process is None or self._process.stdin is None:
            raise TransportError(f"Provider '{self.name}' has not been started")
        line = json.dumps(message, separators=(",", ":"), ensure_ascii=False)
        with self._write_lock:
            try:
                self._process.stdin.write(line + "\n")
                self._process.stdin.flush()
            except (OSError, ValueError) as exc:
                raise TransportError(f"Failed to write to '{self.name}': {exc}") from exc

    def _send_cancelled(self, request_id: int, reason: str) -> None:
        try:
            self.notify("notifications/cancelled", {"requestId": request_id, "reason": reason})
        except TransportError as exc:
            self.logger.debug("Could not forward cancellation: %s", exc)

    def _read_stdout(self, process: subprocess.Popen) -> None:
        for line in process.stdout:
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                # Some providers print banners on stdout
                self.logger.debug("Ignoring non-JSON output: %s", line[:200])
                continue
            if isinstance(message, dict):
                self._dispatch(message)

        code = process.poll()
        self.logger.debug("Provider output closed (exit code %s)", code)
        with self._pending_lock:
            self._closed = True
        suffix = f" (exit code {code})" if code is not None else ""
        self._fail_pending(TransportError(f"Provider '{self.name}' exited{suffix}"))

    def _read_stderr(self, process: subprocess.Popen) -> None:
        for line in process.stderr:
            line = line.rstrip()
            if line:
                self.logger.debug("stderr: %s", line)

    def _dispatch(self, message: dict) -> None:
        if "method" in message:
            if "id" in message:
                self._answer_provider_request(message)
            else:
                self.logger.debug("Notification from provider: %s", message["method"])
            return

        with self._pending_lock:
            future = self._pending.get(message.get("id"))
        if future is None:
            self.logger.debug("Dropping response for unknown id %r", message.get("id"))
            return
        settle_future(future, result=message)

    def _answer_provider_request(self, message: dict) -> None:
        if message["method"] == "ping":
            reply = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": _METHOD_NOT_FOUND, "message": f"Unsupported method: {message['method']}"},
            }
        try:
            self._send(reply)
        except TransportError as exc:
            self.logger.debug("Could not answer provider request: %s", exc)

    def _fail_pending(self, error: TransportError) -> None:
        with self._pending_lock:
            pending = list(self._pending.values())
        for future in pending:
            settle_future(future, error=error)


def _terminate_process_tree(process: subprocess.Popen) -> None:
    """Terminate *process* and every descendant.

    ``azd`` launches the extension binary as its own child, so stopping
    only the direct child would leave the provider running.
    """
    try:
        children = psutil.Process(process.pid).children(recursive=True)
    except psutil.Error:
        children = []

    for child in children:
        try:
            child.terminate()
        except psutil.Error:
            pass

    if process.poll() is None:
        process.terminate()
    try:
        process.wait(timeout=_TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()

    _, alive = psutil.wait_procs(children, timeout=_TERMINATE_GRACE)
    for child in alive:
        try:
            child.kill()
        except psutil.Error:
            pass


# -------------------------------------------------------------------- #
# Streamable HTTP
# -------------------------------------------------------------------- #


class StreamableHttpTransport(Transport):
    """JSON-RPC over HTTP POST with JSON or server-sent-event responses."""

    def __init__(
        self,
        url: str,
        *,
        name: str = "",
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.url = url
        self.name = name or url
        self.timeout = timeout or None
        self.logger = logging.getLogger(f"mcp.{self.name}")
        self._ids = itertools.count(1)
        self._session_id: str | None = None
        self._closed = False
        self._session = requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        })
        if headers:
            self._session.headers.update(headers)

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def connected(self) -> bool:
        return not self._closed

    # ------------------------------------------------------------------ #
    # Contract implementation
    # ------------------------------------------------------------------ #

    def request(self, method: str, params: dict, cancel: CancelToken | None = None) -> dict:
        if cancel is not None:
            cancel.raise_if_cancelled()

        request_id = next(self._ids)
        body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        resp = self._post(body, cancel)
        if cancel is not None:
            cancel.add_callback(resp.close)
        try:
            if resp.status_code == 202:
                raise TransportError(f"'{self.name}' accepted '{method}' without a response")
            message = self._read_response(resp, request_id)
        except TransportError:
            if cancel is not None and cancel.cancelled:
                raise RequestCancelled(f"'{method}' was cancelled by the caller")
            raise
        except (requests.RequestException, OSError, AttributeError) as exc:
            # Closing the response from the cancel callback surfaces here
            if cancel is not None and cancel.cancelled:
                raise RequestCancelled(f"'{method}' was cancelled by the caller") from exc
            raise TransportError(f"Failed reading response from '{self.name}': {exc}") from exc
        finally:
            if cancel is not None:
                cancel.remove_callback(resp.close)
            resp.close()

        return result_from_message(message)

    def notify(self, method: str, params: dict) -> None:
        body = {"jsonrpc": "2.0", "method": method, "params": params}
        try:
            resp = self._post(body, None)
            resp.close()
        except TransportError as exc:
            self.logger.warning("Notification '%s' failed: %s", method, exc)

    def close(self) -> None:
        self._closed = True
        if self._session_id:
            try:
                self._session.delete(
                    self.url,
                    headers={"Mcp-Session-Id": self._session_id},
                    timeout=5,
                )
            except requests.RequestException as exc:
                self.logger.debug("Session teardown failed: %s", exc)
            self._session_id = None
        self._session.close()

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _post(self, body: dict, cancel: CancelToken | None) -> requests.Response:
        headers = {}
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id

        try:
            resp = self._session.post(
                self.url,
                json=body,
                headers=headers,
                timeout=self.timeout,
                stream=True,
            )
        except requests.RequestException as exc:
            raise TransportError(f"HTTP request to {self.url} failed: {exc}") from exc

        if cancel is not None and cancel.cancelled:
            resp.close()
            raise RequestCancelled(f"'{body.get('method')}' was cancelled by the caller")

        session_id = resp.headers.get("Mcp-Session-Id")
        if session_id:
            self._session_id = session_id

        if resp.status_code >= 400:
            resp.close()
            raise TransportError(f"HTTP {resp.status_code} from {self.url}")
        return resp

    def _read_response(self, resp: requests.Response, request_id: int) -> dict:
        content_type = resp.headers.get("Content-Type", "")
        if content_type.startswith("text/event-stream"):
            return self._read_event_stream(resp, request_id)

        try:
            data = resp.json()
        except ValueError as exc:
            raise TransportError(f"Malformed JSON from '{self.name}': {exc}") from exc
        return _pick_response(data, request_id, self.name)

    def _read_event_stream(self, resp: requests.Response, request_id: int) -> dict:
        resp.encoding = resp.encoding or "utf-8"
        data_lines: list[str] = []
        for raw in resp.iter_lines(decode_unicode=True):
            if raw is None:
                continue
            if raw == "":
                message = _parse_event(data_lines)
                data_lines = []
                if _is_response_to(message, request_id):
                    return message
                continue
            if raw.startswith("data:"):
                data_lines.append(raw[5:].lstrip())

        message = _parse_event(data_lines)
        if _is_response_to(message, request_id):
            return message
        raise TransportError(f"Event stream from '{self.name}' ended before a response arrived")


def _parse_event(data_lines: list[str]) -> dict | None:
    if not data_lines:
        return None
    try:
        message = json.loads("\n".join(data_lines))
    except json.JSONDecodeError:
        logger.debug("Ignoring malformed event payload")
        return None
    return message if isinstance(message, dict) else None


def _is_response_to(message: dict | None, request_id: int) -> bool:
    return message is not None and "method" not in message and message.get("id") == request_id


def _pick_response(data: Any, request_id: int, name: str) -> dict:
    candidates = data if isinstance(data, list) else [data]
    for message in candidates:
        if isinstance(message, dict) and _is_response_to(message, request_id):
            return message
    raise TransportError(f"'{name}' did not return a response for request {request_id}")
