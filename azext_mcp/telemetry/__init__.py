"""Routing telemetry sent to Application Insights.

Two kinds of event are recorded:

* ``mcp_route`` -- one per request the router serves, carrying the router
  mode and the :class:`~azext_mcp.router.Outcome` it produced, so failed
  starts, lost connections and provider errors can be told apart.
* ``mcp_command`` -- one per ``az mcp`` command, carrying success and the
  exception type on failure.

No parameters, intents, provider output or error messages are recorded.

Events are buffered and POSTed as one batch to the ``/v2/track`` endpoint.
Nothing is sent when Azure CLI telemetry is off
(``az config set core.collect_telemetry=no``), when ``telemetry.enabled``
is false in ``mcp.yaml``, or when no connection string is configured.
Upload failures are logged at debug level and dropped.
"""

import logging
import os
import threading
import time
from datetime import datetime, timezone
from functools import wraps

logger = logging.getLogger(__name__)

CONNECTION_STRING_ENV_VAR = "APPINSIGHTS_CONNECTION_STRING"

FLUSH_EVERY = 20

_DISTRIBUTION_NAME = "az-mcp"
_UPLOAD_TIMEOUT = 5


def parse_connection_string(value: str) -> tuple[str, str] | None:
    """Return ``(track_url, instrumentation_key)`` or None when incomplete."""
    parts = {}
    for item in (value or "").split(";"):
        key, sep, val = item.partition("=")
        if sep:
            parts[key.strip().lower()] = val.strip()
    ikey = parts.get("instrumentationkey")
    endpoint = parts.get("ingestionendpoint", "").rstrip("/")
    if not ikey or not endpoint:
        return None
    return f"{endpoint}/v2/track", ikey


def _extension_version() -> str:
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version(_DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return "unknown"


def _upload(endpoint: str, envelopes: list[dict]) -> bool:
    import requests

    try:
        response = requests.post(endpoint, json=envelopes, timeout=_UPLOAD_TIMEOUT)
    except requests.RequestException as exc:
        logger.debug("Telemetry upload failed: %s", exc)
        return False
    if response.status_code != 200:
        logger.debug("Telemetry upload rejected with HTTP %s", response.status_code)
        return False
    return True


class RouterTelemetry:
    """Buffers routing and command events for one process."""

    def __init__(self, connection_string: str = "", *, enabled: bool = True, version: str = ""):
        target = parse_connection_string(connection_string) if enabled else None
        self._endpoint, self._ikey = target or ("", "")
        self._version = version or "unknown"
        self._events: list[dict] = []
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self._endpoint)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._events)

    def record_route(self, result, duration: float, *, server_mode: str = "", sampling: bool = False) -> None:
        """Record one routed request from its :class:`RouterResult`."""
        if not self.enabled:
            return
        properties = {
            "mode": result.mode.value,
            "outcome": result.outcome.value,
            "providerId": result.provider.id if result.provider else "",
            "serverMode": server_mode,
            "sampling": str(sampling).lower(),
        }
        self._add("mcp_route", properties, duration)

    def record_command(self, name: str, duration: float, error: BaseException | None = None) -> None:
        if not self.enabled:
            return
        properties = {
            "command": name,
            "success": str(error is None).lower(),
            "errorType": type(error).__name__ if error is not None else "",
        }
        self._add("mcp_command", properties, duration)

    def flush(self) -> int:
        """Upload buffered events; returns how many were accepted."""
        with self._lock:
            batch, self._events = self._events, []
        if not batch:
            return 0
        if not _upload(self._endpoint, batch):
            return 0
        logger.debug("Sent %d telemetry event(s)", len(batch))
        return len(batch)

    def _add(self, name: str, properties: dict, duration: float) -> None:
        properties["extensionVersion"] = self._version
        envelope = {
            "name": "Microsoft.ApplicationInsights.Event",
            "time": datetime.now(timezone.utc).isoformat(),
            "iKey": self._ikey,
            "tags": {"ai.cloud.role": _DISTRIBUTION_NAME},
            "data": {
                "baseType": "EventData",
                "baseData": {
                    "ver": 2,
                    "name": name,
                    "properties": properties,
                    "measurements": {"durationMs": round(duration * 1000, 1)},
                },
            },
        }
        with self._lock:
            self._events.append(envelope)
            full = len(self._events) >= FLUSH_EVERY
        if full:
            self.flush()


def _cli_telemetry_enabled(cmd) -> bool:
    # knack's CLIConfig also honours AZURE_CORE_COLLECT_TELEMETRY
    cli_ctx = getattr(cmd, "cli_ctx", None)
    if cli_ctx is None:
        return True
    return bool(cli_ctx.config.getboolean("core", "collect_telemetry", fallback=True))


def telemetry_for(cmd) -> RouterTelemetry:
    """Build the telemetry sink for one ``az mcp`` command.

    Returns a disabled sink if the settings cannot be read.
    """
    from knack.util import CLIError

    from azext_mcp.config import RouterConfig

    try:
        config = RouterConfig()
        config.load()
        enabled = _cli_telemetry_enabled(cmd) and bool(config.get("telemetry.enabled"))
        connection_string = os.environ.get(CONNECTION_STRING_ENV_VAR) or config.get("telemetry.connection_string")
    except (CLIError, OSError, ValueError) as exc:
        logger.debug("Telemetry disabled: %s", exc)
        return RouterTelemetry(enabled=False)
    return RouterTelemetry(connection_string or "", enabled=enabled, version=_extension_version())


def current(cmd) -> RouterTelemetry:
    """The sink attached to *cmd* by :func:`track`, or a disabled one."""
    sink = getattr(cmd, "_telemetry", None)
    if isinstance(sink, RouterTelemetry):
        return sink
    return RouterTelemetry(enabled=False)


def track(command_name: str):
    """Decorator that times a command and records an ``mcp_command`` event.

    The decorated function takes ``cmd`` first (Azure CLI convention) and
    can reach the sink through :func:`current` to record routes.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(cmd, *args, **kwargs):
            sink = telemetry_for(cmd)
            cmd._telemetry = sink
            started = time.monotonic()
            error = None
            try:
                return func(cmd, *args, **kwargs)
            except Exception as exc:
                error = exc
                raise
            finally:
                sink.record_command(command_name, time.monotonic() - started, error)
                sink.flush()

        return wrapper

    return decorator
