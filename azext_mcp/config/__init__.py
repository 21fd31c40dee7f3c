"""Router configuration management."""

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from knack.util import CLIError

from azext_mcp.mcp.base import LATEST_PROTOCOL_VERSION

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "AZURE_MCP_CONFIG"


def _sanitize_for_yaml(data: Any) -> Any:
    """Recursively convert values to plain Python types for safe YAML.

    Azure CLI wraps parameter defaults in ``knack.validators.DefaultStr``
    (a *str* subclass) which ``yaml.safe_dump`` refuses to represent.
    """
    if isinstance(data, dict):
        return {str(k): _sanitize_for_yaml(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_sanitize_for_yaml(item) for item in data]
    # Order matters: bool before int (bool is an int subclass)
    if isinstance(data, bool):
        return bool(data)
    if isinstance(data, int):
        return int(data)
    if isinstance(data, float):
        return float(data)
    if isinstance(data, str):
        return str(data)
    return data


_ALLOWED_SERVER_MODES = frozenset({"proxy", "flatten"})

_ALLOWED_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

_TRUE_STRINGS = frozenset({"true", "yes", "1", "on"})
_FALSE_STRINGS = frozenset({"false", "no", "0", "off"})

DEFAULT_CONFIG = {
    "router": {
        "id": "mcp.azure",
        "ignore_ids": ["mcp.azure", "mcp.azure.csharp", "mcp.azure.ts"],
        "name": "mcp.azure",
        "version": "1.0.0",
    },
    "extensions": {
        "command": "azd",
        "tags": ["azure", "mcp"],
    },
    "manifest": {
        "path": "",
    },
    "client": {
        "protocol_version": LATEST_PROTOCOL_VERSION,
        "timeout": 0,
    },
    "server": {
        "mode": "proxy",
        "max_workers": 8,
    },
    "sampling": {
        "enabled": True,
        "max_tokens": 1000,
    },
    "logging": {
        "level": "WARNING",
    },
    "telemetry": {
        "enabled": True,
        "connection_string": "",
    },
}

# Expected value kind per settable key.
_KEY_TYPES = {
    "router.id": "str",
    "router.ignore_ids": "list",
    "router.name": "str",
    "router.version": "str",
    "extensions.command": "str",
    "extensions.tags": "list",
    "manifest.path": "str",
    "client.protocol_version": "str",
    "client.timeout": "float",
    "server.mode": "str",
    "server.max_workers": "int",
    "sampling.enabled": "bool",
    "sampling.max_tokens": "int",
    "logging.level": "str",
    "telemetry.enabled": "bool",
    "telemetry.connection_string": "str",
}


def default_config_path() -> Path:
    """``$AZURE_MCP_CONFIG`` if set, else ``~/.azure/mcp.yaml``."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".azure" / "mcp.yaml"


class RouterConfig:
    """Manages the router's ``mcp.yaml`` configuration.

    Provides dot-notation get/set for nested config values over a deep
    copy of :data:`DEFAULT_CONFIG`.  A missing file simply means defaults.
    Values are validated and coerced when set, so the file on disk always
    holds plain YAML scalars and lists.
    """

    CONFIG_FILENAME = "mcp.yaml"

    def __init__(self, config_path: str | Path | None = None):
        self.config_path = Path(config_path).expanduser() if config_path else default_config_path()
        self._config: dict = copy.deepcopy(DEFAULT_CONFIG)

    # ------------------------------------------------------------------ #
    #  Persistence                                                        #
    # ------------------------------------------------------------------ #

    def load(self) -> dict:
        """Load configuration, overlaying the file onto the defaults.

        Raises:
            CLIError if the file exists but is not a YAML mapping.
        """
        self._config = copy.deepcopy(DEFAULT_CONFIG)
        if not self.config_path.exists():
            logger.debug("No config at %s; using defaults", self.config_path)
            return self._config

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise CLIError(f"Invalid configuration file {self.config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise CLIError(f"Invalid configuration file {self.config_path}: expected a mapping")

        self._merge(self._config, data)
        return self._config

    def save(self):
        """Persist current configuration."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(
                _sanitize_for_yaml(self._config),
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

        logger.debug("Configuration saved to %s", self.config_path)

    def exists(self) -> bool:
        return self.config_path.exists()

    # ------------------------------------------------------------------ #
    #  Access                                                             #
    # ------------------------------------------------------------------ #

    def get(self, key: str, default: Any = None) -> Any:
        """Get a config value by dot-separated key.

        Examples:
            config.get("server.mode")
            config.get("extensions.tags")
        """
        current = self._config
        for part in key.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default
        return current

    def set(self, key: str, value: Any):
        """Validate, coerce and persist a value by dot-separated key."""
        value = self._coerce(key, value)
        self._set_nested(self._config, key, value)
        self.save()

    def to_dict(self) -> dict:
        """Return a copy of the full config dict."""
        return copy.deepcopy(self._config)

    # ------------------------------------------------------------------ #
    #  Typed accessors used by the router                                 #
    # ------------------------------------------------------------------ #

    @property
    def ignore_ids(self) -> list[str]:
        ids = list(self.get("router.ignore_ids") or [])
        router_id = self.get("router.id")
        if router_id and router_id not in ids:
            ids.append(router_id)
        return ids

    @property
    def timeout(self) -> float | None:
        value = float(self.get("client.timeout") or 0)
        return value if value > 0 else None

    # ------------------------------------------------------------------ #
    #  Validation                                                         #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _coerce(key: str, value: Any) -> Any:
        """Enforce key-specific constraints and return the typed value."""
        kind = _KEY_TYPES.get(key)
        if kind is None:
            raise CLIError(
                f"Unknown configuration key: '{key}'.\n"
                f"Supported keys: {', '.join(sorted(_KEY_TYPES))}"
            )

        if kind == "bool":
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE_STRINGS:
                return True
            if text in _FALSE_STRINGS:
                return False
            raise CLIError(f"'{key}' expects true or false, got '{value}'.")

        if kind in ("int", "float"):
            try:
                number = int(value) if kind == "int" else float(value)
            except (TypeError, ValueError):
                raise CLIError(f"'{key}' expects a number, got '{value}'.")
            if number < 0 or (key == "server.max_workers" and number < 1):
                raise CLIError(f"'{key}' is out of range: {value}")
            return number

        if kind == "list":
            if isinstance(value, (list, tuple)):
                return [str(v).strip() for v in value if str(v).strip()]
            return [part.strip() for part in str(value).split(",") if part.strip()]

        text = str(value).strip()
        if key == "server.mode" and text not in _ALLOWED_SERVER_MODES:
            raise CLIError(
                f"Unknown server mode: '{value}'.\n"
                f"Supported modes: {', '.join(sorted(_ALLOWED_SERVER_MODES))}"
            )
        if key == "logging.level":
            text = text.upper()
            if text not in _ALLOWED_LOG_LEVELS:
                raise CLIError(
                    f"Unknown log level: '{value}'.\n"
                    f"Supported levels: {', '.join(sorted(_ALLOWED_LOG_LEVELS))}"
                )
        return text

    @staticmethod
    def _merge(base: dict, overlay: dict):
        """Recursively merge *overlay* into *base*."""
        for key, value in overlay.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                RouterConfig._merge(base[key], value)
            else:
                base[key] = value

    @staticmethod
    def _set_nested(target: dict, key: str, value: Any):
        """Set a dot-separated *key* in *target*, creating intermediate dicts."""
        parts = key.split(".")
        current = target
        for part in parts[:-1]:
            if part not in current or not isinstance(current[part], dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value
