"""Request model and mode classification for the ``azure`` tool."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Wire names accepted for the provider argument, in priority order.
PROVIDER_ARGUMENT_NAMES = ("tool", "provider", "providerId")


class RouterMode(str, Enum):
    """How a request to the ``azure`` tool is served."""

    ROOT_LEARN = "root-learn"
    PROVIDER_LEARN = "provider-learn"
    INVOKE = "invoke"
    UNDERSPECIFIED = "underspecified"


class Outcome(str, Enum):
    """What a routed request produced."""

    LISTING = "listing"
    RESULT = "result"
    PROVIDER_ERROR = "provider-error"  # provider answered with isError
    NOT_FOUND = "not-found"
    START_FAILED = "start-failed"
    DISCONNECTED = "disconnected"
    CALL_FAILED = "call-failed"
    USAGE = "usage"


@dataclass
class RouterRequest:
    """Arguments of one ``azure`` tool call.

    Empty strings count as absent.  ``parameters`` is forwarded to the
    provider verbatim.
    """

    intent: str = ""
    provider_id: str = ""
    command: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    learn: bool = False

    @classmethod
    def from_arguments(cls, arguments: Any) -> RouterRequest:
        """Build from raw ``tools/call`` arguments, tolerating loose types."""
        if not isinstance(arguments, dict):
            arguments = {}

        provider_id = ""
        for key in PROVIDER_ARGUMENT_NAMES:
            provider_id = _text(arguments.get(key))
            if provider_id:
                break

        return cls(
            intent=_text(arguments.get("intent")),
            provider_id=provider_id,
            command=_text(arguments.get("command")),
            parameters=_parameters(arguments.get("parameters")),
            learn=_flag(arguments.get("learn")),
        )

    def classify(self) -> RouterMode:
        """Map the request to exactly one mode.

        Free-text intent with nothing else set is treated as a request to
        discover providers.
        """
        if self.learn and not self.provider_id and not self.command:
            return RouterMode.ROOT_LEARN
        if self.learn and self.provider_id and not self.command:
            return RouterMode.PROVIDER_LEARN
        if not self.learn and self.provider_id and self.command:
            return RouterMode.INVOKE
        if self.intent and not (self.learn or self.provider_id or self.command):
            return RouterMode.ROOT_LEARN
        return RouterMode.UNDERSPECIFIED


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _parameters(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    # Some callers send the object JSON-encoded
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        if isinstance(parsed, dict):
            return parsed
    return {}
