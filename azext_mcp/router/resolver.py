"""Intent resolution through the calling peer's LLM sampling capability.

When the peer advertises ``sampling``, the router can ask it to turn the
caller's free-text intent into a concrete choice:

- which provider best matches the intent (``{"tool": "<id>"}``)
- which command of that provider to run, and with what arguments
  (``{"command": "<name>", "parameters": {...}}``)

Resolution is best-effort.  Anything other than a well-formed answer naming
a known provider or command yields :data:`MISS`; no exception escapes.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from jinja2 import BaseLoader, Environment

from azext_mcp.mcp.base import CapabilityDescriptor, ProviderDescriptor
from azext_mcp.mcp.registry import ProviderRegistry
from azext_mcp.mcp.transport import CancelToken

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1000


class Sampler(ABC):
    """Asks the peer for a single LLM completion."""

    @abstractmethod
    def create_message(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str = "",
        max_tokens: int = DEFAULT_MAX_TOKENS,
        cancel: CancelToken | None = None,
    ) -> str:
        """Return the text of the completion."""


@dataclass
class IntentMatch:
    """A successful resolution."""

    provider_id: str = ""
    command: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


class _Miss:
    """Sentinel for "no usable answer"."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


# ===================================================================== #
#  Prompts                                                              #
# ===================================================================== #

SYSTEM_PROMPT = """\
You map a user's intent onto Azure tooling. Reply with a single JSON object \
and nothing else. If nothing fits, reply with the word Unknown.
"""

PROVIDER_PROMPT = """\
The user wants to perform the following operation against Azure:

{{ intent }}

These tools are available:
{% for provider in providers %}
- {{ provider.id }}: {{ provider.description }}
{% endfor %}

Pick the single tool that best matches the intent.
Respond with JSON in exactly this shape:

{"tool": "<tool id>"}

If no tool matches, respond with: Unknown
"""

COMMAND_PROMPT = """\
The user wants to perform the following operation against Azure:

{{ intent }}

The '{{ provider }}' tool offers these commands. Each lists the JSON Schema of its parameters.
{% for capability in capabilities %}

## {{ capability.name }}
{{ capability.description }}
Parameters schema: {{ capability.input_schema | tojson }}
{% endfor %}

Pick the single command that fulfils the intent and fill in its parameters
from the intent. Respond with JSON in exactly this shape:

{"command": "<command name>", "parameters": {<parameter name>: <value>}}

If no command matches, or required parameters cannot be derived from the
intent, respond with: Unknown
"""

_env = Environment(  # nosec B701 -- renders plain-text prompts, not HTML
    loader=BaseLoader(),
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
)
_provider_template = _env.from_string(PROVIDER_PROMPT)
_command_template = _env.from_string(COMMAND_PROMPT)


def render_provider_prompt(intent: str, providers: list[ProviderDescriptor]) -> str:
    return _provider_template.render(intent=intent, providers=providers)


def render_command_prompt(
    intent: str,
    provider: str,
    capabilities: list[CapabilityDescriptor],
) -> str:
    return _command_template.render(intent=intent, provider=provider, capabilities=capabilities)


# ===================================================================== #
#  Resolver                                                             #
# ===================================================================== #


class IntentResolver:
    """Formats resolution prompts, samples the peer and parses the answer."""

    def __init__(self, sampler: Sampler, max_tokens: int = DEFAULT_MAX_TOKENS):
        self.sampler = sampler
        self.max_tokens = max_tokens

    def resolve_provider(
        self,
        intent: str,
        providers: list[ProviderDescriptor],
        cancel: CancelToken | None = None,
    ) -> IntentMatch | _Miss:
        """Ask which provider fits *intent*; MISS unless it names a known one."""
        if not intent or not providers:
            return MISS
        answer = self._ask(render_provider_prompt(intent, providers), cancel)
        data = parse_answer(answer)
        if data is None:
            return MISS

        name = data.get("tool")
        if not isinstance(name, str):
            return MISS
        provider = ProviderRegistry.find(name, providers)
        if provider is None:
            logger.debug("Sampled provider '%s' is not in the catalog", name)
            return MISS
        return IntentMatch(provider_id=provider.id)

    def resolve_command(
        self,
        intent: str,
        provider: str,
        capabilities: list[CapabilityDescriptor],
        cancel: CancelToken | None = None,
    ) -> IntentMatch | _Miss:
        """Ask which command (and arguments) fulfils *intent*."""
        if not intent or not capabilities:
            return MISS
        answer = self._ask(render_command_prompt(intent, provider, capabilities), cancel)
        data = parse_answer(answer)
        if data is None:
            return MISS

        command = data.get("command")
        if not isinstance(command, str):
            return MISS
        known = {c.name.lower(): c.name for c in capabilities}
        if command.strip().lower() not in known:
            logger.debug("Sampled command '%s' is not offered by '%s'", command, provider)
            return MISS

        parameters = data.get("parameters")
        if parameters is None:
            parameters = {}
        if not isinstance(parameters, dict):
            return MISS
        return IntentMatch(
            provider_id=provider,
            command=known[command.strip().lower()],
            parameters=parameters,
        )

    def _ask(self, prompt: str, cancel: CancelToken | None) -> str:
        try:
            return self.sampler.create_message(
                [{"role": "user", "content": {"type": "text", "text": prompt}}],
                system_prompt=SYSTEM_PROMPT,
                max_tokens=self.max_tokens,
                cancel=cancel,
            )
        except Exception as exc:
            logger.debug("Sampling failed: %s", exc)
            return ""


_FENCE_RE = re.compile(r"```(?:json)?\s*\n(.*?)\n```", re.DOTALL)


def parse_answer(text: Any) -> dict | None:
    """Extract the JSON object from a sampled answer.

    Tries a fenced code block first, then the whole text, then the outermost
    brace-delimited span.  Returns None for ``Unknown`` or anything that is
    not a JSON object.
    """
    if not isinstance(text, str):
        return None
    text = text.strip()
    if not text or text.strip("\"'.").lower() == "unknown":
        return None

    candidates = []
    match = _FENCE_RE.search(text)
    if match:
        candidates.append(match.group(1))
    candidates.append(text)
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(data, dict):
            return data
    return None
