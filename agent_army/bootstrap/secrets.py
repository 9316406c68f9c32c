"""Secret slots, placeholders, and the binding handed to the interpolator."""

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from agent_army.bootstrap.errors import SecretResolutionError, ValidationError
from agent_army.bootstrap.redact import redact

log = logging.getLogger(__name__)

# =============================================================================
# Slots and placeholders
# =============================================================================

API_KEY = "ANTHROPIC_API_KEY"
AUTH_KEY = "TAILSCALE_AUTH_KEY"
GATEWAY_TOKEN = "GATEWAY_TOKEN"
GITHUB_TOKEN = "GITHUB_TOKEN"
SEARCH_API_KEY = "BRAVE_API_KEY"
SLACK_BOT_TOKEN = "SLACK_BOT_TOKEN"
SLACK_APP_TOKEN = "SLACK_APP_TOKEN"

BASE_SLOTS = (
    API_KEY,
    AUTH_KEY,
    GATEWAY_TOKEN,
    GITHUB_TOKEN,
    SEARCH_API_KEY,
    SLACK_BOT_TOKEN,
    SLACK_APP_TOKEN,
)

PLACEHOLDER_RE = re.compile(r"<secret:([A-Za-z_][A-Za-z0-9_]*)>")


def placeholder(name: str) -> str:
    return f"<secret:{name}>"


# =============================================================================
# Binding
# =============================================================================

@dataclass(frozen=True)
class SecretBinding:
    """Resolved secret values, keyed by slot name only when flattened.

    Plugin secrets are keyed by the env var name the plugin declared, never by
    position.
    """

    api_key: str
    auth_key: str = ""
    gateway_token: str = ""
    github_token: str | None = None
    search_api_key: str | None = None
    slack_bot_token: str | None = None
    slack_app_token: str | None = None
    plugin_secrets: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "plugin_secrets", MappingProxyType(dict(self.plugin_secrets)))

    def __repr__(self) -> str:
        names = ", ".join(self.as_mapping())
        return f"SecretBinding({names})"

    @classmethod
    def from_mapping(cls, values: Mapping[str, str | None]) -> "SecretBinding":
        """Split a flat name -> value mapping into base slots and plugin secrets."""
        plugin_secrets = {k: v for k, v in values.items() if k not in BASE_SLOTS and v}
        return cls(
            api_key=values.get(API_KEY) or "",
            auth_key=values.get(AUTH_KEY) or "",
            gateway_token=values.get(GATEWAY_TOKEN) or "",
            github_token=values.get(GITHUB_TOKEN) or None,
            search_api_key=values.get(SEARCH_API_KEY) or None,
            slack_bot_token=values.get(SLACK_BOT_TOKEN) or None,
            slack_app_token=values.get(SLACK_APP_TOKEN) or None,
            plugin_secrets=plugin_secrets,
        )

    def as_mapping(self) -> dict[str, str]:
        """Flatten to name -> value, dropping unset slots."""
        base = {
            API_KEY: self.api_key,
            AUTH_KEY: self.auth_key,
            GATEWAY_TOKEN: self.gateway_token,
            GITHUB_TOKEN: self.github_token,
            SEARCH_API_KEY: self.search_api_key,
            SLACK_BOT_TOKEN: self.slack_bot_token,
            SLACK_APP_TOKEN: self.slack_app_token,
        }
        out = {k: v for k, v in base.items() if v}
        for env_var, value in self.plugin_secrets.items():
            if not value:
                continue
            if env_var in out and out[env_var] != value:
                raise ValidationError(
                    "plugin_secrets",
                    f"{env_var} is already bound as a built-in slot with a different value",
                )
            out[env_var] = value
        return out


# =============================================================================
# Fan-in of secret producers
# =============================================================================

async def _resolve_one(name: str, producer: Any) -> str | None:
    try:
        if inspect.isawaitable(producer):
            return await producer
        if callable(producer):
            result = await asyncio.to_thread(producer)
            if inspect.isawaitable(result):
                result = await result
            return result
        return producer
    except Exception as exc:
        raise SecretResolutionError(name, redact(f"{type(exc).__name__}: {exc}")) from exc


async def gather_secrets(producers: Mapping[str, Any]) -> dict[str, str | None]:
    """Wait for every producer and return name -> value.

    A producer may be a plain value, an awaitable, or a zero-argument callable
    (run in a worker thread). The first failure aborts the whole join.
    """
    names = list(producers)
    log.debug(f"  Resolving {len(names)} secret(s): {', '.join(names)}")
    values = await asyncio.gather(*(_resolve_one(n, producers[n]) for n in names))
    return dict(zip(names, values))


def resolve_secrets(producers: Mapping[str, Any]) -> SecretBinding:
    """Synchronous join: resolve all producers, then build one binding."""
    return SecretBinding.from_mapping(asyncio.run(gather_secrets(producers)))
