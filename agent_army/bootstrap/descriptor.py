"""Agent descriptor: caller options + defaults -> validated, immutable value."""

import json
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from agent_army.bootstrap.errors import ConflictError, ValidationError
from agent_army.bootstrap.secrets import (
    API_KEY,
    AUTH_KEY,
    BASE_SLOTS,
    GATEWAY_TOKEN,
    GITHUB_TOKEN,
    PLACEHOLDER_RE,
    SEARCH_API_KEY,
    SLACK_APP_TOKEN,
    SLACK_BOT_TOKEN,
)

log = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

# Provider user_data limits, in bytes
BACKEND_CEILINGS = {
    "aws": 16 * 1024,
    "hetzner": 32 * 1024,
}

DEFAULTS = {
    "stack": "dev",
    "backend": "hetzner",
    "model": "anthropic/claude-opus-4-6",
    "backup_model": None,
    "gateway_port": 18789,
    "browser_port": 18791,
    "sandbox": True,
    "funnel": False,
    "create_ubuntu_user": None,
    "skip_tailscale": False,
    "node_version": 22,
    "nvm_version": "0.40.1",
    "openclaw_version": "latest",
    "trusted_proxies": ["127.0.0.1"],
    "workspace_files": {},
    "env_vars": {},
    "post_setup_commands": [],
    "clawhub_skills": [],
    "plugins": [],
    "labels": {},
    "payload_ceiling": None,
}

# Hetzner images boot as root with no ubuntu user
CREATES_UBUNTU_USER = {"hetzner"}

# Set by the configuration block or relied on by the boot shell
RESERVED_NAMES = frozenset({
    "GATEWAY_PORT",
    "BROWSER_PORT",
    "AGENT_HOSTNAME",
    "OPENCLAW_MODEL",
    "PATH",
    "HOME",
    "IFS",
    "SHELL",
    "USER",
    "PWD",
    "NVM_DIR",
    "XDG_RUNTIME_DIR",
    "DEBIAN_FRONTEND",
    "CLAUDE_CODE_OAUTH_TOKEN",
})

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_HOSTNAME_JUNK = re.compile(r"[^a-z0-9-]+")
_VERSION = re.compile(r"^[A-Za-z0-9._-]+$")
_LABEL_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]{0,62}$")


# =============================================================================
# Types
# =============================================================================

@dataclass(frozen=True)
class PluginInstallEntry:
    """One plugin to install; secret config keys map to env var names."""

    name: str
    config: Mapping[str, Any] = field(default_factory=dict)
    secret_env_vars: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "config", MappingProxyType(dict(self.config)))
        object.__setattr__(self, "secret_env_vars", MappingProxyType(dict(self.secret_env_vars)))

    @property
    def secret_names(self) -> list[str]:
        seen = []
        for env_var in self.secret_env_vars.values():
            if env_var not in seen:
                seen.append(env_var)
        return seen


@dataclass(frozen=True)
class BootstrapDescriptor:
    stack: str
    agent_name: str
    hostname: str
    backend: str
    payload_ceiling: int
    model: str
    backup_model: str | None
    gateway_port: int
    browser_port: int
    sandbox: bool
    funnel: bool
    create_ubuntu_user: bool
    skip_tailscale: bool
    node_version: int
    nvm_version: str
    openclaw_version: str
    trusted_proxies: tuple[str, ...]
    workspace_files: Mapping[str, str]
    env_vars: Mapping[str, str]
    post_setup_commands: tuple[str, ...]
    clawhub_skills: tuple[str, ...]
    plugins: tuple[PluginInstallEntry, ...]
    labels: Mapping[str, str]
    secret_slots: tuple[str, ...]

    def uses_secret(self, name: str) -> bool:
        return name in self.secret_slots

    @property
    def slack_enabled(self) -> bool:
        return SLACK_BOT_TOKEN in self.secret_slots


# =============================================================================
# Labels and hostnames
# =============================================================================

def merge_labels(base: Mapping[str, str] | None, *overrides: Mapping[str, str] | None) -> dict[str, str]:
    """Layered label merge. Later layers win key by key; None layers are skipped."""
    merged: dict[str, str] = {}
    for layer in (base, *overrides):
        if not layer:
            continue
        for key, value in layer.items():
            merged[str(key)] = str(value)
    return merged


def resource_labels(descriptor: BootstrapDescriptor, resource: str) -> dict[str, str]:
    """Labels for one cloud resource of this agent (e.g. "server", "firewall")."""
    return merge_labels(descriptor.labels, {"Name": f"{descriptor.agent_name}-{resource}"})


def build_hostname(stack: str, agent_name: str) -> str:
    """`<stack>-<agent>` squeezed into a valid DNS label, so stacks never collide."""
    host = _HOSTNAME_JUNK.sub("-", f"{stack}-{agent_name}".lower()).strip("-")
    return host[:63].rstrip("-")


# =============================================================================
# Field coercion
# =============================================================================

def _check_free_text(field_name: str, value: str) -> str:
    if PLACEHOLDER_RE.search(value):
        raise ValidationError(field_name, "must not contain secret placeholder tokens")
    return value


def _str(field_name: str, value: Any, allow_empty: bool = False) -> str:
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise ValidationError(field_name, "expected a non-empty string")
    return value


def _bool(field_name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(field_name, f"expected true/false, got {value!r}")
    return value


def _port(field_name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 65535:
        raise ValidationError(field_name, f"expected a port number 1-65535, got {value!r}")
    return value


def _scalar_text(field_name: str, value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return _check_free_text(field_name, str(value))
    raise ValidationError(field_name, f"expected a string, got {type(value).__name__}")


def _str_list(field_name: str, value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        raise ValidationError(field_name, "expected a list of strings")
    return tuple(
        _check_free_text(f"{field_name}[{i}]", _str(f"{field_name}[{i}]", item))
        for i, item in enumerate(value)
    )


def _mapping(field_name: str, value: Any) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValidationError(field_name, "expected a mapping")
    return value


def _workspace_path(path: Any) -> str:
    path = _str("workspace_files", path)
    normalized = path.replace("\\", "/")
    if normalized.startswith("/") or normalized.endswith("/") or ".." in normalized.split("/") or "\0" in normalized:
        raise ValidationError(
            f"workspace_files.{path}",
            "paths must be relative and cannot contain '..'",
        )
    return normalized


def _workspace_files(value: Any) -> Mapping[str, str]:
    files = {}
    for path, content in _mapping("workspace_files", value).items():
        files[_workspace_path(path)] = _str(f"workspace_files.{path}", content, allow_empty=True)
    return MappingProxyType(files)


def _env_vars(value: Any) -> Mapping[str, str]:
    env = {}
    for key, raw in _mapping("env_vars", value).items():
        if not isinstance(key, str) or not _ENV_NAME.match(key):
            raise ValidationError("env_vars", f"{key!r} is not a valid environment variable name")
        if key in BASE_SLOTS:
            raise ValidationError(f"env_vars.{key}", "is a secret slot; supply it as a secret instead")
        if key in RESERVED_NAMES:
            raise ValidationError(f"env_vars.{key}", "is reserved by the bootstrap script")
        env[key] = _scalar_text(f"env_vars.{key}", raw)
    return MappingProxyType(env)


def _labels(value: Any, agent_name: str, stack: str) -> Mapping[str, str]:
    extra = {}
    for key, raw in _mapping("labels", value).items():
        if not isinstance(key, str) or not _LABEL_KEY.match(key):
            raise ValidationError("labels", f"{key!r} is not a valid label key")
        extra[key] = _scalar_text(f"labels.{key}", raw)
    base = {"managed-by": "agent-army", "stack": stack, "agent": agent_name}
    return MappingProxyType(merge_labels(base, extra))


def _plugins(value: Any, present) -> tuple[PluginInstallEntry, ...]:
    if not isinstance(value, (list, tuple)):
        raise ValidationError("plugins", "expected a list of plugin entries")

    entries = []
    owners: dict[str, str] = {}
    for i, raw in enumerate(value):
        where = f"plugins[{i}]"
        if isinstance(raw, str):
            raw = {"name": raw}
        raw = _mapping(where, raw)
        unknown = set(raw) - {"name", "config", "secret_env_vars"}
        if unknown:
            raise ValidationError(where, f"unknown keys: {', '.join(sorted(unknown))}")

        name = _check_free_text(f"{where}.name", _str(f"{where}.name", raw.get("name")))
        if any(e.name == name for e in entries):
            raise ValidationError(where, f"plugin {name} is listed twice")

        config = dict(_mapping(f"{where}.config", raw.get("config") or {}))
        try:
            _check_free_text(f"{where}.config", json.dumps(config, sort_keys=True))
        except TypeError as exc:
            raise ValidationError(f"{where}.config", f"values must be JSON-serializable ({exc})") from exc
        secret_env_vars = {}
        for config_key, env_var in _mapping(f"{where}.secret_env_vars", raw.get("secret_env_vars") or {}).items():
            field_name = f"{where}.secret_env_vars.{config_key}"
            if not isinstance(env_var, str) or not _ENV_NAME.match(env_var):
                raise ValidationError(field_name, f"{env_var!r} is not a valid environment variable name")
            if env_var in RESERVED_NAMES:
                raise ValidationError(field_name, f"{env_var} is reserved by the bootstrap script")
            if config_key in config:
                raise ValidationError(field_name, "key is also set as a plain config value")
            if not present(env_var):
                raise ValidationError(field_name, f"references undeclared secret {env_var}")
            owner = owners.get(env_var)
            if owner is not None and owner != name:
                raise ConflictError(env_var, [owner, name])
            owners[env_var] = name
            secret_env_vars[config_key] = env_var

        entries.append(PluginInstallEntry(name=name, config=config, secret_env_vars=secret_env_vars))
    return tuple(entries)


# =============================================================================
# Normalizer
# =============================================================================

def normalize(options: Mapping[str, Any], secrets: Mapping[str, str | None]) -> BootstrapDescriptor:
    """Fill defaults and validate.

    `secrets` is only checked for which slots are present and non-empty.
    Values are never copied into the descriptor.
    """
    options = _mapping("options", options)
    unknown = set(options) - set(DEFAULTS) - {"name"}
    if unknown:
        raise ValidationError(", ".join(sorted(unknown)), "unknown option")
    opts = {**DEFAULTS, **{k: v for k, v in options.items() if v is not None}}

    def present(name: str) -> bool:
        value = secrets.get(name)
        return isinstance(value, str) and bool(value.strip())

    agent_name = _str("name", options.get("name"))
    n = agent_name.replace("-", "").replace("_", "")
    if not n.isalnum() or not 1 <= len(agent_name) <= 63:
        raise ValidationError("name", "must be 1-63 alphanumeric characters (hyphens/underscores ok)")
    stack = _str("stack", opts["stack"])

    backend = _str("backend", opts["backend"])
    if backend not in BACKEND_CEILINGS:
        raise ValidationError("backend", f"unknown backend {backend!r} (expected one of {', '.join(BACKEND_CEILINGS)})")
    ceiling = opts["payload_ceiling"]
    if ceiling is None:
        ceiling = BACKEND_CEILINGS[backend]
    elif isinstance(ceiling, bool) or not isinstance(ceiling, int) or ceiling <= 0:
        raise ValidationError("payload_ceiling", "expected a positive byte count")

    gateway_port = _port("gateway_port", opts["gateway_port"])
    browser_port = _port("browser_port", opts["browser_port"])
    if gateway_port == browser_port:
        raise ValidationError("browser_port", "must differ from gateway_port")

    skip_tailscale = _bool("skip_tailscale", opts["skip_tailscale"])
    create_user = opts["create_ubuntu_user"]
    if create_user is None:
        create_user = backend in CREATES_UBUNTU_USER

    node_version = opts["node_version"]
    if isinstance(node_version, bool) or not isinstance(node_version, int) or node_version <= 0:
        raise ValidationError("node_version", "expected a major version number")
    for key in ("nvm_version", "openclaw_version"):
        if not _VERSION.match(_str(key, opts[key])):
            raise ValidationError(key, f"invalid version string {opts[key]!r}")

    # Secret slots
    if not present(API_KEY):
        raise ValidationError(API_KEY, "API key is required")
    if not skip_tailscale and not present(AUTH_KEY):
        raise ValidationError(AUTH_KEY, "Tailscale auth key is required")
    if present(SLACK_BOT_TOKEN) != present(SLACK_APP_TOKEN):
        raise ValidationError("slack", f"{SLACK_BOT_TOKEN} and {SLACK_APP_TOKEN} must be provided together")

    slots = [API_KEY]
    if not skip_tailscale:
        slots.append(AUTH_KEY)
    slots.append(GATEWAY_TOKEN)
    for optional in (GITHUB_TOKEN, SEARCH_API_KEY, SLACK_BOT_TOKEN, SLACK_APP_TOKEN):
        if present(optional):
            slots.append(optional)

    plugins = _plugins(opts["plugins"], present)
    for plugin in plugins:
        for env_var in plugin.secret_names:
            if env_var not in slots:
                slots.append(env_var)

    model = _check_free_text("model", _str("model", opts["model"]))
    backup_model = opts["backup_model"]
    if backup_model is not None:
        backup_model = _check_free_text("backup_model", _str("backup_model", backup_model))

    descriptor = BootstrapDescriptor(
        stack=stack,
        agent_name=agent_name,
        hostname=build_hostname(stack, agent_name),
        backend=backend,
        payload_ceiling=ceiling,
        model=model,
        backup_model=backup_model,
        gateway_port=gateway_port,
        browser_port=browser_port,
        sandbox=_bool("sandbox", opts["sandbox"]),
        funnel=_bool("funnel", opts["funnel"]),
        create_ubuntu_user=_bool("create_ubuntu_user", create_user),
        skip_tailscale=skip_tailscale,
        node_version=node_version,
        nvm_version=opts["nvm_version"],
        openclaw_version=opts["openclaw_version"],
        trusted_proxies=_str_list("trusted_proxies", opts["trusted_proxies"]),
        workspace_files=_workspace_files(opts["workspace_files"]),
        env_vars=_env_vars(opts["env_vars"]),
        post_setup_commands=_str_list("post_setup_commands", opts["post_setup_commands"]),
        clawhub_skills=_str_list("clawhub_skills", opts["clawhub_skills"]),
        plugins=plugins,
        labels=_labels(opts["labels"], agent_name, stack),
        secret_slots=tuple(slots),
    )
    log.debug(f"  Normalized descriptor for {descriptor.hostname} ({len(slots)} secret slots)")
    return descriptor
