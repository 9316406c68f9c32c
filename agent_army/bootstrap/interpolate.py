"""Secret interpolation: placeholder template + binding -> runnable script."""

import logging
from typing import Mapping

from agent_army.bootstrap.errors import (
    UnresolvedSecretError,
    UnusedBindingError,
    ValidationError,
)
from agent_army.bootstrap.generator import GeneratedScript
from agent_army.bootstrap.secrets import PLACEHOLDER_RE, SecretBinding

log = logging.getLogger(__name__)


def shell_single_quote_escape(value: str) -> str:
    """Escape text for the inside of a single-quoted bash string."""
    return value.replace("'", "'\\''")


def _as_mapping(bindings: SecretBinding | Mapping[str, str]) -> dict[str, str]:
    if isinstance(bindings, SecretBinding):
        return bindings.as_mapping()
    return {k: v for k, v in bindings.items() if v is not None}


def interpolate(
    script: GeneratedScript | str,
    bindings: SecretBinding | Mapping[str, str],
    *,
    strict: bool = False,
) -> str:
    """Replace every <secret:NAME> placeholder with its bound value.

    Values are matched by name, never by position. Raises
    UnresolvedSecretError when a placeholder has no binding. Bindings the
    script never asks for are logged as a warning, or raised as
    UnusedBindingError when strict is set.
    """
    text = script.text if isinstance(script, GeneratedScript) else script
    values = _as_mapping(bindings)

    for name, value in values.items():
        if not isinstance(value, str):
            raise ValidationError(name, f"secret value must be a string, got {type(value).__name__}")
        if PLACEHOLDER_RE.search(value):
            raise ValidationError(name, "secret value must not contain a placeholder token")

    referenced: list[str] = []
    for match in PLACEHOLDER_RE.finditer(text):
        if match.group(1) not in referenced:
            referenced.append(match.group(1))

    missing = [name for name in referenced if name not in values]
    if missing:
        raise UnresolvedSecretError(missing)

    unused = [name for name in values if name not in referenced]
    if unused:
        err = UnusedBindingError(unused)
        if strict:
            raise err
        log.warning(f"  WARNING: {err}")

    # Single pass: substituted values are never rescanned
    result = PLACEHOLDER_RE.sub(lambda m: shell_single_quote_escape(values[m.group(1)]), text)
    log.debug(f"  Interpolated {len(referenced)} secret(s): {', '.join(referenced)}")
    return result
