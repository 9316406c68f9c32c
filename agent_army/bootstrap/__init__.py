"""Bootstrap user-data pipeline.

normalize -> generate -> interpolate -> compress. Only the interpolated
script ever holds secret values, and it is never logged or returned.
"""

from agent_army.bootstrap.compress import CompressedPayload, compress, decompress
from agent_army.bootstrap.descriptor import (
    BootstrapDescriptor,
    PluginInstallEntry,
    build_hostname,
    merge_labels,
    normalize,
    resource_labels,
)
from agent_army.bootstrap.errors import (
    BootstrapError,
    ConflictError,
    PayloadTooLargeError,
    SecretResolutionError,
    UnresolvedSecretError,
    UnusedBindingError,
    ValidationError,
)
from agent_army.bootstrap.generator import GeneratedScript, generate
from agent_army.bootstrap.interpolate import interpolate
from agent_army.bootstrap.pipeline import build_user_data, summarize
from agent_army.bootstrap.redact import RedactingFilter, install_log_redaction, redact
from agent_army.bootstrap.secrets import SecretBinding, gather_secrets, resolve_secrets
from agent_army.bootstrap.tokens import derive_gateway_token, new_gateway_token, token_from_public_key

__all__ = [
    "BootstrapDescriptor",
    "BootstrapError",
    "CompressedPayload",
    "ConflictError",
    "GeneratedScript",
    "PayloadTooLargeError",
    "PluginInstallEntry",
    "RedactingFilter",
    "SecretBinding",
    "SecretResolutionError",
    "UnresolvedSecretError",
    "UnusedBindingError",
    "ValidationError",
    "build_hostname",
    "build_user_data",
    "compress",
    "decompress",
    "derive_gateway_token",
    "gather_secrets",
    "generate",
    "install_log_redaction",
    "interpolate",
    "merge_labels",
    "new_gateway_token",
    "normalize",
    "redact",
    "resolve_secrets",
    "resource_labels",
    "summarize",
    "token_from_public_key",
]
