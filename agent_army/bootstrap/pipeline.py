"""User-data pipeline: Normalizer -> Generator -> Interpolator -> Compressor."""

import logging
from typing import Any, Mapping

from agent_army.bootstrap.compress import SHELL, CompressedPayload, compress
from agent_army.bootstrap.descriptor import BootstrapDescriptor, normalize, resource_labels
from agent_army.bootstrap.generator import GeneratedScript, generate
from agent_army.bootstrap.interpolate import interpolate
from agent_army.bootstrap.secrets import GATEWAY_TOKEN, SecretBinding
from agent_army.bootstrap.tokens import derive_gateway_token

log = logging.getLogger(__name__)


def with_gateway_token(secrets: Mapping[str, str | None]) -> dict[str, str | None]:
    """Copy of secrets with GATEWAY_TOKEN filled in when the caller left it empty."""
    out = dict(secrets)
    if not out.get(GATEWAY_TOKEN):
        out[GATEWAY_TOKEN] = derive_gateway_token()
        log.info("  Gateway token: derived from a fresh ed25519 keypair")
    return out


def render_template(options: Mapping[str, Any], secrets: Mapping[str, str | None]) -> tuple[BootstrapDescriptor, GeneratedScript]:
    """Normalize and generate only. The result holds placeholders, not values."""
    descriptor = normalize(options, secrets)
    return descriptor, generate(descriptor)


def build_user_data(
    options: Mapping[str, Any],
    secrets: SecretBinding | Mapping[str, str | None],
    *,
    encoding: str = SHELL,
    strict: bool = False,
) -> dict:
    """Run the whole pipeline for one agent.

    Returns descriptor, template (placeholders only) and payload
    (CompressedPayload). The interpolated script itself is not returned.
    """
    if isinstance(secrets, SecretBinding):
        values = secrets.as_mapping()
    else:
        values = {k: v for k, v in secrets.items() if v}
    values = with_gateway_token(values)

    log.info("\n[1/4] Normalizing agent options...")
    descriptor = normalize(options, values)
    log.info(f"  Hostname:    {descriptor.hostname}")
    log.info(f"  Backend:     {descriptor.backend} (limit {descriptor.payload_ceiling} bytes)")
    log.info(f"  Secrets:     {', '.join(descriptor.secret_slots)}")

    log.info("\n[2/4] Generating bootstrap script...")
    template = generate(descriptor)
    log.info(f"  Template: {len(template.text)} bytes")

    log.info("\n[3/4] Interpolating secrets...")
    script = interpolate(template, values, strict=strict)

    log.info("\n[4/4] Compressing user data...")
    payload: CompressedPayload = compress(
        script,
        ceiling=descriptor.payload_ceiling,
        encoding=encoding,
    )
    return {
        "descriptor": descriptor,
        "template": template,
        "payload": payload,
        "script_bytes": len(script.encode("utf-8")),
    }


def summarize(result: dict) -> dict:
    """JSON-safe summary of a build_user_data() result. Names only, no values."""
    descriptor: BootstrapDescriptor = result["descriptor"]
    payload: CompressedPayload = result["payload"]
    return {
        "hostname": descriptor.hostname,
        "stack": descriptor.stack,
        "agent": descriptor.agent_name,
        "backend": descriptor.backend,
        "encoding": payload.encoding,
        "secret_names": list(result["template"].secret_names),
        "plugins": [p.name for p in descriptor.plugins],
        "template_bytes": len(result["template"].text.encode("utf-8")),
        "script_bytes": result["script_bytes"],
        "payload_bytes": len(payload),
        "ceiling_bytes": payload.ceiling,
        "labels": dict(descriptor.labels),
        "server_labels": resource_labels(descriptor, "server"),
    }
