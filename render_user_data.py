#!/usr/bin/env python3
"""
render_user_data.py: cloud-init user data for one OpenClaw agent

Reads an agent definition (YAML or JSON) and the agent's secrets from the
environment, then writes the compressed user-data payload a cloud backend
accepts at server creation.

  1. Load the agent file
  2. Collect secrets from the environment (.env is honored)
  3. Derive GATEWAY_TOKEN if it is not set
  4. Normalize -> generate -> interpolate -> compress
  5. Write the payload, print a JSON summary (names and sizes, never values)

Usage:
    python3 render_user_data.py agents/scout.yaml --stack prod --output user-data.sh
    python3 render_user_data.py agents/scout.yaml --template-only

Environment:
    ANTHROPIC_API_KEY       Anthropic API key or Claude OAuth token (required)
    TAILSCALE_AUTH_KEY      Tailscale auth key (required unless skip_tailscale)
    GATEWAY_TOKEN           (optional) Gateway token, derived when unset
    GITHUB_TOKEN            (optional) GitHub token for the gh CLI
    BRAVE_API_KEY           (optional) Brave web search key
    SLACK_BOT_TOKEN         (optional) Slack bot token, needs SLACK_APP_TOKEN
    SLACK_APP_TOKEN         (optional) Slack app token, needs SLACK_BOT_TOKEN
    <plugin env vars>       Any secret_env_vars the agent file's plugins declare
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

try:
    import yaml
except ImportError:
    sys.exit("ERROR: PyYAML not installed. Run: pip install PyYAML")

try:
    from dotenv import load_dotenv
except ImportError:
    sys.exit("ERROR: python-dotenv not installed. Run: pip install python-dotenv")

from agent_army.bootstrap.compress import ENCODINGS, SHELL
from agent_army.bootstrap.descriptor import BACKEND_CEILINGS
from agent_army.bootstrap.errors import BootstrapError, ValidationError
from agent_army.bootstrap.pipeline import build_user_data, render_template, summarize
from agent_army.bootstrap.redact import install_log_redaction, redact
from agent_army.bootstrap.secrets import BASE_SLOTS

# =============================================================================
# Configuration
# =============================================================================

LOG_FMT = "%(asctime)s %(message)s"
log = logging.getLogger("render_user_data")


# =============================================================================
# Inputs
# =============================================================================

def load_agent_file(path: Path) -> dict:
    """Parse an agent definition. JSON files parse as YAML too."""
    try:
        text = path.read_text()
    except OSError as exc:
        raise ValidationError("agent_file", f"cannot read {path}: {exc.strerror}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError("agent_file", f"{path} is not valid YAML/JSON ({type(exc).__name__})") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("agent_file", f"{path} must contain a mapping at the top level")
    return data


def plugin_secret_names(options: dict) -> list[str]:
    """Env var names the agent file's plugins read their secrets from."""
    names = []
    plugins = options.get("plugins") or []
    if not isinstance(plugins, list):
        return names
    for plugin in plugins:
        if not isinstance(plugin, dict):
            continue
        secret_env_vars = plugin.get("secret_env_vars") or {}
        if not isinstance(secret_env_vars, dict):
            continue
        for env_var in secret_env_vars.values():
            if isinstance(env_var, str) and env_var not in names:
                names.append(env_var)
    return names


def secrets_from_env(options: dict, environ=None) -> dict[str, str]:
    """Pick every base slot and declared plugin secret that is set and non-empty."""
    environ = os.environ if environ is None else environ
    secrets = {}
    for name in (*BASE_SLOTS, *plugin_secret_names(options)):
        value = environ.get(name, "")
        if value.strip():
            secrets[name] = value
    return secrets


# =============================================================================
# Output
# =============================================================================

def write_payload(path: Path, data: bytes):
    """Write user data readable by the owner only. It holds live secrets."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, 0o600)


def render(args) -> dict:
    options = load_agent_file(Path(args.agent_file))
    if args.stack:
        options["stack"] = args.stack
    if args.backend:
        options["backend"] = args.backend
    if "name" not in options:
        options["name"] = Path(args.agent_file).stem

    secrets = secrets_from_env(options)
    log.info("=" * 64)
    log.info(f"  USER DATA{' [TEMPLATE ONLY]' if args.template_only else ''}")
    log.info("=" * 64)
    log.info(f"  Agent file:  {args.agent_file}")
    log.info(f"  Secrets set: {', '.join(secrets) or '(none)'}")
    log.info("=" * 64)

    if args.template_only:
        descriptor, template = render_template(options, secrets)
        sys.stdout.write(redact(template.text))
        return {
            "hostname": descriptor.hostname,
            "secret_names": list(template.secret_names),
            "template_bytes": len(template.text.encode("utf-8")),
        }

    result = build_user_data(options, secrets, encoding=args.encoding, strict=args.strict)
    summary = summarize(result)
    if args.output == "-":
        sys.stdout.buffer.write(result["payload"].data)
        sys.stdout.flush()
        log.info(f"  Summary: {json.dumps(summary, sort_keys=True)}")
    else:
        write_payload(Path(args.output), result["payload"].data)
        summary["output"] = args.output
        log.info(f"\n  User data written to {args.output} (mode 600)")
        print(json.dumps(summary, indent=2, sort_keys=True))
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Render cloud-init user data for an OpenClaw agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 render_user_data.py agents/scout.yaml --output user-data.sh
  python3 render_user_data.py agents/scout.yaml --backend aws --encoding gzip+base64 --output ud.b64
  python3 render_user_data.py agents/scout.yaml --template-only

With --output - (the default) the payload goes to stdout and the summary to the log.
""",
    )
    parser.add_argument("agent_file", help="Agent definition (YAML or JSON)")
    parser.add_argument("--stack", default=None, help="Stack name, prefixes the hostname (default: from file, else dev)")
    parser.add_argument("--backend", default=None, choices=list(BACKEND_CEILINGS), help="Cloud backend (sets the size limit)")
    parser.add_argument("--encoding", default=SHELL, choices=list(ENCODINGS))
    parser.add_argument("--output", default="-", help="Payload path, or - for stdout")
    parser.add_argument("--template-only", action="store_true", help="Print the redacted template, skip interpolation")
    parser.add_argument("--strict", action="store_true", help="Fail on secrets the script does not use")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FMT,
        datefmt="%H:%M:%S",
    )
    install_log_redaction()

    try:
        return render(args)
    except BootstrapError as exc:
        log.error(f"ERROR: {redact(str(exc))}")
        sys.exit(1)


if __name__ == "__main__":
    main()
