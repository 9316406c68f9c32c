"""Bootstrap script generator.

Renders a BootstrapDescriptor into the bash user-data script that installs
and starts an OpenClaw agent. Secrets never appear in the output: each slot is
assigned once, as a single-quoted `NAME='<secret:NAME>'` line in the
configuration block, and everything else reads the shell variable. The result
is safe to log or cache.
"""

import base64
import gzip
import json
import logging
import posixpath
import re
import shlex
from typing import NamedTuple

from agent_army.bootstrap.descriptor import BootstrapDescriptor
from agent_army.bootstrap.secrets import (
    API_KEY,
    GATEWAY_TOKEN,
    GITHUB_TOKEN,
    SEARCH_API_KEY,
    SLACK_APP_TOKEN,
    SLACK_BOT_TOKEN,
    placeholder,
)

log = logging.getLogger(__name__)

WORKSPACE_DIR = "/home/ubuntu/.openclaw/workspace"
CONFIG_PATH = "/home/ubuntu/.openclaw/openclaw.json"

# Exported to the ubuntu user's shell when bound
SHELL_EXPORTED = (GITHUB_TOKEN, SEARCH_API_KEY, SLACK_BOT_TOKEN, SLACK_APP_TOKEN)


class GeneratedScript(NamedTuple):
    text: str
    secret_names: list[str]


# =============================================================================
# Templates
# =============================================================================

SCRIPT_TEMPLATE = """#!/bin/bash
set -e

export DEBIAN_FRONTEND=noninteractive

# ============================================
# OpenClaw agent provisioning script
# Generated by agent-army for __HOSTNAME__
# ============================================

# Configuration
__CONFIG__

echo "Starting OpenClaw agent provisioning..."
hostnamectl set-hostname "$AGENT_HOSTNAME" || true

# System updates
echo "Updating system packages..."
apt-get update
apt-get upgrade -y
apt-get install -y unzip

# Install Docker
echo "Installing Docker..."
curl -fsSL https://get.docker.com | sh
systemctl enable docker
systemctl start docker
__CREATE_USER__
usermod -aG docker ubuntu

# Install GitHub CLI
echo "Installing GitHub CLI..."
type -p curl >/dev/null || apt-get install -y curl
curl -fsSL https://cli.github.com/packages/githubcli-archive-keyring.gpg | dd of=/usr/share/keyrings/githubcli-archive-keyring.gpg
chmod go+r /usr/share/keyrings/githubcli-archive-keyring.gpg
echo "deb [arch=$(dpkg --print-architecture) signed-by=/usr/share/keyrings/githubcli-archive-keyring.gpg] https://cli.github.com/packages stable main" > /etc/apt/sources.list.d/github-cli.list
apt-get update
apt-get install -y gh

# Install NVM, Node.js and OpenClaw for ubuntu user
echo "Installing Node.js __NODE_VERSION__ via NVM..."
sudo -u ubuntu bash << 'UBUNTU_SCRIPT'
set -e
cd ~
curl -o- https://raw.githubusercontent.com/nvm-sh/nvm/v__NVM_VERSION__/install.sh | bash
__LOAD_NVM__
nvm install __NODE_VERSION__
nvm use __NODE_VERSION__
nvm alias default __NODE_VERSION__
npm install -g openclaw@__OPENCLAW_VERSION__
if ! grep -q 'NVM_DIR' ~/.bashrc; then
  echo 'export NVM_DIR="$HOME/.nvm"' >> ~/.bashrc
  echo '[ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"' >> ~/.bashrc
fi
UBUNTU_SCRIPT

# Credentials for the ubuntu user's shell
if [[ "$ANTHROPIC_API_KEY" == sk-ant-oat* ]]; then
  printf 'export CLAUDE_CODE_OAUTH_TOKEN=%q\\n' "$ANTHROPIC_API_KEY" >> /home/ubuntu/.bashrc
  echo "Detected OAuth token, exporting as CLAUDE_CODE_OAUTH_TOKEN"
else
  printf 'export ANTHROPIC_API_KEY=%q\\n' "$ANTHROPIC_API_KEY" >> /home/ubuntu/.bashrc
  echo "Detected API key, exporting as ANTHROPIC_API_KEY"
fi
__SECRET_EXPORTS__
__ENV_EXPORTS__
__TAILSCALE__
__GITHUB_AUTH__

# Install Claude Code CLI for ubuntu user
echo "Installing Claude Code..."
sudo -u ubuntu bash << 'CLAUDE_CODE_INSTALL_SCRIPT' || echo "WARNING: Claude Code installation failed. Install manually with: curl -fsSL https://claude.ai/install.sh | bash"
set -e
cd ~
curl -fsSL https://claude.ai/install.sh | bash
if ! grep -q '.local/bin' ~/.bashrc; then
  echo 'export PATH="$HOME/.local/bin:$PATH"' >> ~/.bashrc
fi
mkdir -p ~/.claude
echo __CLAUDE_SETTINGS__ > ~/.claude/settings.json
CLAUDE_CODE_INSTALL_SCRIPT

# Let the ubuntu user's services run at boot
loginctl enable-linger ubuntu
systemctl start user@1000.service

# Run OpenClaw onboarding as ubuntu user (daemon is installed separately)
echo "Running OpenClaw onboarding..."
sudo -H -u ubuntu env ANTHROPIC_API_KEY="$ANTHROPIC_API_KEY" GATEWAY_PORT="$GATEWAY_PORT" bash << 'ONBOARD_SCRIPT'
__LOAD_NVM__
openclaw onboard --non-interactive --accept-risk \\
  --mode local \\
  --auth-choice apiKey \\
  --gateway-port "$GATEWAY_PORT" \\
  --gateway-bind loopback \\
  --skip-daemon \\
  --skip-skills || echo "WARNING: OpenClaw onboarding failed. Run openclaw onboard manually."
ONBOARD_SCRIPT
__WORKSPACE_FILES__
__PLUGINS__
__SKILLS__

# Install daemon service
echo "Installing OpenClaw daemon..."
sudo -H -u ubuntu env XDG_RUNTIME_DIR=/run/user/1000 bash << 'DAEMON_SCRIPT'
__LOAD_NVM__
openclaw daemon install || echo "WARNING: Daemon install failed. Run openclaw daemon install manually."
DAEMON_SCRIPT

# Patch openclaw.json: gateway auth, model, channels, plugins
echo "Configuring OpenClaw gateway..."
sudo -H -u ubuntu env __PATCH_ENV__ python3 << 'PYTHON_SCRIPT'
__CONFIG_PATCH__
PYTHON_SCRIPT
__TAILSCALE_PROXY__

# Fix up any missing config
echo "Running openclaw doctor..."
sudo -H -u ubuntu bash << 'DOCTOR_SCRIPT'
__LOAD_NVM__
openclaw doctor --fix --non-interactive || echo "WARNING: openclaw doctor failed"
DOCTOR_SCRIPT
__POST_SETUP__
echo "============================================"
echo "OpenClaw agent setup complete!"
echo "============================================"
"""

LOAD_NVM = (
    "export HOME=/home/ubuntu\n"
    'export NVM_DIR="$HOME/.nvm"\n'
    '[ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"'
)

CONFIG_PATCH_TEMPLATE = """import json
import os

settings = json.loads(__SETTINGS__)
config_path = __CONFIG_PATH__

with open(config_path) as f:
    config = json.load(f)

gateway = config.setdefault("gateway", {})
gateway["port"] = settings["gatewayPort"]
gateway["trustedProxies"] = settings["trustedProxies"]
gateway["controlUi"] = {"enabled": True, "allowInsecureAuth": True}
gateway["auth"] = {"mode": "token", "token": os.environ["GATEWAY_TOKEN"]}

# OAuth token (Claude Pro/Max) vs console API key
cred = os.environ.get("ANTHROPIC_API_KEY", "")
if cred.startswith("sk-ant-oat"):
    config["env"] = {"CLAUDE_CODE_OAUTH_TOKEN": cred}
else:
    config["env"] = {"ANTHROPIC_API_KEY": cred}

defaults = config.setdefault("agents", {}).setdefault("defaults", {})
model = {"primary": settings["model"]}
if settings["backupModel"]:
    model["fallbacks"] = [settings["backupModel"]]
defaults["model"] = model
defaults["heartbeat"] = {"every": "1m", "session": "main"}
defaults["sandbox"] = {"mode": "all" if settings["sandbox"] else "off"}
config["browser"] = {"enabled": True, "controlPort": settings["browserPort"]}

if os.environ.get("BRAVE_API_KEY"):
    web = config.setdefault("tools", {}).setdefault("web", {})
    web["search"] = {"provider": "brave", "apiKey": os.environ["BRAVE_API_KEY"]}
    print("Configured Brave web search")

entries = config.setdefault("plugins", {}).setdefault("entries", {})

if settings["slack"]:
    config.setdefault("channels", {})["slack"] = {
        "mode": "socket",
        "enabled": True,
        "botToken": os.environ.get("SLACK_BOT_TOKEN", ""),
        "appToken": os.environ.get("SLACK_APP_TOKEN", ""),
        "userTokenReadOnly": True,
        "groupPolicy": "open",
        "dm": {"enabled": True, "policy": "open", "allowFrom": ["*"]},
    }
    entries["slack"] = {"enabled": True}
    print("Configured Slack channel with Socket Mode")

for plugin in settings["plugins"]:
    plugin_config = dict(plugin["config"])
    for key, env_var in plugin["secretEnv"].items():
        plugin_config[key] = os.environ.get(env_var, "")
    entries[plugin["name"]] = {"enabled": True, "config": plugin_config}
    print("Configured plugin " + plugin["name"])

with open(config_path, "w") as f:
    json.dump(config, f, indent=2)

print("Configured gateway with trustedProxies, controlUi, and token auth")"""

_MARKER = re.compile(r"__([A-Z_]+)__")


def fill(template: str, replacements: dict) -> str:
    """Replace __KEY__ markers in one pass; inserted text is never rescanned."""
    return _MARKER.sub(lambda m: str(replacements[m.group(1)]), template)


# =============================================================================
# Sections
# =============================================================================

def _config_block(d: BootstrapDescriptor) -> str:
    lines = [f"{name}='{placeholder(name)}'" for name in d.secret_slots]
    lines += [
        f"GATEWAY_PORT={d.gateway_port}",
        f"BROWSER_PORT={d.browser_port}",
        f"AGENT_HOSTNAME={shlex.quote(d.hostname)}",
        f"OPENCLAW_MODEL={shlex.quote(d.model)}",
    ]
    return "\n".join(lines)


def _create_user_section(d: BootstrapDescriptor) -> str:
    if not d.create_ubuntu_user:
        return ""
    return (
        "\n# Create ubuntu user (image boots as root)\n"
        "useradd -m -s /bin/bash -G docker ubuntu || true"
    )


def _secret_exports(d: BootstrapDescriptor) -> str:
    return "\n".join(
        f"printf 'export {name}=%q\\n' \"${name}\" >> /home/ubuntu/.bashrc"
        for name in SHELL_EXPORTED
        if d.uses_secret(name)
    )


def _env_exports(d: BootstrapDescriptor) -> str:
    lines = []
    for key, value in d.env_vars.items():
        line = f"export {key}={shlex.quote(value)}"
        lines.append(f"printf '%s\\n' {shlex.quote(line)} >> /home/ubuntu/.bashrc")
    return "\n".join(lines)


def _tailscale_section(d: BootstrapDescriptor) -> str:
    if d.skip_tailscale:
        return ""
    return (
        "\n# Install and join Tailscale\n"
        'echo "Installing Tailscale..."\n'
        "curl -fsSL https://tailscale.com/install.sh | sh\n"
        'tailscale up --authkey="$TAILSCALE_AUTH_KEY" --ssh --hostname="$AGENT_HOSTNAME" '
        "|| echo \"WARNING: Tailscale setup failed. Run 'sudo tailscale up' manually.\""
    )


def _tailscale_proxy_section(d: BootstrapDescriptor) -> str:
    if d.skip_tailscale:
        return ""
    if d.funnel:
        return (
            "\n# Tailscale Funnel: public HTTPS for webhooks\n"
            'echo "Enabling Tailscale Funnel..."\n'
            'if tailscale funnel --bg "$GATEWAY_PORT"; then\n'
            '  echo "Tailscale Funnel enabled"\n'
            "else\n"
            '  echo "WARNING: tailscale funnel failed, falling back to tailscale serve"\n'
            '  tailscale serve --bg "$GATEWAY_PORT" || echo "WARNING: tailscale serve also failed. Enable HTTPS in your Tailscale admin console."\n'
            "fi"
        )
    return (
        "\n# Tailscale Serve: HTTPS inside the tailnet only\n"
        'echo "Enabling Tailscale HTTPS proxy..."\n'
        'tailscale serve --bg "$GATEWAY_PORT" || echo "WARNING: tailscale serve failed. Enable HTTPS in your Tailscale admin console first."'
    )


def _github_auth_section(d: BootstrapDescriptor) -> str:
    if not d.uses_secret(GITHUB_TOKEN):
        return ""
    return (
        "\n# Authenticate GitHub CLI for ubuntu user\n"
        'echo "Authenticating GitHub CLI..."\n'
        "if printf '%s\\n' \"$GITHUB_TOKEN\" | sudo -H -u ubuntu gh auth login --with-token; then\n"
        "  sudo -H -u ubuntu gh auth setup-git\n"
        '  echo "GitHub CLI authenticated"\n'
        "else\n"
        '  echo "WARNING: GitHub CLI authentication failed. Authenticate later with: gh auth login"\n'
        "fi"
    )


def _claude_settings(d: BootstrapDescriptor) -> str:
    model = d.model.removeprefix("anthropic/")
    return shlex.quote(json.dumps({"model": model, "fastMode": True}, separators=(",", ":")))


def _gzip_b64(content: str) -> str:
    # mtime=0 keeps the output byte-identical across runs
    return base64.b64encode(gzip.compress(content.encode("utf-8"), mtime=0)).decode("ascii")


def _workspace_files_section(d: BootstrapDescriptor) -> str:
    if not d.workspace_files:
        return ""
    lines = [
        "",
        "# Inject workspace files",
        'echo "Injecting workspace files..."',
        f"mkdir -p {WORKSPACE_DIR}",
    ]
    for path, content in d.workspace_files.items():
        full_path = posixpath.join(WORKSPACE_DIR, path)
        lines.append(f"mkdir -p {shlex.quote(posixpath.dirname(full_path))}")
        lines.append(f"echo '{_gzip_b64(content)}' | base64 -d | gunzip > {shlex.quote(full_path)}")
    lines.append(f"chown -R ubuntu:ubuntu {WORKSPACE_DIR}")
    lines.append('echo "Workspace files injected"')
    return "\n".join(lines)


def _plugins_section(d: BootstrapDescriptor) -> str:
    if not d.plugins:
        return ""
    installs = []
    for plugin in d.plugins:
        name = shlex.quote(plugin.name)
        warning = shlex.quote(
            f"WARNING: {plugin.name} plugin install failed. "
            f"Install manually with: openclaw plugins install {plugin.name}"
        )
        installs.append(f"openclaw plugins install {name} || echo {warning}")
    return "\n".join([
        "",
        "# Install OpenClaw plugins",
        'echo "Installing plugins..."',
        "sudo -H -u ubuntu bash << 'PLUGINS_SCRIPT'",
        LOAD_NVM,
        *installs,
        "PLUGINS_SCRIPT",
        'echo "Plugin installation complete"',
    ])


def _skills_section(d: BootstrapDescriptor) -> str:
    if not d.clawhub_skills:
        return ""
    installs = [
        f"npx -y clawhub install {shlex.quote(slug)} || echo {shlex.quote(f'WARNING: skill {slug} install failed')}"
        for slug in d.clawhub_skills
    ]
    return "\n".join([
        "",
        "# Install ClawHub skills",
        'echo "Installing ClawHub skills..."',
        "sudo -H -u ubuntu bash << 'SKILLS_SCRIPT'",
        LOAD_NVM,
        f"cd {WORKSPACE_DIR} 2>/dev/null || cd ~",
        *installs,
        "SKILLS_SCRIPT",
    ])


def _patch_env(d: BootstrapDescriptor) -> str:
    # The python heredoc is quoted, so it only sees what is passed here
    names = [GATEWAY_TOKEN, API_KEY]
    for name in (SEARCH_API_KEY, SLACK_BOT_TOKEN, SLACK_APP_TOKEN):
        if d.uses_secret(name):
            names.append(name)
    for plugin in d.plugins:
        for env_var in plugin.secret_names:
            if env_var not in names:
                names.append(env_var)
    return " ".join(f'{name}="${name}"' for name in names)


def _config_patch(d: BootstrapDescriptor) -> str:
    settings = {
        "gatewayPort": d.gateway_port,
        "browserPort": d.browser_port,
        "trustedProxies": list(d.trusted_proxies),
        "model": d.model,
        "backupModel": d.backup_model,
        "sandbox": d.sandbox,
        "slack": d.slack_enabled,
        "plugins": [
            {
                "name": p.name,
                "config": dict(p.config),
                "secretEnv": dict(p.secret_env_vars),
            }
            for p in d.plugins
        ],
    }
    return fill(CONFIG_PATCH_TEMPLATE, {
        "SETTINGS": repr(json.dumps(settings, sort_keys=True)),
        "CONFIG_PATH": repr(CONFIG_PATH),
    })


def _post_setup_section(d: BootstrapDescriptor) -> str:
    if not d.post_setup_commands:
        return ""
    return "\n# Post-setup commands\n" + "\n".join(d.post_setup_commands) + "\n"


# =============================================================================
# Entry point
# =============================================================================

def generate(descriptor: BootstrapDescriptor) -> GeneratedScript:
    """Render the bootstrap script.

    Returns the script text and the secret names it references, in the order
    their placeholders appear. Same descriptor in, same bytes out.
    """
    d = descriptor
    text = fill(SCRIPT_TEMPLATE, {
        "HOSTNAME": d.hostname,
        "CONFIG": _config_block(d),
        "CREATE_USER": _create_user_section(d),
        "NODE_VERSION": d.node_version,
        "NVM_VERSION": d.nvm_version,
        "OPENCLAW_VERSION": d.openclaw_version,
        "LOAD_NVM": LOAD_NVM,
        "SECRET_EXPORTS": _secret_exports(d),
        "ENV_EXPORTS": _env_exports(d),
        "TAILSCALE": _tailscale_section(d),
        "GITHUB_AUTH": _github_auth_section(d),
        "CLAUDE_SETTINGS": _claude_settings(d),
        "WORKSPACE_FILES": _workspace_files_section(d),
        "PLUGINS": _plugins_section(d),
        "SKILLS": _skills_section(d),
        "PATCH_ENV": _patch_env(d),
        "CONFIG_PATCH": _config_patch(d),
        "TAILSCALE_PROXY": _tailscale_proxy_section(d),
        "POST_SETUP": _post_setup_section(d),
    })
    secret_names = list(d.secret_slots)
    log.debug(f"  Generated {len(text)} byte script for {d.hostname}, {len(secret_names)} secret placeholder(s)")
    return GeneratedScript(text, secret_names)
