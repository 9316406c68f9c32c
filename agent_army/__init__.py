"""agent-army: provisioning helpers for OpenClaw agents."""

__version__ = "0.1.0"
