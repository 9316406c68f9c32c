"""Best-effort secret redaction for anything shown to a human.

Over-inclusive: anything shaped like a credential is masked. redact() is
idempotent.
"""

import logging
import re

REDACTED = "[REDACTED]"

# KEY=VALUE where the key looks like it names a credential.
_KEY_VALUE = re.compile(
    r"\b([A-Z0-9_]*(?:TOKEN|SECRET|API_KEY|KEY|PASS|PASSWORD)[A-Z0-9_]*)\b"
    r"\s*=\s*(?:(?:\"[^\"]*\"|'[^']*')\S*|\S+)",
    re.IGNORECASE,
)

# Vendor token shapes, redacted wherever they appear.
TOKEN_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\bxoxb-[0-9A-Za-z-]+\b"), "xoxb-"),
    (re.compile(r"\bxapp-[0-9A-Za-z-]+\b"), "xapp-"),
    (re.compile(r"\bxoxe-[0-9A-Za-z-]+\b"), "xoxe-"),
    (re.compile(r"\blin_api_[0-9A-Za-z]+\b"), "lin_api_"),
    (re.compile(r"\bghp_[0-9A-Za-z]{20,}\b"), "ghp_"),
    (re.compile(r"\bgithub_pat_[0-9A-Za-z_]{20,}\b"), "github_pat_"),
    (re.compile(r"\btskey-[0-9A-Za-z-]{10,}\b"), "tskey-"),
    (re.compile(r"\bsk-ant-[0-9A-Za-z_-]{20,}"), "sk-ant-"),
    (re.compile(r"\bsk-[0-9A-Za-z]{20,}\b"), "sk-"),
]


def redact(text: str) -> str:
    """Mask likely secrets in text before it is printed or logged."""
    if not text:
        return text
    out = _KEY_VALUE.sub(lambda m: f"{m.group(1)}={REDACTED}", text)
    for pattern, prefix in TOKEN_PATTERNS:
        out = pattern.sub(prefix + REDACTED, out)
    return out


class RedactingFilter(logging.Filter):
    """Runs every log record through redact() before a handler formats it."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        record.msg = redact(message)
        record.args = ()
        return True


def install_log_redaction(logger: logging.Logger | None = None) -> RedactingFilter:
    """Attach a RedactingFilter to every handler of logger (root by default)."""
    logger = logger or logging.getLogger()
    flt = RedactingFilter()
    for handler in logger.handlers:
        handler.addFilter(flt)
    return flt
