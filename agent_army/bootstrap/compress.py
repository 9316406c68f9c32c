"""Payload compression under the backend's user-data ceiling."""

import base64
import binascii
import gzip
import logging
from dataclasses import dataclass

from agent_army.bootstrap.descriptor import BACKEND_CEILINGS
from agent_army.bootstrap.errors import PayloadTooLargeError, ValidationError

log = logging.getLogger(__name__)

SHELL = "shell"
GZIP_BASE64 = "gzip+base64"
ENCODINGS = (SHELL, GZIP_BASE64)

SHELL_HEADER = "#!/bin/bash\nbase64 -d <<'COMPRESSED_PAYLOAD' | gunzip | bash\n"
SHELL_FOOTER = "\nCOMPRESSED_PAYLOAD\n"


@dataclass(frozen=True)
class CompressedPayload:
    data: bytes
    encoding: str
    ceiling: int

    def __len__(self) -> int:
        return len(self.data)

    @property
    def text(self) -> str:
        return self.data.decode("ascii")


def _ceiling_for(ceiling: int | None, backend: str | None) -> int:
    if ceiling is not None:
        if isinstance(ceiling, bool) or not isinstance(ceiling, int) or ceiling <= 0:
            raise ValidationError("ceiling", "expected a positive byte count")
        return ceiling
    if backend is None:
        return min(BACKEND_CEILINGS.values())
    if backend not in BACKEND_CEILINGS:
        raise ValidationError("backend", f"unknown backend {backend!r}")
    return BACKEND_CEILINGS[backend]


def compress(
    script: str,
    *,
    ceiling: int | None = None,
    backend: str | None = None,
    encoding: str = SHELL,
) -> CompressedPayload:
    """gzip + base64 the script and check it fits.

    An explicit ceiling wins over the backend's. With neither, the smallest
    known ceiling applies. Never truncates: an oversized payload raises
    PayloadTooLargeError.
    """
    if encoding not in ENCODINGS:
        raise ValidationError("encoding", f"unknown encoding {encoding!r} (expected one of {', '.join(ENCODINGS)})")
    limit = _ceiling_for(ceiling, backend)

    raw = script.encode("utf-8")
    body = base64.b64encode(gzip.compress(raw, mtime=0)).decode("ascii")
    if encoding == SHELL:
        data = (SHELL_HEADER + body + SHELL_FOOTER).encode("ascii")
    else:
        data = body.encode("ascii")

    log.info(f"  User data: {len(raw)} bytes -> {len(data)} bytes ({encoding}), limit {limit}")
    if len(data) > limit:
        raise PayloadTooLargeError(len(data), limit)
    return CompressedPayload(data=data, encoding=encoding, ceiling=limit)


def decompress(payload: CompressedPayload | bytes | str) -> str:
    """Inverse of compress(). Accepts either encoding."""
    if isinstance(payload, CompressedPayload):
        payload = payload.data
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("ascii")
        except UnicodeDecodeError as exc:
            raise ValidationError("payload", "not an ASCII payload") from exc
    text = payload

    if text.startswith(SHELL_HEADER):
        if not text.endswith(SHELL_FOOTER):
            raise ValidationError("payload", "self-extracting wrapper is truncated")
        text = text[len(SHELL_HEADER):-len(SHELL_FOOTER)]
    try:
        return gzip.decompress(base64.b64decode(text, validate=True)).decode("utf-8")
    except (binascii.Error, OSError, EOFError, UnicodeDecodeError) as exc:
        raise ValidationError("payload", f"not a gzip+base64 payload ({type(exc).__name__})") from exc
