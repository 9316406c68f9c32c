"""Gateway token derivation.

The gateway token is not stored as its own random secret. It is the truncated
SHA-256 of an Ed25519 public key, so whoever keeps the private key can
regenerate it and nothing else needs to persist it.
"""

import hashlib

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

TOKEN_LENGTH = 48


def _public_openssh(private_key) -> str:
    return private_key.public_key().public_bytes(
        serialization.Encoding.OpenSSH,
        serialization.PublicFormat.OpenSSH,
    ).decode()


def token_from_public_key(public_key_openssh: str, length: int = TOKEN_LENGTH) -> str:
    """Hash an OpenSSH public key line and keep the first `length` hex chars."""
    if not 0 < length <= 64:
        raise ValueError(f"token length must be 1..64, got {length}")
    digest = hashlib.sha256(public_key_openssh.encode("utf-8")).hexdigest()
    return digest[:length]


def token_from_private_key(private_key_pem: str, length: int = TOKEN_LENGTH) -> str:
    """Regenerate the token from a key returned by new_gateway_token()."""
    private_key = serialization.load_ssh_private_key(private_key_pem.encode(), password=None)
    return token_from_public_key(_public_openssh(private_key), length)


def new_gateway_token(length: int = TOKEN_LENGTH) -> dict:
    """Mint a token together with the key that regenerates it.

    Returns token (str), private_key_pem (str, OpenSSH format) and
    public_key_openssh (str). Keep the private key only if the token must be
    reproducible later.
    """
    private_key = Ed25519PrivateKey.generate()
    public_openssh = _public_openssh(private_key)
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.OpenSSH,
        serialization.NoEncryption(),
    ).decode()
    return {
        "token": token_from_public_key(public_openssh, length),
        "private_key_pem": private_pem,
        "public_key_openssh": public_openssh,
    }


def derive_gateway_token(length: int = TOKEN_LENGTH) -> str:
    """Mint a throwaway gateway token. No key material leaves this call."""
    return token_from_public_key(_public_openssh(Ed25519PrivateKey.generate()), length)
