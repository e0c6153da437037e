"""SSH keypair generation for provider key import."""

import base64
import hashlib
from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from hft_control.core.errors import SigningError


@dataclass
class SSHKeyPair:
    public_key: str
    private_key: str
    fingerprint: str


def fingerprint(public_key: str) -> str:
    """OpenSSH-style ``SHA256:<base64>`` fingerprint of an authorized_keys line."""
    parts = public_key.strip().split()
    if len(parts) < 2:
        raise SigningError("Public key must look like '<type> <base64> [comment]'")
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except ValueError as e:
        raise SigningError("Public key body is not base64") from e
    digest = base64.b64encode(hashlib.sha256(blob).digest()).decode("ascii").rstrip("=")
    return f"SHA256:{digest}"


def fingerprint_hash(value: str) -> str:
    """Hash of a fingerprint, safe to put in events."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def generate_keypair(comment: str = "hft-bot") -> SSHKeyPair:
    key = ed25519.Ed25519PrivateKey.generate()
    private = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("ascii")
    if comment:
        public = f"{public} {comment}"
    return SSHKeyPair(public_key=public, private_key=private, fingerprint=fingerprint(public))
