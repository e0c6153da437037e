"""Symmetric envelope encryption for secrets at rest (AES-256-GCM, PBKDF2 key)."""

import json
import os
from typing import Any, Dict, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from hft_control.core.errors import SigningError

PBKDF2_ITERATIONS = 100_000
IV_BYTES = 12
SALT_BYTES = 16
KEY_BYTES = 32

# Older rows store the ciphertext under this field name
LEGACY_CT_FIELD = "encryptedData"


def derive_key(secret: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def encrypt(plaintext: str, secret: str) -> str:
    """Encrypt and return the JSON envelope ``{"iv", "salt", "ct"}`` (hex fields)."""
    if not secret:
        raise SigningError("Encryption key is empty")
    iv = os.urandom(IV_BYTES)
    salt = os.urandom(SALT_BYTES)
    ct = AESGCM(derive_key(secret, salt)).encrypt(iv, plaintext.encode("utf-8"), None)
    return json.dumps({"iv": iv.hex(), "salt": salt.hex(), "ct": ct.hex()})


def _parse(envelope: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(envelope, dict):
        return envelope
    try:
        data = json.loads(envelope)
    except (TypeError, ValueError) as e:
        raise SigningError("Envelope is not valid JSON") from e
    if not isinstance(data, dict):
        raise SigningError("Envelope must be a JSON object")
    return data


def decrypt(envelope: Union[str, Dict[str, Any]], secret: str) -> str:
    data = _parse(envelope)
    ct_hex = data.get("ct") or data.get(LEGACY_CT_FIELD)
    if not (data.get("iv") and data.get("salt") and ct_hex):
        raise SigningError("Envelope is missing iv, salt or ct")

    try:
        iv = bytes.fromhex(data["iv"])
        salt = bytes.fromhex(data["salt"])
        ct = bytes.fromhex(ct_hex)
    except ValueError as e:
        raise SigningError("Envelope fields are not hex") from e

    if len(iv) != IV_BYTES or len(salt) != SALT_BYTES:
        raise SigningError("Envelope iv/salt have the wrong length")

    try:
        plaintext = AESGCM(derive_key(secret, salt)).decrypt(iv, ct, None)
    except InvalidTag as e:
        raise SigningError("Envelope authentication failed (wrong key or tampered data)") from e
    return plaintext.decode("utf-8")


def is_envelope(value: Any) -> bool:
    if isinstance(value, dict):
        return "iv" in value and "salt" in value
    if isinstance(value, str) and value.lstrip().startswith("{"):
        try:
            data = json.loads(value)
        except ValueError:
            return False
        return isinstance(data, dict) and "iv" in data and "salt" in data
    return False
