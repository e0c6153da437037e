"""HMAC primitives shared by exchange and provider adapters."""

import base64
import hashlib
import hmac
from typing import Union

from hft_control.core.errors import SigningError

BytesLike = Union[str, bytes]


def _to_bytes(value: BytesLike) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    raise SigningError(f"Cannot sign value of type {type(value).__name__}")


def hmac_sha256(secret: BytesLike, message: BytesLike) -> bytes:
    if not secret:
        raise SigningError("Empty signing secret")
    return hmac.new(_to_bytes(secret), _to_bytes(message), hashlib.sha256).digest()


def hmac_hex(secret: BytesLike, message: BytesLike) -> str:
    """Lowercase hex HMAC-SHA256 (query-string exchange signing)."""
    return hmac_sha256(secret, message).hex()


def hmac_base64(secret: BytesLike, message: BytesLike) -> str:
    """Standard base64 HMAC-SHA256 (timestamp+method+path+body signing)."""
    return base64.b64encode(hmac_sha256(secret, message)).decode("ascii")


def hmac_sha1_base64(secret: BytesLike, message: BytesLike) -> str:
    if not secret:
        raise SigningError("Empty signing secret")
    digest = hmac.new(_to_bytes(secret), _to_bytes(message), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def sha256_hex(data: BytesLike) -> str:
    return hashlib.sha256(_to_bytes(data)).hexdigest()


def sha256_base64(data: BytesLike) -> str:
    return base64.b64encode(hashlib.sha256(_to_bytes(data)).digest()).decode("ascii")


def constant_time_equals(a: BytesLike, b: BytesLike) -> bool:
    return hmac.compare_digest(_to_bytes(a), _to_bytes(b))


def verify_hmac_hex(secret: BytesLike, message: BytesLike, signature: str) -> bool:
    return constant_time_equals(hmac_hex(secret, message), signature.lower())
