"""RSA-SHA256 (PKCS#1 v1.5) signing: OAuth JWT bearer and HTTP request signatures."""

import base64
import email.utils
import json
import time
from typing import Dict, Optional
from urllib.parse import urlparse

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from hft_control.core.errors import SigningError
from hft_control.signing.hmac_signers import sha256_base64

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
COMPUTE_SCOPE = "https://www.googleapis.com/auth/compute"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


def load_private_key(pem: str) -> rsa.RSAPrivateKey:
    if not pem:
        raise SigningError("Missing private key")
    # Keys pasted into forms often carry literal "\n"
    pem_bytes = pem.replace("\\n", "\n").encode("utf-8")
    try:
        key = serialization.load_pem_private_key(pem_bytes, password=None)
    except (ValueError, TypeError) as e:
        raise SigningError(f"Invalid private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SigningError("Private key is not an RSA key")
    return key


def rsa_sha256_sign(private_key_pem: str, message: bytes) -> bytes:
    key = load_private_key(private_key_pem)
    return key.sign(message, padding.PKCS1v15(), hashes.SHA256())


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


# ============================================
# OAuth bearer via signed JWT
# ============================================

def build_jwt_assertion(
    client_email: str,
    private_key_pem: str,
    *,
    scope: str = COMPUTE_SCOPE,
    audience: str = GOOGLE_TOKEN_URL,
    now: Optional[int] = None,
    lifetime_s: int = 3600,
) -> str:
    issued = int(now if now is not None else time.time())
    header = {"alg": "RS256", "typ": "JWT"}
    claim = {
        "iss": client_email,
        "scope": scope,
        "aud": audience,
        "iat": issued,
        "exp": issued + lifetime_s,
    }
    signing_input = (
        b64url(json.dumps(header, separators=(",", ":")).encode())
        + "."
        + b64url(json.dumps(claim, separators=(",", ":")).encode())
    )
    signature = rsa_sha256_sign(private_key_pem, signing_input.encode("ascii"))
    return f"{signing_input}.{b64url(signature)}"


def token_request_body(assertion: str) -> Dict[str, str]:
    return {"grant_type": JWT_BEARER_GRANT, "assertion": assertion}


# ============================================
# HTTP request signing (draft-cavage signatures)
# ============================================

def sign_http_request(
    method: str,
    url: str,
    *,
    key_id: str,
    private_key_pem: str,
    body: bytes = b"",
    content_type: str = "application/json",
    date: Optional[str] = None,
) -> Dict[str, str]:
    """
    Return headers carrying an RSA-SHA256 Signature authorization.

    GET/DELETE sign (request-target), date, host. Requests with a body also
    sign content-length, content-type and x-content-sha256.
    """
    parsed = urlparse(url)
    target = parsed.path + (f"?{parsed.query}" if parsed.query else "")
    headers = {
        "date": date or email.utils.formatdate(usegmt=True),
        "host": parsed.netloc,
    }
    signed_names = ["(request-target)", "date", "host"]

    if method.upper() in ("POST", "PUT", "PATCH"):
        headers["content-length"] = str(len(body))
        headers["content-type"] = content_type
        headers["x-content-sha256"] = sha256_base64(body)
        signed_names += ["content-length", "content-type", "x-content-sha256"]

    lines = []
    for name in signed_names:
        if name == "(request-target)":
            lines.append(f"(request-target): {method.lower()} {target}")
        else:
            lines.append(f"{name}: {headers[name]}")
    signing_string = "\n".join(lines)

    signature = base64.b64encode(
        rsa_sha256_sign(private_key_pem, signing_string.encode("utf-8"))
    ).decode("ascii")

    headers["authorization"] = (
        f'Signature version="1",keyId="{key_id}",algorithm="rsa-sha256",'
        f'headers="{" ".join(signed_names)}",signature="{signature}"'
    )
    return headers
