"""Alibaba Cloud RPC signature (version 1.0, HMAC-SHA1)."""

import uuid
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import quote

from hft_control.signing.hmac_signers import hmac_sha1_base64


def percent_encode(value: str) -> str:
    # RFC 3986: space -> %20, '*' -> %2A, '~' kept
    return quote(str(value), safe="-_.~")


def string_to_sign(params: Dict[str, str], method: str = "POST") -> str:
    canonical = "&".join(
        f"{percent_encode(k)}={percent_encode(v)}" for k, v in sorted(params.items())
    )
    return f"{method.upper()}&{percent_encode('/')}&{percent_encode(canonical)}"


def sign(params: Dict[str, str], secret: str, method: str = "POST") -> str:
    return hmac_sha1_base64(secret + "&", string_to_sign(params, method))


def signed_params(
    action: str,
    params: Dict[str, str],
    *,
    access_key_id: str,
    secret: str,
    version: str = "2014-05-26",
    method: str = "POST",
    now: Optional[datetime] = None,
    nonce: Optional[str] = None,
) -> Dict[str, str]:
    """Add the common parameters and the Signature to an RPC call."""
    now = now or datetime.now(timezone.utc)
    full = {
        "Action": action,
        "Format": "JSON",
        "Version": version,
        "AccessKeyId": access_key_id,
        "SignatureMethod": "HMAC-SHA1",
        "SignatureVersion": "1.0",
        "SignatureNonce": nonce or uuid.uuid4().hex,
        "Timestamp": now.strftime("%Y-%m-%dT%H:%M:%SZ"),
    }
    full.update({k: str(v) for k, v in params.items() if v is not None})
    full["Signature"] = sign(full, secret, method)
    return full
