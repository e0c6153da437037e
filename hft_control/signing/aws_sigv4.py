"""AWS Signature Version 4 for query-style (EC2/STS) POST requests."""

import hashlib
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import quote, urlparse

from hft_control.signing.hmac_signers import hmac_sha256, hmac_hex, sha256_hex

ALGORITHM = "AWS4-HMAC-SHA256"


def _uri_encode(value: str) -> str:
    return quote(value, safe="-_.~")


def canonical_query(params: Dict[str, str]) -> str:
    return "&".join(
        f"{_uri_encode(str(k))}={_uri_encode(str(v))}"
        for k, v in sorted(params.items())
    )


def derive_signing_key(secret_key: str, date_stamp: str, region: str, service: str) -> bytes:
    k_date = hmac_sha256("AWS4" + secret_key, date_stamp)
    k_region = hmac_sha256(k_date, region)
    k_service = hmac_sha256(k_region, service)
    return hmac_sha256(k_service, "aws4_request")


def canonical_request(
    method: str,
    uri: str,
    query: str,
    headers: Dict[str, str],
    payload: bytes,
) -> Tuple[str, str]:
    """Return (canonical_request, signed_headers)."""
    lowered = {k.lower(): " ".join(str(v).split()) for k, v in headers.items()}
    names = sorted(lowered)
    canonical_headers = "".join(f"{name}:{lowered[name]}\n" for name in names)
    signed_headers = ";".join(names)
    request = "\n".join([
        method.upper(),
        uri or "/",
        query,
        canonical_headers,
        signed_headers,
        hashlib.sha256(payload).hexdigest(),
    ])
    return request, signed_headers


def sign_request(
    method: str,
    url: str,
    *,
    access_key: str,
    secret_key: str,
    region: str,
    service: str,
    body: bytes = b"",
    headers: Optional[Dict[str, str]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, str]:
    """
    Sign a request and return the full header set to send.

    The query string of ``url`` is canonicalized; ``body`` is hashed as-is.
    """
    now = now or datetime.now(timezone.utc)
    amz_date = now.strftime("%Y%m%dT%H%M%SZ")
    date_stamp = now.strftime("%Y%m%d")

    parsed = urlparse(url)
    query_params = {}
    if parsed.query:
        for pair in parsed.query.split("&"):
            key, _, value = pair.partition("=")
            query_params[key] = value

    signed = dict(headers or {})
    signed["host"] = parsed.netloc
    signed["x-amz-date"] = amz_date

    request, signed_headers = canonical_request(
        method, parsed.path or "/", canonical_query(query_params), signed, body,
    )

    scope = f"{date_stamp}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join([ALGORITHM, amz_date, scope, sha256_hex(request)])
    signature = hmac_hex(derive_signing_key(secret_key, date_stamp, region, service), string_to_sign)

    signed["Authorization"] = (
        f"{ALGORITHM} Credential={access_key}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    return signed
