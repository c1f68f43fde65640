"""
epay-style request signing.

sign = md5("k1=v1&k2=v2...{merchant_key}") over all non-empty fields except
`sign` and `sign_type`, keys sorted ascending. Used both for outgoing payment
requests and for verifying inbound notifications.
"""
import hashlib
import hmac
from typing import Any, Mapping

EXCLUDED_FIELDS = frozenset({"sign", "sign_type"})


def _signing_string(params: Mapping[str, Any]) -> str:
    pairs = [
        f"{key}={params[key]}"
        for key in sorted(params)
        if key not in EXCLUDED_FIELDS and params[key] not in ("", None)
    ]
    return "&".join(pairs)


def build_sign(params: Mapping[str, Any], key: str) -> str:
    return hashlib.md5(f"{_signing_string(params)}{key}".encode("utf-8")).hexdigest()


def verify_sign(params: Mapping[str, Any], key: str) -> bool:
    received = params.get("sign")
    if not received or not isinstance(received, str):
        return False
    expected = build_sign(params, key)
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))
