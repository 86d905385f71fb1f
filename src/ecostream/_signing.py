"""Request signing for the EcoFlow open API.

Every call carries ``accessKey``, ``nonce``, ``timestamp`` and ``sign``
headers.  The signature is an HMAC-SHA256 over the canonical query string
of the request parameters followed by the access key, nonce and timestamp.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal

from Crypto.Hash import HMAC, SHA256

from ecostream._constants import (
    ACCESS_KEY_HEADER,
    NONCE_HEADER,
    SIGN_HEADER,
    TIMESTAMP_HEADER,
)


@dataclass(frozen=True)
class SignedRequest:
    """Signature material for exactly one HTTP call.

    Never reuse an instance: the nonce/timestamp pair is what stops the
    server from accepting a replayed request.
    """

    query_string: str
    access_key: str
    nonce: str
    timestamp: str
    sign: str

    @property
    def headers(self) -> dict[str, str]:
        """The four authorization headers for this request."""
        return {
            ACCESS_KEY_HEADER: self.access_key,
            NONCE_HEADER: self.nonce,
            TIMESTAMP_HEADER: self.timestamp,
            SIGN_HEADER: self.sign,
        }


def render_scalar(value: object) -> str | None:
    """Render a scalar parameter value in its canonical text form.

    Returns ``None`` for values that do not take part in signing.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        text = repr(value)
        if "e" in text or "E" in text:
            # shortest digits, but never exponent notation
            return format(Decimal(text), "f")
        return text
    if isinstance(value, str):
        return value
    return None


def flatten(prefix: str, value: object) -> list[str]:
    """Flatten *value* depth-first into ``key=value`` strings.

    Mappings extend the key with ``.child``, sequences with ``[index]``.
    """
    if isinstance(value, Mapping):
        result: list[str] = []
        for key, nested in value.items():
            result.extend(flatten(f"{prefix}.{key}" if prefix else str(key), nested))
        return result
    if isinstance(value, (list, tuple)):
        result = []
        for index, item in enumerate(value):
            result.extend(flatten(f"{prefix}[{index}]", item))
        return result
    rendered = render_scalar(value)
    if rendered is None:
        return []
    return [f"{prefix}={rendered}"]


def canonical_query_string(params: Mapping[str, object] | None) -> str:
    """Build the sorted, ``&``-joined query string used as signing input."""
    if not params:
        return ""
    pairs = flatten("", params)
    # code point order of str is the UTF-8 byte order
    pairs.sort()
    return "&".join(pairs)


def generate_nonce() -> str:
    """Random six digit nonce (100000-999999)."""
    return str(100000 + secrets.randbelow(900000))


def generate_timestamp() -> str:
    """Current UTC instant in nanoseconds since the epoch."""
    return str(time.time_ns())


def signing_base(query_string: str, access_key: str, nonce: str, timestamp: str) -> str:
    """The exact string that gets HMAC-signed."""
    base = (
        f"{ACCESS_KEY_HEADER}={access_key}"
        f"&{NONCE_HEADER}={nonce}"
        f"&{TIMESTAMP_HEADER}={timestamp}"
    )
    if query_string:
        return f"{query_string}&{base}"
    return base


def hmac_sha256_hex(message: str, secret: str) -> str:
    """Lowercase hex HMAC-SHA256 of *message* keyed by *secret*."""
    mac = HMAC.new(secret.encode("utf-8"), digestmod=SHA256)
    mac.update(message.encode("utf-8"))
    return mac.hexdigest()


def sign_request(
    params: Mapping[str, object] | None,
    access_key: str,
    secret_key: str,
    *,
    nonce: str | None = None,
    timestamp: str | None = None,
) -> SignedRequest:
    """Sign one request.

    *nonce* and *timestamp* are generated when omitted; pass them
    explicitly to get a reproducible signature.
    """
    query = canonical_query_string(params)
    nonce = nonce or generate_nonce()
    timestamp = timestamp or generate_timestamp()
    sign = hmac_sha256_hex(signing_base(query, access_key, nonce, timestamp), secret_key)
    return SignedRequest(
        query_string=query,
        access_key=access_key,
        nonce=nonce,
        timestamp=timestamp,
        sign=sign,
    )
