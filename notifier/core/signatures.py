"""Keyed-digest verification for inbound webhook bodies.

Signature headers have the shape ``<algorithm>=<hex-digest>``. The digest is always
computed over the raw request bytes exactly as received; parsing and re-serializing the
JSON first would change whitespace or key order and break valid signatures.
"""

from __future__ import annotations

import hashlib
import hmac
import re
from collections.abc import Mapping
from dataclasses import dataclass

SUPPORTED_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha1": hashlib.sha1,
}
DEFAULT_ALGORITHM = "sha256"
SIGNATURE_HEADERS = ("X-Hub-Signature-256", "X-Hub-Signature")
HEADER_FOR_ALGORITHM = dict(zip(("sha256", "sha1"), SIGNATURE_HEADERS))

_HEX_RE = re.compile(r"^[0-9a-f]+$")


@dataclass(frozen=True, slots=True)
class ParsedSignature:
    algorithm: str
    digest_hex: str


@dataclass(frozen=True, slots=True)
class SignatureCheck:
    valid: bool
    algorithm: str | None = None


def parse_signature_header(header_value: str | None) -> ParsedSignature | None:
    if not header_value:
        return None
    algorithm, separator, digest = header_value.partition("=")
    algorithm = algorithm.strip().lower()
    digest = digest.strip().lower()
    if not separator or algorithm not in SUPPORTED_ALGORITHMS:
        return None
    if not _HEX_RE.match(digest):
        return None
    return ParsedSignature(algorithm=algorithm, digest_hex=digest)


def compute_digest(raw_body: bytes, secret: str, algorithm: str = DEFAULT_ALGORITHM) -> str:
    digestmod = SUPPORTED_ALGORITHMS[algorithm]
    return hmac.new(secret.encode("utf-8"), raw_body, digestmod).hexdigest()


def sign_payload(raw_body: bytes, secret: str, algorithm: str = DEFAULT_ALGORITHM) -> str:
    return f"{algorithm}={compute_digest(raw_body, secret, algorithm)}"


def verify_signature(raw_body: bytes, secret: str, header_value: str | None) -> SignatureCheck:
    parsed = parse_signature_header(header_value)
    if parsed is None or not secret:
        return SignatureCheck(valid=False)

    expected = compute_digest(raw_body, secret, parsed.algorithm)
    # Length is not secret; compare_digest covers the content in constant time.
    if len(expected) != len(parsed.digest_hex):
        return SignatureCheck(valid=False, algorithm=parsed.algorithm)
    valid = hmac.compare_digest(expected.encode("ascii"), parsed.digest_hex.encode("ascii"))
    return SignatureCheck(valid=valid, algorithm=parsed.algorithm)


def signature_from_headers(headers: Mapping[str, str]) -> str | None:
    """Return the strongest signature header present; lookups are case-insensitive."""
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in SIGNATURE_HEADERS:
        value = lowered.get(name.lower())
        if value:
            return value
    return None
