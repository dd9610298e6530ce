from __future__ import annotations

import json

import pytest

from notifier.core.signatures import (
    parse_signature_header,
    sign_payload,
    signature_from_headers,
    verify_signature,
)

# RFC 4231 test case 2 and RFC 2202 test case 2.
FIXTURE_SECRET = "Jefe"
FIXTURE_BODY = b"what do ya want for nothing?"
FIXTURE_SHA256 = "5bdcc146bf60754e6a042426089575c75a003f089d2739839dec58b964ec3843"
FIXTURE_SHA1 = "effcdf6ae5eb2fa2d27416d5f184df9c259a7c79"

JIRA_BODY = b'{"issue": {"key": "OPS-7",\n  "fields": {"summary": "Disk full"}},   "webhookEvent":"jira:issue_updated"}'


def test_byte_for_byte_fixture_sha256() -> None:
    check = verify_signature(FIXTURE_BODY, FIXTURE_SECRET, f"sha256={FIXTURE_SHA256}")
    assert check.valid is True
    assert check.algorithm == "sha256"
    assert sign_payload(FIXTURE_BODY, FIXTURE_SECRET) == f"sha256={FIXTURE_SHA256}"


def test_byte_for_byte_fixture_legacy_sha1() -> None:
    assert verify_signature(FIXTURE_BODY, FIXTURE_SECRET, f"sha1={FIXTURE_SHA1}").valid is True


def test_algorithm_token_and_digest_are_case_insensitive() -> None:
    assert verify_signature(FIXTURE_BODY, FIXTURE_SECRET, f"SHA256={FIXTURE_SHA256.upper()}").valid is True


def test_round_trip_and_single_byte_flips_invalidate() -> None:
    secret = "webhook-secret"
    header = sign_payload(JIRA_BODY, secret)
    assert verify_signature(JIRA_BODY, secret, header).valid is True

    for index in (0, len(JIRA_BODY) // 2, len(JIRA_BODY) - 1):
        tampered = bytearray(JIRA_BODY)
        tampered[index] ^= 0x01
        assert verify_signature(bytes(tampered), secret, header).valid is False

    algorithm, digest = header.split("=", 1)
    for index in (0, 31, 63):
        flipped = "0" if digest[index] != "0" else "1"
        tampered_header = f"{algorithm}={digest[:index]}{flipped}{digest[index + 1:]}"
        assert verify_signature(JIRA_BODY, secret, tampered_header).valid is False


def test_reserialized_body_does_not_verify() -> None:
    secret = "webhook-secret"
    header = sign_payload(JIRA_BODY, secret)
    reserialized = json.dumps(json.loads(JIRA_BODY)).encode("utf-8")
    assert reserialized != JIRA_BODY
    assert verify_signature(reserialized, secret, header).valid is False


@pytest.mark.parametrize(
    "header",
    [
        None,
        "",
        "sha256",
        "=abcdef",
        "sha256=",
        "sha256=not-hex",
        "md5=" + "a" * 32,
        "sha256=" + FIXTURE_SHA256[:-2],
        "sha1=" + FIXTURE_SHA256,
    ],
)
def test_malformed_headers_fail_closed(header: str | None) -> None:
    check = verify_signature(FIXTURE_BODY, FIXTURE_SECRET, header)
    assert check.valid is False


def test_empty_secret_never_verifies() -> None:
    assert verify_signature(FIXTURE_BODY, "", f"sha256={FIXTURE_SHA256}").valid is False


def test_parse_signature_header_strips_whitespace() -> None:
    parsed = parse_signature_header(" sha256 = ABCD ")
    assert parsed is not None
    assert parsed.algorithm == "sha256"
    assert parsed.digest_hex == "abcd"


def test_signature_from_headers_prefers_sha256() -> None:
    headers = {"x-hub-signature": "sha1=aa", "X-Hub-Signature-256": "sha256=bb"}
    assert signature_from_headers(headers) == "sha256=bb"
    assert signature_from_headers({"X-HUB-SIGNATURE": "sha1=aa"}) == "sha1=aa"
    assert signature_from_headers({}) is None
