from __future__ import annotations

from urllib.parse import parse_qs, unquote, urlparse

import pytest

from caseguard.services.auth.totp import (
    generate_secret,
    hotp,
    provisioning_uri,
    totp,
    verify_totp,
)


# Base32 of the RFC 4226 / RFC 6238 SHA-1 key b"12345678901234567890".
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


def test_hotp_matches_rfc4226_vectors() -> None:
    expected = [
        "755224",
        "287082",
        "359152",
        "969429",
        "338314",
        "254676",
        "287922",
        "162583",
        "399871",
        "520489",
    ]
    assert [hotp(RFC_SECRET, counter) for counter in range(10)] == expected


@pytest.mark.parametrize(
    ("at", "expected"),
    [
        (59, "94287082"),
        (1111111109, "07081804"),
        (1111111111, "14050471"),
        (1234567890, "89005924"),
        (2000000000, "69279037"),
        (20000000000, "65353130"),
    ],
)
def test_totp_matches_rfc6238_sha1_vectors(at: int, expected: str) -> None:
    assert totp(RFC_SECRET, at, digits=8) == expected


def test_generated_secrets_are_random_base32() -> None:
    first, second = generate_secret(), generate_secret()
    assert first != second
    assert len(first) == 32
    assert set(first) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")


def test_verify_accepts_one_step_of_clock_drift() -> None:
    at = 1_700_000_000
    assert verify_totp(RFC_SECRET, totp(RFC_SECRET, at), at=at)
    assert verify_totp(RFC_SECRET, totp(RFC_SECRET, at - 30), at=at)
    assert verify_totp(RFC_SECRET, totp(RFC_SECRET, at + 30), at=at)
    assert not verify_totp(RFC_SECRET, totp(RFC_SECRET, at - 90), at=at)


@pytest.mark.parametrize("code", [None, "", "12345", "1234567", "abcdef"])
def test_verify_rejects_malformed_codes(code: str | None) -> None:
    assert not verify_totp(RFC_SECRET, code, at=1_700_000_000)


def test_verify_without_secret_fails_closed() -> None:
    assert not verify_totp(None, "123456", at=1_700_000_000)
    assert not verify_totp("!!!", "123456", at=1_700_000_000)


def test_provisioning_uri_targets_authenticator_apps() -> None:
    uri = urlparse(provisioning_uri("JBSWY3DPEHPK3PXP", account="a@x.org", issuer="CaseGuard"))
    query = parse_qs(uri.query)
    assert uri.scheme == "otpauth"
    assert uri.netloc == "totp"
    assert unquote(uri.path) == "/CaseGuard:a@x.org"
    assert query["secret"] == ["JBSWY3DPEHPK3PXP"]
    assert query["issuer"] == ["CaseGuard"]
