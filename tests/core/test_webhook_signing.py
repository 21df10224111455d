"""Webhook Signing - HMAC over "{timestamp}.{body}" with an acceptance window.

Tests:
    - Valid signature inside the window verifies
    - Missing parts, bad prefix, stale and future timestamps are distinct failures
    - signature_hash is stable and case-insensitive
    - Non-ASCII signature headers fail as a mismatch instead of raising
"""

from boxoffice.core.webhook_signing import (
    VerificationFailure, compute_signature, signature_hash, verify_signature,
)

SECRET = "whsec"
BODY = '{"type":"payment.succeeded"}'
NOW = 1_700_000_000


def test_valid_signature_verifies():
    sig = compute_signature(SECRET, NOW, BODY)
    result = verify_signature(SECRET, sig, NOW, BODY, NOW)
    assert result.valid
    assert result.time_delta == 0


def test_signature_has_prefix():
    assert compute_signature(SECRET, NOW, BODY).startswith("sha256=")


def test_missing_signature():
    result = verify_signature(SECRET, None, NOW, BODY, NOW)
    assert result.failure == VerificationFailure.MISSING_SIGNATURE


def test_missing_timestamp():
    sig = compute_signature(SECRET, NOW, BODY)
    result = verify_signature(SECRET, sig, None, BODY, NOW)
    assert result.failure == VerificationFailure.MISSING_TIMESTAMP


def test_invalid_format():
    result = verify_signature(SECRET, "md5=abc", NOW, BODY, NOW)
    assert result.failure == VerificationFailure.INVALID_FORMAT


def test_stale_timestamp_rejected_before_hmac():
    ts = NOW - 301
    sig = compute_signature(SECRET, ts, BODY)
    result = verify_signature(SECRET, sig, ts, BODY, NOW)
    assert result.failure == VerificationFailure.TIMESTAMP_EXPIRED


def test_boundary_age_still_accepted():
    ts = NOW - 300
    sig = compute_signature(SECRET, ts, BODY)
    assert verify_signature(SECRET, sig, ts, BODY, NOW).valid


def test_future_timestamp_rejected():
    ts = NOW + 61
    sig = compute_signature(SECRET, ts, BODY)
    result = verify_signature(SECRET, sig, ts, BODY, NOW)
    assert result.failure == VerificationFailure.TIMESTAMP_FUTURE


def test_tampered_body_rejected():
    sig = compute_signature(SECRET, NOW, BODY)
    result = verify_signature(SECRET, sig, NOW, BODY + " ", NOW)
    assert result.failure == VerificationFailure.INVALID_SIGNATURE


def test_signature_hash_stable_and_case_insensitive():
    sig = compute_signature(SECRET, NOW, BODY)
    assert signature_hash(sig) == signature_hash(sig.upper().replace("SHA256=", "sha256="))
    assert len(signature_hash(sig)) == 64


def test_non_ascii_signature_is_a_mismatch():
    result = verify_signature(SECRET, "sha256=" + "\xe9" * 64, NOW, BODY, NOW)
    assert not result.valid
    assert result.failure == VerificationFailure.INVALID_SIGNATURE
