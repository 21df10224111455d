"""Ticket Signing - HMAC proofs over ticket tokens.

Tests:
    - validate(sign(t)) holds; any single-character change fails
    - Case-insensitive comparison, empty inputs never verify
    - Ticket codes carry event/order fragments and the issue date
"""

import re
import uuid
from datetime import datetime, timezone

import pytest

from boxoffice.core.ticket_signing import (
    generate_ticket_code, generate_token, redact, sign_token, verify_token,
)

SECRET = "signing-secret"


def test_token_is_uuid4():
    token = generate_token()
    assert uuid.UUID(token).version == 4


def test_signature_verifies():
    token = generate_token()
    assert verify_token(SECRET, token, sign_token(SECRET, token))


def test_signature_is_lowercase_sha256_hex():
    signature = sign_token(SECRET, "abc")
    assert re.fullmatch(r"[0-9a-f]{64}", signature)


def test_flipping_any_signature_char_fails():
    token = generate_token()
    signature = sign_token(SECRET, token)
    for i, ch in enumerate(signature):
        flipped = "0" if ch != "0" else "1"
        tampered = signature[:i] + flipped + signature[i + 1:]
        assert not verify_token(SECRET, token, tampered)


def test_changed_token_fails():
    token = generate_token()
    signature = sign_token(SECRET, token)
    assert not verify_token(SECRET, token[:-1] + ("0" if token[-1] != "0" else "1"), signature)


def test_other_secret_fails():
    token = generate_token()
    assert not verify_token("other", token, sign_token(SECRET, token))


def test_uppercase_signature_accepted():
    token = generate_token()
    assert verify_token(SECRET, token, sign_token(SECRET, token).upper())


@pytest.mark.parametrize("token,signature", [("", "x"), ("t", ""), ("", "")])
def test_empty_inputs_never_verify(token, signature):
    assert not verify_token(SECRET, token, signature)


def test_ticket_code_format():
    event_id = "3fa85f64-5717-4562-b3fc-2c963f66afa6"
    order_id = "9b2d1c44-0000-4000-8000-000000000000"
    code = generate_ticket_code(
        event_id, order_id, datetime(2025, 1, 15, tzinfo=timezone.utc),
    )
    assert re.fullmatch(r"BOX-3F-20250115-9B2D1C44-[A-Z0-9]{4}", code)


def test_redact_keeps_only_prefix():
    assert redact("0123456789abcdef") == "01234567..."
    assert redact("short") == "***"
