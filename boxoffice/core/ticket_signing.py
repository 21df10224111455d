"""Ticket Signing - token minting and HMAC-SHA256 credential proofs.

Invariants:
    - Tokens are UUID-v4 strings
    - signature = hex(HMAC-SHA256(secret, token)), lowercase
    - Verification is case-insensitive and constant-time
    - Empty token or signature never verifies

Design Decisions:
    - stdlib hmac/hashlib: the whole credential format is one HMAC, no extra deps
"""

import hashlib
import hmac
import secrets
import string
import uuid
from datetime import datetime, timezone

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_token() -> str:
    return str(uuid.uuid4())


def sign_token(secret: str, token: str) -> str:
    """Hex HMAC-SHA256 of the token under the signing secret."""
    return hmac.new(
        secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256,
    ).hexdigest()


def verify_token(secret: str, token: str, signature: str) -> bool:
    """True iff signature is the HMAC of token. Case-insensitive."""
    if not token or not signature:
        return False
    expected = sign_token(secret, token)
    return hmac.compare_digest(
        signature.strip().lower().encode("utf-8"), expected.encode("utf-8"),
    )


def generate_ticket_code(
    event_id: str, order_id: str, now: datetime | None = None,
) -> str:
    """Human-readable ticket id, e.g. BOX-3F-20250115-ABCD1234-X7Q2."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(4))
    event_part = event_id.replace("-", "")[:2].upper()
    order_part = order_id.replace("-", "")[:8].upper()
    return f"BOX-{event_part}-{now:%Y%m%d}-{order_part}-{suffix}"


def redact(token: str) -> str:
    """Log-safe token prefix."""
    return f"{token[:8]}..." if len(token) > 8 else "***"
