"""Webhook Signing - HMAC request signatures with a timestamp acceptance window.

Invariants:
    - Signed message is "{timestamp}.{body}", signature header is "sha256=<hex>"
    - Requests older than max_age_seconds or further than max_future_seconds
      in the future are rejected before the signature is compared
    - signature_hash() is the replay-store key: stable for identical deliveries
    - Pure: the caller supplies `now`

Design Decisions:
    - Verification returns a result object, not an exception: the payment
      service decides which failures become SignatureMismatchError
"""

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum

SIGNATURE_PREFIX = "sha256="
DEFAULT_MAX_AGE_SECONDS = 300
DEFAULT_MAX_FUTURE_SECONDS = 60


class VerificationFailure(str, Enum):
    MISSING_SIGNATURE = "missing_signature"
    MISSING_TIMESTAMP = "missing_timestamp"
    INVALID_FORMAT = "invalid_format"
    TIMESTAMP_EXPIRED = "timestamp_expired"
    TIMESTAMP_FUTURE = "timestamp_future"
    INVALID_SIGNATURE = "invalid_signature"


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    failure: VerificationFailure | None = None
    time_delta: int | None = None


def compute_signature(secret: str, timestamp: int, body: str) -> str:
    """Return the prefixed signature header value for a body."""
    message = f"{timestamp}.{body}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(
    secret: str,
    signature: str | None,
    timestamp: int | None,
    body: str,
    now: int,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    max_future_seconds: int = DEFAULT_MAX_FUTURE_SECONDS,
) -> VerificationResult:
    """Check format, timestamp window, then the HMAC itself."""
    if not signature:
        return VerificationResult(False, VerificationFailure.MISSING_SIGNATURE)
    if timestamp is None:
        return VerificationResult(False, VerificationFailure.MISSING_TIMESTAMP)
    if not signature.startswith(SIGNATURE_PREFIX):
        return VerificationResult(False, VerificationFailure.INVALID_FORMAT)

    delta = now - timestamp
    if delta > max_age_seconds:
        return VerificationResult(False, VerificationFailure.TIMESTAMP_EXPIRED, delta)
    if -delta > max_future_seconds:
        return VerificationResult(False, VerificationFailure.TIMESTAMP_FUTURE, delta)

    expected = compute_signature(secret, timestamp, body)
    if not hmac.compare_digest(signature.lower().encode("utf-8"), expected.encode("utf-8")):
        return VerificationResult(False, VerificationFailure.INVALID_SIGNATURE, delta)
    return VerificationResult(True, None, delta)


def signature_hash(signature: str) -> str:
    """SHA-256 of the signature header, used as the replay-store key."""
    return hashlib.sha256(signature.lower().encode("utf-8")).hexdigest()
