"""Payment processor webhook signature verification.

The processor signs ``"{timestamp}.{raw_body}"`` with HMAC-SHA256 using the
endpoint's shared secret and sends ``t=<timestamp>,v1=<hex digest>`` in the
``Stripe-Signature`` header (several ``v1`` entries may be present while a
secret is being rolled). Verification must run on the exact bytes received;
re-serialized JSON will not match.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time

from pydantic import ValidationError

from app.schemas.processor import ProcessorEvent

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"
SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


class SignatureError(Exception):
    """Raised when an inbound payload cannot be authenticated."""


def compute_signature(body: bytes, timestamp: int, secret: str) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(body: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a header value for ``body``; used by tests and local tooling."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(body, ts, secret)}"


def _parse_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise SignatureError("Malformed signature timestamp") from exc
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)
    if timestamp is None or not signatures:
        raise SignatureError("Malformed signature header")
    return timestamp, signatures


def verify(
    body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> ProcessorEvent:
    """Authenticate ``body`` and parse it into a :class:`ProcessorEvent`.

    Raises:
        SignatureError: if the secret is unset, the header is absent or
            malformed, no signature matches, the timestamp is outside the
            tolerance window, or the authenticated body is not a valid event.
    """
    if not secret:
        raise SignatureError("Webhook signing secret is not configured")
    if not signature_header:
        raise SignatureError("Missing signature header")

    timestamp, signatures = _parse_header(signature_header)
    expected = compute_signature(body, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureError("No signature matches the payload")

    current = time.time() if now is None else now
    if tolerance > 0 and abs(current - timestamp) > tolerance:
        raise SignatureError("Signature timestamp outside the tolerance window")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise SignatureError("Signed payload is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise SignatureError("Signed payload is not an event object")
    try:
        return ProcessorEvent.from_payload(payload)
    except ValidationError as exc:
        raise SignatureError("Signed payload is not a processor event") from exc
