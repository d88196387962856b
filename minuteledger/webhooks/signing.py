"""
Webhook signature verification for inbound billing events.

Security:
- HMAC-SHA256 signatures prevent tampering
- Timestamp verification prevents replay attacks
- Constant-time comparison prevents timing attacks

Header formats:
- Stripe: "t=1700000000,v1=<hex>[,v1=<hex>...]" signed as "<t>.<body>"
- Paddle: "ts=1700000000;h1=<hex>" signed as "<ts>:<body>"
"""

import hashlib
import hmac
import logging
import time

from minuteledger.billing.events import WebhookEvent, decode_event
from minuteledger.webhooks.errors import AuthenticationError, MissingCredential, StalePayload

logger = logging.getLogger(__name__)


class SignatureScheme:
    """Signed-payload layout for one provider header format."""

    def __init__(self, name: str, pair_separator: str, timestamp_key: str, signature_key: str, joiner: str):
        self.name = name
        self.pair_separator = pair_separator
        self.timestamp_key = timestamp_key
        self.signature_key = signature_key
        self.joiner = joiner

    def signed_payload(self, timestamp: int, payload: bytes) -> bytes:
        return f"{timestamp}{self.joiner}".encode("utf-8") + payload


STRIPE_SCHEME = SignatureScheme("stripe", ",", "t", "v1", ".")
PADDLE_SCHEME = SignatureScheme("paddle", ";", "ts", "h1", ":")


def compute_signature(secret: str, timestamp: int, payload: bytes, scheme: SignatureScheme = STRIPE_SCHEME) -> str:
    """Hex HMAC-SHA256 of the signed payload."""
    return hmac.new(
        secret.encode("utf-8"),
        scheme.signed_payload(timestamp, payload),
        hashlib.sha256,
    ).hexdigest()


def parse_signature_header(header: str) -> tuple[int, list[str], SignatureScheme]:
    """
    Split a signature header into its timestamp and candidate signatures.

    Args:
        header: Raw signature header value

    Returns:
        tuple: (timestamp, signatures, scheme)

    Raises:
        AuthenticationError: If the header cannot be parsed
    """
    scheme = PADDLE_SCHEME if header.startswith("ts=") else STRIPE_SCHEME

    timestamp: int | None = None
    signatures: list[str] = []

    for item in header.split(scheme.pair_separator):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == scheme.timestamp_key:
            try:
                timestamp = int(value)
            except ValueError:
                raise AuthenticationError("Invalid signature header (timestamp is not an integer)")
        elif key == scheme.signature_key and value:
            signatures.append(value)

    if timestamp is None:
        raise AuthenticationError("Invalid signature header (no timestamp)")
    if not signatures:
        raise AuthenticationError(
            f"Invalid signature header (no {scheme.signature_key} signature)"
        )

    return timestamp, signatures, scheme


class SignatureVerifier:
    """
    Verifies provider webhook signatures.

    Stateless: the secret and tolerance are fixed at construction and every
    call is a pure function of (payload, header, now).
    """

    TIMESTAMP_TOLERANCE_SECONDS = 300  # 5 minutes (prevents replay attacks)

    def __init__(self, secret: str, tolerance_seconds: int | None = None):
        """
        Initialize signature verifier.

        Args:
            secret: Shared webhook signing secret
            tolerance_seconds: Max age of a signature (None = 5 minutes)
        """
        self.secret = secret
        self.tolerance_seconds = (
            tolerance_seconds if tolerance_seconds is not None else self.TIMESTAMP_TOLERANCE_SECONDS
        )

    def verify_signature(self, payload: bytes, header: str | None, now: float | None = None) -> int:
        """
        Verify webhook signature without decoding the body.

        Args:
            payload: Raw request body, exactly as received
            header: Signature header value
            now: Current unix time (None = time.time())

        Returns:
            int: The verified signed timestamp

        Raises:
            MissingCredential: Header or body absent
            AuthenticationError: Malformed header, unset secret, or no matching signature
            StalePayload: Timestamp outside tolerance

        Security checks:
            1. Header format validation
            2. Timestamp freshness (replay attack prevention)
            3. HMAC verification (constant-time comparison)
        """
        if not header:
            raise MissingCredential("Missing signature header")
        if not payload:
            raise MissingCredential("Missing request body")
        if not self.secret:
            raise AuthenticationError("Webhook secret not configured")

        timestamp, signatures, scheme = parse_signature_header(header)

        # Check timestamp freshness (replay attack prevention)
        current_time = int(now if now is not None else time.time())
        age_seconds = current_time - timestamp

        if age_seconds > self.tolerance_seconds:
            logger.warning(
                "Webhook signature expired",
                extra={"age_seconds": age_seconds, "tolerance_seconds": self.tolerance_seconds},
            )
            raise StalePayload(f"Signature timestamp outside tolerance ({age_seconds}s old)")

        if age_seconds < -self.tolerance_seconds:
            # Timestamp is in the future (clock skew or attack)
            logger.warning("Webhook signature timestamp in future", extra={"skew_seconds": -age_seconds})
            raise StalePayload(f"Signature timestamp in the future ({-age_seconds}s ahead)")

        expected = compute_signature(self.secret, timestamp, payload, scheme)

        # Constant-time comparison against every candidate (secret rotation sends several)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise AuthenticationError("No signatures found matching the expected signature for payload")

        return timestamp

    def verify(self, payload: bytes, header: str | None, now: float | None = None) -> WebhookEvent:
        """
        Verify a delivery and decode it into a typed event.

        Args:
            payload: Raw request body, exactly as received
            header: Signature header value
            now: Current unix time (None = time.time())

        Returns:
            WebhookEvent: Immutable verified event

        Raises:
            WebhookError: Any verification or decoding failure
        """
        self.verify_signature(payload, header, now)
        return decode_event(payload, header)

    def sign_payload(self, payload: bytes, timestamp: int | None = None) -> str:
        """
        Build a Stripe-format signature header for payload.

        Used by tests and local tooling to replay deliveries.
        """
        if timestamp is None:
            timestamp = int(time.time())
        signature = compute_signature(self.secret, timestamp, payload, STRIPE_SCHEME)
        return f"t={timestamp},v1={signature}"
