"""
Webhook rejection errors.

All of these are resolved at the HTTP boundary (400) and never reach the
event handlers.
"""


class WebhookError(Exception):
    """Base exception for webhook rejection."""

    reason = "invalid"


class MissingCredential(WebhookError):
    """Signature header or request body is absent."""

    reason = "missing_credential"


class AuthenticationError(WebhookError):
    """Signature does not match the payload."""

    reason = "signature_mismatch"


class StalePayload(WebhookError):
    """Signed timestamp falls outside the tolerance window."""

    reason = "stale"


class MalformedPayload(WebhookError):
    """Verified body is not a decodable provider event."""

    reason = "malformed"
