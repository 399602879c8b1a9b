"""Webhook security utilities.

Provides secret issuance and HMAC signature generation/verification for
outbound deliveries and inbound calls.

The plaintext subscription secret is shown to the administrator once and
never stored. The server keeps only ``signing_key = SHA-256(secret)``
(hex) and both directions are signed with HMAC-SHA256 keyed by that
value. Subscribers derive the same key from the secret they were given
with ``derive_signing_key``.
"""

import hashlib
import hmac
import secrets

import structlog

logger = structlog.get_logger(__name__)

# Signature header name (outbound and inbound)
SIGNATURE_HEADER = "X-Webhook-Signature"

SECRET_PREFIX = "whsec_"
SECRET_BYTES = 32


def generate_secret() -> str:
    """Generate a new random subscription secret (256 bits)."""
    return f"{SECRET_PREFIX}{secrets.token_urlsafe(SECRET_BYTES)}"


def derive_signing_key(secret: str) -> str:
    """Derive the stored signing key from a plaintext secret.

    Args:
        secret: Plaintext secret issued at subscription creation.

    Returns:
        Hex SHA-256 digest of the secret.
    """
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def _as_bytes(raw_body: bytes | str) -> bytes:
    if isinstance(raw_body, str):
        return raw_body.encode("utf-8")
    return raw_body


def sign(raw_body: bytes | str, key: str) -> str:
    """Compute the HMAC-SHA256 signature of the exact bytes transmitted.

    Args:
        raw_body: Request body (str bodies are UTF-8 encoded).
        key: HMAC key (the subscription's signing key).

    Returns:
        Hex signature.
    """
    return hmac.new(key.encode("utf-8"), _as_bytes(raw_body), hashlib.sha256).hexdigest()


def verify(raw_body: bytes | str, key: str, supplied_signature: str | None) -> bool:
    """Verify an HMAC-SHA256 signature in constant time.

    Args:
        raw_body: Body exactly as received.
        key: HMAC key (the subscription's signing key).
        supplied_signature: Hex signature from the request header.

    Returns:
        True if the signature matches, False otherwise (including when it is missing).
    """
    if not supplied_signature:
        return False

    expected = sign(raw_body, key)
    is_valid = hmac.compare_digest(
        expected.encode("ascii"),
        supplied_signature.encode("utf-8"),
    )

    if not is_valid:
        logger.debug("webhook_signature_invalid", body_length=len(_as_bytes(raw_body)))

    return is_valid


def create_signature_headers(raw_body: bytes | str, key: str) -> dict[str, str]:
    """Create HTTP headers carrying the signature for a delivery.

    Args:
        raw_body: Body that will be transmitted.
        key: Subscription signing key.

    Returns:
        Dictionary of headers to include in the request.
    """
    return {SIGNATURE_HEADER: sign(raw_body, key)}
