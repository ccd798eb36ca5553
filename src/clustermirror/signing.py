"""HMAC-SHA256 signing shared by the token exchange and download links."""

from __future__ import annotations

import hashlib
import hmac


def sign(secret: str, message: str) -> str:
    """Return hex(HMAC-SHA256(secret, message))."""
    return hmac.new(
        secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def verify_signature(secret: str, message: str, signature: str | None) -> bool:
    """Check a signature in constant time.

    Args:
        secret: Cluster secret.
        message: The signed message (a content hash for downloads).
        signature: Signature supplied by the client, may be None.

    Returns:
        True only if ``signature`` equals ``sign(secret, message)``.
    """
    if not signature:
        return False
    expected = sign(secret, message)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
