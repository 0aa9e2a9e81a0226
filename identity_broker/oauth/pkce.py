"""
PKCE (RFC 7636) helpers.

``verify`` never raises: an unknown method or a malformed verifier is simply
a failed verification, which the token endpoint reports as ``invalid_grant``.
"""

import base64
import hashlib
import hmac
import secrets

SUPPORTED_METHODS = ("plain", "S256")


def s256_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Returns:
        Base64-URL-encoded SHA256 hash of verifier, without padding
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    """Random verifier of 43 characters (used for the upstream Google login)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii").rstrip("=")


def verify(code_verifier: str, code_challenge: str, method: str) -> bool:
    """
    Check a presented verifier against the stored challenge.

    Args:
        code_verifier: Secret presented at the token endpoint
        code_challenge: Challenge recorded with the authorization code
        method: ``plain`` or ``S256``

    Returns:
        True only when the verifier satisfies the challenge under ``method``
    """
    if not code_verifier or not code_challenge:
        return False

    if method == "plain":
        candidate = code_verifier
    elif method == "S256":
        candidate = s256_challenge(code_verifier)
    else:
        return False

    return hmac.compare_digest(candidate.encode("utf-8"), code_challenge.encode("utf-8"))
