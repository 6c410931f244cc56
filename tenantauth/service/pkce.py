"""Proof Key for Code Exchange (RFC 7636) helpers."""

from __future__ import annotations

import base64
import hashlib
import hmac
import re

METHOD_PLAIN = "plain"
METHOD_S256 = "S256"
SUPPORTED_METHODS = (METHOD_S256, METHOD_PLAIN)

_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def normalize_method(method: str | None, challenge: str | None = None) -> str:
    """Return the canonical method name, or "" when no challenge is present.

    A challenge without a method is ``plain`` per RFC 7636 section 4.3.
    Unknown methods are returned unchanged so callers can reject them.
    """
    if not challenge:
        return ""
    if not method:
        return METHOD_PLAIN
    if method.upper() == METHOD_S256:
        return METHOD_S256
    if method.lower() == METHOD_PLAIN:
        return METHOD_PLAIN
    return method


def is_supported_method(method: str) -> bool:
    return method in SUPPORTED_METHODS


def validate_verifier_format(verifier: str | None) -> bool:
    return bool(verifier) and _VERIFIER_RE.match(verifier) is not None


def compute_challenge(verifier: str, method: str) -> str:
    if method == METHOD_PLAIN:
        return verifier
    if method == METHOD_S256:
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    raise ValueError(f"unsupported code_challenge_method: {method}")


def verify_pkce(verifier: str | None, challenge: str, method: str | None) -> bool:
    if not challenge:
        return False
    resolved = normalize_method(method, challenge)
    if not is_supported_method(resolved):
        return False
    if not validate_verifier_format(verifier):
        return False
    expected = compute_challenge(verifier, resolved)  # type: ignore[arg-type]
    return hmac.compare_digest(expected.encode("ascii"), challenge.encode("ascii", "replace"))


__all__ = [
    "METHOD_PLAIN",
    "METHOD_S256",
    "SUPPORTED_METHODS",
    "normalize_method",
    "is_supported_method",
    "validate_verifier_format",
    "compute_challenge",
    "verify_pkce",
]
