from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    return _pwd_hasher.hash(password)


def verify_password(stored_hash: Optional[str], password: Optional[str]) -> bool:
    """Constant-time argon2id check; any malformed input is a mismatch."""
    if not stored_hash or password is None:
        return False
    try:
        return _pwd_hasher.verify(stored_hash, password)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


__all__ = ["hash_password", "verify_password"]
