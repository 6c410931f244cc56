from __future__ import annotations

import base64
import secrets
from typing import Callable, Optional

from tenantauth.logging import get_logger
from tenantauth.service.errors import EntropyError

logger = get_logger(__name__)


class RandomSource:
    """Injectable entropy provider for codes, tokens, secrets and state values.

    Any failure of the underlying byte source (an exception or a short read)
    surfaces as ``EntropyError`` so callers abort instead of continuing with a
    weak value. Tests pass a failing ``read`` callable to exercise that path.
    """

    def __init__(self, read: Optional[Callable[[int], bytes]] = None) -> None:
        self._read = read or secrets.token_bytes

    def token_bytes(self, nbytes: int) -> bytes:
        try:
            data = self._read(nbytes)
        except Exception as exc:
            logger.error("entropy_source_failed", error_type=type(exc).__name__, error=str(exc))
            raise EntropyError("failed to generate secure random value") from exc
        if not isinstance(data, (bytes, bytearray)) or len(data) != nbytes:
            logger.error("entropy_source_short_read", requested=nbytes)
            raise EntropyError("failed to generate secure random value")
        return bytes(data)

    def urlsafe(self, length: int) -> str:
        """Return a base64url string of exactly ``length`` characters."""
        # 3 bytes encode to 4 characters
        raw = self.token_bytes((length * 3) // 4 + 3)
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")[:length]

    def hex(self, nbytes: int) -> str:
        return self.token_bytes(nbytes).hex()

    def base32(self, nbytes: int) -> str:
        """Base32 without padding, the encoding authenticator apps expect."""
        return base64.b32encode(self.token_bytes(nbytes)).decode("ascii").rstrip("=")


__all__ = ["RandomSource"]
