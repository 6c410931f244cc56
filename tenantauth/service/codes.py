from __future__ import annotations

from datetime import timedelta
from typing import Iterable, List, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import OAuthError
from tenantauth.service.randomness import RandomSource
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import (
    CODE_ISSUED_BY_AUTHORIZE,
    AuthorizationCode,
    utcnow,
)

logger = get_logger(__name__)

CODE_LENGTH = 32
DEFAULT_SCOPE = "read"
_INVALID_CODE = "invalid authorization code"


def parse_scope(scope: Optional[str]) -> List[str]:
    """Split a space-delimited scope string, dropping duplicates and blanks."""
    seen: List[str] = []
    for item in (scope or "").split():
        if item not in seen:
            seen.append(item)
    return seen


def narrow_scopes(requested: Iterable[str], user_scopes: Iterable[str]) -> List[str]:
    """Intersect requested scopes with what the user holds.

    An empty request grants all of the user's scopes. An empty result grants
    the single ``read`` scope instead of failing.
    """
    held = list(dict.fromkeys(user_scopes))
    wanted = list(dict.fromkeys(requested))
    if not wanted:
        granted = held
    else:
        granted = [scope for scope in wanted if scope in held]
    return granted or [DEFAULT_SCOPE]


class AuthorizationCodeManager:
    """Issue and redeem single-use authorization codes."""

    def __init__(
        self, store: MemoryStore, settings: Settings, random_source: RandomSource
    ) -> None:
        self.store = store
        self.settings = settings
        self.random = random_source

    def issue_code(
        self,
        client_id: str,
        user_id: str,
        tenant_id: str,
        redirect_uri: str,
        scopes: List[str],
        code_challenge: str = "",
        code_challenge_method: str = "",
        *,
        issued_by: str = CODE_ISSUED_BY_AUTHORIZE,
        ttl_seconds: Optional[int] = None,
    ) -> str:
        ttl = (
            ttl_seconds
            if ttl_seconds is not None
            else self.settings.auth_code_ttl_minutes * 60
        )
        now = utcnow()
        # A collision on 32 random characters means the source is broken
        for _ in range(3):
            code = self.random.urlsafe(CODE_LENGTH)
            record = AuthorizationCode(
                code=code,
                client_id=client_id,
                user_id=user_id,
                tenant_id=tenant_id,
                redirect_uri=redirect_uri,
                scopes=list(scopes),
                expires_at=now + timedelta(seconds=ttl),
                code_challenge=code_challenge or "",
                code_challenge_method=code_challenge_method or "",
                issued_by=issued_by,
                created_at=now,
            )
            try:
                self.store.save_authorization_code(record)
            except ConstraintViolation:
                logger.warning("authorization_code_collision", tenant_id=tenant_id)
                continue
            logger.info(
                "authorization_code_issued",
                client_id=client_id,
                user_id=user_id,
                tenant_id=tenant_id,
                issued_by=issued_by,
                pkce=bool(code_challenge),
            )
            return code
        raise RuntimeError("unable to allocate a unique authorization code")

    def redeem_code(
        self, code: str, client_id: str, tenant_id: str, redirect_uri: str
    ) -> AuthorizationCode:
        """Validate and atomically consume ``code``.

        Lookup, ``used``/expiry/client/redirect checks, then the store's
        compare-and-swap on ``used``. Of two concurrent calls for one code,
        exactly one returns; the other raises ``OAuthError("invalid_grant")``.
        """
        if not code:
            raise OAuthError("invalid_grant", _INVALID_CODE)
        record = self.store.get_authorization_code(code, tenant_id)
        reason = None
        if record is None:
            reason = "unknown"
        elif record.used:
            reason = "already_used"
        elif record.is_expired():
            reason = "expired"
        elif record.client_id != client_id:
            reason = "client_mismatch"
        elif record.redirect_uri != redirect_uri:
            reason = "redirect_mismatch"
        if reason is not None:
            logger.warning(
                "authorization_code_rejected",
                reason=reason,
                client_id=client_id,
                tenant_id=tenant_id,
            )
            raise OAuthError("invalid_grant", _INVALID_CODE)

        if not self.store.mark_authorization_code_used(code, tenant_id):
            logger.warning(
                "authorization_code_rejected",
                reason="lost_race",
                client_id=client_id,
                tenant_id=tenant_id,
            )
            raise OAuthError("invalid_grant", _INVALID_CODE)
        record.used = True
        logger.info(
            "authorization_code_redeemed",
            client_id=client_id,
            user_id=record.user_id,
            tenant_id=tenant_id,
        )
        return record


__all__ = [
    "AuthorizationCodeManager",
    "CODE_LENGTH",
    "DEFAULT_SCOPE",
    "narrow_scopes",
    "parse_scope",
]
