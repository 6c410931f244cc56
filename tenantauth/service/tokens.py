from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from tenantauth.config import DEFAULT_TENANT_ID, Settings
from tenantauth.logging import get_logger
from tenantauth.service.discovery import issuer_for
from tenantauth.service.errors import AuthenticationError, OAuthError
from tenantauth.service.randomness import RandomSource
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import RefreshToken, User, utcnow

logger = get_logger(__name__)

REFRESH_TOKEN_LENGTH = 64
TOKEN_TYPE = "Bearer"
_INVALID_TOKEN = "invalid token"
_INVALID_REFRESH = "invalid refresh token"


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """HS256 access/ID tokens plus opaque, rotating refresh tokens.

    Access tokens are validated statelessly from signature and expiry. Only
    refresh tokens are revocable; they are stored as sha256 digests and
    rotated on every use through the store's compare-and-swap on ``revoked``.
    """

    def __init__(
        self, store: MemoryStore, settings: Settings, random_source: RandomSource
    ) -> None:
        self.store = store
        self.settings = settings
        self.random = random_source
        self._key = settings.jwt_secret.encode()
        self.kid = _encode_segment(hashlib.sha256(self._key).digest()[:8])

    def issuer(self, tenant_id: str = DEFAULT_TENANT_ID) -> str:
        """The issuer advertised by discovery for ``tenant_id``."""
        return issuer_for(self.settings.app_base_url, tenant_id)

    # ------------------------------------------------------------------
    # JWT primitives
    # ------------------------------------------------------------------
    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT", "kid": self.kid}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("ascii", "replace")):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        tenant_id = payload.get("tenant_id", DEFAULT_TENANT_ID)
        if not isinstance(tenant_id, str) or payload.get("iss") != self.issuer(tenant_id):
            return None
        leeway = self.settings.jwt_leeway_seconds
        now = time.time()
        try:
            exp_ts = float(payload["exp"])
            nbf_ts = float(payload.get("nbf", 0))
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= now - leeway or nbf_ts > now + leeway:
            return None
        return payload

    # ------------------------------------------------------------------
    # issuance
    # ------------------------------------------------------------------
    def issue_tokens(
        self, user: User, tenant_id: str, client_id: str, scopes: List[str]
    ) -> Dict[str, Any]:
        now = utcnow()
        iat = int(now.timestamp())
        expires_in = self.settings.access_token_ttl_minutes * 60
        access_jti = self.random.hex(16)
        access_payload = {
            "iss": self.issuer(tenant_id),
            "sub": user.id,
            "user_id": user.id,
            "tenant_id": tenant_id,
            "client_id": client_id,
            "scopes": list(scopes),
            "groups": list(user.groups),
            "jti": access_jti,
            "iat": iat,
            "nbf": iat,
            "exp": iat + expires_in,
            "token_type": "access",
        }
        refresh_token = self.random.urlsafe(REFRESH_TOKEN_LENGTH)
        self.store.save_refresh_token(
            RefreshToken(
                token_hash=hash_refresh_token(refresh_token),
                client_id=client_id,
                user_id=user.id,
                tenant_id=tenant_id,
                scopes=list(scopes),
                expires_at=now + timedelta(days=self.settings.refresh_token_ttl_days),
                access_jti=access_jti,
                created_at=now,
            )
        )
        response: Dict[str, Any] = {
            "access_token": self._encode_jwt(access_payload),
            "token_type": TOKEN_TYPE,
            "expires_in": expires_in,
            "refresh_token": refresh_token,
            "scope": " ".join(scopes),
        }
        if "openid" in scopes:
            response["id_token"] = self._encode_jwt(
                {
                    "iss": self.issuer(tenant_id),
                    "sub": user.id,
                    "aud": [client_id],
                    "tenant_id": tenant_id,
                    "email": user.email,
                    "groups": list(user.groups),
                    "scopes": list(scopes),
                    "iat": iat,
                    "exp": iat + expires_in,
                    "token_type": "id",
                }
            )
        logger.info(
            "tokens_issued",
            user_id=user.id,
            client_id=client_id,
            tenant_id=tenant_id,
            scopes=list(scopes),
        )
        return response

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------
    def validate_access_token(
        self, token: str, *, tenant_id: Optional[str] = None
    ) -> Dict[str, Any]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            raise AuthenticationError(_INVALID_TOKEN)
        if tenant_id is not None and payload.get("tenant_id") != tenant_id:
            logger.warning("access_token_tenant_mismatch", tenant_id=tenant_id)
            raise AuthenticationError(_INVALID_TOKEN)
        return payload

    # ------------------------------------------------------------------
    # refresh tokens
    # ------------------------------------------------------------------
    def revoke_refresh_token(
        self, token: str, *, tenant_id: Optional[str] = None
    ) -> bool:
        tenant = DEFAULT_TENANT_ID if tenant_id is None else tenant_id
        revoked = self.store.revoke_refresh_token_if_active(hash_refresh_token(token), tenant)
        if revoked is not None:
            logger.info("refresh_token_revoked", user_id=revoked.user_id, tenant_id=tenant)
        return revoked is not None

    def refresh(self, token: str, client_id: str, tenant_id: str) -> Dict[str, Any]:
        """Rotate ``token``: revoke it and issue a fresh pair with the same scopes."""
        if not token:
            raise OAuthError("invalid_grant", _INVALID_REFRESH)
        token_hash = hash_refresh_token(token)
        record = self.store.get_refresh_token(token_hash, tenant_id)
        if (
            record is None
            or record.revoked
            or record.client_id != client_id
            or utcnow() >= record.expires_at
        ):
            logger.warning("refresh_token_rejected", client_id=client_id, tenant_id=tenant_id)
            raise OAuthError("invalid_grant", _INVALID_REFRESH)
        if self.store.revoke_refresh_token_if_active(token_hash, tenant_id) is None:
            logger.warning("refresh_token_rotation_race", client_id=client_id, tenant_id=tenant_id)
            raise OAuthError("invalid_grant", _INVALID_REFRESH)
        user = self.store.get_user(record.user_id, tenant_id)
        if user is None or not user.is_active:
            raise OAuthError("invalid_grant", _INVALID_REFRESH)
        return self.issue_tokens(user, tenant_id, client_id, record.scopes)

    # ------------------------------------------------------------------
    # key publication
    # ------------------------------------------------------------------
    def jwks(self) -> Dict[str, List[Dict[str, str]]]:
        key: Dict[str, str] = {"kty": "oct", "kid": self.kid, "alg": "HS256", "use": "sig"}
        if self.settings.jwks_expose_symmetric_key:
            key["k"] = _encode_segment(self._key)
        return {"keys": [key]}


__all__ = ["TokenService", "hash_refresh_token", "REFRESH_TOKEN_LENGTH", "TOKEN_TYPE"]
