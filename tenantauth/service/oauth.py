from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.clients import ClientRegistry, append_query
from tenantauth.service.codes import AuthorizationCodeManager, narrow_scopes, parse_scope
from tenantauth.service.errors import AuthenticationError, OAuthError
from tenantauth.service.passwords import verify_password
from tenantauth.service.pkce import is_supported_method, normalize_method, verify_pkce
from tenantauth.service.tokens import TokenService
from tenantauth.service.two_factor import TwoFactorEngine
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import (
    CODE_ISSUED_BY_SOCIAL_DIRECT,
    DIRECT_LOGIN_CLIENT_ID,
    DIRECT_SOCIAL_LOGIN_CLIENT_ID,
    PSEUDO_CLIENT_IDS,
    Client,
    User,
)

logger = get_logger(__name__)

_INVALID_CREDENTIALS = "invalid credentials"
TWO_FACTOR_REQUIRED_MESSAGE = "two-factor authentication required"


@dataclass
class AuthorizationRequest:
    client_id: str
    redirect_uri: str
    response_type: str = "code"
    scope: str = ""
    state: str = ""
    code_challenge: str = ""
    code_challenge_method: str = ""


@dataclass
class LoginResult:
    two_factor_required: bool = False
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    message: Optional[str] = None
    code: Optional[str] = None
    state: Optional[str] = None
    redirect_uri: Optional[str] = None
    tokens: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        if self.tokens:
            return dict(self.tokens)
        return {k: v for k, v in asdict(self).items() if v is not None and k != "tokens"}


class OAuthService:
    """Password login, the authorize step and the token endpoint grants."""

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        codes: AuthorizationCodeManager,
        tokens: TokenService,
        two_factor: TwoFactorEngine,
        clients: ClientRegistry,
    ) -> None:
        self.store = store
        self.settings = settings
        self.codes = codes
        self.tokens = tokens
        self.two_factor = two_factor
        self.clients = clients

    # ------------------------------------------------------------------
    # clients
    # ------------------------------------------------------------------
    def get_client(self, client_id: Optional[str], tenant_id: str) -> Client:
        return self.clients.get_client(client_id, tenant_id)

    def validate_redirect_uri(self, client: Client, redirect_uri: Optional[str]) -> str:
        return self.clients.validate_redirect_uri(client, redirect_uri)

    def validate_authorization_request(
        self, request: AuthorizationRequest, tenant_id: str
    ) -> Client:
        """Check the client, redirect and PKCE method; normalises the method in place."""
        client = self.get_client(request.client_id, tenant_id)
        self.validate_redirect_uri(client, request.redirect_uri)
        if request.response_type != "code":
            raise OAuthError("unsupported_response_type", "only response_type=code is supported")
        method = normalize_method(request.code_challenge_method, request.code_challenge)
        if method and not is_supported_method(method):
            raise OAuthError("invalid_request", "unsupported code_challenge_method")
        request.code_challenge_method = method
        return client

    # ------------------------------------------------------------------
    # end-user authentication
    # ------------------------------------------------------------------
    def authenticate_password(self, email: str, password: str, tenant_id: str) -> User:
        user = self.store.get_user_by_email(email, tenant_id) if email else None
        if user is None or not user.is_active:
            logger.info("login_failed", tenant_id=tenant_id, reason="unknown_user")
            raise AuthenticationError(_INVALID_CREDENTIALS)
        stored_hash = self.store.get_password_hash(user.id, tenant_id)
        if not verify_password(stored_hash, password):
            logger.info("login_failed", tenant_id=tenant_id, user_id=user.id, reason="password")
            raise AuthenticationError(_INVALID_CREDENTIALS)
        return user

    async def second_factor_gate(
        self,
        user: User,
        tenant_id: str,
        *,
        two_fa_code: Optional[str] = None,
        two_factor_session_id: Optional[str] = None,
        client_id: str = "",
    ) -> Optional[str]:
        """Return None when the user may proceed, or a new step-up session id."""
        if not self.two_factor.is_enabled(user.id, tenant_id):
            return None
        if two_factor_session_id and self.two_factor.is_session_verified(
            two_factor_session_id, user_id=user.id, tenant_id=tenant_id
        ):
            return None
        if two_fa_code:
            if await self.two_factor.verify_challenge(user.id, tenant_id, two_fa_code):
                return None
            raise AuthenticationError("invalid two-factor code")
        return self.two_factor.create_step_up_session(user.id, tenant_id, client_id)

    async def login(
        self,
        email: str,
        password: str,
        tenant_id: str,
        *,
        two_fa_code: Optional[str] = None,
        two_factor_session_id: Optional[str] = None,
        client_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
        state: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> LoginResult:
        user = self.authenticate_password(email, password, tenant_id)
        pending = await self.second_factor_gate(
            user,
            tenant_id,
            two_fa_code=two_fa_code,
            two_factor_session_id=two_factor_session_id,
            client_id=client_id or "",
        )
        if pending is not None:
            logger.info("login_two_factor_required", user_id=user.id, tenant_id=tenant_id)
            return LoginResult(
                two_factor_required=True,
                user_id=user.id,
                session_id=pending,
                message=TWO_FACTOR_REQUIRED_MESSAGE,
            )

        if client_id and redirect_uri and code_challenge:
            request = AuthorizationRequest(
                client_id=client_id,
                redirect_uri=redirect_uri,
                scope=scope or "",
                state=state or "",
                code_challenge=code_challenge,
                code_challenge_method=code_challenge_method or "",
            )
            code = self._issue_for_request(request, user, tenant_id)
            return LoginResult(user_id=user.id, code=code, state=state, redirect_uri=redirect_uri)

        scopes = narrow_scopes(parse_scope(scope), user.scopes)
        logger.info("direct_login", user_id=user.id, tenant_id=tenant_id)
        return LoginResult(
            user_id=user.id,
            tokens=self.tokens.issue_tokens(user, tenant_id, DIRECT_LOGIN_CLIENT_ID, scopes),
        )

    # ------------------------------------------------------------------
    # authorize
    # ------------------------------------------------------------------
    def _issue_for_request(
        self, request: AuthorizationRequest, user: User, tenant_id: str
    ) -> str:
        self.validate_authorization_request(request, tenant_id)
        scopes = narrow_scopes(parse_scope(request.scope), user.scopes)
        return self.codes.issue_code(
            request.client_id,
            user.id,
            tenant_id,
            request.redirect_uri,
            scopes,
            request.code_challenge,
            request.code_challenge_method,
        )

    def authorize(self, request: AuthorizationRequest, user: User, tenant_id: str) -> str:
        code = self._issue_for_request(request, user, tenant_id)
        return append_query(request.redirect_uri, {"code": code, "state": request.state})

    def deny(self, request: AuthorizationRequest, tenant_id: str) -> str:
        client = self.get_client(request.client_id, tenant_id)
        self.validate_redirect_uri(client, request.redirect_uri)
        logger.info("authorization_denied", client_id=client.client_id, tenant_id=tenant_id)
        return append_query(
            request.redirect_uri, {"error": "access_denied", "state": request.state}
        )

    # ------------------------------------------------------------------
    # token endpoint
    # ------------------------------------------------------------------
    def exchange_authorization_code(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        tenant_id: str,
        *,
        client_secret: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Redeem ``code`` and return a token response.

        The code is consumed before the credential checks, so a failed PKCE or
        client-secret check burns it. A code carrying a challenge always needs
        the matching verifier. A code without one needs the client secret,
        except a ``social_direct`` code held by the direct-social-login
        pseudo-client.
        """
        if not client_id:
            raise OAuthError("invalid_request", "client_id is required")
        record = self.codes.redeem_code(code, client_id, tenant_id, redirect_uri)

        if client_id in PSEUDO_CLIENT_IDS:
            if not (
                client_id == DIRECT_SOCIAL_LOGIN_CLIENT_ID
                and record.issued_by == CODE_ISSUED_BY_SOCIAL_DIRECT
                and not record.code_challenge
            ):
                logger.warning("pseudo_client_redemption_rejected", client_id=client_id)
                raise OAuthError("invalid_grant", "invalid authorization code")
        else:
            client = self.get_client(client_id, tenant_id)
            if record.code_challenge:
                if not verify_pkce(
                    code_verifier, record.code_challenge, record.code_challenge_method
                ):
                    logger.warning("pkce_verification_failed", client_id=client_id)
                    raise OAuthError("invalid_grant", "invalid code_verifier")
                if client_secret and not self.clients.verify_secret(client, client_secret):
                    raise OAuthError("invalid_client", "client authentication failed")
            elif not self.clients.verify_secret(client, client_secret):
                logger.warning("client_authentication_failed", client_id=client_id)
                raise OAuthError("invalid_client", "client authentication failed")

        user = self.store.get_user(record.user_id, tenant_id)
        if user is None or not user.is_active:
            raise OAuthError("invalid_grant", "invalid authorization code")
        return self.tokens.issue_tokens(user, tenant_id, client_id, record.scopes)

    def refresh_grant(
        self,
        refresh_token: str,
        client_id: str,
        tenant_id: str,
        *,
        client_secret: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not client_id:
            raise OAuthError("invalid_request", "client_id is required")
        if client_id not in PSEUDO_CLIENT_IDS:
            client = self.get_client(client_id, tenant_id)
            if not client.is_public and not self.clients.verify_secret(client, client_secret):
                raise OAuthError("invalid_client", "client authentication failed")
        return self.tokens.refresh(refresh_token, client_id, tenant_id)

    def revoke(self, token: str, tenant_id: str) -> None:
        # RFC 7009: unknown tokens are not an error
        if token:
            self.tokens.revoke_refresh_token(token, tenant_id=tenant_id)

    # ------------------------------------------------------------------
    # bearer-protected resources
    # ------------------------------------------------------------------
    def authenticate_bearer(
        self, authorization: Optional[str], tenant_id: str
    ) -> Tuple[User, Dict[str, Any]]:
        token = _extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.tokens.validate_access_token(token, tenant_id=tenant_id)
        user = self.store.get_user(str(claims.get("sub")), tenant_id)
        if user is None or not user.is_active:
            raise AuthenticationError("invalid token")
        return user, claims

    def userinfo(self, claims: Dict[str, Any], tenant_id: str) -> Dict[str, Any]:
        user = self.store.get_user(str(claims.get("sub")), tenant_id)
        if user is None:
            raise AuthenticationError("invalid token")
        return {
            "sub": user.id,
            "tenant_id": tenant_id,
            "email": user.email,
            "given_name": user.first_name,
            "family_name": user.last_name,
            "groups": list(user.groups),
            "scopes": list(claims.get("scopes") or []),
        }


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


__all__ = ["AuthorizationRequest", "LoginResult", "OAuthService"]
