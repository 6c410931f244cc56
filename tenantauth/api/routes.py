from __future__ import annotations

import base64
from typing import Optional, Tuple
from urllib.parse import unquote

from fastapi import (
    APIRouter,
    Depends,
    Form,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
    Response,
)
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from tenantauth.api.schemas import (
    Envelope,
    LoginRequest,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorEnableRequest,
    TwoFactorSessionVerifyRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
    UserInfoResponse,
)
from tenantauth.api.templater import authorize_page, social_links
from tenantauth.logging import get_logger
from tenantauth.service.discovery import openid_configuration
from tenantauth.service.errors import AuthenticationError, OAuthError
from tenantauth.service.oauth import AuthorizationRequest
from tenantauth.service.runtime import check_rate_limit, get_runtime
from tenantauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}
_JWKS_CACHE = {"Cache-Control": "public, max-age=3600"}
_VERIFIED_MESSAGE = "two-factor code verified"
_INVALID_CODE_MESSAGE = "invalid two-factor code"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    tenant_id: Optional[str] = None,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Enforce a token-bucket limit, raising 429 when it is exhausted."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True, tenant_id=tenant_id
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, tenant_id=tenant_id)
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": info.reset_seconds},
        )
    return info


# ----------------------------------------------------------------------
# dependencies
# ----------------------------------------------------------------------
async def get_tenant(request: Request) -> str:
    """Resolve the tenant from path, query, header or host."""
    runtime = get_runtime()
    return runtime.tenants.resolve(
        request.path_params.get("tenant_id"),
        request.query_params,
        request.headers,
        request.headers.get("host"),
    )


async def get_principal(
    authorization: Optional[str] = Header(None),
    tenant_id: str = Depends(get_tenant),
) -> Tuple[User, dict]:
    runtime = get_runtime()
    return runtime.oauth.authenticate_bearer(authorization, tenant_id)


async def get_current_user(principal: Tuple[User, dict] = Depends(get_principal)) -> User:
    return principal[0]


def _route_prefix(request: Request) -> str:
    tenant_id = request.path_params.get("tenant_id")
    return f"/tenant/{tenant_id}" if tenant_id else ""


def _parse_basic_auth(authorization: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split an HTTP Basic header into form-urlencoded client id and secret."""
    if not authorization or not authorization.lower().startswith("basic "):
        return None, None
    # binascii.Error, UnicodeDecodeError and non-ASCII input are all ValueError
    try:
        raw = base64.b64decode(authorization.split(" ", 1)[1].strip(), validate=True)
        decoded = raw.decode("utf-8")
    except ValueError as exc:
        raise OAuthError("invalid_client", "malformed basic credentials") from exc
    client_id, sep, secret = decoded.partition(":")
    if not sep:
        raise OAuthError("invalid_client", "malformed basic credentials")
    return unquote(client_id), unquote(secret)


def _token_json(tokens: dict) -> JSONResponse:
    body = TokenResponse(**tokens).model_dump(exclude_none=True)
    return JSONResponse(content=body, headers=_NO_STORE)


# ----------------------------------------------------------------------
# token endpoint
# ----------------------------------------------------------------------
@router.post("/oauth/token", tags=["oauth"])
async def token_endpoint(
    grant_type: str = Form(""),
    code: str = Form(""),
    redirect_uri: str = Form(""),
    client_id: str = Form(""),
    client_secret: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    refresh_token: str = Form(""),
    authorization: Optional[str] = Header(None),
    tenant_id: str = Depends(get_tenant),
):
    runtime = get_runtime()
    basic_id, basic_secret = _parse_basic_auth(authorization)
    if basic_id is not None:
        if client_id and client_id != basic_id:
            raise OAuthError("invalid_request", "client_id does not match credentials")
        if client_secret:
            raise OAuthError("invalid_request", "multiple client authentication methods")
        client_id, client_secret = basic_id, basic_secret

    await _enforce_rate_limit(
        runtime,
        f"token:{client_id or 'anonymous'}",
        runtime.settings.token_rate_limit_per_minute,
        60,
        tenant_id=tenant_id,
    )

    if not grant_type:
        raise OAuthError("invalid_request", "grant_type is required")
    if grant_type == "authorization_code":
        if not code:
            raise OAuthError("invalid_request", "code is required")
        tokens = runtime.oauth.exchange_authorization_code(
            code,
            client_id,
            redirect_uri,
            tenant_id,
            client_secret=client_secret,
            code_verifier=code_verifier,
        )
    elif grant_type == "refresh_token":
        if not refresh_token:
            raise OAuthError("invalid_request", "refresh_token is required")
        tokens = runtime.oauth.refresh_grant(
            refresh_token, client_id, tenant_id, client_secret=client_secret
        )
    else:
        raise OAuthError("unsupported_grant_type", f"unsupported grant_type: {grant_type}")
    logger.info("token_issued", grant_type=grant_type, client_id=client_id, tenant_id=tenant_id)
    return _token_json(tokens)


@router.post("/oauth/revoke", tags=["oauth"])
async def revoke_endpoint(
    token: str = Form(""),
    token_type_hint: Optional[str] = Form(None),
    tenant_id: str = Depends(get_tenant),
):
    runtime = get_runtime()
    runtime.oauth.revoke(token, tenant_id)
    return Response(status_code=200, headers=_NO_STORE)


# ----------------------------------------------------------------------
# authorize endpoint
# ----------------------------------------------------------------------
def _render_authorize(
    request: Request,
    auth_request: AuthorizationRequest,
    client_name: str,
    *,
    status_code: int = 200,
    email: str = "",
    error: str = "",
    two_factor_session_id: str = "",
) -> HTMLResponse:
    runtime = get_runtime()
    params = {
        "client_id": auth_request.client_id,
        "redirect_uri": auth_request.redirect_uri,
        "response_type": auth_request.response_type,
        "scope": auth_request.scope,
        "state": auth_request.state,
        "code_challenge": auth_request.code_challenge,
        "code_challenge_method": auth_request.code_challenge_method,
    }
    prefix = _route_prefix(request)
    html = authorize_page(
        action=f"{prefix}/oauth/authorize",
        params={k: v for k, v in params.items() if v},
        client_name=client_name,
        providers=social_links(runtime.social.enabled_providers(), prefix, params),
        email=email,
        error=error,
        two_factor_required=bool(two_factor_session_id),
        two_factor_session_id=two_factor_session_id,
    )
    return HTMLResponse(content=html, status_code=status_code, headers=_NO_STORE)


@router.get("/oauth/authorize", response_class=HTMLResponse, tags=["oauth"])
async def authorize_form(
    request: Request,
    client_id: str = Query(""),
    redirect_uri: str = Query(""),
    response_type: str = Query("code"),
    scope: str = Query(""),
    state: str = Query(""),
    code_challenge: str = Query(""),
    code_challenge_method: str = Query(""),
    tenant_id: str = Depends(get_tenant),
):
    runtime = get_runtime()
    auth_request = AuthorizationRequest(
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        scope=scope,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
    )
    client = runtime.oauth.validate_authorization_request(auth_request, tenant_id)
    return _render_authorize(request, auth_request, client.name or client.client_id)


@router.post("/oauth/authorize", tags=["oauth"])
async def authorize_submit(
    request: Request,
    client_id: str = Form(""),
    redirect_uri: str = Form(""),
    response_type: str = Form("code"),
    scope: str = Form(""),
    state: str = Form(""),
    code_challenge: str = Form(""),
    code_challenge_method: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
    two_fa_code: str = Form(""),
    two_factor_session_id: str = Form(""),
    action: str = Form("approve"),
    authorization: Optional[str] = Header(None),
    tenant_id: str = Depends(get_tenant),
):
    runtime = get_runtime()
    auth_request = AuthorizationRequest(
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        scope=scope,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
    )
    if action == "deny":
        return RedirectResponse(runtime.oauth.deny(auth_request, tenant_id), status_code=302)

    client = runtime.oauth.validate_authorization_request(auth_request, tenant_id)
    client_name = client.name or client.client_id

    if authorization and authorization.lower().startswith("bearer "):
        user, _ = runtime.oauth.authenticate_bearer(authorization, tenant_id)
    else:
        if not email or not password:
            return _render_authorize(
                request,
                auth_request,
                client_name,
                status_code=400,
                email=email,
                error="email and password are required",
            )
        await _enforce_rate_limit(
            runtime,
            f"login:{email.strip().lower()}",
            runtime.settings.login_rate_limit_per_minute,
            60,
            tenant_id=tenant_id,
        )
        try:
            user = runtime.oauth.authenticate_password(email, password, tenant_id)
        except AuthenticationError as exc:
            return _render_authorize(
                request, auth_request, client_name, status_code=401, email=email, error=exc.message
            )

    try:
        pending = await runtime.oauth.second_factor_gate(
            user,
            tenant_id,
            two_fa_code=two_fa_code or None,
            two_factor_session_id=two_factor_session_id or None,
            client_id=client.client_id,
        )
    except AuthenticationError as exc:
        retry_session = two_factor_session_id or runtime.two_factor.create_step_up_session(
            user.id, tenant_id, client.client_id
        )
        return _render_authorize(
            request,
            auth_request,
            client_name,
            status_code=401,
            email=user.email,
            error=exc.message,
            two_factor_session_id=retry_session,
        )
    if pending is not None:
        return _render_authorize(
            request,
            auth_request,
            client_name,
            email=user.email,
            error="enter the code from your authenticator app",
            two_factor_session_id=pending,
        )

    location = runtime.oauth.authorize(auth_request, user, tenant_id)
    logger.info("authorization_granted", client_id=client.client_id, tenant_id=tenant_id)
    return RedirectResponse(location, status_code=302)


@router.post("/login", tags=["auth"])
async def login(body: LoginRequest, tenant_id: str = Depends(get_tenant)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        tenant_id=tenant_id,
    )
    result = await runtime.oauth.login(
        body.email,
        body.password,
        tenant_id,
        two_fa_code=body.two_fa_code,
        two_factor_session_id=body.two_factor_session_id,
        client_id=body.client_id,
        redirect_uri=body.redirect_uri,
        code_challenge=body.code_challenge,
        code_challenge_method=body.code_challenge_method,
        state=body.state,
        scope=body.scope,
    )
    if result.tokens:
        return _token_json(result.tokens)
    return Envelope(status="ok", data=result.to_dict())


# ----------------------------------------------------------------------
# two-factor
# ----------------------------------------------------------------------
@router.post("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:setup:{user.id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        tenant_id=user.tenant_id,
    )
    enrollment = runtime.two_factor.begin_enrollment(user)
    return Envelope(status="ok", data=TwoFactorSetupResponse(**enrollment))


@router.post("/2fa/enable", response_model=Envelope, tags=["2fa"])
async def two_factor_enable(
    body: TwoFactorEnableRequest, user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:enable:{user.id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        tenant_id=user.tenant_id,
    )
    runtime.two_factor.confirm_enrollment(user.id, user.tenant_id, body.code, body.secret)
    return Envelope(status="ok", data={"enabled": True})


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(body: TwoFactorCodeRequest, user: User = Depends(get_current_user)):
    """Turn 2FA off. Requires a current TOTP or backup code."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:disable:{user.id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        tenant_id=user.tenant_id,
    )
    await runtime.two_factor.disable(user.id, user.tenant_id, body.code)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/2fa/verify", response_model=Envelope, tags=["2fa"])
async def two_factor_verify(body: TwoFactorVerifyRequest, tenant_id: str = Depends(get_tenant)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:verify:{body.user_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        tenant_id=tenant_id,
    )
    valid = await runtime.two_factor.verify_challenge(body.user_id, tenant_id, body.code)
    return Envelope(
        status="ok",
        data=TwoFactorVerifyResponse(
            valid=valid, message=_VERIFIED_MESSAGE if valid else _INVALID_CODE_MESSAGE
        ),
    )


@router.post("/2fa/verify-session", response_model=Envelope, tags=["2fa"])
async def two_factor_verify_session(
    body: TwoFactorSessionVerifyRequest, tenant_id: str = Depends(get_tenant)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:session:{body.session_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        tenant_id=tenant_id,
    )
    valid = await runtime.two_factor.verify_session(body.session_id, tenant_id, body.code)
    return Envelope(
        status="ok",
        data=TwoFactorVerifyResponse(
            valid=valid, message=_VERIFIED_MESSAGE if valid else _INVALID_CODE_MESSAGE
        ),
    )


@router.get("/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    status = runtime.two_factor.status(user.id, user.tenant_id)
    return Envelope(status="ok", data=TwoFactorStatusResponse(**status))


# ----------------------------------------------------------------------
# social identity
# ----------------------------------------------------------------------
@router.get("/auth/providers", response_model=Envelope, tags=["social"])
async def list_providers():
    runtime = get_runtime()
    return Envelope(status="ok", data={"providers": runtime.social.enabled_providers()})


@router.get("/auth/{provider}/login", tags=["social"])
async def social_login(
    provider: str = Path(..., max_length=32),
    tenant_id: str = Depends(get_tenant),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"social:start:{provider}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        tenant_id=tenant_id,
    )
    url = await runtime.social.begin_federated_login(provider, tenant_id)
    return RedirectResponse(url, status_code=302)


@router.get("/auth/{provider}/oauth", tags=["social"])
async def social_oauth(
    provider: str = Path(..., max_length=32),
    client_id: str = Query(""),
    redirect_uri: str = Query(""),
    scope: str = Query(""),
    state: str = Query(""),
    code_challenge: str = Query(""),
    code_challenge_method: str = Query(""),
    tenant_id: str = Depends(get_tenant),
):
    """Start a social login that resumes a pending authorize request."""
    runtime = get_runtime()
    if not client_id or not redirect_uri:
        raise OAuthError("invalid_request", "client_id and redirect_uri are required")
    await _enforce_rate_limit(
        runtime,
        f"social:start:{provider}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        tenant_id=tenant_id,
    )
    original = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": code_challenge_method,
    }
    url = await runtime.social.begin_federated_login(provider, tenant_id, original)
    return RedirectResponse(url, status_code=302)


@router.get("/auth/{provider}/callback", tags=["social"])
async def social_callback(
    provider: str = Path(..., max_length=32),
    code: str = Query(""),
    state: str = Query(""),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    tenant_id: str = Depends(get_tenant),
):
    runtime = get_runtime()
    if error:
        logger.warning("social_provider_error", provider=provider, error=error)
        raise _http_error(
            "validation_error",
            f"{provider} sign-in failed",
            status_code=400,
            details={"error": error, "error_description": error_description or ""},
        )
    await _enforce_rate_limit(
        runtime,
        f"social:callback:{provider}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        tenant_id=tenant_id,
    )
    url = await runtime.social.complete(provider, code, state, tenant_id)
    return RedirectResponse(url, status_code=302)


# ----------------------------------------------------------------------
# discovery
# ----------------------------------------------------------------------
@router.get("/.well-known/openid_configuration", tags=["discovery"])
@router.get("/.well-known/openid-configuration", tags=["discovery"])
async def discovery(tenant_id: str = Depends(get_tenant)):
    runtime = get_runtime()
    return openid_configuration(runtime.settings.app_base_url, tenant_id)


@router.get("/jwks", tags=["discovery"])
@router.get("/.well-known/jwks.json", tags=["discovery"])
async def jwks():
    runtime = get_runtime()
    return JSONResponse(content=runtime.tokens.jwks(), headers=_JWKS_CACHE)


@router.get("/api/v1/users/me", tags=["discovery"])
async def userinfo(
    principal: Tuple[User, dict] = Depends(get_principal),
    tenant_id: str = Depends(get_tenant),
):
    runtime = get_runtime()
    _, claims = principal
    info = runtime.oauth.userinfo(claims, tenant_id)
    return JSONResponse(content=UserInfoResponse(**info).model_dump(), headers=_NO_STORE)


__all__ = ["router", "get_tenant", "get_principal", "get_current_user"]
