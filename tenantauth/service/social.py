from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlencode

import httpx

from tenantauth.config import DEFAULT_TENANT_ID, Settings
from tenantauth.logging import get_logger
from tenantauth.service.clients import ClientRegistry, append_query
from tenantauth.service.codes import AuthorizationCodeManager, narrow_scopes, parse_scope
from tenantauth.service.errors import (
    AuthenticationError,
    OAuthError,
    ProviderNotConfiguredError,
    UpstreamError,
)
from tenantauth.service.pkce import is_supported_method, normalize_method
from tenantauth.service.randomness import RandomSource
from tenantauth.service.social_providers import (
    ExternalProfile,
    SocialProvider,
    build_providers,
)
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import (
    CODE_ISSUED_BY_SOCIAL_DIRECT,
    DIRECT_SOCIAL_LOGIN_CLIENT_ID,
    User,
)
from tenantauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

STATE_LENGTH = 43
DIRECT_LOGIN_STATE = "direct-social-login"
SOCIAL_USER_SCOPES = ["read", "openid", "profile", "email"]
_ORIGINAL_KEYS = (
    "state",
    "client_id",
    "redirect_uri",
    "scope",
    "code_challenge",
    "code_challenge_method",
)


class SocialIdentityBroker:
    """Federate logins to external providers and resume the original request.

    The anti-CSRF state and the original OAuth2 parameters are kept server
    side, keyed by the random state, and read exactly once on callback. The
    state is validated before any call to the provider.
    """

    def __init__(
        self,
        store: MemoryStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
        codes: AuthorizationCodeManager,
        clients: ClientRegistry,
        random_source: RandomSource,
        *,
        providers: Optional[Dict[str, SocialProvider]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.codes = codes
        self.clients = clients
        self.random = random_source
        self.providers = providers if providers is not None else build_providers(settings)
        self.transport = transport
        self._state_lock = threading.Lock()
        self._states: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # providers
    # ------------------------------------------------------------------
    def get_provider(self, name: str) -> SocialProvider:
        provider = self.providers.get((name or "").lower())
        if provider is None:
            raise ProviderNotConfiguredError(f"unknown identity provider: {name}")
        return provider

    def enabled_providers(self) -> List[str]:
        return [name for name, provider in self.providers.items() if provider.configured]

    def callback_url(self, provider: str, tenant_id: str) -> str:
        prefix = f"/tenant/{tenant_id}" if tenant_id else ""
        return f"{self.settings.app_base_url}{prefix}/auth/{provider}/callback"

    # ------------------------------------------------------------------
    # state storage
    # ------------------------------------------------------------------
    async def _save_state(self, state: str, payload: Dict[str, Any]) -> None:
        ttl = self.settings.social_state_ttl_seconds
        if self.cache:
            await self.cache.set_social_state(state, payload, ttl)
            return
        with self._state_lock:
            now = time.time()
            expired = [k for k, v in self._states.items() if v.get("expires_at", 0) <= now]
            for key in expired:
                self._states.pop(key, None)
            self._states[state] = payload

    async def _pop_state(self, state: str) -> Optional[Dict[str, Any]]:
        if self.cache:
            return await self.cache.pop_social_state(state)
        with self._state_lock:
            return self._states.pop(state, None)

    # ------------------------------------------------------------------
    # flow
    # ------------------------------------------------------------------
    def _validate_original(
        self, original: Dict[str, Any], tenant_id: str
    ) -> Dict[str, str]:
        cleaned = {key: str(original.get(key) or "") for key in _ORIGINAL_KEYS}
        client = self.clients.get_client(cleaned["client_id"], tenant_id)
        self.clients.validate_redirect_uri(client, cleaned["redirect_uri"])
        method = normalize_method(cleaned["code_challenge_method"], cleaned["code_challenge"])
        if method and not is_supported_method(method):
            raise OAuthError("invalid_request", "unsupported code_challenge_method")
        cleaned["code_challenge_method"] = method
        return cleaned

    async def begin_federated_login(
        self,
        provider: str,
        tenant_id: str = DEFAULT_TENANT_ID,
        original: Optional[Dict[str, Any]] = None,
    ) -> str:
        handler = self.get_provider(provider)
        handler.require_configured()
        context = self._validate_original(original, tenant_id) if original else None
        state = self.random.urlsafe(STATE_LENGTH)
        await self._save_state(
            state,
            {
                "provider": handler.name,
                "tenant_id": tenant_id,
                "expires_at": time.time() + self.settings.social_state_ttl_seconds,
                "original": context,
            },
        )
        logger.info(
            "social_login_started",
            provider=handler.name,
            tenant_id=tenant_id,
            with_context=context is not None,
        )
        return handler.auth_url(state, self.callback_url(handler.name, tenant_id))

    async def handle_callback(
        self, provider: str, code: str, state: str, tenant_id: str = DEFAULT_TENANT_ID
    ) -> Tuple[User, Optional[Dict[str, str]]]:
        handler = self.get_provider(provider)
        stored = await self._pop_state(state) if state else None
        if (
            not stored
            or float(stored.get("expires_at", 0)) <= time.time()
            or stored.get("provider") != handler.name
            or stored.get("tenant_id", DEFAULT_TENANT_ID) != tenant_id
        ):
            logger.warning("social_state_rejected", provider=handler.name, tenant_id=tenant_id)
            raise AuthenticationError("invalid state")
        if not code:
            raise AuthenticationError("missing authorization code")
        handler.require_configured()

        profile = await self._fetch_external_profile(handler, code, tenant_id)
        user = self._resolve_user(profile, handler.name, tenant_id)
        return user, stored.get("original")

    async def _fetch_external_profile(
        self, handler: SocialProvider, code: str, tenant_id: str
    ) -> ExternalProfile:
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.social_http_timeout_seconds,
                follow_redirects=False,
                transport=self.transport,
            ) as client:
                token = await handler.exchange_code(
                    client, code, self.callback_url(handler.name, tenant_id)
                )
                profile = await handler.fetch_profile(client, token)
        except httpx.HTTPError as exc:
            logger.error(
                "social_provider_request_failed",
                provider=handler.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamError(f"{handler.name} request failed") from exc
        if not profile.email:
            logger.error("social_profile_missing_email", provider=handler.name)
            raise UpstreamError(f"{handler.name} did not return an email address")
        return profile

    def _resolve_user(self, profile: ExternalProfile, provider: str, tenant_id: str) -> User:
        existing = self.store.get_user_by_email(profile.email, tenant_id)
        if existing is None:
            try:
                existing = self.store.create_user(
                    profile.email,
                    tenant_id=tenant_id,
                    first_name=profile.first_name,
                    last_name=profile.last_name,
                    scopes=SOCIAL_USER_SCOPES,
                    groups=["social-users", f"{provider}-users"],
                    meta={"provider": provider, "external_id": profile.external_id},
                )
                logger.info("social_user_created", user_id=existing.id, provider=provider)
            except ConstraintViolation:
                # Another callback created the same address first
                existing = self.store.get_user_by_email(profile.email, tenant_id)
                if existing is None:
                    raise
        if not existing.is_active:
            raise AuthenticationError("invalid credentials")
        return existing

    async def complete(
        self, provider: str, code: str, state: str, tenant_id: str = DEFAULT_TENANT_ID
    ) -> str:
        """Finish the callback and return the URL to send the browser to."""
        user, original = await self.handle_callback(provider, code, state, tenant_id)
        if original and original.get("client_id") and original.get("redirect_uri"):
            context = self._validate_original(original, tenant_id)
            scopes = narrow_scopes(parse_scope(context["scope"]), user.scopes)
            continuation = self.codes.issue_code(
                context["client_id"],
                user.id,
                tenant_id,
                context["redirect_uri"],
                scopes,
                context["code_challenge"],
                context["code_challenge_method"],
            )
            logger.info("social_login_resumed", provider=provider, client_id=context["client_id"])
            return append_query(
                context["redirect_uri"], {"code": continuation, "state": context["state"]}
            )

        redirect_uri = f"{self.settings.web_base_url}/callback"
        continuation = self.codes.issue_code(
            DIRECT_SOCIAL_LOGIN_CLIENT_ID,
            user.id,
            tenant_id,
            redirect_uri,
            narrow_scopes([], user.scopes),
            issued_by=CODE_ISSUED_BY_SOCIAL_DIRECT,
            ttl_seconds=self.settings.direct_login_code_ttl_seconds,
        )
        params = {
            "code": continuation,
            "state": DIRECT_LOGIN_STATE,
            "provider": provider,
        }
        if tenant_id:
            params["tenant_id"] = tenant_id
        logger.info("social_login_direct", provider=provider, user_id=user.id)
        return f"{redirect_uri}?{urlencode(params)}"


__all__ = ["SocialIdentityBroker", "DIRECT_LOGIN_STATE", "SOCIAL_USER_SCOPES"]
