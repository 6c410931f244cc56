from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import ProviderNotConfiguredError, UpstreamError

logger = get_logger(__name__)


@dataclass
class ExternalProfile:
    external_id: str
    email: str
    first_name: str = ""
    last_name: str = ""


def split_name(full_name: Optional[str]) -> Tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def _read_json(response: httpx.Response, provider: str, what: str) -> Any:
    if not response.is_success:
        logger.error(
            "social_provider_http_error",
            provider=provider,
            step=what,
            status_code=response.status_code,
        )
        raise UpstreamError(f"{provider} {what} failed")
    try:
        return response.json()
    except ValueError as exc:
        logger.error("social_provider_bad_json", provider=provider, step=what)
        raise UpstreamError(f"{provider} returned a malformed {what} response") from exc


def _access_token_from(payload: Any, provider: str) -> str:
    token = payload.get("access_token") if isinstance(payload, dict) else None
    if not token or not isinstance(token, str):
        logger.error("social_provider_no_access_token", provider=provider)
        raise UpstreamError(f"{provider} did not return an access token")
    return token


def _require_dict(payload: Any, provider: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        logger.error("social_userinfo_invalid_format", provider=provider, type=type(payload).__name__)
        raise UpstreamError(f"{provider} returned a malformed profile")
    return payload


class SocialProvider(ABC):
    """One external identity provider.

    Subclasses build the consent URL, trade the provider's code for an access
    token, and normalise the provider's profile shape. All HTTP goes through
    the ``httpx.AsyncClient`` the broker passes in, so timeouts are bounded in
    one place.
    """

    name: str = ""
    scope: str = ""
    authorize_endpoint: str = ""

    def __init__(self, client_id: Optional[str], client_secret: Optional[str]) -> None:
        self.client_id = client_id
        self.client_secret = client_secret

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def require_configured(self) -> None:
        if not self.configured:
            logger.warning("social_provider_not_configured", provider=self.name)
            raise ProviderNotConfiguredError(f"{self.name} sign-in is not configured")

    def _auth_params(self, state: str, redirect_uri: str) -> Dict[str, str]:
        return {
            "client_id": self.client_id or "",
            "redirect_uri": redirect_uri,
            "scope": self.scope,
            "response_type": "code",
            "state": state,
        }

    def auth_url(self, state: str, redirect_uri: str) -> str:
        self.require_configured()
        return f"{self.authorize_endpoint}?{urlencode(self._auth_params(state, redirect_uri))}"

    @abstractmethod
    async def exchange_code(
        self, client: httpx.AsyncClient, code: str, redirect_uri: str
    ) -> str: ...

    @abstractmethod
    async def fetch_profile(self, client: httpx.AsyncClient, token: str) -> ExternalProfile: ...


class GoogleProvider(SocialProvider):
    name = "google"
    scope = "openid email profile"
    authorize_endpoint = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint = "https://oauth2.googleapis.com/token"
    userinfo_endpoint = "https://www.googleapis.com/oauth2/v2/userinfo"

    def _auth_params(self, state: str, redirect_uri: str) -> Dict[str, str]:
        params = super()._auth_params(state, redirect_uri)
        params["access_type"] = "offline"
        params["prompt"] = "consent"
        return params

    async def exchange_code(self, client, code, redirect_uri):
        self.require_configured()
        response = await client.post(
            self.token_endpoint,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            },
            headers={"Accept": "application/json"},
        )
        return _access_token_from(_read_json(response, self.name, "token"), self.name)

    async def fetch_profile(self, client, token):
        response = await client.get(
            self.userinfo_endpoint, headers={"Authorization": f"Bearer {token}"}
        )
        info = _require_dict(_read_json(response, self.name, "userinfo"), self.name)
        return ExternalProfile(
            external_id=str(info.get("id") or ""),
            email=info.get("email") or "",
            first_name=info.get("given_name") or "",
            last_name=info.get("family_name") or "",
        )


class GitHubProvider(SocialProvider):
    name = "github"
    scope = "user:email"
    authorize_endpoint = "https://github.com/login/oauth/authorize"
    token_endpoint = "https://github.com/login/oauth/access_token"
    userinfo_endpoint = "https://api.github.com/user"
    emails_endpoint = "https://api.github.com/user/emails"

    def _auth_params(self, state: str, redirect_uri: str) -> Dict[str, str]:
        params = super()._auth_params(state, redirect_uri)
        # GitHub's authorize endpoint takes no response_type
        params.pop("response_type", None)
        return params

    async def exchange_code(self, client, code, redirect_uri):
        self.require_configured()
        response = await client.post(
            self.token_endpoint,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            },
            headers={"Accept": "application/json"},
        )
        return _access_token_from(_read_json(response, self.name, "token"), self.name)

    async def fetch_profile(self, client, token):
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
        }
        response = await client.get(self.userinfo_endpoint, headers=headers)
        info = _require_dict(_read_json(response, self.name, "userinfo"), self.name)
        email = info.get("email") or ""
        if not email:
            email = await self._primary_email(client, headers)
        first_name, last_name = split_name(info.get("name"))
        return ExternalProfile(
            external_id=str(info.get("id") or ""),
            email=email,
            first_name=first_name,
            last_name=last_name,
        )

    async def _primary_email(self, client: httpx.AsyncClient, headers: Dict[str, str]) -> str:
        response = await client.get(self.emails_endpoint, headers=headers)
        emails = _read_json(response, self.name, "emails")
        if not isinstance(emails, list):
            raise UpstreamError("github returned a malformed emails response")
        entries = [e for e in emails if isinstance(e, dict) and e.get("email")]
        primary = next((e for e in entries if e.get("primary") and e.get("verified")), None)
        if primary is None:
            primary = next((e for e in entries if e.get("verified")), None)
        return primary["email"] if primary else ""


class FacebookProvider(SocialProvider):
    name = "facebook"
    scope = "email"
    authorize_endpoint = "https://www.facebook.com/v18.0/dialog/oauth"
    token_endpoint = "https://graph.facebook.com/v18.0/oauth/access_token"
    userinfo_endpoint = "https://graph.facebook.com/me"
    profile_fields = "id,name,email,first_name,last_name"

    async def exchange_code(self, client, code, redirect_uri):
        self.require_configured()
        response = await client.get(
            self.token_endpoint,
            params={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            },
        )
        return _access_token_from(_read_json(response, self.name, "token"), self.name)

    async def fetch_profile(self, client, token):
        response = await client.get(
            self.userinfo_endpoint,
            params={"fields": self.profile_fields},
            headers={"Authorization": f"Bearer {token}"},
        )
        info = _require_dict(_read_json(response, self.name, "userinfo"), self.name)
        first_name = info.get("first_name") or ""
        last_name = info.get("last_name") or ""
        if not first_name and not last_name:
            first_name, last_name = split_name(info.get("name"))
        return ExternalProfile(
            external_id=str(info.get("id") or ""),
            email=info.get("email") or "",
            first_name=first_name,
            last_name=last_name,
        )


class AppleProvider(SocialProvider):
    """Sign in with Apple needs JWT client assertions; not supported."""

    name = "apple"

    @property
    def configured(self) -> bool:
        return False

    def require_configured(self) -> None:
        raise ProviderNotConfiguredError("apple sign-in is not configured")

    def auth_url(self, state, redirect_uri):
        self.require_configured()
        return ""

    async def exchange_code(self, client, code, redirect_uri):
        self.require_configured()
        return ""

    async def fetch_profile(self, client, token):
        self.require_configured()
        return ExternalProfile(external_id="", email="")


def build_providers(settings: Settings) -> Dict[str, SocialProvider]:
    return {
        "google": GoogleProvider(
            settings.oauth_google_client_id, settings.oauth_google_client_secret
        ),
        "github": GitHubProvider(
            settings.oauth_github_client_id, settings.oauth_github_client_secret
        ),
        "facebook": FacebookProvider(
            settings.oauth_facebook_client_id, settings.oauth_facebook_client_secret
        ),
        "apple": AppleProvider(
            settings.oauth_apple_client_id, settings.oauth_apple_client_secret
        ),
    }


__all__ = [
    "ExternalProfile",
    "SocialProvider",
    "GoogleProvider",
    "GitHubProvider",
    "FacebookProvider",
    "AppleProvider",
    "build_providers",
    "split_name",
]
