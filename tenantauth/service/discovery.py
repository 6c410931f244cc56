from __future__ import annotations

from typing import Any, Dict

from tenantauth.config import DEFAULT_TENANT_ID

SCOPES_SUPPORTED = ["openid", "profile", "email", "read", "write", "admin"]
CLAIMS_SUPPORTED = [
    "sub",
    "iss",
    "aud",
    "exp",
    "iat",
    "tenant_id",
    "email",
    "given_name",
    "family_name",
    "groups",
    "scopes",
]


def issuer_for(base_url: str, tenant_id: str = DEFAULT_TENANT_ID) -> str:
    base = base_url.rstrip("/")
    return f"{base}/tenant/{tenant_id}" if tenant_id else base


def openid_configuration(base_url: str, tenant_id: str = DEFAULT_TENANT_ID) -> Dict[str, Any]:
    """OpenID Provider metadata; non-default tenants get a path-scoped issuer."""
    issuer = issuer_for(base_url, tenant_id)
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/oauth/authorize",
        "token_endpoint": f"{issuer}/oauth/token",
        "userinfo_endpoint": f"{issuer}/api/v1/users/me",
        "revocation_endpoint": f"{issuer}/oauth/revoke",
        "jwks_uri": f"{issuer}/.well-known/jwks.json",
        "scopes_supported": list(SCOPES_SUPPORTED),
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_methods_supported": [
            "client_secret_basic",
            "client_secret_post",
            "none",
        ],
        "code_challenge_methods_supported": ["S256", "plain"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": ["HS256"],
        "claims_supported": list(CLAIMS_SUPPORTED),
    }


__all__ = ["openid_configuration", "issuer_for"]
