from __future__ import annotations

from typing import Mapping, Optional
from urllib.parse import urlencode, urlsplit

from tenantauth.logging import get_logger
from tenantauth.service.errors import OAuthError
from tenantauth.service.passwords import verify_password
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import PSEUDO_CLIENT_IDS, Client

logger = get_logger(__name__)


def append_query(url: str, params: Mapping[str, Optional[str]]) -> str:
    """Append ``params`` to ``url``, skipping empty values."""
    filtered = {k: v for k, v in params.items() if v}
    if not filtered:
        return url
    separator = "&" if urlsplit(url).query else "?"
    return f"{url}{separator}{urlencode(filtered)}"


class ClientRegistry:
    """Tenant-scoped lookups and checks for registered OAuth clients."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def get_client(self, client_id: Optional[str], tenant_id: str) -> Client:
        if not client_id:
            raise OAuthError("invalid_request", "client_id is required")
        # Pseudo-clients are never registered; guard against a seeded record
        if client_id in PSEUDO_CLIENT_IDS:
            raise OAuthError("invalid_client", "unknown client")
        client = self.store.get_client(client_id, tenant_id)
        if client is None or not client.is_active:
            logger.warning("oauth_client_unknown", client_id=client_id, tenant_id=tenant_id)
            raise OAuthError("invalid_client", "unknown client")
        return client

    @staticmethod
    def validate_redirect_uri(client: Client, redirect_uri: Optional[str]) -> str:
        if not redirect_uri or redirect_uri not in client.redirect_uris:
            logger.warning("oauth_redirect_mismatch", client_id=client.client_id)
            raise OAuthError("invalid_request", "redirect_uri does not match a registered uri")
        return redirect_uri

    @staticmethod
    def verify_secret(client: Client, client_secret: Optional[str]) -> bool:
        if client.is_public or not client_secret:
            return False
        return verify_password(client.secret_hash, client_secret)


__all__ = ["ClientRegistry", "append_query"]
