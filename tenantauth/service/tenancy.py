from __future__ import annotations

from typing import Mapping, Optional

from tenantauth.config import DEFAULT_TENANT_ID
from tenantauth.logging import get_logger
from tenantauth.service.errors import NotFoundError
from tenantauth.storage.memory import MemoryStore

logger = get_logger(__name__)

_QUERY_KEYS = ("tenant_id", "tenantId", "tenant")
TENANT_HEADER = "x-tenant-id"


class TenantResolver:
    """Attach a tenant identifier to each request before any core component runs.

    Precedence: ``/tenant/{id}`` path segment, query parameter, ``X-Tenant-ID``
    header, host match (registered domain or first host label), then the
    default tenant. Explicit identifiers must name an active tenant; the host
    match is best-effort and silently falls back to the default.
    """

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def resolve(
        self,
        path_tenant: Optional[str] = None,
        query: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        host: Optional[str] = None,
    ) -> str:
        explicit = self._explicit_tenant(path_tenant, query or {}, headers or {})
        if explicit is not None:
            return self.require_active(explicit)
        from_host = self._tenant_from_host(host)
        if from_host is not None:
            return from_host
        return DEFAULT_TENANT_ID

    def require_active(self, tenant_id: str) -> str:
        if tenant_id == DEFAULT_TENANT_ID:
            return tenant_id
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None or not tenant.is_active:
            logger.info("tenant_not_found", tenant_id=tenant_id)
            raise NotFoundError("tenant not found")
        return tenant.id

    @staticmethod
    def _explicit_tenant(
        path_tenant: Optional[str],
        query: Mapping[str, str],
        headers: Mapping[str, str],
    ) -> Optional[str]:
        if path_tenant:
            return path_tenant
        for key in _QUERY_KEYS:
            value = query.get(key)
            if value:
                return value
        # Starlette headers are case-insensitive; plain dicts are not
        for name in (TENANT_HEADER, "X-Tenant-ID"):
            value = headers.get(name)
            if value:
                return value.strip()
        return None

    def _tenant_from_host(self, host: Optional[str]) -> Optional[str]:
        if not host:
            return None
        hostname = host.split(":", 1)[0].strip().lower()
        if not hostname:
            return None
        tenant = self.store.get_tenant_by_domain(hostname)
        if tenant is not None and tenant.is_active:
            return tenant.id
        label = hostname.split(".", 1)[0]
        if "." in hostname and label:
            candidate = self.store.get_tenant(label)
            if candidate is not None and candidate.is_active and candidate.id:
                return candidate.id
        return None


__all__ = ["TenantResolver", "TENANT_HEADER"]
