"""Tests for per-request tenant resolution."""

import pytest

from tenantauth.service.errors import NotFoundError
from tenantauth.service.tenancy import TenantResolver


@pytest.fixture
def resolver(runtime):
    runtime.store.create_tenant("acme", "Acme", domain="login.acme-corp.test")
    runtime.store.create_tenant("globex", "Globex")
    return TenantResolver(runtime.store)


class TestExplicitTenant:
    def test_path_segment_wins(self, resolver):
        tenant = resolver.resolve(
            "acme", {"tenant_id": "globex"}, {"X-Tenant-ID": "globex"}, "globex.example.test"
        )
        assert tenant == "acme"

    def test_query_parameter(self, resolver):
        assert resolver.resolve(None, {"tenant_id": "globex"}) == "globex"
        assert resolver.resolve(None, {"tenantId": "globex"}) == "globex"

    def test_header(self, resolver):
        assert resolver.resolve(None, {}, {"x-tenant-id": " acme "}) == "acme"

    def test_unknown_explicit_tenant_is_not_found(self, resolver):
        with pytest.raises(NotFoundError):
            resolver.resolve("initech")

    def test_inactive_tenant_is_not_found(self, runtime, resolver):
        runtime.store.tenants["globex"].is_active = False
        with pytest.raises(NotFoundError):
            resolver.resolve(None, {"tenant": "globex"})


class TestHostMatching:
    def test_registered_domain(self, resolver):
        assert resolver.resolve(host="LOGIN.acme-corp.test:443") == "acme"

    def test_first_label(self, resolver):
        assert resolver.resolve(host="globex.example.test") == "globex"

    def test_unknown_host_falls_back_to_default(self, resolver):
        assert resolver.resolve(host="initech.example.test") == ""

    def test_single_label_host_is_default(self, resolver):
        assert resolver.resolve(host="testserver") == ""
        assert resolver.resolve(host="globex") == ""

    def test_no_hints_is_default(self, resolver):
        assert resolver.resolve() == ""
