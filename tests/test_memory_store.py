"""Tests for the tenant-partitioned in-memory store."""

import threading
from datetime import timedelta

import pytest

from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import (
    AuthorizationCode,
    Client,
    RefreshToken,
    TwoFactorEnrollment,
    TwoFactorSession,
    utcnow,
)

SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"


@pytest.fixture
def store():
    s = MemoryStore(mfa_encryption_key=SECRET)
    s.create_tenant("acme", "Acme", domain="Auth.Acme.Test")
    return s


def _code(code="abc", tenant_id="", **kwargs):
    now = utcnow()
    defaults = dict(
        code=code,
        client_id="web-app",
        user_id="u1",
        tenant_id=tenant_id,
        redirect_uri="https://client.test/callback",
        scopes=["read"],
        expires_at=now + timedelta(minutes=10),
        created_at=now,
    )
    defaults.update(kwargs)
    return AuthorizationCode(**defaults)


class TestTenantsAndUsers:
    def test_default_tenant_exists(self, store):
        assert store.get_tenant("") is not None

    def test_domain_lookup_is_case_insensitive(self, store):
        assert store.get_tenant_by_domain("auth.acme.test").id == "acme"

    def test_duplicate_tenant_rejected(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_tenant("acme", "Again")

    def test_email_unique_per_tenant_only(self, store):
        store.create_user("Bob@Example.com", tenant_id="")
        with pytest.raises(ConstraintViolation):
            store.create_user("bob@example.com", tenant_id="")
        other = store.create_user("bob@example.com", tenant_id="acme")
        assert other.tenant_id == "acme"

    def test_user_lookup_is_tenant_scoped(self, store):
        user = store.create_user("carol@example.com", tenant_id="acme")
        assert store.get_user(user.id, "acme") is not None
        assert store.get_user(user.id, "") is None
        assert store.get_user_by_email("CAROL@example.com", "acme").id == user.id
        assert store.get_user_by_email("carol@example.com", "") is None

    def test_user_requires_known_tenant(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_user("dave@example.com", tenant_id="ghost")

    def test_client_lookup_is_tenant_scoped(self, store):
        store.create_client(Client(client_id="web-app", tenant_id="acme"))
        assert store.get_client("web-app", "acme") is not None
        assert store.get_client("web-app", "") is None


class TestAuthorizationCodeCas:
    def test_mark_used_once(self, store):
        store.save_authorization_code(_code())
        assert store.mark_authorization_code_used("abc", "") is True
        assert store.mark_authorization_code_used("abc", "") is False

    def test_mark_used_wrong_tenant(self, store):
        store.save_authorization_code(_code())
        assert store.mark_authorization_code_used("abc", "acme") is False
        assert store.get_authorization_code("abc", "").used is False

    def test_collision_rejected(self, store):
        store.save_authorization_code(_code())
        with pytest.raises(ConstraintViolation):
            store.save_authorization_code(_code())

    def test_threads_race_on_one_code(self, store):
        store.save_authorization_code(_code())
        results = []
        barrier = threading.Barrier(10)

        def flip():
            barrier.wait()
            results.append(store.mark_authorization_code_used("abc", ""))

        threads = [threading.Thread(target=flip) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert results.count(True) == 1


class TestRefreshTokenCas:
    def test_revoke_if_active_returns_snapshot_once(self, store):
        store.save_refresh_token(
            RefreshToken(
                token_hash="h1",
                client_id="web-app",
                user_id="u1",
                tenant_id="",
                scopes=["read"],
                expires_at=utcnow() + timedelta(days=1),
            )
        )
        snapshot = store.revoke_refresh_token_if_active("h1", "")
        assert snapshot is not None and snapshot.revoked is False
        assert store.revoke_refresh_token_if_active("h1", "") is None
        assert store.get_refresh_token("h1", "").revoked is True


class TestTwoFactorStorage:
    def _enroll(self, store, user):
        store.save_two_factor(
            TwoFactorEnrollment(
                user_id=user.id,
                tenant_id="",
                pending_secret="PENDINGSECRET",
                pending_backup_code_hashes=["h1", "h2"],
            )
        )

    def test_activate_promotes_pending(self, store):
        user = store.create_user("f@example.com", tenant_id="")
        self._enroll(store, user)
        assert store.activate_two_factor(user.id, "", "OTHER") is False
        assert store.activate_two_factor(user.id, "", "PENDINGSECRET") is True
        enrollment = store.get_two_factor(user.id, "")
        assert enrollment.enabled
        assert enrollment.secret == "PENDINGSECRET"
        assert enrollment.pending_secret is None
        assert enrollment.backup_code_hashes == ["h1", "h2"]
        assert store.activate_two_factor(user.id, "", "PENDINGSECRET") is False

    def test_secret_encrypted_at_rest(self, store):
        user = store.create_user("g@example.com", tenant_id="")
        self._enroll(store, user)
        assert store.two_factor[("", user.id)].pending_secret != "PENDINGSECRET"

    def test_backup_code_consumed_once(self, store):
        user = store.create_user("h@example.com", tenant_id="")
        self._enroll(store, user)
        assert store.consume_backup_code(user.id, "", "h1") is False
        store.activate_two_factor(user.id, "", "PENDINGSECRET")
        assert store.consume_backup_code(user.id, "", "h1") is True
        assert store.consume_backup_code(user.id, "", "h1") is False
        assert store.get_two_factor(user.id, "").backup_code_hashes == ["h2"]

    def test_enrollment_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_two_factor(TwoFactorEnrollment(user_id="ghost", tenant_id=""))

    def test_session_verification_is_sticky(self, store):
        store.create_two_factor_session(
            TwoFactorSession(
                session_id="s1", user_id="u1", expires_at=utcnow() + timedelta(minutes=5)
            )
        )
        assert store.mark_two_factor_session_verified("s1", "") is True
        assert store.mark_two_factor_session_verified("s1", "") is True
        assert store.get_two_factor_session("s1", "").verified is True

    def test_expired_session_cannot_be_verified(self, store):
        store.create_two_factor_session(
            TwoFactorSession(
                session_id="s2", user_id="u1", expires_at=utcnow() - timedelta(seconds=1)
            )
        )
        assert store.mark_two_factor_session_verified("s2", "") is False

    def test_sessions_partitioned_by_tenant(self, store):
        store.create_two_factor_session(
            TwoFactorSession(
                session_id="s3", user_id="u1", expires_at=utcnow() + timedelta(minutes=5)
            )
        )
        assert store.get_two_factor_session("s3", "acme") is None
        assert store.mark_two_factor_session_verified("s3", "acme") is False
        assert store.get_two_factor_session("s3", "").verified is False


class TestExpirySweep:
    """Used, revoked and expired records are dropped by a sweep on write."""

    def test_prune_drops_only_dead_records(self, store):
        past = utcnow() - timedelta(seconds=1)
        for i in range(50):
            store.save_authorization_code(_code(code=f"old-{i}", expires_at=past))
        store.save_authorization_code(_code(code="spent"))
        store.mark_authorization_code_used("spent", "")
        store.save_authorization_code(_code(code="live"))
        for token_hash, expires_at in (("stale", past), ("rotated", utcnow() + timedelta(days=1))):
            store.save_refresh_token(
                RefreshToken(
                    token_hash=token_hash,
                    client_id="web-app",
                    user_id="u1",
                    tenant_id="acme",
                    scopes=["read"],
                    expires_at=expires_at,
                )
            )
        store.revoke_refresh_token_if_active("rotated", "acme")
        store.create_two_factor_session(
            TwoFactorSession(session_id="gone", user_id="u1", expires_at=past)
        )

        assert store.prune_expired() == 54
        assert list(store.codes) == [("", "live")]
        assert store.refresh_tokens == {}
        assert store.two_factor_sessions == {}

    def test_write_triggers_sweep_once_interval_elapsed(self, store):
        past = utcnow() - timedelta(seconds=1)
        for i in range(50):
            store.save_authorization_code(_code(code=f"old-{i}", expires_at=past))
        assert len(store.codes) == 50

        store.sweep_interval_seconds = 0
        store.save_authorization_code(_code(code="live"))
        assert list(store.codes) == [("", "live")]

    def test_sweep_skipped_within_interval(self, store):
        store.save_authorization_code(_code(code="old", expires_at=utcnow() - timedelta(seconds=1)))
        assert store.maybe_prune_expired() == 0
        assert ("", "old") in store.codes


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path), persist=True, mfa_encryption_key=SECRET)
        first.create_tenant("acme", "Acme")
        user = first.create_user("p@example.com", tenant_id="acme")
        first.save_password(user.id, "acme", "argon-hash")
        first.save_authorization_code(_code(tenant_id="acme"))
        first.mark_authorization_code_used("abc", "acme")
        first.create_two_factor_session(
            TwoFactorSession(
                session_id="s1",
                user_id=user.id,
                tenant_id="acme",
                expires_at=utcnow() + timedelta(minutes=5),
            )
        )

        second = MemoryStore(fs_root=str(tmp_path), persist=True, mfa_encryption_key=SECRET)
        assert second.get_tenant("acme").name == "Acme"
        assert second.get_user_by_email("p@example.com", "acme").id == user.id
        assert second.get_password_hash(user.id, "acme") == "argon-hash"
        assert second.get_authorization_code("abc", "acme").used is True
        assert second.get_two_factor_session("s1", "acme").user_id == user.id
        assert second.get_two_factor_session("s1", "") is None
        assert (tmp_path / "state" / "store.json").exists()
